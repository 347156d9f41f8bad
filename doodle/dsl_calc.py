"""
Infix expression evaluator.

Shunting-yard conversion to postfix followed by a small stack machine.
Identifiers resolve against a context mapping, then the MATH namespace,
then as `<number><identifier>` products. A value that resolves to a string
is evaluated again, with a cycle guard stopping self-referencing chains.

The evaluator never raises: anything it cannot make sense of becomes 0.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .dsl_utils import NAN, BoundedCache, is_invalid_number, is_nan, js_number


OPERATORS = {
    '^': 7,
    '*': 6, '/': 6, '÷': 6, '%': 6,
    '&': 5, '|': 5,
    '+': 4, '-': 4,
    '<': 3, '<<': 3,
    '>': 3, '>>': 3,
    '=': 3, '==': 3,
    '≤': 3, '<=': 3,
    '≥': 3, '>=': 3,
    '≠': 3, '!=': 3,
    '∧': 2, '&&': 2,
    '∨': 2, '||': 2,
    '(': 1, ')': 1,
}

CACHE_LIMIT = 2048
MAX_EXPANSIONS = 50

_NOT_NUMERIC = re.compile(r'[^\d.\-]')
_PLAIN_NUMBER = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')
_NUMBER_PREFIX = re.compile(r'([\d.\-]+)(.*)')


# =============================================================================
# Numeric helpers with loose host-language semantics
# =============================================================================

def to_int32(n) -> int:
    n = js_number(n)
    if is_nan(n) or math.isinf(n):
        return 0
    n = int(n) & 0xFFFFFFFF
    return n - 0x100000000 if n & 0x80000000 else n


def truthy(n) -> bool:
    return bool(n) and not is_nan(n)


def _divide(a, b):
    if b == 0:
        if a == 0 or is_nan(a):
            return NAN
        return math.copysign(math.inf, a) * math.copysign(1, b)
    return a / b


def _modulo(a, b):
    if b == 0 or math.isinf(a) or is_nan(a) or is_nan(b):
        return NAN
    if math.isinf(b):
        return a
    return math.fmod(a, b)


def _power(a, b):
    try:
        result = math.pow(a, b)
    except OverflowError:
        return math.inf
    except ValueError:
        return NAN
    return result


def compute(op: str, a, b):
    """Apply a binary operator to two numbers."""
    if op == '+':
        return a + b
    if op == '-':
        return a - b
    if op == '*':
        return a * b
    if op in ('/', '÷'):
        return _divide(a, b)
    if op == '%':
        return _modulo(a, b)
    if op == '^':
        return _power(a, b)
    if op == '|':
        return to_int32(a) | to_int32(b)
    if op == '&':
        return to_int32(a) & to_int32(b)
    if op == '<<':
        return to_int32(to_int32(a) << (to_int32(b) & 31))
    if op == '>>':
        return to_int32(a) >> (to_int32(b) & 31)
    if op == '<':
        return a < b
    if op == '>':
        return a > b
    if op in ('=', '=='):
        return a == b
    if op in ('≤', '<='):
        return a <= b
    if op in ('≥', '>='):
        return a >= b
    if op in ('≠', '!='):
        return a != b
    if op in ('∧', '&&'):
        return b if truthy(a) else a
    if op in ('∨', '||'):
        return a if truthy(a) else b
    return NAN


# =============================================================================
# Named constants and functions
# =============================================================================

def _round(n=NAN, *_):
    n = js_number(n)
    if is_nan(n) or math.isinf(n):
        return n
    return math.floor(n + 0.5)


def _sign(n=NAN, *_):
    n = js_number(n)
    if is_nan(n) or n == 0:
        return n
    return 1 if n > 0 else -1


def _safe(fn: Callable) -> Callable:
    """Wrap a math function so domain errors yield NaN and numbers coerce."""
    def wrapper(*args):
        values = [js_number(a) for a in args]
        try:
            return fn(*values)
        except OverflowError:
            return math.inf
        except (ValueError, TypeError, ZeroDivisionError):
            return NAN
    return wrapper


def _min(*args):
    values = [js_number(a) for a in args]
    if any(is_nan(v) for v in values):
        return NAN
    return min(values) if values else math.inf


def _max(*args):
    values = [js_number(a) for a in args]
    if any(is_nan(v) for v in values):
        return NAN
    return max(values) if values else -math.inf


def _hypot(*args):
    return math.hypot(*[js_number(a) for a in args])


def _clz32(n=0, *_):
    n = to_int32(n) & 0xFFFFFFFF
    return 32 - n.bit_length()


def _imul(a=0, b=0, *_):
    return to_int32(to_int32(a) * to_int32(b))


def _log(n):
    if n == 0:
        return -math.inf
    return math.log(n)


def _log_base(base):
    def log(n):
        if n == 0:
            return -math.inf
        return math.log(n, base) if base != 10 else math.log10(n)
    return log


def _gcd(a=NAN, b=0, *_):
    a, b = js_number(a), js_number(b)
    while b:
        a, b = b, _modulo(a, b)
        if is_nan(b):
            return NAN
    return a


MATH: Dict[str, Any] = {
    'PI': math.pi,
    'E': math.e,
    'LN2': math.log(2),
    'LN10': math.log(10),
    'LOG2E': 1 / math.log(2),
    'LOG10E': 1 / math.log(10),
    'SQRT1_2': math.sqrt(0.5),
    'SQRT2': math.sqrt(2),

    'abs': _safe(abs),
    'acos': _safe(math.acos),
    'acosh': _safe(math.acosh),
    'asin': _safe(math.asin),
    'asinh': _safe(math.asinh),
    'atan': _safe(math.atan),
    'atanh': _safe(math.atanh),
    'atan2': _safe(math.atan2),
    'cbrt': _safe(lambda n: math.copysign(abs(n) ** (1 / 3), n)),
    'ceil': _safe(math.ceil),
    'clz32': _clz32,
    'cos': _safe(math.cos),
    'cosh': _safe(math.cosh),
    'exp': _safe(math.exp),
    'expm1': _safe(math.expm1),
    'floor': _safe(math.floor),
    'fround': _safe(float),
    'hypot': _hypot,
    'imul': _imul,
    'log': _safe(_log),
    'log1p': _safe(math.log1p),
    'log10': _safe(_log_base(10)),
    'log2': _safe(_log_base(2)),
    'max': _max,
    'min': _min,
    'pow': _safe(_power),
    'round': _round,
    'sign': _sign,
    'sin': _safe(math.sin),
    'sinh': _safe(math.sinh),
    'sqrt': _safe(math.sqrt),
    'tan': _safe(math.tan),
    'tanh': _safe(math.tanh),
    'trunc': _safe(math.trunc),
}

DEFAULT_CONTEXT: Dict[str, Any] = {
    'π': math.pi,
    'gcd': _gcd,
}


# =============================================================================
# Tokens and postfix program
# =============================================================================

@dataclass
class CalcToken:
    type: str   # "number", "operator" or "comma"
    value: str


@dataclass
class Instruction:
    """One postfix step: a number, a variable, an operator or a call."""
    type: str   # "number", "variable", "operator" or "function"
    value: Any
    name: str = ''
    arguments: List[List['Instruction']] = field(default_factory=list)


class Calculator:
    """Expression evaluator with a per-instance token cache."""

    def __init__(self, cache: Optional[Dict[str, List[CalcToken]]] = None):
        self.cache = cache if cache is not None else BoundedCache(CACHE_LIMIT)

    def evaluate(self, expression, context: Optional[Dict[str, Any]] = None):
        scope = dict(DEFAULT_CONTEXT)
        if context:
            scope.update(context)
        program = self.to_postfix(expression)
        return self._run(program, scope, [])

    # -------------------------------------------------------------------------
    # Tokenizing
    # -------------------------------------------------------------------------

    def get_tokens(self, expression) -> List[CalcToken]:
        expr = str(expression)
        if expr in self.cache:
            return self.cache[expr]
        tokens: List[CalcToken] = []
        num = ''

        for i, c in enumerate(expr):
            if c in OPERATORS:
                last = tokens[-1] if tokens else None
                if c == '=' and last and last.value in ('!', '<', '>', '='):
                    last.value += c
                elif c in '|&<>' and last and last.value == c:
                    last.value += c
                elif c == '-' and i > 0 and expr[i - 1] in 'eE' and num[:-1].replace('.', '').lstrip('-').isdigit():
                    num += c
                elif not tokens and not num and c in '+-':
                    num += c
                elif (last and last.type in ('operator', 'comma') and not num
                      and c not in '()' and last.value != ')'):
                    # unary sign after an operator
                    num += c
                else:
                    if num:
                        tokens.append(CalcToken('number', num))
                        num = ''
                    tokens.append(CalcToken('operator', c))
            elif not c.isspace():
                if c == ',':
                    tokens.append(CalcToken('number', num))
                    num = ''
                    tokens.append(CalcToken('comma', c))
                elif c == '!':
                    tokens.append(CalcToken('number', num))
                    tokens.append(CalcToken('operator', c))
                    num = ''
                else:
                    num += c

        if num:
            tokens.append(CalcToken('number', num))
        self.cache[expr] = tokens
        return tokens

    def to_postfix(self, expression) -> List[Instruction]:
        tokens = self.get_tokens(expression)
        op_stack: List[str] = []
        program: List[Instruction] = []
        i = 0

        while i < len(tokens):
            token = tokens[i]
            nxt = tokens[i + 1] if i + 1 < len(tokens) else None

            if token.type == 'number':
                value = token.value
                is_name = bool(_NOT_NUMERIC.search(value)) and not _PLAIN_NUMBER.match(value)
                if nxt is not None and nxt.value == '(' and is_name:
                    arguments, i = self._read_call(tokens, i + 1)
                    program.append(Instruction('function', None, value, arguments))
                elif is_name:
                    program.append(Instruction('variable', value))
                else:
                    program.append(Instruction('number', value))

            elif token.type == 'operator':
                value = token.value
                if value == '(':
                    op_stack.append(value)
                elif value == ')':
                    while op_stack and op_stack[-1] != '(':
                        program.append(Instruction('operator', op_stack.pop()))
                    if op_stack:
                        op_stack.pop()
                else:
                    rank = OPERATORS.get(value, 0)
                    while op_stack and OPERATORS.get(op_stack[-1], 0) >= rank:
                        op = op_stack.pop()
                        if op not in '()':
                            program.append(Instruction('operator', op))
                    op_stack.append(value)
            i += 1

        while op_stack:
            program.append(Instruction('operator', op_stack.pop()))
        return program

    def _read_call(self, tokens: List[CalcToken], start: int):
        """Read `( args... )` starting at the opening paren.

        Returns the argument programs and the index of the closing paren.
        """
        body = ''
        depth = 0
        arguments = []
        i = start + 1
        while i < len(tokens):
            c = tokens[i].value
            if c == ')':
                if not depth:
                    break
                depth -= 1
                body += c
            else:
                if c == '(':
                    depth += 1
                if c == ',' and not depth:
                    argument = self.to_postfix(body)
                    if argument:
                        arguments.append(argument)
                    body = ''
                else:
                    body += c
            i += 1
        if body:
            arguments.append(self.to_postfix(body))
        return arguments, i

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    def _run(self, program: List[Instruction], context: Dict[str, Any],
             repeat: list):
        stack: list = []
        for step in program:
            if step.type == 'variable':
                stack.append(self._resolve(step.value, context, repeat))
            elif step.type == 'function':
                stack.append(self._call(step, context, repeat))
            elif step.type == 'number' and re.search(r'\d', step.value):
                stack.append(step.value)
            else:
                # Operator, or a stray sign parsed as a number
                right = stack.pop() if stack else None
                left = stack.pop() if stack else None
                stack.append(compute(step.value, js_number(left), js_number(right)))

        result = js_number(stack[0]) if stack else 0
        if is_nan(result) or not result:
            return 0
        return result

    def _resolve(self, name: str, context: Dict[str, Any], repeat: list):
        result = context.get(name)
        if is_invalid_number(result):
            result = MATH.get(name)
        if is_invalid_number(result):
            result = self._expand(name, context, repeat)
        if is_invalid_number(result) and re.match(r'^-\D', name):
            result = self._expand('-1' + name[1:], context, repeat)
        if result is None:
            return 0
        if isinstance(result, bool):
            return int(result)
        if isinstance(result, (int, float)):
            return result
        if not isinstance(result, str):
            return 0
        repeat.append(result)
        if self._is_cycle(repeat):
            return 0
        return self._run(self.to_postfix(result), context, repeat)

    def _call(self, step: Instruction, context: Dict[str, Any], repeat: list):
        name = step.name
        negative = name.startswith('-')
        if negative:
            name = name[1:]
        output: Any = [self._run(arg, context, repeat) for arg in step.arguments]
        for fname in reversed(name.split('.')):
            if not fname:
                continue
            fn = context.get(fname) or MATH.get(fname)
            if not callable(fn):
                output = 0
            else:
                output = self._apply(fn, output)
        if negative:
            output = -1 * js_number(output)
        return output

    @staticmethod
    def _apply(fn: Callable, output: Any):
        try:
            if isinstance(output, list):
                return fn(*output)
            return fn(output)
        except OverflowError:
            return math.inf
        except (ValueError, TypeError, ZeroDivisionError):
            return NAN

    def _expand(self, value: str, context: Dict[str, Any], repeat: list):
        match = _NUMBER_PREFIX.search(value)
        if not match:
            return None
        num, variable = match.group(1), match.group(2)
        v = context.get(variable)
        if v is None:
            return None
        if isinstance(v, (int, float)):
            return js_number(num) * v
        repeat.append(v)
        if self._is_cycle(repeat):
            return 0
        return js_number(num) * self._run(self.to_postfix(v), context, repeat)

    @staticmethod
    def _is_cycle(repeat: list) -> bool:
        if len(repeat) > MAX_EXPANSIONS:
            return True
        if len(repeat) < 4:
            return False
        tail = repeat[-1]
        return all(item == tail for item in repeat[-4:-1])


def evaluate(expression, context: Optional[Dict[str, Any]] = None):
    """Convenience function to evaluate one expression."""
    return Calculator().evaluate(expression, context)
