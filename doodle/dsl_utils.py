"""
Shared numeric, string and sequencing helpers.

Values flowing through the composer follow loose, CSS-friendly coercion
rules: numbers print without a trailing `.0`, lists print comma-joined,
and anything that fails numeric conversion becomes NaN instead of raising.
"""

import hashlib
import itertools
import math
import random as _random
import re
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from .dsl_lexer import split_groups, tokenize


NAN = float('nan')

_NUMBER_RE = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')
_HEX_RE = re.compile(r'^0[xX][0-9a-fA-F]+$')

MAX_SEQUENCE = 65536


# =============================================================================
# Coercion
# =============================================================================

def js_number(value) -> float:
    """Convert to a number the way a loosely typed host language would."""
    if value is None:
        return NAN
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, (list, tuple)):
        if not value:
            return 0
        if len(value) == 1:
            return js_number(value[0])
        return NAN
    text = str(value).strip()
    if not text:
        return 0
    if _NUMBER_RE.match(text):
        if re.match(r'^[+-]?\d+$', text):
            return int(text)
        return float(text)
    if _HEX_RE.match(text):
        return int(text, 16)
    if text in ('Infinity', '+Infinity'):
        return math.inf
    if text == '-Infinity':
        return -math.inf
    return NAN


def parse_int(value) -> float:
    """Leading integer of the text, or NaN: '12px' -> 12."""
    match = re.match(r'^\s*([+-]?\d+)', stringify(value))
    return int(match.group(1)) if match else NAN


def is_nan(value) -> bool:
    return isinstance(value, float) and math.isnan(value)


def is_nil(value) -> bool:
    return value is None


def is_empty(value) -> bool:
    return value is None or value == ''


def is_invalid_number(value) -> bool:
    return value is None or is_nan(value)


def to_text_value(text: str):
    """Numeric text becomes a number, other text is trimmed."""
    if text.strip():
        number = js_number(text)
        return text.strip() if is_nan(number) else number
    return text


def format_number(value) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return 'NaN'
    if math.isinf(value):
        return 'Infinity' if value > 0 else '-Infinity'
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    text = repr(value)
    if 'e' in text:
        if 1e-6 <= abs(value) < 1e21:
            return format(Decimal(text), 'f')
        mantissa, exponent = text.split('e')
        sign = '-' if exponent.startswith('-') else '+'
        return f"{mantissa}e{sign}{exponent.lstrip('+-').lstrip('0') or '0'}"
    return text


def stringify(value) -> str:
    if value is None:
        return ''
    if isinstance(value, (bool, int, float)):
        return format_number(value)
    if isinstance(value, (list, tuple)):
        return ','.join(stringify(v) for v in value)
    return str(value)


def get_value(item):
    """Unwrap nested `.value` holders down to the plain value."""
    value = item
    while value is not None and getattr(value, 'value', None) is not None:
        value = value.value
    return '' if value is None else value


def make_array(value) -> list:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def remove_empty_values(values: Sequence) -> list:
    return [v for v in values if v is not None and stringify(v).strip()]


def remove_quotes(text: str) -> str:
    text = str(text)
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ('"', "'"):
        return text[1:-1]
    return text


def entity(code: str) -> str:
    return (code.replace('&', '&amp;').replace('<', '&lt;')
            .replace('>', '&gt;').replace('"', '&quot;'))


def content_hash(content: str) -> str:
    """Get a short hash of source content."""
    return hashlib.sha256(content.encode()).hexdigest()[:16]


# =============================================================================
# Numbers
# =============================================================================

def clamp(num, lo, hi):
    num = js_number(num)
    if is_nan(num):
        num = 0
    return max(lo, min(hi, num))


def lerp(t, a, b):
    return a + t * (b - a)


def is_letter(c) -> bool:
    return isinstance(c, str) and bool(re.match(r'^[a-zA-Z]$', c))


def parse_number_unit(text) -> Dict[str, Any]:
    """'10px' -> {'value': 10, 'unit': 'px'}; '5' -> {'value': 5}."""
    tokens = tokenize(stringify(text))
    result: Dict[str, Any] = {}
    matched = False
    for i, token in enumerate(tokens):
        prev = tokens[i - 1] if i > 0 else None
        is_last = i == len(tokens) - 1
        is_unit = (matched and (token.is_word() or token.is_symbol())
                   and prev is not None and prev.is_number() and is_last)
        if token.is_number():
            result['value'] = js_number(token.value)
            matched = True
        elif is_unit:
            result['unit'] = token.value
        else:
            break
    return result


def by_unit(fn: Callable) -> Callable:
    """Call fn on the numeric parts of its arguments, re-attaching the unit."""
    def wrapper(*args):
        units, values = [], []
        for arg in args:
            parsed = parse_number_unit(arg)
            if 'unit' in parsed:
                units.append(parsed['unit'])
            if 'value' in parsed:
                values.append(parsed['value'])
        result = fn(*values)
        if not units:
            return result
        unit = units[0]
        if isinstance(result, list):
            return [stringify(n) + unit for n in result]
        return stringify(result) + unit
    return wrapper


def from_charcode(code) -> str:
    code = js_number(code)
    if is_nan(code) or math.isinf(code):
        return '\x00'
    return chr(int(code) & 0xFFFF)


def by_charcode(fn: Callable) -> Callable:
    """Call fn on character codes, mapping the result back to characters."""
    def wrapper(*args):
        codes = [ord(stringify(n)[0]) if stringify(n) else NAN for n in args]
        result = fn(*codes)
        if isinstance(result, list):
            return [from_charcode(n) for n in result]
        return from_charcode(result)
    return wrapper


def num_range(*args) -> list:
    """range(stop) / range(start, stop) / range(start, stop, step) over floats."""
    def initial(n):
        return 0.1 if 0 < n < 1 else 1

    start = js_number(args[0]) if args else 0
    old = start
    if len(args) == 1:
        start, stop = initial(start), start
    else:
        stop = js_number(args[1])
    step = js_number(args[2]) if len(args) >= 3 else initial(start)
    result = []
    count = 0
    while (step >= 0 and start <= stop) or (step < 0 and start > stop):
        result.append(start)
        start += step
        count += 1
        if count > 65535:
            break
    if not result:
        result.append(old)
    return result


# =============================================================================
# Character ranges: [a-e0-3]
# =============================================================================

def _range_tokens(expr: str) -> list:
    tokens = []
    stack: List[str] = []
    if not (expr.startswith('[') and expr.endswith(']')):
        return tokens
    for i in range(1, len(expr) - 1):
        c = expr[i]
        if c == '-' and expr[i - 1] == '-':
            continue
        if c == '-':
            stack.append(c)
            continue
        if stack and stack[-1] == '-':
            stack.pop()
            start = stack.pop() if stack else None
            tokens.append(('range', (start, c)) if start else ('char', c))
            continue
        if stack:
            tokens.append(('char', stack.pop()))
        stack.append(c)
    if stack:
        tokens.append(('char', stack.pop()))
    return tokens


def build_range(expr: str) -> list:
    result = []
    for kind, value in _range_tokens(expr):
        if kind == 'char':
            result.append(value)
            continue
        start, end = value
        reverse = start > end
        if reverse:
            start, end = end, start
        chars = by_charcode(num_range)(start, end)
        if reverse:
            chars.reverse()
        result.extend(chars)
    return result


def expand_ranges(fn: Callable) -> Callable:
    def wrapper(*args):
        expanded = []
        for arg in args:
            if stringify(arg).startswith('['):
                expanded.extend(build_range(stringify(arg)))
            else:
                expanded.append(arg)
        return fn(*expanded)
    return wrapper


# =============================================================================
# Sequences
# =============================================================================

def sequence(count, fn: Callable) -> list:
    """Run fn over `N`, `AxB` or `A-B` steps.

    fn receives (index, x, y, max, X, Y, index).
    """
    text = stringify(count)
    parts = re.split(r'[x-]', text)
    cx = js_number(parts[0])
    cy = js_number(parts[1]) if len(parts) > 1 else 1
    cx = 1 if is_invalid_number(cx) else math.ceil(cx) if not math.isinf(cx) else cx
    cy = 1 if is_invalid_number(cy) else math.ceil(cy) if not math.isinf(cy) else cy
    x = int(clamp(cx, 0, MAX_SEQUENCE))
    y = int(clamp(cy, 0, MAX_SEQUENCE))
    result = []
    index = 1
    if 'x' in text:
        if x:
            y = min(y, max(1, MAX_SEQUENCE // x))
        total = x * y
        for i in range(1, y + 1):
            for j in range(1, x + 1):
                result.append(fn(index, j, i, total, x, y, index))
                index += 1
    elif '-' in text:
        total = abs(x - y) + 1
        steps = range(x, y + 1) if x <= y else range(x, y - 1, -1)
        for i in steps:
            result.append(fn(i, i, 1, total, total, 1, index))
            index += 1
    else:
        for i in range(1, x + 1):
            result.append(fn(i, i, 1, x, x, 1, index))
            index += 1
    return result


def cell_id(x, y, z) -> str:
    return f"c-{x}-{y}-{z}"


def get_named_arguments(args: Sequence, names: Sequence[str]) -> Dict[str, Any]:
    """Map positional and `name=value` arguments onto names."""
    result: Dict[str, Any] = {}
    in_order = True
    for i, arg in enumerate(args):
        arg_name = names[i] if i < len(names) else None
        if '=' in stringify(arg):
            parts = split_groups(stringify(arg), '=', no_space=True)
            if len(parts) > 1:
                if parts[0] in names:
                    result[parts[0]] = parts[1]
                in_order = False
            elif arg_name:
                result[arg_name] = arg
        elif in_order and arg_name:
            result[arg_name] = arg
    return result


# =============================================================================
# Small containers
# =============================================================================

class Stack:
    """Bounded history; pushing past the limit drops the oldest entry."""

    def __init__(self, limit: int = 20):
        self._items: deque = deque(maxlen=limit)

    def push(self, data):
        self._items.append(data)
        return data

    def last(self, n=1):
        if not self._items:
            return ''
        n = js_number(n)
        n = 1 if is_nan(n) or n < 1 else int(n)
        return self._items[-min(n, len(self._items))]

    def __len__(self):
        return len(self._items)


class BoundedCache(OrderedDict):
    """Least-recently-used mapping; inserting past `limit` evicts the stalest key."""

    def __init__(self, limit: int = 512):
        super().__init__()
        self.limit = limit

    def __getitem__(self, key):
        value = super().__getitem__(key)
        self.move_to_end(key)
        return value

    def __setitem__(self, key, value):
        super().__setitem__(key, value)
        self.move_to_end(key)
        while len(self) > self.limit:
            self.popitem(last=False)


class IdGenerator:
    """Sequential ids shared across prefixes: circle-1, defs-2, ..."""

    def __init__(self):
        self._counter = itertools.count(1)

    def __call__(self, prefix: str = '') -> str:
        return f"{prefix}-{next(self._counter)}"


# =============================================================================
# Grid and cell coordinates
# =============================================================================

@dataclass
class Grid:
    """Resolved grid dimensions."""
    x: int = 1
    y: int = 1
    z: int = 1
    count: int = 1
    ratio: float = 1

    def to_dict(self) -> Dict[str, Any]:
        return {'x': self.x, 'y': self.y, 'z': self.z,
                'count': self.count, 'ratio': self.ratio}


@dataclass
class Coords:
    """Where evaluation currently is: the cell, plus per-compile state.

    `extra` is the stack of sequence contexts pushed by @m and friends;
    `context` is shared by every cell of one compile.
    """
    x: int = 1
    y: int = 1
    z: int = 1
    count: int = 1
    grid: Grid = field(default_factory=Grid)
    random: Optional[Callable[[], float]] = None
    extra: list = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    position: int = 0
    seed: str = ''
    composer: Any = None


class SeededRandom:
    """The one pseudo-random stream of a compile, seeded from text."""

    def __init__(self, seed):
        self.seed = str(seed)
        self._rng = _random.Random(self.seed)

    def __call__(self) -> float:
        return self._rng.random()

    def rand(self, *args):
        """rand() -> NaN, rand(end) -> [0, end), rand(start, end)."""
        if not args:
            return NAN
        start, end = (0, args[0]) if len(args) == 1 else args[:2]
        return lerp(self(), start, end)

    def pick(self, *items):
        values = []
        for item in items:
            values.extend(item if isinstance(item, (list, tuple)) else [item])
        if not values:
            return None
        return values[int(self() * len(values))]

    def shuffle(self, items: Sequence) -> list:
        result = list(items)
        m = len(result)
        while m:
            i = int(self() * m)
            m -= 1
            result[m], result[i] = result[i], result[m]
        return result
