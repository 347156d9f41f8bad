"""
Structural parser for the doodle language.

Consumes the token stream from dsl_lexer and builds the AST in dsl_ast:
rules, selector blocks, conditionals, keyframes and, inside values,
function calls with their argument groups.

The parser never raises. Malformed input is dropped or truncated and the
anomaly is recorded in a DiagnosticLog.

BlockParser handles the nested `name { prop: value; child { ... } }` form
used by the vector sub-language embedded through @svg.
"""

import copy
import itertools
import math
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Tuple

from .dsl_ast import (
    Argument, Block, Conditional, FunctionCall, KeyframeStep, Keyframes,
    Node, Pseudo, Rule, SharedDeclaration, Statement, TextLiteral, Value,
)
from .dsl_calc import MATH
from .dsl_diagnostics import DiagnosticLog
from .dsl_lexer import QUOTES, Lexer, Token, join_tokens, split_groups, tokenize
from .dsl_selectors import SELECTORS
from .dsl_utils import js_number, to_text_value


MAX_USE_DEPTH = 16

PAIRS = {'"': '"', "'": "'", '(': ')'}

# Sub-languages whose argument is kept as one raw payload
RAW_ARGUMENT_FUNCTIONS = re.compile(r'^@(canvas|shaders|doodle|pat+ern)')


@dataclass
class ParseResult:
    nodes: List[Node] = field(default_factory=list)
    diagnostics: DiagnosticLog = field(default_factory=DiagnosticLog)


def _adjacent(a: Token, b: Optional[Token]) -> bool:
    return b is not None and b.offset == a.offset + len(a.value)


def _is_name_char(c: str) -> bool:
    return c.isalnum() or c in '_-.%'


def separate_func_name(name: str) -> Tuple[str, str]:
    """Split a trailing numeric suffix off a function name.

    '@r10' -> ('@r', '10'), '@m3x4' -> ('@m', '3x4').
    """
    if ((re.search(r'\D$', name) and not re.search(r'\d+[x-]\d+', name))
            or name[1:] in MATH):
        return name, ''
    extra = ''
    for i in range(len(name) - 1, -1, -1):
        c = name[i]
        prev = name[i - 1] if i > 0 else ''
        nxt = name[i + 1] if i + 1 < len(name) else ''
        if re.match(r'[\d.]', c) or (c in 'x-' and prev.isdigit() and nxt.isdigit()):
            extra = c + extra
        else:
            return name[:i + 1], extra
    return '', extra


def normalize_argument(group: list) -> Argument:
    for fragment in group:
        if isinstance(fragment, TextLiteral) and isinstance(fragment.value, str):
            fragment.value = fragment.value.replace('`', '"')

    argument = Argument(group)
    if not group:
        return argument
    first, last = group[0], group[-1]
    if not (isinstance(first, TextLiteral) and isinstance(last, TextLiteral)):
        return argument
    if not (isinstance(first.value, str) and isinstance(last.value, str)):
        return argument
    if not first.value or not last.value:
        return argument
    if PAIRS.get(first.value[0]) == last.value[-1]:
        if first is last:
            first.value = first.value[1:-1]
        else:
            first.value = first.value[1:]
            last.value = last.value[:-1]
        argument.cluster = True
    return argument


def skip_last_empty_args(args: List[Argument]) -> List[Argument]:
    if args and args[0].fragments:
        tail = args[0].fragments[-1]
        if isinstance(tail, TextLiteral) and not str(tail.value).strip():
            args[0].fragments = args[0].fragments[:-1]
    return args


def read_var_references(text: str) -> List[Tuple[str, List[str]]]:
    """Find `var(--name, var(--fallback))` references in text.

    Returns (name, fallback names) pairs for each valid reference.
    """
    tokens = tokenize(text)
    pos = 0

    def is_valid(name: str) -> bool:
        return len(name) > 2 and name.startswith('--') and not name[2:].startswith('-')

    def walk() -> List[Tuple[str, List[str]]]:
        nonlocal pos
        refs: List[Tuple[str, List[str]]] = []
        while pos < len(tokens):
            curr = tokens[pos]
            nxt = tokens[pos + 1] if pos + 1 < len(tokens) else None
            pos += 1
            if curr.value == 'var':
                if nxt is not None and nxt.is_symbol('('):
                    pos += 1
                    name, fallbacks = read_var()
                    if is_valid(name):
                        refs.append((name, fallbacks))
            elif refs and not curr.is_symbol(','):
                break
        return refs

    def read_var() -> Tuple[str, List[str]]:
        nonlocal pos
        name = None
        fallbacks: List[str] = []
        collected: List[Token] = []
        while pos < len(tokens):
            curr = tokens[pos]
            pos += 1
            if curr.is_symbol(')', ';') and not name:
                name = join_tokens(collected)
                break
            if curr.is_symbol(','):
                if name is None:
                    name = join_tokens(collected)
                    collected = []
                if name:
                    fallbacks = [n for n, _ in walk()]
                    break
            else:
                collected.append(curr)
        return name or '', fallbacks

    return walk()


class DoodleParser:
    """Parser for doodle source text."""

    def __init__(self, source: str, variables: Optional[Dict[str, str]] = None,
                 diagnostics: Optional[DiagnosticLog] = None,
                 positions: Optional[Iterator[int]] = None,
                 depth: int = 0, preserve_line_break: bool = False,
                 ignore_inline_comment: bool = False):
        lexer = Lexer(source, preserve_line_break, ignore_inline_comment)
        self.source = lexer.source
        self.tokens: List[Token] = lexer.tokenize()
        self.pos = 0
        self.variables = variables if variables is not None else {}
        self.declared: Dict[str, str] = {}
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self.positions = positions if positions is not None else itertools.count(1)
        self.depth = depth
        self.preserve_line_break = preserve_line_break
        self.ignore_inline_comment = ignore_inline_comment

    def parse(self) -> List[Node]:
        """Parse the whole source and return the top-level nodes."""
        return self._parse_statements(nested=False)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def _peek(self, offset: int = 0) -> Optional[Token]:
        pos = self.pos + offset
        if 0 <= pos < len(self.tokens):
            return self.tokens[pos]
        return None

    def _advance(self) -> Optional[Token]:
        token = self._peek()
        self.pos += 1
        return token

    def _skip_spaces(self):
        while not self._at_end() and self._peek().is_space():
            self.pos += 1

    def _location(self) -> Tuple[int, int]:
        token = self._peek() or (self.tokens[-1] if self.tokens else None)
        if token is None:
            return 0, 0
        return token.line, token.column

    def _sub_parser(self, source: str) -> 'DoodleParser':
        sub = DoodleParser(
            source, self.variables, self.diagnostics, self.positions,
            self.depth + 1, self.preserve_line_break, self.ignore_inline_comment,
        )
        sub.declared = self.declared
        return sub

    def _statement_kind(self) -> str:
        """Look ahead: does the statement open a block or end as a rule?"""
        depth = 0
        quotes = 0
        for token in self.tokens[self.pos:]:
            if token.status == 'open':
                quotes += 1
            elif token.status == 'close':
                quotes = max(0, quotes - 1)
            if quotes:
                continue
            if token.is_symbol('('):
                depth += 1
            elif token.is_symbol(')'):
                depth = max(0, depth - 1)
            elif depth == 0 and token.is_symbol('{'):
                return 'block'
            elif depth == 0 and token.is_symbol(';', '}'):
                return 'rule'
        return 'rule'

    def _skip_block(self):
        """Skip to the brace that closes the block just opened."""
        depth = 0
        while not self._at_end():
            token = self._advance()
            if token.is_symbol('{'):
                depth += 1
            elif token.is_symbol('}'):
                if not depth:
                    return
                depth -= 1

    # =========================================================================
    # Statements
    # =========================================================================

    def _parse_statements(self, nested: bool) -> List[Node]:
        nodes: List[Node] = []
        while not self._at_end():
            token = self._peek()
            if token.is_space() or token.is_symbol(';'):
                self.pos += 1
                continue
            if token.is_symbol('}'):
                if nested:
                    return nodes
                self.pos += 1
                continue
            if token.is_word() and token.value.startswith('<'):
                self._skip_tag()
                continue
            if self._statement_kind() == 'block':
                node = self._parse_block()
                if node is not None:
                    nodes.append(node)
            else:
                nodes.extend(self._parse_rule())
        return nodes

    def _skip_tag(self):
        while not self._at_end():
            token = self._advance()
            if '>' in token.value:
                return

    def _close_block(self, line: int, column: int, what: str):
        token = self._peek()
        if token is not None and token.is_symbol('}'):
            self.pos += 1
        else:
            self.diagnostics.add_error(f"unterminated {what}", line, column)

    def _parse_block(self) -> Optional[Node]:
        token = self._peek()
        line, column = token.line, token.column
        nxt = self._peek(1)
        if token.is_symbol('@') and nxt is not None and nxt.value == 'keyframes':
            return self._parse_keyframes()
        if token.is_symbol('@'):
            return self._parse_conditional()

        head: List[Token] = []
        while not self._at_end() and not self._peek().is_symbol('{'):
            head.append(self._advance())
        self.pos += 1
        selector = join_tokens(head).strip()
        if not selector:
            self.diagnostics.add_warning("block without a selector", line, column)
            self._skip_block()
            return None
        styles = self._parse_statements(nested=True)
        self._close_block(line, column, f"block '{selector}'")
        return Pseudo(selector, styles, line, column)

    def _parse_conditional(self) -> Conditional:
        token = self._advance()
        line, column = token.line, token.column
        name, _ = self._read_name(token)
        name = '@' + name
        arguments: List[Argument] = []
        if self._peek() is not None and self._peek().is_symbol('('):
            self.pos += 1
            arguments, _ = self._read_arguments(name, line, column)
        negations: List[str] = []
        while not self._at_end() and not self._peek().is_symbol('{'):
            word = self._advance()
            if word.is_word():
                negations.append(word.value)
        self.pos += 1

        if name[1:] not in SELECTORS:
            self.diagnostics.add_warning(f"unknown conditional {name}", line, column)
        styles = self._parse_statements(nested=True)
        self._close_block(line, column, f"block '{name}'")
        return Conditional(name, arguments, styles, negations, line, column)

    def _parse_keyframes(self) -> Optional[Keyframes]:
        token = self._peek()
        line, column = token.line, token.column
        self.pos += 2
        head: List[Token] = []
        while not self._at_end() and not self._peek().is_symbol('{', ';', '}'):
            head.append(self._advance())
        name = join_tokens(head).strip()
        if not name:
            self.diagnostics.add_error("missing keyframes name", line, column)
            if self._peek() is not None and self._peek().is_symbol('{'):
                self.pos += 1
                self._skip_block()
            return None
        if self._peek() is None or not self._peek().is_symbol('{'):
            self.diagnostics.add_error(f"missing body for keyframes '{name}'", line, column)
            return None
        self.pos += 1

        keyframes = Keyframes(name, [], line, column)
        while not self._at_end():
            self._skip_spaces()
            current = self._peek()
            if current is None or current.is_symbol('}'):
                break
            if current.is_symbol(';'):
                self.pos += 1
                continue
            step_line, step_column = current.line, current.column
            step_name = self._parse_value(stop_at_open_brace=True)
            if self._peek() is None or not self._peek().is_symbol('{'):
                self.diagnostics.add_error("unterminated keyframes step", step_line, step_column)
                break
            self.pos += 1
            styles = self._parse_statements(nested=True)
            self._close_block(step_line, step_column, "keyframes step")
            rules = [s for s in styles if isinstance(s, Rule)]
            keyframes.steps.append(KeyframeStep(step_name, rules))
        self._close_block(line, column, f"keyframes '{name}'")
        return keyframes

    def _parse_rule(self) -> List[Node]:
        start = self._peek()
        line, column = start.line, start.column
        prop_tokens: List[Token] = []
        while not self._at_end():
            token = self._peek()
            if token.is_symbol(':'):
                break
            if token.is_symbol(';'):
                self.pos += 1
                return []
            if token.is_symbol('}'):
                return []
            if not token.is_space():
                prop_tokens.append(token)
            self.pos += 1
        if self._at_end():
            return []
        self.pos += 1
        prop = join_tokens(prop_tokens)
        if not prop:
            self._parse_value()
            return []

        if prop == '@use':
            return self._read_use(line, column)

        self._skip_spaces()
        value_start = self._peek()
        value = self._parse_value()
        raw = self._raw_between(value_start)

        if prop.startswith('--'):
            self.declared[prop] = raw

        names = [n for n in prop.split(',') if n]
        if len(names) > 1 and not prop.startswith('@'):
            expand = len(value) == len(names)
            return [
                Rule(n, [value[i]] if expand else value,
                     raw, n.startswith('--'), line, column, shared=not expand)
                for i, n in enumerate(names)
            ]
        return [Rule(prop, value, raw, prop.startswith('--'), line, column)]

    def _raw_between(self, start: Optional[Token]) -> str:
        if start is None:
            return ''
        end = self._peek(-1)
        if end is None or end.offset < start.offset:
            return ''
        if end.is_symbol(';'):
            return self.source[start.offset:end.offset].strip()
        stop = self._peek()
        limit = stop.offset if stop is not None else len(self.source)
        return self.source[start.offset:limit].strip()

    def _read_use(self, line: int, column: int) -> List[Node]:
        value = self._parse_value()
        nodes: List[Node] = []
        for group in value:
            for fragment in group:
                if not isinstance(fragment, TextLiteral):
                    continue
                for name, fallbacks in read_var_references(str(fragment.value)):
                    text = self._lookup_variable(name)
                    for fallback in fallbacks:
                        if text:
                            break
                        text = self._lookup_variable(fallback)
                    if not text:
                        continue
                    if self.depth >= MAX_USE_DEPTH:
                        self.diagnostics.add_warning(
                            f"@use nested too deeply at {name}", line, column)
                        continue
                    nodes.extend(self._sub_parser(text).parse())
        return nodes

    def _lookup_variable(self, name: str) -> str:
        text = self.variables.get(name)
        if text is None:
            text = self.declared.get(name, '')
        text = str(text).strip()
        if text.startswith('(') and text.endswith(')'):
            text = text[1:-1]
        return re.sub(r';+$', '', text)

    # =========================================================================
    # Values
    # =========================================================================

    def _parse_value(self, stop_at_open_brace: bool = False) -> Value:
        """Read comma groups up to `;` (consumed) or `}` (left in place)."""
        groups: Value = [[]]
        text = ''
        depth = 0
        quotes = 0
        start_line, start_column = self._location()

        def flush():
            nonlocal text
            if text:
                groups[-1].append(TextLiteral(text, start_line, start_column))
                text = ''

        self._skip_spaces()
        while not self._at_end():
            token = self._peek()
            if token.status == 'open':
                quotes += 1
            elif token.status == 'close':
                quotes = max(0, quotes - 1)
            elif not quotes and depth == 0:
                if token.is_symbol(';'):
                    self.pos += 1
                    break
                if token.is_symbol('}'):
                    break
                if stop_at_open_brace and token.is_symbol('{'):
                    break
                if token.is_symbol(','):
                    flush()
                    groups.append([])
                    self.pos += 1
                    self._skip_spaces()
                    continue

            if self._at_function_start():
                flush()
                groups[-1].append(self._read_function())
                continue

            if not quotes:
                if token.is_symbol('('):
                    depth += 1
                elif token.is_symbol(')'):
                    depth = max(0, depth - 1)
            text += self._text_of(token)
            self.pos += 1
        else:
            if depth:
                self.diagnostics.add_warning(
                    "unbalanced parentheses in value", start_line, start_column)
        flush()
        return groups if any(groups) else []

    def _text_of(self, token: Token) -> str:
        """Token text with the π shorthand expanded."""
        if token.value in ('π', '∏'):
            prev = self._peek(-1)
            if not (prev is not None and prev.is_number() and _adjacent(prev, token)):
                return str(math.pi)
        return token.value

    # =========================================================================
    # Function calls
    # =========================================================================

    def _at_function_start(self) -> bool:
        token = self._peek()
        if token is None:
            return False
        if token.is_symbol('@'):
            nxt = self._peek(1)
            if not _adjacent(token, nxt):
                return False
            if nxt.is_number():
                return True
            return nxt.is_word() and (nxt.value[0].isalnum() or nxt.value[0] in '_-')
        if token.is_word() and token.value.startswith('$'):
            if len(token.value) > 1:
                return token.value[1].isalnum() or token.value[1] in '_-'
            nxt = self._peek(1)
            return _adjacent(token, nxt) and nxt.is_symbol('(')
        return False

    def _char_after(self, token: Token) -> str:
        nxt = self._peek(1)
        if _adjacent(token, nxt):
            return nxt.value[0]
        return ''

    def _read_name(self, start: Token) -> Tuple[str, bool]:
        """Accumulate an adjacent function name.

        Returns the name and whether it ended in a `.` composition.
        """
        name = ''
        previous = start
        while not self._at_end():
            token = self._peek()
            if not _adjacent(previous, token):
                break
            if not (token.is_word() or token.is_number() or token.is_symbol('-', '%')):
                break
            value = token.value
            i = 0
            while i < len(value):
                c = value[i]
                if c == '.':
                    following = value[i + 1] if i + 1 < len(value) else self._char_after(token)
                    if following and (following.isalpha() or following in '@$'):
                        rest = value[i + 1:]
                        if rest:
                            self.tokens[self.pos] = replace(
                                token, value=rest, column=token.column + i + 1,
                                offset=token.offset + i + 1)
                        else:
                            self.pos += 1
                        return name, True
                if not _is_name_char(c):
                    break
                name += c
                i += 1
            if i < len(value):
                self.tokens[self.pos] = replace(
                    token, value=value[i:], column=token.column + i, offset=token.offset + i)
                return name, False
            previous = token
            self.pos += 1
        return name, False

    def _read_function(self, implicit: bool = False) -> FunctionCall:
        token = self._peek()
        line, column = token.line, token.column
        is_calc = False
        if token.is_symbol('@'):
            anchor = token
            self.pos += 1
        elif token.is_word() and token.value.startswith('$'):
            is_calc = True
            anchor = replace(token, value='$')
            if len(token.value) > 1:
                self.tokens[self.pos] = replace(
                    token, value=token.value[1:], column=token.column + 1,
                    offset=token.offset + 1)
            else:
                self.pos += 1
        else:
            # Composition target written without a leading @
            anchor = replace(token, value='')

        name, composition = self._read_name(anchor)
        name = '@' + name
        func = FunctionCall(name, [], 0, {}, line, column)

        if composition:
            if not self._at_end():
                func.arguments = [Argument([self._read_function(implicit=True)])]
        else:
            nxt = self._peek()
            if nxt is not None and nxt.is_symbol('(') and _adjacent(self._peek(-1), nxt):
                self.pos += 1
                arguments, raw = self._read_arguments(name, line, column)
                if name.lower() == '@svg':
                    arguments = self._expand_svg(arguments, raw, func.variables, line, column)
                func.arguments = arguments

        if is_calc:
            rest = name[1:]
            func.name = '@$' + rest
            if rest and not func.arguments:
                # `$x` alone evaluates x
                func.name = '@$'
                func.arguments.append(Argument([TextLiteral(rest, line, column)]))
        else:
            fname, extra = separate_func_name(name)
            func.name = fname
            if extra:
                func.arguments.insert(0, Argument([TextLiteral(extra, line, column)]))

        func.position = next(self.positions)
        return func

    def _read_arguments(self, name: str, line: int, column: int) -> Tuple[List[Argument], str]:
        """Read comma-separated arguments after the opening paren."""
        raw_mode = bool(RAW_ARGUMENT_FUNCTIONS.match(name))
        args: List[Argument] = []
        group: list = []
        stack: List[str] = []
        text = ''
        start = self._peek()
        closed = False
        end_offset = len(self.source)

        while not self._at_end():
            token = self._peek()
            if token.is_symbol('(') or token.is_symbol(*QUOTES):
                c = token.value
                if stack and c != '(' and c == stack[-1]:
                    stack.pop()
                else:
                    stack.append(c)
                text += c
                self.pos += 1
                continue

            if not raw_mode and self._at_function_start():
                if not group:
                    text = text.lstrip()
                if text:
                    group.append(TextLiteral(text, token.line, token.column))
                    text = ''
                group.append(self._read_function())
                continue

            if token.is_symbol(')') or (not raw_mode and token.is_symbol(',')):
                if stack:
                    if token.is_symbol(')') and stack[-1] == '(':
                        stack.pop()
                    text += token.value
                    self.pos += 1
                    continue
                if text:
                    if not group:
                        group.append(TextLiteral(to_text_value(text), token.line, token.column))
                    elif text.strip():
                        group.append(TextLiteral(text, token.line, token.column))
                    if text.startswith('±') and not raw_mode:
                        rest = text[1:]
                        cloned = copy.deepcopy(group)
                        cloned[-1].value = '-' + rest
                        args.append(normalize_argument(cloned))
                        group[-1].value = rest
                args.append(normalize_argument(group))
                group, text = [], ''
                self.pos += 1
                if token.is_symbol(')'):
                    closed = True
                    end_offset = token.offset
                    break
                continue

            text += self._text_of(token)
            self.pos += 1

        if not closed:
            self.diagnostics.add_warning(f"unterminated call to {name}", line, column)
            if text:
                group.append(TextLiteral(to_text_value(text) if not group else text, line, column))
            if group:
                args.append(normalize_argument(group))

        raw = ''
        if start is not None and start.offset <= end_offset:
            raw = self.source[start.offset:end_offset]
        return skip_last_empty_args(args), raw

    def _expand_svg(self, arguments: List[Argument], raw: str,
                    variables: Dict[str, Value], line: int, column: int) -> List[Argument]:
        """Collect @svg variables and rewrite `name*count` repetitions."""
        parsed = parse_svg(raw)
        for item in parsed.children:
            if isinstance(item, Statement) and item.variable:
                nodes = self._sub_parser(f"{item.name}: {item.value}").parse()
                if nodes and isinstance(nodes[0], Rule):
                    variables[item.name] = nodes[0].value
        if re.search(r'\d\s*{', raw) and has_times_syntax(parsed):
            extended = generate_extended(parsed) + ')'
            sub = self._sub_parser(extended)
            arguments, _ = sub._read_arguments('@svg', line, column)
        return arguments


def parse(source: str, variables: Optional[Dict[str, str]] = None,
          preserve_line_break: bool = False,
          ignore_inline_comment: bool = False) -> ParseResult:
    """Convenience function to parse doodle source."""
    parser = DoodleParser(source, variables,
                          preserve_line_break=preserve_line_break,
                          ignore_inline_comment=ignore_inline_comment)
    nodes = parser.parse()
    return ParseResult(nodes, parser.diagnostics)


# =============================================================================
# Generic block tree: name { prop: value; child { ... } }
# =============================================================================

SPECIAL_PROPERTIES = frozenset([
    'xlink:actuate', 'xlink:arcrole', 'xlink:href', 'xlink:role',
    'xlink:show', 'xlink:title', 'xlink:type',
    'xml:base', 'xml:lang', 'xml:space',
])


def _join_statement(tokens: List[Token]) -> str:
    if tokens and tokens[-1].is_symbol(';', '}'):
        tokens = tokens[:-1]
    return join_tokens(tokens)


def _get_groups(tokens: List[Token]) -> List[str]:
    groups = []
    temp: List[Token] = []
    for token in tokens:
        if token.is_symbol(','):
            groups.append(_join_statement(temp))
            temp = []
        else:
            temp.append(token)
    if temp:
        groups.append(_join_statement(temp))
    return groups


def _get_selectors(tokens: List[Token]) -> List[str]:
    result: List[str] = []
    has_symbol = False
    for i, curr in enumerate(tokens):
        prev = tokens[i - 1] if i > 0 else None
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        is_times = (prev is not None and nxt is not None and curr.value == 'x'
                    and prev.is_number() and nxt.is_number())
        if curr.is_word() and not has_symbol and not is_times:
            result.append(curr.value.strip())
        elif result:
            result[-1] = (result[-1] + curr.value).strip()
        else:
            result.append(curr.value.strip())
        if curr.is_symbol():
            has_symbol = True
        elif not curr.is_space():
            has_symbol = False
    return [r for r in result if r]


def _parse_view_box(tokens: List[Token]) -> dict:
    view_box: dict = {'value': []}
    key = None
    for token in tokens:
        if token.is_space() or token.is_symbol(',', ';'):
            continue
        if len(view_box['value']) < 4 and token.is_number():
            view_box['value'].append(js_number(token.value))
        elif token.is_number() and key:
            view_box[key] = js_number(token.value)
            key = None
        elif token.is_word():
            key = token.value
    return view_box


def _split_times(name: str, block: Block) -> Block:
    if re.search(r'\*\s*[0-9]', name):
        parts = name.split('*')
        if len(parts) > 1 and parts[1]:
            block.times = parts[1].strip()
            block.pure_name = parts[0].strip()
    return block


def _resolve_id(block: Block, skip: bool) -> Block:
    parts = (block.name or '').split('#')
    token_name, ids = parts[0], parts[1:]
    ident = ids[-1] if ids else ''
    if token_name and ident and not skip:
        block.name = token_name
        block.children.append(Statement('id', ident))
    return block


def _is_skip(*names) -> bool:
    return any(n == 'style' for n in names)


class BlockParser:
    """Parser for the nested block syntax of the vector sub-language."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = -1

    def _next(self) -> bool:
        self.pos += 1
        return self.pos < len(self.tokens)

    def _get(self) -> Tuple[Optional[Token], Token, Optional[Token]]:
        prev = self.tokens[self.pos - 1] if self.pos > 0 else None
        nxt = self.tokens[self.pos + 1] if self.pos + 1 < len(self.tokens) else None
        return prev, self.tokens[self.pos], nxt

    def _nest(self, selectors: List[str], skip: bool) -> Block:
        name = selectors.pop()
        block = _resolve_id(self.walk(_split_times(name, Block(name))), skip)
        while selectors:
            name = selectors.pop()
            block = _resolve_id(_split_times(name, Block(name, [block])), skip)
        return block

    def walk(self, parent: Block) -> Block:
        rules: list = []
        fragment: List[Token] = []
        stack: List[str] = []

        while self._next():
            prev, curr, nxt = self._get()
            if curr.is_symbol('('):
                stack.append(curr.value)
            if curr.is_symbol(')') and stack:
                stack.pop()

            if nxt is None or curr.is_symbol('}'):
                if nxt is None and rules and not curr.is_symbol('}'):
                    if isinstance(rules[-1].value, str):
                        rules[-1].value += ';' + curr.value
                break

            if curr.is_symbol('{'):
                selectors = _get_selectors(fragment)
                if not selectors:
                    continue
                if _is_skip(parent.name):
                    selectors = [_join_statement(fragment)]
                skip = _is_skip(*selectors, parent.name)
                if selectors[-1] == 'style':
                    rules.append(Block('style', self._read_style()))
                else:
                    rules.append(self._nest(selectors, skip))
                fragment = []

            elif (curr.is_symbol(':') and not stack and fragment
                  and f"{prev.value if prev else ''}:{nxt.value}" not in SPECIAL_PROPERTIES):
                props = _get_groups(fragment)
                origin = SharedDeclaration(props) if len(props) > 1 else None
                statement, value_tokens = self._read_statement(Statement('unknown', origin=origin))
                if isinstance(statement.value, str):
                    grouped = split_groups(statement.value)
                else:
                    grouped = [statement.value]
                expand = len(props) > 1 and len(grouped) == len(props)
                for i, prop in enumerate(props):
                    item = replace(statement, name=prop, variable=prop.startswith('--'))
                    if expand:
                        item.value = grouped[i]
                    if re.search('viewbox', prop, re.I):
                        item.detail = _parse_view_box(value_tokens)
                    rules.append(item)
                fragment = []

            elif curr.is_symbol(';'):
                if rules and fragment and isinstance(rules[-1].value, str):
                    rules[-1].value += ';' + _join_statement(fragment)
                fragment = []

            else:
                fragment.append(curr)

        parent.value = rules
        return parent

    def _read_statement(self, statement: Statement) -> Tuple[Statement, List[Token]]:
        fragment: List[Token] = []
        inline_block = None
        quotes: List[Token] = []
        parens: List[Token] = []

        while self._next():
            _, curr, nxt = self._get()
            if curr.is_symbol('(') and not quotes:
                parens.append(curr)
            elif curr.is_symbol(')') and not quotes and parens:
                parens.pop()
            if curr.is_symbol("'", '"'):
                if curr.status == 'open':
                    quotes.append(curr)
                elif quotes:
                    quotes.pop()

            is_break = not quotes and not parens and (
                nxt is None or curr.is_symbol(';') or nxt.is_symbol('}'))

            if not parens and not quotes and curr.is_symbol('{'):
                selectors = _get_selectors(fragment)
                if not selectors:
                    continue
                inline_block = self._nest(selectors, _is_skip(*selectors))
                inline_block.inline = True
                break

            fragment.append(curr)
            if is_break:
                break

        if inline_block is not None:
            statement.value = inline_block
        elif fragment:
            statement.value = _join_statement(fragment)
        if statement.origin is not None:
            statement.origin.value = statement.value
        return statement, fragment

    def _read_style(self) -> str:
        depth = 0
        style = []
        while self._next():
            curr = self.tokens[self.pos]
            if curr.is_symbol('{'):
                depth += 1
            elif curr.is_symbol('}'):
                if not depth:
                    break
                depth -= 1
            style.append(curr.value)
        return ''.join(style)


def _skip_head_svg(block: Block) -> Block:
    head = None
    head_variables = []
    for item in block.children:
        if item.name == 'svg' and isinstance(item, Block):
            head = item
        if isinstance(item, Statement) and item.variable:
            head_variables.append(item)
    if head is not None and isinstance(head.value, list):
        for variable in head_variables:
            if not any(n.name == variable.name for n in head.value):
                head.value.insert(0, variable)
        return head
    return block


def parse_svg(source: str, root: Optional[Block] = None) -> Block:
    """Parse vector sub-language source into a Block tree rooted at `svg`."""
    parser = BlockParser(tokenize(source))
    block = parser.walk(root if root is not None else Block('svg'))
    return _skip_head_svg(block)


def has_times_syntax(block: Block) -> bool:
    for child in block.children:
        if isinstance(child, Block):
            if (child.times and child.pure_name) or has_times_syntax(child):
                return True
        elif isinstance(child, Statement) and isinstance(child.value, Block):
            value = child.value
            if (value.times and value.pure_name) or has_times_syntax(value):
                return True
    return False


def _generate_source(node, last: str = '') -> str:
    result = ''
    if isinstance(node, Block):
        children = node.value if isinstance(node.value, list) else []
        is_inline = bool(children) and getattr(children[0], 'inline', False)
        if node.times:
            result += f"@M{node.times}({node.pure_name}{{"
        else:
            result += node.name + '{'
        if node.name == 'style':
            result += str(node.value)
        elif children:
            last_group = ''
            for child in children:
                result += _generate_source(child, last_group)
                if isinstance(child, Statement) and child.origin is not None:
                    last_group = ','.join(child.origin.names)
        if node.times:
            result += '})'
        elif not is_inline:
            result += '}'
    elif isinstance(node, Statement):
        group = ','.join(node.origin.names) if node.origin is not None else None
        if group is not None and last == group:
            return ''
        name = group if group is not None else node.name
        value = node.origin.value if node.origin is not None else node.value
        if isinstance(value, Block):
            result += name + ':' + _generate_source(value)
        else:
            result += f"{name}:{value};"
    return result


def generate_extended(block: Block) -> str:
    """Regenerate block source with `name*N {}` turned into `@MN(name{})`."""
    return _generate_source(block).strip()
