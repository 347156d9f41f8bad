"""
Lexer for the doodle language.

Tokenizes source text into a flat stream of Symbol, Number, Word and Space
tokens. The same stream feeds every sub-grammar: style rules, function
arguments, grid directives, path commands and the vector sub-language.

The lexer never raises. Anything it does not recognise ends up inside a
Word token.
"""

import bisect
from dataclasses import dataclass
from enum import Enum, auto
from typing import List, Optional, Sequence, Tuple, Union


class TokenType(Enum):
    SYMBOL = auto()
    NUMBER = auto()
    WORD = auto()
    SPACE = auto()
    LINE_BREAK = auto()   # synthesized by the shader splitter only


SYMBOLS = frozenset([
    ':', ';', ',', '(', ')', '[', ']',
    '{', '}', 'π', '±', '+', '-', '*',
    '/', '%', '"', "'", '`', '@', '=',
    '^',
])

QUOTES = frozenset(['"', "'", '`'])

# Whitespace touching one of these is insignificant
SPACING_SYMBOLS = frozenset([':', ';', ',', '{', '}', '(', ')', '[', ']'])

HEX_DIGITS = frozenset('0123456789abcdefABCDEF')


@dataclass
class Token:
    type: TokenType
    value: str
    line: int
    column: int
    offset: int = 0
    status: Optional[str] = None  # "open" or "close" on quote symbols

    def is_symbol(self, *values: str) -> bool:
        if self.type != TokenType.SYMBOL:
            return False
        if not values:
            return True
        return self.value in values

    def is_space(self) -> bool:
        return self.type == TokenType.SPACE

    def is_number(self) -> bool:
        return self.type == TokenType.NUMBER

    def is_word(self) -> bool:
        return self.type == TokenType.WORD

    @property
    def position(self) -> Tuple[int, int]:
        return (self.column, self.line)

    def __repr__(self):
        return f"Token({self.type.name}, {self.value!r}, {self.line}:{self.column})"


def _is_digit(c: str) -> bool:
    return len(c) == 1 and '0' <= c <= '9'


def _is_space(c: str) -> bool:
    return len(c) == 1 and c.isspace()


def _breaks_word(c: str) -> bool:
    return c in SYMBOLS or _is_space(c) or _is_digit(c)


class Lexer:
    """Tokenizer for the doodle language."""

    def __init__(self, source: str, preserve_line_break: bool = False,
                 ignore_inline_comment: bool = False):
        self.source = str(source).strip()
        self.preserve_line_break = preserve_line_break
        self.ignore_inline_comment = ignore_inline_comment
        self.pos = 0
        self.tokens: List[Token] = []
        self.quote_stack: List[str] = []
        self._line_starts = [0]
        for i, char in enumerate(self.source):
            if char == '\n':
                self._line_starts.append(i + 1)

    def tokenize(self) -> List[Token]:
        """Tokenize the entire source and return list of tokens."""
        while not self._at_end():
            self._scan_token()
            self.pos += 1

        if self.tokens and self.tokens[-1].is_space():
            self.tokens.pop()
        return self.tokens

    def _at_end(self) -> bool:
        return self.pos >= len(self.source)

    def _peek(self, offset: int = 0) -> str:
        pos = self.pos + offset
        if pos < 0 or pos >= len(self.source):
            return ''
        return self.source[pos]

    def _location(self, offset: int) -> Tuple[int, int]:
        index = bisect.bisect_right(self._line_starts, offset) - 1
        return index + 1, offset - self._line_starts[index] + 1

    def _add_token(self, token_type: TokenType, value: str, offset: int,
                   status: Optional[str] = None):
        line, column = self._location(offset)
        self.tokens.append(Token(token_type, value, line, column, offset, status))

    def _last(self) -> Optional[Token]:
        return self.tokens[-1] if self.tokens else None

    def _scan_token(self):
        start = self.pos
        prev, char = self._peek(-1), self._peek()
        nxt, nxt2 = self._peek(1), self._peek(2)

        # Comments
        if char == '/' and nxt == '*':
            self._skip_comment()
            return
        if self.ignore_inline_comment and char == '/' and nxt == '/':
            self._skip_line()
            return

        # Numbers
        if char == '0' and nxt.lower() == 'x' and nxt2 in HEX_DIGITS:
            self._add_token(TokenType.NUMBER, self._read_hex(), start)
            return
        if _is_digit(char) or (_is_digit(nxt) and char == '.' and prev != '.'):
            self._add_token(TokenType.NUMBER, self._read_number(), start)
            return

        # Symbols
        if char in SYMBOLS and not (char == '/' and nxt == '>'):
            self._scan_symbol(char, nxt, nxt2, start)
            return

        # Whitespace
        if _is_space(char):
            self._scan_space(start)
            return

        word = self._read_word()
        if word:
            self._add_token(TokenType.WORD, word, start)

    def _scan_symbol(self, char: str, nxt: str, nxt2: str, start: int):
        last = self._last()
        next_is_digit = _is_digit(nxt) or (nxt == '.' and _is_digit(nxt2))
        if char == '-' and next_is_digit and (last is None or not last.is_number()):
            self._add_token(TokenType.NUMBER, self._read_number(), start)
            return

        # Escaped symbol inside quotes collapses into a word
        if self.quote_stack and last is not None and last.value == '\\':
            self.tokens.pop()
            word = self._read_word()
            if word:
                self._add_token(TokenType.WORD, word, start)
            return

        status = None
        if char in QUOTES:
            if self.quote_stack and self.quote_stack[-1] == char:
                self.quote_stack.pop()
                status = 'close'
            else:
                self.quote_stack.append(char)
                status = 'open'
        self._add_token(TokenType.SYMBOL, char, start, status)

    def _scan_space(self, start: int):
        spaces = self._read_spaces()
        last = self._last()
        following = self._peek(1)
        if not self.quote_stack and last is not None:
            ignore_left = last.value in SPACING_SYMBOLS and last.value != ')'
            ignore_right = following in SPACING_SYMBOLS and following != '('
            if ignore_left or ignore_right:
                return
            if self.preserve_line_break and '\n' in spaces:
                spaces = '\n'
            else:
                spaces = ' '
        if self.tokens and following.strip():
            self._add_token(TokenType.SPACE, spaces, start)

    def _skip_comment(self):
        while True:
            self.pos += 1
            if self._at_end():
                return
            if self.source[self.pos] == '/' and self.source[self.pos - 1] == '*':
                return

    def _skip_line(self):
        while True:
            self.pos += 1
            if self._at_end() or self.source[self.pos] == '\n':
                return

    def _read_word(self) -> str:
        temp = ''
        while not self._at_end():
            char, nxt = self._peek(), self._peek(1)
            temp += char
            # `</` keeps a closing tag in one word
            if _breaks_word(nxt) and not (char == '<' and nxt == '/'):
                break
            self.pos += 1
        return temp.strip()

    def _read_spaces(self) -> str:
        temp = ''
        while not self._at_end():
            temp += self._peek()
            if not _is_space(self._peek(1)):
                break
            self.pos += 1
        return temp

    def _read_number(self) -> str:
        temp = ''
        has_dot = False
        while not self._at_end():
            char = self._peek()
            nxt, nxt2, nxt3 = self._peek(1), self._peek(2), self._peek(3)
            temp += char
            if has_dot and nxt == '.':
                break
            if char == '.':
                has_dot = True
            if nxt == '.' and nxt2 == '.':
                break
            if nxt.lower() == 'e' and nxt2 in ('+', '-') and _is_digit(nxt3):
                self.pos += 2
                temp += nxt + nxt2
            elif nxt.lower() == 'e' and _is_digit(nxt2):
                self.pos += 1
                temp += nxt
            elif not _is_digit(nxt) and nxt != '.':
                break
            self.pos += 1
        return temp

    def _read_hex(self) -> str:
        temp = '0x'
        self.pos += 2
        while not self._at_end():
            temp += self._peek()
            if self._peek(1) not in HEX_DIGITS:
                break
            self.pos += 1
        return temp


def tokenize(source: str, preserve_line_break: bool = False,
             ignore_inline_comment: bool = False) -> List[Token]:
    """Convenience function to tokenize source code."""
    lexer = Lexer(source, preserve_line_break, ignore_inline_comment)
    return lexer.tokenize()


# =============================================================================
# Token helpers shared by the small sub-grammars
# =============================================================================

def join_tokens(tokens: Sequence[Token]) -> str:
    return ''.join(t.value for t in tokens)


def split_groups(text, symbols: Union[str, Sequence[str]] = ',',
                 no_space: bool = False, verbose: bool = False) -> list:
    """Split text on separator symbols outside parens and quotes.

    Spaces also separate unless no_space is set. With verbose, each group
    is returned as a (separator, value) pair where separator is the symbol
    that opened the group ('' for the first one).
    """
    if text is None or text == '':
        return []
    if isinstance(symbols, str):
        symbols = [symbols]
    symbols = list(symbols)

    def is_separator(token: Optional[Token]) -> bool:
        if token is None:
            return False
        if no_space:
            return token.is_symbol(*symbols)
        return token.is_symbol(*symbols) or token.is_space()

    groups: list = []
    current: List[Token] = []
    paren_depth = 0
    quote_depth = 0
    group_name = ''

    def add_group():
        value = join_tokens(current)
        if verbose:
            if group_name or value:
                groups.append((group_name, value))
        else:
            groups.append(value)

    tokens = tokenize(text)
    for i, token in enumerate(tokens):
        prev = tokens[i - 1] if i > 0 else None
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        if token.is_symbol('('):
            paren_depth += 1
        if token.is_symbol(')'):
            paren_depth = max(0, paren_depth - 1)
        if token.status == 'open':
            quote_depth += 1
        if token.status == 'close':
            quote_depth = max(0, quote_depth - 1)
        at_top = not paren_depth and not quote_depth
        if at_top and no_space and token.is_space():
            if is_separator(nxt) or is_separator(prev):
                continue
        if at_top and is_separator(token):
            add_group()
            group_name = token.value
            current = []
        else:
            current.append(token)

    if current:
        add_group()
    return groups
