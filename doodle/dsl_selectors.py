"""
Cell predicates for conditional blocks.

Each entry of SELECTORS takes the current Coords and returns a function of
the conditional's arguments. The function returns a boolean, or for @hover
a dict holding a derived `selector` in which `$` stands for the cell.

Linear index expressions (`2n+1`) are parsed with the grammar in
dsl_linear.lark; anything that grammar rejects is evaluated for n = 0..max.
"""

import re
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from lark import Lark, Transformer, v_args
from lark.exceptions import LarkError

from .dsl_calc import evaluate
from .dsl_utils import Coords, is_nan, js_number, stringify


GRAMMAR_PATH = Path(__file__).parent / "dsl_linear.lark"


@v_args(inline=True)
class LinearTransformer(Transformer):
    """Reduce an an+b parse tree to the pair (a, b)."""

    def start(self, pair):
        return pair

    def linear(self, sign, coefficient, offset_sign, offset):
        a = js_number(str(coefficient)) if coefficient is not None else 1
        if sign == '-':
            a = -a
        b = js_number(str(offset)) if offset is not None else 0
        if offset_sign == '-':
            b = -b
        return (a, b)

    def constant(self, sign, number):
        b = js_number(str(number))
        return (0, -b if sign == '-' else b)


_parser = None


def get_parser():
    """Get or create the Lark parser instance."""
    global _parser
    if _parser is None:
        with open(GRAMMAR_PATH) as f:
            grammar = f.read()
        _parser = Lark(
            grammar,
            parser='earley',
            maybe_placeholders=True,
        )
    return _parser


def parse_linear(expression: str) -> Optional[Tuple[float, float]]:
    """Parse `an+b` into (a, b), or None when it is not linear."""
    try:
        tree = get_parser().parse(str(expression))
    except LarkError:
        return None
    return LinearTransformer().transform(tree)


def even(n) -> bool:
    return js_number(n) % 2 == 0


def odd(n) -> bool:
    return js_number(n) % 2 == 1


def nth(expression, value, max_value) -> bool:
    pair = parse_linear(expression)
    if pair is not None:
        a, b = pair
        if a == 0:
            return value == b
        steps = (value - b) / a
        return steps >= 0 and float(steps).is_integer()
    for n in range(int(max_value) + 1):
        if evaluate(expression, {'n': n}) == value:
            return True
    return False


def compare(rule, value, max_value) -> bool:
    rule = stringify(rule).strip()
    if rule == 'even':
        return even(value)
    if rule == 'odd':
        return odd(value)
    if rule == 'n':
        return True
    return nth(rule, value, max_value)


# =============================================================================
# Registry
# =============================================================================

SELECTORS: Dict[str, Callable[[Coords], Callable]] = {}


def selector(name: str, *aliases: str):
    def register(fn):
        for n in (name,) + aliases:
            SELECTORS[n] = fn
        return fn
    return register


def _calc_context(coords: Coords) -> dict:
    grid = coords.grid
    return {
        'x': coords.x, 'X': grid.x, 'y': coords.y, 'Y': grid.y,
        'i': coords.count, 'I': grid.count, 'random': coords.random,
    }


@selector('at')
def at(coords: Coords):
    def test(x=None, y=None, *_):
        return js_number(x) == coords.x and js_number(y) == coords.y
    return test


@selector('nth')
def nth_cell(coords: Coords):
    return lambda *rules: any(compare(r, coords.count, coords.grid.count) for r in rules)


@selector('y', 'row')
def row(coords: Coords):
    return lambda *rules: any(compare(r, coords.y, coords.grid.y) for r in rules)


@selector('x', 'col')
def col(coords: Coords):
    return lambda *rules: any(compare(r, coords.x, coords.grid.x) for r in rules)


@selector('even')
def even_cell(coords: Coords):
    return lambda *args: odd(coords.x + coords.y)


@selector('odd')
def odd_cell(coords: Coords):
    return lambda *args: even(coords.x + coords.y)


@selector('random')
def random_cell(coords: Coords):
    def test(ratio=.5, *_):
        if re.search(r'\D', stringify(ratio)):
            limit = evaluate('(' + stringify(ratio) + ')', _calc_context(coords))
        else:
            limit = js_number(ratio)
        return coords.random() < limit
    return test


@selector('match')
def match(coords: Coords):
    def test(expression='', *_):
        return bool(evaluate('(' + stringify(expression) + ')', _calc_context(coords)))
    return test


def _hover_selector(offset: int) -> str:
    if offset == 0:
        return '$:hover'
    if offset > 0:
        return '$:hover ' + '+*' * offset
    return ':has(+ ' + '*+' * (abs(offset + 1)) + ' $:hover)'


@selector('hover')
def hover(coords: Coords):
    """Selector for neighbours of a hovered cell, given as `dx dy` offsets."""
    def test(*args):
        selectors = []
        if not args:
            selectors.append('$:hover')
        for arg in args:
            parts = [js_number(p) for p in stringify(arg).split()]
            if not parts or any(is_nan(p) for p in parts):
                continue
            dx = int(parts[0])
            if len(parts) == 1:
                # A plain sibling offset: @hover(1, -2)
                selectors.append(_hover_selector(dx))
                continue
            dy = int(parts[1])
            nx, ny = coords.x + dx, coords.y + dy
            if not (1 <= nx <= coords.grid.x and 1 <= ny <= coords.grid.y):
                continue
            selectors.append(_hover_selector(dy * coords.grid.x + dx))
        if not selectors:
            return False
        return {'selector': ','.join(selectors)}
    return test
