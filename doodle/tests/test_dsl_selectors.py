"""
Tests for cell predicates used by conditional blocks.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from doodle.dsl_selectors import SELECTORS, compare, nth, parse_linear
from doodle.dsl_utils import Coords, Grid, SeededRandom


def make_coords(x, y, gx=3, gy=3):
    grid = Grid(gx, gy, 1, gx * gy, gx / gy)
    return Coords(x=x, y=y, count=(y - 1) * gx + x, grid=grid, random=SeededRandom("1"))


# =============================================================================
# Linear expressions
# =============================================================================

class TestLinear:
    """Parsing an+b."""

    def test_full_form(self):
        assert parse_linear("2n+1") == (2, 1)

    def test_negative_offset(self):
        assert parse_linear("3n-2") == (3, -2)

    def test_bare_n(self):
        assert parse_linear("n") == (1, 0)

    def test_negative_coefficient(self):
        assert parse_linear("-n+3") == (-1, 3)

    def test_constant(self):
        assert parse_linear("4") == (0, 4)

    def test_not_linear(self):
        assert parse_linear("n*n") is None


class TestNth:
    """Matching an index against a rule."""

    def test_odd_steps(self):
        assert nth("2n+1", 3, 9)
        assert not nth("2n+1", 2, 9)

    def test_constant(self):
        assert nth("3", 3, 9)
        assert not nth("3", 4, 9)

    def test_before_offset(self):
        assert not nth("n+2", 1, 9)

    def test_descending(self):
        assert nth("-n+3", 2, 9)
        assert not nth("-n+3", 4, 9)

    def test_evaluated_fallback(self):
        assert nth("n*n", 4, 10)
        assert not nth("n*n", 5, 10)

    def test_keywords(self):
        assert compare("odd", 3, 9)
        assert compare("even", 4, 9)
        assert compare("n", 7, 9)


# =============================================================================
# Registry
# =============================================================================

class TestSelectors:
    """Each registered predicate against a 3x3 grid."""

    def test_at(self):
        assert SELECTORS["at"](make_coords(2, 3))("2", "3")
        assert not SELECTORS["at"](make_coords(2, 3))("3", "2")

    def test_nth(self):
        test = SELECTORS["nth"](make_coords(2, 1))
        assert test("2")
        assert test("5", "2")
        assert not test("odd")

    def test_row_and_col(self):
        coords = make_coords(1, 2)
        assert SELECTORS["row"](coords)("2")
        assert SELECTORS["y"](coords)("even")
        assert SELECTORS["col"](coords)("1")
        assert not SELECTORS["x"](coords)("2")

    def test_checkerboard(self):
        assert SELECTORS["odd"](make_coords(1, 1))()
        assert not SELECTORS["even"](make_coords(1, 1))()
        assert SELECTORS["even"](make_coords(1, 2))()

    def test_random_limits(self):
        coords = make_coords(1, 1)
        assert SELECTORS["random"](coords)("1")
        assert not SELECTORS["random"](coords)("0")

    def test_match(self):
        assert SELECTORS["match"](make_coords(2, 1))("x > 1")
        assert not SELECTORS["match"](make_coords(1, 1))("x > 1")

    def test_surplus_arguments_ignored(self):
        coords = make_coords(2, 3)
        assert SELECTORS["at"](coords)("2", "3", "9")
        assert SELECTORS["match"](coords)("x > 1", "y")
        assert SELECTORS["random"](coords)("1", "0")

    def test_hover_self(self):
        assert SELECTORS["hover"](make_coords(2, 2))() == {"selector": "$:hover"}

    def test_hover_neighbour(self):
        result = SELECTORS["hover"](make_coords(2, 2))("1 0")
        assert result == {"selector": "$:hover +*"}

    def test_hover_row_offset_uses_grid_width(self):
        result = SELECTORS["hover"](make_coords(2, 2))("0 1")
        assert result == {"selector": "$:hover " + "+*" * 3}

    def test_hover_outside_grid(self):
        assert SELECTORS["hover"](make_coords(3, 3))("1 1") is False

    def test_aliases_share_factory(self):
        assert SELECTORS["row"] is SELECTORS["y"]
        assert SELECTORS["col"] is SELECTORS["x"]
