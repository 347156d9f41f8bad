"""
Tests for the builtin function library.

Most builtins are exercised through a full compile so that argument
composition, call-site state and value formatting are covered together.
"""

import re
import sys
from pathlib import Path
from types import SimpleNamespace

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from doodle.dsl_compose import compile
from doodle.dsl_functions import BUILTINS, calc_with, map2d, pick_builtin
from doodle.dsl_utils import Coords, is_nan


def cells(source, grid=None, seed="1"):
    return compile(source, grid=grid, seed=seed).styles.cells


# =============================================================================
# Lookup
# =============================================================================

class TestLookup:
    """Resolving function names."""

    def test_aliases(self):
        assert pick_builtin("index") is pick_builtin("i")
        assert pick_builtin("pick") is pick_builtin("p")

    def test_calc_shorthand(self):
        assert pick_builtin("$px") is BUILTINS["calc"]

    def test_math_fallback(self):
        assert pick_builtin("sin") is not None
        assert pick_builtin("nope") is None


class TestCalcWith:
    """Offsets applied to position values."""

    def test_no_offset(self):
        assert calc_with(3)() == 3

    def test_operator_prefix(self):
        assert calc_with(3)("*2") == "6"
        assert calc_with(3)("+1px") == "4px"

    def test_operator_suffix(self):
        assert calc_with(3)("10-") == "7"

    def test_plain_offset(self):
        assert calc_with(3)("2") == "5"

    def test_symbolic_base(self):
        assert calc_with("var(--t)")("*2") == "calc((var(--t) * 2) * 1)"

    def test_map2d_zero_scale(self):
        assert is_nan(map2d(0.5, 0, 10, 0))


# =============================================================================
# Position
# =============================================================================

class TestPosition:
    """Cell index and grid size accessors."""

    def test_index(self):
        assert cells("order: @i;", "3x1") == (
            "#c-1-1-1 {order: 1;}#c-2-1-1 {order: 2;}#c-3-1-1 {order: 3;}"
        )

    def test_index_with_offset(self):
        assert cells("order: @i(*2);", "3x1") == (
            "#c-1-1-1 {order: 2;}#c-2-1-1 {order: 4;}#c-3-1-1 {order: 6;}"
        )

    def test_coordinates(self):
        out = cells("--a: @x; --b: @y; --c: @X; --d: @Y;", "2x3")
        assert "#c-2-3-1 {--a: 2;--b: 3;--c: 2;--d: 3;}" in out

    def test_depth(self):
        assert cells("order: @z;", "1x1x3") == (
            "#c-1-1-1 {order: 1;}#c-1-1-2 {order: 2;}#c-1-1-3 {order: 3;}"
        )

    def test_size(self):
        assert cells("order: @I;", "2x2").count("order: 4;") == 4

    def test_cell_id(self):
        assert cells("--id: @id;") == "#c-1-1-1 {--id: c-1-1-1;}"

    def test_distance_from_centre(self):
        assert cells("--dx: @dx;", "3x1").startswith("#c-1-1-1 {--dx: -1;}")


# =============================================================================
# Sequences
# =============================================================================

class TestSequences:
    """@m and friends."""

    def test_multiple(self):
        assert cells("grid-area: @m(3, @n);") == "#c-1-1-1 {grid-area: 1,2,3;}"

    def test_space_separated(self):
        assert cells("grid-area: @M3(@n);") == "#c-1-1-1 {grid-area: 1 2 3;}"

    def test_step_totals(self):
        assert cells("grid-area: @m(2, @N);") == "#c-1-1-1 {grid-area: 2,2;}"


# =============================================================================
# Picking and randomness
# =============================================================================

class TestPicking:
    """@p, @pn, @lp and @r."""

    def test_single_choice(self):
        assert cells("color: @p(red);") == "#c-1-1-1 {color: red;}"

    def test_pick_stays_in_set(self):
        out = cells("color: @p(red, blue);", "5", seed="s")
        values = set(re.findall(r"color: (\w+);", out))
        assert values and values <= {"red", "blue"}

    def test_pick_by_turn(self):
        out = cells("order: @pn(1, 2, 3);", "4x1")
        assert re.findall(r"order: (\d+);", out) == ["1", "2", "3", "1"]

    def test_pick_reverse_by_turn(self):
        out = cells("order: @pr(1, 2, 3);", "3x1")
        assert re.findall(r"order: (\d+);", out) == ["3", "2", "1"]

    def test_last_pick(self):
        assert cells("color: @p(red); background: @lp;") == (
            "#c-1-1-1 {color: red;background: red;}"
        )

    def test_char_range(self):
        out = cells("--c: @p([a-c]);", "5")
        assert set(re.findall(r"--c: (\w);", out)) <= {"a", "b", "c"}

    def test_rand_keeps_unit(self):
        assert cells("--r: @r(5, 5);") == "#c-1-1-1 {--r: 5;}"
        assert cells("--r: @r(1px, 1px);") == "#c-1-1-1 {--r: 1px;}"

    def test_rand_range(self):
        out = cells("--r: @r(10);", "4")
        values = [float(v) for v in re.findall(r"--r: ([^;]+);", out)]
        assert len(values) == 16
        assert all(0 <= v < 10 for v in values)

    def test_last_rand(self):
        out = cells("--a: @r(100); --b: @lr;")
        a = re.search(r"--a: ([^;]+);", out).group(1)
        b = re.search(r"--b: ([^;]+);", out).group(1)
        assert a == b

    def test_noise_in_range(self):
        out = cells("--n: @rn(0, 10);", "4")
        values = [float(v) for v in re.findall(r"--n: ([-\d.e]+);", out)]
        assert len(values) == 16

    def test_same_seed_same_picks(self):
        source = "color: @p(red, green, blue); --r: @r(100);"
        assert cells(source, "6", "x") == cells(source, "6", "x")


# =============================================================================
# Values
# =============================================================================

class TestValues:
    """Calculation and CSS value helpers."""

    def test_calc(self):
        assert cells("order: @calc(2 * 3);") == "#c-1-1-1 {order: 6;}"

    def test_calc_shorthand_with_unit(self):
        assert cells("width: $px(1 + 2);") == (
            "#c-1-1-1 {width: 3px;--internal-cell-width: 3px;}"
        )

    def test_calc_sees_variables(self):
        assert cells("--n: 5; order: $(n * 2);") == "#c-1-1-1 {--n: 5;order: 10;}"

    def test_hex(self):
        assert cells("--h: @hex(255);") == "#c-1-1-1 {--h: ff;}"

    def test_stripe(self):
        assert cells("background: @stripe(red, blue);") == (
            "#c-1-1-1 {background: red 0 50%,blue 0 100%;}"
        )

    def test_var_is_left_symbolic(self):
        assert cells("--v: @var(--a);") == "#c-1-1-1 {--v: var(--a);}"

    def test_mirror(self):
        assert cells("--m: @mirror(1, 2);") == "#c-1-1-1 {--m: 1,2,2,1;}"

    def test_code(self):
        assert cells("--c: @code(65);") == "#c-1-1-1 {--c: A;}"

    def test_math(self):
        assert cells("--s: @sin(0);") == "#c-1-1-1 {--s: 0;}"
        assert cells("--pi: @PI;") == "#c-1-1-1 {--pi: 3.141592653589793;}"

    def test_unknown_function_kept(self):
        assert cells("color: @nope(1);") == "#c-1-1-1 {color: @nope;}"

    def test_time_uniform(self):
        result = compile("--t: @t;", seed="1")
        assert result.styles.cells == "#c-1-1-1 {--t: var(--cssd-utime);}"
        assert result.uniforms == {"time": True}


class TestSurplusArguments:
    """Extra arguments are ignored rather than failing the declaration."""

    def test_var_with_fallback_argument(self):
        result = compile("@grid: 1; --v: @var(--a, 3);", seed="1")
        assert result.styles.cells == "#c-1-1-1 {--v: var(--a);}"
        assert not result.diagnostics.warnings

    def test_calc_ignores_second_argument(self):
        assert cells("order: @calc(1, 2);") == "#c-1-1-1 {order: 1;}"

    def test_calc_with_short_function_call(self):
        assert cells("order: @calc(gcd(4));") == "#c-1-1-1 {order: 4;}"

    def test_fixed_arity_builtins(self):
        for value in ["@i(1, 2)", "@X(1, 2)", "@dx(1, 2)", "@hex(255, 1)",
                      "@r(5) @lr(1, 2)", "@p(a) @lp(1, 2)", "@ut(1, 2)"]:
            result = compile(f"--v: {value};", seed="1")
            assert not result.diagnostics.warnings, value
            assert result.styles.cells.startswith("#c-1-1-1 {--v: "), value


# =============================================================================
# Images and shapes
# =============================================================================

class TestImages:
    """@svg, @shape and path helpers."""

    def test_svg_url(self):
        out = cells("background: @svg(circle { r: 1; });")
        assert 'background: url("data:image/svg+xml;utf8,' in out
        assert "circle" in out

    def test_shape(self):
        assert "clip-path: polygon(" in cells("clip-path: @shape(hexagon);")

    def test_flip_h(self):
        flip_h = BUILTINS["flipH"].factory(Coords())
        assert flip_h("M 1 2 h 3") == "M1 2 h-3"

    def test_invert(self):
        invert = BUILTINS["invert"].factory(Coords())
        assert invert("M 0 0 h 5") == "M0 0 v5"

    def test_reverse_plain_values(self):
        reverse = BUILTINS["reverse"].factory(Coords())
        assert reverse("a", "b") == ["b", "a"]

    def test_cycle(self):
        cycle = BUILTINS["cycle"].factory(Coords())
        assert cycle("a b c") == ["a b c", "b c a", "c a b"]

    def test_raw_decodes_svg_url(self):
        raw = BUILTINS["raw"].factory(Coords(composer=SimpleNamespace(doodles={})))
        assert raw('url("data:image/svg+xml;utf8,%3Csvg%3E%3C%2Fsvg%3E")') == "<svg></svg>"

    def test_raw_nested_doodle(self):
        doodles = {"doodle-1": {"doodle": "color: red;", "arg": None}}
        raw = BUILTINS["raw"].factory(Coords(composer=SimpleNamespace(doodles=doodles)))
        assert raw("${doodle-1}") == "<css-doodle>color: red;</css-doodle>"
