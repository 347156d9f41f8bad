"""
Tests for the composer: cell iteration, rule buckets, seeds and side tables.
"""

import re
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from doodle.dsl_collaborators import CollaboratorRegistry
from doodle.dsl_compose import (
    PARSE_CACHE_LIMIT, SHAPE_CACHE_LIMIT, Compiler, CompileResult, compile,
)
from doodle.dsl_config import CompilerOptions
from doodle.dsl_functions import BUILTINS, Builtin
from doodle.dsl_selectors import SELECTORS
from doodle.dsl_shader import FRAGMENT_HEAD
from doodle.dsl_utils import SeededRandom


# =============================================================================
# Rules and selectors
# =============================================================================

class TestCellRules:
    """Declarations land in per-cell buckets."""

    def test_single_cell(self):
        result = compile("color: red;", seed="1")
        assert result.styles.cells == "#c-1-1-1 {color: red;}"
        assert result.styles.main == ""
        assert result.styles.all == result.styles.cells

    def test_every_cell_gets_a_rule(self):
        result = compile("color: red;", grid="2x2", seed="1")
        assert result.styles.cells == (
            "#c-1-1-1 {color: red;}#c-2-1-1 {color: red;}"
            "#c-1-2-1 {color: red;}#c-2-2-1 {color: red;}"
        )

    def test_cell_block(self):
        assert compile("cell { color: red; }", seed="1").styles.cells == "#c-1-1-1 {color: red;}"

    def test_width_mirrors_internal_variable(self):
        assert compile("width: 5px;", seed="1").styles.cells == (
            "#c-1-1-1 {width: 5px;--internal-cell-width: 5px;}"
        )

    def test_size_property(self):
        assert compile("@size: 10px;", seed="1").styles.cells == (
            "#c-1-1-1 {width: 10px;height: 10px;"
            "--internal-cell-width: 10px;--internal-cell-height: 10px;}"
        )


class TestSpecialSelectors:
    """Host and container rules are emitted once."""

    def test_host(self):
        result = compile(":host { background: red; }", grid="3", seed="1")
        assert result.styles.main == ":host,.host {background: red;}"
        assert result.styles.cells == ""

    def test_doodle_alias(self):
        result = compile(":doodle { background: red; }", seed="1")
        assert result.styles.main == ":host,.host {background: red;}"

    def test_container(self):
        result = compile(":container { gap: 1px; }", seed="1")
        assert result.styles.main == "grid {gap: 1px;}"

    def test_pseudo_class(self):
        result = compile(":hover { color: red; }", seed="1")
        assert result.styles.cells == "#c-1-1-1:hover {color: red;}"

    def test_pseudo_element_content_is_quoted(self):
        result = compile("::after { content: x; }", seed="1")
        assert result.styles.cells == "#c-1-1-1::after {content: 'x';}"


class TestContent:
    """Text content of cells."""

    def test_plain_content_is_quoted(self):
        assert compile("content: hello;", seed="1").styles.cells == (
            "#c-1-1-1 {content: 'hello';}"
        )

    def test_quoted_content_unchanged(self):
        assert compile('content: "hi";', seed="1").styles.cells == '#c-1-1-1 {content: "hi";}'

    def test_content_property_fills_table(self):
        result = compile("@content: hi;", seed="1")
        assert result.content == {"#c-1-1-1": "hi"}
        assert result.styles.cells == ""


# =============================================================================
# Grid
# =============================================================================

class TestGrid:
    """Grid resolution and the @grid directive."""

    def test_grid_property(self):
        result = compile("@grid: 2x3;", seed="1")
        assert (result.grid.x, result.grid.y, result.grid.count) == (2, 3, 6)
        assert result.styles.cells.count("#c-") == 0

    def test_host_grid_shorthand(self):
        result = compile(":host { grid: 3x3; }", seed="1")
        assert (result.grid.x, result.grid.y) == (3, 3)

    def test_source_grid_beats_argument(self):
        result = compile("@grid: 2;", grid="5", seed="1")
        assert (result.grid.x, result.grid.y) == (2, 2)

    def test_grid_size_goes_to_host(self):
        result = compile("@grid: 2 / 100px;", seed="1")
        assert result.styles.main.startswith(":host,.host {")
        assert "100px" in result.styles.main

    def test_grid_is_clamped(self):
        assert compile("@grid: 100;", seed="1").grid.x == 64

    def test_experimental_raises_limit(self):
        options = CompilerOptions(experimental=True)
        assert compile("@grid: 70x1;", seed="1", options=options).grid.x == 70

    def test_depth_grid(self):
        result = compile("order: @z;", grid="1x1x2", seed="1")
        assert result.grid.z == 2
        assert "#c-1-1-2 {order: 2;}" in result.styles.cells


# =============================================================================
# Seeds and randomness
# =============================================================================

class TestSeeds:
    """Seed precedence and determinism."""

    def test_same_seed_same_output(self):
        a = compile("order: @r(1000);", grid="4", seed=42)
        b = compile("order: @r(1000);", grid="4", seed=42)
        assert a.styles.all == b.styles.all
        assert a.seed == "42"

    def test_different_seed_different_output(self):
        a = compile("color: red; order: @r(1000);", grid="10", seed="a")
        b = compile("color: red; order: @r(1000);", grid="10", seed="b")
        assert a.styles.cells != b.styles.cells
        for result in (a, b):
            assert result.styles.cells.count("{color: red;order: ") == 100

    def test_source_seed(self):
        with_source = compile("@seed: abc; order: @r(1000);", grid="3")
        with_argument = compile("order: @r(1000);", grid="3", seed="abc")
        assert with_source.seed == "abc"
        assert with_source.styles.cells == with_argument.styles.cells

    def test_source_seed_wins(self):
        assert compile("@seed: abc;", seed="x").seed == "abc"

    def test_host_seed(self):
        assert compile(":host { @seed: 7; }").seed == "7"

    def test_options_seed(self):
        assert compile("color: red;", options=CompilerOptions(seed="opt")).seed == "opt"

    def test_random_argument(self):
        assert compile("color: red;", random=SeededRandom("r")).seed == "r"

    def test_time_seed(self):
        assert compile("color: red;").seed.isdigit()

    def test_host_grid_with_random_values(self):
        source = ":host{ grid:3x3 } cell{ background: @r(red,blue) }"
        a = compile(source, seed=42)
        b = compile(source, seed=42)
        assert (a.grid.x, a.grid.y) == (3, 3)
        # @r draws from a numeric range, so word arguments give NaN in every cell
        assert re.findall(r"background: ([^;]+);", a.styles.cells) == ["NaN"] * 9
        assert a.styles.all == b.styles.all

    def test_host_grid_with_picked_values(self):
        source = ":host{ grid:3x3 } cell{ background: @p(red,blue) }"
        values = re.findall(r"background: ([^;]+);", compile(source, seed=42).styles.cells)
        assert len(values) == 9
        assert set(values) <= {"red", "blue"}

    def test_broadcast_targets_share_one_value(self):
        result = compile("--a, --b: @r(1000);", grid="3", seed=7)
        assert len(result.variables) == 9
        for values in result.variables.values():
            assert values["--a"] == values["--b"]
        firsts = {values["--a"] for values in result.variables.values()}
        assert len(firsts) > 1

    def test_broadcast_css_properties_match(self):
        cells = compile("@grid: 1; a, b: @r(1000);", seed=7).styles.cells
        a, b = re.match(r"#c-1-1-1 \{a: ([^;]+);b: ([^;]+);\}", cells).groups()
        assert a == b

    def test_picked_values_from_arguments(self):
        result = compile("color: @p(red, blue);", grid="5", seed="s")
        values = re.findall(r"color: (\w+);", result.styles.cells)
        assert len(values) == 25
        assert set(values) <= {"red", "blue"}


class TestContainment:
    """One declaration failing never aborts the compile."""

    def test_failing_builtin_keeps_text(self, monkeypatch):
        def factory(coords):
            def apply(*args):
                raise RuntimeError("broken")
            return apply

        monkeypatch.setitem(BUILTINS, "boom", Builtin(factory))
        result = compile("color: red; order: @boom(1); width: 2px;", grid="2x1", seed="1")

        assert result.styles.cells == (
            "#c-1-1-1 {color: red;order: @boom(1);width: 2px;--internal-cell-width: 2px;}"
            "#c-2-1-1 {color: red;order: @boom(1);width: 2px;--internal-cell-width: 2px;}"
        )
        assert len(result.diagnostics.warnings) == 2
        warning = result.diagnostics.warnings[0]
        assert warning.message == "cannot compose order: broken"
        assert warning.line == 1

    def test_failing_directive_is_dropped(self, monkeypatch):
        def factory(coords):
            def apply(*args):
                raise ValueError("bad size")
            return apply

        monkeypatch.setitem(BUILTINS, "boom", Builtin(factory))
        result = compile("@size: @boom(1); color: red;", seed="1")
        assert result.styles.cells == "#c-1-1-1 {color: red;}"
        assert result.diagnostics.has_warnings

    def test_failing_selector_skips_block(self, monkeypatch):
        def factory(coords):
            def test(*args):
                raise RuntimeError("broken")
            return test

        monkeypatch.setitem(SELECTORS, "boom", factory)
        result = compile("@boom { color: red; } order: 1;", seed="1")
        assert result.styles.cells == "#c-1-1-1 {order: 1;}"
        assert result.diagnostics.warnings[0].message == "cannot test @boom: broken"


# =============================================================================
# Variables and conditionals
# =============================================================================

class TestVariables:
    """Custom properties and @use."""

    def test_host_variables(self):
        result = compile(":host { --size: 10px; }", seed="1")
        assert result.variables == {"host": {"--size": "10px"}}
        assert result.styles.main == ":host,.host {--size: 10px;}"

    def test_cell_variables_keyed_by_count(self):
        result = compile("--n: @i;", grid="2x1", seed="1")
        assert result.variables == {1: {"--n": "1"}, 2: {"--n": "2"}}

    def test_use_supplied_variable(self):
        options = CompilerOptions(variables={"--base": "color: red;"})
        result = compile("@use: var(--base);", seed="1", options=options)
        assert result.styles.cells == "#c-1-1-1 {color: red;}"


class TestConditionals:
    """Selector functions gate their blocks."""

    def test_nth(self):
        result = compile("@nth(2) { color: red; }", grid="3x1", seed="1")
        assert result.styles.cells == "#c-2-1-1 {color: red;}"

    def test_negated(self):
        result = compile("@nth(2) not { color: red; }", grid="3x1", seed="1")
        assert result.styles.cells == "#c-1-1-1 {color: red;}#c-3-1-1 {color: red;}"

    def test_selector_producing_conditional(self):
        result = compile("@hover { color: red; }", seed="1")
        assert result.styles.cells == "#c-1-1-1:hover {color: red;}"

    def test_even(self):
        result = compile("@even { order: @i; }", grid="4x1", seed="1")
        assert result.styles.cells == "#c-2-1-1 {order: 2;}#c-4-1-1 {order: 4;}"


# =============================================================================
# Animation
# =============================================================================

class TestKeyframes:
    """Keyframes are emitted once plus once per cell."""

    SOURCE = "@keyframes spin { from { opacity: 0; } to { opacity: 1; } } animation: spin 1s;"

    def test_animation_names_suffixed(self):
        result = compile(self.SOURCE, grid="2x1", seed="1")
        assert result.styles.cells == (
            "#c-1-1-1 {animation: spin 1s;}#c-2-1-1 {animation: spin-2 1s;}"
        )
        assert result.props.get("has_animation")

    def test_keyframes_blocks(self):
        main = compile(self.SOURCE, grid="2x1", seed="1").styles.main
        assert main.startswith("@keyframes spin {from {opacity: 0;}to {opacity: 1;}}")
        assert "@keyframes spin-1 {" in main
        assert "@keyframes spin-2 {" in main

    def test_transition_flag(self):
        assert compile("transition: all 1s;", seed="1").props.get("has_transition")

    def test_time_uniform_animation(self):
        result = compile("--t: @t;", seed="1")
        assert result.uniforms == {"time": True}
        assert "@keyframes cssd-utime-animation" in result.styles.main
        assert ":host,.host {animation:" in result.styles.main


# =============================================================================
# Embedded documents and collaborators
# =============================================================================

class TestEmbedded:
    """@doodle, @shaders and @pattern placeholders."""

    def test_nested_doodle(self):
        result = compile("background: @doodle(:doodle { @grid: 2; });", seed="1")
        assert list(result.doodles) == ["doodle-1"]
        assert "@grid" in result.doodles["doodle-1"]["doodle"]
        assert result.styles.cells == "#c-1-1-1 {background: ${doodle-1};}"

    def test_nested_doodle_argument(self):
        result = compile("background: @doodle(5, color: red;);", seed="1")
        assert result.doodles["doodle-1"]["arg"] == "5"

    def test_shader_placeholder(self):
        result = compile("background: @shaders(void main() {});", seed="1")
        entry = result.shaders["shader-1"]
        assert entry["cell"] == "c-1-1-1"
        assert entry["markup"].startswith(FRAGMENT_HEAD)
        assert result.styles.cells == (
            "#c-1-1-1 {background: ${shader-1};background-size: 100% 100%;}"
        )

    def test_pattern(self):
        result = compile("background: @pattern(grid: 2; fill: red;);", seed="1")
        assert "vec2(2.0, 2.0)" in result.pattern["pattern-1"]["markup"]

    def test_failing_collaborator_is_contained(self):
        def boom(source):
            raise RuntimeError("broken")

        registry = CollaboratorRegistry()
        registry.register("shaders", boom, lambda tree: "")
        result = Compiler(collaborators=registry).compile(
            "background: @shaders(void main() {});", seed="1")

        assert "markup" not in result.shaders["shader-1"]
        assert "${shader-1}" in result.styles.cells
        assert result.diagnostics.has_warnings
        assert "@shaders failed to render: broken" in result.diagnostics.warnings[0].message


# =============================================================================
# Compiler and results
# =============================================================================

class TestCompiler:
    """Reusable compiler instances."""

    def test_parse_is_cached(self):
        compiler = Compiler()
        assert compiler.parse("color: red;") is compiler.parse("color: red;")

    def test_caches_are_bounded(self):
        compiler = Compiler()
        first = compiler.parse("order: 0;")
        for n in range(1, PARSE_CACHE_LIMIT + 1):
            compiler.parse(f"order: {n};")
        assert len(compiler._parsed) == PARSE_CACHE_LIMIT
        assert compiler.parse("order: 0;") is not first
        assert compiler.cache.limit == SHAPE_CACHE_LIMIT

    def test_compiles_are_independent(self):
        compiler = Compiler()
        a = compiler.compile("order: @pn(1, 2);", grid="2x1", seed="1")
        b = compiler.compile("order: @pn(1, 2);", grid="2x1", seed="1")
        assert a.styles.cells == b.styles.cells

    def test_diagnostics_are_collected(self):
        result = compile(":host { color: red;", seed="1")
        assert result.diagnostics.has_errors

    def test_to_dict(self):
        data = compile("--n: 1;", seed="1").to_dict()
        assert data["seed"] == "1"
        assert data["grid"] == {"x": 1, "y": 1, "z": 1, "count": 1, "ratio": 1}
        assert data["variables"] == {"1": {"--n": "1"}}
        assert "random" not in data

    def test_result_defaults(self):
        result = CompileResult()
        assert result.styles.all == ""
        assert result.grid.count == 1
