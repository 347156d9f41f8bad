"""
Tests for shared helpers: number coercion, ranges, sequences and containers.
"""

import math
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from doodle.dsl_utils import (
    BoundedCache, IdGenerator, SeededRandom, Stack, build_range, by_unit, format_number,
    get_named_arguments, is_nan, js_number, num_range, parse_number_unit,
    sequence, stringify,
)


class TestNumbers:
    """Loose number conversion and formatting."""

    def test_js_number(self):
        assert js_number("12") == 12
        assert js_number(" 1.5 ") == 1.5
        assert js_number("0xff") == 255
        assert js_number("") == 0
        assert is_nan(js_number("abc"))
        assert js_number("-Infinity") == -math.inf

    def test_format_number(self):
        assert format_number(3.0) == "3"
        assert format_number(0.5) == "0.5"
        assert format_number(float("nan")) == "NaN"
        assert format_number(True) == "true"

    def test_stringify_lists(self):
        assert stringify([1, "a", 2.0]) == "1,a,2"
        assert stringify(None) == ""

    def test_parse_number_unit(self):
        assert parse_number_unit("10px") == {"value": 10, "unit": "px"}
        assert parse_number_unit("5") == {"value": 5}
        assert parse_number_unit("red") == {}

    def test_by_unit_keeps_first_unit(self):
        add = by_unit(lambda a, b: a + b)
        assert add("1px", "2") == "3px"
        assert add("1", "2") == 3


class TestRanges:
    """Numeric and character ranges."""

    def test_num_range(self):
        assert num_range(3) == [1, 2, 3]
        assert num_range(1, 5, 2) == [1, 3, 5]
        assert num_range(5, 1, -2) == [5, 3]

    def test_char_range(self):
        assert build_range("[a-c]") == ["a", "b", "c"]
        assert build_range("[c-a]") == ["c", "b", "a"]
        assert build_range("[a-b0-1]") == ["a", "b", "0", "1"]


class TestSequence:
    """Step callbacks for @m and friends."""

    def test_count(self):
        assert sequence("3", lambda *a: a[0]) == [1, 2, 3]

    def test_grid_is_row_major(self):
        steps = sequence("2x2", lambda *a: (a[1], a[2]))
        assert steps == [(1, 1), (2, 1), (1, 2), (2, 2)]

    def test_descending_range(self):
        assert sequence("3-1", lambda *a: a[0]) == [3, 2, 1]


class TestContainers:
    """Stack, id generator and the seeded random stream."""

    def test_stack_last(self):
        stack = Stack()
        assert stack.last() == ""
        for n in (1, 2, 3):
            stack.push(n)
        assert stack.last() == 3
        assert stack.last(2) == 2
        assert stack.last(10) == 1

    def test_stack_limit(self):
        stack = Stack(2)
        for n in (1, 2, 3):
            stack.push(n)
        assert len(stack) == 2
        assert stack.last(2) == 2

    def test_bounded_cache_evicts_least_recent(self):
        cache = BoundedCache(2)
        cache["a"] = 1
        cache["b"] = 2
        assert cache["a"] == 1
        cache["c"] = 3
        assert list(cache) == ["a", "c"]
        assert "b" not in cache

    def test_id_generator(self):
        next_id = IdGenerator()
        assert next_id("circle") == "circle-1"
        assert next_id("defs") == "defs-2"

    def test_seeded_random_is_repeatable(self):
        a, b = SeededRandom("seed"), SeededRandom("seed")
        assert [a() for _ in range(5)] == [b() for _ in range(5)]

    def test_seeded_random_helpers(self):
        rng = SeededRandom(7)
        assert rng.seed == "7"
        assert is_nan(rng.rand())
        assert 0 <= rng.rand(10) < 10
        assert rng.pick(["a", "b"], "c") in ("a", "b", "c")
        assert rng.pick() is None
        assert sorted(rng.shuffle([3, 1, 2])) == [1, 2, 3]

    def test_named_arguments(self):
        named = get_named_arguments(["10", "fill=red"], ["size", "fill"])
        assert named == {"size": "10", "fill": "red"}
