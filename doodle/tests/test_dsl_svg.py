"""
Tests for the vector sub-language generator and path helpers.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from doodle.dsl_svg import (
    SVG_NS, Tag, create_svg_url, normalize_svg, parse_path, render_svg,
)
from doodle.dsl_utils import IdGenerator


# =============================================================================
# Markup generation
# =============================================================================

class TestRenderSvg:
    """Block source to SVG markup."""

    def test_simple_document(self):
        markup = render_svg("viewBox: 0 0 10 10; circle { r: 5; fill: red; }")
        assert markup == (
            f'<svg xmlns="{SVG_NS}" viewBox="0 0 10 10">'
            '<circle r="5" fill="red"/></svg>'
        )

    def test_view_box_padding(self):
        markup = render_svg("viewBox: 0 0 10 10 p 1;")
        assert 'viewBox="-1 -1 12 12"' in markup

    def test_multi_target_statement(self):
        markup = render_svg("rect { width, height: 100%; }")
        assert '<rect width="100%" height="100%"/>' in markup

    def test_inline_block_gets_generated_id(self):
        markup = render_svg("circle { fill: radialGradient { stop { offset: 0; } } }",
                            IdGenerator())
        assert 'id="radialGradient-1"' in markup
        assert 'fill="url(#radialGradient-1)"' in markup

    def test_explicit_id(self):
        markup = render_svg("g#main { circle { r: 1; } }")
        assert '<g id="main">' in markup

    def test_content_is_text(self):
        markup = render_svg("text { content: hello; }")
        assert "<text>hello</text>" in markup

    def test_style_block_kept_raw(self):
        markup = render_svg("style { circle { fill: red; } }")
        assert "<style>" in markup
        assert "fill:red" in markup.replace(" ", "")

    def test_xlink_namespace(self):
        markup = render_svg("use { xlink:href: #a; }")
        assert 'xmlns:xlink="http://www.w3.org/1999/xlink"' in markup


class TestTag:

    def test_empty_tag_self_closes(self):
        assert str(Tag("circle", attrs={"r": 1})) == '<circle r="1"/>'

    def test_svg_never_self_closes(self):
        assert str(Tag("svg")) == "<svg></svg>"

    def test_name_required(self):
        with pytest.raises(ValueError):
            Tag("")


# =============================================================================
# URLs
# =============================================================================

class TestUrls:
    """Data URLs for CSS."""

    def test_create_svg_url(self):
        assert create_svg_url("<svg></svg>") == 'url("data:image/svg+xml;utf8,%3Csvg%3E%3C%2Fsvg%3E")'

    def test_fragment_id(self):
        assert create_svg_url("<svg></svg>", "f-1").endswith('#f-1")')

    def test_normalize_wraps_fragment(self):
        markup = normalize_svg("<circle/>")
        assert markup.startswith(f'<svg xmlns="{SVG_NS}"')
        assert markup.endswith("<circle/></svg>")

    def test_normalize_adds_namespace(self):
        assert f'xmlns="{SVG_NS}"' in normalize_svg("<svg><circle/></svg>")


# =============================================================================
# Path data
# =============================================================================

class TestParsePath:
    """Path command parsing."""

    def test_commands(self):
        path = parse_path("M 0 0 L 10 10 Z")
        assert path.valid
        assert [c.name for c in path.commands] == ["M", "L", "Z"]
        assert path.commands[1].value == [10, 10]
        assert path.commands[1].type == "absolute"

    def test_relative(self):
        assert parse_path("m 1 1").commands[0].type == "relative"

    def test_round_trip_text(self):
        assert str(parse_path("M 0 0 L 10 10 Z")) == "M 0 0 L 10 10 Z"

    def test_invalid_command(self):
        assert not parse_path("K 1 2").valid

    def test_leading_number_is_invalid(self):
        assert not parse_path("1 2").valid
