"""
Tests for the shader and pattern sub-languages.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from doodle.dsl_lexer import tokenize
from doodle.dsl_shader import (
    BUILTIN_UNIFORMS, FRAGMENT_HEAD, ShaderSource, Texture, build_fragment,
    generate_pattern, get_rgba, parse_pattern, parse_selector, parse_shader,
    render_pattern,
)


# =============================================================================
# Shader sections
# =============================================================================

class TestParseShader:
    """Splitting shader source into sections."""

    def test_whole_text_is_fragment(self):
        shader = parse_shader("void main() { FragColor = vec4(1.0); }")
        assert "FragColor" in shader.fragment
        assert shader.vertex == ""
        assert shader.textures == []

    def test_sections(self):
        shader = parse_shader("fragment { a } vertex { b }")
        assert shader.fragment == "a"
        assert shader.vertex == "b"

    def test_texture_section(self):
        shader = parse_shader("texture_img { pic } fragment { x }")
        assert shader.textures == [Texture("texture_img", "pic")]
        assert shader.fragment == "x"

    def test_outer_parens_stripped(self):
        assert parse_shader("(fragment { a })").fragment == "a"

    def test_directive_on_own_line(self):
        shader = parse_shader("#define R 1.0\nvoid main() {}")
        assert "\n#define" in shader.fragment
        assert "#define R 1.0\n" in shader.fragment
        assert "\nvoid main" in shader.fragment

    def test_to_dict(self):
        data = ShaderSource("f", "v", [Texture("texture_a", "x")]).to_dict()
        assert data == {"fragment": "f", "vertex": "v",
                        "textures": [{"name": "texture_a", "value": "x"}]}


class TestBuildFragment:
    """Completing fragment shaders."""

    def test_uniforms_declared(self):
        fragment = build_fragment(ShaderSource(fragment="void main() {}"))
        assert fragment.startswith(FRAGMENT_HEAD)
        for uniform in BUILTIN_UNIFORMS:
            assert uniform in fragment

    def test_uniform_not_duplicated(self):
        fragment = build_fragment(ShaderSource(fragment="uniform float u_time;\nvoid main() {}"))
        assert fragment.count("uniform float u_time;") == 1

    def test_texture_sampler(self):
        shader = ShaderSource(fragment="void main() {}", textures=[Texture("texture_a", "x")])
        assert "uniform sampler2D texture_a;" in build_fragment(shader)

    def test_shadertoy_wrapper(self):
        source = "void mainImage(out vec4 fragColor, in vec2 fragCoord) {}"
        shader = ShaderSource(fragment=source, textures=[Texture("texture_a", "x")])
        fragment = build_fragment(shader)
        assert "#define iTime u_time" in fragment
        assert "#define iChannel0 texture_a" in fragment
        assert "mainImage(FragColor, gl_FragCoord.xy);" in fragment


# =============================================================================
# Pattern language
# =============================================================================

class TestParsePattern:
    """Pattern statements and blocks."""

    def test_statements(self):
        nodes = parse_pattern("grid: 5x5; fill: #eee;")
        assert [(n.type, n.name, n.value) for n in nodes] == [
            ("statement", "grid", "5x5"),
            ("statement", "fill", "#eee"),
        ]

    def test_match_block(self):
        nodes = parse_pattern("match(x > 1) { fill: red; }")
        assert len(nodes) == 1
        block = nodes[0]
        assert (block.type, block.name, block.args) == ("block", "match", ["x > 1"])
        assert block.value[0].name == "fill"
        assert block.value[0].value == "red"

    def test_selector_list_is_deduplicated(self):
        groups = parse_selector(tokenize("match(a), match(a), match(b)"))
        assert groups == [("match", ["a"]), ("match", ["b"])]

    def test_nested_commas_stay_in_argument(self):
        groups = parse_selector(tokenize("match(mod(x, 2.0) == 0.0)"))
        assert groups[0][1] == ["mod(x,2.0) == 0.0"]


class TestColors:
    """CSS colours resolved through Pillow."""

    def test_named(self):
        assert get_rgba("red") == (255, 0, 0, 1.0)

    def test_hex_alpha(self):
        assert get_rgba("#00ff0080") == (0, 255, 0, 0.502)

    def test_unknown_is_transparent(self):
        assert get_rgba("not-a-colour") == (0, 0, 0, 0)


class TestGeneratePattern:
    """Lowering patterns to GLSL."""

    def test_grid_and_fill(self):
        source = generate_pattern(parse_pattern("grid: 5x4; fill: red;"))
        assert "vec2 v = vec2(5.0, 4.0);" in source
        assert "color = vec4(1.0, 0.0, 0.0, 1.0);" in source

    def test_default_grid(self):
        assert "vec2 v = vec2(1.0, 1.0);" in generate_pattern([])

    def test_match_condition(self):
        source = generate_pattern(parse_pattern("match(x > 1) { fill: blue; }"))
        assert "if (x > 1) {" in source
        assert "color = vec4(0.0, 0.0, 1.0, 1.0);" in source

    def test_row_major_cell_index(self):
        assert "float i = x + (y - 1.0) * grid.x;" in generate_pattern([])

    def test_render_is_complete_fragment(self):
        fragment = render_pattern(parse_pattern("fill: red;"))
        assert fragment.startswith(FRAGMENT_HEAD)
        assert "uniform vec2 u_resolution;" in fragment
        assert "FragColor = getColor(" in fragment
