"""
Shader and pattern sub-languages.

`@shaders(...)` carries GLSL source, optionally split into `fragment {}`,
`vertex {}` and `texture_name {}` sections. `@pattern(...)` carries a tiny
declarative language that is lowered to a fragment shader:

    grid: 5x5;
    fill: #eee;
    match(mod(x, 2.0) == 0.0) {
      fill: red;
    }

Neither is rasterized here. Both compile to shader text that the host feeds
to its WebGL context after the compile returns.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from PIL import ImageColor

from .dsl_lexer import Token, TokenType, tokenize
from .dsl_properties import parse_grid
from .dsl_utils import format_number


# =============================================================================
# Shader source splitting
# =============================================================================

SECTION_NAME = re.compile(r'^texture\w*$|^(fragment|vertex)$')

SHADERTOY_MAIN = re.compile(
    r'(^|[^\w_])void\s+mainImage\(\s*out\s+vec4\s+fragColor,\s*in\s+vec2\s+fragCoord\s*\)',
    re.MULTILINE,
)

FRAGMENT_HEAD = "#version 300 es\nprecision highp float;\nout vec4 FragColor;\n"

DEFAULT_VERTEX_SHADER = (
    "#version 300 es\n"
    "in vec4 position;\n"
    "void main() {\n"
    "  gl_Position = position;\n"
    "}"
)

BUILTIN_UNIFORMS = (
    'uniform vec2 u_resolution;',
    'uniform float u_time;',
    'uniform float u_timeDelta;',
    'uniform int u_frameIndex;',
    'uniform vec2 u_seed;',
)


@dataclass
class Texture:
    name: str
    value: str


@dataclass
class ShaderSource:
    """A shader split into its sections."""
    fragment: str = ''
    vertex: str = ''
    textures: List[Texture] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'fragment': self.fragment,
            'vertex': self.vertex,
            'textures': [{'name': t.name, 'value': t.value} for t in self.textures],
        }


def _line_break() -> Token:
    return Token(TokenType.LINE_BREAK, '\n', 0, 0)


def _strip_parens(tokens: List[Token]) -> List[Token]:
    while len(tokens) >= 2 and tokens[0].is_symbol('(') and tokens[-1].is_symbol(')'):
        tokens = tokens[1:-1]
    return tokens


def _join(tokens: List[Token]) -> str:
    return ''.join(t.value for t in _strip_parens(tokens))


def parse_shader(source: str) -> ShaderSource:
    """Split shader text into fragment, vertex and texture sections.

    Preprocessor lines (`#define ...`) are kept on their own line. Text
    without any `fragment {}` section is taken as the fragment as a whole.
    """
    tokens = _strip_parens(tokenize(source, preserve_line_break=True,
                                    ignore_inline_comment=True))
    result = ShaderSource()
    sections: Dict[str, str] = {}
    depth = 0
    pending: List[Token] = []
    section: Optional[str] = None
    directive_line: Optional[int] = None

    for i, curr in enumerate(tokens):
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        if curr.is_symbol('{'):
            if not depth and SECTION_NAME.match(_join(pending)):
                section = _join(pending)
                pending = []
            else:
                pending.append(curr)
            depth += 1
        elif curr.is_symbol('}'):
            depth = max(0, depth - 1)
            if not depth and section:
                value = _join(pending)
                if value:
                    if section.startswith('texture'):
                        result.textures.append(Texture(section, value))
                    else:
                        sections[section] = value
                    pending = []
                section = None
            else:
                pending.append(curr)
        else:
            if directive_line is not None and directive_line != curr.line:
                pending.append(_line_break())
                directive_line = None
            in_texture = section is not None and section.startswith('texture')
            if not in_texture and curr.is_word() and curr.value.startswith('#'):
                pending.append(_line_break())
                directive_line = nxt.line if nxt is not None else None
            pending.append(curr)

    result.vertex = sections.get('vertex', '')
    result.fragment = sections.get('fragment') or _join(pending)
    return result


def add_uniform(fragment: str, uniform: str) -> str:
    if uniform in fragment:
        return fragment
    return uniform + '\n' + fragment


def build_fragment(shader: ShaderSource) -> str:
    """Complete fragment shader text, ready to hand to a WebGL2 context.

    Declares the standard uniforms and one sampler per texture. ShaderToy
    style `mainImage` entry points are wrapped with the usual `i*` aliases.
    """
    fragment = shader.fragment or ''
    for uniform in BUILTIN_UNIFORMS:
        fragment = add_uniform(fragment, uniform)
    for texture in shader.textures:
        fragment = add_uniform(fragment, f'uniform sampler2D {texture.name};')

    if SHADERTOY_MAIN.search(fragment):
        channels = '\n'.join(
            f'#define iChannel{i} {t.name}' for i, t in enumerate(shader.textures)
        )
        fragment = (
            "\n#define iResolution vec3(u_resolution, 0)\n"
            "#define iTime u_time\n"
            "#define iTimeDelta u_timeDelta\n"
            "#define iFrame u_frameIndex\n\n"
            f"{channels}\n\n"
            f"{fragment}\n\n"
            "void main() {\n"
            "  mainImage(FragColor, gl_FragCoord.xy);\n"
            "}"
        )
    return FRAGMENT_HEAD + fragment


def render_shader(shader: ShaderSource) -> str:
    return build_fragment(shader)


# =============================================================================
# Pattern language
# =============================================================================

@dataclass
class PatternNode:
    """A `name: value` statement or a `name(args) { ... }` block."""
    type: str
    name: str
    value: object = ''
    args: List[str] = field(default_factory=list)


def _join_statement(tokens: List[Token]) -> str:
    if tokens and tokens[-1].is_symbol(';'):
        tokens = tokens[:-1]
    return ''.join(t.value for t in tokens)


def parse_selector(tokens: List[Token]) -> List[Tuple[str, List[str]]]:
    """Read `name(arg, ...), other(...)` into (name, args) pairs, deduplicated."""
    groups: List[Tuple[str, List[str]]] = []
    name = ''
    args: List[str] = []
    fragments: List[str] = []
    depth = 0

    for token in tokens:
        if not name and token.is_word():
            name = token.value
        elif token.is_symbol('('):
            if depth:
                fragments.append(token.value)
            depth += 1
        elif token.is_symbol(')'):
            depth = max(0, depth - 1)
            if depth:
                fragments.append(token.value)
            elif fragments:
                args.append(''.join(fragments))
                fragments = []
        elif token.is_symbol(','):
            if depth > 1:
                fragments.append(token.value)
                continue
            if depth:
                args.append(''.join(fragments))
                fragments = []
                continue
            if fragments:
                args.append(''.join(fragments))
                fragments = []
            if name:
                groups.append((name, args))
                name, args = '', []
        else:
            fragments.append(token.value)

    if name:
        groups.append((name, args))

    unique = []
    for group in groups:
        if not any(g[0] == group[0] and ''.join(g[1]) == ''.join(group[1]) for g in unique):
            unique.append(group)
    return unique


class PatternParser:
    """Walks the token stream into PatternNodes."""

    def __init__(self, source: str):
        self.tokens = tokenize(source)
        self.pos = -1

    def parse(self) -> List[PatternNode]:
        return self._walk(in_block=False)

    def _advance(self) -> bool:
        self.pos += 1
        return self.pos < len(self.tokens)

    def _current(self) -> Tuple[Token, Optional[Token]]:
        nxt = self.tokens[self.pos + 1] if self.pos + 1 < len(self.tokens) else None
        return self.tokens[self.pos], nxt

    def _read_statement(self) -> str:
        fragment: List[Token] = []
        while self._advance():
            curr, nxt = self._current()
            fragment.append(curr)
            if nxt is None or curr.is_symbol(';') or nxt.is_symbol('}'):
                break
        return _join_statement(fragment)

    def _walk(self, in_block: bool) -> List[PatternNode]:
        rules: List[PatternNode] = []
        fragment: List[Token] = []
        depth = 0

        while self._advance():
            curr, nxt = self._current()
            if in_block and (nxt is None or curr.is_symbol('}')):
                if nxt is None and rules and rules[-1].type == 'statement' \
                        and not curr.is_symbol('}'):
                    rules[-1].value += ';' + curr.value
                break
            if curr.is_symbol('{') and fragment and not depth:
                selectors = parse_selector(fragment)
                fragment = []
                body = self._walk(in_block=True)
                for name, args in selectors:
                    rules.append(PatternNode('block', name, body, args))
            elif curr.is_symbol(':') and fragment and not depth:
                rules.append(PatternNode('statement', _join_statement(fragment),
                                         self._read_statement()))
                fragment = []
            elif curr.is_symbol(';'):
                if rules and fragment and rules[-1].type == 'statement':
                    rules[-1].value += ';' + _join_statement(fragment)
                    fragment = []
            else:
                if curr.is_symbol('('):
                    depth += 1
                if curr.is_symbol(')'):
                    depth = max(0, depth - 1)
                fragment.append(curr)
        return rules


def parse_pattern(source: str) -> List[PatternNode]:
    return PatternParser(source).parse()


def _float(n) -> str:
    text = format_number(n)
    return text if '.' in text else text + '.0'


def get_rgba(color: str) -> Tuple[int, int, int, float]:
    """Resolve any CSS colour to (r, g, b, alpha 0..1); unknown colours are transparent."""
    try:
        rgba = ImageColor.getcolor(color.strip(), 'RGBA')
    except ValueError:
        return 0, 0, 0, 0
    r, g, b, a = rgba
    return r, g, b, round(a / 255, 3)


def _fill(value: str) -> str:
    r, g, b, a = get_rgba(value)
    return (f"\ncolor = vec4({_float(r / 255)}, {_float(g / 255)}, "
            f"{_float(b / 255)}, {_float(a)});\n")


def _generate_block(node: PatternNode) -> str:
    if node.name != 'match':
        return ''
    cond = node.args[0] if node.args else 'false'
    body = ''.join(_fill(n.value) for n in node.value
                   if n.type == 'statement' and n.name == 'fill')
    return f"\nif ({cond}) {{\n  {body}\n}}\n"


PATTERN_TEMPLATE = """
vec3 mapping(vec2 uv, vec2 grid) {{
  vec2 _grid = 1.0/grid;
  float x = ceil(uv.x/_grid.x);
  float y = ceil(grid.y - uv.y/_grid.y);
  float i = x + (y - 1.0) * grid.x;
  return vec3(x, y, i);
}}
vec4 getColor(float x, float y, float i, float I, float X, float Y, float t) {{
  vec4 color = vec4(0, 0, 0, 0);
  {body}
  return color;
}}
void main() {{
  vec2 uv = gl_FragCoord.xy/u_resolution.xy;
  vec2 v = vec2({x}, {y});
  vec3 p = mapping(uv, v);
  FragColor = getColor(p.x, p.y, p.z, v.x * v.y, v.x, v.y, u_time);
}}
"""


def generate_pattern(nodes: List[PatternNode]) -> str:
    """Lower pattern nodes to the GLSL body of a fragment shader.

    `grid` sets the cell mapping (1x1 by default), `fill` sets the colour and
    `match(cond) { fill: ... }` colours the cells where cond holds. Inside
    cond the cell is available as x, y and i; the grid as X, Y and I; time
    as t.
    """
    body = []
    grid = parse_grid('1x1', math.inf)
    for node in nodes:
        if node.type == 'statement':
            if node.name == 'fill':
                body.append(_fill(node.value))
            elif node.name == 'grid':
                grid = parse_grid(node.value, math.inf)
        elif node.type == 'block':
            body.append(_generate_block(node))
    return PATTERN_TEMPLATE.format(body=''.join(body), x=_float(grid.x), y=_float(grid.y))


def render_pattern(nodes: List[PatternNode]) -> str:
    return build_fragment(ShaderSource(fragment=generate_pattern(nodes)))
