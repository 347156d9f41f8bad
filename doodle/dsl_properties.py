"""
`@` properties: @grid, @size, @place, @gap, @seed, @shape and @content.

Each handler receives the composed value text and a PropertyContext and
returns the CSS to emit. @grid is the exception: it returns a
GridDirective that the composer spreads over the host and container
buckets. @use never reaches this module; the parser splices it.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .dsl_lexer import split_groups
from .dsl_shapes import generate_shape
from .dsl_utils import Grid, cell_id, clamp, is_nan, parse_int


DEFAULT_MAX_GRID = 64
EXPERIMENTAL_MAX_GRID = 256

UTIME = {
    'name': 'cssd-utime',
    'animation-name': 'cssd-utime-animation',
    'animation-duration': 31536000000,  # one year in ms
    'animation-iteration-count': 'infinite',
    'animation-delay': '0s',
    'animation-direction': 'normal',
    'animation-fill-mode': 'none',
    'animation-play-state': 'running',
    'animation-timing-function': 'linear',
}
UTIME['animation'] = (
    f"{UTIME['animation-duration']}ms {UTIME['animation-timing-function']} "
    f"{UTIME['animation-delay']} {UTIME['animation-iteration-count']} "
    f"{UTIME['animation-name']}"
)

UMOUSEX = {'name': 'cssd-umousex'}
UMOUSEY = {'name': 'cssd-umousey'}
UWIDTH = {'name': 'cssd-uwidth'}
UHEIGHT = {'name': 'cssd-uheight'}

# Properties that still want a -webkit- copy in current engines
WEBKIT_PROPERTIES = frozenset([
    'clip-path', 'mask', 'mask-image', 'mask-size', 'mask-position',
    'mask-repeat', 'box-reflect', 'text-stroke', 'text-fill-color',
    'background-clip', 'user-select', 'line-clamp', 'box-decoration-break',
])

# Grid-related properties the container inherits from the host
GRID_PROPERTIES = (
    'grid', 'grid-area', 'grid-auto-columns', 'grid-auto-flow',
    'grid-auto-rows', 'grid-column', 'grid-column-end', 'grid-column-gap',
    'grid-column-start', 'grid-gap', 'grid-row', 'grid-row-end',
    'grid-row-gap', 'grid-row-start', 'grid-template',
    'grid-template-areas', 'grid-template-columns', 'grid-template-rows',
)


def is_host_selector(selector: str) -> bool:
    return bool(re.match(r'^:(host|doodle)', selector or ''))


def is_parent_selector(selector: str) -> bool:
    return bool(re.match(r'^:(container|parent)', selector or ''))


def is_special_selector(selector: str) -> bool:
    return is_host_selector(selector) or is_parent_selector(selector)


def is_pseudo_element(selector: str) -> bool:
    return bool(re.search(r':before|:after', selector or ''))


def prefixer(prop: str, rule: str) -> str:
    """Duplicate a declaration with a -webkit- copy where engines need one."""
    if prop in WEBKIT_PROPERTIES:
        return f"-webkit-{rule} {rule}"
    return rule


# =============================================================================
# Grid size
# =============================================================================

def _positive(n) -> Optional[int]:
    return None if is_nan(n) or not n else n


def parse_grid(size, max_grid: int = DEFAULT_MAX_GRID) -> Grid:
    """Parse `X`, `XxY`, `XxYxZ` or the range form `A-B` into a Grid.

    A range gives a single row with |A-B|+1 cells. Axes are clamped to
    [1, max_grid]; a single row or column may hold up to max_grid^2 cells,
    and depth is only allowed on a 1x1 grid.
    """
    lo, hi, total = 1, max_grid, max_grid * max_grid
    text = re.sub(r'\s+', '', str(size if size is not None else ''))

    range_match = re.match(r'^(\d+)-(\d+)$', text)
    if range_match:
        a, b = int(range_match.group(1)), int(range_match.group(2))
        text = f"{abs(a - b) + 1}x1"

    parts = re.sub(r'[,，xX]+', 'x', text).split('x')
    x = parse_int(parts[0]) if parts else float('nan')
    y = parse_int(parts[1]) if len(parts) > 1 else float('nan')
    z = parse_int(parts[2]) if len(parts) > 2 else float('nan')

    max_xy = total if (x == 1 or y == 1) else hi
    max_z = total if (x == 1 and y == 1) else lo

    gx = int(clamp(_positive(x) or lo, 1, max_xy))
    gy = int(clamp(_positive(y) or _positive(x) or lo, 1, max_xy))
    gz = int(clamp(_positive(z) or lo, 1, max_z))
    return Grid(gx, gy, gz, gx * gy * gz, gx / gy)


# =============================================================================
# Paper sizes for @size
# =============================================================================

PAPER_SIZES = {
    'a0': (841, 1189), 'a1': (594, 841), 'a2': (420, 594), 'a3': (297, 420),
    'a4': (210, 297), 'a5': (148, 210), 'a6': (105, 148),

    'b0': (1000, 1414), 'b1': (707, 1000), 'b2': (500, 707), 'b3': (353, 500),
    'b4': (250, 353), 'b5': (176, 250), 'b6': (125, 176),

    'c0': (917, 1297), 'c1': (648, 917), 'c2': (458, 648), 'c3': (324, 458),
    'c4': (229, 324), 'c5': (162, 229),

    'd0': (764, 1064), 'd1': (532, 760), 'd2': (380, 528), 'd3': (264, 376),
    'd4': (188, 260), 'd5': (130, 184), 'd6': (92, 126),

    'letter': (216, 279),
    'postcard': (100, 148),
    'poster': (390, 540),
}

PAPER_MODES = {
    'portrait': 'p', 'pt': 'p', 'p': 'p',
    'landscape': 'l', 'ls': 'l', 'l': 'l',
}


def is_paper_size(name) -> bool:
    return str(name).lower() in PAPER_SIZES


def get_paper_size(name, mode=None):
    """Width and height in mm; landscape unless mode says portrait."""
    h, w = PAPER_SIZES[str(name).lower()]
    if PAPER_MODES.get(mode) == 'p':
        w, h = h, w
    return f"{w}mm", f"{h}mm"


# =============================================================================
# Handlers
# =============================================================================

@dataclass
class PropertyContext:
    is_special_selector: bool = False
    grid: Grid = field(default_factory=Grid)
    max_grid: int = DEFAULT_MAX_GRID
    extra: object = None
    cache: Optional[Dict[str, object]] = None


@dataclass
class GridDirective:
    """Everything one @grid value asks for."""
    grid: Optional[Grid] = None
    size: Optional[str] = None
    fill: Optional[str] = None
    clip: bool = True
    scale: Optional[str] = None
    rotate: Optional[str] = None
    translate: Optional[str] = None
    flex_row: bool = False
    flex_column: bool = False


PROPERTIES: Dict[str, Callable] = {}


def prop(name: str, *aliases: str):
    def register(fn):
        for n in (name,) + aliases:
            PROPERTIES[n] = fn
        return fn
    return register


@prop('size')
def size(value: str, ctx: PropertyContext) -> str:
    groups = split_groups(value)
    w = groups[0] if groups else ''
    h = groups[1] if len(groups) > 1 else w
    ratio = groups[2] if len(groups) > 2 else None
    if is_paper_size(w):
        w, h = get_paper_size(w, h)

    styles = f"width: {w};height: {h};"
    if w == 'auto' or h == 'auto':
        if ratio:
            if re.match(r'^\(.+\)$', ratio):
                ratio = ratio[1:-1]
            elif not ratio.startswith('calc'):
                ratio = f"calc({ratio})"
            if not ctx.is_special_selector:
                styles += f"aspect-ratio: {ratio};"
        if ctx.is_special_selector:
            styles += f"aspect-ratio: {ratio or ctx.grid.ratio};"
    if not ctx.is_special_selector:
        styles += f"--internal-cell-width: {w};--internal-cell-height: {h};"
    return styles


MAP_LEFT_RIGHT = {
    'center': '50%', 'left': '0%', 'right': '100%',
    'top': '50%', 'bottom': '50%',
}

MAP_TOP_BOTTOM = {
    'center': '50%', 'top': '0%', 'bottom': '100%',
    'left': '50%', 'right': '50%',
}


@prop('place', 'place-cell', 'offset', 'position')
def place(value: str, ctx: PropertyContext) -> str:
    groups = split_groups(value)
    left = groups[0] if groups else ''
    top = groups[1] if len(groups) > 1 else '50%'
    left = MAP_LEFT_RIGHT.get(left, left)
    top = MAP_TOP_BOTTOM.get(top, top)
    cw = 'var(--internal-cell-width, 25%)'
    ch = 'var(--internal-cell-height, 25%)'
    angle = ctx.extra or 0
    return (
        f"position: absolute;left: {left};top: {top};"
        f"width: {cw};height: {ch};"
        f"margin-left: calc({cw} / -2);margin-top: calc({ch} / -2);"
        f"grid-area: unset;--plot-angle: {angle};rotate: {angle}deg;"
    )


@prop('grid')
def grid(value: str, ctx: PropertyContext) -> GridDirective:
    result = GridDirective()
    if re.search(r'no-*clip', value, re.I):
        result.clip = False
        value = re.sub(r'no-*clip', '', value, count=1, flags=re.I)

    groups = split_groups(value, ['/', '+', '*', '|', '-', '~'],
                          no_space=True, verbose=True)
    for group, text in groups:
        if group == '+':
            result.scale = text
        elif group == '*':
            result.rotate = text
        elif group == '~':
            result.translate = text
        elif group == '/':
            if result.size is None:
                result.size = size(text, ctx)
            else:
                result.fill = text
        if group in ('|', '-', '') and result.grid is None:
            result.grid = parse_grid(text, ctx.max_grid)
            result.flex_column = group == '|'
            result.flex_row = group == '-'
    return result


@prop('gap')
def gap(value: str, ctx: PropertyContext) -> str:
    return value


@prop('seed')
def seed(value: str, ctx: PropertyContext) -> str:
    return value


@prop('content')
def content(value: str, ctx: PropertyContext) -> str:
    return value


@prop('shape')
def shape(value: str, ctx: PropertyContext) -> str:
    """clip-path for a preset shape; custom commands produce nothing."""
    key = 'shape-property' + value
    if ctx.cache is not None and key in ctx.cache:
        return ctx.cache[key]
    result = generate_shape(value)
    style = ''
    if result.preset:
        style = prefixer('clip-path', f"clip-path: {result.polygon()};")
    if ctx.cache is not None:
        ctx.cache[key] = style
    return style


# =============================================================================
# Host scaffolding
# =============================================================================

def get_basic_styles(grid: Optional[Grid]) -> str:
    """Base stylesheet for the host element and its grid of cells."""
    x = grid.x if grid is not None else ''
    y = grid.y if grid is not None else ''
    inherited = ''.join(f"{n}:inherit;" for n in GRID_PROPERTIES)
    return f"""
    *,*::after,*::before {{
      box-sizing: border-box;
    }}
    :host,.host {{
      display: block;
      visibility: visible;
      width: auto;
      height: auto;
      contain: content;
      box-sizing: border-box;
      --{UTIME['name']}: 0
    }}
    :host([hidden]),[hidden] {{
      display: none
    }}
    grid {{
      position: relative;
      width: 100%;
      height: 100%;
      display: grid;
      {inherited}
    }}
    cell {{
      position: relative;
      display: grid;
      place-items: center
    }}
    svg {{
      position: absolute;
      width: 100%;
      height: 100%
    }}
    :host([cssd-paused]),
    :host([cssd-paused]) * {{
      animation-play-state: paused !important
    }}
    :host, .host {{
      grid-template-rows: repeat({y},1fr);
      grid-template-columns: repeat({x},1fr)
    }}
  """


def _create_cell(x, y, z, content: Dict[str, str], child: str = '') -> str:
    ident = cell_id(x, y, z)
    head = content.get('#' + ident) or ''
    return f'<cell id="{ident}">{head}{child}</cell>'


def create_grid(grid: Grid, content: Optional[Dict[str, str]] = None) -> str:
    """Cell markup: row-major cells, or one nested chain for a depth grid."""
    content = content or {}
    result = ''
    if grid.z == 1:
        for j in range(1, grid.y + 1):
            for i in range(1, grid.x + 1):
                result += _create_cell(i, j, 1, content)
    else:
        child = ''
        for i in range(grid.z, 0, -1):
            child = _create_cell(1, 1, i, content, child)
        result = child
    return f"<grid>{result}</grid>"
