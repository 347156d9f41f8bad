"""
Parametric polygon shapes.

A shape is a small rule list (`split: 6; rotate: 30; r: cos(5t)`) whose
expressions are evaluated once per vertex with `t` running around the
circle. Named presets expand to such rule lists. Points come out as
percentages of the box by default, or in a given unit.
"""

import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from .dsl_calc import evaluate
from .dsl_lexer import Token, join_tokens, split_groups, tokenize
from .dsl_utils import (
    NAN, clamp, is_empty, is_nan, js_number, parse_int, parse_number_unit, stringify,
)


DIRECTION_KEYWORDS = ('auto', 'reverse')
ANGLE_UNITS = ('deg', 'rad', 'grad', 'turn')


def _preset_clover(k=3):
    k = clamp(k, 3, 5)
    if k == 4:
        k = 2
    return f"split: 240; r: cos({stringify(k)}t); scale: .98"


def _preset_hypocycloid(k=3):
    k = int(clamp(k, 3, 5))
    scale = [.34, .25, .19][k - 3]
    return f"""
      split: 240;
      scale: {scale};
      k: {k};
      x: (k-1)*cos(t) + cos((k-1)*t);
      y: (k-1)*sin(t) - sin((k-1)*t)
    """


def _preset_bud(k=3):
    k = clamp(k, 3, 10)
    return f"split: 240; scale: .8; r: 1 + .2 * cos({stringify(k)}t)"


PRESET_SHAPES: Dict[str, Union[str, Callable[..., str]]] = {
    'circle': """
      split: 180;
      scale: .99
    """,
    'triangle': """
      rotate: 30;
      scale: 1.1;
      move: 0 .2
    """,
    'pentagon': """
      split: 5;
      rotate: 54
    """,
    'hexagon': """
      split: 6;
      rotate: 30;
      scale: .98
    """,
    'octagon': """
      split: 8;
      rotate: 22.5;
      scale: .99
    """,
    'star': """
      split: 10;
      r: cos(5t);
      rotate: -18;
      scale: .99
    """,
    'infinity': """
      split: 180;
      scale: .99;
      x: cos(t)*.99 / (sin(t)^2 + 1);
      y: x * sin(t)
    """,
    'heart': """
      split: 180;
      rotate: 180;
      a: cos(t)*13/18 - cos(2t)*5/18;
      b: cos(3t)/18 + cos(4t)/18;
      x: (.75 * sin(t)^3) * 1.2;
      y: (a - b + .2) * -1.1
    """,
    'bean': """
      split: 180;
      r: sin(t)^3 + cos(t)^3;
      move: -.35 .35;
    """,
    'bicorn': """
      split: 180;
      x: cos(t);
      y: sin(t)^2 / (2 + sin(t)) - .5
    """,
    'drop': """
      split: 180;
      rotate: 90;
      scale: .95;
      x: sin(t);
      y: (1 + sin(t)) * cos(t) / 1.6
    """,
    'fish': """
      split: 240;
      x: cos(t) - sin(t)^2 / sqrt(2) - .04;
      y: sin(2t)/2
    """,
    'whale': """
      split: 240;
      rotate: 180;
      R: 3.4 * (sin(t)^2 - .5) * cos(t);
      x: cos(t) * R + .75;
      y: sin(t) * R * 1.2
    """,
    'windmill': """
      split: 18;
      R: seq(.618, 1, 0);
      T: seq(t-.55, t, t);
      x: R * cos(T);
      y: R * sin(T)
    """,
    'vase': """
      split: 240;
      scale: .3;
      x: sin(4t) + sin(t) * 1.4;
      y: cos(t) + cos(t) * 4.8 + .3
    """,
    'clover': _preset_clover,
    'hypocycloid': _preset_hypocycloid,
    'bud': _preset_bud,
}


@dataclass
class Point:
    """A polygon vertex; `angle` is the tangent direction in degrees."""
    x: object
    y: object
    angle: object = ''

    def __str__(self):
        return f"{stringify(self.x)} {stringify(self.y)}"


@dataclass
class Shape:
    rules: Dict[str, str] = field(default_factory=dict)
    points: List[Point] = field(default_factory=list)
    preset: bool = False

    def polygon(self) -> str:
        return f"polygon({','.join(str(p) for p in self.points)})"


# =============================================================================
# Rule and direction parsing
# =============================================================================

def _transform_negative(name: str, value: str, negative: bool) -> str:
    if name in ('fill-rule', 'fill'):
        return value
    return f"-1 * ({value})" if negative else value


def parse_shape_rules(source: str) -> Dict[str, str]:
    """Parse `name: expr; ...` into a dict; a leading `-` negates the value."""
    tokens = tokenize(source)
    commands: Dict[str, str] = {}
    collected: List[Token] = []
    name: Optional[str] = None
    negative = False

    for i, curr in enumerate(tokens):
        prev = tokens[i - 1] if i > 0 else None
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        if curr.is_symbol(':') and not name:
            name = join_tokens(collected)
            collected = []
        elif curr.is_symbol(';') and name:
            commands[name] = _transform_negative(name, join_tokens(collected), negative)
            collected = []
            name = None
            negative = False
        elif not curr.is_symbol(';'):
            prev_minus = prev is not None and prev.is_symbol('-')
            next_minus = nxt is not None and nxt.is_symbol('-')
            if (not name and not collected and curr.is_symbol('-')
                    and not prev_minus and not next_minus):
                if nxt is not None and nxt.is_symbol(':'):
                    collected.append(curr)
                else:
                    negative = True
            else:
                collected.append(curr)

    if collected and name:
        commands[name] = _transform_negative(name, join_tokens(collected), negative)
    return commands


def parse_direction(source: str) -> Dict[str, object]:
    """Parse `auto`, `reverse` and an optional angle with unit."""
    tokens = tokenize(source)
    direction = ''
    angle: object = ''
    unit = ''
    matched = False
    for i, curr in enumerate(tokens):
        prev = tokens[i - 1] if i > 0 else None
        if curr.is_word() and curr.value in DIRECTION_KEYWORDS:
            direction = curr.value
            matched = True
        elif curr.is_number():
            angle = js_number(curr.value)
            matched = True
        elif curr.is_word() and prev is not None and prev.is_number() and curr.value in ANGLE_UNITS:
            unit = curr.value
        elif curr.is_space() and direction != '' and angle != '':
            break
    if not matched:
        direction = 'auto'

    if angle == '':
        angle = 0
    if unit == 'rad':
        angle /= (math.pi / 180)
    elif unit == 'grad':
        angle *= .9
    elif unit == 'turn':
        angle *= 360
    return {'direction': direction, 'angle': angle}


# =============================================================================
# Geometry
# =============================================================================

def _pair(value) -> List[float]:
    parts = [js_number(n) for n in split_groups(stringify(value))]
    if not parts:
        return [NAN, NAN]
    if len(parts) == 1:
        parts.append(parts[0])
    return parts[:2]


def rotate(x, y, deg):
    rad = -math.pi / 180 * deg
    return [x * math.cos(rad) - y * math.sin(rad),
            y * math.cos(rad) + x * math.sin(rad)]


def translate(x, y, offset):
    dx, dy = _pair(offset)
    return [x + (0 if is_nan(dx) else dx), y - (0 if is_nan(dy) else dy), dx, dy]


def scale(x, y, factor):
    fx, fy = _pair(factor)
    return [x * fx, y * fy]


def calc_angle(x, y, dx, dy, option: Dict[str, object]) -> float:
    base = math.atan2(y + dy, x - dx) * 180 / math.pi
    if option['direction'] == 'reverse':
        base -= 180
    if not option['direction']:
        base = 90
    if option['angle']:
        base += option['angle']
    return base


def create_polygon_points(option: Dict[str, object],
                          fn: Optional[Callable[[float, int], list]] = None) -> List[Point]:
    if fn is None:
        def fn(t, i):
            return [math.cos(t), math.sin(t)]

    split = js_number(option.get('split') or 180)
    turn = js_number(option.get('turn') or 1)
    frame = option.get('frame')
    fill = option.get('fill') or option.get('fill-rule')
    direction = parse_direction(stringify(option.get('direction') or option.get('dir') or ''))
    unit = option.get('unit')

    rad = (math.pi * 2) * turn / split
    points: List[Point] = []
    factor = 1 if option.get('scale') is None else option.get('scale')

    def add(point):
        x1, y1 = point[0], point[1]
        dx = point[2] if len(point) > 2 and point[2] is not None else 0
        dy = point[3] if len(point) > 3 and point[3] is not None else 0
        if x1 in ('evenodd', 'nonzero'):
            points.append(Point(x1, '', ''))
            return
        x, y = scale(x1, -y1, factor)
        dx1, dy2 = scale(dx, -dy, factor)
        angle = calc_angle(x, y, dx1, dy2, direction)
        if unit is not None and unit != '%':
            if unit != 'none':
                x = stringify(x) + unit
                y = stringify(y) + unit
        else:
            x = stringify((x + 1) * 50) + '%'
            y = stringify((y + 1) * 50) + '%'
        points.append(Point(x, y, angle))

    if fill in ('nonzero', 'evenodd'):
        add([fill, '', ''])

    first_point = first_point2 = None
    for i in range(int(split)):
        point = fn(rad * i, i)
        if not i:
            first_point = point
        add(point)

    if frame is not None:
        add(first_point)
        w = js_number(frame) / 100
        if turn > 1:
            w *= 2
        if w == 0:
            w = .002
        for i in range(int(split)):
            x, y, dx, dy = (list(fn(-rad * i, i)) + [0, 0])[:4]
            theta = math.atan2(y + dy, x - dx)
            point = [x - w * math.cos(theta), y - w * math.sin(theta)]
            if not i:
                first_point2 = point
            add(point)
        add(first_point2)
        add(first_point)

    return points


def create_shape_points(props: Dict[str, object], min_points: int, max_points: int,
                        calc: Callable = evaluate) -> List[Point]:
    raw_split = props.get('vertices') or props.get('points') or props.get('split')
    split = int(clamp(parse_int(raw_split), min_points, max_points))
    px = 'cos(t)' if is_empty(props.get('x')) else props['x']
    py = 'sin(t)' if is_empty(props.get('y')) else props['y']
    pr = '' if is_empty(props.get('r')) else props['r']
    pt = '' if is_empty(props.get('t')) else props['t']

    parsed = parse_number_unit(pr)
    unit = parsed.get('unit')
    if unit and not props.get(unit) and unit != 't':
        if is_empty(props.get('unit')):
            props['unit'] = unit
        pr = props['r'] = parsed.get('value')

    if props.get('degree'):
        props['rotate'] = props['degree']
    if props.get('origin'):
        props['move'] = props['origin']
    props['split'] = split

    def vertex(t, i):
        def seq(*items):
            if not items:
                return ''
            return items[i % len(items)]

        def value_range(a=0, b=0):
            a, b = js_number(a), js_number(b)
            a = 0 if is_nan(a) else a
            b = 0 if is_nan(b) else b
            if a > b:
                a, b = b, a
            step = abs(b - a) / (split - 1) if split > 1 else 0
            return a + step * i

        context = dict(props)
        context.update({
            't': pt or t, 'θ': pt or t, 'i': i + 1,
            'seq': seq, 'range': value_range,
        })
        x = calc(px, context)
        y = calc(py, context)
        dx = dy = 0
        if pr != '':
            r = calc(pr, context)
            if r == 0:
                r = .00001
            if pt:
                t = calc(pt, context)
            x = r * math.cos(t)
            y = r * math.sin(t)
        if props.get('rotate'):
            angle = js_number(props['rotate'])
            x, y = rotate(x, y, 0 if is_nan(angle) else angle)
        if props.get('move'):
            x, y, dx, dy = translate(x, y, props['move'])
        return [x, y, dx, dy]

    return create_polygon_points(props, vertex)


def generate_shape(source: str, min_points: int = 3, max_points: int = 3600,
                   modifier: Optional[Callable[[dict], dict]] = None,
                   calc: Callable = evaluate) -> Shape:
    """Build a shape from a preset name (with arguments) or rule text."""
    groups = split_groups(source)
    name, args = (groups[0], groups[1:]) if groups else ('', [])
    preset = PRESET_SHAPES.get(name)
    if callable(preset):
        commands = preset(*args)
    elif isinstance(preset, str):
        commands = preset
    else:
        commands = source
    rules = parse_shape_rules(commands)
    if modifier is not None:
        rules = modifier(rules)
    points = create_shape_points(rules, min_points, max_points, calc)
    return Shape(rules, points, preset is not None)
