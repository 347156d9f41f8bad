"""
Builtin function library: everything callable as @name(...) in a value.

Each builtin is a factory that receives the current Coords and returns
the callable applied to the composed arguments (or, for a few accessors
and math constants, a plain value). Lazy builtins receive argument thunks
instead of values; calling a thunk composes that argument on demand, which
is how @m and friends re-evaluate their body once per step.

State that must survive between cells (pick counters, last-pick stacks,
noise offsets) lives in `coords.context`, keyed by the call site's
position so two occurrences of the same function never share it.
"""

import base64
import binascii
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import unquote

from .dsl_calc import MATH, compute
from .dsl_lexer import split_groups
from .dsl_noise import Perlin
from .dsl_properties import UHEIGHT, UMOUSEX, UMOUSEY, UTIME, UWIDTH
from .dsl_shapes import generate_shape
from .dsl_svg import create_svg_url, normalize_svg, parse_path
from .dsl_utils import (
    NAN, Coords, Stack, by_charcode, by_unit, cell_id, clamp, expand_ranges,
    from_charcode, get_named_arguments, get_value, is_empty, is_letter,
    is_nan, js_number, lerp, parse_int, parse_number_unit, sequence, stringify,
)


@dataclass
class Builtin:
    factory: Callable[[Coords], Any]
    lazy: bool = False


@dataclass
class ComposedArgument:
    """One composed argument; `joined` when several fragments were concatenated."""
    value: Any = None
    cluster: bool = False
    joined: bool = False


BUILTINS: Dict[str, Builtin] = {}


def builtin(name: str, *aliases: str, lazy: bool = False):
    def register(factory):
        entry = Builtin(factory, lazy)
        for n in (name,) + aliases:
            BUILTINS[n] = entry
        return factory
    return register


def _math_builtin(name: str) -> Optional[Builtin]:
    if name == 'random':
        return Builtin(lambda coords: lambda *args: coords.random())
    value = MATH.get(name)
    if value is None:
        return None
    if not callable(value):
        return Builtin(lambda coords: value)

    def factory(coords: Coords):
        def apply(*args):
            return value(*[coords.composer.calc(get_value(n)) for n in args])
        return apply
    return Builtin(factory)


def pick_builtin(name: str) -> Optional[Builtin]:
    """Builtin for a function name; `$` names all evaluate expressions."""
    if name.startswith('$'):
        name = 'calc'
    return BUILTINS.get(name) or _math_builtin(name)


# =============================================================================
# Helpers
# =============================================================================

def push_stack(context: dict, name: str, value):
    if name not in context:
        context[name] = Stack(1024)
    context[name].push(value)
    return value


def last_extra(coords: Coords):
    return coords.extra[-1] if coords.extra else None


def _nth(items, i, default=None):
    if items is None or i >= len(items):
        return default
    return items[i]


def calc_with(base):
    """Combine a base value with `+5px`, `*2`, `2*` or a plain offset.

    A `var(...)` base stays symbolic inside calc(); a number folds now.
    """
    def apply(v=None, *_):
        if is_empty(v) or is_empty(base):
            return base
        v = stringify(v)
        symbolic = stringify(base).startswith('var')
        if re.match(r'^[+*\-/%][\-.\d\s]', v):
            op = v[0]
            parsed = parse_number_unit(v[1:].strip() or 0)
            unit = parsed.get('unit', '')
            value = parsed.get('value', NAN)
            if symbolic:
                return f"calc(({base} {op} {stringify(value)}) * 1{unit})"
            return stringify(compute(op, js_number(base), value)) + unit
        if re.search(r'[+*\-/%]$', v):
            op = v[-1]
            parsed = parse_number_unit(v[:-1].strip() or 0)
            unit = parsed.get('unit', '')
            value = parsed.get('value', NAN)
            if symbolic:
                return f"calc(({stringify(value)} {op} {base}) * 1{unit})"
            return stringify(compute(op, value, js_number(base))) + unit
        parsed = parse_number_unit(v or 0)
        unit = parsed.get('unit', '')
        value = parsed.get('value', NAN)
        if symbolic:
            return f"{base}{stringify(value)}{unit}"
        return stringify(js_number(base) + value) + unit
    return apply


def map2d(value, lo, hi, amp=1):
    v = math.sqrt(2 / 4) * amp
    t = (value + v) / (2 * v) if v else NAN
    return lerp(t, lo * amp, hi * amp)


def _format_path(name: str, values) -> str:
    return name + ' '.join(stringify(v) for v in values)


# =============================================================================
# Position
# =============================================================================

@builtin('i', 'index')
def index(coords: Coords):
    return calc_with(coords.count)


@builtin('x', 'col')
def col(coords: Coords):
    return calc_with(coords.x)


@builtin('y', 'row')
def row(coords: Coords):
    return calc_with(coords.y)


@builtin('z', 'depth')
def depth(coords: Coords):
    return calc_with(coords.z)


@builtin('I', 's', 'size')
def size_count(coords: Coords):
    return calc_with(coords.grid.count)


@builtin('X', 'sx', 'size-x', 'size-col', 'max-col')
def size_x(coords: Coords):
    return calc_with(coords.grid.x)


@builtin('Y', 'sy', 'size-y', 'size-row', 'max-row')
def size_y(coords: Coords):
    return calc_with(coords.grid.y)


@builtin('Z', 'sz', 'size-z', 'size-depth')
def size_z(coords: Coords):
    return calc_with(coords.grid.z)


@builtin('id')
def cell(coords: Coords):
    return lambda *args: cell_id(coords.x, coords.y, coords.z)


def _offset(n) -> float:
    n = js_number(n)
    return 0 if is_nan(n) else n


@builtin('dx')
def dx(coords: Coords):
    return lambda n=0, *_: coords.x - .5 - _offset(n) - coords.grid.x / 2


@builtin('dy')
def dy(coords: Coords):
    return lambda n=0, *_: coords.y - .5 - _offset(n) - coords.grid.y / 2


def _sequence_accessor(name: str, slot: int):
    def factory(coords: Coords):
        extra = last_extra(coords)
        if extra is None:
            return '@' + name
        base = _nth(extra, slot)
        if base is None:
            return lambda *args: ''
        return calc_with(base)
    return factory


builtin('n')(_sequence_accessor('n', 0))
builtin('nx')(_sequence_accessor('nx', 1))
builtin('ny')(_sequence_accessor('ny', 2))
builtin('N')(_sequence_accessor('N', 3))


# =============================================================================
# Sequences
# =============================================================================

def make_sequence(separator: str):
    def factory(coords: Coords):
        def repeat(n=None, *actions):
            if not actions or n is None:
                return ''
            count = get_value(n())
            evaluated = count
            text = stringify(count)
            if re.search(r'\D', text) and not re.search(r'\d+[x-]\d+', text):
                evaluated = coords.composer.calc(text)
                if evaluated == 0:
                    evaluated = count
            signature = coords.composer.next_signature()

            def step(*args):
                return ','.join(
                    stringify(get_value(action(*args, signature))) for action in actions
                )
            return separator.join(sequence(evaluated, step))
        return repeat
    return factory


builtin('m', 'multiple', 'multi', lazy=True)(make_sequence(','))
builtin('M', 'ms', lazy=True)(make_sequence(' '))
builtin('µ', 'rep', 'repeat', lazy=True)(make_sequence(''))


# =============================================================================
# Picking and randomness
# =============================================================================

@builtin('p', 'pick')
def pick(coords: Coords):
    context = coords.context

    @expand_ranges
    def apply(*args):
        args = list(args) or context.get('last_pick_args', [])
        picked = coords.random.pick(args)
        context['last_pick_args'] = args
        return push_stack(context, 'last_pick', picked)
    return apply


@builtin('P')
def pick_no_repeat(coords: Coords):
    """Like @p, but never the same value twice in a row at this call site."""
    context = coords.context
    counter = f"P-counter{coords.position}"

    @expand_ranges
    def apply(*args):
        args = list(args)
        normal = bool(args)
        if not normal:
            args = list(context.get('last_pick_args', []))
        stack = context.get('last_pick')
        previous = stack.last(1) if stack else ''
        if normal:
            previous = context.setdefault(counter, {}).get('last_pick')
        if len(args) > 1 and previous in args:
            args.remove(previous)
        picked = coords.random.pick(args)
        context['last_pick_args'] = args
        if normal:
            context[counter]['last_pick'] = picked
        return push_stack(context, 'last_pick', picked)
    return apply


def _turn_picker(prefix: str, choose: Callable):
    """Shared body of @pl, @pr and @pd: pick by step index or by turn."""
    def factory(coords: Coords):
        context = coords.context
        extra = last_extra(coords)
        signature = extra[-1] if extra else ''
        key = f"{prefix}{coords.position}{signature}"

        @expand_ranges
        def apply(*args):
            context[key + '-counter'] = context.get(key + '-counter', 0) + 1
            size = len(args)
            idx = _nth(extra, 6)
            if idx is None:
                idx = context[key + '-counter']
            if not size:
                return push_stack(context, 'last_pick', None)
            pos = (idx - 1) % size
            value = choose(context, key, list(args), pos, coords)
            return push_stack(context, 'last_pick', value)
        return apply
    return factory


def _choose_shuffled(context, key, args, pos, coords):
    if key + '-values' not in context:
        context[key + '-values'] = coords.random.shuffle(args)
    return _nth(context[key + '-values'], pos)


builtin('pl', 'pn', 'pick-by-turn', 'pick-n')(
    _turn_picker('pl', lambda context, key, args, pos, coords: args[pos]))
builtin('pr', 'pnr')(
    _turn_picker('pr', lambda context, key, args, pos, coords: args[len(args) - pos - 1]))
builtin('pd', 'pick-d')(_turn_picker('pd', _choose_shuffled))


@builtin('lp', 'last-pick')
def last_pick(coords: Coords):
    def apply(n=1, *_):
        stack = coords.context.get('last_pick')
        return stack.last(n) if stack else ''
    return apply


@builtin('r', 'rand')
def rand(coords: Coords):
    def apply(*args):
        if not args:
            return ''
        transform = by_charcode if all(is_letter(a) for a in args) else by_unit
        value = transform(coords.random.rand)(*args)
        return push_stack(coords.context, 'last_rand', value)
    return apply


@builtin('lr', 'last-rand')
def last_rand(coords: Coords):
    def apply(n=1, *_):
        stack = coords.context.get('last_rand')
        return stack.last(n) if stack else ''
    return apply


@builtin('rn')
def noise(coords: Coords):
    """Perlin noise sampled at the cell (or sequence step) position."""
    context = coords.context
    grid = coords.grid
    counter = f"noise-2d{coords.position}"
    extra = last_extra(coords) or []
    ni, nx, ny, nm, NX, NY = (list(extra) + [None] * 6)[:6]
    in_sequence = bool(ni) and bool(nm)

    def apply(*args):
        named = get_named_arguments(args, ['from', 'to', 'frequency', 'scale', 'octave'])
        start = named.get('from', 0)
        end = named.get('to', start)
        frequency = clamp(named.get('frequency', 1), 0, math.inf)
        scale = clamp(named.get('scale', 1), 0, math.inf)
        octave = clamp(named.get('octave', 1), 1, 100)
        if len(args) == 1:
            start, end = 0, start

        if counter not in context:
            context[counter] = Perlin()
            context[counter + 'offset-x'] = coords.random()
            context[counter + 'offset-y'] = coords.random()
        perlin = context[counter]
        offset_x = context[counter + 'offset-x']
        offset_y = context[counter + 'offset-y']

        if in_sequence:
            px = (nx - 1) / NX + offset_x
            py = (ny - 1) / NY + offset_y
        else:
            px = (coords.x - 1) / grid.x + offset_x
            py = (coords.y - 1) / grid.y + offset_y
        if (NX is not None and NX <= 1) or grid.x <= 1:
            px = 0
        if (NY is not None and NY <= 1) or grid.y <= 1:
            py = 0
        if px == 0 and py == 0:
            px, py = offset_x, offset_y

        t = perlin.noise(px * frequency, py * frequency, 0) * scale
        for i in range(1, int(octave)):
            i2 = i * 2
            t += perlin.noise(px * frequency * i2, py * frequency * i2, 0) * (scale / i2)

        transform = by_charcode if is_letter(start) and is_letter(end) else by_unit
        fn = transform(lambda lo=NAN, hi=NAN: map2d(t, lo, hi, scale))
        return push_stack(context, 'last_rand', fn(start, end))
    return apply


# =============================================================================
# CSS values
# =============================================================================

@builtin('stripe', 'stripes', 'strip')
def stripe(coords: Coords):
    def apply(*steps):
        colors = [stringify(get_value(s)) for s in steps]
        if not colors:
            return ''
        custom_sizes = []
        default_count = 0
        for step in colors:
            parts = split_groups(step)
            if len(parts) > 1:
                custom_sizes.append(parts[1])
            else:
                default_count += 1

        if not custom_sizes:
            size = len(colors)
            return ','.join(
                f"{step} 0 {stringify(100 / size * (i + 1))}%" for i, step in enumerate(colors)
            )

        default_size = f"(100% - {' - '.join(custom_sizes)}) / {default_count}"
        result = []
        prev = ''
        for step in colors:
            parts = split_groups(step)
            color = parts[0] if parts else ''
            prefix = prev + ' + ' if prev else ''
            prev = prefix + (parts[1] if len(parts) > 1 else default_size)
            result.append(f"{color} 0 calc({prev})")
        return ','.join(result)
    return apply


@builtin('calc')
def calc(coords: Coords):
    def apply(value='', *_):
        return coords.composer.calc(stringify(get_value(value)))
    return apply


@builtin('hex')
def hex_value(coords: Coords):
    def apply(value='', *_):
        n = parse_int(get_value(value))
        return 'NaN' if is_nan(n) else format(n, 'x')
    return apply


@builtin('var')
def var(coords: Coords):
    return lambda value='', *_: f"var({stringify(get_value(value))})"


@builtin('ut', 't')
def utime(coords: Coords):
    return calc_with(f"var(--{UTIME['name']})")


@builtin('uw')
def uwidth(coords: Coords):
    return calc_with(f"var(--{UWIDTH['name']})")


@builtin('uh')
def uheight(coords: Coords):
    return calc_with(f"var(--{UHEIGHT['name']})")


@builtin('ux')
def umousex(coords: Coords):
    return calc_with(f"var(--{UMOUSEX['name']})")


@builtin('uy')
def umousey(coords: Coords):
    return calc_with(f"var(--{UMOUSEY['name']})")


# =============================================================================
# Vector images
# =============================================================================

def _join_thunks(thunks) -> str:
    return ','.join(stringify(get_value(thunk())) for thunk in thunks)


def _render_svg(coords: Coords, source: str, root: Optional[str] = None) -> str:
    if source.startswith('<'):
        return source
    markup = coords.composer.render('svg', source, root=root)
    return source if markup is None else markup


@builtin('svg', 'Svg', lazy=True)
def svg(coords: Coords):
    def apply(*thunks):
        markup = _render_svg(coords, _join_thunks(thunks))
        return create_svg_url(normalize_svg(markup))
    return apply


def _is_filter_shorthand(value: str) -> bool:
    return bool(re.match(r'^[\-\d.]', value)
                or (re.match(r'^\w+', value) and not re.search(r'[{}<>]', value)))


def _filter_shorthand(values, seed) -> str:
    named = get_named_arguments(values, [
        'frequency', 'scale', 'octave', 'seed', 'blur', 'erode', 'dilate',
    ])
    source = "x: -20%; y: -20%; width: 140%; height: 140%;"
    if named.get('dilate') is not None:
        source += f"feMorphology {{ operator: dilate; radius: {named['dilate']}; }}"
    if named.get('erode') is not None:
        source += f"feMorphology {{ operator: erode; radius: {named['erode']}; }}"
    if named.get('blur') is not None:
        source += f"feGaussianBlur {{ stdDeviation: {named['blur']}; }}"
    frequency = named.get('frequency')
    if frequency is not None:
        parts = split_groups(frequency)
        bx = parts[0] if parts else frequency
        by = parts[1] if len(parts) > 1 else bx
        octave = f"numOctaves: {named['octave']};" if named.get('octave') else ''
        source += (f"feTurbulence {{ type: fractalNoise; baseFrequency: {bx} {by}; "
                   f"seed: {named.get('seed', seed)}; {octave} }}")
        if named.get('scale'):
            source += f"feDisplacementMap {{ in: SourceGraphic; scale: {named['scale']}; }}"
    return source


@builtin('svg-filter', 'filter', lazy=True)
def svg_filter(coords: Coords):
    def apply(*thunks):
        values = [stringify(get_value(thunk())) for thunk in thunks]
        source = ','.join(values)
        ident = coords.composer.next_id('filter')
        if all(_is_filter_shorthand(v) for v in values):
            source = _filter_shorthand(values, coords.seed)
        markup = normalize_svg(_render_svg(coords, source, root='filter'))
        markup = re.sub(r'<filter([\s>])', f'<filter id="{ident}"\\1', markup, count=1)
        return create_svg_url(markup, ident)
    return apply


@builtin('svg-pattern', lazy=True)
def svg_pattern(coords: Coords):
    def apply(*thunks):
        source = (
            "viewBox: 0 0 1 1; preserveAspectRatio: xMidYMid slice; "
            f"rect {{ width, height: 100%; fill: defs pattern {{ {_join_thunks(thunks)} }} }}"
        )
        return create_svg_url(normalize_svg(_render_svg(coords, source)))
    return apply


def _polygon_rules(rules: dict) -> dict:
    rules.pop('frame', None)
    rules['unit'] = 'none'
    rules.setdefault('stroke-width', .01)
    rules.setdefault('stroke', 'currentColor')
    rules.setdefault('fill', 'none')
    return rules


@builtin('svg-polygon', lazy=True)
def svg_polygon(coords: Coords):
    def apply(*thunks):
        shape = generate_shape(_join_thunks(thunks), 3, 65536, _polygon_rules,
                               calc=coords.composer.calc)
        props = ''.join(
            f"{name}: {stringify(value)};" for name, value in shape.rules.items()
            if re.match(r'^(stroke|fill|clip|marker|mask|animate|draw)', name)
        )
        points = ','.join(str(p) for p in shape.points)
        padding = stringify(js_number(shape.rules['stroke-width']) / 2)
        source = (f"viewBox: -1 -1 2 2 p {padding}; "
                  f"polygon {{ {props} points: {points}; }}")
        return create_svg_url(normalize_svg(_render_svg(coords, source)))
    return apply


# =============================================================================
# Shapes
# =============================================================================

def _plotter(key_prefix: str, default_unit: Optional[str]):
    def factory(coords: Coords):
        context = coords.context
        key = f"{key_prefix}{coords.position}"
        extra = last_extra(coords)

        def apply(*args):
            idx = _nth(extra, 0, coords.count)
            total = _nth(extra, 3, coords.grid.count)
            if key not in context:
                def modifier(rules):
                    for name in ('fill', 'fill-rule', 'frame'):
                        rules.pop(name, None)
                    rules['points'] = total
                    if default_unit:
                        rules['unit'] = rules.get('unit') or default_unit
                    return rules
                commands = ','.join(stringify(a) for a in args)
                context[key] = generate_shape(commands, 1, 65536, modifier,
                                              calc=coords.composer.calc).points
            return _nth(context[key], idx - 1)
        return apply
    return factory


builtin('plot', 'offset', 'point')(_plotter('offset-points', None))
builtin('Plot', 'Offset', 'Point')(_plotter('Offset-points', 'none'))


@builtin('shape')
def shape(coords: Coords):
    cache = coords.composer.cache

    def apply(*args):
        commands = ','.join(stringify(a) for a in args)
        key = 'shape-function' + commands
        if key not in cache:
            cache[key] = generate_shape(commands, calc=coords.composer.calc).polygon()
        return cache[key]
    return apply


@builtin('doodle')
def doodle(coords: Coords):
    return lambda value='', *_: value


@builtin('shaders')
def shaders(coords: Coords):
    return lambda value='', *_: value


@builtin('pattern', 'patern')
def pattern(coords: Coords):
    return lambda value='', *_: value


# =============================================================================
# Path commands
# =============================================================================

def _path_transform(rewrite: Callable[[str, list], str]):
    def factory(coords: Coords):
        def apply(commands='', *_):
            parsed = parse_path(stringify(commands))
            if not parsed.valid:
                return commands
            return ' '.join(rewrite(c.name, c.value) for c in parsed.commands)
        return apply
    return factory


INVERTED = {'v': 'h', 'V': 'H', 'h': 'v', 'H': 'V'}


def _invert(name, values):
    return _format_path(INVERTED.get(name, name), values)


def _flip(axis):
    def rewrite(name, values):
        if name.lower() == axis:
            values = [-1 * js_number(v) for v in values]
        return _format_path(name, values)
    return rewrite


builtin('invert')(_path_transform(_invert))
builtin('flipH', 'fliph')(_path_transform(_flip('h')))
builtin('flipV', 'flipv')(_path_transform(_flip('v')))


@builtin('flip')
def flip(coords: Coords):
    flip_h = BUILTINS['flipH'].factory(coords)
    flip_v = BUILTINS['flipV'].factory(coords)
    return lambda commands='', *_: flip_v(flip_h(commands))


@builtin('reverse')
def reverse(coords: Coords):
    def apply(*args):
        commands = [get_value(a) for a in args]
        parsed = parse_path(','.join(stringify(c) for c in commands))
        if parsed.valid:
            return ' '.join(_format_path(c.name, c.value) for c in reversed(parsed.commands))
        return list(reversed(commands))
    return apply


# =============================================================================
# Lists and text
# =============================================================================

@builtin('cycle')
def cycle(coords: Coords):
    def apply(*args):
        wrapped = [f"<{stringify(get_value(a))}>" for a in args]
        if len(wrapped) == 1:
            separator = ' '
            items = split_groups(wrapped[0], separator)
        else:
            separator = ','
            items = split_groups(separator.join(wrapped), separator)
        items = [re.sub(r'^<|>$', '', n) for n in items]
        result = [separator.join(items)]
        for _ in range(len(items) - 1):
            items.append(items.pop(0))
            result.append(separator.join(items))
        return result
    return apply


@builtin('mirror')
def mirror(coords: Coords):
    return lambda *args: list(args) + list(reversed(args))


@builtin('Mirror')
def mirror_once(coords: Coords):
    return lambda *args: list(args) + list(reversed(args[:-1]))


@builtin('code', 'unicode')
def code(coords: Coords):
    return lambda *args: [from_charcode(c) for c in args]


@builtin('once', lazy=True)
def once(coords: Coords):
    key = f"once-counter{coords.position}"

    def apply(*thunks):
        if coords.context.get(key) is None:
            coords.context[key] = _join_thunks(thunks)
        return coords.context[key]
    return apply


@builtin('raw')
def raw(coords: Coords):
    """Markup behind an embedded value: a nested doodle or an image URL."""
    doodles = coords.composer.doodles

    def apply(value='', *_):
        value = stringify(value)
        cut = value[value.find(',') + 1:value.rfind('")')]
        if value.startswith('${doodle') and value.endswith('}'):
            entry = doodles.get(value[2:-1])
            if entry:
                return f"<css-doodle>{entry['doodle']}</css-doodle>"
        if value.startswith('url("data:image/svg+xml;utf8'):
            return unquote(cut)
        if value.startswith('url("data:image/svg+xml;base64'):
            try:
                return base64.b64decode(cut).decode()
            except (binascii.Error, UnicodeDecodeError):
                return value
        if value.startswith('url("data:image/png;base64'):
            return f'<img src="{value}" alt="" />'
        return value
    return apply
