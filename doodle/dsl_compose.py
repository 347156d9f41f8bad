"""
Composer: walks the AST once per grid cell and emits the stylesheet.

A compile runs in two phases. The pre-pass looks only at top-level and
host rules to find an explicit @seed and @grid. The cell pass then builds
one Coords per cell (row-major, or along z for a depth grid) and composes
every node against it, appending declarations to rule buckets keyed by
selector. Buckets become text only after the last cell, in `output()`.

Everything mutable during a compile (pick counters, noise offsets, the
random stream, generated ids) belongs to one Composer, so two compiles
never share state.
"""

import itertools
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .dsl_ast import Argument, Conditional, FunctionCall, Keyframes, Node, Pseudo, Rule, TextLiteral, Value
from .dsl_calc import Calculator
from .dsl_collaborators import CollaboratorRegistry, default_registry
from .dsl_config import CompilerOptions
from .dsl_diagnostics import DiagnosticLog
from .dsl_functions import BUILTINS, ComposedArgument, pick_builtin
from .dsl_lexer import split_groups
from .dsl_parser import ParseResult, parse
from .dsl_properties import (
    PROPERTIES, UTIME, GridDirective, PropertyContext, is_host_selector,
    is_parent_selector, is_pseudo_element, is_special_selector, parse_grid, prefixer,
)
from .dsl_selectors import SELECTORS
from .dsl_shapes import Point
from .dsl_utils import (
    BoundedCache, Coords, Grid, IdGenerator, SeededRandom, cell_id, content_hash, get_value,
    is_empty, remove_empty_values, remove_quotes, stringify,
)


COMPOSABLES = ('doodle', 'shaders', 'pattern', 'patern')

UNIFORM_FLAGS = {
    'ut': 'time', 't': 'time',
    'ux': 'mousex', 'uy': 'mousey',
    'uw': 'width', 'uh': 'height',
}

# Values of `content` that are already valid CSS and must not be quoted
CONTENT_LITERAL = re.compile(r'["\']|^none\s?$|^(var|counter|counters|attr|url)\(')

GRID_SIZE = re.compile(r'^\s*\d')

PARSE_CACHE_LIMIT = 64
SHAPE_CACHE_LIMIT = 512


@dataclass
class Styles:
    main: str = ''
    cells: str = ''
    all: str = ''


@dataclass
class CompileResult:
    """Everything one compile produces."""
    styles: Styles = field(default_factory=Styles)
    grid: Grid = field(default_factory=Grid)
    seed: str = ''
    random: Optional[SeededRandom] = None
    doodles: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    shaders: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    pattern: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    uniforms: Dict[str, bool] = field(default_factory=dict)
    content: Dict[str, str] = field(default_factory=dict)
    props: Dict[str, bool] = field(default_factory=dict)
    variables: Dict[Union[int, str], Dict[str, str]] = field(default_factory=dict)
    diagnostics: DiagnosticLog = field(default_factory=DiagnosticLog)

    def to_dict(self) -> Dict[str, Any]:
        """Plain data for serialization; the random generator is left out."""
        return {
            'styles': {'main': self.styles.main, 'cells': self.styles.cells,
                       'all': self.styles.all},
            'grid': self.grid.to_dict(),
            'seed': self.seed,
            'doodles': self.doodles,
            'shaders': self.shaders,
            'pattern': self.pattern,
            'uniforms': self.uniforms,
            'content': self.content,
            'props': self.props,
            'variables': {str(k): dict(v) for k, v in self.variables.items()},
            'diagnostics': [
                {'severity': d.severity, 'message': d.message,
                 'line': d.line, 'column': d.column}
                for d in self.diagnostics
            ],
        }


def _first_text(arguments: List[Argument], index: int = 0):
    if index >= len(arguments) or not arguments[index].fragments:
        return None
    return get_value(arguments[index].fragments[0])


class Composer:
    """Per-compile composition state."""

    def __init__(self, nodes: List[Node], max_grid: int,
                 calculator: Optional[Calculator] = None,
                 cache: Optional[Dict[str, Any]] = None,
                 collaborators: Optional[CollaboratorRegistry] = None,
                 diagnostics: Optional[DiagnosticLog] = None):
        self.nodes = nodes
        self.max_grid = max_grid
        self.calculator = calculator if calculator is not None else Calculator()
        self.cache = cache if cache is not None else {}
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self.next_id = IdGenerator()
        self.collaborators = (collaborators if collaborators is not None
                              else default_registry(self.next_id))
        self._signatures = itertools.count(1)

        self.rules: Dict[str, List[str]] = {}
        self.props: Dict[str, bool] = {}
        self.keyframes: Dict[str, Callable[[Coords], str]] = {}
        self.grid: Optional[Grid] = None
        self.seed: Optional[str] = None
        self.random: Optional[SeededRandom] = None
        self.is_grid_set = False
        self.is_gap_set = False
        self.vars: Dict[Union[int, str], Dict[str, str]] = {}
        self.uniforms: Dict[str, bool] = {}
        self._composed_special: set = set()
        self.reset()

    def reset(self):
        self.styles = {'host': '', 'container': '', 'cells': '', 'keyframes': ''}
        self.coords: List[Coords] = []
        self.doodles: Dict[str, Dict[str, Any]] = {}
        self.pattern: Dict[str, Dict[str, Any]] = {}
        self.shaders: Dict[str, Dict[str, Any]] = {}
        self.content: Dict[str, str] = {}
        self._shared_values: Dict[tuple, tuple] = {}
        for key in [k for k in self.rules if k.startswith('#c')]:
            del self.rules[key]

    # =========================================================================
    # Services used by builtins
    # =========================================================================

    def calc(self, expression, context: Optional[Dict[str, Any]] = None):
        scope: Dict[str, Any] = {'random': self.random} if self.random else {}
        if context:
            scope.update(context)
        return self.calculator.evaluate(expression, scope)

    def next_signature(self) -> int:
        return next(self._signatures)

    def render(self, name: str, source: str, root: Optional[str] = None) -> Optional[str]:
        """Markup from a sub-language collaborator, or None when unavailable."""
        if name not in self.collaborators:
            return None
        options = {'root': root} if root else {}
        try:
            return self.collaborators.render(name, source, **options)
        except Exception as e:
            self.diagnostics.add_warning(f"@{name} failed to render: {e}")
            return None

    # =========================================================================
    # Helpers
    # =========================================================================

    def add_rule(self, selector: str, rule: Union[str, List[str]]):
        bucket = self.rules.setdefault(selector, [])
        if isinstance(rule, list):
            bucket.extend(rule)
        else:
            bucket.append(rule)

    @staticmethod
    def compose_selector(coords: Coords, pseudo: str = '') -> str:
        return f"#{cell_id(coords.x, coords.y, coords.z)}{pseudo}"

    @staticmethod
    def compose_aname(*args) -> str:
        return '-'.join(str(a) for a in args)

    def _variable_scope(self, count, context_vars: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        group: Dict[str, str] = {}
        for key in ('host', 'container', count):
            group.update(self.vars.get(key, {}))
        if context_vars:
            group.update(context_vars)
        return group

    def read_var(self, name: str, coords: Coords,
                 context_vars: Optional[Dict[str, str]] = None) -> str:
        group = self._variable_scope(coords.count, context_vars)
        if name not in group:
            return name
        result = str(group[name]).strip()
        if result.startswith('(') and result.endswith(')'):
            result = result[1:-1]
        return result.rstrip(';')

    def check_uniforms(self, name: str):
        flag = UNIFORM_FLAGS.get(name)
        if flag:
            self.uniforms[flag] = True

    def inject_variables(self, value: str, count) -> str:
        group = self._variable_scope(count)
        declarations = ''.join(f"{name}: {v};" for name, v in group.items())
        if declarations:
            return f":doodle {{{declarations}}}{value}"
        return value

    # =========================================================================
    # Embedded sub-documents
    # =========================================================================

    def compose_doodle(self, doodle: str, arg=None) -> str:
        ident = self.next_id('doodle')
        self.doodles[ident] = {'doodle': doodle, 'arg': arg}
        return '${' + ident + '}'

    def compose_shaders(self, shader: str, coords: Coords) -> str:
        ident = self.next_id('shader')
        payload = {'shader': shader, 'id': '--' + ident,
                   'cell': cell_id(coords.x, coords.y, coords.z)}
        markup = self.render('shaders', shader)
        if markup is not None:
            payload['markup'] = markup
        self.shaders[ident] = payload
        return '${' + ident + '}'

    def compose_pattern(self, code: str, coords: Coords) -> str:
        ident = self.next_id('pattern')
        payload = {'code': code, 'id': '--' + ident,
                   'cell': cell_id(coords.x, coords.y, coords.z)}
        markup = self.render('pattern', code)
        if markup is not None:
            payload['markup'] = markup
        self.pattern[ident] = payload
        return '${' + ident + '}'

    def _compose_embedded(self, node: FunctionCall, coords: Coords) -> Optional[str]:
        """Placeholder for @doodle/@shaders/@pattern, or None without a payload."""
        fname = node.fname
        value = _first_text(node.arguments)
        arg = None
        if fname == 'doodle' and re.match(r'^\d', stringify(value)):
            head, _, rest = stringify(value).partition(',')
            arg = head.strip()
            value = rest.strip() if rest.strip() else _first_text(node.arguments, 1)
        if is_empty(value):
            return None
        value = stringify(value)
        if fname == 'doodle':
            return self.compose_doodle(self.inject_variables(value, coords.count), arg)
        if fname == 'shaders':
            return self.compose_shaders(value, coords)
        return self.compose_pattern(value, coords)

    # =========================================================================
    # Values
    # =========================================================================

    def apply_func(self, factory: Callable, coords: Coords, args: list, fname: str,
                   context_vars: Optional[Dict[str, str]] = None, position: int = 0):
        coords.position = position
        fn = factory(coords)
        inputs: list = []
        for arg in args:
            if callable(arg):
                inputs.append(arg)
                continue
            value = arg.value
            plain = isinstance(value, (str, int, float)) and not isinstance(value, bool)
            if not arg.cluster and not arg.joined and plain:
                inputs.extend(split_groups(stringify(value), no_space=True))
            elif value is not None:
                inputs.append(get_value(value))
        inputs = remove_empty_values(inputs)

        if not callable(fn):
            return fn
        if fname.startswith('$'):
            group = self._variable_scope(coords.count, context_vars)
            context = {name[2:]: v for name, v in group.items()}
            unit = fname.split('$', 1)[1]
            return stringify(self.calc(stringify(get_value(inputs)), context)) + unit
        return fn(*inputs)

    def compose_argument(self, argument: Argument, coords: Coords, extra=(),
                         parent: Optional[FunctionCall] = None,
                         context_vars: Optional[Dict[str, str]] = None) -> ComposedArgument:
        coords.extra.append(list(extra))
        results = []
        try:
            for fragment in argument.fragments:
                if isinstance(fragment, TextLiteral):
                    value = fragment.value
                    if isinstance(value, str) and re.match(r'^--\w', value):
                        if parent is None or parent.name != '@var':
                            value = self.read_var(value, coords, context_vars)
                    results.append(value)
                else:
                    results.append(self._call(fragment, coords, extra, context_vars))
        finally:
            coords.extra.pop()

        joined = len(results) >= 2
        if joined:
            value = ''.join(stringify(r) for r in results)
        else:
            value = results[0] if results else None
        return ComposedArgument(value, argument.cluster, joined)

    def _call(self, node: FunctionCall, coords: Coords, extra,
              context_vars: Optional[Dict[str, str]]):
        fname = node.fname
        entry = pick_builtin(fname)
        if entry is None:
            return node.name
        self.check_uniforms(fname)
        if fname in COMPOSABLES:
            placeholder = self._compose_embedded(node, coords)
            if placeholder is not None:
                return placeholder
        args = self._compose_call_arguments(node, entry.lazy, coords, extra, context_vars)
        return self.apply_func(entry.factory, coords, args, fname, context_vars, node.position)

    def _compose_call_arguments(self, node: FunctionCall, lazy: bool, coords: Coords,
                                extra, context_vars) -> list:
        if lazy:
            return [
                (lambda arg: lambda *e: self.compose_argument(arg, coords, e, node, context_vars))(arg)
                for arg in node.arguments
            ]
        return [self.compose_argument(arg, coords, extra, node, context_vars)
                for arg in node.arguments]

    def compose_variables(self, variables: Dict[str, Value], coords: Coords,
                          result: Dict[str, str]) -> Dict[str, str]:
        for name, value in variables.items():
            result[name] = self.get_composed_value(value, coords, result)[2]
        return result

    def compose_value(self, fragments: List, coords: Coords,
                      context_vars: Dict[str, str]) -> Tuple[str, Any]:
        text = ''
        extra = ''
        for fragment in fragments:
            if isinstance(fragment, TextLiteral):
                text += stringify(fragment.value)
                continue
            fname = fragment.fname
            entry = pick_builtin(fname)
            if entry is None:
                text += fragment.name
                continue
            self.check_uniforms(fname)
            if fname in COMPOSABLES:
                text += self._compose_embedded(fragment, coords) or ''
                continue
            if fragment.variables:
                self.compose_variables(fragment.variables, coords, context_vars)
            args = self._compose_call_arguments(fragment, entry.lazy, coords, [], context_vars)
            output = self.apply_func(entry.factory, coords, args, fname,
                                     context_vars, fragment.position)
            if output is not None:
                text += stringify(output)
                if isinstance(output, Point) and output.angle:
                    extra = output.angle
        return text, extra

    def get_composed_value(self, value: Value, coords: Coords,
                           context_vars: Optional[Dict[str, str]] = None):
        """Compose every comma group of a value: (extra, groups, joined text)."""
        extra = None
        groups: List[str] = []
        context_vars = context_vars if context_vars is not None else {}
        for fragments in value or []:
            text, group_extra = self.compose_value(fragments, coords, context_vars)
            if text:
                groups.append(text)
            if group_extra:
                extra = group_extra
        return extra, groups, ','.join(groups)

    # =========================================================================
    # Rules
    # =========================================================================

    def add_grid_style(self, directive: GridDirective):
        if directive.fill:
            self.add_rule(':host', f"background-color:{directive.fill};")
        if not directive.clip:
            self.add_rule(':host', 'contain:none;')
        if directive.rotate:
            self.add_rule(':container', f"rotate:{directive.rotate};")
        if directive.scale:
            self.add_rule(':container', f"scale:{directive.scale};")
        if directive.translate:
            self.add_rule(':container', f"translate:{directive.translate};")
        if directive.flex_row:
            self.add_rule(':container', 'display:flex;')
            self.add_rule('cell', 'flex: 1;')
        if directive.flex_column:
            self.add_rule(':container', 'display:flex;flex-direction:column;')
            self.add_rule('cell', 'flex:1;')

    @staticmethod
    def property_name(rule: Rule, selector: str = '') -> str:
        """`grid: 5x5` inside a host block means @grid."""
        if rule.property == 'grid' and is_host_selector(selector) and GRID_SIZE.match(rule.raw):
            return '@grid'
        return rule.property

    def compose_rule(self, rule: Rule, cell: Coords, selector: str = '') -> str:
        """One declaration as CSS text; a failing value is kept as written."""
        try:
            return self._compose_rule(rule, cell, selector)
        except Exception as e:
            self.diagnostics.add_warning(
                f"cannot compose {rule.property}: {e}", rule.line, rule.column)
            if rule.property.startswith('@'):
                return ''
            return f"{rule.property}: {rule.raw};"

    def _compose_rule(self, rule: Rule, cell: Coords, selector: str) -> str:
        coords = replace(cell)
        prop = self.property_name(rule, selector)
        if prop == '@seed':
            return ''
        extra, groups, value = self._rule_value(rule, coords)

        if re.match(r'^animation(-name)?$', prop):
            self.props['has_animation'] = True
            if is_host_selector(selector):
                prefix = UTIME.get(prop)
                if prefix and value:
                    value = f"{prefix},{value}"
            if coords.count > 1:
                count = coords.count
                if prop == 'animation-name':
                    value = ','.join(self.compose_aname(n, count) for n in groups)
                else:
                    names = []
                    for group in groups:
                        parts = re.split(r'\s+', group or '')
                        parts[0] = self.compose_aname(parts[0], count)
                        names.append(' '.join(parts))
                    value = ','.join(names)

        if prop == 'content' and not CONTENT_LITERAL.search(value):
            value = f"'{value}'"

        if prop == 'transition':
            self.props['has_transition'] = True

        text = prefixer(prop, f"{prop}: {value};")

        if prop in ('width', 'height') and not is_special_selector(selector):
            text += f"--internal-cell-{prop}: {value};"

        if (prop in ('background', 'background-image')
                and re.search(r'\$\{(shader|pattern)', value)):
            text += 'background-size: 100% 100%;'

        if prop.startswith('--'):
            key: Union[int, str] = cell.count
            if is_parent_selector(selector):
                key = 'container'
            if is_host_selector(selector):
                key = 'host'
            self.vars.setdefault(key, {})[prop] = value

        name = prop[1:]
        if prop.startswith('@') and name in PROPERTIES:
            text = self._compose_property(name, value, extra, coords, selector)
        return text

    def _rule_value(self, rule: Rule, coords: Coords):
        """Broadcast targets of one declaration share a single value per cell."""
        if not rule.shared:
            return self.get_composed_value(rule.value, coords)
        key = (id(rule.value), coords.x, coords.y, coords.z, coords.count)
        if key not in self._shared_values:
            self._shared_values[key] = self.get_composed_value(rule.value, coords)
        return self._shared_values[key]

    def _property_context(self, coords: Coords, special: bool, extra=None) -> PropertyContext:
        return PropertyContext(special, coords.grid, self.max_grid, extra, self.cache)

    def _compose_property(self, name: str, value: str, extra, coords: Coords,
                          selector: str) -> str:
        handler = PROPERTIES[name]
        transformed = handler(value, self._property_context(
            coords, is_special_selector(selector), extra))

        if name == 'grid':
            text = ''
            if is_host_selector(selector):
                text = transformed.size or ''
                self.add_grid_style(transformed)
            elif not self.is_grid_set:
                transformed = handler(value, self._property_context(coords, True))
                self.add_rule(':host', transformed.size or '')
                self.add_grid_style(transformed)
            self.grid = coords.grid
            self.is_grid_set = True
            return text

        if name == 'gap':
            if not self.is_gap_set:
                self.add_rule(':container', f"gap:{transformed};")
                self.is_gap_set = True
            return ''

        if name == 'content':
            key = self.compose_selector(coords)
            if not is_pseudo_element(selector) and not is_parent_selector(selector):
                self.content[key] = remove_quotes(stringify(transformed))
            raw = BUILTINS['raw'].factory(coords)
            self.content[key] = raw(self.content.get(key) or '')
            return ''

        if name == 'seed':
            return ''

        if name in ('place', 'place-cell', 'position', 'offset'):
            return '' if is_host_selector(selector) else transformed

        return transformed

    # =========================================================================
    # Pre-pass
    # =========================================================================

    def _raw_seed(self, nodes: List[Node]) -> Optional[str]:
        seed = None
        for node in nodes:
            if isinstance(node, Rule) and node.property == '@seed':
                seed = node.raw
            if isinstance(node, Pseudo) and is_host_selector(node.selector):
                for style in node.styles:
                    if isinstance(style, Rule) and style.property == '@seed':
                        seed = style.raw
        if seed is None:
            return None
        return re.sub(r'[;}<]$', '', seed.strip()).strip()

    def _pre_compose_rule(self, rule: Rule, coords: Coords, selector: str = ''):
        if self.property_name(rule, selector) != '@grid':
            return
        value = self.get_composed_value(rule.value, replace(coords))[2]
        directive = PROPERTIES['grid'](value, PropertyContext(max_grid=self.max_grid))
        if directive.grid is not None:
            self.grid = directive.grid

    def pre_compose(self, coords: Coords):
        if self.seed is None:
            seed = self._raw_seed(self.nodes)
            if seed:
                self.seed = seed
                self.random = SeededRandom(seed)
                coords.random = self.random
        for node in self.nodes:
            if isinstance(node, Rule):
                self._pre_compose_rule(node, coords)
            elif isinstance(node, Pseudo) and is_host_selector(node.selector):
                for style in node.styles:
                    if isinstance(style, Rule):
                        self._pre_compose_rule(style, coords, node.selector)

    # =========================================================================
    # Cell pass
    # =========================================================================

    def compose_cell(self, coords: Coords):
        self.coords.append(coords)
        self.compose(coords, self.nodes)

    def compose(self, coords: Coords, nodes: List[Node]):
        for node in nodes:
            if isinstance(node, Rule):
                self.add_rule(self.compose_selector(coords), self.compose_rule(node, coords))
            elif isinstance(node, Pseudo):
                self._compose_pseudo(node, coords)
            elif isinstance(node, Conditional):
                self._compose_conditional(node, coords)
            elif isinstance(node, Keyframes):
                self._register_keyframes(node)

    def _compose_pseudo(self, node: Pseudo, coords: Coords):
        if id(node) in self._composed_special:
            return
        selector = re.sub(r'^:+doodle', ':host', node.selector)
        special = is_special_selector(selector)
        if special:
            self._composed_special.add(id(node))
        rules = [s for s in node.styles if isinstance(s, Rule)]
        for part in selector.split(','):
            part = part.strip()
            if part == 'cell':
                part = ''
            composed = [self.compose_rule(s, coords, part) for s in rules]
            target = part if special else self.compose_selector(coords, part)
            self.add_rule(target, composed)

    def _compose_conditional(self, node: Conditional, coords: Coords):
        name = node.name[1:]
        factory = SELECTORS.get(name)
        if factory is None:
            return
        try:
            args = [self.compose_argument(arg, coords) for arg in node.arguments]
            cond = self.apply_func(factory, coords, args, name)
        except Exception as e:
            self.diagnostics.add_warning(f"cannot test {node.name}: {e}", node.line, node.column)
            return
        if node.negated:
            cond = not cond
        if not cond:
            return
        if not isinstance(cond, dict) or not cond.get('selector'):
            self.compose(coords, node.styles)
            return

        cell = self.compose_selector(coords)
        target = cond['selector']
        for style in node.styles:
            if isinstance(style, Rule):
                self.add_rule(target.replace('$', cell), self.compose_rule(style, coords))
            elif isinstance(style, Pseudo):
                rules = [s for s in style.styles if isinstance(s, Rule)]
                for part in style.selector.split(','):
                    composed = [self.compose_rule(s, coords, part) for s in rules]
                    self.add_rule((target + part).replace('$', cell), composed)

    def _register_keyframes(self, node: Keyframes):
        if node.name in self.keyframes:
            return

        def render(coords: Coords) -> str:
            steps = []
            for step in node.steps:
                name = self.get_composed_value(step.name, coords)[2]
                body = ''.join(self.compose_rule(s, coords) for s in step.styles)
                steps.append(f"{name} {{{body}}}")
            return ''.join(steps)
        self.keyframes[node.name] = render

    # =========================================================================
    # Output
    # =========================================================================

    def output(self) -> Dict[str, Any]:
        for selector, rules in self.rules.items():
            if is_parent_selector(selector):
                self.styles['container'] += f"grid {{{''.join(rules)}}}"
                continue
            value = ''.join(rules).strip()
            if not value:
                continue
            if is_host_selector(selector):
                self.styles['host'] += f"{selector},.host {{{value}}}"
            else:
                self.styles['cells'] += f"{selector} {{{value}}}"

        if self.uniforms.get('time'):
            self.styles['container'] += f":host,.host {{animation: {UTIME['animation']};}}"
            self.styles['keyframes'] += (
                f"@keyframes {UTIME['animation-name']} {{"
                f"from {{--{UTIME['name']}:0}} "
                f"to {{--{UTIME['name']}:{UTIME['animation-duration'] // 10}}}}}"
            )

        for i, coords in enumerate(self.coords):
            for name, render in self.keyframes.items():
                if i == 0:
                    self.styles['keyframes'] += f"@keyframes {name} {{{render(coords)}}}"
                aname = self.compose_aname(name, coords.count)
                self.styles['keyframes'] += f"@keyframes {aname} {{{render(coords)}}}"

        main = self.styles['keyframes'] + self.styles['host'] + self.styles['container']
        return {
            'styles': Styles(main, self.styles['cells'], main + self.styles['cells']),
            'props': self.props,
            'uniforms': self.uniforms,
        }


# =============================================================================
# Compiler
# =============================================================================

class Compiler:
    """Reusable compiler; its caches survive between compiles of one instance.

    The expression token cache, memoised shapes and parsed sources are keyed
    by content, so recompiling the same text skips the parse. Each is a
    bounded LRU so a long-lived instance does not grow without limit.
    """

    def __init__(self, options: Optional[CompilerOptions] = None,
                 collaborators: Optional[CollaboratorRegistry] = None):
        self.options = options if options is not None else CompilerOptions()
        self.collaborators = collaborators
        self.calculator = Calculator()
        self.cache: Dict[str, Any] = BoundedCache(SHAPE_CACHE_LIMIT)
        self._parsed: Dict[str, ParseResult] = BoundedCache(PARSE_CACHE_LIMIT)

    def parse(self, source: str) -> ParseResult:
        options = self.options
        key = content_hash('\0'.join([
            source, repr(sorted(options.variables.items())),
            str(options.preserve_line_break), str(options.ignore_inline_comment),
        ]))
        if key not in self._parsed:
            self._parsed[key] = parse(
                source, dict(options.variables),
                preserve_line_break=options.preserve_line_break,
                ignore_inline_comment=options.ignore_inline_comment,
            )
        return self._parsed[key]

    def compile(self, source: str, grid: Union[str, Grid, None] = None,
                seed=None, random: Optional[SeededRandom] = None) -> CompileResult:
        """Compile doodle source into per-cell CSS and side tables."""
        parsed = self.parse(source)
        diagnostics = DiagnosticLog()
        diagnostics.merge(parsed.diagnostics)
        max_grid = self.options.effective_max_grid

        composer = Composer(parsed.nodes, max_grid, self.calculator, self.cache,
                            self.collaborators, diagnostics)
        if seed is None:
            seed = self.options.seed
        grid_size = grid if isinstance(grid, Grid) else parse_grid(grid or '', max_grid)

        rng = random if random is not None else SeededRandom('' if seed is None else seed)
        composer.random = rng
        composer.pre_compose(Coords(random=rng, seed=str(seed or ''), composer=composer))

        if composer.grid is not None:
            grid_size = composer.grid
        if composer.seed:
            resolved = composer.seed
            rng = SeededRandom(resolved)
        elif seed is not None:
            resolved = str(seed)
        elif random is not None:
            resolved = random.seed
        else:
            resolved = str(int(time.time() * 1000))
            rng = SeededRandom(resolved)

        composer.seed = resolved
        composer.random = rng
        composer.reset()

        context: Dict[str, Any] = {}
        count = 0
        if grid_size.z == 1:
            for y in range(1, grid_size.y + 1):
                for x in range(1, grid_size.x + 1):
                    count += 1
                    composer.compose_cell(self._coords(x, y, 1, count, grid_size,
                                                       context, rng, resolved, composer))
        else:
            for z in range(1, grid_size.z + 1):
                count += 1
                composer.compose_cell(self._coords(1, 1, z, count, grid_size,
                                                   context, rng, resolved, composer))

        out = composer.output()
        return CompileResult(
            styles=out['styles'],
            grid=grid_size,
            seed=resolved,
            random=rng,
            doodles=composer.doodles,
            shaders=composer.shaders,
            pattern=composer.pattern,
            uniforms=out['uniforms'],
            content=composer.content,
            props=out['props'],
            variables=composer.vars,
            diagnostics=diagnostics,
        )

    @staticmethod
    def _coords(x, y, z, count, grid, context, rng, seed, composer) -> Coords:
        return Coords(x=x, y=y, z=z, count=count, grid=grid, random=rng,
                      context=context, seed=seed, composer=composer)


def compile(source: str, grid: Union[str, Grid, None] = None, seed=None,
            options: Optional[CompilerOptions] = None,
            random: Optional[SeededRandom] = None) -> CompileResult:
    """Convenience function to compile one source with fresh caches."""
    return Compiler(options).compile(source, grid, seed, random)
