"""
Vector sub-language: Block tree to SVG markup.

parse_svg (dsl_parser) turns `svg { circle { r: 5 } }` into Block and
Statement nodes; SvgGenerator walks that tree and builds Tag elements,
merging same-id siblings, hoisting inline `defs` blocks and giving
unnamed inline blocks generated ids.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
from urllib.parse import quote

from .dsl_ast import Block, Statement
from .dsl_lexer import tokenize
from .dsl_parser import parse_svg
from .dsl_utils import IdGenerator, js_number, remove_quotes, stringify


SVG_NS = 'http://www.w3.org/2000/svg'
XHTML_NS = 'http://www.w3.org/1999/xhtml'
XLINK_NS = 'http://www.w3.org/1999/xlink'

NS = f'xmlns="{SVG_NS}"'
NS_XLINK = f'xmlns:xlink="{XLINK_NS}"'

GRAPHIC_ELEMENTS = frozenset([
    'path', 'line', 'circle', 'ellipse', 'rect', 'polygon', 'polyline',
])


def create_svg_url(svg: str, fragment_id: str = '') -> str:
    """Wrap markup in a percent-encoded data URL usable from CSS."""
    encoded = quote(svg, safe="-_.!~*'()") + (f"#{fragment_id}" if fragment_id else '')
    return f'url("data:image/svg+xml;utf8,{encoded}")'


def normalize_svg(markup: str) -> str:
    """Make sure markup is a namespaced <svg> document."""
    if '<svg' not in markup:
        markup = f"<svg {NS} {NS_XLINK}>{markup}</svg>"
    if 'xmlns' not in markup:
        markup = re.sub(r'<svg([\s>])', rf'<svg {NS} {NS_XLINK}\1', markup, count=1)
    return markup


# =============================================================================
# Tags
# =============================================================================

@dataclass(eq=False)
class Tag:
    """An element under construction; `text-node` holds plain text."""
    name: str
    body: Union[List['Tag'], str] = field(default_factory=list)
    attrs: Dict[str, object] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Tag name is required")

    @classmethod
    def text(cls, value) -> 'Tag':
        return cls('text-node', stringify(value))

    def is_text_node(self) -> bool:
        return self.name == 'text-node'

    def find(self, target: 'Tag') -> Optional['Tag']:
        ident = target.attrs.get('id')
        if isinstance(self.body, list) and ident is not None:
            for tag in self.body:
                if tag.attrs.get('id') == ident and tag.name == target.name:
                    return tag
        return None

    def find_spare_defs(self) -> Optional['Tag']:
        for tag in self.body:
            if tag.name == 'defs' and 'id' not in tag.attrs:
                return tag
        return None

    def append(self, tags):
        if self.is_text_node():
            return
        if not isinstance(tags, list):
            tags = [tags]
        self.body.extend(tags)

    def merge(self, tag: 'Tag'):
        self.attrs.update(tag.attrs)
        if isinstance(tag.body, list):
            self.body.extend(tag.body)

    def attr(self, name: str, value=None):
        if self.is_text_node():
            return None
        if value is None:
            return self.attrs.get(name)
        self.attrs[name] = value
        return value

    def __str__(self):
        if self.is_text_node():
            return remove_quotes(self.body)
        attrs = ''.join(
            f' {name}="{remove_quotes(stringify(value))}"' for name, value in self.attrs.items()
        )
        content = ''.join(str(tag) for tag in self.body)
        if content or re.search('svg', self.name, re.I):
            return f"<{self.name}{attrs}>{content}</{self.name}>"
        return f"<{self.name}{attrs}/>"


def transform_view_box(detail: Optional[dict]) -> str:
    if not detail or not detail.get('value'):
        return ''
    values = list(detail['value']) + [0] * (4 - len(detail['value']))
    x, y, w, h = values[:4]
    p = detail.get('padding') or detail.get('p') or detail.get('expand')
    if p:
        x, y, w, h = x - p, y - p, w + p * 2, h + p * 2
    return ' '.join(stringify(n) for n in (x, y, w, h))


# =============================================================================
# Generator
# =============================================================================

class SvgGenerator:
    """Builds markup from a Block tree.

    Generated ids (`circle-1`, `g-2`, ...) come from a counter owned by
    the generator, so one generator per compile keeps them unique.
    """

    def __init__(self, next_id: Optional[IdGenerator] = None):
        self.next_id = next_id if next_id is not None else IdGenerator()

    def generate(self, block: Block) -> str:
        holder = Tag('root')
        return self._generate(block, holder, None, None)

    def _generate(self, node, element: Tag, parent, root: Optional[Tag]):
        inline_id = None

        if isinstance(node, Block):
            if node.name == 'style':
                style = Tag('style')
                style.append(Tag.text(node.value))
                element.append(style)
            else:
                el = Tag(node.name)
                if root is None:
                    root = el
                    root.attr('xmlns', SVG_NS)
                if node.name == 'defs':
                    spare = root.find_spare_defs()
                    if spare is not None:
                        el = spare
                for child in node.children:
                    ident = self._generate(child, el, node, root)
                    if ident:
                        inline_id = ident

                inline_not_defs = node.inline and node.name != 'defs'
                parent_inline_defs = (getattr(parent, 'inline', False)
                                      and getattr(parent, 'name', '') == 'defs')
                single_def_child = parent_inline_defs and len(parent.children) == 1
                if inline_not_defs or parent_inline_defs:
                    found = next((n for n in node.children
                                  if isinstance(n, Statement) and n.name == 'id'), None)
                    if found is not None:
                        inline_id = found.value
                    elif single_def_child or inline_not_defs:
                        inline_id = self.next_id(node.name)
                        el.attr('id', inline_id)

                existing = element.find(el)
                if existing is not None:
                    existing.merge(el)
                elif node.name == 'defs':
                    spare = root.find_spare_defs()
                    if spare is not None and 'id' not in el.attrs:
                        if el is not spare:
                            spare.append(el.body)
                    else:
                        root.append(el)
                else:
                    element.append(el)

        elif isinstance(node, Statement) and not node.variable:
            self._generate_statement(node, element, parent, root)

        if parent is None:
            return str(root) if root is not None else f"<svg {NS}></svg>"
        return inline_id

    def _generate_statement(self, node: Statement, element: Tag, parent, root: Tag):
        if node.name == 'content':
            element.append(Tag.text(node.value))
            return
        if node.name.startswith('style '):
            name = node.name[len('style '):].strip()
            if name:
                style = element.attr('style') or ''
                element.attr('style', f"{style}{name}:{node.value};")
            return

        value = node.value
        if isinstance(value, Block):
            ident = self._generate(value, root, node, root)
            if ident is None:
                value = ''
            elif node.name in ('xlink:href', 'href'):
                value = f"#{ident}"
            else:
                value = f"url(#{ident})"

        if re.search('viewbox', node.name, re.I):
            box = transform_view_box(node.detail)
            if box:
                element.attr(node.name, box)
        elif node.name in ('draw', 'animate') and getattr(parent, 'name', None) in GRAPHIC_ELEMENTS:
            self._add_draw_animation(element, stringify(value))
        else:
            element.attr(node.name, value)

        if 'xlink:' in node.name:
            root.attr('xmlns:xlink', XLINK_NS)

    @staticmethod
    def _add_draw_animation(element: Tag, value: str):
        parts = value.split()
        dur = parts[0] if parts else ''
        repeat_count = parts[1] if len(parts) > 1 else None
        if dur in ('indefinite', 'infinite') or re.search(r'\d$', dur):
            dur, repeat_count = repeat_count, dur
        if repeat_count == 'infinite':
            repeat_count = 'indefinite'
        element.attr('stroke-dasharray', 10)
        element.attr('pathLength', 10)
        animate = Tag('animate')
        animate.attr('attributeName', 'stroke-dashoffset')
        animate.attr('from', 10)
        animate.attr('to', 0)
        if dur is not None:
            animate.attr('dur', dur)
        if repeat_count:
            animate.attr('repeatCount', repeat_count)
        element.append(animate)


def generate_svg(block: Block, next_id: Optional[IdGenerator] = None) -> str:
    """Convenience function to render a Block tree."""
    return SvgGenerator(next_id).generate(block)


def render_svg(source: str, next_id: Optional[IdGenerator] = None) -> str:
    """Parse and render vector sub-language source."""
    return generate_svg(parse_svg(source), next_id)


# =============================================================================
# Path data
# =============================================================================

COMMANDS = 'MmLlHhVvCcSsQqTtAaZz'
RELATIVES = 'mlhvcsqtaz'


@dataclass
class PathCommand:
    name: str
    type: str   # "absolute", "relative" or "unknown"
    value: list = field(default_factory=list)

    def __str__(self):
        return self.name + ' ' + ' '.join(stringify(v) for v in self.value)


@dataclass
class PathData:
    commands: List[PathCommand] = field(default_factory=list)
    valid: bool = True

    def __str__(self):
        return ' '.join(str(c).strip() for c in self.commands)


def parse_path(source: str) -> PathData:
    """Parse path data such as `M 0 0 L 10 10 Z` into commands."""
    result = PathData()
    current: Optional[PathCommand] = None
    for token in tokenize(source):
        if token.is_space() or token.is_symbol(','):
            continue
        if token.is_word():
            if current is not None:
                result.commands.append(current)
            name = token.value
            if name not in COMMANDS:
                kind = 'unknown'
                result.valid = False
            elif name in RELATIVES:
                kind = 'relative'
            else:
                kind = 'absolute'
            current = PathCommand(name, kind)
        elif current is not None:
            current.value.append(js_number(token.value) if token.is_number() else token.value)
        else:
            result.valid = False
    if current is not None:
        result.commands.append(current)
    return result
