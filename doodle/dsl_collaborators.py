"""
Registry of embedded sub-language collaborators.

Each collaborator is a `compile(source, **options) -> tree` and
`render(tree) -> markup` pair. The composer calls one only when a
function names its capability, and treats the markup as opaque text.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from .dsl_ast import Block
from .dsl_parser import parse_svg
from .dsl_shader import parse_pattern, parse_shader, render_pattern, render_shader
from .dsl_svg import SvgGenerator
from .dsl_utils import IdGenerator


@dataclass
class Collaborator:
    name: str
    compile: Callable[..., Any]
    render: Callable[[Any], str]


class CollaboratorRegistry:
    """Named collaborators for one compiler."""

    def __init__(self):
        self._collaborators: Dict[str, Collaborator] = {}

    def register(self, name: str, compile: Callable[..., Any],
                 render: Callable[[Any], str]) -> Collaborator:
        collaborator = Collaborator(name, compile, render)
        self._collaborators[name] = collaborator
        return collaborator

    def unregister(self, name: str):
        self._collaborators.pop(name, None)

    def get(self, name: str) -> Optional[Collaborator]:
        return self._collaborators.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._collaborators

    def __iter__(self) -> Iterator[str]:
        return iter(self._collaborators)

    def render(self, name: str, source: str, **options) -> str:
        """Compile and render `source`. Raises KeyError for an unknown name."""
        collaborator = self._collaborators[name]
        return collaborator.render(collaborator.compile(source, **options))


def _compile_svg(source: str, root: Optional[str] = None) -> Block:
    return parse_svg(source, Block(root) if root else None)


def default_registry(next_id: Optional[IdGenerator] = None) -> CollaboratorRegistry:
    """Registry with the vector, shader and pattern sub-languages.

    `next_id` is shared with the compile so element ids generated inside
    vector markup never collide across calls.
    """
    registry = CollaboratorRegistry()
    generator = SvgGenerator(next_id)
    registry.register('svg', _compile_svg, generator.generate)
    registry.register('shaders', lambda source: parse_shader(source), render_shader)
    registry.register('pattern', lambda source: parse_pattern(source), render_pattern)
    return registry
