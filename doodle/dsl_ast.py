"""
AST node definitions for the doodle language.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


# =============================================================================
# Value fragments
# =============================================================================

@dataclass
class TextLiteral:
    """Literal text inside a value or argument."""
    value: Union[str, int, float]
    line: int = 0
    column: int = 0


@dataclass
class FunctionCall:
    """Function call: @name(args...) or $name(args...).

    `position` is the call-site id, stable for the life of the AST, used
    to key per-call-site state during composition.
    """
    name: str
    arguments: List['Argument'] = field(default_factory=list)
    position: int = 0
    variables: Dict[str, 'Value'] = field(default_factory=dict)
    line: int = 0
    column: int = 0

    @property
    def fname(self) -> str:
        """Name without the leading @."""
        return self.name[1:]


Fragment = Union[TextLiteral, FunctionCall]


@dataclass
class Argument:
    """One comma-delimited argument of a function call.

    A clustered argument had a surrounding quote or paren pair stripped and
    is passed on as one literal instead of being split into values.
    """
    fragments: List[Fragment] = field(default_factory=list)
    cluster: bool = False

    def __iter__(self):
        return iter(self.fragments)

    def __len__(self):
        return len(self.fragments)


# A value is a list of comma groups, each a list of fragments
Value = List[List[Fragment]]


# =============================================================================
# Statements
# =============================================================================

@dataclass
class Rule:
    """Declaration: property: value;"""
    property: str
    value: Value = field(default_factory=list)
    raw: str = ''
    variable: bool = False
    line: int = 0
    column: int = 0
    shared: bool = False


@dataclass
class Pseudo:
    """Selector block: :hover { ... }, :host { ... }, cell { ... }"""
    selector: str
    styles: List['Node'] = field(default_factory=list)
    line: int = 0
    column: int = 0


@dataclass
class Conditional:
    """Conditional block: @nth(2n+1) not { ... }"""
    name: str
    arguments: List[Argument] = field(default_factory=list)
    styles: List['Node'] = field(default_factory=list)
    negations: List[str] = field(default_factory=list)
    line: int = 0
    column: int = 0

    @property
    def negated(self) -> bool:
        return self.negations.count('not') % 2 == 1


@dataclass
class KeyframeStep:
    """One step of a keyframes block: 50% { ... }"""
    name: Value = field(default_factory=list)
    styles: List[Rule] = field(default_factory=list)


@dataclass
class Keyframes:
    """@keyframes name { steps... }"""
    name: str
    steps: List[KeyframeStep] = field(default_factory=list)
    line: int = 0
    column: int = 0


Node = Union[Rule, Pseudo, Conditional, Keyframes]


# =============================================================================
# Generic block tree (vector sub-language)
# =============================================================================

@dataclass
class Statement:
    """name: value inside a generic block.

    When a statement lists several targets (`width, height: 100%`) every
    produced Statement keeps a reference to the same `origin`, the shared
    declaration it was expanded from.
    """
    name: str
    value: Union[str, 'Block'] = ''
    variable: bool = False
    detail: Optional[Dict[str, Any]] = None
    origin: Optional['SharedDeclaration'] = None


@dataclass
class SharedDeclaration:
    """A multi-target declaration: one value owned by several statements."""
    names: List[str]
    value: Union[str, 'Block'] = ''


@dataclass
class Block:
    """selector { ... } inside a generic block tree.

    `times`/`pure_name` are set for the repetition form `name*count`.
    A block with name `style` keeps its body as raw text in `value`.
    """
    name: str
    value: Union[List[Union[Statement, 'Block']], str] = field(default_factory=list)
    times: Optional[str] = None
    pure_name: Optional[str] = None
    inline: bool = False

    @property
    def children(self) -> List[Union[Statement, 'Block']]:
        return self.value if isinstance(self.value, list) else []
