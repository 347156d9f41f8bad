"""
Doodle

Compiles the doodle language, a CSS superset for procedurally generated
grids, into per-cell stylesheets.
"""

from .dsl_lexer import Token, TokenType, tokenize, split_groups
from .dsl_parser import ParseResult, parse
from .dsl_calc import Calculator, evaluate
from .dsl_properties import parse_grid, get_basic_styles, create_grid
from .dsl_utils import Grid, Coords, SeededRandom
from .dsl_diagnostics import Diagnostic, DiagnosticLog
from .dsl_config import CompilerOptions, ConfigError, load_config
from .dsl_collaborators import CollaboratorRegistry, default_registry
from .dsl_compose import CompileResult, Compiler, Styles, compile

__all__ = [
    # Tokenizer / parser
    "Token",
    "TokenType",
    "tokenize",
    "split_groups",
    "ParseResult",
    "parse",
    # Evaluator
    "Calculator",
    "evaluate",
    # Grid
    "Grid",
    "Coords",
    "SeededRandom",
    "parse_grid",
    "get_basic_styles",
    "create_grid",
    # Diagnostics / config
    "Diagnostic",
    "DiagnosticLog",
    "CompilerOptions",
    "ConfigError",
    "load_config",
    # Collaborators
    "CollaboratorRegistry",
    "default_registry",
    # Compiler
    "CompileResult",
    "Compiler",
    "Styles",
    "compile",
]
