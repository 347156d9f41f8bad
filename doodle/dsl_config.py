"""
Compiler options and YAML config loading.

A config file is a flat mapping, for example:

    max_grid: 64
    experimental: false
    seed: sunrise
    variables:
      --dots: "@grid: 5; background: @p(red, blue);"
"""

from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .dsl_properties import DEFAULT_MAX_GRID, EXPERIMENTAL_MAX_GRID


class ConfigError(Exception):
    """Unreadable or invalid configuration."""


@dataclass
class CompilerOptions:
    max_grid: int = DEFAULT_MAX_GRID
    experimental: bool = False
    seed: Optional[str] = None
    preserve_line_break: bool = False
    ignore_inline_comment: bool = False
    variables: Dict[str, str] = field(default_factory=dict)

    @property
    def effective_max_grid(self) -> int:
        if self.experimental:
            return max(self.max_grid, EXPERIMENTAL_MAX_GRID)
        return self.max_grid

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CompilerOptions':
        """Build options from a plain mapping, validating keys and types."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(f"config must be a mapping, got {type(data).__name__}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown config key(s): {', '.join(unknown)}")

        options = cls()
        for name, value in data.items():
            setattr(options, name, _check(name, value))
        return options

    def merged(self, **overrides) -> 'CompilerOptions':
        """Copy with every non-None override applied."""
        changes = {k: _check(k, v) for k, v in overrides.items() if v is not None}
        unknown = sorted(set(changes) - {f.name for f in fields(self)})
        if unknown:
            raise ConfigError(f"unknown option(s): {', '.join(unknown)}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _check(name: str, value):
    if name == 'max_grid':
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigError(f"max_grid must be a positive integer, got {value!r}")
        return value
    if name in ('experimental', 'preserve_line_break', 'ignore_inline_comment'):
        if not isinstance(value, bool):
            raise ConfigError(f"{name} must be true or false, got {value!r}")
        return value
    if name == 'seed':
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            raise ConfigError(f"seed must be a scalar, got {value!r}")
        return str(value)
    if name == 'variables':
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ConfigError("variables must be a mapping of --name to source text")
        for key in value:
            if not str(key).startswith('--'):
                raise ConfigError(f"variable names must start with '--', got {key!r}")
        return {str(k): '' if v is None else str(v) for k, v in value.items()}
    return value


def load_config(path: Union[str, Path]) -> CompilerOptions:
    """Load CompilerOptions from a YAML file."""
    config_path = Path(path)
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {config_path}: {e}") from e
    return CompilerOptions.from_dict(data)
