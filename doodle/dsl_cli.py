#!/usr/bin/env python3
"""
Compile a doodle source file from the command line.

Usage:
    doodle-compile pattern.doodle --grid 8x8 --seed 42
    doodle-compile pattern.doodle --config doodle.yaml --format yaml
"""

import argparse
import sys
from pathlib import Path

import yaml

from .dsl_compose import Compiler
from .dsl_config import CompilerOptions, ConfigError, load_config


def report(path: Path, diagnostics) -> tuple:
    """Print diagnostics to stderr. Returns (error_count, warning_count)."""
    for error in diagnostics.errors:
        loc = f":{error.line}:{error.column}" if error.line else ""
        print(f"{path}{loc}: error: {error.message}", file=sys.stderr)
    for warning in diagnostics.warnings:
        loc = f":{warning.line}:{warning.column}" if warning.line else ""
        print(f"{path}{loc}: warning: {warning.message}", file=sys.stderr)
    return len(diagnostics.errors), len(diagnostics.warnings)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Compile a doodle file into CSS."
    )
    parser.add_argument("file", help="Doodle source file")
    parser.add_argument("--grid", help="Grid size, e.g. 5, 8x8 or 1-10")
    parser.add_argument("--seed", help="Seed for the random stream")
    parser.add_argument("--config", help="YAML file with compiler options")
    parser.add_argument(
        "--experimental",
        action="store_true",
        help="Allow grids up to 256 per axis"
    )
    parser.add_argument(
        "--format",
        choices=["css", "yaml"],
        default="css",
        help="Print the stylesheet (css) or the whole result (yaml)"
    )

    args = parser.parse_args(argv)
    path = Path(args.file)

    try:
        options = load_config(args.config) if args.config else CompilerOptions()
        if args.experimental:
            options = options.merged(experimental=True)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        with open(path) as f:
            source = f.read()
    except OSError as e:
        print(f"Error: cannot read {path}: {e}", file=sys.stderr)
        sys.exit(1)

    result = Compiler(options).compile(source, grid=args.grid, seed=args.seed)

    if args.format == "yaml":
        print(yaml.safe_dump(result.to_dict(), sort_keys=False, allow_unicode=True))
    else:
        print(result.styles.all)

    errors, warnings = report(path, result.diagnostics)
    if errors or warnings:
        print(f"\n{errors} error(s), {warnings} warning(s)", file=sys.stderr)

    sys.exit(1 if errors else 0)


if __name__ == "__main__":
    main()
