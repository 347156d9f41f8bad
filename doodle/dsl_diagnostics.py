"""
Non-fatal diagnostics collected while parsing and composing.

Nothing in the compiler raises on malformed source; anomalies worth
reporting are recorded here with their source location instead.
"""

from dataclasses import dataclass, field
from typing import List


@dataclass
class Diagnostic:
    """A diagnostic with location info."""
    message: str
    line: int = 0
    column: int = 0
    severity: str = "warning"  # "error" or "warning"

    def __str__(self):
        if self.line:
            loc = f"line {self.line}, column {self.column}"
        else:
            loc = "unknown location"
        return f"[{self.severity}] {loc}: {self.message}"


@dataclass
class DiagnosticLog:
    """Diagnostics gathered during one compile."""
    errors: List[Diagnostic] = field(default_factory=list)
    warnings: List[Diagnostic] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def add_error(self, message: str, line: int = 0, column: int = 0):
        self.errors.append(Diagnostic(message, line, column, "error"))

    def add_warning(self, message: str, line: int = 0, column: int = 0):
        self.warnings.append(Diagnostic(message, line, column, "warning"))

    def merge(self, other: 'DiagnosticLog'):
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def __iter__(self):
        return iter(self.errors + self.warnings)

    def __len__(self):
        return len(self.errors) + len(self.warnings)

    def __str__(self):
        return "\n".join(str(d) for d in self)
