"""Per-run state handed explicitly to every engine operation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..logging import OperationScope


@dataclass(slots=True)
class RunContext:
    """Warning/error tallies plus an optional handle on the operation log."""

    scope: OperationScope | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    steps: list[tuple[str, str]] = field(default_factory=list)

    @property
    def warning_count(self) -> int:
        """Return the number of warnings recorded so far."""
        return len(self.warnings)

    @property
    def error_count(self) -> int:
        """Return the number of errors recorded so far."""
        return len(self.errors)

    def step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an engine step."""
        self.steps.append((name, status))
        if self.scope is not None:
            self.scope.add_step(name, status=status, detail=detail)

    def warn(self, message: str) -> None:
        """Record a non-fatal problem."""
        self.warnings.append(message)
        self._emit(logging.WARNING, message)

    def error(self, message: str) -> None:
        """Record a failure."""
        self.errors.append(message)
        self._emit(logging.ERROR, message)

    def info(self, message: str) -> None:
        """Write *message* to the human log only."""
        self._emit(logging.INFO, message)

    def _emit(self, level: int, message: str) -> None:
        if self.scope is not None:
            self.scope.logger.emit_line(level, f"{self.scope.command}: {message}")


__all__ = ["RunContext"]
