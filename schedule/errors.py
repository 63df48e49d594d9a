"""Scheduling error taxonomy.

Every error is a CLIError so the CLI maps it to a stable exit code. Only
PartialFailureError means writes may have been applied; all others are
raised before the store is touched.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from core.cli_errors import CLIError, ExitCode

if TYPE_CHECKING:  # pragma: no cover
    from .model import Conflict


class SchedulingError(CLIError):
    """Base class for scheduling failures."""

    def __init__(self, message: str, code: ExitCode = ExitCode.ERROR, hint: Optional[str] = None):
        super().__init__(message, code, hint)


class InvalidRuleError(SchedulingError):
    """Structurally invalid recurrence rule; caller-correctable."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, ExitCode.INVALID_RULE, "Check the repeat settings of the series.")
        self.field = field


class EmptyGenerationError(SchedulingError):
    """The generator produced no occurrences."""

    def __init__(self, message: str = "No appointments generated; check the repeat settings."):
        super().__init__(message, ExitCode.EMPTY_GENERATION)


class CollisionError(SchedulingError):
    """A candidate occurrence overlaps an existing active appointment."""

    def __init__(self, conflict: "Conflict"):
        super().__init__(
            conflict.describe(),
            ExitCode.COLLISION,
            "Pick another time or move the conflicting appointment.",
        )
        self.conflict = conflict


class NotFoundError(SchedulingError):
    """Referenced appointment or series does not exist."""

    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} not found: {ident}", ExitCode.NOT_FOUND)
        self.kind = kind
        self.ident = ident


class PartialFailureError(SchedulingError):
    """A commit could not complete atomically; some writes may have applied."""

    def __init__(self, message: str, applied: int = 0, total: int = 0):
        super().__init__(
            message,
            ExitCode.PARTIAL_FAILURE,
            "Changes may have partially applied. Re-fetch the series and check its appointments by hand before editing again.",
        )
        self.applied = applied
        self.total = total
