"""Projections package exceptions."""

from __future__ import annotations

from eventkeel_core.primitives.exceptions import EventKeelError


class ProjectionError(EventKeelError):
    """Base for projection-related errors."""


class ProjectionHaltedError(ProjectionError):
    """A projection stopped processing because of a fatal failure.

    The original failure (``HandlerFailure``, ``StorageFailure`` or
    ``OrderingViolation``) is chained as ``__cause__``.
    """

    def __init__(self, projection_name: str, reason: str) -> None:
        self.projection_name = projection_name
        self.reason = reason
        super().__init__(f"Projection '{projection_name}' halted: {reason}")


class ProjectionStateError(ProjectionError):
    """Raised when a lifecycle operation is not valid in the current state."""
