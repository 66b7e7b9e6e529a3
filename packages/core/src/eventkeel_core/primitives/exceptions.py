"""Error taxonomy shared by the event log, checkpoint store and projection engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..ports.event_store import StoredEvent


class EventKeelError(Exception):
    """Root exception for the entire eventkeel toolkit."""


class ConfigurationError(EventKeelError):
    """Raised when setup is invalid (bad connection target, missing registration).

    Detected at startup, before any event is processed.
    """


class InfrastructureError(EventKeelError):
    """Base class for all infrastructure-related errors."""


class StorageFailure(InfrastructureError):
    """The event log or checkpoint store could not complete an operation.

    Usage: Backends wrap connectivity faults and constraint violations in this
    error. The projection engine treats it as transient and retries the failing
    operation with backoff before halting the affected projection.
    """

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        self.operation = operation
        super().__init__(message)


class HandlerError(EventKeelError):
    """Base class for all handler related errors (registration, lookup, execution)."""


class HandlerFailure(HandlerError):
    """A projection's apply logic failed for one specific event.

    Carries the event and the 1-based attempt number so retry decisions and
    logs can point at the exact (stream, position).
    """

    def __init__(
        self,
        message: str,
        *,
        event: StoredEvent | None = None,
        attempt: int = 1,
    ) -> None:
        self.event = event
        self.attempt = attempt
        super().__init__(message)


class InvariantViolationError(EventKeelError):
    """Raised when an internal invariant is violated."""


class OrderingViolation(InvariantViolationError):
    """A position gap or out-of-order delivery was observed.

    Always fatal for the affected projection and never retried.
    """

    def __init__(
        self,
        message: str,
        *,
        stream: str | None = None,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        self.stream = stream
        self.expected = expected
        self.actual = actual
        super().__init__(message)
