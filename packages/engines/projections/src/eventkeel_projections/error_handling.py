"""ProjectionErrorPolicy: retry, skip or halt per event; storage retry with backoff."""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from eventkeel_core.primitives.exceptions import HandlerFailure, StorageFailure

from .options import BackoffKind, ErrorHandlingOptions, ErrorStrategy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from eventkeel_core.ports.event_store import StoredEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureAction(str, enum.Enum):
    """Decision taken after one failed apply attempt."""

    RETRY = "retry"
    SKIP = "skip"
    HALT = "halt"


class ApplyOutcome(str, enum.Enum):
    """How an event left the policy: applied, or passed over after failures."""

    APPLIED = "applied"
    SKIPPED = "skipped"


class ProjectionErrorPolicy:
    """Per-event error handling for one projection.

    The configured strategy name is looked up in a table of policy handlers, each
    of which turns ``(event, failure, attempt)`` into a :class:`FailureAction`.
    Attempts are 1-based. ``asyncio.CancelledError`` always propagates untouched.
    """

    def __init__(
        self,
        options: ErrorHandlingOptions | None = None,
        *,
        projection_name: str = "default",
        dead_letter_callback: Callable[[StoredEvent, Exception], Any] | None = None,
    ) -> None:
        self.options = options or ErrorHandlingOptions()
        self.projection_name = projection_name
        self.dead_letter_callback = dead_letter_callback
        self._policies: dict[
            str,
            Callable[
                [ProjectionErrorPolicy, StoredEvent, HandlerFailure, int],
                Awaitable[FailureAction],
            ],
        ] = {}
        self._register_builtin_policies()

    @property
    def max_retries(self) -> int:
        return self.options.max_retries

    def register_policy(
        self,
        name: str,
        handler: Callable[
            [ProjectionErrorPolicy, StoredEvent, HandlerFailure, int],
            Awaitable[FailureAction],
        ],
    ) -> None:
        """Register or override a policy handler for a strategy name."""
        self._policies[name] = handler

    def _register_builtin_policies(self) -> None:
        cls = ProjectionErrorPolicy
        self.register_policy(ErrorStrategy.RETRY.value, cls._handle_retry)
        self.register_policy(ErrorStrategy.SKIP.value, cls._handle_skip)
        self.register_policy(ErrorStrategy.HALT.value, cls._handle_halt)

    async def _handle_retry(
        self,
        event: StoredEvent,
        failure: HandlerFailure,
        attempt: int,
    ) -> FailureAction:
        del event, failure
        if attempt <= self.options.max_retries:
            return FailureAction.RETRY
        return FailureAction(self.options.fallback_strategy.value)

    async def _handle_skip(
        self,
        event: StoredEvent,
        failure: HandlerFailure,
        attempt: int,
    ) -> FailureAction:
        del event, failure, attempt
        return FailureAction.SKIP

    async def _handle_halt(
        self,
        event: StoredEvent,
        failure: HandlerFailure,
        attempt: int,
    ) -> FailureAction:
        del event, failure, attempt
        return FailureAction.HALT

    def retry_delay(self, attempt: int) -> float:
        """Seconds to wait before re-attempting after failed attempt *attempt*."""
        initial = self.options.initial_retry_delay
        if self.options.backoff is BackoffKind.FIXED:
            return initial
        return min(initial * (2 ** (attempt - 1)), self.options.max_retry_delay)

    async def handle_failure(
        self,
        event: StoredEvent,
        failure: HandlerFailure,
        attempt: int,
    ) -> FailureAction:
        """Dispatch to the configured strategy."""
        strategy = self.options.strategy.value
        handler = self._policies.get(strategy)
        if handler is None:
            raise HandlerFailure(
                f"Unknown projection error strategy: {strategy}",
                event=event,
                attempt=attempt,
            ) from failure
        return await handler(self, event, failure, attempt)

    async def run(
        self,
        event: StoredEvent,
        apply: Callable[[], Awaitable[None]],
    ) -> ApplyOutcome:
        """Invoke *apply* until it succeeds or the strategy gives up on *event*.

        Returns:
            ``APPLIED`` on success, ``SKIPPED`` when the event was passed over.

        Raises:
            HandlerFailure: when the strategy decides to halt the projection.
        """
        attempt = 1
        while True:
            try:
                await apply()
                return ApplyOutcome.APPLIED
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failure = self._as_failure(event, exc, attempt)

            action = await self.handle_failure(event, failure, attempt)
            if action is FailureAction.RETRY:
                delay = self.retry_delay(attempt)
                logger.warning(
                    "Projection %s failed on %s@%d (attempt %d), retrying in %.2fs: %s",
                    self.projection_name,
                    event.stream,
                    event.position,
                    attempt,
                    delay,
                    failure,
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            if action is FailureAction.SKIP:
                logger.warning(
                    f"Projection {self.projection_name} skipped event "
                    f"{event.event_type} at {event.stream}@{event.position} "
                    f"after {attempt} attempt(s): {failure}"
                )
                await self._invoke_dead_letter(event, failure)
                return ApplyOutcome.SKIPPED

            logger.error(
                f"Projection {self.projection_name} halting on "
                f"{event.stream}@{event.position} after {attempt} attempt(s)",
                exc_info=failure,
            )
            raise failure

    def _as_failure(
        self, event: StoredEvent, exc: Exception, attempt: int
    ) -> HandlerFailure:
        if isinstance(exc, HandlerFailure):
            exc.event = exc.event or event
            exc.attempt = attempt
            return exc
        failure = HandlerFailure(
            f"{type(exc).__name__}: {exc}", event=event, attempt=attempt
        )
        failure.__cause__ = exc
        return failure

    async def _invoke_dead_letter(self, event: StoredEvent, error: Exception) -> None:
        if self.dead_letter_callback and callable(self.dead_letter_callback):
            res = self.dead_letter_callback(event, error)
            if hasattr(res, "__await__"):
                await res

    async def run_storage(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run a storage call, retrying ``StorageFailure`` with the configured backoff.

        The last failure propagates once ``max_retries`` re-attempts are used up.
        """
        attempt = 1
        while True:
            try:
                return await call()
            except StorageFailure as exc:
                await self.storage_backoff(operation, exc, attempt)
                attempt += 1

    async def storage_backoff(
        self, operation: str, failure: StorageFailure, attempt: int
    ) -> None:
        """Sleep before the next storage attempt, or re-raise when exhausted."""
        if attempt > self.options.max_retries:
            logger.error(
                "Projection %s: %s failed after %d attempt(s): %s",
                self.projection_name,
                operation,
                attempt,
                failure,
            )
            raise failure
        delay = self.retry_delay(attempt)
        logger.warning(
            "Projection %s: %s failed (attempt %d), retrying in %.2fs: %s",
            self.projection_name,
            operation,
            attempt,
            delay,
            failure,
        )
        await asyncio.sleep(delay)
