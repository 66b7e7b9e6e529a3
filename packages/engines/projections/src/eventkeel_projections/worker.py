"""ProjectionWorker: sequential apply loop for one partition queue."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from eventkeel_core.correlation import get_correlation_id
from eventkeel_core.instrumentation import get_hook_registry
from eventkeel_core.primitives.exceptions import HandlerFailure, OrderingViolation

from .error_handling import ApplyOutcome, ProjectionErrorPolicy
from .handler import invoke_apply
from .partitioning import END_OF_PARTITION

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from eventkeel_core.ports.checkpoint_store import ICheckpointStore
    from eventkeel_core.ports.event_store import StoredEvent

    from .ports import IProjectionMonitor
    from .registry import ProjectionRegistration

logger = logging.getLogger(__name__)


class ProjectionWorker:
    """Owns one partition queue for the lifetime of a run.

    Dequeues events in arrival order, applies them through the error policy
    and saves the partition checkpoint every ``checkpoint_batch_size`` events
    or ``checkpoint_interval_seconds``, whichever comes first. The worker ends
    after flushing when it dequeues ``END_OF_PARTITION``.

    On a halt (``HandlerFailure``) or ``OrderingViolation`` the positions
    already applied are flushed before the error propagates; the failing event
    is never checkpointed. Cancellation propagates without a flush.
    """

    def __init__(
        self,
        registration: ProjectionRegistration,
        partition_key: str | None,
        queue: asyncio.Queue,
        checkpoint_store: ICheckpointStore,
        error_policy: ProjectionErrorPolicy,
        *,
        last_checkpoint: int | None = None,
        semaphore: asyncio.Semaphore | None = None,
        monitor: IProjectionMonitor | None = None,
        on_applied: Callable[[int, ApplyOutcome], None] | None = None,
        on_committed: Callable[[str | None, list[int]], Awaitable[None]] | None = None,
    ) -> None:
        self._registration = registration
        self._name = registration.name
        self._partition_key = partition_key
        self._queue = queue
        self._checkpoint_store = checkpoint_store
        self._error_policy = error_policy
        self._semaphore = semaphore
        self._monitor = monitor
        self._on_applied = on_applied
        self._on_committed = on_committed
        self._batch_size = registration.options.checkpoint_batch_size
        self._interval = registration.options.checkpoint_interval_seconds
        self._last_position = -1
        self._last_checkpoint = last_checkpoint
        self._unsaved: list[int] = []
        self._last_flush = 0.0

    @property
    def partition_key(self) -> str | None:
        return self._partition_key

    @property
    def last_position(self) -> int:
        return self._last_position

    @property
    def last_checkpoint(self) -> int | None:
        return self._last_checkpoint

    async def run(self) -> None:
        self._last_flush = asyncio.get_running_loop().time()
        logger.debug("Worker %s[%r] started", self._name, self._partition_key)
        try:
            while True:
                item = await self._next_item()
                if item is None:
                    await self._flush()
                    continue
                if item is END_OF_PARTITION:
                    await self._flush()
                    logger.debug(
                        "Worker %s[%r] finished at %d",
                        self._name,
                        self._partition_key,
                        self._last_position,
                    )
                    return
                await self._process(item)
                if self._flush_due():
                    await self._flush()
        except (HandlerFailure, OrderingViolation):
            await self._flush_after_failure()
            raise

    async def _next_item(self) -> Any:
        """Next queued item, or None when the checkpoint interval elapsed first."""
        if self._interval is None or not self._unsaved:
            return await self._queue.get()
        elapsed = asyncio.get_running_loop().time() - self._last_flush
        timeout = max(0.0, self._interval - elapsed)
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def _flush_due(self) -> bool:
        if len(self._unsaved) >= self._batch_size:
            return True
        if self._interval is None or not self._unsaved:
            return False
        elapsed = asyncio.get_running_loop().time() - self._last_flush
        return elapsed >= self._interval

    async def _process(self, event: StoredEvent) -> None:
        if event.position <= self._last_position:
            raise OrderingViolation(
                f"Worker {self._name}[{self._partition_key!r}] received "
                f"{event.stream}@{event.position} after {self._last_position}",
                stream=event.stream,
                expected=self._last_position + 1,
                actual=event.position,
            )

        outcome = await self._error_policy.run(event, lambda: self._apply(event))

        self._last_position = event.position
        self._unsaved.append(event.position)
        if self._monitor is not None:
            self._monitor.record_event_processed(
                self._name, self._partition_key, event.position
            )
            self._monitor.record_queue_depth(
                self._name, self._partition_key, self._queue.qsize()
            )
        if self._on_applied is not None:
            self._on_applied(event.position, outcome)

    async def _apply(self, event: StoredEvent) -> None:
        registry = get_hook_registry()
        await registry.execute_all(
            f"projection.apply.{self._name}",
            {
                "projection.name": self._name,
                "projection.partition": self._partition_key,
                "projection.position": event.position,
                "event.type": event.event_type,
                "correlation_id": get_correlation_id(),
            },
            lambda: self._apply_internal(event),
        )

    async def _apply_internal(self, event: StoredEvent) -> None:
        if self._semaphore is None:
            await invoke_apply(self._registration.handler, event)
            return
        async with self._semaphore:
            await invoke_apply(self._registration.handler, event)

    async def _flush(self) -> None:
        """Save the checkpoint for everything applied since the last flush."""
        self._last_flush = asyncio.get_running_loop().time()
        if not self._unsaved:
            return
        positions = self._unsaved
        position = positions[-1]
        if self._last_checkpoint is None or position > self._last_checkpoint:
            await self._error_policy.run_storage(
                f"checkpoint.save.{self._name}",
                lambda: self._checkpoint_store.save_checkpoint(
                    self._name, position, partition_key=self._partition_key
                ),
            )
            self._last_checkpoint = position
            logger.debug(
                "Checkpoint %s[%r] -> %d", self._name, self._partition_key, position
            )
            if self._monitor is not None:
                self._monitor.record_checkpoint_written(
                    self._name, self._partition_key, position
                )
        self._unsaved = []
        if self._on_committed is not None:
            await self._on_committed(self._partition_key, positions)

    async def _flush_after_failure(self) -> None:
        try:
            await self._flush()
        except Exception:
            logger.exception(
                "Worker %s[%r] could not save committed progress while halting",
                self._name,
                self._partition_key,
            )
