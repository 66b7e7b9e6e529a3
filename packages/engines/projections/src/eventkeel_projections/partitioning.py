"""PartitionRouter: one bounded FIFO queue per partition key."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Final

from .options import BackpressureStrategy

if TYPE_CHECKING:
    from collections.abc import Callable

    from eventkeel_core.ports.event_store import StoredEvent

logger = logging.getLogger(__name__)


class _EndOfPartition:
    """Queue marker telling a worker that no more events will arrive."""

    def __repr__(self) -> str:
        return "END_OF_PARTITION"


END_OF_PARTITION: Final = _EndOfPartition()


class PartitionRouter:
    """Routes events to per-key queues in arrival order.

    A key seen for the first time opens a new queue and triggers
    ``on_new_partition(key, queue)``, which is where the runner starts that
    partition's worker. Unpartitioned projections route everything under the
    single key ``None``.

    The router is fed by a single coroutine, so with ``BLOCK`` a full queue
    suspends admission for every key until its worker catches up. The drop
    strategies never suspend and return the events they discarded.
    """

    def __init__(
        self,
        projection_name: str,
        *,
        capacity: int,
        backpressure: BackpressureStrategy = BackpressureStrategy.BLOCK,
        on_new_partition: Callable[[str | None, asyncio.Queue], None],
    ) -> None:
        self._projection_name = projection_name
        self._capacity = capacity
        self._backpressure = backpressure
        self._on_new_partition = on_new_partition
        self._queues: dict[str | None, asyncio.Queue] = {}
        self._closed = False

    @property
    def partitions(self) -> list[str | None]:
        return list(self._queues)

    def queue_depth(self, key: str | None) -> int:
        queue = self._queues.get(key)
        return queue.qsize() if queue is not None else 0

    def _queue_for(self, key: str | None) -> asyncio.Queue:
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._capacity)
            self._queues[key] = queue
            logger.debug(
                "Projection %s opened partition %r", self._projection_name, key
            )
            self._on_new_partition(key, queue)
        return queue

    async def route(self, key: str | None, event: StoredEvent) -> list[StoredEvent]:
        """Enqueue *event* under *key*.

        Returns:
            The events discarded by a drop strategy (empty when nothing was dropped).
        """
        if self._closed:
            raise RuntimeError(
                f"Router of projection {self._projection_name} is closed"
            )
        queue = self._queue_for(key)

        if not queue.full():
            queue.put_nowait(event)
            return []

        if self._backpressure is BackpressureStrategy.DROP_NEWEST:
            self._log_drop(key, event)
            return [event]

        if self._backpressure is BackpressureStrategy.DROP_OLDEST:
            oldest = queue.get_nowait()
            queue.put_nowait(event)
            self._log_drop(key, oldest)
            return [oldest]

        await queue.put(event)
        return []

    def _log_drop(self, key: str | None, event: StoredEvent) -> None:
        logger.warning(
            f"Projection {self._projection_name} partition {key!r} queue full, "
            f"dropped {event.event_type} at {event.stream}@{event.position}"
        )

    async def close(self) -> None:
        """End every partition after its queued events (graceful drain)."""
        self._closed = True
        for queue in self._queues.values():
            await queue.put(END_OF_PARTITION)

    def abort(self) -> int:
        """Discard queued events and end every partition now.

        Returns:
            How many queued events were discarded.
        """
        self._closed = True
        discarded = 0
        for queue in self._queues.values():
            while not queue.empty():
                queue.get_nowait()
                discarded += 1
            queue.put_nowait(END_OF_PARTITION)
        return discarded

    def teardown(self) -> None:
        """Forget every partition queue at the end of a run."""
        self._queues.clear()
