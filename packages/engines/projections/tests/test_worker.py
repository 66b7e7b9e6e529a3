"""Tests for ProjectionWorker."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from eventkeel_core.adapters.memory import InMemoryCheckpointStore
from eventkeel_core.ports.event_store import StoredEvent
from eventkeel_core.primitives.exceptions import HandlerFailure, OrderingViolation
from eventkeel_projections.error_handling import ApplyOutcome, ProjectionErrorPolicy
from eventkeel_projections.monitoring import InMemoryProjectionMonitor
from eventkeel_projections.options import ErrorHandlingOptions, ErrorStrategy
from eventkeel_projections.partitioning import END_OF_PARTITION
from eventkeel_projections.registry import ProjectionRegistration, ProjectionRegistry
from eventkeel_projections.worker import ProjectionWorker


class Recorder:
    def __init__(self, fail_on: set[int] | None = None) -> None:
        self.applied: list[int] = []
        self.fail_on = fail_on or set()

    async def apply(self, event: StoredEvent) -> None:
        if event.position in self.fail_on:
            raise RuntimeError(f"cannot apply {event.position}")
        self.applied.append(event.position)


def _event(position: int) -> StoredEvent:
    return StoredEvent(stream="s", position=position, event_type="Tick")


def _registration(handler: Any, **options: Any) -> ProjectionRegistration:
    return ProjectionRegistry().register(handler, name="P", stream="s", **options)


def _worker(
    registration: ProjectionRegistration,
    queue: asyncio.Queue,
    store: InMemoryCheckpointStore,
    **kwargs: Any,
) -> ProjectionWorker:
    policy = ProjectionErrorPolicy(
        registration.options.error_handling, projection_name=registration.name
    )
    return ProjectionWorker(registration, None, queue, store, policy, **kwargs)


async def _fill(queue: asyncio.Queue, *positions: int, end: bool = True) -> None:
    for position in positions:
        await queue.put(_event(position))
    if end:
        await queue.put(END_OF_PARTITION)


@pytest.mark.asyncio
async def test_applies_in_order_and_checkpoints_each_event() -> None:
    handler = Recorder()
    store = InMemoryCheckpointStore()
    queue: asyncio.Queue = asyncio.Queue()
    applied: list[tuple[int, ApplyOutcome]] = []
    committed: list[list[int]] = []

    async def on_committed(key: str | None, positions: list[int]) -> None:
        committed.append(positions)

    worker = _worker(
        _registration(handler),
        queue,
        store,
        on_applied=lambda pos, outcome: applied.append((pos, outcome)),
        on_committed=on_committed,
    )
    await _fill(queue, 0, 1, 2)
    await worker.run()

    assert handler.applied == [0, 1, 2]
    assert await store.get_checkpoint("P") == 2
    assert committed == [[0], [1], [2]]
    assert [pos for pos, _ in applied] == [0, 1, 2]
    assert worker.last_checkpoint == 2


@pytest.mark.asyncio
async def test_batched_checkpoints_flush_remainder_at_end() -> None:
    store = InMemoryCheckpointStore()
    queue: asyncio.Queue = asyncio.Queue()
    committed: list[list[int]] = []

    async def on_committed(key: str | None, positions: list[int]) -> None:
        committed.append(positions)

    worker = _worker(
        _registration(Recorder(), checkpoint_batch_size=3),
        queue,
        store,
        on_committed=on_committed,
    )
    await _fill(queue, *range(7))
    await worker.run()

    assert committed == [[0, 1, 2], [3, 4, 5], [6]]
    assert await store.get_checkpoint("P") == 6


@pytest.mark.asyncio
async def test_interval_flushes_while_idle() -> None:
    store = InMemoryCheckpointStore()
    queue: asyncio.Queue = asyncio.Queue()
    worker = _worker(
        _registration(
            Recorder(), checkpoint_batch_size=100, checkpoint_interval_seconds=0.05
        ),
        queue,
        store,
    )
    task = asyncio.create_task(worker.run())
    await _fill(queue, 0, 1, 2, end=False)

    for _ in range(100):
        if await store.get_checkpoint("P") == 2:
            break
        await asyncio.sleep(0.01)
    assert await store.get_checkpoint("P") == 2
    assert not task.done()

    await queue.put(END_OF_PARTITION)
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_never_saves_below_existing_checkpoint() -> None:
    store = InMemoryCheckpointStore()
    await store.save_checkpoint("P", 10)
    queue: asyncio.Queue = asyncio.Queue()
    worker = _worker(_registration(Recorder()), queue, store, last_checkpoint=10)

    await _fill(queue, 4)
    await worker.run()

    assert await store.get_checkpoint("P") == 10


@pytest.mark.asyncio
async def test_out_of_order_delivery_is_ordering_violation() -> None:
    store = InMemoryCheckpointStore()
    queue: asyncio.Queue = asyncio.Queue()
    handler = Recorder()
    worker = _worker(_registration(handler), queue, store)

    await _fill(queue, 0, 2, 1)
    with pytest.raises(OrderingViolation) as exc_info:
        await worker.run()

    assert exc_info.value.expected == 3
    assert exc_info.value.actual == 1
    assert handler.applied == [0, 2]
    assert await store.get_checkpoint("P") == 2


@pytest.mark.asyncio
async def test_halt_flushes_applied_positions_then_raises() -> None:
    store = InMemoryCheckpointStore()
    queue: asyncio.Queue = asyncio.Queue()
    handler = Recorder(fail_on={3})
    registration = _registration(
        handler,
        checkpoint_batch_size=10,
        error_handling=ErrorHandlingOptions(strategy=ErrorStrategy.HALT),
    )
    worker = _worker(registration, queue, store)

    await _fill(queue, 0, 1, 2, 3, 4)
    with pytest.raises(HandlerFailure):
        await worker.run()

    assert handler.applied == [0, 1, 2]
    assert await store.get_checkpoint("P") == 2
    assert queue.qsize() == 2


@pytest.mark.asyncio
async def test_skip_advances_past_failed_event() -> None:
    store = InMemoryCheckpointStore()
    queue: asyncio.Queue = asyncio.Queue()
    handler = Recorder(fail_on={1})
    outcomes: list[ApplyOutcome] = []
    registration = _registration(
        handler, error_handling=ErrorHandlingOptions(strategy=ErrorStrategy.SKIP)
    )
    worker = _worker(
        registration,
        queue,
        store,
        on_applied=lambda _pos, outcome: outcomes.append(outcome),
    )

    await _fill(queue, 0, 1, 2)
    await worker.run()

    assert handler.applied == [0, 2]
    assert outcomes == [
        ApplyOutcome.APPLIED,
        ApplyOutcome.SKIPPED,
        ApplyOutcome.APPLIED,
    ]
    assert await store.get_checkpoint("P") == 2


@pytest.mark.asyncio
async def test_semaphore_limits_concurrent_applies() -> None:
    store = InMemoryCheckpointStore()
    semaphore = asyncio.Semaphore(1)
    active = 0
    peak = 0

    class Slow:
        async def apply(self, event: StoredEvent) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    registration = _registration(Slow())
    policy = ProjectionErrorPolicy(registration.options.error_handling)
    workers = []
    for key in ("A", "B", "C"):
        queue: asyncio.Queue = asyncio.Queue()
        await _fill(queue, 0, 1)
        workers.append(
            ProjectionWorker(
                registration, key, queue, store, policy, semaphore=semaphore
            ).run()
        )

    await asyncio.gather(*workers)

    assert peak == 1
    assert await store.list_checkpoints("P") == {"A": 1, "B": 1, "C": 1}


@pytest.mark.asyncio
async def test_reports_to_monitor() -> None:
    monitor = InMemoryProjectionMonitor()
    queue: asyncio.Queue = asyncio.Queue()
    worker = _worker(
        _registration(Recorder()), queue, InMemoryCheckpointStore(), monitor=monitor
    )

    await _fill(queue, 0, 1)
    await worker.run()

    metrics = monitor.get_metrics("P")
    assert metrics is not None
    assert metrics.events_processed == 2
    assert metrics.checkpoints_written == 2
    assert metrics.last_checkpoint_position == 1
