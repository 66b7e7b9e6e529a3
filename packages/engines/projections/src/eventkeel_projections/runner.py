"""ProjectionRunner: drives one projection: resolve start, feed, supervise, stop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from eventkeel_core.correlation import correlation_scope
from eventkeel_core.ports.event_store import INotifyingEventStore
from eventkeel_core.primitives.exceptions import OrderingViolation, StorageFailure

from .error_handling import ApplyOutcome, ProjectionErrorPolicy
from .exceptions import ProjectionHaltedError, ProjectionStateError
from .options import StartupMode
from .partitioning import PartitionRouter
from .status import ProjectionState, ProjectionStatus
from .watermark import PositionWatermark
from .worker import ProjectionWorker

if TYPE_CHECKING:
    from collections.abc import Callable

    from eventkeel_core.ports.checkpoint_store import ICheckpointStore
    from eventkeel_core.ports.event_store import IEventStore, StoredEvent

    from .ports import IProjectionMonitor
    from .registry import ProjectionRegistration

logger = logging.getLogger(__name__)


class ProjectionRunner:
    """Runs one registered projection as a set of asyncio tasks.

    A single feed task reads the source stream in position order and hands
    each event to the :class:`PartitionRouter`; one :class:`ProjectionWorker`
    task per partition applies events and saves that partition's checkpoint.

    Partitioned projections additionally persist a projection-level watermark
    (partition ``None``): the highest position P such that every event up to P
    is checkpointed by its partition or was passed over. A restart reads from
    watermark + 1 and skips events already covered by their partition's
    checkpoint.

    A worker failure, a storage failure that outlives its retries, or an
    ordering violation faults only this projection.
    """

    def __init__(
        self,
        registration: ProjectionRegistration,
        event_store: IEventStore,
        checkpoint_store: ICheckpointStore,
        *,
        monitor: IProjectionMonitor | None = None,
        dead_letter_callback: Callable[[StoredEvent, Exception], Any] | None = None,
    ) -> None:
        self._registration = registration
        self._options = registration.options
        self._event_store = event_store
        self._checkpoint_store = checkpoint_store
        self._monitor = monitor
        self._policy = ProjectionErrorPolicy(
            self._options.error_handling,
            projection_name=registration.name,
            dead_letter_callback=dead_letter_callback,
        )
        self._state = ProjectionState.IDLE
        self._error: ProjectionHaltedError | None = None
        self._skipped = 0
        self._task: asyncio.Task[None] | None = None
        self._feed_task: asyncio.Task[None] | None = None
        self._fault: asyncio.Future[BaseException] | None = None
        self._router: PartitionRouter | None = None
        self._workers: dict[str | None, asyncio.Task[None]] = {}
        self._semaphore: asyncio.Semaphore | None = None
        self._watermark_lock = asyncio.Lock()
        self._progress = asyncio.Event()
        self._processed = PositionWatermark()
        self._committed = PositionWatermark()
        self._partition_checkpoints: dict[str, int] = {}
        self._saved_watermark: int | None = None
        self._start_position: int | None = None
        self._tail: int | None = None
        self._stop_requested = False
        self._drain = True
        self._partition_count = 0
        self._started_at: datetime | None = None
        self._stopped_at: datetime | None = None

    # ── Introspection ────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._registration.name

    @property
    def state(self) -> ProjectionState:
        return self._state

    @property
    def error(self) -> ProjectionHaltedError | None:
        return self._error

    @property
    def is_running(self) -> bool:
        return self._state.is_active

    def status(self) -> ProjectionStatus:
        started = self._start_position is not None
        processed = self._processed.value if started else -1
        committed = self._committed.value if started else -1
        return ProjectionStatus(
            name=self.name,
            state=self._state,
            error=str(self._error) if self._error is not None else None,
            start_position=self._start_position,
            processed_position=processed if processed >= 0 else None,
            committed_position=committed if committed >= 0 else None,
            partition_count=len(self._workers) or self._partition_count,
            skipped_count=self._skipped,
            started_at=self._started_at,
            stopped_at=self._stopped_at,
        )

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self.is_running:
            raise ProjectionStateError(f"Projection '{self.name}' is already running")
        self._reset_run_state()
        self._set_state(ProjectionState.RESOLVING_START)
        self._task = asyncio.create_task(self._run(), name=f"projection:{self.name}")

    async def stop(self) -> None:
        """Stop gracefully: apply everything already routed, flush, then stop."""
        await self._shutdown(drain=True)

    async def cancel(self) -> None:
        """Stop promptly: finish in-flight applies, discard queued events, flush."""
        await self._shutdown(drain=False)

    async def wait(self) -> None:
        """Wait for the current run to end (stopped or faulted)."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def wait_until_caught_up(self, timeout: float | None = None) -> bool:
        """Wait until every event present now has been processed.

        Returns:
            True when caught up, False if *timeout* elapsed first.

        Raises:
            ProjectionHaltedError: if the projection faults while waiting.
            ProjectionStateError: if it stops (or was never started) before catching up.
        """
        target = await self._event_store.get_stream_position(self._options.stream)

        async def _caught_up() -> None:
            while True:
                if self._start_position is not None and (
                    target is None or self._processed.value >= target
                ):
                    return
                if self._state is ProjectionState.FAULTED and self._error is not None:
                    raise self._error
                if not self._state.is_active:
                    raise ProjectionStateError(
                        f"Projection '{self.name}' is not running"
                    )
                await self._progress.wait()

        try:
            await asyncio.wait_for(_caught_up(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _shutdown(self, *, drain: bool) -> None:
        task = self._task
        if task is None or task.done():
            return
        self._stop_requested = True
        self._drain = drain
        if self._feed_task is None:
            task.cancel()
        else:
            self._feed_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _reset_run_state(self) -> None:
        self._error = None
        self._skipped = 0
        self._feed_task = None
        self._fault = None
        self._router = None
        self._workers = {}
        self._partition_checkpoints = {}
        self._processed = PositionWatermark()
        self._committed = PositionWatermark()
        self._saved_watermark = None
        self._start_position = None
        self._tail = None
        self._stop_requested = False
        self._drain = True
        self._partition_count = 0
        self._started_at = datetime.now(timezone.utc)
        self._stopped_at = None
        max_parallel = self._options.max_degree_of_parallelism
        self._semaphore = asyncio.Semaphore(max_parallel) if max_parallel else None

    def _set_state(self, state: ProjectionState) -> None:
        previous = self._state
        self._state = state
        logger.info("Projection %s: %s -> %s", self.name, previous.value, state.value)
        self._notify_progress()

    def _notify_progress(self) -> None:
        self._progress.set()
        self._progress = asyncio.Event()

    def _finish(self, state: ProjectionState) -> None:
        self._partition_count = len(self._workers)
        self._workers = {}
        if self._router is not None:
            self._router.teardown()
        self._stopped_at = datetime.now(timezone.utc)
        self._set_state(state)

    # ── Run ──────────────────────────────────────────────────────

    async def _run(self) -> None:
        with correlation_scope():
            try:
                start = await self._resolve_start()
            except asyncio.CancelledError:
                self._finish(ProjectionState.STOPPED)
                raise
            except Exception as exc:
                self._record_fault(exc)
                return

            if self._stop_requested:
                self._finish(ProjectionState.STOPPED)
                return

            self._begin_streaming(start)
            try:
                await self._supervise()
            except asyncio.CancelledError:
                await self._halt(None)
                raise
            except Exception as exc:
                await self._halt(exc)

    async def _resolve_start(self) -> int:
        name = self.name
        mode = self._options.startup_mode

        if mode is StartupMode.REPLAY:
            existing = await self._policy.run_storage(
                "checkpoint.list", lambda: self._checkpoint_store.list_checkpoints(name)
            )
            for key in existing:
                await self._policy.run_storage(
                    "checkpoint.reset",
                    lambda key=key: self._checkpoint_store.reset_checkpoint(
                        name, partition_key=key
                    ),
                )
            logger.info("Projection %s: replay requested, checkpoints reset", name)

        checkpoints = await self._policy.run_storage(
            "checkpoint.list", lambda: self._checkpoint_store.list_checkpoints(name)
        )
        watermark = checkpoints.pop(None, None)

        if mode is StartupMode.LIVE_ONLY or (
            mode is StartupMode.CATCH_UP and watermark is None and not checkpoints
        ):
            tail = await self._policy.run_storage(
                "event_store.get_stream_position",
                lambda: self._event_store.get_stream_position(self._options.stream),
            )
            start = 0 if tail is None else tail + 1
            checkpoints = {}
        else:
            start = 0 if watermark is None else watermark + 1

        if self._registration.partitioned:
            self._partition_checkpoints = {
                key: position
                for key, position in checkpoints.items()
                if key is not None
            }
        self._saved_watermark = watermark
        logger.info(
            "Projection %s: starting at %s@%d (mode=%s, watermark=%s, partitions=%d)",
            name,
            self._options.stream,
            start,
            mode.value,
            watermark,
            len(self._partition_checkpoints),
        )
        return start

    def _begin_streaming(self, start: int) -> None:
        self._start_position = start
        self._processed = PositionWatermark(start - 1)
        self._committed = PositionWatermark(start - 1)
        self._router = PartitionRouter(
            self.name,
            capacity=self._options.queue_capacity,
            backpressure=self._options.backpressure,
            on_new_partition=self._spawn_worker,
        )
        self._fault = asyncio.get_running_loop().create_future()
        self._set_state(ProjectionState.STREAMING)
        self._feed_task = asyncio.create_task(
            self._feed(start), name=f"projection:{self.name}:feed"
        )

    async def _supervise(self) -> None:
        assert self._feed_task is not None and self._fault is not None
        await asyncio.wait(
            {self._feed_task, self._fault}, return_when=asyncio.FIRST_COMPLETED
        )
        failure = self._current_failure()
        if failure is not None or not self._stop_requested:
            await self._halt(failure)
            return
        await self._drain_and_stop()

    def _current_failure(self) -> BaseException | None:
        if self._fault is not None and self._fault.done():
            return self._fault.result()
        feed = self._feed_task
        if feed is not None and feed.done() and not feed.cancelled():
            return feed.exception()
        return None

    async def _drain_and_stop(self) -> None:
        assert self._router is not None and self._fault is not None
        self._set_state(ProjectionState.DRAINING)
        closing: asyncio.Task[None] | None = None
        if self._drain:
            closing = asyncio.create_task(self._router.close())
        else:
            discarded = self._router.abort()
            if discarded:
                logger.info(
                    "Projection %s: cancel discarded %d queued event(s)",
                    self.name,
                    discarded,
                )

        workers = asyncio.gather(*self._workers.values(), return_exceptions=True)
        await asyncio.wait({workers, self._fault}, return_when=asyncio.FIRST_COMPLETED)
        if self._fault.done() and not workers.done():
            self._router.abort()
        await workers
        if closing is not None:
            closing.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await closing

        failure = self._current_failure()
        if failure is not None:
            await self._halt(failure)
            return
        await self._save_watermark()
        self._finish(ProjectionState.STOPPED)

    async def _halt(self, failure: BaseException | None) -> None:
        """Stop feeding, let workers finish in-flight applies, record the fault."""
        feed = self._feed_task
        if feed is not None and not feed.done():
            feed.cancel()
        if feed is not None:
            await asyncio.gather(feed, return_exceptions=True)
        if self._router is not None:
            self._router.abort()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)

        try:
            await self._save_watermark()
        except Exception:
            logger.exception(
                "Projection %s: could not save watermark while halting", self.name
            )

        if failure is None:
            # Feed cancelled from outside the stop path.
            self._finish(ProjectionState.STOPPED)
            return
        self._record_fault(failure)

    def _record_fault(self, failure: BaseException) -> None:
        reason = f"{type(failure).__name__}: {failure}"
        error = ProjectionHaltedError(self.name, reason)
        error.__cause__ = failure
        self._error = error
        logger.error(
            "Projection %s faulted: %s", self.name, reason, exc_info=failure
        )
        self._finish(ProjectionState.FAULTED)

    # ── Feed ─────────────────────────────────────────────────────

    async def _feed(self, start: int) -> None:
        stream = self._options.stream
        expected = start
        while True:
            self._tail = await self._policy.run_storage(
                "event_store.get_stream_position",
                lambda: self._event_store.get_stream_position(stream),
            )
            if self._tail is not None and self._tail >= expected:
                reached = await self._read_pass(expected)
                if reached == expected:
                    raise OrderingViolation(
                        f"Stream {stream} reports position {self._tail} "
                        f"but has no event at {expected}",
                        stream=stream,
                        expected=expected,
                    )
                expected = reached
                continue
            await self._wait_for_events(expected - 1)

    async def _read_pass(self, expected: int) -> int:
        """Read one snapshot from *expected*, reopening the cursor on faults."""
        stream = self._options.stream
        attempt = 1
        while True:
            try:
                async for event in self._event_store.read(stream, expected):
                    await self._dispatch(event, expected)
                    expected += 1
                return expected
            except StorageFailure as exc:
                await self._policy.storage_backoff("event_store.read", exc, attempt)
                attempt += 1

    async def _wait_for_events(self, after_position: int) -> None:
        store = self._event_store
        interval = self._options.poll_interval_seconds
        if isinstance(store, INotifyingEventStore):
            await store.wait_for_append(self._options.stream, after_position, interval)
        else:
            await asyncio.sleep(interval)

    async def _dispatch(self, event: StoredEvent, expected: int) -> None:
        assert self._router is not None
        if event.position != expected:
            raise OrderingViolation(
                f"Expected {event.stream}@{expected}, read position {event.position}",
                stream=event.stream,
                expected=expected,
                actual=event.position,
            )
        position = event.position
        self._processed.track(position)
        self._committed.track(position)

        if not self._registration.accepts(event):
            self._pass_over(position)
            return
        key = self._registration.partition_key_for(event)
        if key is not None and self._partition_checkpoints.get(key, -1) >= position:
            self._pass_over(position)
            return

        dropped = await self._router.route(key, event)
        for lost in dropped:
            self._pass_over(lost.position)
            if self._monitor is not None:
                self._monitor.record_event_dropped(self.name, key)
        if self._monitor is not None:
            self._monitor.record_lag(self.name, None, self._processed.value, self._tail)

    def _pass_over(self, position: int) -> None:
        self._processed.complete(position)
        self._committed.complete(position)
        self._notify_progress()

    # ── Workers ──────────────────────────────────────────────────

    def _spawn_worker(self, key: str | None, queue: asyncio.Queue) -> None:
        if key is not None:
            last_checkpoint = self._partition_checkpoints.get(key)
        else:
            last_checkpoint = self._saved_watermark
        worker = ProjectionWorker(
            self._registration,
            key,
            queue,
            self._checkpoint_store,
            self._policy,
            last_checkpoint=last_checkpoint,
            semaphore=self._semaphore,
            monitor=self._monitor,
            on_applied=self._on_applied,
            on_committed=self._on_committed,
        )
        task = asyncio.create_task(worker.run(), name=f"projection:{self.name}:{key}")
        task.add_done_callback(self._on_worker_done)
        self._workers[key] = task
        logger.debug("Projection %s: worker started for partition %r", self.name, key)
        if self._monitor is not None:
            self._monitor.record_worker_count(self.name, len(self._workers))

    def _on_worker_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self._fault is not None and not self._fault.done():
            self._fault.set_result(exc)

    def _on_applied(self, position: int, outcome: ApplyOutcome) -> None:
        if outcome is ApplyOutcome.SKIPPED:
            self._skipped += 1
        self._processed.complete(position)
        self._notify_progress()

    async def _on_committed(self, key: str | None, positions: list[int]) -> None:
        for position in positions:
            self._committed.complete(position)
        if key is None:
            # The worker of an unpartitioned projection writes the watermark key itself.
            last = positions[-1]
            if self._saved_watermark is None or last > self._saved_watermark:
                self._saved_watermark = last
            return
        await self._save_watermark()

    async def _save_watermark(self) -> None:
        async with self._watermark_lock:
            value = self._committed.value
            if value < 0:
                return
            if self._saved_watermark is not None and value <= self._saved_watermark:
                return
            await self._policy.run_storage(
                f"checkpoint.save.{self.name}",
                lambda: self._checkpoint_store.save_checkpoint(self.name, value),
            )
            self._saved_watermark = value
            logger.debug("Watermark %s -> %d", self.name, value)
