"""ReplayService: one-shot, sequential re-application of a projection's history."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from eventkeel_core.primitives.exceptions import ConfigurationError, HandlerFailure

from .error_handling import ApplyOutcome, ProjectionErrorPolicy
from .exceptions import ProjectionHaltedError, ProjectionStateError
from .handler import invoke_apply
from .options import CheckpointMode, ReplayOptions

if TYPE_CHECKING:
    from collections.abc import Callable

    from eventkeel_core.ports.checkpoint_store import ICheckpointStore
    from eventkeel_core.ports.event_store import IEventStore, StoredEvent

    from .registry import ProjectionRegistration, ProjectionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ReplayResult:
    """Counters of a finished replay."""

    projection_name: str
    start_position: int
    last_position: int | None = None
    events_read: int = 0
    events_applied: int = 0
    events_skipped: int = 0
    events_filtered: int = 0
    checkpoints_written: int = 0
    dry_run: bool = False
    duration_seconds: float = 0.0


class ReplayService:
    """Replays a registered projection without starting its engine run.

    Events are applied one at a time in log order, through the projection's
    error policy. Unless replaying from the saved checkpoint, in dry-run mode
    or with ``checkpoint_mode=none``, the replayed checkpoints are reset first.
    A dry run still invokes the handler but never touches checkpoints.
    """

    def __init__(
        self,
        registry: ProjectionRegistry,
        event_store: IEventStore,
        checkpoint_store: ICheckpointStore,
        *,
        is_running: Callable[[str], bool] | None = None,
        dead_letter_callback: Callable[[StoredEvent, Exception], Any] | None = None,
    ) -> None:
        self._registry = registry
        self._event_store = event_store
        self._checkpoint_store = checkpoint_store
        self._is_running = is_running or (lambda _name: False)
        self._dead_letter_callback = dead_letter_callback

    async def replay(
        self,
        name: str,
        options: ReplayOptions | None = None,
        *,
        progress_callback: Callable[[int, int, float], Any] | None = None,
    ) -> ReplayResult:
        """Replay projection *name* and return what happened.

        ``progress_callback(processed, total, elapsed_seconds)`` is called after
        every event read; it may be sync or async.

        Raises:
            ConfigurationError: unknown projection, or a partition filter on an
                unpartitioned projection.
            ProjectionStateError: the projection is running in the engine.
            ProjectionHaltedError: the error policy halted on a handler failure.
        """
        registration = self._registry.get(name)
        opts = options or ReplayOptions()
        if self._is_running(name):
            raise ProjectionStateError(
                f"Projection '{name}' is running; stop it before replaying"
            )
        if opts.partition is not None and not registration.partitioned:
            raise ConfigurationError(f"Projection '{name}' is not partitioned")

        writes = not opts.dry_run and opts.checkpoint_mode is not CheckpointMode.NONE
        start, covered = await self._resolve_start(registration, opts)
        if writes and not opts.from_checkpoint:
            await self._reset(name, opts.partition)

        policy = ProjectionErrorPolicy(
            registration.options.error_handling,
            projection_name=name,
            dead_letter_callback=self._dead_letter_callback,
        )
        result = ReplayResult(name, start, dry_run=opts.dry_run)
        tail = await self._event_store.get_stream_position(registration.stream)
        end = tail
        if opts.to_position is not None and tail is not None:
            end = min(opts.to_position, tail)
        total = max(0, end - start + 1) if end is not None else 0
        logger.info(
            "Replaying %s from %d to %s (dry_run=%s, checkpoints=%s)",
            name,
            start,
            end,
            opts.dry_run,
            opts.checkpoint_mode.value,
        )

        loop = asyncio.get_running_loop()
        began = loop.time()
        pending: dict[str | None, int] = {}
        since_save = 0
        try:
            if end is not None and start <= end:
                async for event in self._event_store.read(registration.stream, start):
                    if event.position > end:
                        break
                    await self._replay_event(
                        registration, opts, policy, event, covered, pending, result
                    )
                    since_save += 1
                    if (
                        writes
                        and opts.checkpoint_mode is CheckpointMode.NORMAL
                        and since_save >= opts.batch_size
                    ):
                        await self._save(policy, name, pending, result)
                        since_save = 0
                    await self._report_progress(
                        progress_callback,
                        result.events_read,
                        total,
                        loop.time() - began,
                    )
        except HandlerFailure as exc:
            if writes and opts.checkpoint_mode is CheckpointMode.NORMAL:
                await self._save(policy, name, pending, result)
            result.duration_seconds = loop.time() - began
            raise ProjectionHaltedError(name, f"replay halted: {exc}") from exc

        if writes:
            await self._save(policy, name, pending, result)
            if (
                registration.partitioned
                and opts.partition is None
                and result.last_position is not None
            ):
                pending[None] = result.last_position
                await self._save(policy, name, pending, result)

        result.duration_seconds = loop.time() - began
        logger.info(
            "Replay of %s finished: read=%d applied=%d skipped=%d filtered=%d",
            name,
            result.events_read,
            result.events_applied,
            result.events_skipped,
            result.events_filtered,
        )
        return result

    async def _resolve_start(
        self, registration: ProjectionRegistration, opts: ReplayOptions
    ) -> tuple[int, dict[str, int]]:
        """Return the first position and the partition checkpoints to honour."""
        if not opts.from_checkpoint:
            return opts.from_position or 0, {}
        name = registration.name
        checkpoint = await self._checkpoint_store.get_checkpoint(
            name, partition_key=opts.partition
        )
        start = 0 if checkpoint is None else checkpoint + 1
        if opts.partition is not None or not registration.partitioned:
            return start, {}
        checkpoints = await self._checkpoint_store.list_checkpoints(name)
        return start, {k: v for k, v in checkpoints.items() if k is not None}

    async def _reset(self, name: str, partition: str | None) -> None:
        if partition is not None:
            await self._checkpoint_store.reset_checkpoint(name, partition_key=partition)
            return
        for key in await self._checkpoint_store.list_checkpoints(name):
            await self._checkpoint_store.reset_checkpoint(name, partition_key=key)

    async def _replay_event(
        self,
        registration: ProjectionRegistration,
        opts: ReplayOptions,
        policy: ProjectionErrorPolicy,
        event: StoredEvent,
        covered: dict[str, int],
        pending: dict[str | None, int],
        result: ReplayResult,
    ) -> None:
        result.events_read += 1
        accepted = registration.accepts(event)
        key = registration.partition_key_for(event) if accepted else None
        if not accepted or (
            (opts.partition is not None and key != opts.partition)
            or (key is not None and covered.get(key, -1) >= event.position)
        ):
            result.events_filtered += 1
        else:
            outcome = await policy.run(
                event, lambda: invoke_apply(registration.handler, event)
            )
            if outcome is ApplyOutcome.APPLIED:
                result.events_applied += 1
            else:
                result.events_skipped += 1
            if key is not None:
                pending[key] = event.position

        # Only positions that are fully handled count towards the checkpoint.
        result.last_position = event.position
        if not registration.partitioned:
            pending[None] = event.position

    async def _save(
        self,
        policy: ProjectionErrorPolicy,
        name: str,
        pending: dict[str | None, int],
        result: ReplayResult,
    ) -> None:
        store = self._checkpoint_store
        for key, position in pending.items():
            await policy.run_storage(
                f"checkpoint.save.{name}",
                lambda key=key, position=position: store.save_checkpoint(
                    name, position, partition_key=key
                ),
            )
            result.checkpoints_written += 1
        pending.clear()

    async def _report_progress(
        self,
        progress_callback: Callable[[int, int, float], Any] | None,
        processed: int,
        total: int,
        elapsed: float,
    ) -> None:
        if not progress_callback:
            return
        res = progress_callback(processed, total, elapsed)
        if hasattr(res, "__await__"):
            await res
