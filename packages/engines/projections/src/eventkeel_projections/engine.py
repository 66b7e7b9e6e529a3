"""ProjectionEngine: operational surface over the registered projections."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .exceptions import ProjectionStateError
from .monitoring import InMemoryProjectionMonitor
from .rebuilder import ProjectionRebuilder
from .registry import ProjectionRegistry
from .replay import ReplayService
from .runner import ProjectionRunner
from .status import ProjectionState, ProjectionStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from eventkeel_core.ports.checkpoint_store import ICheckpointStore
    from eventkeel_core.ports.event_store import IEventStore, StoredEvent

    from .options import ProjectionOptions, ReplayOptions
    from .ports import IProjectionMonitor
    from .registry import ProjectionRegistration
    from .replay import ReplayResult

logger = logging.getLogger(__name__)


class ProjectionEngine:
    """Starts, stops and inspects projections over one event store.

    Each projection runs independently: a fault in one leaves every other
    projection running. Usable as an async context manager, which starts all
    registered projections on entry and stops them gracefully on exit.

    Example::

        engine = ProjectionEngine(event_store, checkpoint_store)
        engine.register(OrderSummary(), name="order_summary", stream="orders")
        async with engine:
            await engine.wait_until_caught_up("order_summary", timeout=5)
    """

    def __init__(
        self,
        event_store: IEventStore,
        checkpoint_store: ICheckpointStore,
        *,
        registry: ProjectionRegistry | None = None,
        monitor: IProjectionMonitor | None = None,
        dead_letter_callback: Callable[[StoredEvent, Exception], Any] | None = None,
    ) -> None:
        self._event_store = event_store
        self._checkpoint_store = checkpoint_store
        self._registry = registry or ProjectionRegistry()
        self._monitor = monitor if monitor is not None else InMemoryProjectionMonitor()
        self._dead_letter_callback = dead_letter_callback
        self._runners: dict[str, ProjectionRunner] = {}
        self._rebuilder = ProjectionRebuilder(
            self._registry, checkpoint_store, is_running=self.is_running
        )
        self._replay = ReplayService(
            self._registry,
            event_store,
            checkpoint_store,
            is_running=self.is_running,
            dead_letter_callback=dead_letter_callback,
        )

    @property
    def registry(self) -> ProjectionRegistry:
        return self._registry

    @property
    def monitor(self) -> IProjectionMonitor:
        return self._monitor

    @property
    def rebuilder(self) -> ProjectionRebuilder:
        return self._rebuilder

    def register(
        self,
        handler: Any,
        options: ProjectionOptions | None = None,
        **overrides: Any,
    ) -> ProjectionRegistration:
        """Register a projection handler; see :meth:`ProjectionRegistry.register`."""
        registration = self._registry.register(handler, options, **overrides)
        logger.info(
            "Registered projection %s on stream %s (partitioned=%s)",
            registration.name,
            registration.stream,
            registration.partitioned,
        )
        return registration

    def _names(self, name: str | None) -> list[str]:
        if name is None:
            return self._registry.names()
        self._registry.get(name)
        return [name]

    def _runner(self, name: str) -> ProjectionRunner:
        runner = self._runners.get(name)
        if runner is None:
            runner = ProjectionRunner(
                self._registry.get(name),
                self._event_store,
                self._checkpoint_store,
                monitor=self._monitor,
                dead_letter_callback=self._dead_letter_callback,
            )
            self._runners[name] = runner
        return runner

    def is_running(self, name: str) -> bool:
        runner = self._runners.get(name)
        return runner is not None and runner.is_running

    async def start(self, name: str | None = None) -> None:
        """Start one projection, or every registered projection not yet running.

        Raises:
            ConfigurationError: *name* is not registered.
            ProjectionStateError: *name* is already running.
        """
        for projection in self._names(name):
            runner = self._runner(projection)
            if runner.is_running and name is None:
                continue
            await runner.start()

    async def stop(self, name: str | None = None) -> None:
        """Gracefully drain and stop one or all projections."""
        runners = [self._runners[n] for n in self._names(name) if n in self._runners]
        await asyncio.gather(*(runner.stop() for runner in runners))

    async def cancel(self, name: str | None = None) -> None:
        """Stop one or all projections, discarding events not yet applied."""
        runners = [self._runners[n] for n in self._names(name) if n in self._runners]
        await asyncio.gather(*(runner.cancel() for runner in runners))

    def status(self, name: str) -> ProjectionStatus:
        self._registry.get(name)
        runner = self._runners.get(name)
        if runner is None:
            return ProjectionStatus(name=name, state=ProjectionState.IDLE)
        return runner.status()

    def statuses(self) -> dict[str, ProjectionStatus]:
        return {name: self.status(name) for name in self._registry.names()}

    async def get_checkpoints(self, name: str) -> dict[str | None, int]:
        """Saved positions of *name* by partition; None keys the watermark."""
        self._registry.get(name)
        return await self._checkpoint_store.list_checkpoints(name)

    async def reset(self, name: str) -> None:
        await self._rebuilder.reset_projection(name)
        self._monitor_reset(name)

    async def reset_partition(self, name: str, partition_key: str) -> None:
        await self._rebuilder.reset_partition(name, partition_key)

    def _monitor_reset(self, name: str) -> None:
        reset = getattr(self._monitor, "reset", None)
        if callable(reset):
            reset(name)

    async def replay(
        self,
        name: str,
        options: ReplayOptions | None = None,
        *,
        progress_callback: Callable[[int, int, float], Any] | None = None,
    ) -> ReplayResult:
        """One-shot replay of a stopped projection; see :class:`ReplayService`."""
        return await self._replay.replay(
            name, options, progress_callback=progress_callback
        )

    async def wait_until_caught_up(
        self, name: str, timeout: float | None = None
    ) -> bool:
        self._registry.get(name)
        runner = self._runners.get(name)
        if runner is None:
            raise ProjectionStateError(f"Projection '{name}' has not been started")
        return await runner.wait_until_caught_up(timeout)

    async def __aenter__(self) -> ProjectionEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
