"""ProjectionRebuilder: reset checkpoints so projections rebuild from the log."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from eventkeel_core.primitives.exceptions import ConfigurationError

from .exceptions import ProjectionStateError

if TYPE_CHECKING:
    from collections.abc import Callable

    from eventkeel_core.ports.checkpoint_store import ICheckpointStore

    from .registry import ProjectionRegistry

logger = logging.getLogger(__name__)


class ProjectionRebuilder:
    """Deletes checkpoints of registered projections.

    The next run of a reset projection starts from position 0 and re-applies
    every event; read models must tolerate that (idempotent handlers, or a
    cleared read model). A running projection cannot be reset.
    """

    def __init__(
        self,
        registry: ProjectionRegistry,
        checkpoint_store: ICheckpointStore,
        *,
        is_running: Callable[[str], bool] | None = None,
    ) -> None:
        self._registry = registry
        self._checkpoint_store = checkpoint_store
        self._is_running = is_running or (lambda _name: False)

    def registered_projections(self) -> list[str]:
        return self._registry.names()

    def _ensure_idle(self, name: str) -> None:
        self._registry.get(name)
        if self._is_running(name):
            raise ProjectionStateError(
                f"Projection '{name}' is running; stop it before resetting"
            )

    async def reset_projection(self, name: str) -> None:
        """Remove every checkpoint (all partitions and the watermark) of *name*."""
        self._ensure_idle(name)
        checkpoints = await self._checkpoint_store.list_checkpoints(name)
        for partition_key in checkpoints:
            await self._checkpoint_store.reset_checkpoint(
                name, partition_key=partition_key
            )
        # Covers a watermark written between listing and resetting.
        await self._checkpoint_store.reset_checkpoint(name)
        logger.info(f"Reset projection {name} ({len(checkpoints)} checkpoint(s))")

    async def reset_partition(self, name: str, partition_key: str) -> None:
        """Rebuild one partition of a partitioned projection.

        The projection watermark is removed too, so the next run reads from the
        start of the log; other partitions skip what their own checkpoints cover.
        """
        self._ensure_idle(name)
        if not self._registry.get(name).partitioned:
            raise ConfigurationError(f"Projection '{name}' is not partitioned")
        await self._checkpoint_store.reset_checkpoint(name, partition_key=partition_key)
        await self._checkpoint_store.reset_checkpoint(name)
        logger.info(f"Reset partition {partition_key!r} of projection {name}")

    async def reset_all(self) -> None:
        names = self.registered_projections()
        for name in names:
            self._ensure_idle(name)
        for name in names:
            await self.reset_projection(name)
