"""ICheckpointStore: durable projection progress keyed by (projection, partition)."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ICheckpointStore(Protocol):
    """
    Tracks the last processed position for each projection and partition.

    Essential for:
    - Crash recovery (resume after the last committed position)
    - Idempotency (never re-deliver a checkpointed event)
    - Monitoring (lag detection)

    ``partition_key=None`` addresses the projection-level checkpoint. A missing
    row means the projection (or partition) never committed anything.
    """

    async def get_checkpoint(
        self,
        projection_name: str,
        partition_key: str | None = None,
    ) -> int | None:
        """Return the last saved position, or None if never saved (or reset)."""
        ...

    async def save_checkpoint(
        self,
        projection_name: str,
        position: int,
        partition_key: str | None = None,
    ) -> None:
        """Upsert the position; concurrent saves resolve to the last applied write."""
        ...

    async def reset_checkpoint(
        self,
        projection_name: str,
        partition_key: str | None = None,
    ) -> None:
        """Delete the checkpoint so the next get reports None."""
        ...

    async def list_checkpoints(self, projection_name: str) -> dict[str | None, int]:
        """Return every saved checkpoint of a projection, keyed by partition."""
        ...
