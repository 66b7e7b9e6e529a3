"""In-memory checkpoint store for testing."""

from __future__ import annotations

from eventkeel_core.correlation import get_correlation_id
from eventkeel_core.instrumentation import get_hook_registry
from eventkeel_core.ports.checkpoint_store import ICheckpointStore


def _check_key(projection_name: str, partition_key: str | None) -> None:
    if not projection_name:
        raise ValueError("Projection name cannot be empty")
    if partition_key is not None and not partition_key:
        raise ValueError("Partition key cannot be an empty string")


class InMemoryCheckpointStore(ICheckpointStore):
    """In-memory checkpoint store keyed by ``(projection, partition)``."""

    def __init__(self) -> None:
        self._positions: dict[tuple[str, str | None], int] = {}

    async def get_checkpoint(
        self,
        projection_name: str,
        partition_key: str | None = None,
    ) -> int | None:
        _check_key(projection_name, partition_key)
        return self._positions.get((projection_name, partition_key))

    async def save_checkpoint(
        self,
        projection_name: str,
        position: int,
        partition_key: str | None = None,
    ) -> None:
        _check_key(projection_name, partition_key)
        registry = get_hook_registry()
        await registry.execute_all(
            f"checkpoint.save.{projection_name}",
            {
                "projection.name": projection_name,
                "projection.partition": partition_key,
                "projection.position": position,
                "correlation_id": get_correlation_id(),
            },
            lambda: self._save_internal(projection_name, position, partition_key),
        )

    async def _save_internal(
        self, projection_name: str, position: int, partition_key: str | None
    ) -> None:
        self._positions[(projection_name, partition_key)] = position

    async def reset_checkpoint(
        self,
        projection_name: str,
        partition_key: str | None = None,
    ) -> None:
        _check_key(projection_name, partition_key)
        self._positions.pop((projection_name, partition_key), None)

    async def list_checkpoints(self, projection_name: str) -> dict[str | None, int]:
        _check_key(projection_name, None)
        return {
            partition: position
            for (name, partition), position in self._positions.items()
            if name == projection_name
        }

    def clear(self) -> None:
        """Reset all positions (for tests)."""
        self._positions.clear()
