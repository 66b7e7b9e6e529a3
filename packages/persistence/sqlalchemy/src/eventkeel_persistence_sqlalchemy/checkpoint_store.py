"""SQLAlchemy checkpoint store with atomic upserts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select

from eventkeel_core.correlation import get_correlation_id
from eventkeel_core.instrumentation import get_hook_registry
from eventkeel_core.ports.checkpoint_store import ICheckpointStore

from .dialects import upsert
from .exceptions import storage_errors
from .models import UNPARTITIONED_KEY, CheckpointModel

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    AsyncSessionFactory = Callable[[], AsyncSession]

logger = logging.getLogger(__name__)


def _column_key(projection_name: str, partition_key: str | None) -> str:
    if not projection_name:
        raise ValueError("Projection name cannot be empty")
    if partition_key is None:
        return UNPARTITIONED_KEY
    if not partition_key:
        raise ValueError("Partition key cannot be an empty string")
    return partition_key


class SQLAlchemyCheckpointStore(ICheckpointStore):
    """Persistent checkpoint store over the ``eventkeel_checkpoints`` table.

    The projection-level checkpoint (``partition_key=None``) is stored under
    the empty-string partition key. Saves are last-write-wins upserts.
    """

    def __init__(self, session_factory: AsyncSessionFactory) -> None:
        self._session_factory = session_factory

    async def get_checkpoint(
        self,
        projection_name: str,
        partition_key: str | None = None,
    ) -> int | None:
        key = _column_key(projection_name, partition_key)
        stmt = select(CheckpointModel.position).where(
            CheckpointModel.projection_name == projection_name,
            CheckpointModel.partition_key == key,
        )
        with storage_errors("checkpoint.get"):
            async with self._session_factory() as session:
                value = (await session.execute(stmt)).scalar_one_or_none()
        return int(value) if value is not None else None

    async def save_checkpoint(
        self,
        projection_name: str,
        position: int,
        partition_key: str | None = None,
    ) -> None:
        key = _column_key(projection_name, partition_key)
        registry = get_hook_registry()
        await registry.execute_all(
            f"checkpoint.save.{projection_name}",
            {
                "projection.name": projection_name,
                "projection.partition": partition_key,
                "projection.position": position,
                "correlation_id": get_correlation_id(),
            },
            lambda: self._save_internal(projection_name, key, position),
        )

    async def _save_internal(
        self, projection_name: str, key: str, position: int
    ) -> None:
        now = datetime.now(timezone.utc)
        with storage_errors("checkpoint.save"):
            async with self._session_factory() as session, session.begin():
                stmt: Any = upsert(session, CheckpointModel).values(
                    projection_name=projection_name,
                    partition_key=key,
                    position=position,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["projection_name", "partition_key"],
                    set_={"position": position, "updated_at": now},
                )
                await session.execute(stmt)

    async def reset_checkpoint(
        self,
        projection_name: str,
        partition_key: str | None = None,
    ) -> None:
        key = _column_key(projection_name, partition_key)
        stmt = delete(CheckpointModel).where(
            CheckpointModel.projection_name == projection_name,
            CheckpointModel.partition_key == key,
        )
        with storage_errors("checkpoint.reset"):
            async with self._session_factory() as session, session.begin():
                await session.execute(stmt)
        logger.debug("Checkpoint %s[%r] reset", projection_name, partition_key)

    async def list_checkpoints(self, projection_name: str) -> dict[str | None, int]:
        _column_key(projection_name, None)
        stmt = select(CheckpointModel.partition_key, CheckpointModel.position).where(
            CheckpointModel.projection_name == projection_name
        )
        with storage_errors("checkpoint.list"):
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        return {
            (None if key == UNPARTITIONED_KEY else key): int(position)
            for key, position in rows
        }
