"""
SQLAlchemy implementation of the event log.

Position assignment is one ``INSERT .. ON CONFLICT DO UPDATE .. RETURNING`` on the
stream row, executed in the same transaction as the event insert. The stream row
lock serialises concurrent appenders to one stream, so every caller gets a
distinct position, positions commit in order, and an event is never visible
without its stream position (or the reverse).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from eventkeel_core.correlation import get_correlation_id
from eventkeel_core.instrumentation import get_hook_registry
from eventkeel_core.ports.event_store import IEventStore, StoredEvent
from eventkeel_core.primitives.exceptions import ConfigurationError

from .dialects import upsert
from .exceptions import storage_errors
from .models import EventModel, StreamModel

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    AsyncSessionFactory = Callable[[], AsyncSession]

logger = logging.getLogger(__name__)


def _check_stream(stream: str) -> None:
    if not stream:
        raise ValueError("Stream name cannot be empty")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class SQLAlchemyEventStore(IEventStore):
    """
    Event log over the ``eventkeel_streams`` / ``eventkeel_events`` tables.

    Each operation opens its own session from *session_factory*. Reads are paged
    in ``read_batch_size`` rows up to the stream position observed when the
    read started. Every ``SQLAlchemyError`` is raised as ``StorageFailure``.
    """

    def __init__(
        self,
        session_factory: AsyncSessionFactory,
        *,
        read_batch_size: int = 500,
    ) -> None:
        if read_batch_size < 1:
            raise ConfigurationError("read_batch_size must be >= 1")
        self._session_factory = session_factory
        self._read_batch_size = read_batch_size

    async def append(
        self,
        stream: str,
        event_type: str,
        payload: bytes,
        metadata: bytes | None = None,
    ) -> int:
        _check_stream(stream)
        if not event_type:
            raise ValueError("Event type cannot be empty")
        registry = get_hook_registry()
        position: int = await registry.execute_all(
            f"event_store.append.{stream}",
            {
                "stream": stream,
                "event.type": event_type,
                "correlation_id": get_correlation_id(),
            },
            lambda: self._append_internal(stream, event_type, payload, metadata),
        )
        return position

    async def _append_internal(
        self,
        stream: str,
        event_type: str,
        payload: bytes,
        metadata: bytes | None,
    ) -> int:
        now = datetime.now(timezone.utc)
        with storage_errors("event_store.append"):
            async with self._session_factory() as session, session.begin():
                stmt: Any = upsert(session, StreamModel).values(
                    stream_name=stream,
                    current_position=0,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["stream_name"],
                    set_={
                        "current_position": StreamModel.current_position + 1,
                        "version": StreamModel.version + 1,
                        "updated_at": now,
                    },
                ).returning(StreamModel.current_position)
                position = int((await session.execute(stmt)).scalar_one())
                session.add(
                    EventModel(
                        stream_name=stream,
                        position=position,
                        event_type=event_type,
                        payload=bytes(payload),
                        metadata_=bytes(metadata) if metadata is not None else None,
                        created_at=now,
                    )
                )
        logger.debug("Appended %s to %s@%d", event_type, stream, position)
        return position

    async def read(
        self, stream: str, from_position: int = 0
    ) -> AsyncIterator[StoredEvent]:
        """Yield events of *stream* from *from_position* up to the tail at start."""
        _check_stream(stream)
        if from_position < 0:
            raise ValueError(f"from_position must be >= 0, got {from_position}")
        upper = await self.get_stream_position(stream)
        if upper is None:
            return
        cursor = from_position
        while cursor <= upper:
            page = await self._read_page(stream, cursor, upper)
            if not page:
                return
            for event in page:
                yield event
            cursor = page[-1].position + 1

    async def _read_page(
        self, stream: str, cursor: int, upper: int
    ) -> list[StoredEvent]:
        stmt = (
            select(EventModel)
            .where(
                EventModel.stream_name == stream,
                EventModel.position >= cursor,
                EventModel.position <= upper,
            )
            .order_by(EventModel.position)
            .limit(self._read_batch_size)
        )
        with storage_errors("event_store.read"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [self._to_dataclass(m) for m in result.scalars().all()]

    async def get_stream_position(self, stream: str) -> int | None:
        _check_stream(stream)
        return await self._stream_column(stream, StreamModel.current_position)

    async def get_stream_version(self, stream: str) -> int | None:
        _check_stream(stream)
        return await self._stream_column(stream, StreamModel.version)

    async def _stream_column(self, stream: str, column: Any) -> int | None:
        stmt = select(column).where(StreamModel.stream_name == stream)
        with storage_errors("event_store.get_stream_position"):
            async with self._session_factory() as session:
                value = (await session.execute(stmt)).scalar_one_or_none()
        return int(value) if value is not None else None

    def _to_dataclass(self, model: EventModel) -> StoredEvent:
        return StoredEvent(
            stream=model.stream_name,
            position=model.position,
            event_type=model.event_type,
            payload=model.payload,
            metadata=model.metadata_,
            created_at=_as_utc(model.created_at),
        )
