"""Table models for the SQL event log and checkpoint store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import (
    BigInteger,
    DateTime,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

#: Partition key stored for the projection-level (unpartitioned) checkpoint.
UNPARTITIONED_KEY = ""

_BIG_INT = Integer().with_variant(BigInteger, "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for the eventkeel tables."""


class StreamModel(Base):
    """One row per stream: the last assigned position and the append counter."""

    __tablename__ = "eventkeel_streams"

    stream_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    current_position: Mapped[int] = mapped_column(_BIG_INT)
    version: Mapped[int] = mapped_column(_BIG_INT)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class EventModel(Base):
    """An appended event; ``(stream_name, position)`` is unique."""

    __tablename__ = "eventkeel_events"

    id: Mapped[int] = mapped_column(
        Integer().with_variant(BigInteger, "postgresql"),
        primary_key=True,
        autoincrement=True,
    )
    stream_name: Mapped[str] = mapped_column(String(255))
    position: Mapped[int] = mapped_column(_BIG_INT)
    event_type: Mapped[str] = mapped_column(String(255), index=True)
    payload: Mapped[bytes] = mapped_column(LargeBinary)
    metadata_: Mapped[bytes | None] = mapped_column(
        "metadata", LargeBinary, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "stream_name", "position", name="uq_eventkeel_events_position"
        ),
    )


class CheckpointModel(Base):
    """Last processed position per ``(projection_name, partition_key)``."""

    __tablename__ = "eventkeel_checkpoints"

    projection_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    partition_key: Mapped[str] = mapped_column(
        String(255), primary_key=True, default=UNPARTITIONED_KEY
    )
    position: Mapped[int] = mapped_column(_BIG_INT)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create the eventkeel tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
