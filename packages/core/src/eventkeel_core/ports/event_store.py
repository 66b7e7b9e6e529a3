"""IEventStore protocol + StoredEvent dataclass."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@dataclass(frozen=True)
class StoredEvent:
    """An immutable fact appended to a stream.

    - ``position``: stream-relative index, gapless and starting at 0.
    - ``payload`` / ``metadata``: opaque serialized bytes, never interpreted here.
    """

    stream: str
    position: int
    event_type: str
    payload: bytes = b""
    metadata: bytes | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class IEventStore(Protocol):
    """Protocol for the append-only, per-stream ordered event log."""

    async def append(
        self,
        stream: str,
        event_type: str,
        payload: bytes,
        metadata: bytes | None = None,
    ) -> int:
        """Atomically assign the next position of *stream* and persist the event.

        Safe under concurrent appenders to the same stream: every caller gets a
        distinct position and no position is skipped.

        Returns:
            The position assigned to the event.
        """
        ...

    def read(self, stream: str, from_position: int = 0) -> AsyncIterator[StoredEvent]:
        """Stream events with ``position >= from_position`` in ascending order.

        The sequence is a bounded snapshot taken when iteration starts; events
        appended afterwards are not included. Reading again from the same floor
        replays the same events.
        """
        ...

    async def get_stream_position(self, stream: str) -> int | None:
        """Return the last assigned position, or None if the stream does not exist."""
        ...

    async def get_stream_version(self, stream: str) -> int | None:
        """Return the number of appends to *stream*, or None if it does not exist."""
        ...


@runtime_checkable
class INotifyingEventStore(Protocol):
    """Optional capability: wake waiters when a stream receives new events.

    Stores without it are polled by the projection engine.
    """

    async def wait_for_append(
        self,
        stream: str,
        after_position: int,
        timeout: float | None = None,
    ) -> bool:
        """Suspend until *stream* holds a position greater than *after_position*.

        Returns:
            True if such a position exists, False if *timeout* elapsed first.
        """
        ...
