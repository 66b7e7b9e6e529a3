"""InMemoryEventStore: per-stream list-backed event log for tests and samples."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timezone

from eventkeel_core.correlation import get_correlation_id
from eventkeel_core.instrumentation import get_hook_registry
from eventkeel_core.ports.event_store import (
    IEventStore,
    INotifyingEventStore,
    StoredEvent,
)


def _check_stream(stream: str) -> None:
    if not stream:
        raise ValueError("Stream name cannot be empty")


class InMemoryEventStore(IEventStore, INotifyingEventStore):
    """In-memory implementation of ``IEventStore``.

    Each stream is a list whose index is the event position, so positions are
    gapless by construction. Position assignment happens without an ``await``
    between reading the tail and appending, which makes it atomic on the loop.
    """

    def __init__(self) -> None:
        self._streams: dict[str, list[StoredEvent]] = {}
        self._appended = asyncio.Condition()

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
        async with self._appended:
            self._appended.notify_all()
        return position

    async def _append_internal(
        self,
        stream: str,
        event_type: str,
        payload: bytes,
        metadata: bytes | None,
    ) -> int:
        events = self._streams.setdefault(stream, [])
        position = len(events)
        events.append(
            StoredEvent(
                stream=stream,
                position=position,
                event_type=event_type,
                payload=bytes(payload),
                metadata=bytes(metadata) if metadata is not None else None,
                created_at=datetime.now(timezone.utc),
            )
        )
        return position

    async def read(
        self, stream: str, from_position: int = 0
    ) -> AsyncIterator[StoredEvent]:
        """Yield a snapshot of *stream* from *from_position* (inclusive)."""
        _check_stream(stream)
        if from_position < 0:
            raise ValueError(f"from_position must be >= 0, got {from_position}")
        snapshot = list(self._streams.get(stream, ())[from_position:])
        for event in snapshot:
            yield event

    async def get_stream_position(self, stream: str) -> int | None:
        _check_stream(stream)
        events = self._streams.get(stream)
        if not events:
            return None
        return len(events) - 1

    async def get_stream_version(self, stream: str) -> int | None:
        _check_stream(stream)
        events = self._streams.get(stream)
        return len(events) if events else None

    async def wait_for_append(
        self,
        stream: str,
        after_position: int,
        timeout: float | None = None,
    ) -> bool:
        def _has_newer() -> bool:
            return len(self._streams.get(stream, ())) - 1 > after_position

        async with self._appended:
            if _has_newer():
                return True
            try:
                await asyncio.wait_for(self._appended.wait_for(_has_newer), timeout)
            except asyncio.TimeoutError:
                return False
        return True

    # ── Test helpers ─────────────────────────────────────────────

    def stream_event_count(self, stream: str) -> int:
        return len(self._streams.get(stream, ()))

    def clear(self) -> None:
        self._streams.clear()

    def __len__(self) -> int:
        return sum(len(events) for events in self._streams.values())
