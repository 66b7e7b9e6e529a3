"""Tests for InMemoryEventStore."""

from __future__ import annotations

import asyncio

import pytest

from eventkeel_core.adapters.memory.event_store import InMemoryEventStore
from eventkeel_core.ports.event_store import IEventStore, INotifyingEventStore


async def _collect(store: InMemoryEventStore, stream: str, floor: int = 0) -> list:
    return [e async for e in store.read(stream, floor)]


@pytest.mark.asyncio
class TestInMemoryEventStore:
    """Test InMemoryEventStore append/read/position semantics."""

    @pytest.fixture
    def store(self) -> InMemoryEventStore:
        return InMemoryEventStore()

    async def test_satisfies_protocols(self, store: InMemoryEventStore) -> None:
        assert isinstance(store, IEventStore)
        assert isinstance(store, INotifyingEventStore)

    async def test_first_append_creates_stream_at_zero(
        self, store: InMemoryEventStore
    ) -> None:
        assert await store.get_stream_position("orders") is None
        assert await store.get_stream_version("orders") is None

        position = await store.append("orders", "OrderPlaced", b'{"id": 1}')

        assert position == 0
        assert await store.get_stream_position("orders") == 0
        assert await store.get_stream_version("orders") == 1

    async def test_positions_are_per_stream(self, store: InMemoryEventStore) -> None:
        assert await store.append("a", "E", b"") == 0
        assert await store.append("b", "E", b"") == 0
        assert await store.append("a", "E", b"") == 1
        assert store.stream_event_count("a") == 2
        assert len(store) == 3

    async def test_concurrent_appends_get_distinct_gapless_positions(
        self, store: InMemoryEventStore
    ) -> None:
        positions = await asyncio.gather(
            *(store.append("S", "Tick", str(i).encode()) for i in range(50))
        )

        assert sorted(positions) == list(range(50))
        events = await _collect(store, "S")
        assert [e.position for e in events] == list(range(50))

    async def test_read_from_floor_is_inclusive_and_ordered(
        self, store: InMemoryEventStore
    ) -> None:
        for i in range(5):
            await store.append("S", "Tick", str(i).encode(), metadata=b"m")

        events = await _collect(store, "S", 2)

        assert [e.position for e in events] == [2, 3, 4]
        assert [e.payload for e in events] == [b"2", b"3", b"4"]
        assert all(e.metadata == b"m" for e in events)
        assert all(e.stream == "S" and e.event_type == "Tick" for e in events)

    async def test_read_is_repeatable(self, store: InMemoryEventStore) -> None:
        for i in range(3):
            await store.append("S", "Tick", str(i).encode())

        first = await _collect(store, "S", 1)
        second = await _collect(store, "S", 1)

        assert first == second

    async def test_read_is_a_snapshot_taken_at_start(
        self, store: InMemoryEventStore
    ) -> None:
        for i in range(3):
            await store.append("S", "Tick", str(i).encode())

        seen = []
        async for event in store.read("S"):
            seen.append(event.position)
            if event.position == 0:
                await store.append("S", "Tick", b"late")

        assert seen == [0, 1, 2]
        assert await store.get_stream_position("S") == 3

    async def test_read_unknown_stream_is_empty(
        self, store: InMemoryEventStore
    ) -> None:
        assert await _collect(store, "missing") == []

    async def test_invalid_arguments(self, store: InMemoryEventStore) -> None:
        with pytest.raises(ValueError):
            await store.append("", "E", b"")
        with pytest.raises(ValueError):
            await store.append("S", "", b"")
        with pytest.raises(ValueError):
            await _collect(store, "S", -1)

    async def test_wait_for_append_wakes_on_new_event(
        self, store: InMemoryEventStore
    ) -> None:
        await store.append("S", "E", b"")
        waiter = asyncio.create_task(store.wait_for_append("S", 0, timeout=2))
        await asyncio.sleep(0)
        assert not waiter.done()

        await store.append("S", "E", b"")

        assert await waiter is True

    async def test_wait_for_append_times_out(self, store: InMemoryEventStore) -> None:
        assert await store.wait_for_append("S", -1, timeout=0.01) is False

    async def test_wait_for_append_returns_immediately_when_behind(
        self, store: InMemoryEventStore
    ) -> None:
        await store.append("S", "E", b"")
        await store.append("S", "E", b"")
        assert await store.wait_for_append("S", 0, timeout=0.01) is True

    async def test_clear(self, store: InMemoryEventStore) -> None:
        await store.append("S", "E", b"")
        store.clear()
        assert len(store) == 0
        assert await store.get_stream_position("S") is None
