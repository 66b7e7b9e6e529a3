"""Projection engine over the SQL stores: crash recovery and partitions."""

from __future__ import annotations

import json

import pytest

from eventkeel_core.ports.event_store import StoredEvent
from eventkeel_persistence_sqlalchemy import (
    SQLAlchemyCheckpointStore,
    SQLAlchemyEventStore,
)
from eventkeel_projections import ProjectionEngine, ReplayOptions


class Recorder:
    def __init__(self) -> None:
        self.applied: list[int] = []

    async def apply(self, event: StoredEvent) -> None:
        self.applied.append(event.position)


class Keyed(Recorder):
    def partition_key(self, event: StoredEvent) -> str:
        return json.loads(event.payload)["key"]


def _engine(
    event_store: SQLAlchemyEventStore, checkpoint_store: SQLAlchemyCheckpointStore
) -> ProjectionEngine:
    return ProjectionEngine(event_store, checkpoint_store)


@pytest.mark.asyncio
async def test_restart_resumes_from_durable_checkpoint(
    event_store: SQLAlchemyEventStore, checkpoint_store: SQLAlchemyCheckpointStore
) -> None:
    for i in range(10):
        await event_store.append("S", "Tick", json.dumps({"n": i}).encode())

    first = Recorder()
    engine = _engine(event_store, checkpoint_store)
    engine.register(first, name="P", stream="S", poll_interval_seconds=0.01)
    async with engine:
        assert await engine.wait_until_caught_up("P", timeout=10)
    assert first.applied == list(range(10))
    assert await checkpoint_store.get_checkpoint("P") == 9

    second = Recorder()
    restarted = _engine(event_store, checkpoint_store)
    restarted.register(second, name="P", stream="S", poll_interval_seconds=0.01)
    async with restarted:
        await event_store.append("S", "Tick", b"{}")
        assert await restarted.wait_until_caught_up("P", timeout=10)

    assert second.applied == [10]
    assert await checkpoint_store.get_checkpoint("P") == 10


@pytest.mark.asyncio
async def test_partitioned_checkpoints_and_reset(
    event_store: SQLAlchemyEventStore, checkpoint_store: SQLAlchemyCheckpointStore
) -> None:
    for i in range(6):
        key = "A" if i % 2 == 0 else "B"
        await event_store.append("S", "Tick", json.dumps({"key": key}).encode())

    handler = Keyed()
    engine = _engine(event_store, checkpoint_store)
    engine.register(handler, name="P", stream="S", poll_interval_seconds=0.01)
    async with engine:
        assert await engine.wait_until_caught_up("P", timeout=10)

    assert await engine.get_checkpoints("P") == {"A": 4, "B": 5, None: 5}

    await engine.reset("P")
    assert await engine.get_checkpoints("P") == {}


@pytest.mark.asyncio
async def test_replay_over_sql(
    event_store: SQLAlchemyEventStore, checkpoint_store: SQLAlchemyCheckpointStore
) -> None:
    for _ in range(7):
        await event_store.append("S", "Tick", b"{}")
    handler = Recorder()
    engine = _engine(event_store, checkpoint_store)
    engine.register(handler, name="P", stream="S")

    result = await engine.replay("P", ReplayOptions(batch_size=3))

    assert handler.applied == list(range(7))
    assert result.checkpoints_written == 3
    assert await checkpoint_store.get_checkpoint("P") == 6
