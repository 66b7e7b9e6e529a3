"""Shared fixtures for projection engine tests."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest

from eventkeel_core.adapters.memory import InMemoryCheckpointStore, InMemoryEventStore
from eventkeel_projections import InMemoryProjectionMonitor, ProjectionEngine


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def monitor() -> InMemoryProjectionMonitor:
    return InMemoryProjectionMonitor()


@pytest.fixture
async def engine(
    event_store: InMemoryEventStore,
    checkpoint_store: InMemoryCheckpointStore,
    monitor: InMemoryProjectionMonitor,
) -> AsyncIterator[ProjectionEngine]:
    """Engine over the in-memory stores; any still-running projection is cancelled."""
    projection_engine = ProjectionEngine(event_store, checkpoint_store, monitor=monitor)
    yield projection_engine
    await projection_engine.cancel()


@pytest.fixture
def append(
    event_store: InMemoryEventStore,
) -> Callable[..., Awaitable[list[int]]]:
    """Append ``count`` JSON events, cycling through ``keys`` for the ``key`` field."""

    async def _append(
        stream: str,
        count: int,
        *,
        event_type: str = "Tick",
        keys: tuple[str, ...] = ("k",),
    ) -> list[int]:
        positions = []
        for i in range(count):
            body = {"n": i, "key": keys[i % len(keys)]}
            positions.append(
                await event_store.append(stream, event_type, json.dumps(body).encode())
            )
        return positions

    return _append
