"""Fixtures: a file-backed SQLite database per test (aiosqlite)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from eventkeel_persistence_sqlalchemy import (
    SQLAlchemyCheckpointStore,
    SQLAlchemyEventStore,
    create_schema,
    create_session_factory,
    create_storage_engine,
)


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    eng = create_storage_engine(f"sqlite+aiosqlite:///{tmp_path / 'eventkeel.db'}")
    await create_schema(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def event_store(
    session_factory: async_sessionmaker[AsyncSession],
) -> SQLAlchemyEventStore:
    return SQLAlchemyEventStore(session_factory, read_batch_size=3)


@pytest.fixture
def checkpoint_store(
    session_factory: async_sessionmaker[AsyncSession],
) -> SQLAlchemyCheckpointStore:
    return SQLAlchemyCheckpointStore(session_factory)
