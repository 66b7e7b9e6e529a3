"""SQLAlchemy persistence adapter: PostgreSQL and SQLite event log and checkpoints."""

from __future__ import annotations

from .checkpoint_store import SQLAlchemyCheckpointStore
from .config import create_session_factory, create_storage_engine
from .dialects import SUPPORTED_DIALECTS
from .event_store import SQLAlchemyEventStore
from .exceptions import storage_errors
from .models import (
    UNPARTITIONED_KEY,
    Base,
    CheckpointModel,
    EventModel,
    StreamModel,
    create_schema,
    drop_schema,
)

__all__ = [
    "Base",
    "CheckpointModel",
    "EventModel",
    "SQLAlchemyCheckpointStore",
    "SQLAlchemyEventStore",
    "StreamModel",
    "SUPPORTED_DIALECTS",
    "UNPARTITIONED_KEY",
    "create_schema",
    "create_session_factory",
    "create_storage_engine",
    "drop_schema",
    "storage_errors",
]
