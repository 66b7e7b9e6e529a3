"""Engine and session factory construction from a database URL."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from eventkeel_core.primitives.exceptions import ConfigurationError

from .dialects import check_dialect

logger = logging.getLogger(__name__)


def create_storage_engine(url: str | URL, **engine_kwargs: Any) -> AsyncEngine:
    """Build an async engine for a PostgreSQL (asyncpg) or SQLite (aiosqlite) URL.

    Raises:
        ConfigurationError: the URL is malformed, names an unsupported dialect,
            or its driver cannot be loaded.
    """
    try:
        parsed = make_url(url)
    except ArgumentError as exc:
        raise ConfigurationError(f"Malformed database URL: {url!r}") from exc

    check_dialect(parsed.get_backend_name())
    try:
        engine = create_async_engine(parsed, **engine_kwargs)
    except (SQLAlchemyError, ImportError) as exc:
        raise ConfigurationError(
            f"Cannot create engine for "
            f"{parsed.render_as_string(hide_password=True)}: {exc}"
        ) from exc
    logger.info(
        "Created %s storage engine (%s)",
        parsed.get_backend_name(),
        parsed.render_as_string(hide_password=True),
    )
    return engine


def create_session_factory(
    target: str | URL | AsyncEngine, **engine_kwargs: Any
) -> async_sessionmaker[AsyncSession]:
    """Session factory for the SQL stores; accepts a URL or an existing engine."""
    engine = (
        target
        if isinstance(target, AsyncEngine)
        else create_storage_engine(target, **engine_kwargs)
    )
    return async_sessionmaker(engine, expire_on_commit=False)
