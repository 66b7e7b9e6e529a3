"""Dialect-specific statements (atomic insert-or-update)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from eventkeel_core.primitives.exceptions import ConfigurationError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

SUPPORTED_DIALECTS = ("postgresql", "sqlite")

_INSERTS: dict[str, Any] = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def check_dialect(name: str) -> None:
    if name not in SUPPORTED_DIALECTS:
        raise ConfigurationError(
            f"Unsupported database dialect '{name}'; "
            f"expected one of {', '.join(SUPPORTED_DIALECTS)}"
        )


def upsert(session: AsyncSession, model: Any) -> Any:
    """Return an INSERT for *model* that supports ``on_conflict_do_update``.

    Both PostgreSQL and SQLite compile it to ``INSERT .. ON CONFLICT .. DO UPDATE``,
    so the write is a single atomic statement rather than read-then-write.
    """
    name = session.get_bind().dialect.name
    check_dialect(name)
    return _INSERTS[name](model)
