"""Translation of SQLAlchemy errors into the eventkeel error taxonomy."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from eventkeel_core.primitives.exceptions import StorageFailure

logger = logging.getLogger(__name__)


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Re-raise any ``SQLAlchemyError`` raised inside the block as ``StorageFailure``.

    The original error is kept as ``__cause__``.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.warning("Storage operation %s failed: %s", operation, exc)
        raise StorageFailure(f"{operation} failed: {exc}", operation=operation) from exc


__all__: list[str] = ["StorageFailure", "storage_errors"]
