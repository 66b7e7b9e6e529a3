"""Projection run states and status snapshots."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime


class ProjectionState(str, enum.Enum):
    """Lifecycle of one projection run.

    ``IDLE -> RESOLVING_START -> STREAMING -> (DRAINING | FAULTED) -> STOPPED``.
    ``FAULTED`` is kept until the projection is started again.
    """

    IDLE = "idle"
    RESOLVING_START = "resolving_start"
    STREAMING = "streaming"
    DRAINING = "draining"
    FAULTED = "faulted"
    STOPPED = "stopped"

    @property
    def is_active(self) -> bool:
        return self in _ACTIVE_STATES


_ACTIVE_STATES = frozenset(
    {
        ProjectionState.RESOLVING_START,
        ProjectionState.STREAMING,
        ProjectionState.DRAINING,
    }
)


@dataclass(frozen=True)
class ProjectionStatus:
    """Point-in-time view of a projection for health checks and alerting."""

    name: str
    state: ProjectionState
    error: str | None = None
    start_position: int | None = None
    processed_position: int | None = None
    committed_position: int | None = None
    partition_count: int = 0
    skipped_count: int = 0
    started_at: datetime | None = None
    stopped_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.state.is_active

    @property
    def is_faulted(self) -> bool:
        return self.state is ProjectionState.FAULTED
