"""Projection engine: partition router, workers, checkpoints, replay."""

from __future__ import annotations

from .engine import ProjectionEngine
from .error_handling import ApplyOutcome, FailureAction, ProjectionErrorPolicy
from .exceptions import ProjectionError, ProjectionHaltedError, ProjectionStateError
from .handler import ProjectionHandler
from .monitoring import InMemoryProjectionMonitor, ProjectionMetrics
from .options import (
    BackoffKind,
    BackpressureStrategy,
    CheckpointMode,
    ErrorHandlingOptions,
    ErrorStrategy,
    ProjectionOptions,
    ReplayOptions,
    StartupMode,
)
from .partitioning import PartitionRouter
from .ports import IPartitionedProjectionHandler, IProjectionHandler, IProjectionMonitor
from .rebuilder import ProjectionRebuilder
from .registry import ProjectionRegistration, ProjectionRegistry
from .replay import ReplayResult, ReplayService
from .runner import ProjectionRunner
from .status import ProjectionState, ProjectionStatus
from .watermark import PositionWatermark
from .worker import ProjectionWorker

__all__ = [
    "ApplyOutcome",
    "BackoffKind",
    "BackpressureStrategy",
    "CheckpointMode",
    "ErrorHandlingOptions",
    "ErrorStrategy",
    "FailureAction",
    "IPartitionedProjectionHandler",
    "IProjectionHandler",
    "IProjectionMonitor",
    "InMemoryProjectionMonitor",
    "PartitionRouter",
    "PositionWatermark",
    "ProjectionEngine",
    "ProjectionError",
    "ProjectionErrorPolicy",
    "ProjectionHaltedError",
    "ProjectionHandler",
    "ProjectionMetrics",
    "ProjectionOptions",
    "ProjectionRebuilder",
    "ProjectionRegistration",
    "ProjectionRegistry",
    "ProjectionRunner",
    "ProjectionState",
    "ProjectionStatus",
    "ProjectionWorker",
    "ReplayOptions",
    "ReplayResult",
    "ReplayService",
]
