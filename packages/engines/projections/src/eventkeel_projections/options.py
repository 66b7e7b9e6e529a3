"""Projection configuration models."""

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StartupMode(str, enum.Enum):
    """Where a projection starts reading when the engine starts it."""

    RESUME = "resume"
    """Continue after the saved checkpoint, or from the first position."""

    REPLAY = "replay"
    """Delete every checkpoint of the projection and rebuild from position 0."""

    CATCH_UP = "catch_up"
    """Resume if checkpointed; otherwise skip history and start after the tail."""

    LIVE_ONLY = "live_only"
    """Always start after the current tail, ignoring saved progress."""


class BackpressureStrategy(str, enum.Enum):
    """What the router does when a partition queue is full."""

    BLOCK = "block"
    DROP_NEWEST = "drop_newest"
    DROP_OLDEST = "drop_oldest"


class ErrorStrategy(str, enum.Enum):
    RETRY = "retry"
    SKIP = "skip"
    HALT = "halt"


class BackoffKind(str, enum.Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class CheckpointMode(str, enum.Enum):
    """Checkpoint writing during a replay."""

    NORMAL = "normal"
    FINAL_ONLY = "final_only"
    NONE = "none"


class ErrorHandlingOptions(BaseModel):
    """Per-projection handler failure policy.

    ``max_retries`` counts re-attempts after the first failure, so a handler is
    invoked at most ``max_retries + 1`` times for one event before
    ``fallback_strategy`` applies.
    """

    model_config = ConfigDict(frozen=True)

    strategy: ErrorStrategy = ErrorStrategy.RETRY
    max_retries: int = Field(default=3, ge=0)
    initial_retry_delay: float = Field(default=1.0, ge=0)
    max_retry_delay: float = Field(default=30.0, ge=0)
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    fallback_strategy: ErrorStrategy = ErrorStrategy.HALT

    @model_validator(mode="after")
    def _check_delays_and_fallback(self) -> ErrorHandlingOptions:
        if self.initial_retry_delay > self.max_retry_delay:
            raise ValueError(
                "initial_retry_delay cannot be greater than max_retry_delay"
            )
        if self.fallback_strategy is ErrorStrategy.RETRY:
            raise ValueError(
                "fallback_strategy cannot be 'retry'; use 'skip' or 'halt'"
            )
        return self


class ProjectionOptions(BaseModel):
    """Registration-time configuration of one projection."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    stream: str = Field(min_length=1)
    startup_mode: StartupMode = StartupMode.RESUME
    checkpoint_batch_size: int = Field(default=1, ge=1)
    checkpoint_interval_seconds: float | None = Field(default=None, gt=0)
    max_degree_of_parallelism: int | None = Field(default=None, ge=1)
    queue_capacity: int = Field(default=1000, ge=1)
    backpressure: BackpressureStrategy = BackpressureStrategy.BLOCK
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    error_handling: ErrorHandlingOptions = Field(default_factory=ErrorHandlingOptions)


class ReplayOptions(BaseModel):
    """Options of a one-shot replay run."""

    model_config = ConfigDict(frozen=True)

    from_position: int | None = Field(default=None, ge=0)
    to_position: int | None = Field(default=None, ge=0)
    from_checkpoint: bool = False
    partition: str | None = Field(default=None, min_length=1)
    batch_size: int = Field(default=100, ge=1)
    dry_run: bool = False
    checkpoint_mode: CheckpointMode = CheckpointMode.NORMAL

    @model_validator(mode="after")
    def _check_range(self) -> ReplayOptions:
        if (
            self.from_position is not None
            and self.to_position is not None
            and self.from_position > self.to_position
        ):
            raise ValueError(
                f"from_position ({self.from_position}) cannot be greater than "
                f"to_position ({self.to_position})"
            )
        return self
