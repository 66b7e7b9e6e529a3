"""Protocols for the projection engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from eventkeel_core.ports.event_store import StoredEvent

    from .monitoring import ProjectionMetrics


@runtime_checkable
class IProjectionHandler(Protocol):
    """Protocol for a projection: ``apply(event)`` updates a read model.

    ``apply`` may be sync or async. Raising, or returning ``False``, reports a
    failure for the event. Implementations must be idempotent: after a crash an
    event past the last checkpoint can be delivered again.

    A handler may also expose ``handles`` (a set of event type tags) to receive
    only those events.
    """

    def apply(self, event: StoredEvent) -> Any:
        """Apply one event to the read model."""
        ...


@runtime_checkable
class IPartitionedProjectionHandler(IProjectionHandler, Protocol):
    """A projection whose events are processed in parallel per partition key.

    Events that share a key are applied in log order by a single worker.
    """

    def partition_key(self, event: StoredEvent) -> str:
        """Return the non-empty ordering key of *event*."""
        ...


@runtime_checkable
class IProjectionMonitor(Protocol):
    """Receives progress reports from projection workers and runners.

    ``partition_key`` is None for unpartitioned projections and for
    projection-wide figures.
    """

    def record_event_processed(
        self, projection_name: str, partition_key: str | None, position: int
    ) -> None: ...

    def record_checkpoint_written(
        self, projection_name: str, partition_key: str | None, position: int
    ) -> None: ...

    def record_lag(
        self,
        projection_name: str,
        partition_key: str | None,
        current_position: int,
        latest_position: int | None,
    ) -> None: ...

    def record_worker_count(self, projection_name: str, worker_count: int) -> None: ...

    def record_queue_depth(
        self, projection_name: str, partition_key: str | None, depth: int
    ) -> None: ...

    def record_event_dropped(
        self, projection_name: str, partition_key: str | None
    ) -> None: ...

    def get_metrics(
        self, projection_name: str, partition_key: str | None = None
    ) -> ProjectionMetrics | None: ...
