"""Projection metrics and the in-memory monitor."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone

from .ports import IProjectionMonitor


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProjectionMetrics:
    """Progress figures for one projection partition.

    ``partition_key`` is None for unpartitioned projections; that entry also
    carries the projection-wide worker count and lag.
    """

    projection_name: str
    partition_key: str | None = None
    current_position: int | None = None
    latest_position: int | None = None
    events_processed: int = 0
    checkpoints_written: int = 0
    last_checkpoint_position: int | None = None
    events_dropped: int = 0
    queue_depth: int = 0
    worker_count: int = 0
    processing_started_at: datetime | None = None
    last_event_at: datetime | None = None
    last_checkpoint_at: datetime | None = None

    @property
    def lag(self) -> int:
        """Events between the processed position and the tail, never negative."""
        if self.latest_position is None:
            return 0
        current = -1 if self.current_position is None else self.current_position
        return max(0, self.latest_position - current)

    @property
    def events_per_second(self) -> float:
        """Average throughput since the first processed event."""
        if self.processing_started_at is None or self.events_processed == 0:
            return 0.0
        elapsed = (_now() - self.processing_started_at).total_seconds()
        return self.events_processed / elapsed if elapsed > 0 else 0.0


class InMemoryProjectionMonitor(IProjectionMonitor):
    """Keeps the latest metrics per (projection, partition) in a dict."""

    def __init__(self) -> None:
        self._metrics: dict[tuple[str, str | None], ProjectionMetrics] = {}

    def _entry(
        self, projection_name: str, partition_key: str | None
    ) -> ProjectionMetrics:
        key = (projection_name, partition_key)
        metrics = self._metrics.get(key)
        if metrics is None:
            metrics = ProjectionMetrics(projection_name, partition_key)
            self._metrics[key] = metrics
        return metrics

    def record_event_processed(
        self, projection_name: str, partition_key: str | None, position: int
    ) -> None:
        metrics = self._entry(projection_name, partition_key)
        now = _now()
        if metrics.processing_started_at is None:
            metrics.processing_started_at = now
        metrics.events_processed += 1
        metrics.current_position = position
        metrics.last_event_at = now

    def record_checkpoint_written(
        self, projection_name: str, partition_key: str | None, position: int
    ) -> None:
        metrics = self._entry(projection_name, partition_key)
        metrics.checkpoints_written += 1
        metrics.last_checkpoint_position = position
        metrics.last_checkpoint_at = _now()

    def record_lag(
        self,
        projection_name: str,
        partition_key: str | None,
        current_position: int,
        latest_position: int | None,
    ) -> None:
        metrics = self._entry(projection_name, partition_key)
        metrics.current_position = current_position
        metrics.latest_position = latest_position

    def record_worker_count(self, projection_name: str, worker_count: int) -> None:
        self._entry(projection_name, None).worker_count = worker_count

    def record_queue_depth(
        self, projection_name: str, partition_key: str | None, depth: int
    ) -> None:
        self._entry(projection_name, partition_key).queue_depth = depth

    def record_event_dropped(
        self, projection_name: str, partition_key: str | None
    ) -> None:
        self._entry(projection_name, partition_key).events_dropped += 1

    def get_metrics(
        self, projection_name: str, partition_key: str | None = None
    ) -> ProjectionMetrics | None:
        """Return a copy of the metrics, or None if nothing was recorded."""
        metrics = self._metrics.get((projection_name, partition_key))
        return replace(metrics) if metrics is not None else None

    def get_all_metrics(
        self, projection_name: str | None = None
    ) -> list[ProjectionMetrics]:
        return [
            replace(metrics)
            for (name, _), metrics in self._metrics.items()
            if projection_name is None or name == projection_name
        ]

    def reset(self, projection_name: str | None = None) -> None:
        """Drop recorded metrics, for one projection or all of them."""
        if projection_name is None:
            self._metrics.clear()
            return
        for key in [k for k in self._metrics if k[0] == projection_name]:
            del self._metrics[key]
