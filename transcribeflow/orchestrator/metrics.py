"""Lifetime scheduler statistics.

:class:`LifetimeJobStats` accumulates counters as jobs move through the
scheduler; :meth:`LifetimeJobStats.snapshot` combines them with the live
queue and slot occupancy into an immutable :class:`JobStatistics`.

Two output paths, as for any long-running worker:

1. **Log summary**: :meth:`JobStatistics.format_summary` returns a single
   line for a periodic ``logger.info()`` call.
2. **JSON stats file**: :func:`write_stats_file` serialises
   :meth:`JobStatistics.as_dict` to ``/tmp/transcribeflow_stats.json``
   (overridable via ``TRANSCRIBEFLOW_STATS_PATH``).  Write errors are logged
   at WARNING level and never propagated.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

from transcribeflow.core.clock import Clock

__all__ = [
    "STATS_PATH",
    "JobStatistics",
    "LifetimeJobStats",
    "write_stats_file",
]

logger = logging.getLogger(__name__)

#: Destination for the JSON stats snapshot.
STATS_PATH: str = os.environ.get("TRANSCRIBEFLOW_STATS_PATH", "/tmp/transcribeflow_stats.json")


@dataclass(frozen=True)
class JobStatistics:
    """Point-in-time scheduler statistics.

    Attributes:
        total_jobs: Jobs accepted since start.
        active: Jobs holding a concurrency slot.
        queued: Jobs waiting in the queue.
        completed: Jobs that completed.
        failed: Jobs that failed permanently.
        cancelled: Jobs cancelled by the caller.
        rejected: Submissions refused (queue full or invalid request).
        retried: Job-level retries scheduled.
        success_rate: ``completed / (completed + failed)``, ``0.0`` before any.
        average_processing_s: Mean start-to-completion time of completed jobs.
        average_queue_wait_s: Mean time from queueing to first start.
        utilization: ``active / max_concurrent``.
        throughput_per_hour: Completed jobs per hour of uptime.
        uptime_s: Seconds since the statistics were created.
    """

    total_jobs: int
    active: int
    queued: int
    completed: int
    failed: int
    cancelled: int
    rejected: int
    retried: int
    success_rate: float
    average_processing_s: float
    average_queue_wait_s: float
    utilization: float
    throughput_per_hour: float
    uptime_s: float

    def format_summary(self) -> str:
        hours, rem = divmod(int(self.uptime_s), 3600)
        minutes, seconds = divmod(rem, 60)
        return (
            f"scheduler stats - uptime: {hours}h{minutes:02d}m{seconds:02d}s | "
            f"total={self.total_jobs} active={self.active} queued={self.queued} "
            f"completed={self.completed} failed={self.failed} "
            f"cancelled={self.cancelled} rejected={self.rejected} "
            f"retried={self.retried} success={self.success_rate:.0%} "
            f"avg_processing={self.average_processing_s:.1f}s "
            f"avg_wait={self.average_queue_wait_s:.1f}s "
            f"utilization={self.utilization:.0%}"
        )

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation, floats rounded."""
        return {k: round(v, 3) if isinstance(v, float) else v for k, v in asdict(self).items()}


@dataclass
class LifetimeJobStats:
    """Cumulative counters updated by the scheduler.

    Args:
        clock: Monotonic time source for uptime.
    """

    clock: Clock = field(default=time.monotonic, repr=False)
    total_jobs: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    rejected: int = 0
    retried: int = 0

    _processing_total_s: float = field(default=0.0, repr=False)
    _wait_total_s: float = field(default=0.0, repr=False)
    _wait_samples: int = field(default=0, repr=False)
    _started: float = field(default=0.0, repr=False)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC), repr=False)

    def __post_init__(self) -> None:
        self._started = self.clock()

    def record_queued(self) -> None:
        self.total_jobs += 1

    def record_rejected(self) -> None:
        self.rejected += 1

    def record_started(self, queue_wait_s: float | None) -> None:
        if queue_wait_s is not None:
            self._wait_total_s += queue_wait_s
            self._wait_samples += 1

    def record_retried(self) -> None:
        self.retried += 1

    def record_completed(self, duration_s: float | None) -> None:
        self.completed += 1
        if duration_s is not None:
            self._processing_total_s += duration_s

    def record_failed(self) -> None:
        self.failed += 1

    def record_cancelled(self) -> None:
        self.cancelled += 1

    def snapshot(self, *, active: int, queued: int, max_concurrent: int) -> JobStatistics:
        """Combine lifetime counters with live occupancy."""
        uptime = max(0.0, self.clock() - self._started)
        finished = self.completed + self.failed
        return JobStatistics(
            total_jobs=self.total_jobs,
            active=active,
            queued=queued,
            completed=self.completed,
            failed=self.failed,
            cancelled=self.cancelled,
            rejected=self.rejected,
            retried=self.retried,
            success_rate=self.completed / finished if finished else 0.0,
            average_processing_s=(
                self._processing_total_s / self.completed if self.completed else 0.0
            ),
            average_queue_wait_s=(
                self._wait_total_s / self._wait_samples if self._wait_samples else 0.0
            ),
            utilization=active / max_concurrent if max_concurrent else 0.0,
            throughput_per_hour=self.completed / uptime * 3600 if uptime > 0 else 0.0,
            uptime_s=uptime,
        )


def write_stats_file(stats: JobStatistics, path: str = STATS_PATH) -> None:
    """Write a JSON snapshot of *stats* to *path*.

    Errors are logged at ``WARNING`` level and never propagated.
    """
    payload = {"written_at": datetime.now(UTC).isoformat(), **stats.as_dict()}
    try:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
    except OSError:
        logger.warning("Failed to write stats file '%s'.", path, exc_info=True)
