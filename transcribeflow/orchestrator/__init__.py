"""Job scheduling, progress tracking, result collection, and statistics.

Public API
----------
* :class:`~transcribeflow.orchestrator.scheduler.JobScheduler`: priority
  queue, concurrency slots, and the per-job pipeline.
* :class:`~transcribeflow.orchestrator.progress.ProgressTracker`: adaptive
  status polling with safety valves.
* :class:`~transcribeflow.orchestrator.results.ResultCollector`: result
  download and normalisation.
* :class:`~transcribeflow.orchestrator.metrics.LifetimeJobStats` and
  :func:`~transcribeflow.orchestrator.metrics.write_stats_file`.

Wiring from settings lives in :mod:`transcribeflow.orchestrator.factory` and
the process entry points in :mod:`transcribeflow.orchestrator.runner`; import
those modules directly.
"""

from transcribeflow.orchestrator.metrics import JobStatistics, LifetimeJobStats, write_stats_file
from transcribeflow.orchestrator.progress import (
    JobProgress,
    ProgressTracker,
    StopReason,
    TrackerConfig,
    TrackingOutcome,
)
from transcribeflow.orchestrator.queue import PriorityJobQueue
from transcribeflow.orchestrator.results import CollectorConfig, ResultCollector
from transcribeflow.orchestrator.scheduler import (
    JobEvent,
    JobEventKind,
    JobScheduler,
    JobStatusSnapshot,
    SchedulerConfig,
    SubmitResult,
)

__all__ = [
    # Scheduler
    "SchedulerConfig",
    "JobScheduler",
    "JobEvent",
    "JobEventKind",
    "JobStatusSnapshot",
    "SubmitResult",
    "PriorityJobQueue",
    # Tracking
    "TrackerConfig",
    "ProgressTracker",
    "JobProgress",
    "StopReason",
    "TrackingOutcome",
    # Results
    "CollectorConfig",
    "ResultCollector",
    # Statistics
    "JobStatistics",
    "LifetimeJobStats",
    "write_stats_file",
]
