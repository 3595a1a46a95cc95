"""Adaptive status polling for submitted jobs.

:class:`ProgressTracker` polls the speech service for one job until the job
reaches a terminal remote state, reporting every observed change through
callbacks.  All polls go through the shared
:class:`~transcribeflow.resilience.guard.ServiceGuard`.

Poll interval
~~~~~~~~~~~~~
::

    base = base_poll_interval_s
    submitted / pending      base
    processing, < 10 %       base * 1.5     (nothing to see yet)
    processing, > 80 %       base * 0.8     (tighten near the end)
    every 10 polls           x min(1.2 ** (polls // 10), 4)
    jitter                   + U[0, 0.1) * interval
    cap                      max_poll_interval_s

Progress estimate
~~~~~~~~~~~~~~~~~
Used only when the service does not report a percentage.  0 % before the
job starts; while running, linear in ``elapsed / expected`` (clamped to
5..95 %) when an expected duration is known, otherwise the staged curve
5 / 15 / 35 / 60 % at 1 / 5 / 15 / 30 minutes approaching 80 %.  The value
never decreases while the job runs, stays below 100 % until the service
confirms success, and drops to 0 % on failure or cancellation.

Safety valves
~~~~~~~~~~~~~
Tracking stops without raising after ``max_poll_attempts`` polls or
``max_job_duration_s`` of wall time.  The :class:`TrackingOutcome` says why.
"""

from __future__ import annotations

import inspect
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, model_validator

from transcribeflow.core import events
from transcribeflow.core.clock import Clock, Sleep, default_sleep, utc_from_timestamp
from transcribeflow.core.models import JobPriority, JobStatus
from transcribeflow.gateway.base import RemoteStatus, StatusQuery, StatusReport
from transcribeflow.resilience.classifier import classify
from transcribeflow.resilience.guard import ServiceGuard

__all__ = [
    "TrackerConfig",
    "StopReason",
    "JobProgress",
    "TrackingOutcome",
    "ProgressTracker",
    "poll_interval",
    "estimate_progress",
    "estimate_completion",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: (elapsed minutes upper bound, progress %) for the staged heuristic.
_STAGES: Final[tuple[tuple[float, float], ...]] = ((1, 5.0), (5, 15.0), (15, 35.0), (30, 60.0))

#: Asymptote of the staged heuristic.
_STAGED_CEILING: Final[float] = 80.0

#: Highest progress reported before the service confirms success.
_RUNNING_CEILING: Final[float] = 99.0


class TrackerConfig(BaseModel):
    """Polling tuning.

    Attributes:
        base_poll_interval_s: Interval before adaptive scaling.
        max_poll_interval_s: Upper bound of any interval.
        max_poll_attempts: Safety valve on the number of polls.
        max_job_duration_s: Safety valve on wall time since acceptance.
        adaptive: Scale the interval by status, progress and poll count.
    """

    model_config = ConfigDict(frozen=True)

    base_poll_interval_s: float = Field(default=5.0, gt=0)
    max_poll_interval_s: float = Field(default=60.0, gt=0)
    max_poll_attempts: int = Field(default=720, ge=1)
    max_job_duration_s: float = Field(default=4 * 3600.0, gt=0)
    adaptive: bool = True

    @model_validator(mode="after")
    def _base_within_max(self) -> TrackerConfig:
        if self.base_poll_interval_s > self.max_poll_interval_s:
            raise ValueError(
                f"base_poll_interval_s ({self.base_poll_interval_s}) "
                f"> max_poll_interval_s ({self.max_poll_interval_s})"
            )
        return self


class StopReason(StrEnum):
    TERMINAL = "terminal"
    MAX_POLLS = "max_polls"
    MAX_DURATION = "max_duration"
    STOPPED = "stopped"


@dataclass(frozen=True)
class JobProgress:
    """One progress observation.

    Attributes:
        job_id: Local job id.
        external_job_id: Remote job id.
        status: Local status mapped from the remote one.
        remote_status: Status as the service reported it.
        progress: Percentage in ``[0, 100]``.
        estimated_completion: Projected completion time, if estimable.
        poll_count: Polls made so far, failed ones included.
        elapsed_s: Seconds since the job was accepted (or created remotely).
        observed_at: When the observation was made.
    """

    job_id: str
    external_job_id: str
    status: JobStatus
    remote_status: RemoteStatus
    progress: float
    estimated_completion: datetime | None
    poll_count: int
    elapsed_s: float
    observed_at: datetime


@dataclass(frozen=True)
class TrackingOutcome:
    """Why and where tracking ended."""

    job_id: str
    reason: StopReason
    polls: int
    poll_errors: int
    last: JobProgress | None = None
    report: StatusReport | None = None

    @property
    def final_status(self) -> JobStatus | None:
        if self.reason is not StopReason.TERMINAL or self.last is None:
            return None
        return self.last.status


ProgressCallback = Callable[[JobProgress], object]
StatusChangeCallback = Callable[[JobStatus, JobStatus, JobProgress], object]

# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def poll_interval(
    config: TrackerConfig,
    status: JobStatus,
    progress: float,
    polls: int,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait before the next poll."""
    if not config.adaptive:
        return config.base_poll_interval_s
    if status.is_terminal:
        return 0.0

    interval = config.base_poll_interval_s
    if status is JobStatus.PROCESSING:
        if progress < 10:
            interval *= 1.5
        elif progress > 80:
            interval *= 0.8

    interval *= min(1.2 ** (polls // 10), 4.0)

    if rng is not None:
        interval += rng.random() * 0.1 * interval

    return min(interval, config.max_poll_interval_s)


def estimate_progress(
    remote_status: RemoteStatus,
    elapsed_s: float,
    expected_duration_s: float | None = None,
) -> float:
    """Estimated percentage for a job the service reports no progress for."""
    match remote_status:
        case RemoteStatus.NOT_STARTED | RemoteStatus.FAILED | RemoteStatus.CANCELLED:
            return 0.0
        case RemoteStatus.SUCCEEDED:
            return 100.0
        case RemoteStatus.RUNNING:
            pass

    if expected_duration_s:
        return min(95.0, max(5.0, elapsed_s / expected_duration_s * 100))

    minutes = elapsed_s / 60
    for upper, value in _STAGES:
        if minutes < upper:
            return value
    return min(_STAGED_CEILING, 60.0 + (minutes - 30) * 0.5)


def estimate_completion(
    status: JobStatus,
    progress: float,
    elapsed_s: float,
    now: datetime,
) -> datetime | None:
    """Project when the job will finish, or ``None`` if it cannot be told."""
    if status is JobStatus.COMPLETED:
        return now
    if progress <= 0 or status in (JobStatus.FAILED, JobStatus.CANCELLED):
        return None
    remaining = elapsed_s / progress * 100 - elapsed_s
    return now + timedelta(seconds=max(0.0, remaining))


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class ProgressTracker:
    """Poll remote job status until a terminal state or a safety valve.

    Args:
        status_query: Collaborator answering status requests.
        guard: Shared rate limiter and breaker.
        config: Polling tuning.
        clock: Epoch-seconds time source.
        sleep: Coroutine used between polls.
        rng: Jitter source.
    """

    def __init__(
        self,
        status_query: StatusQuery,
        guard: ServiceGuard,
        config: TrackerConfig | None = None,
        *,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._status_query = status_query
        self._guard = guard
        self.config = config or TrackerConfig()
        self._clock = clock or time.time
        self._sleep = sleep or default_sleep
        self._rng = rng or random.Random()
        self._tracking: set[str] = set()
        self._stopped: set[str] = set()
        self._latest: dict[str, JobProgress] = {}

    def active_job_ids(self) -> list[str]:
        return sorted(self._tracking)

    def latest(self, job_id: str) -> JobProgress | None:
        """Most recent observation for *job_id*, kept after tracking ends."""
        return self._latest.get(job_id)

    def forget(self, job_id: str) -> None:
        self._latest.pop(job_id, None)

    def stop(self, job_id: str) -> bool:
        """Ask the polling loop of *job_id* to stop at its next check."""
        if job_id not in self._tracking:
            return False
        self._stopped.add(job_id)
        return True

    def stop_all(self) -> None:
        self._stopped.update(self._tracking)

    async def track(
        self,
        job_id: str,
        external_job_id: str,
        *,
        priority: JobPriority = JobPriority.NORMAL,
        started_at: float | None = None,
        expected_duration_s: float | None = None,
        on_progress: ProgressCallback | None = None,
        on_status_change: StatusChangeCallback | None = None,
        max_duration_s: float | None = None,
    ) -> TrackingOutcome:
        """Poll *external_job_id* until done.

        Args:
            job_id: Local job id, used for callbacks and logs.
            external_job_id: Remote job id to poll.
            priority: Admission priority of the status calls.
            started_at: Epoch seconds the job was accepted; defaults to now.
            expected_duration_s: Enables linear progress interpolation.
            on_progress: Called on every observed change.
            on_status_change: Called with ``(old, new, progress)`` whenever
                the mapped status changes.
            max_duration_s: Tighter wall-time limit for this job only.

        Returns:
            A :class:`TrackingOutcome`.

        Raises:
            Exception: A poll failed with a non-retryable error.
        """
        start = started_at if started_at is not None else self._clock()
        limit = self.config.max_job_duration_s
        if max_duration_s is not None:
            limit = min(limit, max_duration_s)
        polls = 0
        poll_errors = 0
        last_status = JobStatus.SUBMITTED
        last_progress = 0.0
        last: JobProgress | None = None
        report: StatusReport | None = None

        self._tracking.add(job_id)
        self._stopped.discard(job_id)
        logger.info(
            "Tracking job %s (remote %s)",
            job_id,
            external_job_id,
            extra={"event": events.TRACKING_STARTED},
        )

        def _outcome(reason: StopReason) -> TrackingOutcome:
            logger.info(
                "Stopped tracking job %s after %d poll(s): %s",
                job_id,
                polls,
                reason,
                extra={"event": events.TRACKING_STOPPED},
            )
            return TrackingOutcome(job_id, reason, polls, poll_errors, last, report)

        try:
            while True:
                if job_id in self._stopped:
                    return _outcome(StopReason.STOPPED)

                polls += 1
                observed: StatusReport | None = None
                try:
                    observed = await self._guard.call(
                        lambda: self._status_query.query_status(external_job_id),
                        source="status",
                        priority=priority,
                    )
                except Exception as exc:
                    c = classify(exc)
                    if not c.retryable:
                        raise
                    poll_errors += 1
                    logger.warning(
                        "Status poll %d for job %s failed (%s): %s",
                        polls,
                        job_id,
                        c.category,
                        c.message,
                        extra={"event": events.TRACKING_POLL_ERROR},
                    )

                if job_id in self._stopped:
                    return _outcome(StopReason.STOPPED)

                if observed is not None:
                    report = observed
                    snapshot = self._observe(
                        job_id, observed, polls, start, last_progress, expected_duration_s
                    )
                    if snapshot.status is not last_status and on_status_change is not None:
                        await _invoke(on_status_change, last_status, snapshot.status, snapshot)
                    changed = (
                        last is None
                        or snapshot.status is not last_status
                        or snapshot.progress != last_progress
                    )
                    if changed and on_progress is not None:
                        await _invoke(on_progress, snapshot)
                    last, last_status, last_progress = snapshot, snapshot.status, snapshot.progress
                    self._latest[job_id] = snapshot
                    if observed.status.is_terminal:
                        return _outcome(StopReason.TERMINAL)

                if polls >= self.config.max_poll_attempts:
                    logger.warning(
                        "Job %s reached the poll limit (%d)", job_id, self.config.max_poll_attempts
                    )
                    return _outcome(StopReason.MAX_POLLS)
                if self._clock() - start >= limit:
                    logger.warning(
                        "Job %s exceeded the maximum duration (%.0f s)",
                        job_id,
                        limit,
                    )
                    return _outcome(StopReason.MAX_DURATION)

                await self._sleep(
                    poll_interval(self.config, last_status, last_progress, polls, self._rng)
                )
        finally:
            self._tracking.discard(job_id)
            self._stopped.discard(job_id)

    def _observe(
        self,
        job_id: str,
        report: StatusReport,
        polls: int,
        start: float,
        previous: float,
        expected_duration_s: float | None,
    ) -> JobProgress:
        now = self._clock()
        origin = report.created_at.timestamp() if report.created_at is not None else start
        elapsed = max(0.0, now - origin)
        status = report.status.to_job_status()

        if report.status is RemoteStatus.SUCCEEDED:
            progress = 100.0
        elif report.status in (RemoteStatus.FAILED, RemoteStatus.CANCELLED):
            progress = 0.0
        else:
            raw = report.progress
            if raw is None:
                raw = estimate_progress(report.status, elapsed, expected_duration_s)
            progress = min(_RUNNING_CEILING, max(previous, raw))

        observed_at = utc_from_timestamp(now)
        return JobProgress(
            job_id=job_id,
            external_job_id=report.external_job_id,
            status=status,
            remote_status=report.status,
            progress=progress,
            estimated_completion=estimate_completion(status, progress, elapsed, observed_at),
            poll_count=polls,
            elapsed_s=elapsed,
            observed_at=observed_at,
        )


async def _invoke(callback: Callable[..., object], *args: object) -> None:
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:  # noqa: BLE001
        logger.error("Progress callback %r raised", callback, exc_info=True)
