"""Priority job scheduler with bounded concurrency.

:class:`JobScheduler` owns every job container and drives each job through
its pipeline::

    submit() -> queue -> tick() -> gateway.submit -> tracker.track
             -> collector.collect -> completed
                       \\ any failure -> recovery -> retry | failed

Containers
~~~~~~~~~~
* ``queue``: pending jobs and due retries, ordered urgent > high > normal
  > low, FIFO within a tier.
* ``active``: jobs holding a concurrency slot.  A job waiting out a retry
  delay stays here, so it keeps its slot until the delay elapses.
* ``completed`` / ``failed``: terminal jobs (``failed`` also holds cancelled
  ones) until the retention window evicts them.

Single writer
~~~~~~~~~~~~~
All container mutations happen on the event loop in code sections that do
not ``await`` between reading and writing, so each per-job transition is
atomic.  After any ``await`` the job is looked up again; a job that is no
longer active was cancelled and the late response is discarded.

Determinism
~~~~~~~~~~~
:meth:`JobScheduler.tick` is public.  Tests drive the scheduler by calling
``tick()`` with an injected clock instead of running :meth:`run`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from transcribeflow.core import events
from transcribeflow.core.clock import Clock, Sleep, default_sleep, utc_from_timestamp
from transcribeflow.core.exceptions import (
    QueueFullError,
    RemoteJobFailedError,
    TrackingAbandonedError,
)
from transcribeflow.core.logging_config import job_context
from transcribeflow.core.models import (
    ErrorClassification,
    FailedJobRecord,
    JobError,
    JobPriority,
    JobStatus,
    ManagedJob,
    TranscriptionRequest,
    TranscriptionResult,
)
from transcribeflow.core.observers import Listener, ObserverList
from transcribeflow.gateway.base import RemoteStatus, SubmissionGateway, Validator
from transcribeflow.orchestrator import transitions
from transcribeflow.orchestrator.metrics import JobStatistics, LifetimeJobStats, write_stats_file
from transcribeflow.orchestrator.progress import JobProgress, ProgressTracker, StopReason
from transcribeflow.orchestrator.queue import PriorityJobQueue
from transcribeflow.orchestrator.results import ResultCollector
from transcribeflow.resilience.classifier import classify
from transcribeflow.resilience.guard import ServiceGuard
from transcribeflow.resilience.recovery import (
    RecoveryAction,
    RecoveryEvent,
    RecoveryOrchestrator,
)
from transcribeflow.resilience.retry import RetryCoordinator
from transcribeflow.storage.base import PersistenceStore

__all__ = [
    "SchedulerConfig",
    "JobEventKind",
    "JobEvent",
    "SubmitResult",
    "JobStatusSnapshot",
    "JobScheduler",
]

logger = logging.getLogger(__name__)

#: Progress reported for statuses the tracker has no observation for.
_STATUS_PROGRESS: dict[JobStatus, float] = {
    JobStatus.PENDING: 0.0,
    JobStatus.SUBMITTED: 25.0,
    JobStatus.PROCESSING: 50.0,
    JobStatus.COMPLETED: 100.0,
    JobStatus.FAILED: 0.0,
    JobStatus.CANCELLED: 0.0,
}


class SchedulerConfig(BaseModel):
    """Scheduler tuning.

    Attributes:
        max_concurrent_jobs: Jobs that may hold a slot at once.
        max_queue_size: Pending jobs accepted before ``submit`` refuses.
        job_timeout_s: Wall-time limit per job, enforced while tracking.
        cleanup_interval_s: How often terminal jobs are evicted.
        retention_s: How long terminal jobs stay queryable.
        auto_retry: Let recovery schedule job-level retries.
        max_retries: Job-level retries before retries count as exhausted.
        tick_interval_s: Dispatch loop period.
        stats_interval_s: How often statistics are logged and published.
        stats_path: JSON stats file, ``None`` to disable.
    """

    model_config = ConfigDict(frozen=True)

    max_concurrent_jobs: int = Field(default=5, ge=1)
    max_queue_size: int = Field(default=50, ge=1)
    job_timeout_s: float = Field(default=30 * 60.0, gt=0)
    cleanup_interval_s: float = Field(default=5 * 60.0, gt=0)
    retention_s: float = Field(default=24 * 3600.0, gt=0)
    auto_retry: bool = True
    max_retries: int = Field(default=3, ge=0)
    tick_interval_s: float = Field(default=1.0, gt=0)
    stats_interval_s: float = Field(default=10.0, gt=0)
    stats_path: str | None = None


class JobEventKind(StrEnum):
    QUEUED = "job_queued"
    REJECTED = "job_rejected"
    STARTED = "job_started"
    SUBMITTED = "job_submitted"
    PROGRESS = "job_progress"
    COMPLETED = "job_completed"
    FAILED = "job_failed"
    CANCELLED = "job_cancelled"
    RETRIED = "job_retried"
    DISCARDED = "job_discarded"
    QUEUE_FULL = "queue_full"
    STATS = "manager_stats"


@dataclass(frozen=True)
class JobEvent:
    """A job lifecycle event published to subscribers.

    Attributes:
        kind: What happened.
        job_id: The job concerned, ``None`` for scheduler-wide events.
        job: Snapshot of the job after the change, when there is one.
        progress: Progress percentage for ``job_progress`` events.
        message: Free-form detail.
        statistics: Snapshot for ``manager_stats`` events.
        timestamp: When the event was emitted.
    """

    kind: JobEventKind
    job_id: str | None = None
    job: ManagedJob | None = None
    progress: float | None = None
    message: str = ""
    statistics: JobStatistics | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class SubmitResult:
    """Typed outcome of :meth:`JobScheduler.submit`.

    ``accepted`` is ``False`` when the queue is full or the request failed
    validation; ``error`` then says why.
    """

    accepted: bool
    job_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class JobStatusSnapshot:
    job_id: str
    status: JobStatus
    priority: JobPriority
    progress: float
    queued_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    external_job_id: str | None
    retry_count: int
    error: JobError | None
    result: TranscriptionResult | None
    queue_position: int | None = None


class JobScheduler:
    """Queue, dispatch and supervise transcription jobs.

    Args:
        gateway: Submits requests to the speech service.
        tracker: Polls submitted jobs.
        collector: Fetches results of succeeded jobs.
        recovery: Decides what happens after a failure.
        guard: Shared rate limiter and breaker for submissions.
        retry: Retry coordinator for submissions.
        validator: Optional request checks run by :meth:`submit`.
        store: Optional persistence for job snapshots.
        config: Scheduler tuning.
        clock: Epoch-seconds time source.
        sleep: Coroutine used by :meth:`run` between ticks.
    """

    def __init__(
        self,
        *,
        gateway: SubmissionGateway,
        tracker: ProgressTracker,
        collector: ResultCollector,
        recovery: RecoveryOrchestrator,
        guard: ServiceGuard,
        retry: RetryCoordinator | None = None,
        validator: Validator | None = None,
        store: PersistenceStore | None = None,
        config: SchedulerConfig | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.config = config or SchedulerConfig()
        self._gateway = gateway
        self._tracker = tracker
        self._collector = collector
        self._recovery = recovery
        self._guard = guard
        self._retry = retry or RetryCoordinator()
        self._validator = validator
        self._store = store
        self._clock = clock or time.time
        self._sleep = sleep or default_sleep

        self._queue = PriorityJobQueue()
        self._active: dict[str, ManagedJob] = {}
        self._completed: dict[str, ManagedJob] = {}
        self._failed: dict[str, ManagedJob] = {}
        self._retry_due: dict[str, float] = {}
        self._progress: dict[str, float] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

        self._observers: ObserverList[JobEvent] = ObserverList("scheduler")
        self._stats = LifetimeJobStats()
        self._paused = False
        self._loop_task: asyncio.Task[None] | None = None
        self._next_cleanup_at = self._clock() + self.config.cleanup_interval_s
        self._next_stats_at = self._clock() + self.config.stats_interval_s

        recovery.set_resubmitter(self.resubmit_failed)

    # ------------------------------------------------------------------
    # Public job API
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener[JobEvent]) -> Callable[[], None]:
        """Subscribe to job lifecycle events.  Returns an unsubscribe function."""
        return self._observers.subscribe(listener)

    def subscribe_recovery(self, listener: Listener[RecoveryEvent]) -> Callable[[], None]:
        """Subscribe to recovery events of the attached orchestrator."""
        return self._recovery.subscribe(listener)

    async def submit(
        self,
        request: TranscriptionRequest,
        priority: JobPriority = JobPriority.NORMAL,
        config: dict[str, Any] | None = None,
        *,
        recovered_from: str | None = None,
        recovery_attempts: int = 0,
    ) -> SubmitResult:
        """Validate and enqueue *request*.

        Never raises for a full queue or an invalid request; both come back
        as a rejected :class:`SubmitResult`.
        """
        if self._queue_full():
            return self._reject_full()

        if self._validator is not None:
            try:
                report = await self._validator.validate(request)
            except Exception as exc:  # noqa: BLE001
                logger.error("Request validation raised", exc_info=True)
                return self._reject(f"Validation failed: {exc}")
            if not report.valid:
                return self._reject("Invalid request: " + "; ".join(report.errors))
            for warning in report.warnings:
                logger.warning("Request warning: %s", warning)
            # validation may have yielded; the queue could have filled meanwhile
            if self._queue_full():
                return self._reject_full()

        job = transitions.new_job(
            request,
            priority,
            self._now(),
            config=config,
            recovered_from=recovered_from,
            recovery_attempts=recovery_attempts,
        )
        self._queue.push(job)
        self._stats.record_queued()
        logger.info(
            "Job %s queued (%s priority, %d in queue)",
            job.job_id,
            priority,
            len(self._queue),
            extra={"event": events.JOB_QUEUED},
        )
        self._emit(JobEventKind.QUEUED, job)
        await self._persist(job)
        return SubmitResult(accepted=True, job_id=job.job_id)

    def status(self, job_id: str) -> JobStatusSnapshot | None:
        """Snapshot of *job_id*, or ``None`` when unknown or evicted."""
        job = self.job_details(job_id)
        if job is None:
            return None
        position = None
        if job_id in self._queue:
            position = next(i for i, j in enumerate(self._queue) if j.job_id == job_id)
        return JobStatusSnapshot(
            job_id=job.job_id,
            status=job.status,
            priority=job.priority,
            progress=self._progress_of(job),
            queued_at=job.queued_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            external_job_id=job.external_job_id,
            retry_count=job.retry_count,
            error=job.error,
            result=job.result,
            queue_position=position,
        )

    async def cancel(self, job_id: str) -> bool:
        """Cancel a queued or active job.

        Returns:
            ``False`` for unknown or already terminal jobs.
        """
        job = self._queue.remove(job_id)
        if job is None:
            job = self._active.pop(job_id, None)
            if job is None:
                return False
            self._retry_due.pop(job_id, None)
            self._tracker.stop(job_id)
        self._recovery.report_outcome(job_id, completed=False)

        job = transitions.cancel(job, self._now())
        self._failed[job_id] = job
        self._progress.pop(job_id, None)
        self._stats.record_cancelled()
        logger.info("Job %s cancelled", job_id, extra={"event": events.JOB_CANCELLED})
        self._emit(JobEventKind.CANCELLED, job)
        await self._persist(job)
        return True

    def statistics(self) -> JobStatistics:
        return self._stats.snapshot(
            active=len(self._active),
            queued=len(self._queue),
            max_concurrent=self.config.max_concurrent_jobs,
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """Stop dispatching queued jobs; in-flight jobs continue."""
        self._paused = True
        logger.info("Dispatching paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Dispatching resumed")

    @property
    def paused(self) -> bool:
        return self._paused

    def update_limits(
        self,
        *,
        max_concurrent_jobs: int | None = None,
        max_queue_size: int | None = None,
    ) -> SchedulerConfig:
        """Change concurrency and queue limits at runtime.

        Lowering the concurrency limit never interrupts running jobs; it only
        holds back dispatching until the active count drops below it.

        Raises:
            pydantic.ValidationError: A limit is below 1.
        """
        updates: dict[str, int] = {}
        if max_concurrent_jobs is not None:
            updates["max_concurrent_jobs"] = max_concurrent_jobs
        if max_queue_size is not None:
            updates["max_queue_size"] = max_queue_size
        self.config = SchedulerConfig.model_validate({**self.config.model_dump(), **updates})
        logger.info(
            "Limits updated: max_concurrent_jobs=%d max_queue_size=%d",
            self.config.max_concurrent_jobs,
            self.config.max_queue_size,
        )
        return self.config

    def jobs_by_status(self, status: JobStatus) -> list[ManagedJob]:
        jobs = [*self._queue, *self._active.values(), *self._completed.values()]
        jobs.extend(self._failed.values())
        return [j for j in jobs if j.status is status]

    def job_details(self, job_id: str) -> ManagedJob | None:
        """Full snapshot of *job_id*, looked up active, queued, completed, failed."""
        return (
            self._active.get(job_id)
            or self._queue.get(job_id)
            or self._completed.get(job_id)
            or self._failed.get(job_id)
        )

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    async def tick(self) -> int:
        """One scheduling step: requeue due retries, then fill free slots.

        Returns:
            Number of jobs dispatched.
        """
        now = self._clock()
        for job_id, due in list(self._retry_due.items()):
            if due <= now:
                del self._retry_due[job_id]
                self._queue.push(self._active.pop(job_id))

        if self._paused:
            return 0

        dispatched: list[ManagedJob] = []
        while len(self._active) < self.config.max_concurrent_jobs:
            job = self._queue.pop()
            if job is None:
                break
            first_start = job.status is JobStatus.PENDING
            job = transitions.mark_dispatched(job, self._now())
            self._active[job.job_id] = job
            if first_start:
                self._stats.record_started(job.queue_wait_s)
            logger.info(
                "Job %s started (attempt %d)",
                job.job_id,
                job.retry_count + 1,
                extra={"event": events.JOB_STARTED},
            )
            self._emit(JobEventKind.STARTED, job)
            self._spawn(job.job_id)
            dispatched.append(job)

        for job in dispatched:
            await self._persist(job)
        return len(dispatched)

    async def run(self) -> None:
        """Tick forever, with periodic cleanup and statistics."""
        logger.info(
            "Scheduler running: %d slot(s), queue limit %d",
            self.config.max_concurrent_jobs,
            self.config.max_queue_size,
        )
        while True:
            try:
                await self.tick()
                now = self._clock()
                if now >= self._next_cleanup_at:
                    self._next_cleanup_at = now + self.config.cleanup_interval_s
                    await self.cleanup()
                if now >= self._next_stats_at:
                    self._next_stats_at = now + self.config.stats_interval_s
                    self._publish_stats()
            except Exception:  # noqa: BLE001
                logger.error("Scheduler tick failed", exc_info=True)
            await self._sleep(self.config.tick_interval_s)

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run(), name="scheduler-loop")

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until no job task is running.

        Returns:
            ``True`` when every task finished within *timeout*.
        """
        deadline = None if timeout is None else asyncio.get_running_loop().time() + timeout
        while self._tasks:
            remaining = None
            if deadline is not None:
                remaining = deadline - asyncio.get_running_loop().time()
                if remaining <= 0:
                    return False
            await asyncio.wait(list(self._tasks.values()), timeout=remaining)
        return True

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """Stop dispatching, let running jobs finish, then cancel the rest.

        Jobs cut off here keep their persisted non-terminal snapshot and are
        picked up again by :meth:`restore`.
        """
        self._paused = True
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        if not await self.drain(drain_timeout):
            logger.warning(
                "%d job(s) still running after %.0f s; cancelling",
                len(self._tasks),
                drain_timeout,
            )
            self._tracker.stop_all()
            tasks = list(self._tasks.values())
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self._publish_stats()
        logger.info("Scheduler stopped")

    async def cleanup(self) -> int:
        """Evict terminal jobs older than the retention window.

        Returns:
            Number of jobs evicted.
        """
        horizon = self._clock() - self.config.retention_s
        evicted: list[str] = []
        for container in (self._completed, self._failed):
            for job_id, job in list(container.items()):
                finished = job.completed_at or job.queued_at
                if finished.timestamp() < horizon:
                    del container[job_id]
                    self._tracker.forget(job_id)
                    evicted.append(job_id)
        for job_id in evicted:
            await self._forget(job_id)
        if evicted:
            logger.debug("Evicted %d terminal job(s)", len(evicted))
        return len(evicted)

    # ------------------------------------------------------------------
    # Restore and recovery hooks
    # ------------------------------------------------------------------

    async def restore(self) -> int:
        """Reload non-terminal jobs from the store.

        Pending jobs go back to the queue.  Submitted or processing jobs take
        an active slot while one is free, jobs the service is still running
        first; those resume at tracking.  A job waiting out a retry waits for
        its ``retry_at`` again.  Jobs beyond ``max_concurrent_jobs`` wait in
        the queue.

        Returns:
            Number of jobs restored.
        """
        if self._store is None:
            return 0
        try:
            jobs = await self._store.load_jobs()
        except Exception:  # noqa: BLE001
            logger.error(
                "Could not load persisted jobs",
                exc_info=True,
                extra={"event": events.STORE_ERROR},
            )
            return 0

        def tracked(job: ManagedJob) -> bool:
            return job.retry_at is None and job.external_job_id is not None

        restored = 0
        for job in sorted(jobs, key=lambda j: (not tracked(j), j.queued_at)):
            if self.job_details(job.job_id) is not None or job.is_terminal:
                continue
            if job.status is JobStatus.PENDING:
                self._queue.push(job)
            elif len(self._active) >= self.config.max_concurrent_jobs:
                self._queue.push(job)
            elif job.retry_at is not None:
                self._active[job.job_id] = job
                self._retry_due[job.job_id] = job.retry_at.timestamp()
            else:
                self._active[job.job_id] = job
                self._spawn(job.job_id)
            restored += 1
        if restored:
            logger.info("Restored %d job(s) from the store", restored)
        return restored

    async def resubmit_failed(self, record: FailedJobRecord) -> str:
        """Re-create a parked job as a new job.

        Raises:
            QueueFullError: The queue cannot take the job right now.
        """
        outcome = await self.submit(
            record.job.request,
            record.job.priority,
            record.job.config,
            recovered_from=record.job_id,
            recovery_attempts=record.attempts,
        )
        if not outcome.accepted or outcome.job_id is None:
            raise QueueFullError(self.config.max_queue_size)
        return outcome.job_id

    # ------------------------------------------------------------------
    # Job pipeline
    # ------------------------------------------------------------------

    def _spawn(self, job_id: str) -> None:
        task = asyncio.create_task(self._run_job(job_id), name=f"job-{job_id}")
        self._tasks[job_id] = task

        def _done(t: asyncio.Task[None]) -> None:
            if self._tasks.get(job_id) is t:
                del self._tasks[job_id]

        task.add_done_callback(_done)

    async def _run_job(self, job_id: str) -> None:
        with job_context(job_id):
            try:
                await self._pipeline(job_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if job_id not in self._active:
                    self._discard(job_id, f"failure after cancellation: {exc}")
                    return
                try:
                    await self._handle_failure(job_id, exc)
                except Exception:  # noqa: BLE001
                    logger.error("Failure handling for job %s raised", job_id, exc_info=True)

    async def _pipeline(self, job_id: str) -> None:
        job = self._active[job_id]

        if job.external_job_id is None:
            request = job.request
            priority = job.priority
            outcome = await self._retry.execute(
                lambda: self._guard.call(
                    lambda: self._gateway.submit(request), source="submit", priority=priority
                ),
                label=f"submit job {job_id}",
            )
            if job_id not in self._active:
                self._discard(job_id, "submission response")
                return
            receipt = outcome.unwrap()
            job = transitions.mark_accepted(
                self._active[job_id], receipt.external_job_id, self._now()
            )
            self._active[job_id] = job
            logger.info(
                "Job %s accepted as %s",
                job_id,
                receipt.external_job_id,
                extra={"event": events.JOB_SUBMITTED},
            )
            self._emit(JobEventKind.SUBMITTED, job)
            await self._persist(job)

        external_id = job.external_job_id
        assert external_id is not None
        started = job.started_at or job.queued_at
        tracking = await self._tracker.track(
            job_id,
            external_id,
            priority=job.priority,
            started_at=started.timestamp(),
            expected_duration_s=job.request.expected_duration_s,
            on_progress=self._on_progress,
            on_status_change=self._on_status_change,
            max_duration_s=self.config.job_timeout_s,
        )
        if job_id not in self._active:
            self._discard(job_id, "tracking outcome")
            return

        match tracking.reason:
            case StopReason.STOPPED:
                return
            case StopReason.MAX_POLLS | StopReason.MAX_DURATION:
                raise TrackingAbandonedError(job_id, tracking.reason.value)

        report = tracking.report
        assert report is not None
        if report.status is RemoteStatus.FAILED:
            raise RemoteJobFailedError(
                external_id,
                report.error_message or "Remote job failed",
                service_code=report.error_code,
            )
        if report.status is RemoteStatus.CANCELLED:
            raise RemoteJobFailedError(
                external_id, "Remote job was cancelled", service_code=report.error_code
            )

        result = await self._collector.collect(self._active[job_id], remote_status=report.status)
        if job_id not in self._active:
            self._discard(job_id, "result")
            return
        await self._complete(job_id, result)

    async def _handle_failure(self, job_id: str, error: Exception) -> None:
        job = self._active[job_id]
        c = classify(error)
        exhausted = not self.config.auto_retry or job.retry_count >= self.config.max_retries
        decision = await self._recovery.handle_job_failure(
            job, error, classification=c, retries_exhausted=exhausted
        )
        if job_id not in self._active:
            self._recovery.report_outcome(job_id, completed=False)
            self._discard(job_id, "recovery decision")
            return

        if decision.action is RecoveryAction.RETRY:
            self._schedule_retry(job_id, c, decision.delay_s)
            await self._persist(self._active[job_id])
        else:
            await self._fail(job_id, c)

    def _schedule_retry(self, job_id: str, c: ErrorClassification, delay_s: float) -> None:
        due = self._clock() + delay_s
        job = transitions.schedule_retry(
            self._active[job_id], c.message, self._now(), due_at=utc_from_timestamp(due)
        )
        self._active[job_id] = job
        self._retry_due[job_id] = due
        self._progress.pop(job_id, None)
        self._tracker.forget(job_id)
        self._stats.record_retried()
        logger.warning(
            "Job %s retry %d/%d in %.1f s (%s)",
            job_id,
            job.retry_count,
            self.config.max_retries,
            delay_s,
            c.category,
            extra={"event": events.JOB_RETRIED},
        )
        self._emit(JobEventKind.RETRIED, job, message=c.message)

    async def _complete(self, job_id: str, result: TranscriptionResult) -> None:
        job = transitions.complete(self._active.pop(job_id), result, self._now())
        self._completed[job_id] = job
        self._progress.pop(job_id, None)
        self._stats.record_completed(job.duration_s)
        self._recovery.report_outcome(job_id, completed=True)
        logger.info(
            "Job %s completed in %.1f s",
            job_id,
            job.duration_s or 0.0,
            extra={"event": events.JOB_COMPLETED},
        )
        self._emit(JobEventKind.COMPLETED, job)
        await self._persist(job)

    async def _fail(self, job_id: str, c: ErrorClassification) -> None:
        job = transitions.fail(self._active.pop(job_id), c.to_job_error(), self._now())
        self._failed[job_id] = job
        self._progress.pop(job_id, None)
        self._stats.record_failed()
        self._recovery.report_outcome(job_id, completed=False)
        logger.error(
            "Job %s failed (%s): %s",
            job_id,
            c.category,
            c.message,
            extra={"event": events.JOB_FAILED},
        )
        self._emit(JobEventKind.FAILED, job, message=c.message)
        await self._persist(job)

    def _discard(self, job_id: str, what: str) -> None:
        logger.info(
            "Discarding late %s for job %s", what, job_id, extra={"event": events.JOB_DISCARDED}
        )
        self._emit(JobEventKind.DISCARDED, self.job_details(job_id), job_id=job_id, message=what)

    # ------------------------------------------------------------------
    # Tracking callbacks
    # ------------------------------------------------------------------

    def _on_progress(self, progress: JobProgress) -> None:
        job = self._active.get(progress.job_id)
        if job is None:
            return
        self._progress[progress.job_id] = progress.progress
        logger.debug(
            "Job %s at %.0f%%",
            progress.job_id,
            progress.progress,
            extra={"event": events.JOB_PROGRESS},
        )
        self._emit(JobEventKind.PROGRESS, job, progress=progress.progress)

    def _on_status_change(self, old: JobStatus, new: JobStatus, progress: JobProgress) -> None:
        logger.info("Job %s remote status %s -> %s", progress.job_id, old, new)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return utc_from_timestamp(self._clock())

    def _queue_full(self) -> bool:
        return len(self._queue) >= self.config.max_queue_size

    def _reject_full(self) -> SubmitResult:
        error = QueueFullError(self.config.max_queue_size)
        self._stats.record_rejected()
        logger.warning("%s", error, extra={"event": events.QUEUE_FULL})
        self._emit(JobEventKind.QUEUE_FULL, None, message=str(error))
        return SubmitResult(accepted=False, error=str(error))

    def _reject(self, reason: str) -> SubmitResult:
        self._stats.record_rejected()
        logger.warning("Submission rejected: %s", reason, extra={"event": events.JOB_REJECTED})
        self._emit(JobEventKind.REJECTED, None, message=reason)
        return SubmitResult(accepted=False, error=reason)

    def _progress_of(self, job: ManagedJob) -> float:
        if job.status is JobStatus.PROCESSING and job.job_id in self._progress:
            return self._progress[job.job_id]
        return _STATUS_PROGRESS[job.status]

    def _emit(
        self,
        kind: JobEventKind,
        job: ManagedJob | None,
        *,
        job_id: str | None = None,
        progress: float | None = None,
        message: str = "",
        statistics: JobStatistics | None = None,
    ) -> None:
        self._observers.emit(
            JobEvent(
                kind=kind,
                job_id=job.job_id if job is not None else job_id,
                job=job,
                progress=progress,
                message=message,
                statistics=statistics,
                timestamp=self._now(),
            )
        )

    def _publish_stats(self) -> None:
        stats = self.statistics()
        logger.info("%s", stats.format_summary(), extra={"event": events.MANAGER_STATS})
        self._emit(JobEventKind.STATS, None, statistics=stats)
        if self.config.stats_path:
            write_stats_file(stats, self.config.stats_path)

    async def _persist(self, job: ManagedJob) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_job(job)
        except Exception:  # noqa: BLE001
            logger.error(
                "Could not persist job %s",
                job.job_id,
                exc_info=True,
                extra={"event": events.STORE_ERROR},
            )

    async def _forget(self, job_id: str) -> None:
        if self._store is None:
            return
        try:
            await self._store.delete_job(job_id)
        except Exception:  # noqa: BLE001
            logger.error(
                "Could not delete job %s",
                job_id,
                exc_info=True,
                extra={"event": events.STORE_ERROR},
            )
