"""Recovery orchestration for failed jobs.

Every job failure, whatever stage it happened in, ends up in
:meth:`RecoveryOrchestrator.handle_job_failure`.  The orchestrator classifies
the error, picks a :class:`RecoveryStrategy`, tells the caller what to do
with the job (:class:`RecoveryAction`), and keeps the bookkeeping: failed-job
records, notifications, events and running statistics.

Strategy selection
~~~~~~~~~~~~~~~~~~
::

    requires_user_intervention ─────────────▶ USER_INTERVENTION    (FAIL)
    not retryable ──────────────────────────▶ GRACEFUL_DEGRADATION (FAIL)
    retry_strategy == immediate ────────────▶ IMMEDIATE_RETRY      (RETRY, 0 s)
    network / quota / unknown ──────────────▶ DELAYED_RETRY        (RETRY, backoff)
    service / circuit_open ─────────────────▶ CIRCUIT_BREAKER      (RETRY, until half-open)
    any retry strategy, retries exhausted ──▶ JOB_PERSISTENCE      (PARK)

Parked jobs
~~~~~~~~~~~
A parked job is terminal for the scheduler, but its
:class:`~transcribeflow.core.models.FailedJobRecord` stays here.  A background
sweep re-submits records whose ``retry_after`` has passed and whose attempt
count is below ``max_recovery_attempts`` through the resubmit callback the
scheduler registers, removes them on success, and evicts records older than
the retention window.  A breaker tripping OPEN pulls the next sweep forward
to one recovery delay from now.

Typical usage::

    recovery = RecoveryOrchestrator(RecoveryConfig(), breaker=guard.breaker)
    decision = await recovery.handle_job_failure(job, exc)
    if decision.action is RecoveryAction.RETRY:
        schedule_retry(job, decision.delay_s)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Final, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from transcribeflow.core import events
from transcribeflow.core.clock import Clock, Sleep, default_sleep, utc_from_timestamp
from transcribeflow.core.models import (
    ErrorCategory,
    ErrorClassification,
    FailedJobRecord,
    ManagedJob,
    RetryStrategy,
)
from transcribeflow.core.observers import Listener, ObserverList
from transcribeflow.notifiers.base import Notification, NotificationKind, NotificationSink
from transcribeflow.resilience.circuit_breaker import (
    BreakerEvent,
    BreakerEventKind,
    CircuitBreaker,
    CircuitBreakerStats,
)
from transcribeflow.resilience.classifier import classify
from transcribeflow.resilience.retry import (
    RetryCoordinator,
    RetryPolicy,
    RetryResult,
    compute_delay,
)
from transcribeflow.storage.base import PersistenceStore

__all__ = [
    "RecoveryStrategy",
    "RecoveryAction",
    "NotificationPolicy",
    "RecoveryConfig",
    "RecoveryDecision",
    "RecoveryEventKind",
    "RecoveryEvent",
    "RecoveryStats",
    "RecoveryStatus",
    "RecoveryOrchestrator",
    "Resubmitter",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class RecoveryStrategy(StrEnum):
    IMMEDIATE_RETRY = "immediate_retry"
    DELAYED_RETRY = "delayed_retry"
    CIRCUIT_BREAKER = "circuit_breaker"
    USER_INTERVENTION = "user_intervention"
    GRACEFUL_DEGRADATION = "graceful_degradation"
    JOB_PERSISTENCE = "job_persistence"


class RecoveryAction(StrEnum):
    """What the scheduler should do with the failed job."""

    RETRY = "retry"
    """Re-enqueue after :attr:`RecoveryDecision.delay_s`."""

    FAIL = "fail"
    """Move to the terminal failed state."""

    PARK = "park"
    """Move to the terminal failed state; the sweep will resubmit it later."""


_CATEGORY_STRATEGY: Final[dict[ErrorCategory, RecoveryStrategy]] = {
    ErrorCategory.NETWORK: RecoveryStrategy.DELAYED_RETRY,
    ErrorCategory.QUOTA: RecoveryStrategy.DELAYED_RETRY,
    ErrorCategory.UNKNOWN: RecoveryStrategy.DELAYED_RETRY,
    ErrorCategory.SERVICE: RecoveryStrategy.CIRCUIT_BREAKER,
    ErrorCategory.CIRCUIT_OPEN: RecoveryStrategy.CIRCUIT_BREAKER,
    ErrorCategory.AUTHENTICATION: RecoveryStrategy.USER_INTERVENTION,
    ErrorCategory.CONFIGURATION: RecoveryStrategy.USER_INTERVENTION,
    ErrorCategory.AUDIO: RecoveryStrategy.USER_INTERVENTION,
}

_RETRY_STRATEGIES: Final[frozenset[RecoveryStrategy]] = frozenset(
    {
        RecoveryStrategy.IMMEDIATE_RETRY,
        RecoveryStrategy.DELAYED_RETRY,
        RecoveryStrategy.CIRCUIT_BREAKER,
    }
)


class NotificationPolicy(BaseModel):
    """Which failures are worth telling a human about."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    min_severity: int = Field(default=3, ge=1, le=5)
    categories: frozenset[ErrorCategory] = frozenset(
        {
            ErrorCategory.AUTHENTICATION,
            ErrorCategory.AUDIO,
            ErrorCategory.CONFIGURATION,
            ErrorCategory.SERVICE,
        }
    )

    def allows(self, classification: ErrorClassification) -> bool:
        return (
            self.enabled
            and classification.severity >= self.min_severity
            and classification.category in self.categories
        )


class RecoveryConfig(BaseModel):
    """Tuning for :class:`RecoveryOrchestrator`.

    Attributes:
        max_recovery_attempts: Recovery attempts per job, counted across the
            chain of jobs resubmitted from one another.
        recovery_delay_s: Wait between sweep attempts of one record.
        retry_base_delay_s: Base of the job-level exponential backoff.
        retry_max_delay_s: Cap of the job-level exponential backoff.
        persist_failed_jobs: Keep records (and write them to the store).
        failed_job_retention_s: Age after which records are evicted.
        automatic_recovery: Park retryable jobs for the background sweep.
        sweep_interval_s: Interval of the background sweep.
        max_failed_records: Bound on records kept in memory.
        notifications: Notification filter.
    """

    model_config = ConfigDict(frozen=True)

    max_recovery_attempts: int = Field(default=3, ge=0)
    recovery_delay_s: float = Field(default=30.0, ge=0)
    retry_base_delay_s: float = Field(default=1.0, ge=0)
    retry_max_delay_s: float = Field(default=30.0, ge=0)
    persist_failed_jobs: bool = True
    failed_job_retention_s: float = Field(default=86400.0, gt=0)
    automatic_recovery: bool = True
    sweep_interval_s: float = Field(default=300.0, gt=0)
    max_failed_records: int = Field(default=500, ge=1)
    notifications: NotificationPolicy = NotificationPolicy()

    def backoff_policy(self) -> RetryPolicy:
        return RetryPolicy(
            strategy=RetryStrategy.EXPONENTIAL,
            base_delay_s=self.retry_base_delay_s,
            max_delay_s=self.retry_max_delay_s,
            multiplier=2.0,
            jitter=0.1,
        )


@dataclass(frozen=True)
class RecoveryDecision:
    """The orchestrator's answer for one failure."""

    job_id: str
    strategy: RecoveryStrategy
    action: RecoveryAction
    classification: ErrorClassification
    delay_s: float = 0.0
    message: str = ""


class RecoveryEventKind(StrEnum):
    STARTED = "recovery_started"
    SUCCESS = "recovery_success"
    FAILED = "recovery_failed"
    USER_ACTION_REQUIRED = "user_action_required"
    PARKED = "job_parked"


@dataclass(frozen=True)
class RecoveryEvent:
    kind: RecoveryEventKind
    job_id: str
    strategy: RecoveryStrategy | None = None
    classification: ErrorClassification | None = None
    message: str = ""


@dataclass
class RecoveryStats:
    total_attempts: int = 0
    successful: int = 0
    failed: int = 0

    @property
    def success_rate(self) -> float:
        finished = self.successful + self.failed
        return self.successful / finished if finished else 0.0


@dataclass(frozen=True)
class RecoveryStatus:
    """Snapshot returned by :meth:`RecoveryOrchestrator.status`."""

    active: bool
    breaker: CircuitBreakerStats | None
    pending_recovery: int
    parked_records: int
    retry_queue: int
    stats: RecoveryStats
    last_sweep_at: float | None = None


#: Callback that re-creates a job from a parked record; returns the new job id.
Resubmitter = Callable[[FailedJobRecord], Awaitable[str]]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RecoveryOrchestrator:
    """Choose and apply a recovery strategy for every failed job.

    Args:
        config: Recovery tuning.
        breaker: Breaker guarding the speech service, used for the
            circuit-breaker strategy and to pull sweeps forward.
        retry: Retry coordinator used by :meth:`execute_with_recovery`.
        notifier: Optional notification sink.
        store: Optional persistence store for failed-job records.
        clock: Epoch-seconds time source.
        sleep: Coroutine used by the background sweep loop.
        rng: Jitter source for job-level backoff.
    """

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        retry: RetryCoordinator | None = None,
        notifier: NotificationSink | None = None,
        store: PersistenceStore | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or RecoveryConfig()
        self._breaker = breaker
        self._retry = retry or RetryCoordinator()
        self._notifier = notifier
        self._store = store
        self._clock = clock or time.time
        self._sleep = sleep or default_sleep
        self._rng = rng or random.Random()
        self._observers: ObserverList[RecoveryEvent] = ObserverList("recovery")
        self._records: dict[str, FailedJobRecord] = {}
        self._in_flight: set[str] = set()
        self._stats = RecoveryStats()
        self._resubmit: Resubmitter | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._next_sweep_at = self._clock() + self.config.sweep_interval_s
        self._last_sweep_at: float | None = None
        self._unsubscribe_breaker: Callable[[], None] | None = None
        if breaker is not None:
            self._unsubscribe_breaker = breaker.subscribe(self._on_breaker_event)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener[RecoveryEvent]) -> Callable[[], None]:
        return self._observers.subscribe(listener)

    def set_resubmitter(self, resubmit: Resubmitter) -> None:
        """Register the callback the sweep uses to re-create parked jobs."""
        self._resubmit = resubmit

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def determine_strategy(self, classification: ErrorClassification) -> RecoveryStrategy:
        if classification.requires_user_intervention:
            return RecoveryStrategy.USER_INTERVENTION
        if not classification.retryable:
            return RecoveryStrategy.GRACEFUL_DEGRADATION
        if classification.retry_strategy is RetryStrategy.IMMEDIATE:
            return RecoveryStrategy.IMMEDIATE_RETRY
        return _CATEGORY_STRATEGY.get(classification.category, RecoveryStrategy.DELAYED_RETRY)

    async def handle_job_failure(
        self,
        job: ManagedJob,
        error: BaseException,
        *,
        classification: ErrorClassification | None = None,
        retries_exhausted: bool = False,
    ) -> RecoveryDecision:
        """Decide what happens to *job* after *error*.

        Args:
            job: Snapshot of the failed job.
            error: The failure.
            classification: Pre-computed classification of *error*.
            retries_exhausted: The scheduler has no job-level retries left.

        Returns:
            A :class:`RecoveryDecision`; never raises for sink or store errors.
        """
        c = classification or classify(error)
        strategy = self.determine_strategy(c)
        if strategy in _RETRY_STRATEGIES and retries_exhausted:
            strategy = (
                RecoveryStrategy.JOB_PERSISTENCE
                if self.config.automatic_recovery and self.config.persist_failed_jobs
                else RecoveryStrategy.GRACEFUL_DEGRADATION
            )

        self._stats.total_attempts += 1
        logger.info(
            "Recovering job %s from %s failure with %s",
            job.job_id,
            c.category,
            strategy,
            extra={"event": events.RECOVERY_STARTED},
        )
        self._observers.emit(RecoveryEvent(RecoveryEventKind.STARTED, job.job_id, strategy, c))
        await self._notify(NotificationKind.JOB_FAILED, job, c, f"Job {job.job_id} failed")

        match strategy:
            case RecoveryStrategy.IMMEDIATE_RETRY:
                decision = self._retry_decision(job, strategy, c, 0.0)
            case RecoveryStrategy.DELAYED_RETRY:
                delay = c.retry_after
                if delay is None:
                    delay = compute_delay(
                        job.retry_count + 2, self.config.backoff_policy(), self._rng
                    )
                decision = self._retry_decision(job, strategy, c, delay)
            case RecoveryStrategy.CIRCUIT_BREAKER:
                decision = self._retry_decision(job, strategy, c, self._breaker_wait(c))
            case RecoveryStrategy.JOB_PERSISTENCE:
                retry_at = self._clock() + self.config.recovery_delay_s
                await self._record_failure(job, error, c, retry_at)
                decision = RecoveryDecision(
                    job.job_id,
                    strategy,
                    RecoveryAction.PARK,
                    c,
                    self.config.recovery_delay_s,
                    "Retries exhausted; parked for background recovery",
                )
                self._observers.emit(
                    RecoveryEvent(RecoveryEventKind.PARKED, job.job_id, strategy, c)
                )
            case RecoveryStrategy.USER_INTERVENTION:
                await self._record_failure(job, error, c, None)
                logger.warning(
                    "Job %s needs user action: %s",
                    job.job_id,
                    c.user_action,
                    extra={"event": events.USER_ACTION_REQUIRED},
                )
                self._observers.emit(
                    RecoveryEvent(
                        RecoveryEventKind.USER_ACTION_REQUIRED,
                        job.job_id,
                        strategy,
                        c,
                        c.user_action,
                    )
                )
                await self._notify(
                    NotificationKind.USER_ACTION_REQUIRED,
                    job,
                    c,
                    f"Action required for job {job.job_id}",
                )
                decision = self._fail_decision(job, strategy, c, c.user_action)
            case RecoveryStrategy.GRACEFUL_DEGRADATION:
                await self._record_failure(job, error, c, None)
                decision = self._fail_decision(job, strategy, c, "Job marked permanently failed")

        return decision

    def report_outcome(self, job_id: str, completed: bool) -> None:
        """Close the loop on a job this orchestrator asked to retry."""
        if job_id not in self._in_flight:
            return
        self._in_flight.discard(job_id)
        if completed:
            self._stats.successful += 1
            logger.info(
                "Job %s recovered", job_id, extra={"event": events.RECOVERY_SUCCESS}
            )
            self._observers.emit(RecoveryEvent(RecoveryEventKind.SUCCESS, job_id))
        else:
            self._stats.failed += 1
            self._observers.emit(RecoveryEvent(RecoveryEventKind.FAILED, job_id))

    async def execute_with_recovery(
        self,
        operation: Callable[[], Awaitable[T]],
        job: ManagedJob,
        *,
        policy: RetryPolicy | None = None,
    ) -> tuple[RetryResult[T], RecoveryDecision | None]:
        """Run *operation* with retries behind the breaker; recover on failure.

        Returns:
            The retry result and, when it failed, the recovery decision.
        """

        async def _guarded() -> T:
            if self._breaker is None:
                return await operation()
            return await self._breaker.call(operation)

        result = await self._retry.execute(_guarded, policy=policy, label=f"job {job.job_id}")
        if result.success or result.error is None:
            return result, None
        decision = await self.handle_job_failure(
            job,
            result.error,
            classification=result.classification,
            retries_exhausted=result.retries_exhausted,
        )
        return result, decision

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """Evict expired records and resubmit eligible parked jobs.

        Returns:
            Number of records successfully resubmitted.
        """
        now = self._clock()
        self._last_sweep_at = now
        self._next_sweep_at = now + self.config.sweep_interval_s

        horizon = now - self.config.failed_job_retention_s
        for record in [r for r in self._records.values() if r.failed_at.timestamp() < horizon]:
            logger.debug("Evicting failed-job record %s past retention", record.job_id)
            await self._drop_record(record.job_id)

        eligible = [r for r in self._records.values() if self._is_eligible(r, now)]
        if not eligible or self._resubmit is None:
            return 0

        recovered = 0
        for record in eligible:
            self._stats.total_attempts += 1
            try:
                new_job_id = await self._resubmit(record)
            except Exception as exc:  # noqa: BLE001
                self._stats.failed += 1
                updated = record.model_copy(
                    update={
                        "attempts": record.attempts + 1,
                        "retry_after": utc_from_timestamp(now + self.config.recovery_delay_s),
                    }
                )
                await self._put_record(updated)
                logger.warning(
                    "Resubmission of parked job %s failed: %s",
                    record.job_id,
                    exc,
                    extra={"event": events.RECOVERY_FAILED},
                )
                self._observers.emit(
                    RecoveryEvent(RecoveryEventKind.FAILED, record.job_id, message=str(exc))
                )
                continue
            recovered += 1
            self._stats.successful += 1
            await self._drop_record(record.job_id)
            logger.info(
                "Parked job %s resubmitted as %s",
                record.job_id,
                new_job_id,
                extra={"event": events.RECOVERY_SUCCESS},
            )
            self._observers.emit(
                RecoveryEvent(
                    RecoveryEventKind.SUCCESS,
                    record.job_id,
                    RecoveryStrategy.JOB_PERSISTENCE,
                    message=f"resubmitted as {new_job_id}",
                )
            )

        logger.info(
            "Recovery sweep: %d eligible, %d resubmitted",
            len(eligible),
            recovered,
            extra={"event": events.RECOVERY_SWEEP},
        )
        return recovered

    def start(self) -> None:
        """Start the background sweep loop when automatic recovery is on."""
        if not self.config.automatic_recovery:
            return
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._sweep_loop(), name="recovery-sweep")

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

    async def restore(self) -> int:
        """Load failed-job records from the store.  Returns how many."""
        if self._store is None:
            return 0
        try:
            records = await self._store.load_failed_records()
        except Exception:  # noqa: BLE001
            logger.error(
                "Could not load failed-job records",
                exc_info=True,
                extra={"event": events.STORE_ERROR},
            )
            return 0
        for record in records:
            self._records[record.job_id] = record
        self._enforce_bound()
        return len(records)

    # ------------------------------------------------------------------
    # Observability and administration
    # ------------------------------------------------------------------

    def status(self) -> RecoveryStatus:
        now = self._clock()
        return RecoveryStatus(
            active=self._loop_task is not None and not self._loop_task.done(),
            breaker=self._breaker.stats() if self._breaker is not None else None,
            pending_recovery=sum(1 for r in self._records.values() if self._is_eligible(r, now)),
            parked_records=len(self._records),
            retry_queue=len(self._in_flight),
            stats=RecoveryStats(
                self._stats.total_attempts, self._stats.successful, self._stats.failed
            ),
            last_sweep_at=self._last_sweep_at,
        )

    def failed_jobs(self) -> list[FailedJobRecord]:
        return sorted(self._records.values(), key=lambda r: r.failed_at)

    async def clear_failed_job(self, job_id: str) -> bool:
        if job_id not in self._records:
            return False
        await self._drop_record(job_id)
        return True

    async def clear_all(self) -> None:
        for job_id in list(self._records):
            await self._drop_record(job_id)
        self._in_flight.clear()
        self._stats = RecoveryStats()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _retry_decision(
        self,
        job: ManagedJob,
        strategy: RecoveryStrategy,
        c: ErrorClassification,
        delay: float,
    ) -> RecoveryDecision:
        self._in_flight.add(job.job_id)
        return RecoveryDecision(
            job.job_id, strategy, RecoveryAction.RETRY, c, max(0.0, delay), "Retry scheduled"
        )

    def _fail_decision(
        self,
        job: ManagedJob,
        strategy: RecoveryStrategy,
        c: ErrorClassification,
        message: str,
    ) -> RecoveryDecision:
        self._in_flight.discard(job.job_id)
        self._stats.failed += 1
        logger.warning(
            "Job %s not recoverable (%s): %s",
            job.job_id,
            strategy,
            c.message,
            extra={"event": events.RECOVERY_FAILED},
        )
        self._observers.emit(
            RecoveryEvent(RecoveryEventKind.FAILED, job.job_id, strategy, c, message)
        )
        return RecoveryDecision(job.job_id, strategy, RecoveryAction.FAIL, c, 0.0, message)

    def _breaker_wait(self, c: ErrorClassification) -> float:
        wait = c.retry_after or 0.0
        if self._breaker is not None:
            wait = max(wait, self._breaker.stats().time_until_next_attempt_s)
        return max(wait, self.config.retry_base_delay_s)

    def _is_eligible(self, record: FailedJobRecord, now: float) -> bool:
        if not record.classification.retryable:
            return False
        if record.attempts >= self.config.max_recovery_attempts:
            return False
        return record.retry_after is None or record.retry_after.timestamp() <= now

    async def _record_failure(
        self,
        job: ManagedJob,
        error: BaseException,
        c: ErrorClassification,
        retry_at: float | None,
    ) -> None:
        if not self.config.persist_failed_jobs:
            return
        previous = self._records.get(job.job_id)
        record = FailedJobRecord(
            job=job,
            error_message=str(error) or type(error).__name__,
            classification=c,
            attempts=(previous.attempts if previous else job.recovery_attempts) + 1,
            failed_at=previous.failed_at if previous else utc_from_timestamp(self._clock()),
            retry_after=utc_from_timestamp(retry_at) if retry_at is not None else None,
        )
        await self._put_record(record)

    async def _put_record(self, record: FailedJobRecord) -> None:
        self._records[record.job_id] = record
        self._enforce_bound()
        if self._store is None:
            return
        try:
            await self._store.save_failed_record(record)
        except Exception:  # noqa: BLE001
            logger.error(
                "Could not persist failed-job record %s",
                record.job_id,
                exc_info=True,
                extra={"event": events.STORE_ERROR},
            )

    async def _drop_record(self, job_id: str) -> None:
        self._records.pop(job_id, None)
        if self._store is None:
            return
        try:
            await self._store.delete_failed_record(job_id)
        except Exception:  # noqa: BLE001
            logger.error(
                "Could not delete failed-job record %s",
                job_id,
                exc_info=True,
                extra={"event": events.STORE_ERROR},
            )

    def _enforce_bound(self) -> None:
        overflow = len(self._records) - self.config.max_failed_records
        if overflow <= 0:
            return
        oldest = sorted(self._records.values(), key=lambda r: r.failed_at)[:overflow]
        for record in oldest:
            logger.debug("Dropping failed-job record %s over capacity", record.job_id)
            self._records.pop(record.job_id, None)

    async def _notify(
        self,
        kind: NotificationKind,
        job: ManagedJob,
        c: ErrorClassification,
        title: str,
    ) -> None:
        if self._notifier is None or not self.config.notifications.allows(c):
            return
        notification = Notification(
            kind=kind,
            job_id=job.job_id,
            title=title,
            message=f"{c.message}. {c.user_action}",
            category=c.category,
            severity=c.severity,
            created_at=utc_from_timestamp(self._clock()),
        )
        try:
            await self._notifier.notify(notification)
        except Exception:  # noqa: BLE001
            logger.error(
                "Notification sink failed for job %s",
                job.job_id,
                exc_info=True,
                extra={"event": events.NOTIFY_ERROR},
            )

    def _on_breaker_event(self, event: BreakerEvent) -> None:
        if event.kind is BreakerEventKind.OPEN:
            due = self._clock() + self.config.recovery_delay_s
            self._next_sweep_at = min(self._next_sweep_at, due)

    async def _sweep_loop(self) -> None:
        tick = min(self.config.sweep_interval_s, max(self.config.recovery_delay_s, 1.0))
        while True:
            await self._sleep(tick)
            if self._clock() < self._next_sweep_at:
                continue
            try:
                await self.sweep()
            except Exception:  # noqa: BLE001
                logger.error("Recovery sweep failed", exc_info=True)

