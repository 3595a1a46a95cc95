"""Unit tests for the job scheduler.

The scheduler is driven by ``tick()`` on a fake clock; ``drain()`` waits for
the job tasks it spawned.

Tests cover:
- Submission: acceptance, queue-full and validation rejections.
- Dispatch: priority order, an urgent job overtaking a queued backlog,
  the concurrency cap, pause/resume, limits.
- The full pipeline to completion, with events, progress and persistence.
- Failure routing: delayed retry, permanent failure, remote failure,
  tracking timeout, and parking plus background resubmission.
- Recovery attempts counted across the chain of resubmitted jobs.
- Cancellation of queued, tracked and in-flight jobs, including a cancel
  while the failure of the job is being handled.
- Restore from the store within the concurrency cap, restored retries,
  cleanup, and the run/stop lifecycle.
"""

from __future__ import annotations

import asyncio
import json
import random
from pathlib import Path

import pydantic
import pytest

from fakes import FakeClock, FakeSpeechService, MemoryStore, make_guard, make_job
from transcribeflow.core.clock import utc_from_timestamp
from transcribeflow.core.exceptions import GatewayError, GatewayTimeoutError
from transcribeflow.core.models import (
    ErrorCategory,
    JobPriority,
    JobStatus,
    TranscriptionRequest,
)
from transcribeflow.gateway.base import (
    RemoteStatus,
    SubmissionReceipt,
    ValidationReport,
    Validator,
)
from transcribeflow.notifiers.base import Notification, NotificationSink
from transcribeflow.orchestrator.progress import ProgressTracker, TrackerConfig
from transcribeflow.orchestrator.results import ResultCollector
from transcribeflow.orchestrator.scheduler import (
    JobEvent,
    JobEventKind,
    JobScheduler,
    SchedulerConfig,
)
from transcribeflow.resilience.recovery import RecoveryOrchestrator
from transcribeflow.resilience.retry import RetryCoordinator, RetryPolicy
from transcribeflow.storage.base import PersistenceStore

REQUEST = TranscriptionRequest(audio_url="https://media.example.com/audio/meeting.wav")


class _Harness:
    """A scheduler wired to fakes on one fake clock."""

    def __init__(
        self,
        clock: FakeClock,
        service: FakeSpeechService | None = None,
        *,
        config: SchedulerConfig | None = None,
        store: PersistenceStore | None = None,
        validator: Validator | None = None,
        notifier: NotificationSink | None = None,
    ) -> None:
        self.clock = clock
        self.service = service or FakeSpeechService()
        guard = make_guard(clock)
        retry = RetryCoordinator(
            RetryPolicy(max_attempts=1, jitter=0.0, attempt_timeout_s=None),
            clock=clock,
            sleep=clock.sleep,
        )
        tracker = ProgressTracker(
            self.service,
            guard,
            TrackerConfig(base_poll_interval_s=1.0, max_poll_interval_s=5.0),
            clock=clock,
            sleep=clock.sleep,
            rng=random.Random(0),
        )
        self.recovery = RecoveryOrchestrator(
            breaker=guard.breaker,
            notifier=notifier,
            store=store,
            clock=clock,
            sleep=clock.sleep,
            rng=random.Random(0),
        )
        self.scheduler = JobScheduler(
            gateway=self.service,
            tracker=tracker,
            collector=ResultCollector(self.service, guard, retry),
            recovery=self.recovery,
            guard=guard,
            retry=retry,
            validator=validator,
            store=store,
            config=config or SchedulerConfig(max_concurrent_jobs=2, max_queue_size=10),
            clock=clock,
            sleep=clock.sleep,
        )
        self.events: list[JobEvent] = []
        self.scheduler.subscribe(self.events.append)

    async def submit(self, priority: JobPriority = JobPriority.NORMAL) -> str:
        outcome = await self.scheduler.submit(REQUEST, priority)
        assert outcome.accepted is True
        assert outcome.job_id is not None
        return outcome.job_id

    async def run_once(self) -> int:
        dispatched = await self.scheduler.tick()
        assert await self.scheduler.drain(timeout=5.0) is True
        return dispatched

    def kinds(self, job_id: str | None = None) -> list[JobEventKind]:
        return [e.kind for e in self.events if job_id is None or e.job_id == job_id]


class _Rejecting(Validator):
    async def validate(self, request: TranscriptionRequest) -> ValidationReport:
        return ValidationReport(valid=False, errors=("unsupported scheme",))


class _Warning(Validator):
    async def validate(self, request: TranscriptionRequest) -> ValidationReport:
        return ValidationReport(valid=True, warnings=("large file",))


class _Exploding(Validator):
    async def validate(self, request: TranscriptionRequest) -> ValidationReport:
        raise RuntimeError("validator down")


class _BlockingService(FakeSpeechService):
    """Holds every submission until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def submit(self, request: TranscriptionRequest) -> SubmissionReceipt:
        self.entered.set()
        await self.gate.wait()
        return await super().submit(request)


class _BlockingSink(NotificationSink):
    """Holds every notification until ``gate`` is set."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def notify(self, notification: Notification) -> None:
        self.entered.set()
        await self.gate.wait()


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


class TestSubmit:
    @pytest.mark.asyncio
    async def test_accepts_and_queues(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        job_id = await h.submit()

        snapshot = h.scheduler.status(job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.PENDING
        assert snapshot.queue_position == 0
        assert snapshot.progress == 0.0
        assert h.kinds() == [JobEventKind.QUEUED]
        assert h.scheduler.statistics().total_jobs == 1

    @pytest.mark.asyncio
    async def test_queue_full(self, clock: FakeClock) -> None:
        h = _Harness(clock, config=SchedulerConfig(max_queue_size=1))
        await h.submit()

        outcome = await h.scheduler.submit(REQUEST)

        assert outcome.accepted is False
        assert outcome.job_id is None
        assert outcome.error is not None
        assert "full" in outcome.error.lower()
        assert h.kinds()[-1] is JobEventKind.QUEUE_FULL
        assert h.scheduler.statistics().rejected == 1

    @pytest.mark.asyncio
    async def test_invalid_request_is_rejected(self, clock: FakeClock) -> None:
        h = _Harness(clock, validator=_Rejecting())
        outcome = await h.scheduler.submit(REQUEST)

        assert outcome.accepted is False
        assert outcome.error == "Invalid request: unsupported scheme"
        assert h.kinds() == [JobEventKind.REJECTED]

    @pytest.mark.asyncio
    async def test_warnings_do_not_block(self, clock: FakeClock) -> None:
        h = _Harness(clock, validator=_Warning())
        assert (await h.scheduler.submit(REQUEST)).accepted is True

    @pytest.mark.asyncio
    async def test_validator_error_is_a_rejection(self, clock: FakeClock) -> None:
        h = _Harness(clock, validator=_Exploding())
        outcome = await h.scheduler.submit(REQUEST)
        assert outcome.accepted is False
        assert outcome.error == "Validation failed: validator down"

    @pytest.mark.asyncio
    async def test_unknown_job(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        assert h.scheduler.status("nope") is None
        assert await h.scheduler.cancel("nope") is False


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_priority_order(self, clock: FakeClock) -> None:
        h = _Harness(clock, config=SchedulerConfig(max_concurrent_jobs=1))
        low = await h.submit(JobPriority.LOW)
        urgent = await h.submit(JobPriority.URGENT)

        assert await h.scheduler.tick() == 1

        assert h.scheduler.status(urgent).status is JobStatus.SUBMITTED  # type: ignore[union-attr]
        assert h.scheduler.status(low).queue_position == 0  # type: ignore[union-attr]
        await h.scheduler.drain(timeout=5.0)

    @pytest.mark.asyncio
    async def test_urgent_job_takes_the_next_free_slot(self, clock: FakeClock) -> None:
        service = _BlockingService()
        h = _Harness(clock, service, config=SchedulerConfig(max_concurrent_jobs=1))
        running = await h.submit()
        await h.scheduler.tick()
        await service.entered.wait()

        normals = [await h.submit() for _ in range(5)]
        urgent = await h.submit(JobPriority.URGENT)
        assert h.scheduler.status(urgent).queue_position == 0  # type: ignore[union-attr]

        service.gate.set()
        assert await h.scheduler.drain(timeout=5.0) is True
        assert h.scheduler.status(running).status is JobStatus.COMPLETED  # type: ignore[union-attr]

        assert await h.scheduler.tick() == 1
        assert h.scheduler.status(urgent).status is JobStatus.SUBMITTED  # type: ignore[union-attr]
        snapshots = [h.scheduler.status(j) for j in normals]
        assert [s.queue_position for s in snapshots if s is not None] == [0, 1, 2, 3, 4]
        await h.scheduler.drain(timeout=5.0)

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, clock: FakeClock) -> None:
        h = _Harness(clock, config=SchedulerConfig(max_concurrent_jobs=2))
        for _ in range(3):
            await h.submit()

        assert await h.scheduler.tick() == 2
        assert h.scheduler.statistics().active == 2
        assert h.scheduler.statistics().utilization == 1.0
        assert await h.scheduler.tick() == 0

        await h.scheduler.drain(timeout=5.0)
        assert await h.run_once() == 1
        assert len(h.scheduler.jobs_by_status(JobStatus.COMPLETED)) == 3

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        await h.submit()

        h.scheduler.pause()
        assert h.scheduler.paused is True
        assert await h.scheduler.tick() == 0

        h.scheduler.resume()
        assert await h.run_once() == 1

    @pytest.mark.asyncio
    async def test_update_limits(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        config = h.scheduler.update_limits(max_concurrent_jobs=4, max_queue_size=20)
        assert (config.max_concurrent_jobs, config.max_queue_size) == (4, 20)

        with pytest.raises(pydantic.ValidationError):
            h.scheduler.update_limits(max_concurrent_jobs=0)
        assert h.scheduler.config.max_concurrent_jobs == 4


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestPipeline:
    @pytest.mark.asyncio
    async def test_runs_to_completion(self, clock: FakeClock) -> None:
        store = MemoryStore()
        h = _Harness(clock, store=store)
        job_id = await h.submit()

        await h.run_once()

        snapshot = h.scheduler.status(job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.COMPLETED
        assert snapshot.progress == 100.0
        assert snapshot.external_job_id == "remote-1"
        assert snapshot.result is not None
        assert snapshot.result.text == "Hello there. General Kenobi."
        assert snapshot.started_at is not None
        assert snapshot.completed_at is not None

        kinds = h.kinds(job_id)
        assert kinds[:3] == [JobEventKind.QUEUED, JobEventKind.STARTED, JobEventKind.SUBMITTED]
        assert JobEventKind.PROGRESS in kinds
        assert kinds[-1] is JobEventKind.COMPLETED

        assert store.jobs[job_id].status is JobStatus.COMPLETED
        stats = h.scheduler.statistics()
        assert (stats.completed, stats.failed, stats.active) == (1, 0, 0)
        assert stats.success_rate == 1.0

    @pytest.mark.asyncio
    async def test_history_ends_at_terminal(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        job_id = await h.submit()
        await h.run_once()

        job = h.scheduler.job_details(job_id)
        assert job is not None
        assert [e.status for e in job.history] == [
            JobStatus.PENDING,
            JobStatus.SUBMITTED,
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_store_failure_does_not_stop_the_job(self, clock: FakeClock) -> None:
        store = MemoryStore()
        store.fail_writes = True
        h = _Harness(clock, store=store)
        job_id = await h.submit()

        await h.run_once()

        assert h.scheduler.status(job_id).status is JobStatus.COMPLETED  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        h.service.submit_errors.append(GatewayTimeoutError("speech-service"))
        job_id = await h.submit()

        await h.run_once()

        snapshot = h.scheduler.status(job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.PROCESSING
        assert snapshot.retry_count == 1
        assert JobEventKind.RETRIED in h.kinds(job_id)
        # The waiting job keeps its slot.
        assert h.scheduler.statistics().active == 1

        assert await h.scheduler.tick() == 0
        clock.advance(3)
        assert await h.run_once() == 1

        snapshot = h.scheduler.status(job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.COMPLETED
        assert snapshot.retry_count == 1
        assert h.scheduler.statistics().retried == 1
        assert h.recovery.status().stats.successful == 1

    @pytest.mark.asyncio
    async def test_permanent_failure(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        h.service.submit_errors.append(GatewayError("speech-service", "bad key", status_code=401))
        job_id = await h.submit()

        await h.run_once()

        snapshot = h.scheduler.status(job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.FAILED
        assert snapshot.error is not None
        assert snapshot.error.category is ErrorCategory.AUTHENTICATION
        assert snapshot.error.retryable is False
        assert h.kinds(job_id)[-1] is JobEventKind.FAILED
        assert [r.job_id for r in h.recovery.failed_jobs()] == [job_id]

    @pytest.mark.asyncio
    async def test_remote_failure_uses_service_code(self, clock: FakeClock) -> None:
        service = FakeSpeechService(
            statuses=(RemoteStatus.RUNNING, RemoteStatus.FAILED),
            error_code="InvalidAudioFormat",
            error_message="Audio could not be decoded",
        )
        h = _Harness(clock, service)
        job_id = await h.submit()

        await h.run_once()

        snapshot = h.scheduler.status(job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.FAILED
        assert snapshot.error is not None
        assert snapshot.error.category is ErrorCategory.AUDIO
        assert snapshot.error.service_code == "InvalidAudioFormat"
        assert "Audio could not be decoded" in snapshot.error.message
        assert service.downloads == 0

    @pytest.mark.asyncio
    async def test_tracking_timeout_fails_the_job(self, clock: FakeClock) -> None:
        service = FakeSpeechService(statuses=(RemoteStatus.RUNNING,))
        h = _Harness(clock, service, config=SchedulerConfig(job_timeout_s=10.0))
        job_id = await h.submit()

        await h.run_once()

        snapshot = h.scheduler.status(job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.FAILED
        assert snapshot.error is not None
        assert "abandoned" in snapshot.error.message

    @pytest.mark.asyncio
    async def test_exhausted_job_is_parked_and_resubmitted(self, clock: FakeClock) -> None:
        h = _Harness(clock, config=SchedulerConfig(max_retries=0))
        h.service.submit_errors.append(GatewayTimeoutError("speech-service"))
        job_id = await h.submit()

        await h.run_once()

        assert h.scheduler.status(job_id).status is JobStatus.FAILED  # type: ignore[union-attr]
        assert [r.job_id for r in h.recovery.failed_jobs()] == [job_id]

        clock.advance(30)
        assert await h.recovery.sweep() == 1

        assert h.recovery.failed_jobs() == []
        [queued] = h.scheduler.jobs_by_status(JobStatus.PENDING)
        assert queued.recovered_from == job_id
        assert queued.history[0].note == f"Recovered from job {job_id}"

        await h.run_once()
        assert h.scheduler.status(queued.job_id).status is JobStatus.COMPLETED  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_recovery_attempts_carry_across_resubmissions(
        self, clock: FakeClock
    ) -> None:
        h = _Harness(clock, config=SchedulerConfig(max_retries=0))
        h.service.submit_errors.extend(GatewayTimeoutError("speech-service") for _ in range(10))
        await h.submit()
        await h.run_once()

        for _ in range(8):
            clock.advance(60)
            await h.recovery.sweep()
            await h.run_once()

        limit = h.recovery.config.max_recovery_attempts
        jobs = h.scheduler.jobs_by_status(JobStatus.FAILED)
        assert len(jobs) == limit
        assert sorted(j.recovery_attempts for j in jobs) == list(range(limit))
        [record] = h.recovery.failed_jobs()
        assert record.attempts == limit
        assert await h.recovery.sweep() == 0

    @pytest.mark.asyncio
    async def test_auto_retry_disabled(self, clock: FakeClock) -> None:
        h = _Harness(clock, config=SchedulerConfig(auto_retry=False))
        h.service.submit_errors.append(GatewayTimeoutError("speech-service"))
        job_id = await h.submit()

        await h.run_once()

        assert h.scheduler.status(job_id).status is JobStatus.FAILED  # type: ignore[union-attr]
        assert h.scheduler.statistics().retried == 0


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_queued(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        job_id = await h.submit()

        assert await h.scheduler.cancel(job_id) is True
        assert await h.scheduler.cancel(job_id) is False

        snapshot = h.scheduler.status(job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.CANCELLED
        assert await h.scheduler.tick() == 0
        assert h.scheduler.statistics().cancelled == 1

    @pytest.mark.asyncio
    async def test_cancel_while_tracking(self, clock: FakeClock) -> None:
        service = FakeSpeechService(statuses=(RemoteStatus.RUNNING,))
        h = _Harness(clock, service)
        job_id = await h.submit()
        await h.scheduler.tick()

        while not service.polls:
            await asyncio.sleep(0)
        assert await h.scheduler.cancel(job_id) is True
        assert await h.scheduler.drain(timeout=5.0) is True

        snapshot = h.scheduler.status(job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.CANCELLED
        assert snapshot.result is None
        assert h.scheduler.statistics().active == 0

    @pytest.mark.asyncio
    async def test_late_submission_response_is_discarded(self, clock: FakeClock) -> None:
        service = _BlockingService()
        h = _Harness(clock, service)
        job_id = await h.submit()
        await h.scheduler.tick()
        await service.entered.wait()

        assert await h.scheduler.cancel(job_id) is True
        service.gate.set()
        assert await h.scheduler.drain(timeout=5.0) is True

        assert h.scheduler.status(job_id).status is JobStatus.CANCELLED  # type: ignore[union-attr]
        assert JobEventKind.DISCARDED in h.kinds(job_id)
        assert service.polls == []

    @pytest.mark.asyncio
    async def test_cancel_during_retry_wait(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        h.service.submit_errors.append(GatewayTimeoutError("speech-service"))
        job_id = await h.submit()
        await h.run_once()

        assert await h.scheduler.cancel(job_id) is True
        clock.advance(60)
        assert await h.scheduler.tick() == 0
        assert h.scheduler.status(job_id).status is JobStatus.CANCELLED  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_cancel_while_failure_is_handled(self, clock: FakeClock) -> None:
        sink = _BlockingSink()
        h = _Harness(clock, notifier=sink)
        h.service.submit_errors.append(
            GatewayError("speech-service", "unavailable", status_code=503)
        )
        job_id = await h.submit()
        await h.scheduler.tick()
        await sink.entered.wait()

        assert await h.scheduler.cancel(job_id) is True
        sink.gate.set()
        assert await h.scheduler.drain(timeout=5.0) is True

        assert h.scheduler.status(job_id).status is JobStatus.CANCELLED  # type: ignore[union-attr]
        assert JobEventKind.DISCARDED in h.kinds(job_id)
        assert h.recovery.status().retry_queue == 0
        assert await h.scheduler.tick() == 0


# ---------------------------------------------------------------------------
# Restore, cleanup, lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_restore_resumes_jobs(self, clock: FakeClock) -> None:
        store = MemoryStore()
        pending = make_job("pending")
        tracked = make_job("tracked", status=JobStatus.PROCESSING).model_copy(
            update={"external_job_id": "remote-77"}
        )
        done = make_job("done", status=JobStatus.COMPLETED)
        for job in (pending, tracked, done):
            store.jobs[job.job_id] = job
        h = _Harness(clock, store=store)

        assert await h.scheduler.restore() == 2
        assert await h.scheduler.restore() == 0
        await h.scheduler.drain(timeout=5.0)

        assert h.scheduler.status("tracked").status is JobStatus.COMPLETED  # type: ignore[union-attr]
        assert h.service.submitted == []
        assert h.service.polls[0] == "remote-77"
        assert h.scheduler.status("pending").status is JobStatus.PENDING  # type: ignore[union-attr]
        assert h.scheduler.status("done") is None

    @pytest.mark.asyncio
    async def test_restore_respects_the_concurrency_cap(self, clock: FakeClock) -> None:
        store = MemoryStore()
        waiting = make_job(
            "waiting", status=JobStatus.PROCESSING, retry_count=1, queued_at=clock() - 100
        ).model_copy(update={"retry_at": utc_from_timestamp(clock() + 30)})
        tracked = make_job(
            "tracked", status=JobStatus.PROCESSING, queued_at=clock() - 50
        ).model_copy(update={"external_job_id": "remote-77"})
        for job in (waiting, tracked):
            store.jobs[job.job_id] = job
        h = _Harness(clock, store=store, config=SchedulerConfig(max_concurrent_jobs=1))

        assert await h.scheduler.restore() == 2
        assert h.scheduler.statistics().active == 1
        assert h.scheduler.status("waiting").queue_position == 0  # type: ignore[union-attr]

        await h.scheduler.drain(timeout=5.0)
        assert h.scheduler.status("tracked").status is JobStatus.COMPLETED  # type: ignore[union-attr]
        assert h.service.polls[0] == "remote-77"

        assert await h.run_once() == 1
        job = h.scheduler.job_details("waiting")
        assert job is not None
        assert job.status is JobStatus.COMPLETED
        assert job.retry_at is None
        assert len(h.service.submitted) == 1

    @pytest.mark.asyncio
    async def test_restored_retry_resubmits_instead_of_polling(
        self, clock: FakeClock
    ) -> None:
        store = MemoryStore()
        failing = FakeSpeechService(
            statuses=(RemoteStatus.RUNNING, RemoteStatus.FAILED),
            error_code="ServiceUnavailable",
            error_message="Service is temporarily down",
        )
        first = _Harness(clock, failing, store=store)
        job_id = await first.submit()
        await first.run_once()

        persisted = store.jobs[job_id]
        assert persisted.status is JobStatus.PROCESSING
        assert persisted.retry_count == 1
        assert persisted.external_job_id is None
        assert persisted.retry_at is not None

        second = _Harness(clock, store=store)
        assert await second.scheduler.restore() == 1
        assert await second.scheduler.tick() == 0
        assert second.service.polls == []

        clock.advance(600)
        assert await second.run_once() == 1

        job = second.scheduler.job_details(job_id)
        assert job is not None
        assert job.status is JobStatus.COMPLETED
        assert len(second.service.submitted) == 1
        assert "Resubmitting (retry 1)" in [e.note for e in job.history]

    @pytest.mark.asyncio
    async def test_cleanup_evicts_old_terminal_jobs(self, clock: FakeClock) -> None:
        store = MemoryStore()
        h = _Harness(clock, store=store, config=SchedulerConfig(retention_s=60.0))
        job_id = await h.submit()
        await h.run_once()

        assert await h.scheduler.cleanup() == 0
        clock.advance(61)
        assert await h.scheduler.cleanup() == 1

        assert h.scheduler.status(job_id) is None
        assert job_id not in store.jobs

    @pytest.mark.asyncio
    async def test_run_and_stop(self, clock: FakeClock, tmp_path: Path) -> None:
        stats_path = tmp_path / "stats.json"
        h = _Harness(clock, config=SchedulerConfig(stats_path=str(stats_path)))
        done = asyncio.Event()
        h.scheduler.subscribe(
            lambda e: done.set() if e.kind is JobEventKind.COMPLETED else None
        )
        await h.submit()

        h.scheduler.start()
        await asyncio.wait_for(done.wait(), timeout=5.0)
        await h.scheduler.stop(drain_timeout=1.0)

        assert h.kinds()[-1] is JobEventKind.STATS
        written = json.loads(stats_path.read_text(encoding="utf-8"))
        assert written["completed"] == 1
        assert "written_at" in written
