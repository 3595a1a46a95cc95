"""In-memory test doubles shared by unit and integration tests."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from collections.abc import Iterable
from typing import Any

from transcribeflow.core.clock import utc_from_timestamp
from transcribeflow.core.models import (
    FailedJobRecord,
    JobPriority,
    JobStatus,
    ManagedJob,
    TranscriptionRequest,
)
from transcribeflow.gateway.base import (
    RemoteStatus,
    ResultFetch,
    ResultFile,
    StatusQuery,
    StatusReport,
    SubmissionGateway,
    SubmissionReceipt,
)
from transcribeflow.notifiers.base import Notification, NotificationSink
from transcribeflow.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from transcribeflow.resilience.guard import ServiceGuard
from transcribeflow.resilience.rate_limiter import RateLimiter, RateLimiterConfig
from transcribeflow.storage.base import PersistenceStore


class FakeClock:
    """Manually advanced clock with a matching async ``sleep``.

    ``sleep(seconds)`` advances the clock by *seconds*, records the call and
    yields to the event loop once, so background tasks still interleave.
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)
        await asyncio.sleep(0)


def transcript_payload(
    phrases: Iterable[tuple[int | None, float, float, str, float]] = (
        (0, 0.0, 2.5, "Hello there.", 0.93),
        (1, 2.5, 1.5, "General Kenobi.", 0.88),
    ),
    *,
    source: str = "https://media.example.com/audio/meeting.wav",
    duration: str = "PT4S",
) -> bytes:
    """Build a result document.

    Each phrase is ``(speaker, offset_s, duration_s, text, confidence)``.
    Every phrase gets one word timing per whitespace-separated token.
    """
    recognized: list[dict[str, Any]] = []
    for speaker, offset_s, duration_s, text, confidence in phrases:
        tokens = text.split()
        step = duration_s / max(len(tokens), 1)
        words = [
            {
                "word": token.strip(".,").lower(),
                "offsetInTicks": int((offset_s + i * step) * 10_000_000),
                "durationInTicks": int(step * 10_000_000),
                "confidence": confidence,
            }
            for i, token in enumerate(tokens)
        ]
        phrase: dict[str, Any] = {
            "offsetInTicks": int(offset_s * 10_000_000),
            "durationInTicks": int(duration_s * 10_000_000),
            "nBest": [{"confidence": confidence, "display": text, "words": words}],
        }
        if speaker is not None:
            phrase["speaker"] = speaker
        recognized.append(phrase)
    return json.dumps(
        {"source": source, "duration": duration, "recognizedPhrases": recognized}
    ).encode()


class FakeSpeechService(SubmissionGateway, StatusQuery, ResultFetch):
    """Scripted speech service.

    * ``submit_errors``: exceptions raised by the next ``submit`` calls.
    * ``status_script``: per external id, the statuses returned by successive
      polls; the last one repeats.
    * ``status_errors``: exceptions raised by the next ``query_status`` calls.
    * ``payload``: bytes returned by ``download_file``.
    """

    def __init__(
        self,
        *,
        statuses: Iterable[RemoteStatus] = (RemoteStatus.RUNNING, RemoteStatus.SUCCEEDED),
        payload: bytes | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        self.default_statuses = list(statuses)
        self.payload = payload if payload is not None else transcript_payload()
        self.error_code = error_code
        self.error_message = error_message
        self.submit_errors: deque[BaseException] = deque()
        self.status_errors: deque[BaseException] = deque()
        self.status_script: dict[str, list[RemoteStatus]] = {}
        self.submitted: list[TranscriptionRequest] = []
        self.polls: list[str] = []
        self.downloads = 0
        self.files: list[ResultFile] | None = None
        self._counter = 0

    async def submit(self, request: TranscriptionRequest) -> SubmissionReceipt:
        if self.submit_errors:
            raise self.submit_errors.popleft()
        self._counter += 1
        external_id = f"remote-{self._counter}"
        self.submitted.append(request)
        self.status_script[external_id] = list(self.default_statuses)
        return SubmissionReceipt(external_job_id=external_id)

    async def query_status(self, external_job_id: str) -> StatusReport:
        self.polls.append(external_job_id)
        if self.status_errors:
            raise self.status_errors.popleft()
        script = self.status_script.setdefault(external_job_id, list(self.default_statuses))
        status = script.pop(0) if len(script) > 1 else script[0]
        failed = status is RemoteStatus.FAILED
        return StatusReport(
            external_job_id=external_job_id,
            status=status,
            error_code=self.error_code if failed else None,
            error_message=self.error_message if failed else None,
        )

    async def list_result_files(self, external_job_id: str) -> list[ResultFile]:
        if self.files is not None:
            return self.files
        return [
            ResultFile(
                name="contenturl_0.json",
                kind="Transcription",
                size_bytes=len(self.payload),
                content_url=f"https://blob.example.com/{external_job_id}/contenturl_0.json",
            ),
            ResultFile(name="report.json", kind="TranscriptionReport", size_bytes=10),
        ]

    async def download_file(self, file: ResultFile) -> bytes:
        self.downloads += 1
        return self.payload


class MemoryStore(PersistenceStore):
    """Dictionary-backed persistence store."""

    def __init__(self) -> None:
        self.jobs: dict[str, ManagedJob] = {}
        self.records: dict[str, FailedJobRecord] = {}
        self.fail_writes = False

    async def save_job(self, job: ManagedJob) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        self.jobs[job.job_id] = job

    async def load_jobs(self, *, include_terminal: bool = False) -> list[ManagedJob]:
        return [j for j in self.jobs.values() if include_terminal or not j.is_terminal]

    async def delete_job(self, job_id: str) -> None:
        self.jobs.pop(job_id, None)

    async def save_failed_record(self, record: FailedJobRecord) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        self.records[record.job_id] = record

    async def load_failed_records(self) -> list[FailedJobRecord]:
        return sorted(self.records.values(), key=lambda r: r.failed_at)

    async def delete_failed_record(self, job_id: str) -> None:
        self.records.pop(job_id, None)


class RecordingSink(NotificationSink):
    """Notification sink that keeps everything it receives."""

    def __init__(self, *, fail: bool = False) -> None:
        self.received: list[Notification] = []
        self.fail = fail

    async def notify(self, notification: Notification) -> None:
        if self.fail:
            raise RuntimeError("sink down")
        self.received.append(notification)


def make_job(
    job_id: str = "job-1",
    *,
    priority: JobPriority = JobPriority.NORMAL,
    status: JobStatus = JobStatus.PENDING,
    retry_count: int = 0,
    queued_at: float = 1_700_000_000.0,
    audio_url: str = "https://media.example.com/audio/meeting.wav",
) -> ManagedJob:
    """Build a job snapshot without going through the scheduler."""
    return ManagedJob(
        job_id=job_id,
        priority=priority,
        request=TranscriptionRequest(audio_url=audio_url),
        status=status,
        queued_at=utc_from_timestamp(queued_at),
        retry_count=retry_count,
    )


def make_guard(
    clock: FakeClock,
    *,
    breaker: CircuitBreakerConfig | None = None,
    limits: RateLimiterConfig | None = None,
) -> ServiceGuard:
    """Guard on the fake clock with limits high enough to stay out of the way."""
    limiter = RateLimiter(
        limits
        or RateLimiterConfig(
            requests_per_minute=10_000,
            requests_per_hour=100_000,
            requests_per_day=1_000_000,
            max_concurrent=50,
        ),
        clock=clock,
        sleep=clock.sleep,
    )
    return ServiceGuard(limiter, CircuitBreakerRegistry(breaker, clock=clock))
