"""Transcribeflow core domain models.

This module defines the data shared by every layer: the job lifecycle enums,
the immutable :class:`ManagedJob` snapshot, the derived
:class:`ErrorClassification`, the persisted :class:`FailedJobRecord`, and the
normalised :class:`TranscriptionResult`.

All models are **frozen** pydantic models.  State changes never mutate a
model in place; :mod:`transcribeflow.orchestrator.transitions` returns a new
snapshot for every transition, which keeps lifecycle invariants (monotonic
history, single terminal entry) checkable in one place.

Typical usage::

    from transcribeflow.core.models import JobPriority, TranscriptionRequest

    request = TranscriptionRequest(
        audio_url="https://media.example.com/meetings/2026-10-18.wav",
        language="en-US",
    )
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    # Enumerations
    "JobPriority",
    "JobStatus",
    "ErrorCategory",
    "RetryStrategy",
    # Requests and jobs
    "TranscriptionRequest",
    "StatusEntry",
    "JobError",
    "ManagedJob",
    # Errors
    "ErrorClassification",
    "FailedJobRecord",
    # Results
    "WordTiming",
    "TranscriptSegment",
    "SpeakerStats",
    "TranscriptionResult",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class JobPriority(StrEnum):
    """Scheduling tier of a job.  Higher tiers always dequeue first."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Sort key: ``0`` for the most urgent tier, ``3`` for the least."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[JobPriority, int] = {
    JobPriority.URGENT: 0,
    JobPriority.HIGH: 1,
    JobPriority.NORMAL: 2,
    JobPriority.LOW: 3,
}


class JobStatus(StrEnum):
    """Lifecycle status of a managed job.

    ::

        PENDING ──▶ SUBMITTED ──▶ PROCESSING ──▶ COMPLETED
           │            │           │  ▲
           │            │           └──┘ (retry re-entry)
           ▼            ▼           ▼
        CANCELLED / FAILED (from any non-terminal status)
    """

    PENDING = "pending"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """``True`` for statuses from which no further transition occurs."""
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class ErrorCategory(StrEnum):
    """Failure taxonomy used for every routing decision."""

    NETWORK = "network"
    QUOTA = "quota"
    AUTHENTICATION = "authentication"
    AUDIO = "audio"
    CONFIGURATION = "configuration"
    SERVICE = "service"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class RetryStrategy(StrEnum):
    """How the delay between attempts grows."""

    NONE = "none"
    IMMEDIATE = "immediate"
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


# ---------------------------------------------------------------------------
# Requests and jobs
# ---------------------------------------------------------------------------


class TranscriptionRequest(BaseModel):
    """What the caller wants transcribed.

    Attributes:
        audio_url: Location of the audio the remote service should fetch.
        language: BCP-47 style locale (``"en-US"``).
        diarization: Ask the service to separate speakers.
        word_timestamps: Ask the service for word-level timings.
        max_speakers: Upper bound on distinct speakers, if known.
        display_name: Label shown in the remote service's job listing.
        expected_duration_s: Expected processing time, used for progress
            interpolation when known.
        metadata: Free-form caller data carried through unchanged.
    """

    model_config = ConfigDict(frozen=True)

    audio_url: str = Field(..., min_length=1)
    language: str = Field(default="en-US", min_length=2)
    diarization: bool = True
    word_timestamps: bool = True
    max_speakers: int | None = Field(default=None, ge=1)
    display_name: str | None = None
    expected_duration_s: float | None = Field(default=None, gt=0)
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("audio_url", mode="before")
    @classmethod
    def _strip_url(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("audio_url must not be blank")
        return v


class StatusEntry(BaseModel):
    """One append-only entry in a job's status history."""

    model_config = ConfigDict(frozen=True)

    status: JobStatus
    timestamp: datetime
    note: str = ""


class JobError(BaseModel):
    """The user-visible failure attached to a failed job.

    Attributes:
        category: Failure category from the classifier.
        message: Human-readable message.
        retryable: Whether trying again could still succeed.
        user_action: Concrete suggested action, if any.
        status_code: HTTP-like status code, if one was involved.
        service_code: Service error code, if one was involved.
    """

    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    message: str
    retryable: bool
    user_action: str | None = None
    status_code: int | None = None
    service_code: str | None = None


class ManagedJob(BaseModel):
    """Immutable snapshot of one scheduled unit of work.

    Use the functions in :mod:`transcribeflow.orchestrator.transitions` to
    derive a new snapshot; never call ``model_copy`` on a job directly.

    Attributes:
        job_id: Locally generated unique id.
        priority: Scheduling tier.
        request: The original transcription request.
        config: Caller-owned configuration blob, opaque to the scheduler.
        status: Current lifecycle status (always the last history entry).
        history: Ordered, append-only status history.
        queued_at: When the job (last) entered the queue.
        started_at: When the job last took an active slot.
        completed_at: When the job reached a terminal status.
        queue_wait_s: Seconds spent queued before the first start.
        external_job_id: Remote service id, set after submission.
        retry_count: Job-level retries performed so far.
        last_retry_reason: Message of the failure that caused the last retry.
        result: Normalised output; set once on completion.
        error: User-visible failure; set once on failure.
        recovered_from: Id of the failed job this job was recreated from.
        recovery_attempts: Recovery resubmissions that led to this job,
            carried from one recreated job to the next.
        retry_at: When a scheduled job-level retry becomes due; ``None``
            unless the job is waiting for one.
    """

    model_config = ConfigDict(frozen=True)

    job_id: str
    priority: JobPriority = JobPriority.NORMAL
    request: TranscriptionRequest
    config: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    history: tuple[StatusEntry, ...] = ()
    queued_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    queue_wait_s: float | None = None
    external_job_id: str | None = None
    retry_count: int = Field(default=0, ge=0)
    last_retry_reason: str | None = None
    result: TranscriptionResult | None = None
    error: JobError | None = None
    recovered_from: str | None = None
    recovery_attempts: int = Field(default=0, ge=0)
    retry_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_s(self) -> float | None:
        """Seconds between the last start and completion, when both are known."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorClassification(BaseModel):
    """Derived description of a failure.  Computed fresh per error.

    Attributes:
        category: Failure category.
        retry_strategy: Default backoff shape for this category.
        retryable: Whether another attempt may succeed.
        severity: 1 (cosmetic) to 5 (critical).
        requires_user_intervention: ``True`` when non-retryable or when the
            category is authentication, audio, or configuration.
        user_action: Human-readable suggested action.
        technical_details: ``"Error: ..., HTTP Status: ..., Service Code: ..."``.
        estimated_recovery_s: Expected seconds until the condition clears,
            ``None`` when a human has to act.
        message: The original error message.
        status_code: Extracted HTTP-like status code, if any.
        service_code: Extracted service error code, if any.
        retry_after: Server-suggested wait, if any.
        classified_at: When the classification was computed.
    """

    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    retry_strategy: RetryStrategy
    retryable: bool
    severity: int = Field(..., ge=1, le=5)
    requires_user_intervention: bool
    user_action: str
    technical_details: str
    estimated_recovery_s: float | None = None
    message: str
    status_code: int | None = None
    service_code: str | None = None
    retry_after: float | None = None
    classified_at: datetime

    def to_job_error(self) -> JobError:
        """Project this classification onto the user-visible failure shape."""
        return JobError(
            category=self.category,
            message=self.message,
            retryable=self.retryable,
            user_action=self.user_action,
            status_code=self.status_code,
            service_code=self.service_code,
        )


class FailedJobRecord(BaseModel):
    """Persisted view of a job that failed and is parked for recovery.

    Attributes:
        job: Snapshot of the job at failure time.
        error_message: Message of the failure.
        classification: Classifier output for the failure.
        attempts: Recovery attempts made so far.
        failed_at: When the job first failed (kept across attempts).
        retry_after: Earliest time the recovery sweep may re-attempt it.
    """

    model_config = ConfigDict(frozen=True)

    job: ManagedJob
    error_message: str
    classification: ErrorClassification
    attempts: int = Field(default=1, ge=0)
    failed_at: datetime
    retry_after: datetime | None = None

    @property
    def job_id(self) -> str:
        return self.job.job_id


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class WordTiming(BaseModel):
    """One recognised word with its offsets in seconds."""

    model_config = ConfigDict(frozen=True)

    word: str
    start_s: float = Field(..., ge=0)
    end_s: float = Field(..., ge=0)
    confidence: float | None = None


class TranscriptSegment(BaseModel):
    """One recognised phrase.

    Attributes:
        text: Display text of the best hypothesis.
        start_s: Offset of the phrase start in seconds.
        end_s: Offset of the phrase end in seconds.
        confidence: Recogniser confidence in ``[0, 1]``.
        speaker_id: ``"Speaker N"`` when diarization produced a speaker.
        words: Word-level timings when requested and present.
    """

    model_config = ConfigDict(frozen=True)

    text: str
    start_s: float = Field(..., ge=0)
    end_s: float = Field(..., ge=0)
    confidence: float = Field(..., ge=0, le=1)
    speaker_id: str | None = None
    words: tuple[WordTiming, ...] = ()


class SpeakerStats(BaseModel):
    """Aggregated statistics for one diarized speaker."""

    model_config = ConfigDict(frozen=True)

    speaker_id: str
    total_speaking_time_s: float = Field(..., ge=0)
    mean_confidence: float = Field(..., ge=0, le=1)
    segment_count: int = Field(..., ge=0)


class TranscriptionResult(BaseModel):
    """Normalised output of a completed job.

    Attributes:
        job_id: Local job id.
        external_job_id: Remote service id.
        text: All included segment texts joined with single spaces.
        confidence: Mean confidence of included segments (``0.0`` if none).
        duration_s: Audio duration reported by the service.
        language: Locale the job was run with.
        audio_format: File extension of the source audio, or ``"unknown"``.
        segments: Included segments in service order.
        speakers: Per-speaker aggregates, empty without diarization data.
        collected_at: When the result was collected.
    """

    model_config = ConfigDict(frozen=True)

    job_id: str
    external_job_id: str
    text: str
    confidence: float = Field(..., ge=0, le=1)
    duration_s: float = Field(..., ge=0)
    language: str
    audio_format: str = "unknown"
    segments: tuple[TranscriptSegment, ...] = ()
    speakers: tuple[SpeakerStats, ...] = ()
    collected_at: datetime


ManagedJob.model_rebuild()
FailedJobRecord.model_rebuild()
