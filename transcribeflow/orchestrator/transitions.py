"""Immutable job state transitions.

Every change to a :class:`~transcribeflow.core.models.ManagedJob` goes
through a function in this module.  Each returns a **new** snapshot with one
more :class:`~transcribeflow.core.models.StatusEntry` in its history, and
each refuses to touch a job that is already terminal, so the lifecycle
invariants live in one place:

* ``job.status`` always equals the last history entry.
* History is append-only and ends at the first terminal entry.
* ``result`` and ``error`` are set at most once, by :func:`complete` and
  :func:`fail` respectively.

Allowed transitions::

    pending     -> submitted | failed | cancelled
    submitted   -> processing | failed | cancelled
    processing  -> processing | completed | failed | cancelled

``processing -> processing`` is the retry re-entry: scheduling a retry,
resubmitting, and the service accepting the resubmission all append a
``processing`` entry with a note.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Final

from transcribeflow.core.exceptions import InvalidTransitionError
from transcribeflow.core.models import (
    JobError,
    JobPriority,
    JobStatus,
    ManagedJob,
    StatusEntry,
    TranscriptionRequest,
    TranscriptionResult,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "new_job",
    "transition",
    "mark_dispatched",
    "mark_accepted",
    "schedule_retry",
    "complete",
    "fail",
    "cancel",
]

ALLOWED_TRANSITIONS: Final[dict[JobStatus, frozenset[JobStatus]]] = {
    JobStatus.PENDING: frozenset({JobStatus.SUBMITTED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.SUBMITTED: frozenset(
        {JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def new_job(
    request: TranscriptionRequest,
    priority: JobPriority,
    at: datetime,
    *,
    config: dict[str, Any] | None = None,
    job_id: str | None = None,
    recovered_from: str | None = None,
    recovery_attempts: int = 0,
) -> ManagedJob:
    """Create a pending job with a one-entry history."""
    note = "Job queued" if recovered_from is None else f"Recovered from job {recovered_from}"
    return ManagedJob(
        job_id=job_id or uuid.uuid4().hex,
        priority=priority,
        request=request,
        config=config or {},
        status=JobStatus.PENDING,
        history=(StatusEntry(status=JobStatus.PENDING, timestamp=at, note=note),),
        queued_at=at,
        recovered_from=recovered_from,
        recovery_attempts=recovery_attempts,
    )


def transition(
    job: ManagedJob,
    status: JobStatus,
    at: datetime,
    note: str = "",
    **updates: Any,
) -> ManagedJob:
    """Append *status* to *job*'s history and apply *updates*.

    Raises:
        InvalidTransitionError: *job* is terminal or the move is not allowed.
    """
    if status not in ALLOWED_TRANSITIONS[job.status]:
        raise InvalidTransitionError(job.job_id, job.status.value, status.value)
    entry = StatusEntry(status=status, timestamp=at, note=note)
    return job.model_copy(update={**updates, "status": status, "history": (*job.history, entry)})


def mark_dispatched(job: ManagedJob, at: datetime) -> ManagedJob:
    """The scheduler took a slot for *job* and is handing it to the gateway."""
    queue_wait = job.queue_wait_s
    if queue_wait is None:
        queue_wait = max(0.0, (at - job.queued_at).total_seconds())
    if job.status is JobStatus.PENDING:
        return transition(
            job,
            JobStatus.SUBMITTED,
            at,
            "Submitting to speech service",
            started_at=at,
            queue_wait_s=queue_wait,
        )
    if job.external_job_id is not None:
        note = f"Resuming tracking of {job.external_job_id}"
    else:
        note = f"Resubmitting (retry {job.retry_count})"
    return transition(
        job,
        JobStatus.PROCESSING,
        at,
        note,
        started_at=at,
        queue_wait_s=queue_wait,
        retry_at=None,
    )


def mark_accepted(job: ManagedJob, external_job_id: str, at: datetime) -> ManagedJob:
    """The service accepted *job* under *external_job_id*."""
    return transition(
        job,
        JobStatus.PROCESSING,
        at,
        f"Accepted by speech service as {external_job_id}",
        external_job_id=external_job_id,
    )


def schedule_retry(
    job: ManagedJob, reason: str, at: datetime, due_at: datetime | None = None
) -> ManagedJob:
    """Retry re-entry: bump ``retry_count`` and drop the failed remote job.

    The retry resubmits the request, so the old ``external_job_id`` is
    cleared.  *due_at* (default *at*) is kept as ``retry_at`` so a restored
    snapshot still knows it is waiting.
    """
    count = job.retry_count + 1
    return transition(
        job,
        JobStatus.PROCESSING,
        at,
        f"Retry {count} scheduled: {reason}",
        retry_count=count,
        last_retry_reason=reason,
        started_at=None,
        external_job_id=None,
        retry_at=due_at or at,
    )


def complete(job: ManagedJob, result: TranscriptionResult, at: datetime) -> ManagedJob:
    return transition(
        job, JobStatus.COMPLETED, at, "Transcription completed", result=result, completed_at=at
    )


def fail(job: ManagedJob, error: JobError, at: datetime) -> ManagedJob:
    return transition(job, JobStatus.FAILED, at, error.message, error=error, completed_at=at)


def cancel(job: ManagedJob, at: datetime, note: str = "Cancelled by caller") -> ManagedJob:
    return transition(job, JobStatus.CANCELLED, at, note, completed_at=at)
