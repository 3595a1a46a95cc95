"""Collaborator contracts for the remote speech service.

The orchestration core never speaks HTTP itself.  It drives the service
through four small interfaces:

* :class:`SubmissionGateway`: hand a request over, get an external job id.
* :class:`StatusQuery`: ask how a remote job is doing.
* :class:`ResultFetch`: list and download a finished job's artifacts.
* :class:`Validator`: cheap request checks before anything is queued.

Each method performs exactly **one** remote call and never retries; retry,
backoff, rate limiting and circuit breaking belong to the core.  Errors are
raised as :class:`~transcribeflow.core.exceptions.GatewayError` (or any
exception the classifier understands).

Design decisions
----------------
* **Abstract base classes** rather than ``Protocol``: subclasses share the
  async context-manager lifecycle and test fakes fail loudly when they miss a
  method.
* Credentials are a constructor concern of the concrete client, not a
  per-call argument.

Typical usage::

    class FakeGateway(SubmissionGateway):
        async def submit(self, request: TranscriptionRequest) -> SubmissionReceipt:
            return SubmissionReceipt(external_job_id="remote-1")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import StrEnum
from types import TracebackType

from pydantic import BaseModel, ConfigDict, Field

from transcribeflow.core.models import JobStatus, TranscriptionRequest

__all__ = [
    # Data
    "RemoteStatus",
    "SubmissionReceipt",
    "StatusReport",
    "ResultFile",
    "ValidationReport",
    # Contracts
    "SubmissionGateway",
    "StatusQuery",
    "ResultFetch",
    "Validator",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


class RemoteStatus(StrEnum):
    """Job status as reported by the speech service."""

    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    def to_job_status(self) -> JobStatus:
        return _REMOTE_TO_LOCAL[self]

    @property
    def is_terminal(self) -> bool:
        return self in (RemoteStatus.SUCCEEDED, RemoteStatus.FAILED, RemoteStatus.CANCELLED)


_REMOTE_TO_LOCAL: dict[RemoteStatus, JobStatus] = {
    RemoteStatus.NOT_STARTED: JobStatus.SUBMITTED,
    RemoteStatus.RUNNING: JobStatus.PROCESSING,
    RemoteStatus.SUCCEEDED: JobStatus.COMPLETED,
    RemoteStatus.FAILED: JobStatus.FAILED,
    RemoteStatus.CANCELLED: JobStatus.CANCELLED,
}


class SubmissionReceipt(BaseModel):
    """What the service returns when it accepts a job."""

    model_config = ConfigDict(frozen=True)

    external_job_id: str = Field(..., min_length=1)
    location: str | None = None


class StatusReport(BaseModel):
    """One status observation of a remote job.

    Attributes:
        external_job_id: The remote job id.
        status: Remote status.
        created_at: When the service created the job, if reported.
        progress: Percentage reported by the service, if it reports one.
        error_code: Service error code for failed jobs.
        error_message: Service error message for failed jobs.
    """

    model_config = ConfigDict(frozen=True)

    external_job_id: str
    status: RemoteStatus
    created_at: datetime | None = None
    progress: float | None = Field(default=None, ge=0, le=100)
    error_code: str | None = None
    error_message: str | None = None


class ResultFile(BaseModel):
    """One artifact of a finished job."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: str
    size_bytes: int | None = Field(default=None, ge=0)
    content_url: str | None = None


class ValidationReport(BaseModel):
    """Outcome of :meth:`Validator.validate`."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class _Lifecycle:
    """Async context-manager lifecycle shared by every collaborator."""

    async def close(self) -> None:  # noqa: B027
        """Release held resources.  No-op by default."""

    async def __aenter__(self) -> _Lifecycle:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


class SubmissionGateway(_Lifecycle, ABC):
    """Submits transcription requests to the remote service."""

    @abstractmethod
    async def submit(self, request: TranscriptionRequest) -> SubmissionReceipt:
        """Create a remote job for *request*.  One network call, no retries."""


class StatusQuery(_Lifecycle, ABC):
    """Queries the status of remote jobs."""

    @abstractmethod
    async def query_status(self, external_job_id: str) -> StatusReport:
        """Return the current status of *external_job_id*."""


class ResultFetch(_Lifecycle, ABC):
    """Lists and downloads artifacts of finished remote jobs."""

    @abstractmethod
    async def list_result_files(self, external_job_id: str) -> list[ResultFile]:
        """Return every artifact of *external_job_id*."""

    @abstractmethod
    async def download_file(self, file: ResultFile) -> bytes:
        """Return the raw bytes of *file*."""


class Validator(ABC):
    """Lightweight request checks consulted before a job is queued."""

    @abstractmethod
    async def validate(self, request: TranscriptionRequest) -> ValidationReport:
        """Return whether *request* may be queued, with reasons if not."""
