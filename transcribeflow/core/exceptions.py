"""Transcribeflow exception taxonomy.

Every custom exception inherits from :class:`TranscribeFlowError`.  Exceptions
are organised by architectural layer so callers can catch at the right
granularity:

    Layer hierarchy
    ---------------
    TranscribeFlowError
    ├── ConfigError
    ├── StorageError
    ├── GatewayError
    │   ├── GatewayRateLimitError
    │   ├── GatewayTimeoutError
    │   └── GatewayConnectionError
    ├── SchedulerError
    │   ├── QueueFullError
    │   ├── JobNotFoundError
    │   ├── InvalidTransitionError
    │   ├── RemoteJobFailedError
    │   └── TrackingAbandonedError
    ├── CircuitOpenError
    ├── RateLimitedError
    ├── AttemptTimeoutError
    ├── OperationCancelledError
    └── ResultCollectionError

Tagged errors
-------------
The resilience layer never guesses about an exception it raised itself.  Each
class above may carry three tags that the error classifier reads before it
falls back to message matching:

``status_code``
    HTTP-like status code returned by the remote service, if any.
``service_code``
    Service-specific error code (``"QuotaExceeded"``, ``"Unauthorized"``, ...).
``retry_after``
    Server-suggested wait in seconds, if any.

Usage:

    from transcribeflow.core.exceptions import GatewayError

    raise GatewayError("speech", "Submission rejected", status_code=400) from exc
"""

from __future__ import annotations

import logging
from enum import StrEnum

__all__ = [
    "TranscribeFlowError",
    # Config
    "ConfigError",
    # Storage
    "StorageError",
    # Gateway
    "GatewayError",
    "GatewayRateLimitError",
    "GatewayTimeoutError",
    "GatewayConnectionError",
    # Scheduler
    "SchedulerError",
    "QueueFullError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "RemoteJobFailedError",
    "TrackingAbandonedError",
    # Resilience
    "CircuitOpenError",
    "RateLimitedError",
    "AttemptTimeoutError",
    "OperationCancelledError",
    # Results
    "ResultErrorKind",
    "ResultCollectionError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class TranscribeFlowError(Exception):
    """Root exception for all Transcribeflow errors.

    Attributes:
        status_code: Optional HTTP-like status code tag.
        service_code: Optional service-specific error code tag.
        retry_after: Optional server-suggested wait in seconds.
    """

    status_code: int | None = None
    service_code: str | None = None
    retry_after: float | None = None


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(TranscribeFlowError):
    """Raised when the application configuration is invalid or incomplete.

    Examples:
        - A required environment variable is missing.
        - The minimum poll interval exceeds the maximum.
    """


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(TranscribeFlowError):
    """Raised when a database read or write fails unexpectedly."""


# ---------------------------------------------------------------------------
# Gateway layer
# ---------------------------------------------------------------------------


class GatewayError(TranscribeFlowError):
    """Raised when a call to the remote speech service fails.

    Args:
        service: Short name of the remote service (used as a log prefix).
        message: Human-readable description of the failure.
        status_code: HTTP status code of the failed response, if any.
        service_code: Error code from the response body, if any.
        retry_after: Server-suggested wait in seconds, if any.

    Attributes:
        service: The name of the remote service.
    """

    def __init__(
        self,
        service: str,
        message: str,
        *,
        status_code: int | None = None,
        service_code: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.service = service
        self.status_code = status_code
        self.service_code = service_code
        self.retry_after = retry_after
        super().__init__(f"[{service}] {message}")


class GatewayRateLimitError(GatewayError):
    """Raised when the remote service answers HTTP 429.

    Args:
        service: Short name of the remote service.
        retry_after: Seconds to wait before retrying (from ``Retry-After``),
            or ``None`` when the response carried no hint.
    """

    def __init__(self, service: str, retry_after: float | None = None) -> None:
        msg = "Rate limited"
        if retry_after is not None:
            msg += f", retry after {retry_after:.0f}s"
        super().__init__(
            service,
            msg,
            status_code=429,
            service_code="RateLimitExceeded",
            retry_after=retry_after,
        )


class GatewayTimeoutError(GatewayError):
    """Raised when a request to the remote service times out client-side."""

    def __init__(self, service: str, message: str = "Request timed out") -> None:
        super().__init__(service, message, service_code="RequestTimeout")


class GatewayConnectionError(GatewayError):
    """Raised when the remote service cannot be reached at all."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(service, f"Network connection failed: {message}")


# ---------------------------------------------------------------------------
# Scheduler layer
# ---------------------------------------------------------------------------


class SchedulerError(TranscribeFlowError):
    """Raised by the job scheduler for unexpected control-flow failures."""


class QueueFullError(SchedulerError):
    """Raised (or returned) when the bounded job queue is at capacity.

    Args:
        max_size: The configured queue capacity.
    """

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        super().__init__(f"Job queue is full (max size {max_size})")


class JobNotFoundError(SchedulerError):
    """Raised when a job id is not known to the scheduler."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id!r} not found")


class InvalidTransitionError(SchedulerError):
    """Raised when a job status transition violates the lifecycle.

    Args:
        job_id: The job whose transition was rejected.
        current: The status the job is currently in.
        target: The status the caller attempted to move to.
    """

    def __init__(self, job_id: str, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id!r}: illegal transition {current} -> {target}")


class RemoteJobFailedError(SchedulerError):
    """Raised when the remote service reports a job as failed.

    Args:
        external_job_id: The remote job identifier.
        message: Failure detail reported by the service.
        service_code: Service error code reported alongside the failure.
    """

    def __init__(
        self,
        external_job_id: str,
        message: str,
        *,
        service_code: str | None = None,
    ) -> None:
        self.external_job_id = external_job_id
        self.service_code = service_code
        super().__init__(f"Remote job {external_job_id} failed: {message}")


class TrackingAbandonedError(SchedulerError):
    """Raised when monitoring stopped at a safety valve before a terminal state."""

    service_code = "TrackingAbandoned"

    def __init__(self, job_id: str, reason: str) -> None:
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Monitoring of job {job_id!r} abandoned ({reason})")


# ---------------------------------------------------------------------------
# Resilience layer
# ---------------------------------------------------------------------------


class CircuitOpenError(TranscribeFlowError):
    """Raised when a call is rejected because its circuit breaker is open.

    Args:
        target: Name of the protected target.
        state: Breaker state at rejection time (``"open"`` or ``"half_open"``).
        retry_after: Seconds until the breaker will admit a probe call.
    """

    service_code = "CircuitOpen"

    def __init__(self, target: str, state: str, retry_after: float | None = None) -> None:
        self.target = target
        self.state = state
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker for {target} is {state}. "
            "Service calls are temporarily blocked to prevent cascading failures."
        )


class RateLimitedError(TranscribeFlowError):
    """Raised when admission control refuses or times out a request.

    Args:
        message: Reason (``"Queue is full"``, ``"Queue timeout"``, ...).
        retry_after: Suggested wait in seconds before trying again.
    """

    service_code = "RateLimitExceeded"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded: {message}")


class AttemptTimeoutError(TranscribeFlowError):
    """Raised when a single attempt exceeds its per-attempt timeout."""

    service_code = "OperationTimeout"

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Attempt timed out after {timeout:.1f}s")


class OperationCancelledError(TranscribeFlowError):
    """Raised when a cooperative cancellation signal aborts an operation."""


# ---------------------------------------------------------------------------
# Result layer
# ---------------------------------------------------------------------------


class ResultErrorKind(StrEnum):
    """Reasons a finished job's output could not be collected."""

    INVALID_JOB_ID = "invalid_job_id"
    JOB_NOT_COMPLETED = "job_not_completed"
    RESULTS_NOT_FOUND = "results_not_found"
    CORRUPTED_DATA = "corrupted_data"
    PARSE_ERROR = "parse_error"


#: Service codes attached to result errors so the classifier can place them.
_RESULT_SERVICE_CODES: dict[ResultErrorKind, str] = {
    ResultErrorKind.INVALID_JOB_ID: "InvalidParameter",
    ResultErrorKind.JOB_NOT_COMPLETED: "InvalidRequest",
    ResultErrorKind.RESULTS_NOT_FOUND: "ResultNotFound",
    ResultErrorKind.CORRUPTED_DATA: "CorruptedResult",
    ResultErrorKind.PARSE_ERROR: "UnparseableResult",
}


class ResultCollectionError(TranscribeFlowError):
    """Raised when the result of a finished job cannot be collected.

    Args:
        kind: The :class:`ResultErrorKind` describing the failure.
        message: Human-readable detail.
        job_id: The job whose result was being collected.
    """

    def __init__(self, kind: ResultErrorKind, message: str, job_id: str | None = None) -> None:
        self.kind = kind
        self.job_id = job_id
        self.service_code = _RESULT_SERVICE_CODES[kind]
        super().__init__(message)
