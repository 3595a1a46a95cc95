"""Structured log event name constants for Transcribeflow.

Every key transition in the scheduler and the resilience stack emits a log
record with an ``event`` field (passed via ``extra={"event": events.X}``).
In ``LOG_FORMAT=json`` mode the value surfaces under the ``extra`` key of each
emitted JSON object, so ``grep '"event": "JOB_RETRIED"'`` finds every retry.

Usage example::

    import logging
    from transcribeflow.core import events

    logger = logging.getLogger(__name__)

    logger.info("Job queued", extra={"event": events.JOB_QUEUED})
"""

from __future__ import annotations

__all__ = [
    # Job lifecycle
    "JOB_QUEUED",
    "JOB_REJECTED",
    "JOB_STARTED",
    "JOB_SUBMITTED",
    "JOB_PROGRESS",
    "JOB_COMPLETED",
    "JOB_FAILED",
    "JOB_CANCELLED",
    "JOB_RETRIED",
    "JOB_DISCARDED",
    "QUEUE_FULL",
    "MANAGER_STATS",
    # Tracking
    "TRACKING_STARTED",
    "TRACKING_STOPPED",
    "TRACKING_POLL_ERROR",
    # Results
    "RESULT_COLLECTED",
    "RESULT_ERROR",
    # Resilience
    "RETRY_ATTEMPT_FAILED",
    "RETRY_EXHAUSTED",
    "CIRCUIT_OPEN",
    "CIRCUIT_HALF_OPEN",
    "CIRCUIT_CLOSED",
    "CIRCUIT_REJECTED",
    "RATE_LIMITED",
    "RATE_QUEUED",
    "RATE_ADAPTED",
    # Recovery
    "RECOVERY_STARTED",
    "RECOVERY_SUCCESS",
    "RECOVERY_FAILED",
    "RECOVERY_SWEEP",
    "USER_ACTION_REQUIRED",
    "NOTIFY_ERROR",
    # Persistence
    "STORE_ERROR",
]

# ---------------------------------------------------------------------------
# Job lifecycle
# ---------------------------------------------------------------------------

#: A validated request entered the priority queue.
JOB_QUEUED: str = "JOB_QUEUED"

#: A request was refused at submission (queue full or validation failure).
JOB_REJECTED: str = "JOB_REJECTED"

#: A job was dequeued into an active concurrency slot.
JOB_STARTED: str = "JOB_STARTED"

#: The submission gateway accepted a job and returned an external id.
JOB_SUBMITTED: str = "JOB_SUBMITTED"

#: Progress tracking observed a new progress value for a job.
JOB_PROGRESS: str = "JOB_PROGRESS"

#: A job finished and its result was collected.
JOB_COMPLETED: str = "JOB_COMPLETED"

#: A job moved to the terminal failed state.
JOB_FAILED: str = "JOB_FAILED"

#: A job was cancelled by the caller.
JOB_CANCELLED: str = "JOB_CANCELLED"

#: A failed job was scheduled for another attempt.
JOB_RETRIED: str = "JOB_RETRIED"

#: A late response arrived for a job that is no longer active; ignored.
JOB_DISCARDED: str = "JOB_DISCARDED"

#: ``submit()`` was refused because the bounded queue is at capacity.
QUEUE_FULL: str = "QUEUE_FULL"

#: Periodic statistics snapshot emitted by the scheduler loop.
MANAGER_STATS: str = "MANAGER_STATS"

# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------

#: The progress tracker began polling a job.
TRACKING_STARTED: str = "TRACKING_STARTED"

#: The progress tracker stopped polling (terminal state or safety valve).
TRACKING_STOPPED: str = "TRACKING_STOPPED"

#: A status poll failed with a transient error; polling continues.
TRACKING_POLL_ERROR: str = "TRACKING_POLL_ERROR"

# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

#: A result document was downloaded and normalised.
RESULT_COLLECTED: str = "RESULT_COLLECTED"

#: Result collection failed.
RESULT_ERROR: str = "RESULT_ERROR"

# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------

#: One attempt inside the retry coordinator failed.
RETRY_ATTEMPT_FAILED: str = "RETRY_ATTEMPT_FAILED"

#: The retry coordinator gave up after its last attempt.
RETRY_EXHAUSTED: str = "RETRY_EXHAUSTED"

#: A circuit breaker tripped to OPEN.
CIRCUIT_OPEN: str = "CIRCUIT_OPEN"

#: A circuit breaker began admitting probe calls.
CIRCUIT_HALF_OPEN: str = "CIRCUIT_HALF_OPEN"

#: A circuit breaker closed after enough probe successes.
CIRCUIT_CLOSED: str = "CIRCUIT_CLOSED"

#: A call was rejected by an open circuit breaker.
CIRCUIT_REJECTED: str = "CIRCUIT_REJECTED"

#: Admission control refused a request.
RATE_LIMITED: str = "RATE_LIMITED"

#: Admission control placed a request in its wait queue.
RATE_QUEUED: str = "RATE_QUEUED"

#: Reported quota usage changed the adaptive rate multiplier.
RATE_ADAPTED: str = "RATE_ADAPTED"

# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

#: The recovery orchestrator started handling a failed job.
RECOVERY_STARTED: str = "RECOVERY_STARTED"

#: A recovery attempt succeeded.
RECOVERY_SUCCESS: str = "RECOVERY_SUCCESS"

#: A recovery attempt failed or the job was given up.
RECOVERY_FAILED: str = "RECOVERY_FAILED"

#: The background recovery sweep ran.
RECOVERY_SWEEP: str = "RECOVERY_SWEEP"

#: A failure needs a human to fix configuration, credentials, or input.
USER_ACTION_REQUIRED: str = "USER_ACTION_REQUIRED"

#: A notification sink raised; the notification was dropped.
NOTIFY_ERROR: str = "NOTIFY_ERROR"

# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

#: A persistence store call failed; orchestration continues.
STORE_ERROR: str = "STORE_ERROR"
