"""Core domain models, exceptions, logging configuration, and shared utilities.

:class:`~transcribeflow.core.settings.Settings` is imported from its own
module; it builds the component configs of the other sub-packages.
"""

from transcribeflow.core.exceptions import (
    ConfigError,
    GatewayError,
    QueueFullError,
    ResultCollectionError,
    SchedulerError,
    StorageError,
    TranscribeFlowError,
)
from transcribeflow.core.logging_config import JsonFormatter, configure_logging, job_context
from transcribeflow.core.models import (
    ErrorCategory,
    JobPriority,
    JobStatus,
    ManagedJob,
    TranscriptionRequest,
    TranscriptionResult,
)

__all__ = [
    # Logging
    "configure_logging",
    "job_context",
    "JsonFormatter",
    # Domain models
    "ErrorCategory",
    "JobPriority",
    "JobStatus",
    "ManagedJob",
    "TranscriptionRequest",
    "TranscriptionResult",
    # Exceptions
    "TranscribeFlowError",
    "ConfigError",
    "StorageError",
    "GatewayError",
    "SchedulerError",
    "QueueFullError",
    "ResultCollectionError",
]
