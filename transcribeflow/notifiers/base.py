"""Notification sink contract.

The recovery orchestrator reports failures that need attention through a
:class:`NotificationSink`.  Delivery is fire-and-forget: a sink that raises is
logged by the caller and never fails orchestration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from transcribeflow.core.models import ErrorCategory

__all__ = ["NotificationKind", "Notification", "NotificationSink"]


class NotificationKind(StrEnum):
    JOB_FAILED = "job_failed"
    RECOVERY_STARTED = "recovery_started"
    RECOVERY_SUCCESS = "recovery_success"
    RECOVERY_FAILED = "recovery_failed"
    USER_ACTION_REQUIRED = "user_action_required"


class Notification(BaseModel):
    """One event addressed to a human.

    Attributes:
        kind: What happened.
        job_id: The affected job.
        title: One-line summary.
        message: Detail, including the suggested action when there is one.
        category: Failure category, if the event is about a failure.
        severity: 1 (cosmetic) to 5 (critical).
        created_at: When the event was raised.
    """

    model_config = ConfigDict(frozen=True)

    kind: NotificationKind
    job_id: str
    title: str
    message: str
    category: ErrorCategory | None = None
    severity: int = Field(default=3, ge=1, le=5)
    created_at: datetime


class NotificationSink(ABC):
    """Receives :class:`Notification` objects."""

    @abstractmethod
    async def notify(self, notification: Notification) -> None:
        """Deliver *notification*.  May raise; callers isolate failures."""

    async def close(self) -> None:  # noqa: B027
        """Release held resources.  No-op by default."""
