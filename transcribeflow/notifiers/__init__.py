"""Notification delivery for failures that need a human."""

from transcribeflow.notifiers.base import Notification, NotificationKind, NotificationSink
from transcribeflow.notifiers.notifier import (
    LoggingNotificationSink,
    WebhookNotificationSink,
    format_notification,
)

__all__ = [
    "Notification",
    "NotificationKind",
    "NotificationSink",
    "LoggingNotificationSink",
    "WebhookNotificationSink",
    "format_notification",
]
