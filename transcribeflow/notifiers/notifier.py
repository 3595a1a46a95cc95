"""Concrete notification sinks.

* :class:`LoggingNotificationSink` writes each notification to the log.  It
  is the default when no webhook is configured.
* :class:`WebhookNotificationSink` POSTs the notification as JSON to an
  HTTP endpoint (chat-ops bridges, incident tools).  Delivery failures are
  logged at ``ERROR`` and swallowed so a dead webhook never blocks recovery.

Typical usage::

    async with WebhookNotificationSink("https://hooks.example.com/t") as sink:
        recovery = RecoveryOrchestrator(config, notifier=sink)
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Final

import httpx

from transcribeflow.core import events
from transcribeflow.notifiers.base import Notification, NotificationSink

__all__ = [
    "LoggingNotificationSink",
    "WebhookNotificationSink",
    "format_notification",
]

logger = logging.getLogger(__name__)

#: Severity from which the logging sink logs at WARNING instead of INFO.
_WARNING_SEVERITY: Final[int] = 4

_DEFAULT_TIMEOUT: Final[float] = 10.0


def format_notification(notification: Notification) -> str:
    """Render *notification* as one plain-text line."""
    category = f" [{notification.category}]" if notification.category else ""
    return (
        f"{notification.title}{category} (severity {notification.severity}): "
        f"{notification.message}"
    )


class LoggingNotificationSink(NotificationSink):
    """Log notifications instead of sending them anywhere."""

    async def notify(self, notification: Notification) -> None:
        level = logging.WARNING if notification.severity >= _WARNING_SEVERITY else logging.INFO
        logger.log(
            level,
            "%s",
            format_notification(notification),
            extra={"event": notification.kind.value.upper()},
        )


class WebhookNotificationSink(NotificationSink):
    """POST notifications as JSON to *url*.

    Args:
        url: Webhook endpoint.
        headers: Extra headers, e.g. an ``Authorization`` token.
        timeout: Request timeout in seconds.
        transport: Optional transport, used by tests.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("url must not be empty")
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self.sent = 0
        self.failed = 0

    async def __aenter__(self) -> WebhookNotificationSink:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def notify(self, notification: Notification) -> None:
        payload = {
            **notification.model_dump(mode="json"),
            "text": format_notification(notification),
        }
        client = self._ensure_client()
        try:
            response = await client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self.failed += 1
            logger.error(
                "Webhook delivery for job %s failed: %s",
                notification.job_id,
                exc,
                extra={"event": events.NOTIFY_ERROR},
            )
            return
        self.sent += 1
        logger.debug("Webhook delivered %s for job %s", notification.kind, notification.job_id)

    async def close(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Content-Type": "application/json", **self._headers},
                transport=self._transport,
            )
        return self._http
