"""Unit tests for notification sinks.

Tests cover:
- ``format_notification`` with and without a category.
- ``LoggingNotificationSink`` level selection and event tagging.
- ``WebhookNotificationSink`` payload, headers, counters, swallowed delivery
  errors, and session lifecycle.
"""

from __future__ import annotations

import json
import logging

import httpx
import pytest

from transcribeflow.core import events
from transcribeflow.core.clock import utc_from_timestamp
from transcribeflow.core.models import ErrorCategory
from transcribeflow.notifiers import (
    LoggingNotificationSink,
    Notification,
    NotificationKind,
    WebhookNotificationSink,
    format_notification,
)

HOOK_URL = "https://hooks.example.com/transcribeflow"


def _notification(**overrides: object) -> Notification:
    values: dict[str, object] = {
        "kind": NotificationKind.JOB_FAILED,
        "job_id": "job-1",
        "title": "Job job-1 failed",
        "message": "Check the API key",
        "category": ErrorCategory.AUTHENTICATION,
        "severity": 4,
        "created_at": utc_from_timestamp(1_700_000_000.0),
    }
    values.update(overrides)
    return Notification.model_validate(values)


# ---------------------------------------------------------------------------
# Formatting and logging sink
# ---------------------------------------------------------------------------


class TestFormat:
    def test_with_category(self) -> None:
        assert format_notification(_notification()) == (
            "Job job-1 failed [authentication] (severity 4): Check the API key"
        )

    def test_without_category(self) -> None:
        text = format_notification(_notification(category=None, severity=2))
        assert text == "Job job-1 failed (severity 2): Check the API key"


class TestLoggingSink:
    @pytest.mark.asyncio
    async def test_severe_notifications_log_as_warning(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="transcribeflow.notifiers.notifier"):
            await LoggingNotificationSink().notify(_notification())

        [record] = caplog.records
        assert record.levelno == logging.WARNING
        assert record.event == "JOB_FAILED"  # type: ignore[attr-defined]
        assert "Check the API key" in record.getMessage()

    @pytest.mark.asyncio
    async def test_routine_notifications_log_as_info(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="transcribeflow.notifiers.notifier"):
            await LoggingNotificationSink().notify(
                _notification(kind=NotificationKind.RECOVERY_SUCCESS, severity=2)
            )
        assert [r.levelno for r in caplog.records] == [logging.INFO]


# ---------------------------------------------------------------------------
# Webhook sink
# ---------------------------------------------------------------------------


class TestWebhookSink:
    @pytest.mark.asyncio
    async def test_posts_json_payload(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        async with WebhookNotificationSink(
            HOOK_URL,
            headers={"Authorization": "Bearer t0ken"},
            transport=httpx.MockTransport(handler),
        ) as sink:
            await sink.notify(_notification())

        [request] = seen
        assert str(request.url) == HOOK_URL
        assert request.headers["Authorization"] == "Bearer t0ken"
        body = json.loads(request.content)
        assert body["kind"] == "job_failed"
        assert body["job_id"] == "job-1"
        assert body["category"] == "authentication"
        assert body["text"].startswith("Job job-1 failed")
        assert (sink.sent, sink.failed) == (1, 0)

    @pytest.mark.asyncio
    async def test_http_error_is_logged_not_raised(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        sink = WebhookNotificationSink(
            HOOK_URL, transport=httpx.MockTransport(lambda r: httpx.Response(500))
        )
        with caplog.at_level(logging.ERROR, logger="transcribeflow.notifiers.notifier"):
            await sink.notify(_notification())
        await sink.close()

        assert (sink.sent, sink.failed) == (0, 1)
        assert any(
            getattr(r, "event", None) == events.NOTIFY_ERROR for r in caplog.records
        )

    @pytest.mark.asyncio
    async def test_transport_error_is_swallowed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with WebhookNotificationSink(
            HOOK_URL, transport=httpx.MockTransport(handler)
        ) as sink:
            await sink.notify(_notification())
            await sink.notify(_notification(job_id="job-2"))

        assert sink.failed == 2

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        sink = WebhookNotificationSink(
            HOOK_URL, transport=httpx.MockTransport(lambda r: httpx.Response(200))
        )
        await sink.close()
        await sink.notify(_notification())
        await sink.close()
        await sink.close()
        assert sink.sent == 1

    def test_empty_url_rejected(self) -> None:
        with pytest.raises(ValueError):
            WebhookNotificationSink("")
