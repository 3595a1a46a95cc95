"""Unit tests for configuration loading and logging setup.

Tests cover:
- ``Settings`` defaults, env overrides, CSV category parsing and validation.
- Builder methods producing the per-component config models.
- ``configure_logging`` argument validation and handler installation.
- ``JsonFormatter`` output shape and ``job_context`` correlation.
"""

from __future__ import annotations

import json
import logging
import sys

import pydantic
import pytest

from transcribeflow.core.logging_config import (
    JOB_ID_CTX,
    JobContextFilter,
    JsonFormatter,
    configure_logging,
    job_context,
)
from transcribeflow.core.models import ErrorCategory
from transcribeflow.core.settings import Settings

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettings:
    def test_defaults_load_without_env(self, clean_env: None) -> None:
        s = Settings()
        assert s.speech_endpoint == ""
        assert s.max_concurrent_jobs == 5
        assert s.max_queue_size == 50
        assert s.log_level == "INFO"
        assert s.log_format == "text"
        assert s.service_configured is False

    def test_service_configured_requires_both_fields(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("SPEECH_ENDPOINT", "https://speech.example.com/v3.1/")
        assert Settings().service_configured is False

        monkeypatch.setenv("SPEECH_API_KEY", "secret")
        s = Settings()
        assert s.service_configured is True
        assert s.speech_endpoint == "https://speech.example.com/v3.1"

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch, clean_env: None) -> None:
        monkeypatch.setenv("MAX_CONCURRENT_JOBS", "8")
        monkeypatch.setenv("AUTO_RETRY", "false")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("LOG_FORMAT", "JSON")

        s = Settings()

        assert s.max_concurrent_jobs == 8
        assert s.auto_retry is False
        assert s.log_level == "DEBUG"
        assert s.log_format == "json"

    def test_csv_categories(self, monkeypatch: pytest.MonkeyPatch, clean_env: None) -> None:
        monkeypatch.setenv("RETRYABLE_CATEGORIES", " network, QUOTA ,")
        assert Settings().retryable_categories == frozenset(
            {ErrorCategory.NETWORK, ErrorCategory.QUOTA}
        )

    def test_unknown_category_rejected(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("NOTIFY_CATEGORIES", "network,gremlins")
        with pytest.raises(pydantic.ValidationError, match="gremlins"):
            Settings()

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("speech_endpoint", "ftp://speech.example.com"),
            ("rate_limit_preset", "turbo"),
            ("log_level", "chatty"),
            ("log_format", "xml"),
            ("max_concurrent_jobs", 0),
        ],
    )
    def test_invalid_values(self, clean_env: None, field: str, value: object) -> None:
        with pytest.raises(pydantic.ValidationError):
            Settings(**{field: value})

    def test_base_above_max_rejected(self, clean_env: None) -> None:
        with pytest.raises(pydantic.ValidationError, match="poll_interval_base_s"):
            Settings(poll_interval_base_s=90.0, poll_interval_max_s=60.0)
        with pytest.raises(pydantic.ValidationError, match="retry_base_delay_s"):
            Settings(retry_base_delay_s=40.0, retry_max_delay_s=30.0)


class TestBuilders:
    def test_scheduler_config(self, clean_env: None) -> None:
        config = Settings(max_job_retries=1, job_retention_s=60.0).scheduler_config()
        assert config.max_retries == 1
        assert config.retention_s == 60.0
        assert config.stats_path is None

    def test_tracker_and_collector_config(self, clean_env: None) -> None:
        s = Settings(adaptive_polling=False, min_segment_confidence=0.7)
        assert s.tracker_config().adaptive is False
        assert s.collector_config().min_confidence == 0.7

    def test_retry_policy(self, clean_env: None) -> None:
        policy = Settings(retry_max_attempts=5, retry_jitter=0.0).retry_policy()
        assert policy.max_attempts == 5
        assert policy.jitter == 0.0
        assert ErrorCategory.NETWORK in policy.retryable_categories

    def test_breaker_config(self, clean_env: None) -> None:
        config = Settings(breaker_minimum_requests=2).circuit_breaker_config()
        assert config.minimum_requests == 2
        assert ErrorCategory.SERVICE in config.trigger_categories

    def test_rate_limits_from_preset_with_overrides(self, clean_env: None) -> None:
        config = Settings(
            rate_limit_preset="long_media", requests_per_minute=4, rate_queue_enabled=False
        ).rate_limiter_config()
        assert config.requests_per_minute == 4
        assert config.requests_per_hour == 500
        assert config.max_concurrent == 3
        assert config.enable_queuing is False

    def test_rate_limits_default_preset(self, clean_env: None) -> None:
        config = Settings().rate_limiter_config()
        assert (config.requests_per_minute, config.max_concurrent) == (20, 5)

    def test_recovery_config(self, clean_env: None) -> None:
        config = Settings(notify_enabled=False, recovery_delay_s=5.0).recovery_config()
        assert config.recovery_delay_s == 5.0
        assert config.notifications.enabled is False


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_rejects_unknown_level(self) -> None:
        with pytest.raises(ValueError, match="LOG_LEVEL"):
            configure_logging(level="LOUD", force=True)

    def test_rejects_unknown_format(self) -> None:
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            configure_logging(fmt="yaml", force=True)

    def test_installs_one_filtered_handler(self) -> None:
        configure_logging(level="WARNING", fmt="json", force=True)
        root = logging.getLogger()

        assert len(root.handlers) == 1
        handler = root.handlers[0]
        assert isinstance(handler.formatter, JsonFormatter)
        assert any(isinstance(f, JobContextFilter) for f in handler.filters)
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_without_force_only_adjusts_level(self) -> None:
        configure_logging(level="DEBUG", fmt="text", force=True)
        handlers = list(logging.getLogger().handlers)

        configure_logging(level="ERROR", fmt="json")

        assert logging.getLogger().handlers == handlers
        assert logging.getLogger().level == logging.ERROR

    def test_env_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "error")
        configure_logging(force=True)
        assert logging.getLogger().level == logging.ERROR


class TestJsonFormatter:
    def _record(self, **extra: object) -> logging.LogRecord:
        record = logging.LogRecord(
            "transcribeflow.test", logging.INFO, __file__, 1, "Job %s queued", ("j1",), None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_shape(self) -> None:
        record = self._record(event="JOB_QUEUED", priority="high")
        JobContextFilter().filter(record)

        payload = json.loads(JsonFormatter().format(record))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "transcribeflow.test"
        assert payload["message"] == "Job j1 queued"
        assert payload["event"] == "JOB_QUEUED"
        assert payload["job_id"] == "-"
        assert payload["extra"] == {"priority": "high"}
        assert payload["ts"].endswith("Z")
        assert "exc_info" not in payload

    def test_job_context_stamps_records(self) -> None:
        record = self._record()
        with job_context("job-42"):
            JobContextFilter().filter(record)
            assert JOB_ID_CTX.get() == "job-42"
        assert JOB_ID_CTX.get() == "-"

        assert json.loads(JsonFormatter().format(record))["job_id"] == "job-42"

    def test_exception_included(self) -> None:
        try:
            raise RuntimeError("kaboom")
        except RuntimeError:
            record = self._record()
            record.exc_info = sys.exc_info()

        payload = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: kaboom" in payload["exc_info"]
