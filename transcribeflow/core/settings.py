"""Transcribeflow settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

Every environment variable documented in ``.env.example`` maps 1-to-1 to a
field in :class:`Settings`.  The field name is the **lowercase** version of
the env-var name (e.g. ``MAX_CONCURRENT_JOBS`` -> ``max_concurrent_jobs``).

The settings object is flat on purpose: operators tune one variable at a
time.  Builder methods turn it into the frozen per-component config models.

Typical usage::

    from transcribeflow.core.settings import Settings

    settings = Settings()                       # loads from env + .env
    policy = settings.retry_policy()            # RetryPolicy
    print(settings.service_configured)          # True / False
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from transcribeflow.core.models import ErrorCategory
from transcribeflow.orchestrator.progress import TrackerConfig
from transcribeflow.orchestrator.results import CollectorConfig
from transcribeflow.orchestrator.scheduler import SchedulerConfig
from transcribeflow.resilience.circuit_breaker import CircuitBreakerConfig
from transcribeflow.resilience.rate_limiter import RateLimiterConfig
from transcribeflow.resilience.recovery import NotificationPolicy, RecoveryConfig
from transcribeflow.resilience.retry import RetryPolicy

__all__ = ["Settings"]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _csv_to_categories(value: str) -> frozenset[ErrorCategory]:
    """Parse ``"network, service"`` into a set of categories.

    Raises:
        ValueError: An item is not a known category.
    """
    items = [item.strip().lower() for item in value.split(",") if item.strip()]
    try:
        return frozenset(ErrorCategory(item) for item in items)
    except ValueError as exc:
        allowed = sorted(c.value for c in ErrorCategory)
        raise ValueError(f"{exc}; expected a comma-separated subset of {allowed}") from exc


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    ``SPEECH_ENDPOINT`` and ``SPEECH_API_KEY`` may be left empty during
    development; :attr:`service_configured` then returns ``False`` and the
    CLI refuses to start the service.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Speech service
    # ------------------------------------------------------------------
    speech_endpoint: str = Field(
        default="",
        description="Base URL of the batch transcription API.",
    )
    speech_api_key: str = Field(default="", description="Subscription key for the API.")
    speech_request_timeout_s: float = Field(
        default=30.0,
        gt=0,
        description="Timeout of a single HTTP request to the API.",
    )

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------
    max_concurrent_jobs: int = Field(default=5, ge=1)
    max_queue_size: int = Field(default=50, ge=1)
    job_timeout_s: float = Field(default=1800.0, gt=0)
    cleanup_interval_s: float = Field(default=300.0, gt=0)
    job_retention_s: float = Field(default=86400.0, gt=0)
    auto_retry: bool = True
    max_job_retries: int = Field(default=3, ge=0)
    tick_interval_s: float = Field(default=1.0, gt=0)
    stats_interval_s: float = Field(default=10.0, gt=0)
    stats_path: str = Field(default="", description="JSON stats file; empty disables it.")

    # ------------------------------------------------------------------
    # Progress tracking
    # ------------------------------------------------------------------
    poll_interval_base_s: float = Field(default=5.0, gt=0)
    poll_interval_max_s: float = Field(default=60.0, gt=0)
    max_poll_attempts: int = Field(default=720, ge=1)
    max_job_duration_s: float = Field(default=14400.0, gt=0)
    adaptive_polling: bool = True

    # ------------------------------------------------------------------
    # Result collection
    # ------------------------------------------------------------------
    max_result_bytes: int = Field(default=100 * 1024 * 1024, gt=0)
    min_segment_confidence: float = Field(default=0.5, ge=0, le=1)
    include_word_timestamps: bool = True
    include_speakers: bool = True
    result_fetch_attempts: int = Field(default=3, ge=1)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_s: float = Field(default=1.0, ge=0)
    retry_max_delay_s: float = Field(default=30.0, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1)
    retry_jitter: float = Field(default=0.1, ge=0, le=1)
    retry_attempt_timeout_s: float = Field(default=60.0, gt=0)
    retryable_categories: Annotated[frozenset[ErrorCategory], NoDecode] = Field(
        default=frozenset(
            {
                ErrorCategory.NETWORK,
                ErrorCategory.SERVICE,
                ErrorCategory.QUOTA,
                ErrorCategory.CIRCUIT_OPEN,
            }
        ),
        description="Categories retried at all (comma-separated in env).",
    )

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------
    breaker_failure_threshold: float = Field(default=0.5, gt=0, le=1)
    breaker_success_threshold: int = Field(default=3, ge=1)
    breaker_open_timeout_s: float = Field(default=60.0, gt=0)
    breaker_window_size: int = Field(default=10, ge=1)
    breaker_window_time_s: float = Field(default=60.0, gt=0)
    breaker_minimum_requests: int = Field(default=5, ge=1)
    breaker_half_open_ratio: float = Field(default=0.1, gt=0, le=1)
    breaker_trigger_categories: Annotated[frozenset[ErrorCategory], NoDecode] = Field(
        default=frozenset({ErrorCategory.SERVICE, ErrorCategory.NETWORK, ErrorCategory.UNKNOWN}),
        description="Categories that may trip the breaker (comma-separated in env).",
    )

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------
    rate_limit_preset: str = Field(
        default="default",
        description="'default', 'long_media' or 'high_volume'; explicit limits below win.",
    )
    requests_per_minute: int | None = Field(default=None, ge=1)
    requests_per_hour: int | None = Field(default=None, ge=1)
    requests_per_day: int | None = Field(default=None, ge=1)
    max_concurrent_requests: int | None = Field(default=None, ge=1)
    rate_queue_enabled: bool = True
    rate_queue_size: int | None = Field(default=None, ge=0)
    rate_queue_timeout_s: float | None = Field(default=None, gt=0)
    adaptive_rate_limiting: bool = True

    # ------------------------------------------------------------------
    # Recovery and notifications
    # ------------------------------------------------------------------
    max_recovery_attempts: int = Field(default=3, ge=0)
    recovery_delay_s: float = Field(default=30.0, ge=0)
    persist_failed_jobs: bool = True
    failed_job_retention_s: float = Field(default=86400.0, gt=0)
    automatic_recovery: bool = True
    recovery_sweep_interval_s: float = Field(default=300.0, gt=0)
    max_failed_records: int = Field(default=500, ge=1)
    notify_enabled: bool = True
    notify_min_severity: int = Field(default=3, ge=1, le=5)
    notify_categories: Annotated[frozenset[ErrorCategory], NoDecode] = Field(
        default=NotificationPolicy().categories,
        description="Categories worth a notification (comma-separated in env).",
    )
    notify_webhook_url: str = Field(
        default="",
        description="Webhook receiving notification JSON; empty logs them instead.",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    database_path: str = Field(
        default="data/transcribeflow.db",
        description="Path to the SQLite database file.",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator(
        "retryable_categories",
        "breaker_trigger_categories",
        "notify_categories",
        mode="before",
    )
    @classmethod
    def _parse_csv_categories(cls, v: object) -> object:
        """Accept a comma-separated string **or** an already-parsed collection."""
        if isinstance(v, str):
            return _csv_to_categories(v)
        return v

    @field_validator("speech_endpoint")
    @classmethod
    def _strip_endpoint(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and not v.startswith(("http://", "https://")):
            raise ValueError(f"speech_endpoint must be an http(s) URL, got {v!r}")
        return v

    @field_validator("rate_limit_preset")
    @classmethod
    def _validate_preset(cls, v: str) -> str:
        allowed = {"default", "long_media", "high_volume"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"rate_limit_preset must be one of {allowed}, got {v!r}")
        return v_lower

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_bounds(self) -> Settings:
        """Ensure base <= max for polling intervals and retry delays."""
        if self.poll_interval_base_s > self.poll_interval_max_s:
            raise ValueError(
                f"poll_interval_base_s ({self.poll_interval_base_s}) "
                f"> poll_interval_max_s ({self.poll_interval_max_s})"
            )
        if self.retry_base_delay_s > self.retry_max_delay_s:
            raise ValueError(
                f"retry_base_delay_s ({self.retry_base_delay_s}) "
                f"> retry_max_delay_s ({self.retry_max_delay_s})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def service_configured(self) -> bool:
        """``True`` if both speech service credentials are set."""
        return bool(self.speech_endpoint and self.speech_api_key)

    @property
    def database_path_resolved(self) -> Path:
        return Path(self.database_path).resolve()

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            max_concurrent_jobs=self.max_concurrent_jobs,
            max_queue_size=self.max_queue_size,
            job_timeout_s=self.job_timeout_s,
            cleanup_interval_s=self.cleanup_interval_s,
            retention_s=self.job_retention_s,
            auto_retry=self.auto_retry,
            max_retries=self.max_job_retries,
            tick_interval_s=self.tick_interval_s,
            stats_interval_s=self.stats_interval_s,
            stats_path=self.stats_path or None,
        )

    def tracker_config(self) -> TrackerConfig:
        return TrackerConfig(
            base_poll_interval_s=self.poll_interval_base_s,
            max_poll_interval_s=self.poll_interval_max_s,
            max_poll_attempts=self.max_poll_attempts,
            max_job_duration_s=self.max_job_duration_s,
            adaptive=self.adaptive_polling,
        )

    def collector_config(self) -> CollectorConfig:
        return CollectorConfig(
            max_result_bytes=self.max_result_bytes,
            min_confidence=self.min_segment_confidence,
            include_word_timestamps=self.include_word_timestamps,
            include_speakers=self.include_speakers,
            fetch_attempts=self.result_fetch_attempts,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_s=self.retry_base_delay_s,
            max_delay_s=self.retry_max_delay_s,
            multiplier=self.retry_multiplier,
            jitter=self.retry_jitter,
            attempt_timeout_s=self.retry_attempt_timeout_s,
            retryable_categories=self.retryable_categories,
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            success_threshold=self.breaker_success_threshold,
            open_timeout_s=self.breaker_open_timeout_s,
            window_size=self.breaker_window_size,
            window_time_s=self.breaker_window_time_s,
            minimum_requests=self.breaker_minimum_requests,
            trigger_categories=self.breaker_trigger_categories,
            half_open_admission_ratio=self.breaker_half_open_ratio,
        )

    def rate_limiter_config(self) -> RateLimiterConfig:
        """Start from the preset, then apply explicitly set limits."""
        match self.rate_limit_preset:
            case "long_media":
                base = RateLimiterConfig.for_long_media()
            case "high_volume":
                base = RateLimiterConfig.for_high_volume()
            case _:
                base = RateLimiterConfig()
        overrides = {
            "requests_per_minute": self.requests_per_minute,
            "requests_per_hour": self.requests_per_hour,
            "requests_per_day": self.requests_per_day,
            "max_concurrent": self.max_concurrent_requests,
            "max_queue_size": self.rate_queue_size,
            "queue_timeout_s": self.rate_queue_timeout_s,
        }
        values = {
            **base.model_dump(),
            **{k: v for k, v in overrides.items() if v is not None},
            "enable_queuing": self.rate_queue_enabled,
            "adaptive": self.adaptive_rate_limiting,
        }
        return RateLimiterConfig.model_validate(values)

    def recovery_config(self) -> RecoveryConfig:
        return RecoveryConfig(
            max_recovery_attempts=self.max_recovery_attempts,
            recovery_delay_s=self.recovery_delay_s,
            retry_base_delay_s=self.retry_base_delay_s,
            retry_max_delay_s=self.retry_max_delay_s,
            persist_failed_jobs=self.persist_failed_jobs,
            failed_job_retention_s=self.failed_job_retention_s,
            automatic_recovery=self.automatic_recovery,
            sweep_interval_s=self.recovery_sweep_interval_s,
            max_failed_records=self.max_failed_records,
            notifications=NotificationPolicy(
                enabled=self.notify_enabled,
                min_severity=self.notify_min_severity,
                categories=self.notify_categories,
            ),
        )
