"""Assemble a complete, explicitly wired transcription service.

No component in Transcribeflow is a module-level singleton.  :func:`build_service`
constructs one rate limiter, one circuit breaker registry, one retry
coordinator and so on from a :class:`~transcribeflow.core.settings.Settings`
instance, and returns them bundled in a :class:`TranscriptionService` owned
by the caller.

Remote collaborators are injected.  When they are omitted, a single
:class:`~transcribeflow.gateway.http_client.SpeechServiceClient` built from
the settings plays all three remote roles.

Typical usage::

    service = build_service(settings, store=store)
    await service.start()
    outcome = await service.scheduler.submit(request)
    ...
    await service.stop()
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field

from transcribeflow.core.clock import Clock, Sleep
from transcribeflow.core.exceptions import ConfigError
from transcribeflow.core.settings import Settings
from transcribeflow.gateway.base import ResultFetch, StatusQuery, SubmissionGateway, Validator
from transcribeflow.gateway.http_client import SpeechServiceClient
from transcribeflow.gateway.validator import RequestValidator
from transcribeflow.notifiers.base import NotificationSink
from transcribeflow.notifiers.notifier import LoggingNotificationSink, WebhookNotificationSink
from transcribeflow.orchestrator.progress import ProgressTracker
from transcribeflow.orchestrator.results import ResultCollector
from transcribeflow.orchestrator.scheduler import JobScheduler
from transcribeflow.resilience.circuit_breaker import CircuitBreakerRegistry
from transcribeflow.resilience.guard import ServiceGuard
from transcribeflow.resilience.rate_limiter import RateLimiter
from transcribeflow.resilience.recovery import RecoveryOrchestrator
from transcribeflow.resilience.retry import RetryCoordinator
from transcribeflow.storage.base import PersistenceStore

__all__ = ["TranscriptionService", "build_client", "build_service"]

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionService:
    """Every runtime component of one service instance.

    Attributes:
        scheduler: The entry point for callers.
        recovery: Failed-job recovery, shared with the scheduler.
        rate_limiter: Admission control in front of the remote service.
        breakers: Circuit breakers, keyed by target.
        guard: Rate limiter plus breaker, used for every remote call.
        retry: Retry coordinator with the configured default policy.
        tracker: Status polling.
        collector: Result download and normalisation.
        notifier: Where recovery notifications go.
    """

    scheduler: JobScheduler
    recovery: RecoveryOrchestrator
    rate_limiter: RateLimiter
    breakers: CircuitBreakerRegistry
    guard: ServiceGuard
    retry: RetryCoordinator
    tracker: ProgressTracker
    collector: ResultCollector
    notifier: NotificationSink
    _started: bool = field(default=False, repr=False)

    async def start(self, *, restore: bool = True) -> int:
        """Start the background loops, optionally restoring persisted state.

        Returns:
            Number of jobs restored into the scheduler.
        """
        restored = 0
        if restore:
            records = await self.recovery.restore()
            restored = await self.scheduler.restore()
            logger.info(
                "Restored %d job(s) and %d failed-job record(s)", restored, records
            )
        self.rate_limiter.start()
        self.recovery.start()
        self.scheduler.start()
        self._started = True
        return restored

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """Stop the scheduler first, then the resilience loops."""
        if not self._started:
            return
        await self.scheduler.stop(drain_timeout)
        await self.recovery.stop()
        await self.rate_limiter.stop()
        self._started = False


def build_client(settings: Settings) -> SpeechServiceClient:
    """Return an unopened client for the configured speech service.

    Raises:
        ConfigError: The endpoint or the API key is missing.
    """
    if not settings.service_configured:
        raise ConfigError(
            "Speech service is not configured. "
            "Set SPEECH_ENDPOINT and SPEECH_API_KEY in .env (or env vars)."
        )
    return SpeechServiceClient(
        settings.speech_endpoint,
        settings.speech_api_key,
        timeout=settings.speech_request_timeout_s,
    )


def build_service(
    settings: Settings,
    *,
    gateway: SubmissionGateway | None = None,
    status_query: StatusQuery | None = None,
    result_fetch: ResultFetch | None = None,
    validator: Validator | None = None,
    notifier: NotificationSink | None = None,
    store: PersistenceStore | None = None,
    clock: Clock | None = None,
    sleep: Sleep | None = None,
    rng: random.Random | None = None,
) -> TranscriptionService:
    """Wire every component from *settings*.

    *clock*, *sleep* and *rng* are forwarded to every component that takes
    them; tests pass one fake of each to drive the whole service.

    Raises:
        ConfigError: A remote collaborator is missing and the speech service
            credentials are not configured.
    """
    if gateway is None or status_query is None or result_fetch is None:
        client = build_client(settings)
        gateway = gateway or client
        status_query = status_query or client
        result_fetch = result_fetch or client

    if notifier is None:
        if settings.notify_webhook_url:
            notifier = WebhookNotificationSink(settings.notify_webhook_url)
        else:
            notifier = LoggingNotificationSink()

    rate_limiter = RateLimiter(settings.rate_limiter_config(), clock=clock, sleep=sleep)
    breakers = CircuitBreakerRegistry(settings.circuit_breaker_config(), clock=clock, rng=rng)
    guard = ServiceGuard(rate_limiter, breakers)
    retry = RetryCoordinator(settings.retry_policy(), clock=clock, sleep=sleep, rng=rng)

    tracker = ProgressTracker(
        status_query,
        guard,
        settings.tracker_config(),
        clock=clock,
        sleep=sleep,
        rng=rng,
    )
    collector = ResultCollector(result_fetch, guard, retry, settings.collector_config())
    recovery = RecoveryOrchestrator(
        settings.recovery_config(),
        breaker=guard.breaker,
        retry=retry,
        notifier=notifier,
        store=store,
        clock=clock,
        sleep=sleep,
        rng=rng,
    )
    scheduler = JobScheduler(
        gateway=gateway,
        tracker=tracker,
        collector=collector,
        recovery=recovery,
        guard=guard,
        retry=retry,
        validator=validator or RequestValidator(),
        store=store,
        config=settings.scheduler_config(),
        clock=clock,
        sleep=sleep,
    )
    logger.debug(
        "Service wired: max_concurrent=%d max_queue=%d",
        scheduler.config.max_concurrent_jobs,
        scheduler.config.max_queue_size,
    )
    return TranscriptionService(
        scheduler=scheduler,
        recovery=recovery,
        rate_limiter=rate_limiter,
        breakers=breakers,
        guard=guard,
        retry=retry,
        tracker=tracker,
        collector=collector,
        notifier=notifier,
    )
