"""Process-level entry points: long-running service and one-shot jobs.

:func:`run_service` is what ``transcribeflow run`` executes:

1. Opens the SQLite database via
   :func:`~transcribeflow.storage.database.open_db`.
2. Enters the speech service client and the notifier through one
   :class:`contextlib.AsyncExitStack` so teardown is deterministic.
3. Builds the service with :func:`~transcribeflow.orchestrator.factory.build_service`,
   restores persisted jobs and failed-job records, and starts the loops.
4. Waits for ``SIGTERM`` or ``SIGINT``, then stops the scheduler, letting
   in-flight jobs finish for up to ``drain_timeout`` seconds.

:func:`run_single_job` submits one request to a fresh service and waits for
it to reach a terminal state.  :func:`load_failed_records` reads the parked
failures for ``transcribeflow failed``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from contextlib import AsyncExitStack

from transcribeflow.core.exceptions import SchedulerError
from transcribeflow.core.models import FailedJobRecord, JobPriority, TranscriptionRequest
from transcribeflow.core.settings import Settings
from transcribeflow.gateway.http_client import SpeechServiceClient
from transcribeflow.notifiers.base import NotificationSink
from transcribeflow.notifiers.notifier import LoggingNotificationSink, WebhookNotificationSink
from transcribeflow.orchestrator.factory import (
    TranscriptionService,
    build_client,
    build_service,
)
from transcribeflow.orchestrator.scheduler import JobEvent, JobEventKind, JobStatusSnapshot
from transcribeflow.storage.database import open_db
from transcribeflow.storage.repository import SqlitePersistenceStore

__all__ = ["run_service", "run_single_job", "load_failed_records"]

logger = logging.getLogger(__name__)

_TERMINAL_EVENTS = frozenset(
    {JobEventKind.COMPLETED, JobEventKind.FAILED, JobEventKind.CANCELLED}
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


async def _open_service(
    stack: AsyncExitStack, settings: Settings
) -> TranscriptionService:
    """Open every resource on *stack* and return a wired, unstarted service."""
    conn = await open_db(settings.database_path_resolved)
    stack.push_async_callback(conn.close)
    store = SqlitePersistenceStore(conn)

    client: SpeechServiceClient = await stack.enter_async_context(build_client(settings))

    notifier: NotificationSink
    if settings.notify_webhook_url:
        notifier = WebhookNotificationSink(settings.notify_webhook_url)
    else:
        notifier = LoggingNotificationSink()
    stack.push_async_callback(notifier.close)

    return build_service(
        settings,
        gateway=client,
        status_query=client,
        result_fetch=client,
        notifier=notifier,
        store=store,
    )


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


async def run_service(
    settings: Settings | None = None,
    *,
    stop_event: asyncio.Event | None = None,
    drain_timeout: float = 30.0,
) -> None:
    """Run the scheduler until a termination signal arrives.

    Args:
        settings: Loaded settings; read from the environment if ``None``.
        stop_event: Event that ends the run when set.  ``SIGTERM`` and
            ``SIGINT`` set it.
        drain_timeout: Seconds in-flight jobs get to finish on shutdown.

    Raises:
        ConfigError: The speech service is not configured.
    """
    if settings is None:
        settings = Settings()
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    received: list[str] = []

    def _request_shutdown(signame: str) -> None:
        if not received:
            received.append(signame)
            logger.info("Received %s; graceful shutdown requested.", signame)
        stop_event.set()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported here", sig.name)

    try:
        async with AsyncExitStack() as stack:
            service = await _open_service(stack, settings)
            restored = await service.start()
            logger.info(
                "Transcribeflow running (max_concurrent=%d, restored=%d)",
                settings.max_concurrent_jobs,
                restored,
            )
            try:
                await stop_event.wait()
            finally:
                await service.stop(drain_timeout)
                logger.info("%s", service.scheduler.statistics().format_summary())
    finally:
        for sig in installed:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(sig)
    if received:
        logger.info("Graceful shutdown complete (signal: %s).", received[0])


async def run_single_job(
    request: TranscriptionRequest,
    settings: Settings | None = None,
    *,
    priority: JobPriority = JobPriority.NORMAL,
    timeout: float | None = None,
) -> JobStatusSnapshot:
    """Submit *request* and wait until it completes, fails or is cancelled.

    Args:
        request: The audio to transcribe.
        settings: Loaded settings; read from the environment if ``None``.
        priority: Queue priority of the job.
        timeout: Seconds to wait for a terminal state, ``None`` for no limit.

    Returns:
        The job's final snapshot.

    Raises:
        ConfigError: The speech service is not configured.
        SchedulerError: The request was rejected at submission.
        TimeoutError: *timeout* elapsed first.
    """
    if settings is None:
        settings = Settings()

    async with AsyncExitStack() as stack:
        service = await _open_service(stack, settings)
        await service.start(restore=False)
        stack.push_async_callback(service.stop, 5.0)

        done = asyncio.Event()
        job_id: list[str] = []

        def _on_event(event: JobEvent) -> None:
            if event.kind in _TERMINAL_EVENTS and job_id and event.job_id == job_id[0]:
                done.set()

        service.scheduler.subscribe(_on_event)
        outcome = await service.scheduler.submit(request, priority)
        if not outcome.accepted or outcome.job_id is None:
            raise SchedulerError(outcome.error or "Request rejected")
        job_id.append(outcome.job_id)
        logger.info("Submitted job %s for %s", outcome.job_id, request.audio_url)

        snapshot = service.scheduler.status(outcome.job_id)
        if snapshot is None or not snapshot.status.is_terminal:
            await asyncio.wait_for(done.wait(), timeout)
            snapshot = service.scheduler.status(outcome.job_id)
        if snapshot is None:
            raise SchedulerError(f"Job {outcome.job_id} disappeared")
        return snapshot


async def load_failed_records(settings: Settings | None = None) -> list[FailedJobRecord]:
    """Return the failed-job records persisted in the database."""
    if settings is None:
        settings = Settings()
    conn = await open_db(settings.database_path_resolved)
    try:
        return await SqlitePersistenceStore(conn).load_failed_records()
    finally:
        await conn.close()
