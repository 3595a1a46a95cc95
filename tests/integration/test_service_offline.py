"""End-to-end tests of a fully wired service against an in-process fake.

The service is built with :func:`build_service` exactly as the CLI builds
it, with a real :class:`SqlitePersistenceStore` on a temporary file, and
runs its real background loops on the real clock with short intervals.
Only the remote speech service is faked, so these run offline and are
collected by default.

Tests cover:
- A batch of jobs of mixed priority running to completion.
- A job failing permanently and its record surviving a restart.
- An in-flight job persisted on shutdown and resumed by a new instance.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from fakes import FakeSpeechService
from transcribeflow.core.exceptions import GatewayError
from transcribeflow.core.models import ErrorCategory, JobPriority, JobStatus, TranscriptionRequest
from transcribeflow.core.settings import Settings
from transcribeflow.gateway.base import RemoteStatus
from transcribeflow.orchestrator.factory import TranscriptionService, build_service
from transcribeflow.orchestrator.scheduler import JobEvent, JobEventKind
from transcribeflow.storage import SqlitePersistenceStore, open_db

_TERMINAL = {JobEventKind.COMPLETED, JobEventKind.FAILED, JobEventKind.CANCELLED}


@pytest_asyncio.fixture()
async def conn(tmp_path: Path) -> AsyncIterator[aiosqlite.Connection]:
    connection = await open_db(tmp_path / "service.db")
    try:
        yield connection
    finally:
        await connection.close()


@pytest.fixture()
def settings(clean_env: None) -> Settings:
    return Settings(
        max_concurrent_jobs=2,
        tick_interval_s=0.01,
        poll_interval_base_s=0.01,
        poll_interval_max_s=0.05,
        retry_base_delay_s=0.01,
        retry_max_delay_s=0.05,
        retry_jitter=0.0,
        requests_per_minute=10_000,
        requests_per_hour=100_000,
        requests_per_day=1_000_000,
        recovery_delay_s=0.0,
    )


def _service(
    settings: Settings, remote: FakeSpeechService, conn: aiosqlite.Connection
) -> TranscriptionService:
    return build_service(
        settings,
        gateway=remote,
        status_query=remote,
        result_fetch=remote,
        store=SqlitePersistenceStore(conn),
    )


def _request(name: str) -> TranscriptionRequest:
    return TranscriptionRequest(audio_url=f"https://media.example.com/audio/{name}.wav")


async def _wait_terminal(
    service: TranscriptionService, job_ids: list[str], timeout: float = 10.0
) -> None:
    pending = set(job_ids)
    done = asyncio.Event()

    def on_event(event: JobEvent) -> None:
        if event.kind in _TERMINAL:
            pending.discard(event.job_id or "")
            if not pending:
                done.set()

    unsubscribe = service.scheduler.subscribe(on_event)
    try:
        for job_id in job_ids:
            snapshot = service.scheduler.status(job_id)
            if snapshot is not None and snapshot.status.is_terminal:
                pending.discard(job_id)
        if pending:
            await asyncio.wait_for(done.wait(), timeout)
    finally:
        unsubscribe()


async def _wait_for_poll(remote: FakeSpeechService, timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not remote.polls:
            await asyncio.sleep(0.01)


class TestOfflineService:
    @pytest.mark.asyncio
    async def test_batch_runs_to_completion(
        self, settings: Settings, conn: aiosqlite.Connection
    ) -> None:
        remote = FakeSpeechService()
        service = _service(settings, remote, conn)
        await service.start()

        job_ids: list[str] = []
        for i, priority in enumerate(
            [JobPriority.LOW, JobPriority.NORMAL, JobPriority.URGENT, JobPriority.HIGH]
        ):
            outcome = await service.scheduler.submit(_request(f"file-{i}"), priority)
            assert outcome.accepted
            assert outcome.job_id is not None
            job_ids.append(outcome.job_id)

        try:
            await _wait_terminal(service, job_ids)
        finally:
            await service.stop(drain_timeout=5.0)

        for job_id in job_ids:
            snapshot = service.scheduler.status(job_id)
            assert snapshot is not None
            assert snapshot.status is JobStatus.COMPLETED
            assert snapshot.result is not None
            assert snapshot.result.text == "Hello there. General Kenobi."

        stats = service.scheduler.statistics()
        assert (stats.total_jobs, stats.completed, stats.failed) == (4, 4, 0)
        assert len(remote.submitted) == 4

        stored = await SqlitePersistenceStore(conn).load_jobs(include_terminal=True)
        assert {j.job_id for j in stored} == set(job_ids)
        assert all(j.status is JobStatus.COMPLETED for j in stored)

    @pytest.mark.asyncio
    async def test_permanent_failure_survives_restart(
        self, settings: Settings, conn: aiosqlite.Connection
    ) -> None:
        remote = FakeSpeechService()
        remote.submit_errors.append(GatewayError("speech-service", "bad key", status_code=401))
        service = _service(settings, remote, conn)
        await service.start()

        outcome = await service.scheduler.submit(_request("secret"))
        assert outcome.job_id is not None
        try:
            await _wait_terminal(service, [outcome.job_id])
        finally:
            await service.stop(drain_timeout=5.0)

        snapshot = service.scheduler.status(outcome.job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.FAILED
        assert snapshot.error is not None
        assert snapshot.error.category is ErrorCategory.AUTHENTICATION

        restarted = _service(settings, FakeSpeechService(), conn)
        assert await restarted.recovery.restore() == 1
        [record] = restarted.recovery.failed_jobs()
        assert record.job_id == outcome.job_id
        assert record.classification.retryable is False

    @pytest.mark.asyncio
    async def test_in_flight_job_resumes_after_restart(
        self, settings: Settings, conn: aiosqlite.Connection
    ) -> None:
        stuck = FakeSpeechService(statuses=(RemoteStatus.RUNNING,))
        first = _service(settings, stuck, conn)
        await first.start()
        outcome = await first.scheduler.submit(_request("long"))
        assert outcome.job_id is not None

        await _wait_for_poll(stuck)
        await first.stop(drain_timeout=0.05)

        [persisted] = await SqlitePersistenceStore(conn).load_jobs()
        assert persisted.job_id == outcome.job_id
        assert persisted.status is JobStatus.PROCESSING
        assert persisted.external_job_id == "remote-1"

        finishing = FakeSpeechService()
        second = _service(settings, finishing, conn)
        assert await second.start() == 1
        try:
            await _wait_terminal(second, [outcome.job_id])
        finally:
            await second.stop(drain_timeout=5.0)

        snapshot = second.scheduler.status(outcome.job_id)
        assert snapshot is not None
        assert snapshot.status is JobStatus.COMPLETED
        assert finishing.submitted == []
        assert finishing.polls[0] == "remote-1"
