"""Unit tests for service wiring and the command-line entry point.

Tests cover:
- ``build_client`` / ``build_service`` configuration errors.
- ``build_service`` defaults: request validator and notifier selection.
- ``TranscriptionService`` start/stop idempotence.
- ``main``: argument errors, ``failed`` listing, unconfigured ``submit``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fakes import FakeClock, FakeSpeechService, make_job
from transcribeflow.__main__ import main
from transcribeflow.core.clock import utc_from_timestamp
from transcribeflow.core.exceptions import ConfigError, GatewayError
from transcribeflow.core.models import FailedJobRecord, TranscriptionRequest
from transcribeflow.core.settings import Settings
from transcribeflow.notifiers import LoggingNotificationSink, WebhookNotificationSink
from transcribeflow.orchestrator.factory import (
    TranscriptionService,
    build_client,
    build_service,
)
from transcribeflow.resilience.classifier import classify
from transcribeflow.storage import SqlitePersistenceStore, open_db


def _wired(settings: Settings, clock: FakeClock) -> TranscriptionService:
    service = FakeSpeechService()
    return build_service(
        settings,
        gateway=service,
        status_query=service,
        result_fetch=service,
        clock=clock,
        sleep=clock.sleep,
    )


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestBuildService:
    def test_client_requires_credentials(self, clean_env: None) -> None:
        with pytest.raises(ConfigError, match="SPEECH_ENDPOINT"):
            build_client(Settings())

    def test_client_from_settings(self, clean_env: None) -> None:
        client = build_client(
            Settings(speech_endpoint="https://speech.example.com/v3.1", speech_api_key="k")
        )
        assert client._endpoint == "https://speech.example.com/v3.1"

    def test_missing_remote_collaborators(self, clean_env: None) -> None:
        with pytest.raises(ConfigError):
            build_service(Settings(), gateway=FakeSpeechService())

    def test_default_notifier_logs(self, clean_env: None, clock: FakeClock) -> None:
        service = _wired(Settings(), clock)
        assert isinstance(service.notifier, LoggingNotificationSink)

    def test_webhook_notifier_when_configured(self, clean_env: None, clock: FakeClock) -> None:
        service = _wired(Settings(notify_webhook_url="https://hooks.example.com/x"), clock)
        assert isinstance(service.notifier, WebhookNotificationSink)

    def test_settings_reach_components(self, clean_env: None, clock: FakeClock) -> None:
        service = _wired(Settings(max_concurrent_jobs=7, retry_max_attempts=2), clock)
        assert service.scheduler.config.max_concurrent_jobs == 7
        assert service.retry.policy.max_attempts == 2
        assert service.guard.breaker is service.breakers.get("speech-service")

    @pytest.mark.asyncio
    async def test_request_validator_is_installed(
        self, clean_env: None, clock: FakeClock
    ) -> None:
        service = _wired(Settings(), clock)
        outcome = await service.scheduler.submit(
            TranscriptionRequest(audio_url="ftp://media.example.com/a.wav")
        )
        assert outcome.accepted is False
        assert outcome.error is not None
        assert outcome.error.startswith("Invalid request")

    @pytest.mark.asyncio
    async def test_stop_before_start_is_a_noop(self, clean_env: None, clock: FakeClock) -> None:
        service = _wired(Settings(), clock)
        await service.stop()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, clean_env: None, clock: FakeClock) -> None:
        service = _wired(Settings(), clock)
        assert await service.start() == 0
        await asyncio.sleep(0)
        await service.stop(drain_timeout=1.0)
        await service.stop()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestMain:
    def test_bad_log_level(self, clean_env: None) -> None:
        assert main(["--log-level", "LOUD", "failed"]) == 1

    def test_invalid_settings(
        self, clean_env: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("MAX_QUEUE_SIZE", "0")
        assert main(["failed"]) == 1

    def test_failed_lists_records(
        self,
        clean_env: None,
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        db_path = tmp_path / "cli.db"
        monkeypatch.setenv("DATABASE_PATH", str(db_path))

        assert main(["failed"]) == 0
        assert capsys.readouterr().out.strip() == "No failed jobs."

        async def seed() -> None:
            conn = await open_db(db_path)
            try:
                error = GatewayError("speech-service", "bad key", status_code=401)
                await SqlitePersistenceStore(conn).save_failed_record(
                    FailedJobRecord(
                        job=make_job("job-cli"),
                        error_message=str(error),
                        classification=classify(error),
                        failed_at=utc_from_timestamp(1_700_000_000.0),
                    )
                )
            finally:
                await conn.close()

        asyncio.run(seed())

        assert main(["failed"]) == 0
        out = capsys.readouterr().out
        assert "job-cli" in out
        assert "authentication" in out
        assert "attempts=1" in out

    def test_submit_requires_service(
        self, clean_env: None, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))
        assert main(["submit", "https://media.example.com/a.wav"]) == 1

    def test_requires_command(self) -> None:
        with pytest.raises(SystemExit):
            main([])
