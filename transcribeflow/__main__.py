"""Transcribeflow process entry-point.

Usage:
    python -m transcribeflow [--log-level LEVEL] [--log-format FORMAT] run
    python -m transcribeflow submit AUDIO_URL [--priority P] [--language L]
    python -m transcribeflow failed

``run`` restores persisted jobs and runs the scheduler until ``SIGTERM`` or
``SIGINT``.  ``submit`` transcribes one file and prints the transcript.
``failed`` lists the failed jobs parked for recovery.

Exit codes: 0 on success, 1 on a configuration error or a failed job,
130 when interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from transcribeflow.core.exceptions import ConfigError, TranscribeFlowError
from transcribeflow.core.logging_config import configure_logging
from transcribeflow.core.models import (
    FailedJobRecord,
    JobPriority,
    JobStatus,
    TranscriptionRequest,
)

_EXIT_OK = 0
_EXIT_FAILED = 1
_EXIT_INTERRUPTED = 130


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="transcribeflow",
        description="Asynchronous batch transcription job orchestrator.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the scheduler until SIGTERM/SIGINT.")

    submit = sub.add_parser("submit", help="Transcribe one audio file and wait for it.")
    submit.add_argument("audio_url", metavar="AUDIO_URL")
    submit.add_argument(
        "--priority",
        choices=[p.value for p in JobPriority],
        default=JobPriority.NORMAL.value,
    )
    submit.add_argument("--language", default="en-US", help="Locale, e.g. en-US.")
    submit.add_argument(
        "--diarization",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Label speakers in the transcript.",
    )
    submit.add_argument("--max-speakers", type=int, default=None)
    submit.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Give up waiting after this many seconds.",
    )

    sub.add_parser("failed", help="List failed jobs parked for recovery.")
    return parser


def _print_failed(records: list[FailedJobRecord]) -> None:
    if not records:
        print("No failed jobs.")  # noqa: T201
        return
    for record in records:
        print(  # noqa: T201
            f"{record.job_id}  {record.classification.category.value:<14} "
            f"attempts={record.attempts}  failed_at={record.failed_at.isoformat()}  "
            f"{record.error_message}"
        )


def main(argv: list[str] | None = None) -> int:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = _build_parser().parse_args(argv)

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"transcribeflow: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        return _EXIT_FAILED

    logger = logging.getLogger(__name__)

    # Lazy imports keep --help fast.
    from transcribeflow.core.settings import Settings  # noqa: PLC0415
    from transcribeflow.orchestrator.runner import (  # noqa: PLC0415
        load_failed_records,
        run_service,
        run_single_job,
    )

    try:
        settings = Settings()
    except ValidationError as exc:
        logger.critical("Configuration error: %s", exc)
        return _EXIT_FAILED

    try:
        if args.command == "run":
            asyncio.run(run_service(settings))
            return _EXIT_OK

        if args.command == "failed":
            _print_failed(asyncio.run(load_failed_records(settings)))
            return _EXIT_OK

        request = TranscriptionRequest(
            audio_url=args.audio_url,
            language=args.language,
            diarization=args.diarization,
            max_speakers=args.max_speakers,
        )
        snapshot = asyncio.run(
            run_single_job(
                request,
                settings,
                priority=JobPriority(args.priority),
                timeout=args.timeout,
            )
        )
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        return _EXIT_FAILED
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
        return _EXIT_INTERRUPTED
    except TimeoutError:
        logger.error("Timed out waiting for the job to finish")
        return _EXIT_FAILED
    except (TranscribeFlowError, ValidationError) as exc:
        logger.error("%s", exc)
        return _EXIT_FAILED

    if snapshot.status is JobStatus.COMPLETED and snapshot.result is not None:
        print(snapshot.result.text)  # noqa: T201
        return _EXIT_OK
    reason = snapshot.error.message if snapshot.error else snapshot.status.value
    logger.error("Job %s did not complete: %s", snapshot.job_id, reason)
    if snapshot.error and snapshot.error.user_action:
        logger.error("Suggested action: %s", snapshot.error.user_action)
    return _EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
