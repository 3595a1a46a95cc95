"""Transcribeflow logging configuration.

Call ``configure_logging()`` once at process startup (e.g. in ``__main__``).
Every other module defines its own logger at module scope:

    import logging
    logger = logging.getLogger(__name__)

Supported environment variables (read at call time):
    LOG_LEVEL   DEBUG | INFO | WARNING | ERROR   (default: INFO)
    LOG_FORMAT  text | json                      (default: text)

Job correlation
---------------
Work for a single job fans out across the scheduler, the progress tracker,
the result collector and the recovery orchestrator.  :data:`JOB_ID_CTX`
holds the id of the job being processed by the current task, and
:class:`JobContextFilter` stamps it onto every record, so one ``grep`` on a
job id reconstructs that job's whole story::

    with job_context(job.job_id):
        logger.info("Polling remote status")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "JOB_ID_CTX",
    "JobContextFilter",
    "job_context",
]

# ---------------------------------------------------------------------------
# Job-scoped context variable
# ---------------------------------------------------------------------------

#: Async-safe context variable holding the id of the job being processed.
#: Child tasks created with ``asyncio.create_task`` inherit the value that was
#: current when they were created.  ``"-"`` outside any job.
JOB_ID_CTX: ContextVar[str] = ContextVar("job_id", default="-")

logger = logging.getLogger(__name__)

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_FORMATS = {"text", "json"}

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(job_id)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are too chatty below WARNING.
_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite")


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Bind *job_id* to :data:`JOB_ID_CTX` for the duration of a block.

    Args:
        job_id: The job identifier to stamp onto log records.
    """
    token = JOB_ID_CTX.set(job_id)
    try:
        yield
    finally:
        JOB_ID_CTX.reset(token)


class JobContextFilter(logging.Filter):
    """Inject the current job id into every log record.

    Installed on the handler by :func:`configure_logging`, so it runs after
    propagation and just before formatting.  Never suppresses a record.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.job_id = JOB_ID_CTX.get("-")
        return True


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Configure the root logger for the entire process.

    Args:
        level: Logging level string (DEBUG/INFO/WARNING/ERROR/CRITICAL).
            Falls back to ``$LOG_LEVEL``, then ``"INFO"``.
        fmt: Output format (``"text"`` or ``"json"``).
            Falls back to ``$LOG_FORMAT``, then ``"text"``.
        force: Reconfigure even if the root logger already has handlers.

    Raises:
        ValueError: If *level* or *fmt* is not recognised.
    """
    resolved_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    resolved_fmt = (fmt or os.environ.get("LOG_FORMAT", "text")).lower()

    if resolved_level not in _VALID_LEVELS:
        raise ValueError(
            f"Unknown LOG_LEVEL {resolved_level!r}. "
            f"Must be one of: {', '.join(sorted(_VALID_LEVELS))}"
        )
    if resolved_fmt not in _VALID_FORMATS:
        raise ValueError(
            f"Unknown LOG_FORMAT {resolved_fmt!r}. "
            f"Must be one of: {', '.join(sorted(_VALID_FORMATS))}"
        )

    root = logging.getLogger()

    if root.handlers and not force:
        # Already configured (e.g. by pytest's log capture); only adjust level.
        root.setLevel(resolved_level)
        return

    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.addFilter(JobContextFilter())
    if resolved_fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_DATE_FORMAT))

    root.setLevel(resolved_level)
    root.addHandler(handler)

    if resolved_level != "DEBUG":
        for noisy in _NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log record.

    Output shape::

        {
            "ts":      "2026-10-18T12:34:56.789Z",
            "level":   "INFO",
            "logger":  "transcribeflow.orchestrator.scheduler",
            "message": "Job queued",
            "job_id":  "6f1c...",
            "event":   "JOB_QUEUED",
            "extra":   {"priority": "high"}
        }

    ``job_id`` and ``event`` are promoted to the top level because nearly every
    query filters on them; remaining ``extra`` kwargs stay under ``"extra"``.
    ``exc_info`` is present only when the record carries a traceback.
    """

    _RECORD_ATTRS: frozenset[str] = frozenset(
        logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
        | {"message", "asctime", "taskName", "job_id", "event"}
    )

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        record.message = record.getMessage()
        ts = (
            datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.")
            + f"{int(record.msecs):03d}Z"
        )

        payload: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "job_id": getattr(record, "job_id", JOB_ID_CTX.get("-")),
            "event": getattr(record, "event", None),
            "extra": {k: v for k, v in record.__dict__.items() if k not in self._RECORD_ATTRS},
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text

        try:
            return json.dumps(payload, default=str)
        except Exception:  # noqa: BLE001  # pragma: no cover
            return json.dumps(
                {
                    "ts": ts,
                    "level": "ERROR",
                    "logger": __name__,
                    "message": "JsonFormatter serialisation error",
                    "exc_info": traceback.format_exc(),
                }
            )
