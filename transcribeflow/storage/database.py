"""SQLite database initialisation for Transcribeflow.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring PRAGMA settings (WAL journal mode, busy timeout).
* Bootstrapping the schema via ``CREATE TABLE IF NOT EXISTS``, which is
  idempotent and runs on every startup.

Call :func:`open_db` once at process startup and hand the connection to
:class:`~transcribeflow.storage.repository.SqlitePersistenceStore`.  The
caller closes it.

Typical usage::

    conn = await open_db(settings.database_path_resolved)
    store = SqlitePersistenceStore(conn)
    ...
    await conn.close()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Final

import aiosqlite

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

#: Fallback database path when :func:`open_db` gets none.
DEFAULT_DB_PATH: Final[Path] = Path("data/transcribeflow.db")

#: Milliseconds SQLite waits on a locked database before failing.
_BUSY_TIMEOUT_MS: Final[int] = 5000

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: ``managed_jobs`` holds the latest snapshot of every known job.
#:
#: job_id       Internal job id, primary key.
#: status       Job status value, duplicated out of ``payload`` for filtering.
#: priority     Priority value.
#: external_id  Remote job id once submitted, else NULL.
#: payload      ``ManagedJob.model_dump_json()``.
#: updated_at   ISO-8601 UTC timestamp of the last write.
_DDL_MANAGED_JOBS: Final[str] = """\
CREATE TABLE IF NOT EXISTS managed_jobs (
    job_id       TEXT     NOT NULL,
    status       TEXT     NOT NULL,
    priority     TEXT     NOT NULL,
    external_id  TEXT,
    payload      TEXT     NOT NULL,
    updated_at   TEXT     NOT NULL,
    PRIMARY KEY (job_id)
)"""

#: ``failed_jobs`` holds recovery records of failed jobs.
#:
#: job_id       Id of the failed job, primary key.
#: category     Error category value.
#: attempts     Recovery attempts made so far.
#: failed_at    ISO-8601 UTC timestamp of the failure, used for ordering.
#: payload      ``FailedJobRecord.model_dump_json()``.
_DDL_FAILED_JOBS: Final[str] = """\
CREATE TABLE IF NOT EXISTS failed_jobs (
    job_id       TEXT     NOT NULL,
    category     TEXT     NOT NULL,
    attempts     INTEGER  NOT NULL DEFAULT 0,
    failed_at    TEXT     NOT NULL,
    payload      TEXT     NOT NULL,
    PRIMARY KEY (job_id)
)"""

_DDL_JOBS_STATUS_INDEX: Final[str] = (
    "CREATE INDEX IF NOT EXISTS idx_managed_jobs_status ON managed_jobs (status)"
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and bootstrap the schema.

    Args:
        path: Filesystem path for the SQLite file, or ``":memory:"``.
            Defaults to :data:`DEFAULT_DB_PATH`.

    Returns:
        An open, configured :class:`aiosqlite.Connection`.  The caller is
        responsible for closing it.

    Raises:
        aiosqlite.OperationalError: If the file cannot be opened or created.
    """
    target = str(path) if path is not None else str(DEFAULT_DB_PATH)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", target)

    conn: aiosqlite.Connection = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row

    await _configure_pragmas(conn)
    await create_schema(conn)

    logger.info("SQLite database ready at %s", target)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all tables and indexes if they do not already exist."""
    await conn.execute(_DDL_MANAGED_JOBS)
    await conn.execute(_DDL_FAILED_JOBS)
    await conn.execute(_DDL_JOBS_STATUS_INDEX)
    await conn.commit()
    logger.debug("Schema bootstrap complete (managed_jobs, failed_jobs)")


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    """Enable WAL journaling and a busy timeout.

    In-memory databases report ``memory`` instead of ``wal``; that is only
    logged.
    """
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        logger.debug("SQLite journal_mode is %r (WAL unavailable)", mode)
    await conn.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
