"""SQLite implementation of the persistence store.

:class:`SqlitePersistenceStore` keeps each :class:`ManagedJob` and
:class:`FailedJobRecord` as its pydantic JSON dump, with a few columns
duplicated out for filtering.  Every write commits immediately.

Every :class:`aiosqlite.Error` is re-raised as
:class:`~transcribeflow.core.exceptions.StorageError`; the scheduler and the
recovery orchestrator log those and carry on.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import aiosqlite
from pydantic import ValidationError

from transcribeflow.core.exceptions import StorageError
from transcribeflow.core.models import FailedJobRecord, JobStatus, ManagedJob
from transcribeflow.storage.base import PersistenceStore

__all__ = ["SqlitePersistenceStore"]

logger = logging.getLogger(__name__)

_TERMINAL_VALUES: tuple[str, ...] = tuple(
    status.value for status in JobStatus if status.is_terminal
)


class SqlitePersistenceStore(PersistenceStore):
    """Data-access object for the ``managed_jobs`` and ``failed_jobs`` tables.

    It owns no connection lifecycle: pass an open connection from
    :func:`~transcribeflow.storage.database.open_db` and close it when done.

    Rows whose payload no longer parses (e.g. written by an incompatible
    version) are skipped with a warning when loading.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Job snapshots
    # ------------------------------------------------------------------

    async def save_job(self, job: ManagedJob) -> None:
        try:
            await self._conn.execute(
                """
                INSERT OR REPLACE INTO managed_jobs
                    (job_id, status, priority, external_id, payload, updated_at)
                VALUES
                    (?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.status.value,
                    job.priority.value,
                    job.external_job_id,
                    job.model_dump_json(),
                    datetime.now(UTC).isoformat(),
                ),
            )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Could not save job {job.job_id}: {exc}") from exc
        logger.debug("Saved job %s (status=%s)", job.job_id, job.status)

    async def load_jobs(self, *, include_terminal: bool = False) -> list[ManagedJob]:
        if include_terminal:
            sql = "SELECT job_id, payload FROM managed_jobs ORDER BY updated_at"
            params: tuple[str, ...] = ()
        else:
            placeholders = ",".join("?" * len(_TERMINAL_VALUES))
            sql = (
                "SELECT job_id, payload FROM managed_jobs "
                f"WHERE status NOT IN ({placeholders}) ORDER BY updated_at"
            )
            params = _TERMINAL_VALUES
        rows = await self._fetchall(sql, params)

        jobs: list[ManagedJob] = []
        for row in rows:
            try:
                jobs.append(ManagedJob.model_validate_json(row["payload"]))
            except ValidationError:
                logger.warning("Skipping unreadable job snapshot %s", row["job_id"])
        return jobs

    async def delete_job(self, job_id: str) -> None:
        await self._execute("DELETE FROM managed_jobs WHERE job_id = ?", (job_id,))

    # ------------------------------------------------------------------
    # Failed-job records
    # ------------------------------------------------------------------

    async def save_failed_record(self, record: FailedJobRecord) -> None:
        try:
            await self._conn.execute(
                """
                INSERT OR REPLACE INTO failed_jobs
                    (job_id, category, attempts, failed_at, payload)
                VALUES
                    (?, ?, ?, ?, ?)
                """,
                (
                    record.job_id,
                    record.classification.category.value,
                    record.attempts,
                    record.failed_at.isoformat(),
                    record.model_dump_json(),
                ),
            )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Could not save failed record {record.job_id}: {exc}") from exc
        logger.debug("Saved failed record %s (attempts=%d)", record.job_id, record.attempts)

    async def load_failed_records(self) -> list[FailedJobRecord]:
        rows = await self._fetchall(
            "SELECT job_id, payload FROM failed_jobs ORDER BY failed_at", ()
        )
        records: list[FailedJobRecord] = []
        for row in rows:
            try:
                records.append(FailedJobRecord.model_validate_json(row["payload"]))
            except ValidationError:
                logger.warning("Skipping unreadable failed record %s", row["job_id"])
        return records

    async def delete_failed_record(self, job_id: str) -> None:
        await self._execute("DELETE FROM failed_jobs WHERE job_id = ?", (job_id,))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute(self, sql: str, params: tuple[str, ...]) -> None:
        try:
            await self._conn.execute(sql, params)
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc

    async def _fetchall(self, sql: str, params: tuple[str, ...]) -> list[aiosqlite.Row]:
        try:
            cursor = await self._conn.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc
