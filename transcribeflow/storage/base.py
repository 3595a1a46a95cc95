"""Persistence store contract.

Optional collaborator that keeps :class:`ManagedJob` snapshots and
:class:`FailedJobRecord` objects across process restarts.  The scheduler and
the recovery orchestrator log store failures and carry on; persistence never
decides whether a job succeeds.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from transcribeflow.core.models import FailedJobRecord, ManagedJob

__all__ = ["PersistenceStore"]


class PersistenceStore(ABC):
    """Load and save job snapshots and failed-job records."""

    @abstractmethod
    async def save_job(self, job: ManagedJob) -> None:
        """Insert or replace the snapshot of *job*."""

    @abstractmethod
    async def load_jobs(self, *, include_terminal: bool = False) -> list[ManagedJob]:
        """Return stored snapshots, non-terminal ones only by default."""

    @abstractmethod
    async def delete_job(self, job_id: str) -> None:
        """Remove the snapshot of *job_id* if present."""

    @abstractmethod
    async def save_failed_record(self, record: FailedJobRecord) -> None:
        """Insert or replace *record*."""

    @abstractmethod
    async def load_failed_records(self) -> list[FailedJobRecord]:
        """Return every stored failed-job record, oldest failure first."""

    @abstractmethod
    async def delete_failed_record(self, job_id: str) -> None:
        """Remove the record of *job_id* if present."""
