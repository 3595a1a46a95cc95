"""Bounded-priority job queue.

Orders jobs by tier (``urgent > high > normal > low``) and, within a tier, by
``queued_at`` with insertion order breaking exact ties.  Supports removal by
id for cancellation.  Capacity is enforced by the scheduler, not here.
"""

from __future__ import annotations

import bisect
import itertools
from collections.abc import Iterator
from datetime import datetime

from transcribeflow.core.models import JobPriority, ManagedJob

__all__ = ["PriorityJobQueue"]

_SortKey = tuple[int, datetime, int]


class PriorityJobQueue:
    """Priority queue of :class:`ManagedJob` snapshots keyed by job id."""

    def __init__(self) -> None:
        self._keys: list[tuple[_SortKey, str]] = []
        self._jobs: dict[str, ManagedJob] = {}
        self._key_of: dict[str, _SortKey] = {}
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __iter__(self) -> Iterator[ManagedJob]:
        return (self._jobs[job_id] for _, job_id in self._keys)

    def push(self, job: ManagedJob) -> None:
        if job.job_id in self._jobs:
            raise ValueError(f"Job {job.job_id!r} is already queued")
        key = (job.priority.rank, job.queued_at, next(self._seq))
        bisect.insort(self._keys, (key, job.job_id))
        self._jobs[job.job_id] = job
        self._key_of[job.job_id] = key

    def pop(self) -> ManagedJob | None:
        """Remove and return the highest-priority, oldest job."""
        if not self._keys:
            return None
        _, job_id = self._keys.pop(0)
        del self._key_of[job_id]
        return self._jobs.pop(job_id)

    def peek(self) -> ManagedJob | None:
        return self._jobs[self._keys[0][1]] if self._keys else None

    def get(self, job_id: str) -> ManagedJob | None:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> ManagedJob | None:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return None
        key = self._key_of.pop(job_id)
        index = bisect.bisect_left(self._keys, (key, job_id))
        del self._keys[index]
        return job

    def size_by_priority(self) -> dict[JobPriority, int]:
        counts = dict.fromkeys(JobPriority, 0)
        for job in self._jobs.values():
            counts[job.priority] += 1
        return counts

    def clear(self) -> list[ManagedJob]:
        jobs = list(self)
        self._keys.clear()
        self._jobs.clear()
        self._key_of.clear()
        return jobs
