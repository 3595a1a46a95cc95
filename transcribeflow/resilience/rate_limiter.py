"""Admission control for outbound calls to the speech service.

Three sliding windows (minute, hour, day) plus a cap on calls in flight.  A
request that fits under every limit is admitted immediately; otherwise it
waits in a priority-ordered queue until a sweep finds capacity for it, its
timeout expires, or the queue is cleared.

Queue order
~~~~~~~~~~~
Higher :class:`~transcribeflow.core.models.JobPriority` first; FIFO within a
tier.  The sweep only ever admits the head of the queue, so a waiting
high-priority request is never overtaken by a later low-priority one.

Adaptive scaling
~~~~~~~~~~~~~~~~
:meth:`RateLimiter.update_quota` reports how much of the remote quota has
been used.  Every window limit is scaled by::

    usage >= 90%   x 0.1
    usage >= 70%   x 0.5
    usage >= 50%   x 0.8
    otherwise      x 1.0

Scaled limits never drop below one request per window.

Refusals (queue full, queue timeout, queue cleared, queuing disabled) raise
:class:`~transcribeflow.core.exceptions.RateLimitedError`, which classifies as
a retryable quota failure with a suggested ``retry_after``.

Typical usage::

    limiter = RateLimiter(RateLimiterConfig())
    limiter.start()

    async with limiter.slot("status", JobPriority.HIGH):
        report = await client.query_status(external_id)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
import uuid
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

from transcribeflow.core import events
from transcribeflow.core.clock import Clock, Sleep, default_sleep
from transcribeflow.core.exceptions import RateLimitedError
from transcribeflow.core.models import JobPriority

__all__ = [
    "RateLimiterConfig",
    "Admission",
    "RateLimiterStats",
    "RateLimiter",
    "optimal_limits",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_MINUTE: Final[float] = 60.0
_HOUR: Final[float] = 3600.0
_DAY: Final[float] = 86400.0

#: Smoothing factor of the average queue-wait moving average.
_QUEUE_TIME_ALPHA: Final[float] = 0.1

#: Suggested retry-after when the minute window is not the bottleneck.
_DEFAULT_RETRY_AFTER: Final[float] = 5.0

#: (usage threshold, multiplier), checked in order.
_ADAPTIVE_STEPS: Final[tuple[tuple[float, float], ...]] = ((0.9, 0.1), (0.7, 0.5), (0.5, 0.8))

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimiterConfig(BaseModel):
    """Limits and queueing behaviour.

    Attributes:
        requests_per_minute: Admissions allowed in any 60 s window.
        requests_per_hour: Admissions allowed in any hour.
        requests_per_day: Admissions allowed in any day.
        max_concurrent: Admitted requests that may be in flight at once.
        enable_queuing: Queue requests that cannot be admitted immediately.
        max_queue_size: Queue capacity.
        queue_timeout_s: Maximum time a request waits in the queue.
        sweep_interval_s: Interval of the background admission sweep.
        adaptive: Honour :meth:`RateLimiter.update_quota`.
    """

    model_config = ConfigDict(frozen=True)

    requests_per_minute: int = Field(default=20, ge=1)
    requests_per_hour: int = Field(default=1000, ge=1)
    requests_per_day: int = Field(default=10000, ge=1)
    max_concurrent: int = Field(default=5, ge=1)
    enable_queuing: bool = True
    max_queue_size: int = Field(default=100, ge=0)
    queue_timeout_s: float = Field(default=30.0, gt=0)
    sweep_interval_s: float = Field(default=0.1, gt=0)
    adaptive: bool = True

    @classmethod
    def for_long_media(cls) -> RateLimiterConfig:
        """Few, slow jobs: long recordings where each call is expensive."""
        return cls(
            requests_per_minute=10,
            requests_per_hour=500,
            requests_per_day=5000,
            max_concurrent=3,
            max_queue_size=50,
            queue_timeout_s=60.0,
        )

    @classmethod
    def for_high_volume(cls) -> RateLimiterConfig:
        """Many short jobs against a generous subscription tier."""
        return cls(
            requests_per_minute=50,
            requests_per_hour=2000,
            requests_per_day=20000,
            max_concurrent=10,
            max_queue_size=200,
        )


def optimal_limits(daily_quota: int) -> tuple[int, int, int]:
    """Derive ``(per_minute, per_hour, per_day)`` limits from a daily quota.

    Plans for 80% of the quota so other clients of the same subscription
    keep some headroom.
    """
    per_day = math.floor(daily_quota * 0.8)
    per_hour = math.floor(per_day / 24)
    per_minute = max(1, math.floor(per_hour / 60))
    return per_minute, max(1, per_hour), max(1, per_day)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Admission:
    """Token proving a request was admitted.  Pass it to :meth:`RateLimiter.release`."""

    request_id: str
    source: str
    priority: JobPriority
    admitted_at: float
    waited_s: float = 0.0


@dataclass
class _Waiter:
    request_id: str
    source: str
    priority: JobPriority
    enqueued_at: float
    deadline: float
    future: asyncio.Future[Admission]


@dataclass(frozen=True)
class RateLimiterStats:
    total_requests: int
    allowed_requests: int
    rate_limited_requests: int
    queued_requests: int
    queue_depth: int
    average_queue_time_s: float
    requests_last_minute: int
    requests_last_hour: int
    requests_last_day: int
    active_requests: int
    adaptive_multiplier: float


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Sliding-window admission control with a priority wait queue.

    Args:
        config: Limits and queue behaviour.
        clock: Monotonic time source.  Override in tests.
        sleep: Coroutine used by the background sweep loop.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        *,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.config = config or RateLimiterConfig()
        self._clock = clock or time.monotonic
        self._sleep = sleep or default_sleep
        self._history: deque[float] = deque()
        self._queue: list[_Waiter] = []
        self._active = 0
        self._multiplier = 1.0
        self._sweeper: asyncio.Task[None] | None = None
        self._reset_counters()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def try_acquire(
        self,
        source: str = "unknown",
        priority: JobPriority = JobPriority.NORMAL,
    ) -> Admission | None:
        """Admit immediately or return ``None``; never queues."""
        self._total += 1
        now = self._clock()
        if not self._queue and self._has_capacity(now):
            return self._admit(source, priority, now)
        self._rate_limited += 1
        logger.debug("Request from %s refused without queueing", source)
        return None

    async def acquire(
        self,
        source: str = "unknown",
        priority: JobPriority = JobPriority.NORMAL,
    ) -> Admission:
        """Wait for admission.

        Raises:
            RateLimitedError: Queue full, queuing disabled, queue timeout, or
                queue cleared while waiting.
        """
        self._total += 1
        now = self._clock()
        if not self._queue and self._has_capacity(now):
            return self._admit(source, priority, now)

        if not self.config.enable_queuing:
            raise self._refuse("Request rejected and queuing is disabled", source)
        if len(self._queue) >= self.config.max_queue_size:
            raise self._refuse("Queue is full", source)

        waiter = _Waiter(
            request_id=uuid.uuid4().hex,
            source=source,
            priority=priority,
            enqueued_at=now,
            deadline=now + self.config.queue_timeout_s,
            future=asyncio.get_running_loop().create_future(),
        )
        self._enqueue(waiter)
        self._queued += 1
        logger.debug(
            "Request from %s queued at depth %d (priority %s)",
            source,
            len(self._queue),
            priority,
            extra={"event": events.RATE_QUEUED},
        )
        self.sweep()

        try:
            return await asyncio.wait_for(waiter.future, timeout=self.config.queue_timeout_s)
        except TimeoutError:
            if waiter in self._queue:
                self._queue.remove(waiter)
            raise self._refuse("Queue timeout", source) from None
        except asyncio.CancelledError:
            if waiter in self._queue:
                self._queue.remove(waiter)
            raise

    def release(self, admission: Admission | None = None) -> None:
        """Mark an admitted request finished and let the queue advance."""
        self._active = max(0, self._active - 1)
        self.sweep()

    @asynccontextmanager
    async def slot(
        self,
        source: str = "unknown",
        priority: JobPriority = JobPriority.NORMAL,
    ) -> AsyncIterator[Admission]:
        """``async with`` form of :meth:`acquire` / :meth:`release`."""
        admission = await self.acquire(source, priority)
        try:
            yield admission
        finally:
            self.release(admission)

    def sweep(self) -> int:
        """Expire timed-out waiters and admit queue heads while capacity allows.

        Returns:
            Number of waiters admitted.
        """
        now = self._clock()
        for waiter in [w for w in self._queue if w.deadline <= now or w.future.done()]:
            self._queue.remove(waiter)
            if not waiter.future.done():
                waiter.future.set_exception(self._refuse("Queue timeout", waiter.source))

        admitted = 0
        while self._queue and self._has_capacity(now):
            waiter = self._queue.pop(0)
            waited = now - waiter.enqueued_at
            self._average_wait = (
                self._average_wait * (1 - _QUEUE_TIME_ALPHA) + waited * _QUEUE_TIME_ALPHA
            )
            admission = self._admit(waiter.source, waiter.priority, now, waited)
            waiter.future.set_result(admission)
            admitted += 1
        return admitted

    # ------------------------------------------------------------------
    # Adaptive scaling
    # ------------------------------------------------------------------

    def update_quota(self, used: int, limit: int) -> None:
        """Report remote quota usage; rescales limits when adaptive."""
        if not self.config.adaptive or limit <= 0:
            return
        usage = used / limit
        multiplier = next((m for threshold, m in _ADAPTIVE_STEPS if usage >= threshold), 1.0)
        if multiplier != self._multiplier:
            logger.info(
                "Quota usage %.0f%%; rate multiplier %.1f -> %.1f",
                usage * 100,
                self._multiplier,
                multiplier,
                extra={"event": events.RATE_ADAPTED},
            )
            self._multiplier = multiplier
        self.sweep()

    @property
    def multiplier(self) -> float:
        return self._multiplier

    def retry_after(self) -> float:
        """Suggested seconds before a refused caller should try again."""
        now = self._clock()
        in_minute = [t for t in self._history if t > now - _MINUTE]
        if in_minute and len(in_minute) >= self._limit(self.config.requests_per_minute):
            return max(1.0, in_minute[0] + _MINUTE - now)
        return _DEFAULT_RETRY_AFTER

    # ------------------------------------------------------------------
    # Observability and administration
    # ------------------------------------------------------------------

    def stats(self) -> RateLimiterStats:
        now = self._clock()
        self._prune(now)
        return RateLimiterStats(
            total_requests=self._total,
            allowed_requests=self._allowed,
            rate_limited_requests=self._rate_limited,
            queued_requests=self._queued,
            queue_depth=len(self._queue),
            average_queue_time_s=self._average_wait,
            requests_last_minute=self._count_since(now - _MINUTE),
            requests_last_hour=self._count_since(now - _HOUR),
            requests_last_day=len(self._history),
            active_requests=self._active,
            adaptive_multiplier=self._multiplier,
        )

    def reset_stats(self) -> None:
        """Zero the counters; windows and the queue are left alone."""
        self._reset_counters()

    def clear_queue(self) -> int:
        """Reject every waiter with "Queue cleared".  Returns how many."""
        waiters, self._queue = self._queue, []
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(self._refuse("Queue cleared", waiter.source))
        return len(waiters)

    def start(self) -> None:
        """Start the background sweep loop on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="rate-limiter-sweep")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reset_counters(self) -> None:
        self._total = 0
        self._allowed = 0
        self._rate_limited = 0
        self._queued = 0
        self._average_wait = 0.0

    async def _sweep_loop(self) -> None:
        while True:
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                logger.error("Rate limiter sweep failed", exc_info=True)
            await self._sleep(self.config.sweep_interval_s)

    def _limit(self, nominal: int) -> int:
        if not self.config.adaptive:
            return nominal
        return max(1, math.floor(nominal * self._multiplier))

    def _prune(self, now: float) -> None:
        horizon = now - _DAY
        while self._history and self._history[0] <= horizon:
            self._history.popleft()

    def _count_since(self, horizon: float) -> int:
        count = 0
        for ts in reversed(self._history):
            if ts <= horizon:
                break
            count += 1
        return count

    def _has_capacity(self, now: float) -> bool:
        if self._active >= self.config.max_concurrent:
            return False
        self._prune(now)
        return (
            self._count_since(now - _MINUTE) < self._limit(self.config.requests_per_minute)
            and self._count_since(now - _HOUR) < self._limit(self.config.requests_per_hour)
            and len(self._history) < self._limit(self.config.requests_per_day)
        )

    def _admit(
        self, source: str, priority: JobPriority, now: float, waited: float = 0.0
    ) -> Admission:
        self._history.append(now)
        self._active += 1
        self._allowed += 1
        return Admission(uuid.uuid4().hex, source, priority, now, waited)

    def _enqueue(self, waiter: _Waiter) -> None:
        rank = waiter.priority.rank
        for index, queued in enumerate(self._queue):
            if queued.priority.rank > rank:
                self._queue.insert(index, waiter)
                return
        self._queue.append(waiter)

    def _refuse(self, reason: str, source: str) -> RateLimitedError:
        self._rate_limited += 1
        retry_after = self.retry_after()
        logger.warning(
            "Rate limited request from %s: %s (retry after %.0f s)",
            source,
            reason,
            retry_after,
            extra={"event": events.RATE_LIMITED},
        )
        return RateLimitedError(reason, retry_after)
