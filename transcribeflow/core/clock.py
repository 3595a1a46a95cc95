"""Injectable time sources.

Every component that measures time or waits takes its clock and sleep
function as constructor arguments, defaulting to the real ones.  Tests pass a
fake clock they advance by hand and a sleep that only records the requested
delay, which makes backoff schedules, breaker timeouts and polling intervals
fully deterministic.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

__all__ = ["Clock", "Sleep", "default_sleep", "utc_from_timestamp"]

#: Zero-argument callable returning seconds as a float.
Clock = Callable[[], float]

#: Coroutine function that suspends for the given number of seconds.
Sleep = Callable[[float], Awaitable[None]]


async def default_sleep(seconds: float) -> None:
    """Real sleep; resolved at call time so ``patch("asyncio.sleep")`` works."""
    await asyncio.sleep(seconds)


def utc_from_timestamp(ts: float) -> datetime:
    """Convert epoch seconds from a :data:`Clock` to an aware UTC datetime."""
    return datetime.fromtimestamp(ts, tz=UTC)
