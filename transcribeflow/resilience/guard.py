"""Single entry point for every outbound call to the speech service.

:class:`ServiceGuard` applies admission control first and the circuit
breaker second, so a request that waited in the rate limiter's queue still
gets a fresh breaker decision when its turn comes.  An open circuit is
checked before queueing too, so a blocked target does not consume rate
budget.

The scheduler, the progress tracker and the result collector share one
guard; the guard owns no state of its own beyond references to the shared
limiter and breaker registry.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Final, TypeVar

from transcribeflow.core.exceptions import CircuitOpenError
from transcribeflow.core.models import JobPriority
from transcribeflow.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from transcribeflow.resilience.rate_limiter import RateLimiter

__all__ = ["ServiceGuard", "DEFAULT_TARGET"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Breaker target name for the remote speech service.
DEFAULT_TARGET: Final[str] = "speech-service"


class ServiceGuard:
    """Rate limiter plus circuit breaker around one remote target.

    Args:
        rate_limiter: Shared admission control.
        breakers: Shared breaker registry.
        target: Breaker target name.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        breakers: CircuitBreakerRegistry,
        target: str = DEFAULT_TARGET,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.breakers = breakers
        self.target = target

    @property
    def breaker(self) -> CircuitBreaker:
        return self.breakers.get(self.target)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        source: str,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> T:
        """Run *operation* once under admission control and the breaker.

        Raises:
            CircuitOpenError: The breaker is open or rejected a half-open call.
            RateLimitedError: Admission control refused the request.
            Exception: Whatever *operation* raised.
        """
        breaker = self.breaker
        if not breaker.is_allowing_calls:
            stats = breaker.stats()
            raise CircuitOpenError(
                self.target, stats.state.value, stats.time_until_next_attempt_s
            )
        async with self.rate_limiter.slot(source, priority):
            return await breaker.call(operation)
