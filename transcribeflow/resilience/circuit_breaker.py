"""Per-target circuit breaker with a rolling failure-rate window.

Stops calling a dependency that is failing, waits out a cooldown, then lets a
fraction of traffic through to probe whether it has recovered.

State machine
~~~~~~~~~~~~~
::

    CLOSED ──(window >= minimum_requests, failure rate >= threshold,
      ▲       triggering category in trigger set)──▶ OPEN
      │                                                │
      │                                                │ (open_timeout_s elapsed)
      │                                                ▼
      └──(success_threshold consecutive successes)── HALF_OPEN
                                                       │
                                                       │ (any failure)
                                                       ▼
                                                      OPEN

Rolling window
~~~~~~~~~~~~~~
Each admitted call leaves one outcome record.  Before every admission
decision the window is pruned by age (``window_time_s``) and it never holds
more than ``window_size`` records.  Calls rejected by the breaker itself are
counted separately and never enter the window.

Half-open admission
~~~~~~~~~~~~~~~~~~~
Probabilistic: each call is admitted with probability
``half_open_admission_ratio``.  The call that performs the OPEN → HALF_OPEN
transition is always admitted, so recovery never waits on the dice.

Thread-safety
~~~~~~~~~~~~~
Plain in-process state without locking.  Safe for single-threaded
``asyncio`` use: every method runs to completion without awaiting.

Typical usage::

    registry = CircuitBreakerRegistry(CircuitBreakerConfig())
    breaker = registry.get("speech-service")

    status = await breaker.call(lambda: client.query_status(external_id))
"""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Final, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from transcribeflow.core import events
from transcribeflow.core.clock import Clock
from transcribeflow.core.exceptions import CircuitOpenError
from transcribeflow.core.models import ErrorCategory, ErrorClassification
from transcribeflow.core.observers import Listener, ObserverList
from transcribeflow.resilience.classifier import classify

__all__ = [
    "CircuitState",
    "BreakerEventKind",
    "BreakerEvent",
    "CircuitBreakerConfig",
    "CircuitBreakerStats",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Categories whose failures may trip a closed circuit.
_DEFAULT_TRIGGER_CATEGORIES: Final[frozenset[ErrorCategory]] = frozenset(
    {ErrorCategory.SERVICE, ErrorCategory.NETWORK, ErrorCategory.UNKNOWN}
)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class CircuitState(StrEnum):
    """Possible states for a circuit breaker."""

    CLOSED = "closed"
    """Normal operation; every call passes."""

    OPEN = "open"
    """Dependency is failing; calls are rejected until the timeout elapses."""

    HALF_OPEN = "half_open"
    """Cooldown elapsed; a fraction of calls probe the dependency."""


class BreakerEventKind(StrEnum):
    OPEN = "open"
    CLOSE = "close"
    HALF_OPEN = "half_open"
    CALL_SUCCESS = "call_success"
    CALL_FAILURE = "call_failure"
    CALL_REJECTED = "call_rejected"


@dataclass(frozen=True)
class BreakerEvent:
    """Event published to breaker subscribers."""

    kind: BreakerEventKind
    target: str
    state: CircuitState
    classification: ErrorClassification | None = None
    duration_s: float = 0.0


class CircuitBreakerConfig(BaseModel):
    """Tuning for one circuit breaker.

    Attributes:
        failure_threshold: Failure rate in ``[0, 1]`` that trips the circuit.
        success_threshold: Consecutive half-open successes needed to close.
        open_timeout_s: Seconds the circuit stays OPEN before probing.
        window_size: Maximum number of outcomes kept in the rolling window.
        window_time_s: Maximum age of an outcome in the rolling window.
        minimum_requests: Outcomes required before the rate is trusted.
        trigger_categories: Categories whose failures may trip the circuit.
        half_open_admission_ratio: Probability a half-open call is admitted.
    """

    model_config = ConfigDict(frozen=True)

    failure_threshold: float = Field(default=0.5, gt=0, le=1)
    success_threshold: int = Field(default=3, ge=1)
    open_timeout_s: float = Field(default=60.0, gt=0)
    window_size: int = Field(default=10, ge=1)
    window_time_s: float = Field(default=60.0, gt=0)
    minimum_requests: int = Field(default=5, ge=1)
    trigger_categories: frozenset[ErrorCategory] = _DEFAULT_TRIGGER_CATEGORIES
    half_open_admission_ratio: float = Field(default=0.1, gt=0, le=1)


@dataclass(frozen=True)
class CircuitBreakerStats:
    """Point-in-time view of one breaker."""

    target: str
    state: CircuitState
    failure_rate: float
    total_calls: int
    failed_calls: int
    successful_calls: int
    rejected_calls: int
    consecutive_successes: int
    time_since_state_change_s: float
    time_until_next_attempt_s: float
    last_error: str | None


@dataclass(frozen=True)
class _Outcome:
    at: float
    success: bool
    category: ErrorCategory | None


# ---------------------------------------------------------------------------
# Breaker
# ---------------------------------------------------------------------------


class CircuitBreaker:
    """Circuit breaker guarding one target.

    Args:
        target: Name of the protected dependency.
        config: Breaker tuning.
        clock: Monotonic time source.  Override in tests.
        rng: Source of half-open admission decisions.  Override in tests.
    """

    def __init__(
        self,
        target: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.target = target
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or time.monotonic
        self._rng = rng or random.Random()
        self._observers: ObserverList[BreakerEvent] = ObserverList(f"breaker[{target}]")
        self._window: deque[_Outcome] = deque(maxlen=self.config.window_size)
        self._state = CircuitState.CLOSED
        self._state_changed_at = self._clock()
        self._consecutive_successes = 0
        self._rejected = 0
        self._last_error: str | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_allowing_calls(self) -> bool:
        """``False`` only while OPEN with cooldown remaining."""
        if self._state is not CircuitState.OPEN:
            return True
        return self._time_until_half_open() <= 0

    def subscribe(self, listener: Listener[BreakerEvent]) -> Callable[[], None]:
        """Receive :class:`BreakerEvent` notifications.  Returns an unsubscribe."""
        return self._observers.subscribe(listener)

    def stats(self) -> CircuitBreakerStats:
        now = self._clock()
        self._prune(now)
        failed = sum(1 for o in self._window if not o.success)
        total = len(self._window)
        return CircuitBreakerStats(
            target=self.target,
            state=self._state,
            failure_rate=failed / total if total else 0.0,
            total_calls=total,
            failed_calls=failed,
            successful_calls=total - failed,
            rejected_calls=self._rejected,
            consecutive_successes=self._consecutive_successes,
            time_since_state_change_s=now - self._state_changed_at,
            time_until_next_attempt_s=max(0.0, self._time_until_half_open()),
            last_error=self._last_error,
        )

    def health(self) -> tuple[bool, str]:
        """Return ``(healthy, message)`` for dashboards and CLI output."""
        stats = self.stats()
        match stats.state:
            case CircuitState.CLOSED:
                return True, f"{self.target} is operating normally"
            case CircuitState.HALF_OPEN:
                return False, f"{self.target} is recovering; probing with limited traffic"
            case CircuitState.OPEN:
                return False, (
                    f"{self.target} is unavailable; next attempt in "
                    f"{stats.time_until_next_attempt_s:.0f}s"
                )

    # ------------------------------------------------------------------
    # Admission and outcomes
    # ------------------------------------------------------------------

    def allow_request(self) -> bool:
        """Decide whether the next call may proceed.

        Rejections are counted and published as ``call_rejected``.
        """
        now = self._clock()
        self._prune(now)

        if self._state is CircuitState.CLOSED:
            return True

        if self._state is CircuitState.OPEN:
            if now - self._state_changed_at >= self.config.open_timeout_s:
                self._transition(CircuitState.HALF_OPEN, now)
                return True
            self._reject()
            return False

        if self._rng.random() < self.config.half_open_admission_ratio:
            return True
        self._reject()
        return False

    def record_success(self, duration_s: float = 0.0) -> None:
        now = self._clock()
        self._prune(now)
        self._window.append(_Outcome(now, True, None))
        self._consecutive_successes += 1
        self._emit(BreakerEventKind.CALL_SUCCESS, duration_s=duration_s)

        if (
            self._state is CircuitState.HALF_OPEN
            and self._consecutive_successes >= self.config.success_threshold
        ):
            self._transition(CircuitState.CLOSED, now)

    def record_failure(self, classification: ErrorClassification, duration_s: float = 0.0) -> None:
        now = self._clock()
        self._prune(now)
        self._window.append(_Outcome(now, False, classification.category))
        self._consecutive_successes = 0
        self._last_error = classification.message
        self._emit(BreakerEventKind.CALL_FAILURE, classification, duration_s)

        if self._state is CircuitState.HALF_OPEN:
            logger.warning("%s: probe failed while half-open; re-opening", self.target)
            self._transition(CircuitState.OPEN, now)
            return

        if self._state is CircuitState.CLOSED and self._should_trip(classification):
            self._transition(CircuitState.OPEN, now)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* through the breaker.

        Raises:
            CircuitOpenError: When the breaker rejects the call.
            Exception: Whatever *operation* raised, after recording it.
        """
        if not self.allow_request():
            raise CircuitOpenError(self.target, self._state.value, self._retry_after())

        started = self._clock()
        try:
            value = await operation()
        except Exception as exc:
            self.record_failure(classify(exc), self._clock() - started)
            raise
        self.record_success(self._clock() - started)
        return value

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def force_state(self, state: CircuitState) -> None:
        """Move the breaker to *state* regardless of its window."""
        self._transition(state, self._clock())

    def reset(self) -> None:
        """Clear the window and counters and close the circuit."""
        self._window.clear()
        self._rejected = 0
        self._last_error = None
        self._transition(CircuitState.CLOSED, self._clock())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prune(self, now: float) -> None:
        horizon = now - self.config.window_time_s
        while self._window and self._window[0].at <= horizon:
            self._window.popleft()

    def _should_trip(self, classification: ErrorClassification) -> bool:
        if classification.category not in self.config.trigger_categories:
            return False
        total = len(self._window)
        if total < self.config.minimum_requests:
            return False
        failed = sum(1 for o in self._window if not o.success)
        return failed / total >= self.config.failure_threshold

    def _time_until_half_open(self) -> float:
        if self._state is not CircuitState.OPEN:
            return 0.0
        return self.config.open_timeout_s - (self._clock() - self._state_changed_at)

    def _retry_after(self) -> float:
        if self._state is CircuitState.OPEN:
            return max(0.0, self._time_until_half_open())
        return self.config.open_timeout_s * self.config.half_open_admission_ratio

    def _reject(self) -> None:
        self._rejected += 1
        logger.debug(
            "%s: call rejected (circuit %s)",
            self.target,
            self._state,
            extra={"event": events.CIRCUIT_REJECTED},
        )
        self._emit(BreakerEventKind.CALL_REJECTED)

    def _transition(self, state: CircuitState, now: float) -> None:
        previous = self._state
        self._state = state
        self._state_changed_at = now
        self._consecutive_successes = 0

        if state is CircuitState.OPEN:
            logger.warning(
                "Circuit OPEN for %s (was %s); blocking calls for %.0f s",
                self.target,
                previous,
                self.config.open_timeout_s,
                extra={"event": events.CIRCUIT_OPEN},
            )
            self._emit(BreakerEventKind.OPEN)
        elif state is CircuitState.HALF_OPEN:
            logger.info(
                "Circuit HALF_OPEN for %s; probing with %.0f%% of traffic",
                self.target,
                self.config.half_open_admission_ratio * 100,
                extra={"event": events.CIRCUIT_HALF_OPEN},
            )
            self._emit(BreakerEventKind.HALF_OPEN)
        else:
            logger.info(
                "Circuit CLOSED for %s (was %s)",
                self.target,
                previous,
                extra={"event": events.CIRCUIT_CLOSED},
            )
            self._emit(BreakerEventKind.CLOSE)

    def _emit(
        self,
        kind: BreakerEventKind,
        classification: ErrorClassification | None = None,
        duration_s: float = 0.0,
    ) -> None:
        self._observers.emit(
            BreakerEvent(kind, self.target, self._state, classification, duration_s)
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class CircuitBreakerRegistry:
    """One :class:`CircuitBreaker` per target, created lazily.

    Owned by the scheduler so every caller of a target shares one breaker.

    Args:
        config: Tuning applied to every breaker the registry creates.
        clock: Monotonic time source passed to each breaker.
        rng: Random source passed to each breaker.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._rng = rng
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, target: str) -> CircuitBreaker:
        """Return the breaker for *target*, creating it on first use."""
        if target not in self._breakers:
            self._breakers[target] = CircuitBreaker(
                target, self._config, clock=self._clock, rng=self._rng
            )
        return self._breakers[target]

    def __iter__(self) -> Iterator[CircuitBreaker]:
        return iter(self._breakers.values())

    def summary(self) -> dict[str, str]:
        """Return ``{target: state}`` for every tracked breaker."""
        return {t: b.state.value for t, b in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
