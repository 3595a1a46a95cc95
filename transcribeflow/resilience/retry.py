"""Retry coordination with strategy-shaped backoff.

:class:`RetryCoordinator` runs an async operation up to ``max_attempts``
times.  The attempt loop is a :class:`tenacity.AsyncRetrying` loop; the
pieces tenacity delegates to us are:

* **wait**: :func:`compute_delay` for the configured :class:`RetryStrategy`,
  perturbed by ``jitter`` and capped at ``max_delay_s``.
* **retry**: the classifier decides.  A non-retryable classification, or a
  category outside ``retryable_categories``, stops the loop immediately.
* **sleep**: the injected sleep, made interruptible by a cancellation event.

Delay per strategy (``n`` is the 1-based number of the attempt about to run;
the first attempt never waits)::

    none         0
    immediate    base_delay_s                     (0 by default)
    fixed        base_delay_s
    linear       base_delay_s * n
    exponential  base_delay_s * multiplier ** (n - 1)

Failures are never raised out of :meth:`RetryCoordinator.execute`; it returns
a :class:`RetryResult` carrying every :class:`AttemptRecord`.  Call
:meth:`RetryResult.unwrap` to get the value or re-raise the last error.

Typical usage::

    coordinator = RetryCoordinator(RetryPolicy.for_strategy(RetryStrategy.EXPONENTIAL))
    result = await coordinator.execute(lambda: gateway.submit(request))
    receipt = result.unwrap()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Final, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from transcribeflow.core import events
from transcribeflow.core.clock import Clock, Sleep, default_sleep
from transcribeflow.core.exceptions import AttemptTimeoutError, OperationCancelledError
from transcribeflow.core.models import ErrorCategory, ErrorClassification, RetryStrategy
from transcribeflow.resilience.classifier import classify

__all__ = [
    "RetryPolicy",
    "AttemptRecord",
    "RetryResult",
    "RetryCoordinator",
    "compute_delay",
    "estimate_retry_time",
    "should_retry",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]

# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

#: Categories retried unless a policy says otherwise.
DEFAULT_RETRYABLE_CATEGORIES: Final[frozenset[ErrorCategory]] = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.SERVICE,
        ErrorCategory.QUOTA,
        ErrorCategory.CIRCUIT_OPEN,
    }
)


class RetryPolicy(BaseModel):
    """How many times to try and how long to wait in between.

    Attributes:
        strategy: Shape of the backoff curve.
        max_attempts: Total attempts including the first.
        base_delay_s: Base delay in seconds.
        max_delay_s: Hard cap on any single delay.
        multiplier: Growth factor for exponential backoff.
        jitter: Fraction of the delay added as uniform noise in
            ``[-jitter/2, +jitter/2] * delay``.
        attempt_timeout_s: Per-attempt timeout, ``None`` to disable.
        retryable_categories: Categories that may be retried at all.
    """

    model_config = ConfigDict(frozen=True)

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    max_attempts: int = Field(default=3, ge=1)
    base_delay_s: float = Field(default=1.0, ge=0)
    max_delay_s: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: float = Field(default=0.1, ge=0, le=1)
    attempt_timeout_s: float | None = Field(default=60.0, gt=0)
    retryable_categories: frozenset[ErrorCategory] = DEFAULT_RETRYABLE_CATEGORIES

    @classmethod
    def for_strategy(cls, strategy: RetryStrategy, **overrides: object) -> RetryPolicy:
        """Return the default policy for *strategy*, with optional overrides."""
        values: dict[str, object] = {"strategy": strategy, **_STRATEGY_DEFAULTS[strategy]}
        values.update(overrides)
        return cls.model_validate(values)


_STRATEGY_DEFAULTS: Final[dict[RetryStrategy, dict[str, object]]] = {
    RetryStrategy.NONE: {"max_attempts": 1},
    RetryStrategy.IMMEDIATE: {
        "max_attempts": 3,
        "base_delay_s": 0.0,
        "max_delay_s": 1.0,
        "multiplier": 1.0,
        "jitter": 0.0,
    },
    RetryStrategy.FIXED: {"max_attempts": 3, "base_delay_s": 5.0, "max_delay_s": 5.0},
    RetryStrategy.LINEAR: {
        "max_attempts": 3,
        "base_delay_s": 2.0,
        "max_delay_s": 10.0,
        "multiplier": 1.0,
        "jitter": 0.2,
    },
    RetryStrategy.EXPONENTIAL: {
        "max_attempts": 5,
        "base_delay_s": 1.0,
        "max_delay_s": 60.0,
        "multiplier": 2.0,
        "jitter": 0.1,
    },
}


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait before the 1-based *attempt*.

    Args:
        attempt: Number of the attempt about to run.
        policy: The retry policy.
        rng: Source of jitter; ``None`` disables jitter.

    Returns:
        A delay in ``[0, policy.max_delay_s]``.
    """
    if policy.strategy is RetryStrategy.NONE or attempt <= 1:
        return 0.0

    match policy.strategy:
        case RetryStrategy.LINEAR:
            delay = policy.base_delay_s * attempt
        case RetryStrategy.EXPONENTIAL:
            delay = policy.base_delay_s * policy.multiplier ** (attempt - 1)
        case _:
            delay = policy.base_delay_s

    if rng is not None and policy.jitter > 0:
        delay += delay * policy.jitter * (rng.random() - 0.5)

    return max(0.0, min(delay, policy.max_delay_s))


def estimate_retry_time(policy: RetryPolicy) -> float:
    """Worst-case total delay across every retry of *policy*, ignoring jitter."""
    return sum(compute_delay(n, policy) for n in range(2, policy.max_attempts + 1))


def should_retry(classification: ErrorClassification, attempt: int, policy: RetryPolicy) -> bool:
    """Whether the coordinator may run another attempt after *attempt* failed."""
    if attempt >= policy.max_attempts:
        return False
    if classification.category not in policy.retryable_categories:
        return False
    return classification.retryable


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AttemptRecord:
    """Observability record for one attempt.

    Attributes:
        attempt_number: 1-based attempt number.
        success: Whether the attempt returned normally.
        delay_before_s: Seconds waited before this attempt.
        duration_s: Seconds the attempt itself took.
        error: The exception raised, if any.
        classification: Classification of *error*, if any.
        timestamp: When the attempt started.
    """

    attempt_number: int
    success: bool
    delay_before_s: float
    duration_s: float
    error: BaseException | None = None
    classification: ErrorClassification | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class RetryResult(Generic[T]):
    """Outcome of :meth:`RetryCoordinator.execute`.

    Attributes:
        success: ``True`` when some attempt returned normally.
        value: The returned value on success.
        error: The last exception on failure.
        classification: Classification of :attr:`error`.
        attempts: Every attempt, in order.
        total_time_s: Wall time from first attempt to completion.
        retries_exhausted: ``True`` when the last failure was still retryable
            but no attempts were left.
        cancelled: ``True`` when a cancellation signal ended the run.
        executed_at: When execution started.
    """

    success: bool
    value: T | None = None
    error: BaseException | None = None
    classification: ErrorClassification | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    total_time_s: float = 0.0
    retries_exhausted: bool = False
    cancelled: bool = False
    executed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    def unwrap(self) -> T:
        """Return :attr:`value`, or re-raise :attr:`error` on failure."""
        self.raise_for_failure()
        return self.value  # type: ignore[return-value]

    def raise_for_failure(self) -> None:
        """Re-raise the last error when the run did not succeed."""
        if not self.success:
            if self.error is not None:
                raise self.error
            raise OperationCancelledError("Operation was cancelled")


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class RetryCoordinator:
    """Drive repeated attempts of async operations.

    Args:
        policy: Default policy for :meth:`execute`.
        clock: Monotonic time source for durations.
        sleep: Coroutine used for inter-attempt delays.
        rng: Jitter source.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._clock = clock or time.monotonic
        self._sleep = sleep or default_sleep
        self._rng = rng or random.Random()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        operation: Operation[T],
        *,
        policy: RetryPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
        label: str = "operation",
    ) -> RetryResult[T]:
        """Run *operation* under *policy* (default: the coordinator's policy).

        Args:
            operation: Zero-argument coroutine function performing one attempt.
            policy: Overrides the coordinator's default policy.
            cancel_event: When set, aborts the pending delay or the in-flight
                attempt with :class:`OperationCancelledError`.
            label: Name used in log messages.

        Returns:
            A :class:`RetryResult` describing every attempt.
        """
        policy = policy or self._policy
        result: RetryResult[T] = RetryResult(success=False)
        started = self._clock()
        pending_delay = 0.0
        last_classification: ErrorClassification | None = None

        def _wait(rs: RetryCallState) -> float:
            nonlocal pending_delay
            pending_delay = compute_delay(rs.attempt_number + 1, policy, self._rng)
            return pending_delay

        def _retryable(exc: BaseException) -> bool:
            if isinstance(exc, OperationCancelledError) or last_classification is None:
                return False
            return (
                last_classification.retryable
                and last_classification.category in policy.retryable_categories
            )

        def _before_sleep(rs: RetryCallState) -> None:
            logger.warning(
                "%s: attempt %d/%d failed (%s). Retrying in %.2f s",
                label,
                rs.attempt_number,
                policy.max_attempts,
                last_classification.category if last_classification else "?",
                pending_delay,
                extra={"event": events.RETRY_ATTEMPT_FAILED},
            )

        async def _interruptible_sleep(seconds: float) -> None:
            await self._wait_or_cancel(self._sleep(seconds), cancel_event, "during delay")

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.max_attempts),
                wait=_wait,
                retry=retry_if_exception(_retryable),
                sleep=_interruptible_sleep,
                before_sleep=_before_sleep,
                reraise=True,
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    delay_before = pending_delay if number > 1 else 0.0
                    if cancel_event is not None and cancel_event.is_set():
                        raise OperationCancelledError("Operation was cancelled")
                    t0 = self._clock()
                    try:
                        value = await self._run_attempt(operation, policy, cancel_event)
                    except OperationCancelledError:
                        raise
                    except Exception as exc:
                        last_classification = classify(exc)
                        result.attempts.append(
                            AttemptRecord(
                                attempt_number=number,
                                success=False,
                                delay_before_s=delay_before,
                                duration_s=self._clock() - t0,
                                error=exc,
                                classification=last_classification,
                            )
                        )
                        raise
                    result.attempts.append(
                        AttemptRecord(
                            attempt_number=number,
                            success=True,
                            delay_before_s=delay_before,
                            duration_s=self._clock() - t0,
                        )
                    )
                    result.success = True
                    result.value = value
        except OperationCancelledError as exc:
            result.cancelled = True
            result.error = exc
            result.classification = classify(exc)
            logger.info("%s: cancelled after %d attempt(s)", label, len(result.attempts))
        except Exception as exc:  # noqa: BLE001
            result.error = exc
            result.classification = last_classification or classify(exc)
            result.retries_exhausted = (
                len(result.attempts) >= policy.max_attempts
                and result.classification.retryable
                and result.classification.category in policy.retryable_categories
            )
            logger.warning(
                "%s: giving up after %d attempt(s): %s",
                label,
                len(result.attempts),
                exc,
                extra={"event": events.RETRY_EXHAUSTED},
            )

        result.total_time_s = self._clock() - started
        return result

    async def execute_with_auto_strategy(
        self,
        operation: Operation[T],
        *,
        cancel_event: asyncio.Event | None = None,
        label: str = "operation",
    ) -> RetryResult[T]:
        """Try once, then retry with the strategy the first failure implies."""
        first = await self.execute(
            operation,
            policy=self._policy.model_copy(update={"max_attempts": 1}),
            cancel_event=cancel_event,
            label=label,
        )
        if first.success or first.cancelled or first.classification is None:
            return first

        policy = RetryPolicy.for_strategy(
            first.classification.retry_strategy,
            attempt_timeout_s=self._policy.attempt_timeout_s,
            retryable_categories=self._policy.retryable_categories,
        )
        if not should_retry(first.classification, 1, policy):
            return first

        try:
            await self._wait_or_cancel(
                self._sleep(compute_delay(2, policy, self._rng)), cancel_event, "during delay"
            )
        except OperationCancelledError as exc:
            first.cancelled = True
            first.error = exc
            return first

        rest = await self.execute(
            operation,
            policy=policy.model_copy(update={"max_attempts": policy.max_attempts - 1}),
            cancel_event=cancel_event,
            label=label,
        )
        rest.attempts = first.attempts + [
            AttemptRecord(
                attempt_number=a.attempt_number + 1,
                success=a.success,
                delay_before_s=a.delay_before_s,
                duration_s=a.duration_s,
                error=a.error,
                classification=a.classification,
                timestamp=a.timestamp,
            )
            for a in rest.attempts
        ]
        rest.executed_at = first.executed_at
        rest.total_time_s += first.total_time_s
        return rest

    async def execute_many(
        self,
        operations: Sequence[Operation[T]],
        *,
        concurrency: int = 3,
        policy: RetryPolicy | None = None,
    ) -> list[RetryResult[T]]:
        """Run *operations* with at most *concurrency* in flight.

        Returns:
            One :class:`RetryResult` per operation, in input order.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _one(index: int, op: Operation[T]) -> RetryResult[T]:
            async with semaphore:
                return await self.execute(op, policy=policy, label=f"operation[{index}]")

        return list(await asyncio.gather(*(_one(i, op) for i, op in enumerate(operations))))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_attempt(
        self,
        operation: Operation[T],
        policy: RetryPolicy,
        cancel_event: asyncio.Event | None,
    ) -> T:
        if cancel_event is None and policy.attempt_timeout_s is None:
            return await operation()

        task = asyncio.ensure_future(operation())
        waiters: set[asyncio.Future[object]] = {task}
        cancel_waiter: asyncio.Task[bool] | None = None
        if cancel_event is not None:
            cancel_waiter = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=policy.attempt_timeout_s, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return task.result()
            if cancel_waiter is not None and cancel_waiter in done:
                raise OperationCancelledError("Operation was cancelled")
            raise AttemptTimeoutError(policy.attempt_timeout_s or 0.0)
        finally:
            for pending in waiters:
                if not pending.done():
                    pending.cancel()
                    with contextlib.suppress(asyncio.CancelledError, Exception):
                        await pending

    @staticmethod
    async def _wait_or_cancel(
        awaitable: Awaitable[None],
        cancel_event: asyncio.Event | None,
        where: str,
    ) -> None:
        if cancel_event is None:
            await awaitable
            return
        if cancel_event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError(f"Operation was cancelled {where}")
        sleeper = asyncio.ensure_future(awaitable)
        canceller = asyncio.create_task(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (sleeper, canceller):
                if not t.done():
                    t.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await t
        if cancel_event.is_set():
            raise OperationCancelledError(f"Operation was cancelled {where}")
