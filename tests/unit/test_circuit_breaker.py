"""Unit tests for the circuit breaker.

Tests cover:
- Tripping on failure rate once the window holds enough requests.
- Trigger categories: authentication failures never trip the circuit.
- OPEN rejections, the cooldown, and the OPEN -> HALF_OPEN -> CLOSED path.
- A failed half-open probe re-opens the circuit.
- Window pruning by age, stats, health text, events, and the registry.
"""

from __future__ import annotations

import random

import pytest

from fakes import FakeClock
from transcribeflow.core.exceptions import CircuitOpenError, GatewayError
from transcribeflow.core.models import ErrorClassification
from transcribeflow.resilience.circuit_breaker import (
    BreakerEvent,
    BreakerEventKind,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from transcribeflow.resilience.classifier import classify


class _FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__()
        self.value = value

    def random(self) -> float:
        return self.value


def _config(**overrides: object) -> CircuitBreakerConfig:
    values: dict[str, object] = {
        "failure_threshold": 0.5,
        "success_threshold": 2,
        "open_timeout_s": 30.0,
        "window_size": 10,
        "window_time_s": 60.0,
        "minimum_requests": 3,
        "half_open_admission_ratio": 1.0,
    }
    values.update(overrides)
    return CircuitBreakerConfig.model_validate(values)


def _service_failure() -> ErrorClassification:
    return classify(GatewayError("speech-service", "boom", status_code=500))


def _auth_failure() -> ErrorClassification:
    return classify(GatewayError("speech-service", "bad key", status_code=401))


def _trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.config.minimum_requests):
        breaker.record_failure(_service_failure())


# ---------------------------------------------------------------------------
# Tripping
# ---------------------------------------------------------------------------


class TestTripping:
    def test_starts_closed(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.allow_request() is True

    def test_below_minimum_requests_does_not_trip(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        breaker.record_failure(_service_failure())
        breaker.record_failure(_service_failure())
        assert breaker.state is CircuitState.CLOSED

    def test_trips_at_failure_rate(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        breaker.record_success()
        breaker.record_failure(_service_failure())
        assert breaker.state is CircuitState.CLOSED
        breaker.record_failure(_service_failure())
        assert breaker.state is CircuitState.OPEN

    def test_three_failures_after_two_successes_trip_at_minimum_five(
        self, clock: FakeClock
    ) -> None:
        breaker = CircuitBreaker("svc", _config(minimum_requests=5), clock=clock)
        breaker.record_success()
        breaker.record_success()
        breaker.record_failure(_service_failure())
        breaker.record_failure(_service_failure())
        assert breaker.state is CircuitState.CLOSED
        breaker.record_failure(_service_failure())
        assert breaker.state is CircuitState.OPEN

    def test_low_failure_rate_stays_closed(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        for _ in range(4):
            breaker.record_success()
        breaker.record_failure(_service_failure())
        breaker.record_failure(_service_failure())
        assert breaker.state is CircuitState.CLOSED

    def test_auth_failures_never_trip(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        for _ in range(5):
            breaker.record_failure(_auth_failure())
        assert breaker.state is CircuitState.CLOSED
        assert breaker.stats().failed_calls == 5

    def test_old_outcomes_are_pruned(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        breaker.record_failure(_service_failure())
        breaker.record_failure(_service_failure())
        clock.advance(61)
        breaker.record_failure(_service_failure())
        assert breaker.state is CircuitState.CLOSED
        assert breaker.stats().total_calls == 1

    def test_window_size_is_bounded(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(window_size=4), clock=clock)
        for _ in range(10):
            breaker.record_success()
        assert breaker.stats().total_calls == 4


# ---------------------------------------------------------------------------
# Open and half-open
# ---------------------------------------------------------------------------


class TestRecovery:
    def test_open_rejects_until_timeout(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        _trip(breaker)

        assert breaker.allow_request() is False
        assert breaker.is_allowing_calls is False
        assert breaker.stats().rejected_calls == 1

        clock.advance(30)
        assert breaker.is_allowing_calls is True
        assert breaker.allow_request() is True
        assert breaker.state is CircuitState.HALF_OPEN

    def test_half_open_closes_after_successes(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        _trip(breaker)
        clock.advance(30)
        breaker.allow_request()

        breaker.record_success()
        assert breaker.state is CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_failure_reopens(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        _trip(breaker)
        clock.advance(30)
        breaker.allow_request()

        breaker.record_failure(_auth_failure())
        assert breaker.state is CircuitState.OPEN
        assert breaker.stats().time_until_next_attempt_s == pytest.approx(30.0)

    def test_half_open_admission_is_probabilistic(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker(
            "svc", _config(half_open_admission_ratio=0.1), clock=clock, rng=_FixedRandom(0.5)
        )
        _trip(breaker)
        clock.advance(30)

        # The transitioning call is always admitted.
        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

        breaker._rng = _FixedRandom(0.05)
        assert breaker.allow_request() is True

    @pytest.mark.asyncio
    async def test_call_raises_circuit_open(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        _trip(breaker)
        clock.advance(10)
        calls = 0

        async def op() -> str:
            nonlocal calls
            calls += 1
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(op)

        assert calls == 0
        assert exc_info.value.retry_after == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_call_records_outcomes(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)

        async def ok() -> str:
            return "fine"

        async def fail() -> str:
            raise GatewayError("speech-service", "boom", status_code=502)

        assert await breaker.call(ok) == "fine"
        with pytest.raises(GatewayError):
            await breaker.call(fail)

        stats = breaker.stats()
        assert stats.successful_calls == 1
        assert stats.failed_calls == 1
        assert stats.failure_rate == pytest.approx(0.5)
        assert stats.last_error == "[speech-service] boom"


# ---------------------------------------------------------------------------
# Administration and events
# ---------------------------------------------------------------------------


class TestAdministration:
    def test_events_are_published(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        seen: list[BreakerEvent] = []
        unsubscribe = breaker.subscribe(seen.append)

        _trip(breaker)
        breaker.allow_request()

        kinds = [e.kind for e in seen]
        assert kinds.count(BreakerEventKind.CALL_FAILURE) == 3
        assert BreakerEventKind.OPEN in kinds
        assert kinds[-1] is BreakerEventKind.CALL_REJECTED

        unsubscribe()
        breaker.record_success()
        assert seen[-1].kind is BreakerEventKind.CALL_REJECTED

    def test_failing_listener_does_not_break_breaker(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)

        def explode(event: BreakerEvent) -> None:
            raise RuntimeError("listener bug")

        breaker.subscribe(explode)
        _trip(breaker)
        assert breaker.state is CircuitState.OPEN

    def test_force_state_and_reset(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        breaker.force_state(CircuitState.OPEN)
        assert breaker.allow_request() is False

        breaker.reset()
        stats = breaker.stats()
        assert stats.state is CircuitState.CLOSED
        assert stats.rejected_calls == 0
        assert stats.total_calls == 0

    def test_health_messages(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker("svc", _config(), clock=clock)
        assert breaker.health() == (True, "svc is operating normally")
        _trip(breaker)
        healthy, message = breaker.health()
        assert healthy is False
        assert "next attempt in 30s" in message

    def test_registry_shares_breakers(self, clock: FakeClock) -> None:
        registry = CircuitBreakerRegistry(_config(), clock=clock)
        first = registry.get("svc")
        assert registry.get("svc") is first
        _trip(first)
        registry.get("other")

        assert registry.summary() == {"svc": "open", "other": "closed"}
        registry.reset_all()
        assert {b.state for b in registry} == {CircuitState.CLOSED}
