"""Error classification, retries, circuit breaking, rate limiting, and recovery."""

from transcribeflow.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from transcribeflow.resilience.classifier import classify, classify_many
from transcribeflow.resilience.guard import ServiceGuard
from transcribeflow.resilience.rate_limiter import RateLimiter, RateLimiterConfig, optimal_limits
from transcribeflow.resilience.recovery import (
    RecoveryAction,
    RecoveryConfig,
    RecoveryEvent,
    RecoveryOrchestrator,
)
from transcribeflow.resilience.retry import RetryCoordinator, RetryPolicy, RetryResult

__all__ = [
    # Classification
    "classify",
    "classify_many",
    # Retry
    "RetryPolicy",
    "RetryResult",
    "RetryCoordinator",
    # Circuit breaker
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    # Rate limiting
    "RateLimiterConfig",
    "RateLimiter",
    "optimal_limits",
    "ServiceGuard",
    # Recovery
    "RecoveryConfig",
    "RecoveryAction",
    "RecoveryEvent",
    "RecoveryOrchestrator",
]
