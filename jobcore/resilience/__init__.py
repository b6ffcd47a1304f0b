"""
Resilience primitives.
Contains backoff strategies, the retry engine and circuit breakers.
"""

from jobcore.resilience import retry_conditions
from jobcore.resilience.backoff import (
    DelayFunction,
    apply_jitter,
    exponential_backoff,
    fixed_delay,
    get_delay_function,
    linear_backoff,
    no_delay,
)
from jobcore.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerStats,
    CircuitOpenError,
    CircuitTimeoutError,
)
from jobcore.resilience.retry import RetryExhaustedError, retryable, with_retry

__all__ = [
    # Backoff
    "DelayFunction",
    "fixed_delay",
    "linear_backoff",
    "exponential_backoff",
    "no_delay",
    "apply_jitter",
    "get_delay_function",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitTimeoutError",
    # Retry
    "RetryExhaustedError",
    "with_retry",
    "retryable",
    "retry_conditions",
]
