"""
Immutable configuration types for the lock manager, retry engine,
circuit breaker and dead letter queue.
"""

from collections.abc import Callable
from dataclasses import dataclass

from jobcore.constants import DEFAULT_MAX_LOCK_RETRY_DELAY_MS, BackoffStrategy

# Decides whether a failed attempt should be retried: (error, attempt) -> bool
RetryPredicate = Callable[[Exception, int], bool]

# Decides whether an error counts against a circuit breaker
ErrorFilter = Callable[[Exception], bool]


@dataclass(frozen=True)
class LockConfig:
    """
    Lock acquisition and lease configuration.

    Supplied per lock manager instance; individual fields can be overridden
    per acquire() call.
    """

    ttl_ms: int = 30_000
    retries: int = 3
    retry_delay_ms: int = 100
    exponential_backoff: bool = True
    max_retry_delay_ms: int = DEFAULT_MAX_LOCK_RETRY_DELAY_MS
    auto_extend_ms: int = 0

    def __post_init__(self) -> None:
        if self.ttl_ms <= 0:
            raise ValueError("ttl_ms must be greater than 0")
        if self.retries < 0:
            raise ValueError("retries must not be negative")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms must not be negative")
        if self.auto_extend_ms < 0:
            raise ValueError("auto_extend_ms must not be negative")


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry policy for a single operation.

    max_retries is the total number of attempts, including the first one.
    """

    max_retries: int = 3
    base_delay_ms: int = 1_000
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    factor: float = 2.0
    max_delay_ms: int = 30_000
    jitter: bool = False
    retry_predicate: RetryPredicate | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must not be negative")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds and timers for a circuit breaker."""

    failure_threshold: int = 5
    success_threshold: int = 3
    reset_timeout_ms: int = 30_000
    failure_window_ms: int = 60_000
    call_timeout_ms: int = 10_000
    volume_threshold: int = 10
    error_filter: ErrorFilter | None = None

    def __post_init__(self) -> None:
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be greater than 0")
        if self.success_threshold <= 0:
            raise ValueError("success_threshold must be greater than 0")
        if self.reset_timeout_ms <= 0:
            raise ValueError("reset_timeout_ms must be greater than 0")
        if self.call_timeout_ms <= 0:
            raise ValueError("call_timeout_ms must be greater than 0")


@dataclass(frozen=True)
class DeadLetterConfig:
    """Retention policy for dead letter entries."""

    retention_count: int = 1_000
    retention_ttl_ms: int = 7 * 24 * 60 * 60 * 1000
    write_retries: int = 3
    write_retry_delay_ms: int = 50

    def __post_init__(self) -> None:
        if self.retention_count <= 0:
            raise ValueError("retention_count must be greater than 0")
        if self.write_retries < 1:
            raise ValueError("write_retries must be at least 1")
        if self.write_retry_delay_ms < 0:
            raise ValueError("write_retry_delay_ms must not be negative")
