"""
Retry engine.

Runs an async operation until it succeeds, the retry predicate rejects the
error, or the attempt budget is spent. Exhaustion raises
RetryExhaustedError; turning that into a dead letter entry is the caller's
job.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from functools import wraps
from typing import ParamSpec, TypeVar

from jobcore.resilience.backoff import apply_jitter, get_delay_function
from jobcore.resilience.circuit_breaker import CircuitBreaker
from jobcore.types.config import RetryConfig

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Called before each backoff sleep: (error, failed_attempt, delay_ms)
OnRetry = Callable[[Exception, int, float], None]
Sleep = Callable[[float], Awaitable[object]]


class RetryExhaustedError(Exception):
    """
    Raised when every allowed attempt failed with a retryable error.

    Always chained from the last attempt's error.
    """

    def __init__(
        self,
        last_error: Exception,
        attempts: int,
        errors: tuple[str, ...],
        first_failure_at: datetime,
        last_failure_at: datetime,
        operation: str = "operation",
    ):
        self.last_error = last_error
        self.attempts = attempts
        self.errors = errors
        self.first_failure_at = first_failure_at
        self.last_failure_at = last_failure_at
        self.operation = operation
        super().__init__(
            f"{operation} failed after {attempts} attempts. Last error: {last_error}"
        )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    circuit_breaker: CircuitBreaker | None = None,
    on_retry: OnRetry | None = None,
    operation: str = "operation",
    sleep: Sleep = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """
    Call fn with retries.

    Args:
        fn: Zero-argument coroutine function, called once per attempt.
        config: Retry policy; defaults to RetryConfig().
        circuit_breaker: When given, every attempt runs through breaker.fire().
            A rejection by an open circuit is an ordinary failed attempt.
        on_retry: Called with (error, attempt, delay_ms) before each backoff.
        operation: Name used in logs and in the exhaustion error.
        sleep: Awaitable sleep taking seconds.
        rng: Random source for jitter.

    Returns:
        The result of the first successful attempt.

    Raises:
        RetryExhaustedError: All config.max_retries attempts failed.
        Exception: The first error the retry predicate declined to retry,
            unchanged.
    """
    config = config or RetryConfig()
    delay_fn = get_delay_function(config)
    errors: list[str] = []
    first_failure_at: datetime | None = None

    for attempt in range(1, config.max_retries + 1):
        try:
            if circuit_breaker is not None:
                return await circuit_breaker.fire(fn)
            return await fn()
        except Exception as e:
            now = datetime.now(UTC)
            first_failure_at = first_failure_at or now
            errors.append(str(e) or type(e).__name__)

            if config.retry_predicate is not None and not config.retry_predicate(e, attempt):
                logger.warning(
                    "Non-retryable error",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "All retry attempts exhausted",
                    extra={
                        "operation": operation,
                        "attempts": attempt,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise RetryExhaustedError(
                    last_error=e,
                    attempts=attempt,
                    errors=tuple(errors),
                    first_failure_at=first_failure_at,
                    last_failure_at=now,
                    operation=operation,
                ) from e

            delay_ms = delay_fn(attempt - 1)
            if config.jitter:
                delay_ms = apply_jitter(delay_ms, rng)

            logger.warning(
                "Retrying after failure",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": config.max_retries,
                    "delay_ms": delay_ms,
                    "error": str(e),
                },
            )
            if on_retry is not None:
                on_retry(e, attempt, delay_ms)

            await sleep(delay_ms / 1000)

    msg = "Retry logic error: exhausted all attempts"
    raise RuntimeError(msg)


def retryable(
    config: RetryConfig | None = None,
    *,
    circuit_breaker: CircuitBreaker | None = None,
    on_retry: OnRetry | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Decorator form of with_retry.

    Example:
        @retryable(RetryConfig(max_retries=5, strategy=BackoffStrategy.LINEAR))
        async def fetch_rates(currency: str) -> dict: ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await with_retry(
                lambda: func(*args, **kwargs),
                config,
                circuit_breaker=circuit_breaker,
                on_retry=on_retry,
                operation=func.__name__,
            )

        return wrapper

    return decorator
