"""
Unit tests for the retry engine.
"""

import pytest

from jobcore.constants import BackoffStrategy
from jobcore.resilience import retry_conditions
from jobcore.resilience.circuit_breaker import CircuitBreaker, CircuitOpenError
from jobcore.resilience.retry import RetryExhaustedError, retryable, with_retry
from jobcore.types import CircuitBreakerConfig, RetryConfig


class FlakyOperation:
    """Fails a set number of times, then returns a value."""

    def __init__(self, failures: int, error: Exception | None = None):
        self.failures = failures
        self.error = error or ConnectionError("connection reset")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return f"done after {self.calls}"


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, sleeper):
        """Test no sleep happens when the first attempt succeeds."""
        operation = FlakyOperation(failures=0)

        result = await with_retry(operation, RetryConfig(), sleep=sleeper)

        assert result == "done after 1"
        assert operation.calls == 1
        assert sleeper.calls == []

    @pytest.mark.asyncio
    async def test_succeeds_after_retries_with_backoff(self, sleeper):
        """Test delays follow the exponential schedule between attempts."""
        operation = FlakyOperation(failures=2)
        config = RetryConfig(max_retries=3, base_delay_ms=100)

        result = await with_retry(operation, config, sleep=sleeper)

        assert result == "done after 3"
        assert sleeper.calls == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_exhaustion(self, sleeper):
        """Test exhausting every attempt raises RetryExhaustedError."""
        operation = FlakyOperation(failures=10)
        config = RetryConfig(max_retries=3, base_delay_ms=10)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(operation, config, operation="sync-invoices", sleep=sleeper)

        exhausted = exc_info.value
        assert operation.calls == 3
        assert exhausted.attempts == 3
        assert exhausted.errors == ("connection reset",) * 3
        assert exhausted.last_error is operation.error
        assert exhausted.__cause__ is operation.error
        assert exhausted.first_failure_at <= exhausted.last_failure_at
        assert "sync-invoices failed after 3 attempts" in str(exhausted)
        # No sleep after the final attempt
        assert len(sleeper.calls) == 2

    @pytest.mark.asyncio
    async def test_single_attempt_budget(self, sleeper):
        """Test max_retries=1 means one attempt and no retries."""
        operation = FlakyOperation(failures=1)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(operation, RetryConfig(max_retries=1), sleep=sleeper)

        assert exc_info.value.attempts == 1
        assert sleeper.calls == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_unchanged(self, sleeper):
        """Test an error the predicate rejects is raised as-is, without retrying."""
        operation = FlakyOperation(failures=5, error=ValueError("bad report date"))
        config = RetryConfig(max_retries=5, retry_predicate=retry_conditions.transient)

        with pytest.raises(ValueError, match="bad report date"):
            await with_retry(operation, config, sleep=sleeper)

        assert operation.calls == 1
        assert sleeper.calls == []

    @pytest.mark.asyncio
    async def test_predicate_receives_attempt_number(self, sleeper):
        """Test the predicate sees the 1-based number of the failed attempt."""
        seen: list[int] = []

        def predicate(error, attempt):
            seen.append(attempt)
            return attempt < 2

        operation = FlakyOperation(failures=5)

        with pytest.raises(ConnectionError):
            await with_retry(
                operation,
                RetryConfig(max_retries=5, retry_predicate=predicate),
                sleep=sleeper,
            )

        assert seen == [1, 2]
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, sleeper):
        """Test on_retry is called before each backoff with the delay."""
        calls = []
        operation = FlakyOperation(failures=2)
        config = RetryConfig(
            max_retries=3, base_delay_ms=50, strategy=BackoffStrategy.FIXED
        )

        await with_retry(
            operation,
            config,
            on_retry=lambda e, attempt, delay: calls.append((str(e), attempt, delay)),
            sleep=sleeper,
        )

        assert calls == [("connection reset", 1, 50), ("connection reset", 2, 50)]

    @pytest.mark.asyncio
    async def test_jitter_applied_to_delay(self, sleeper):
        """Test jittered delays stay within half and one and a half times the base."""
        operation = FlakyOperation(failures=3)
        config = RetryConfig(
            max_retries=4,
            base_delay_ms=1000,
            strategy=BackoffStrategy.FIXED,
            jitter=True,
        )

        await with_retry(operation, config, sleep=sleeper)

        assert len(sleeper.calls) == 3
        assert all(0.5 <= seconds <= 1.5 for seconds in sleeper.calls)

    @pytest.mark.asyncio
    async def test_open_circuit_counts_as_failed_attempt(self, clock, sleeper):
        """Test rejections by an open breaker consume attempts like any failure."""
        breaker = CircuitBreaker(
            "crm",
            CircuitBreakerConfig(failure_threshold=2, volume_threshold=2),
            clock=clock.monotonic,
        )
        operation = FlakyOperation(failures=10)
        config = RetryConfig(max_retries=4, strategy=BackoffStrategy.NONE)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(operation, config, circuit_breaker=breaker, sleep=sleeper)

        assert operation.calls == 2
        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.last_error, CircuitOpenError)


class TestRetryableDecorator:
    """Tests for the retryable decorator."""

    @pytest.mark.asyncio
    async def test_decorated_function_is_retried(self):
        """Test the decorator retries and forwards arguments."""
        calls = []

        @retryable(RetryConfig(max_retries=3, strategy=BackoffStrategy.NONE))
        async def fetch_rates(currency: str) -> dict:
            calls.append(currency)
            if len(calls) < 3:
                raise TimeoutError("rates api timeout")
            return {"currency": currency, "rate": 1.1}

        result = await fetch_rates("EUR")

        assert result == {"currency": "EUR", "rate": 1.1}
        assert calls == ["EUR", "EUR", "EUR"]
        assert fetch_rates.__name__ == "fetch_rates"

    @pytest.mark.asyncio
    async def test_decorated_exhaustion_names_operation(self):
        """Test exhaustion errors carry the function name."""

        @retryable(RetryConfig(max_retries=2, strategy=BackoffStrategy.NONE))
        async def push_metrics():
            raise ConnectionError("refused")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await push_metrics()

        assert exc_info.value.operation == "push_metrics"
