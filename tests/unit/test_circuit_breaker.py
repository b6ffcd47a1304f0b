"""
Unit tests for the circuit breaker and its registry.
"""

import asyncio

import pytest

from jobcore.constants import CircuitState, EventType
from jobcore.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitTimeoutError,
)
from jobcore.types import CircuitBreakerConfig


async def fail():
    raise ConnectionError("payments api down")


async def succeed():
    return "ok"


def make_breaker(clock, listener=None, **overrides) -> CircuitBreaker:
    options = {
        "failure_threshold": 3,
        "success_threshold": 2,
        "reset_timeout_ms": 1000,
        "failure_window_ms": 60_000,
        "call_timeout_ms": 1000,
        "volume_threshold": 3,
    }
    options.update(overrides)
    return CircuitBreaker(
        "payments",
        CircuitBreakerConfig(**options),
        listener=listener,
        clock=clock.monotonic,
    )


async def fail_times(breaker: CircuitBreaker, count: int) -> None:
    for _ in range(count):
        with pytest.raises(ConnectionError):
            await breaker.fire(fail)


class TestClosedState:
    """Tests for a closed circuit."""

    @pytest.mark.asyncio
    async def test_passes_results_through(self, clock):
        """Test successful calls return their result and keep the circuit closed."""
        breaker = make_breaker(clock)

        assert await breaker.fire(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats().successes == 1

    @pytest.mark.asyncio
    async def test_opens_at_failure_threshold(self, clock):
        """Test the circuit opens once failures reach the threshold."""
        breaker = make_breaker(clock)

        await fail_times(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        await fail_times(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        assert not breaker.is_available()

    @pytest.mark.asyncio
    async def test_volume_threshold_prevents_opening(self, clock):
        """Test too few calls never open the circuit."""
        breaker = make_breaker(clock, volume_threshold=10)

        await fail_times(breaker, 5)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats().recent_failures == 5

    @pytest.mark.asyncio
    async def test_failures_outside_window_are_forgotten(self, clock):
        """Test failures older than the window do not count."""
        breaker = make_breaker(clock, failure_window_ms=1000)

        await fail_times(breaker, 2)
        clock.advance(1500)
        await fail_times(breaker, 1)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats().recent_failures == 1

    @pytest.mark.asyncio
    async def test_error_filter_ignores_errors(self, clock):
        """Test errors rejected by the filter do not count as failures."""
        breaker = make_breaker(
            clock, error_filter=lambda e: not isinstance(e, ConnectionError)
        )

        await fail_times(breaker, 5)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats().failures == 0

    @pytest.mark.asyncio
    async def test_call_timeout_counts_as_failure(self, clock):
        """Test a slow call raises CircuitTimeoutError and counts as a failure."""
        breaker = make_breaker(clock, call_timeout_ms=20)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(CircuitTimeoutError) as exc_info:
            await breaker.fire(slow)

        assert exc_info.value.timeout_ms == 20
        stats = breaker.stats()
        assert stats.timeouts == 1
        assert stats.failures == 1

    @pytest.mark.asyncio
    async def test_inner_timeout_is_not_relabelled(self, clock):
        """Test a timeout raised by the call itself keeps its own type."""
        breaker = make_breaker(clock, call_timeout_ms=10_000)

        async def short_deadline():
            await asyncio.wait_for(asyncio.sleep(1), timeout=0.01)

        with pytest.raises(TimeoutError) as exc_info:
            await breaker.fire(short_deadline)

        assert not isinstance(exc_info.value, CircuitTimeoutError)
        stats = breaker.stats()
        assert stats.timeouts == 0
        assert stats.failures == 1


class TestOpenState:
    """Tests for an open circuit."""

    @pytest.mark.asyncio
    async def test_rejects_without_calling(self, clock):
        """Test calls are rejected and the function is never invoked."""
        breaker = make_breaker(clock)
        await fail_times(breaker, 3)
        calls = 0

        async def counted():
            nonlocal calls
            calls += 1

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.fire(counted)

        assert calls == 0
        assert exc_info.value.name == "payments"
        assert exc_info.value.retry_after_ms == pytest.approx(1000)
        assert breaker.stats().rejections == 1

    @pytest.mark.asyncio
    async def test_half_open_after_reset_timeout(self, clock):
        """Test the circuit moves to half-open once the reset timeout passes."""
        breaker = make_breaker(clock)
        await fail_times(breaker, 3)

        clock.advance(999)
        assert breaker.state == CircuitState.OPEN

        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.is_available()


class TestHalfOpenState:
    """Tests for a half-open circuit."""

    @pytest.mark.asyncio
    async def test_closes_after_success_threshold(self, clock):
        """Test consecutive successes close the circuit."""
        breaker = make_breaker(clock)
        await fail_times(breaker, 3)
        clock.advance(1000)

        await breaker.fire(succeed)
        assert breaker.state == CircuitState.HALF_OPEN

        await breaker.fire(succeed)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats().recent_failures == 0

    @pytest.mark.asyncio
    async def test_any_failure_reopens(self, clock):
        """Test a single failure in half-open reopens the circuit."""
        breaker = make_breaker(clock)
        await fail_times(breaker, 3)
        clock.advance(1000)
        await breaker.fire(succeed)

        await fail_times(breaker, 1)

        assert breaker.state == CircuitState.OPEN


class TestManualControl:
    """Tests for trip_open and reset."""

    @pytest.mark.asyncio
    async def test_trip_open_and_reset(self, clock):
        """Test forcing the circuit open and closed."""
        breaker = make_breaker(clock)

        breaker.trip_open()
        assert breaker.state == CircuitState.OPEN

        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.fire(succeed) == "ok"

    def test_transitions_without_running_loop(self, clock):
        """Test state changes work outside an event loop."""
        breaker = make_breaker(clock)

        breaker.trip_open()
        clock.advance(1000)

        assert breaker.state == CircuitState.HALF_OPEN


class TestEvents:
    """Tests for emitted lifecycle events."""

    @pytest.mark.asyncio
    async def test_state_changes_and_rejections_are_emitted(self, clock, listener):
        """Test the listener sees each transition and each rejection."""
        breaker = make_breaker(clock, listener=listener)

        await fail_times(breaker, 3)
        with pytest.raises(CircuitOpenError):
            await breaker.fire(succeed)
        clock.advance(1000)
        await breaker.fire(succeed)
        await breaker.fire(succeed)

        events = listener.drain()
        changes = [
            (e.data["old"], e.data["new"])
            for e in events
            if e.event_type == EventType.CIRCUIT_STATE_CHANGE
        ]
        assert changes == [
            ("closed", "open"),
            ("open", "half_open"),
            ("half_open", "closed"),
        ]
        rejections = [e for e in events if e.event_type == EventType.CIRCUIT_REJECTED]
        assert len(rejections) == 1
        assert rejections[0].job_id == "payments"

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_breaker(self, clock):
        """Test listener errors are contained."""

        class ExplodingListener:
            def on_event(self, event):
                raise RuntimeError("listener bug")

        breaker = make_breaker(clock, listener=ExplodingListener())

        await fail_times(breaker, 3)

        assert breaker.state == CircuitState.OPEN


class TestCircuitBreakerRegistry:
    """Tests for CircuitBreakerRegistry."""

    def test_get_or_create_returns_same_instance(self, clock):
        """Test breakers are created once per name."""
        registry = CircuitBreakerRegistry(clock=clock.monotonic)

        first = registry.get_or_create("billing")
        second = registry.get_or_create("billing")

        assert first is second
        assert "billing" in registry
        assert len(registry) == 1

    def test_config_applies_on_creation(self, clock):
        """Test a per-breaker config overrides the registry default."""
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=9), clock=clock.monotonic
        )

        custom = registry.get_or_create("crm", CircuitBreakerConfig(failure_threshold=2))
        default = registry.get_or_create("mail")

        assert custom.config.failure_threshold == 2
        assert default.config.failure_threshold == 9

    def test_stats_reset_and_remove(self, clock):
        """Test all_stats, reset_all and remove."""
        registry = CircuitBreakerRegistry(clock=clock.monotonic)
        registry.get_or_create("billing").trip_open()
        registry.get_or_create("crm")

        stats = registry.all_stats()
        assert stats["billing"].state == CircuitState.OPEN
        assert stats["crm"].state == CircuitState.CLOSED

        registry.reset_all()
        assert registry.get("billing").state == CircuitState.CLOSED

        assert registry.remove("crm") is True
        assert registry.remove("crm") is False
        assert registry.get("crm") is None
