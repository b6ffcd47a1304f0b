"""
Circuit breaker.

Guards calls to an external dependency and fails fast while that dependency
is unhealthy.

States:
    - CLOSED: Normal operation, calls pass through
    - OPEN: Failure threshold breached, calls are rejected without running
    - HALF_OPEN: Probing recovery, calls pass through

Transitions:
    CLOSED -> OPEN: volume_threshold calls seen and failure_threshold
        failures inside failure_window_ms
    OPEN -> HALF_OPEN: reset_timeout_ms after opening
    HALF_OPEN -> CLOSED: success_threshold consecutive successes
    HALF_OPEN -> OPEN: any counted failure

The OPEN -> HALF_OPEN check runs on every state read, so it holds even
without a running event loop; when one is running a timer also performs it
so listeners see the transition promptly.

Example:
    breaker = CircuitBreaker("payments", CircuitBreakerConfig(failure_threshold=3))
    try:
        charge = await breaker.fire(lambda: client.charge(order))
    except CircuitOpenError:
        ...  # fallback
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from pydantic import BaseModel

from jobcore.constants import CircuitState
from jobcore.observability.listeners import EventListener, emit
from jobcore.types.config import CircuitBreakerConfig
from jobcore.types.events import LifecycleEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, name: str, retry_after_ms: float | None = None):
        self.name = name
        self.retry_after_ms = retry_after_ms
        msg = f"Circuit breaker '{name}' is open"
        if retry_after_ms is not None:
            msg += f", retry after {retry_after_ms:.0f}ms"
        super().__init__(msg)


class CircuitTimeoutError(Exception):
    """Raised when a guarded call exceeds the breaker's call timeout."""

    def __init__(self, name: str, timeout_ms: int):
        self.name = name
        self.timeout_ms = timeout_ms
        super().__init__(f"Circuit breaker '{name}' call timed out after {timeout_ms}ms")


class CircuitBreakerStats(BaseModel):
    """Point-in-time snapshot of a circuit breaker."""

    name: str
    state: CircuitState
    recent_failures: int
    successes: int
    failures: int
    rejections: int
    timeouts: int
    total_calls: int
    consecutive_successes: int
    consecutive_failures: int
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    last_state_change_at: datetime
    in_state_ms: float


class CircuitBreaker:
    """
    Circuit breaker for a single named dependency.

    Args:
        name: Identifier, also used as job_id on emitted events.
        config: Thresholds and timers.
        listener: Receives circuit.state_change and circuit.rejected events.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        listener: EventListener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._listener = listener
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._state_changed_at = self._now_ms()
        self._last_state_change_at = datetime.now(UTC)
        self._failure_times: deque[float] = deque()
        self._consecutive_successes = 0
        self._consecutive_failures = 0
        self._total_calls = 0
        self._successes = 0
        self._failures = 0
        self._rejections = 0
        self._timeouts = 0
        self._last_failure_at: datetime | None = None
        self._last_success_at: datetime | None = None
        self._reset_timer: asyncio.TimerHandle | None = None

    def _now_ms(self) -> float:
        return self._clock() * 1000

    @property
    def state(self) -> CircuitState:
        """Current state, applying a due OPEN -> HALF_OPEN transition first."""
        self._check_reset_timeout()
        return self._state

    def is_available(self) -> bool:
        """Whether calls would currently be let through."""
        return self.state != CircuitState.OPEN

    async def fire(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run fn through the breaker.

        Args:
            fn: Zero-argument coroutine function to call.

        Returns:
            Whatever fn returns.

        Raises:
            CircuitOpenError: The circuit is open; fn was not called.
            CircuitTimeoutError: fn did not finish within call_timeout_ms.
            Exception: Whatever fn raised.
        """
        if self.state == CircuitState.OPEN:
            self._rejections += 1
            retry_after = max(
                0.0,
                self.config.reset_timeout_ms - (self._now_ms() - self._state_changed_at),
            )
            logger.debug(
                "Circuit open, call rejected",
                extra={"circuit": self.name, "rejections": self._rejections},
            )
            emit(self._listener, LifecycleEvent.circuit_rejected(self.name))
            raise CircuitOpenError(self.name, retry_after)

        self._total_calls += 1
        try:
            async with asyncio.timeout(self.config.call_timeout_ms / 1000) as deadline:
                result = await fn()
        except TimeoutError as e:
            if not deadline.expired():
                # A timeout raised inside fn belongs to the caller
                self._on_failure(e)
                raise
            self._timeouts += 1
            error = CircuitTimeoutError(self.name, self.config.call_timeout_ms)
            self._on_failure(error)
            raise error from None
        except Exception as e:
            self._on_failure(e)
            raise

        self._on_success()
        return result

    def trip_open(self) -> None:
        """Force the circuit open (operator escape hatch)."""
        logger.warning("Circuit manually tripped open", extra={"circuit": self.name})
        self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the circuit closed and clear failure history."""
        self._failure_times.clear()
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._transition(CircuitState.CLOSED)
        self._cancel_reset_timer()

    def stats(self) -> CircuitBreakerStats:
        state = self.state
        return CircuitBreakerStats(
            name=self.name,
            state=state,
            recent_failures=self._recent_failure_count(),
            successes=self._successes,
            failures=self._failures,
            rejections=self._rejections,
            timeouts=self._timeouts,
            total_calls=self._total_calls,
            consecutive_successes=self._consecutive_successes,
            consecutive_failures=self._consecutive_failures,
            last_failure_at=self._last_failure_at,
            last_success_at=self._last_success_at,
            last_state_change_at=self._last_state_change_at,
            in_state_ms=self._now_ms() - self._state_changed_at,
        )

    def _on_success(self) -> None:
        self._successes += 1
        self._last_success_at = datetime.now(UTC)
        self._consecutive_successes += 1
        self._consecutive_failures = 0

        if (
            self._state == CircuitState.HALF_OPEN
            and self._consecutive_successes >= self.config.success_threshold
        ):
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, error: Exception) -> None:
        if self.config.error_filter is not None and not self.config.error_filter(error):
            logger.debug(
                "Error ignored by circuit error filter",
                extra={"circuit": self.name, "error_type": type(error).__name__},
            )
            return

        self._failures += 1
        self._last_failure_at = datetime.now(UTC)
        self._failure_times.append(self._now_ms())
        self._consecutive_failures += 1
        self._consecutive_successes = 0

        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            if (
                self._total_calls >= self.config.volume_threshold
                and self._recent_failure_count() >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    def _recent_failure_count(self) -> int:
        cutoff = self._now_ms() - self.config.failure_window_ms
        while self._failure_times and self._failure_times[0] <= cutoff:
            self._failure_times.popleft()
        return len(self._failure_times)

    def _check_reset_timeout(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._now_ms() - self._state_changed_at >= self.config.reset_timeout_ms
        ):
            self._transition(CircuitState.HALF_OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        if self._state == new_state:
            return

        old_state = self._state
        now = self._now_ms()
        in_state_ms = now - self._state_changed_at
        self._state = new_state
        self._state_changed_at = now
        self._last_state_change_at = datetime.now(UTC)

        if new_state == CircuitState.OPEN:
            self._schedule_reset_timer()
        elif new_state == CircuitState.HALF_OPEN:
            self._consecutive_successes = 0
            self._cancel_reset_timer()
        else:
            self._failure_times.clear()
            self._cancel_reset_timer()

        logger.warning(
            "Circuit state changed",
            extra={
                "circuit": self.name,
                "from_state": old_state.value,
                "to_state": new_state.value,
                "in_state_ms": in_state_ms,
            },
        )
        emit(
            self._listener,
            LifecycleEvent.circuit_state_change(self.name, old_state, new_state, in_state_ms),
        )

    def _schedule_reset_timer(self) -> None:
        self._cancel_reset_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reset_timer = loop.call_later(
            self.config.reset_timeout_ms / 1000, self._check_reset_timeout
        )

    def _cancel_reset_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None


class CircuitBreakerRegistry:
    """
    Named circuit breakers sharing defaults.

    Constructed once at startup and passed to whatever needs breakers
    (typically the job runner).
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        listener: EventListener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._default_config = default_config or CircuitBreakerConfig()
        self._listener = listener
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """
        Return the breaker for name, creating it on first use.

        config only applies when the breaker is created.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                config or self._default_config,
                listener=self._listener,
                clock=self._clock,
            )
            self._breakers[name] = breaker
            logger.info("Circuit breaker created", extra={"circuit": name})
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def remove(self, name: str) -> bool:
        breaker = self._breakers.pop(name, None)
        if breaker is None:
            return False
        breaker._cancel_reset_timer()
        return True

    def all_stats(self) -> dict[str, CircuitBreakerStats]:
        return {name: breaker.stats() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)
