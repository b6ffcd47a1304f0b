"""
Pytest configuration and shared fixtures.
"""

from datetime import UTC, datetime

import pytest

from jobcore.constants import BackoffStrategy
from jobcore.dead_letter import DeadLetterQueue
from jobcore.locking import LockManager
from jobcore.observability.listeners import BufferedListener
from jobcore.store import InMemoryLockStore, InMemoryStore
from jobcore.types import LockConfig, RetryConfig

# 2023-11-14T22:13:20Z
START_MS = 1_700_000_000_000.0


class FakeClock:
    """
    Manually advanced clock.

    Calling the clock returns wall-clock milliseconds (stores, lock manager,
    dead letter queue); monotonic() returns seconds (circuit breakers).
    """

    def __init__(self, start_ms: float = START_MS):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def monotonic(self) -> float:
        return self.now_ms / 1000

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.now_ms / 1000, UTC)

    def advance(self, ms: float) -> None:
        self.now_ms += ms


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def listener() -> BufferedListener:
    return BufferedListener(maxsize=1000)


@pytest.fixture
def memory_store(clock: FakeClock) -> InMemoryStore:
    """Store without native locking (emulated lock path)."""
    return InMemoryStore(clock=clock)


@pytest.fixture
def lock_store(clock: FakeClock) -> InMemoryLockStore:
    """Store with native atomic locking."""
    return InMemoryLockStore(clock=clock)


@pytest.fixture(params=["native", "emulated"])
def any_store(request, clock: FakeClock) -> InMemoryStore:
    """Runs a test against both lock paths."""
    if request.param == "native":
        return InMemoryLockStore(clock=clock)
    return InMemoryStore(clock=clock)


@pytest.fixture
def lock_config() -> LockConfig:
    return LockConfig(ttl_ms=5_000, retries=0, retry_delay_ms=10)


@pytest.fixture
def make_manager(any_store, clock, listener, sleeper, lock_config):
    """Factory for lock managers sharing one store, like instances sharing Redis."""

    def factory(instance_id: str, **overrides) -> LockManager:
        return LockManager(
            any_store,
            instance_id=instance_id,
            config=overrides.pop("config", lock_config),
            listener=overrides.pop("listener", listener),
            clock=clock,
            sleep=sleeper,
        )

    return factory


@pytest.fixture
def dead_letter_queue(memory_store, clock, sleeper, listener) -> DeadLetterQueue:
    return DeadLetterQueue(memory_store, listener=listener, clock=clock, sleep=sleeper)


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_retries=3, base_delay_ms=0, strategy=BackoffStrategy.NONE)
