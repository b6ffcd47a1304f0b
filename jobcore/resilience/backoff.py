"""
Backoff strategies.

Each factory returns a pure function of the 0-based attempt index giving
the delay in milliseconds before the next attempt.
"""

import random
from collections.abc import Callable

from jobcore.constants import JITTER_MAX_FACTOR, JITTER_MIN_FACTOR, BackoffStrategy
from jobcore.types.config import RetryConfig

DelayFunction = Callable[[int], float]


def fixed_delay(base_ms: float) -> DelayFunction:
    """Same delay for every attempt."""
    return lambda attempt: base_ms


def linear_backoff(base_ms: float) -> DelayFunction:
    """Delay grows by base_ms per attempt: base, 2*base, 3*base, ..."""
    return lambda attempt: base_ms * (attempt + 1)


def exponential_backoff(
    base_ms: float,
    factor: float = 2.0,
    cap_ms: float = float("inf"),
) -> DelayFunction:
    """
    Delay multiplies by factor per attempt, capped at cap_ms.

    Example:
        >>> delay = exponential_backoff(100, 2, 5000)
        >>> [delay(n) for n in range(5)]
        [100, 200, 400, 800, 1600]
    """

    def delay(attempt: int) -> float:
        return min(base_ms * factor**attempt, cap_ms)

    return delay


def no_delay() -> DelayFunction:
    """Retry immediately."""
    return lambda attempt: 0


def apply_jitter(delay_ms: float, rng: random.Random | None = None) -> float:
    """
    Scale a delay by a uniform random factor in [0.5, 1.5].

    Spreads retries from many instances so they do not hit a recovering
    dependency at the same moment.
    """
    uniform = rng.uniform if rng is not None else random.uniform
    return delay_ms * uniform(JITTER_MIN_FACTOR, JITTER_MAX_FACTOR)


def get_delay_function(config: RetryConfig) -> DelayFunction:
    """Map a retry configuration to its delay function."""
    match config.strategy:
        case BackoffStrategy.EXPONENTIAL:
            return exponential_backoff(
                config.base_delay_ms, config.factor, config.max_delay_ms
            )
        case BackoffStrategy.LINEAR:
            linear = linear_backoff(config.base_delay_ms)
            return lambda attempt: min(linear(attempt), config.max_delay_ms)
        case BackoffStrategy.FIXED:
            return fixed_delay(config.base_delay_ms)
        case _:
            return no_delay()
