"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job execution states.

    State transitions:
    - PENDING -> RUNNING (lock acquired, handler invoked)
    - RUNNING -> SUCCEEDED (success)
    - RUNNING -> FAILED (non-retryable error or retries exhausted)
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CircuitState(StrEnum):
    """
    Circuit breaker states.

    State transitions:
    - CLOSED -> OPEN (failure threshold breached with sufficient volume)
    - OPEN -> HALF_OPEN (after reset timeout)
    - HALF_OPEN -> CLOSED (success threshold met)
    - HALF_OPEN -> OPEN (any failure)
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BackoffStrategy(StrEnum):
    """Delay strategies between retry attempts."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    NONE = "none"


class StoreBackend(StrEnum):
    """Key-value store implementations selectable from settings."""

    MEMORY = "memory"
    REDIS = "redis"
    SQL = "sql"


class EventType(StrEnum):
    """Lifecycle events emitted to listeners."""

    LOCK_ACQUIRED = "lock.acquired"
    LOCK_EXTENDED = "lock.extended"
    LOCK_RELEASED = "lock.released"
    LOCK_FAILED = "lock.failed"
    CIRCUIT_STATE_CHANGE = "circuit.state_change"
    CIRCUIT_REJECTED = "circuit.rejected"
    JOB_STARTED = "job.started"
    JOB_RETRYING = "job.retrying"
    JOB_SUCCEEDED = "job.succeeded"
    JOB_FAILED = "job.failed"
    JOB_DEAD_LETTERED = "job.dead_lettered"


# Store key layout
LOCK_KEY_PREFIX = "lock:"
FENCE_KEY_PREFIX = "fence:"
DLQ_KEY_PREFIX = "dlq"
DLQ_INDEX_KEY = f"{DLQ_KEY_PREFIX}:index"

# Lock acquisition backoff cap when none is configured
DEFAULT_MAX_LOCK_RETRY_DELAY_MS = 30_000

# Jitter bounds applied to computed retry delays
JITTER_MIN_FACTOR = 0.5
JITTER_MAX_FACTOR = 1.5

# Dead letter age buckets (upper bound in ms, label)
DLQ_AGE_BUCKETS: tuple[tuple[int | None, str], ...] = (
    (60 * 60 * 1000, "lt_1h"),
    (24 * 60 * 60 * 1000, "1h_24h"),
    (7 * 24 * 60 * 60 * 1000, "1d_7d"),
    (None, "gt_7d"),
)

# Metrics names
METRIC_LOCK_ACQUIRED = "jobcore_lock_acquired_total"
METRIC_LOCK_FAILED = "jobcore_lock_failed_total"
METRIC_LOCK_EXTENDED = "jobcore_lock_extended_total"
METRIC_LOCK_RELEASED = "jobcore_lock_released_total"
METRIC_JOBS_STARTED = "jobcore_jobs_started_total"
METRIC_JOBS_COMPLETED = "jobcore_jobs_completed_total"
METRIC_JOB_DURATION = "jobcore_job_duration_seconds"
METRIC_JOB_RETRIES = "jobcore_job_retries_total"
METRIC_DEAD_LETTERED = "jobcore_dead_lettered_total"
METRIC_CIRCUIT_STATE = "jobcore_circuit_state"
METRIC_CIRCUIT_TRANSITIONS = "jobcore_circuit_transitions_total"
METRIC_CIRCUIT_REJECTIONS = "jobcore_circuit_rejections_total"

# Trace span names
SPAN_ACQUIRE_LOCK = "acquire_lock"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RECORD_DEAD_LETTER = "record_dead_letter"
