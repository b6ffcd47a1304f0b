"""
Type definitions for the job execution core.
Contains configuration, lock, job, dead letter and event types, grouped by module.
"""

from jobcore.types.config import (
    CircuitBreakerConfig,
    DeadLetterConfig,
    ErrorFilter,
    LockConfig,
    RetryConfig,
    RetryPredicate,
)
from jobcore.types.dead_letter import (
    DeadLetterEntry,
    DeadLetterQuery,
    DeadLetterStats,
)
from jobcore.types.events import LifecycleEvent
from jobcore.types.job import (
    JobContext,
    JobCounters,
    JobDefinition,
    JobExecution,
    JobHandler,
    JobResult,
    RunnerStats,
)
from jobcore.types.lock import LockGrant, LockInfo, WithLockResult

__all__ = [
    # Config types
    "LockConfig",
    "RetryConfig",
    "RetryPredicate",
    "CircuitBreakerConfig",
    "ErrorFilter",
    "DeadLetterConfig",
    # Lock types
    "LockGrant",
    "LockInfo",
    "WithLockResult",
    # Job types
    "JobContext",
    "JobCounters",
    "JobDefinition",
    "JobExecution",
    "JobHandler",
    "JobResult",
    "RunnerStats",
    # Dead letter types
    "DeadLetterEntry",
    "DeadLetterQuery",
    "DeadLetterStats",
    # Event types
    "LifecycleEvent",
]
