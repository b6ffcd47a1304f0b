"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from jobcore.constants import JobStatus
from jobcore.types.config import LockConfig, RetryConfig

if TYPE_CHECKING:
    from jobcore.locking.manager import LockHandle
    from jobcore.runner.schedules import Schedule


class JobResult(BaseModel):
    """
    Result of job execution.
    Optionally returned by job handlers; success=False counts as a failure.
    """

    success: bool = True
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains run metadata and the lock handle the run is executing under.
    """

    job_id: str
    execution_id: str
    attempt: int
    max_attempts: int
    instance_id: str
    started_at: datetime
    fencing_token: int | None = None
    lock: "LockHandle | None" = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)

    @property
    def lock_held(self) -> bool:
        """
        Whether the lease this run executes under is still believed held.

        Long-running handlers should check this (or await lock.verify())
        before committing side effects.
        """
        return self.lock is not None and self.lock.is_held


# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult | Any]]


@dataclass
class JobDefinition:
    """
    A recurring job known to the runner.

    retry and lock override the runner-wide defaults; dependency names the
    circuit breaker guarding the external service the handler calls.

    An attempt of a job with a dependency runs under both timeout_ms and the
    breaker's call_timeout_ms, so the shorter one wins. Hitting timeout_ms
    fails the attempt with TimeoutError; hitting the breaker's limit fails
    it with CircuitTimeoutError.
    """

    job_id: str
    handler: JobHandler
    schedule: "Schedule | None" = None
    enabled: bool = True
    timeout_ms: int | None = None
    retry: RetryConfig | None = None
    lock: LockConfig | None = None
    dependency: str | None = None
    run_on_startup: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


class JobExecution(BaseModel):
    """
    Transient record of one run of a job.
    Kept in a bounded in-memory history for audit and stats.
    """

    execution_id: str
    job_id: str
    status: JobStatus = JobStatus.PENDING
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    fencing_token: int | None = None
    attempts: int = 0
    error: str | None = None
    dead_lettered: bool = False

    @property
    def duration_ms(self) -> float | None:
        """Wall-clock duration of the run, if finished."""
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000


class JobCounters(BaseModel):
    """Per-job execution counters."""

    runs: int = 0
    successes: int = 0
    failures: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    consecutive_failures: int = 0
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None


class RunnerStats(BaseModel):
    """
    Snapshot of runner bookkeeping.
    Returned by JobRunner.stats() for reporting and alerting.
    """

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    retried_runs: int = 0
    skipped_runs: int = 0
    dead_lettered_runs: int = 0
    average_duration_ms: float = 0.0
    running: list[str] = Field(default_factory=list)
    jobs: dict[str, JobCounters] = Field(default_factory=dict)
