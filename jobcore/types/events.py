"""
Event type definitions for lifecycle listeners.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from jobcore.constants import CircuitState, EventType


class LifecycleEvent(BaseModel):
    """
    Event emitted by the lock manager, circuit breakers and job runner.

    job_id carries the circuit name for circuit events.
    """

    event_type: EventType
    job_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    duration_ms: float | None = None
    fencing_token: int | None = None
    execution_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def lock_acquired(
        cls,
        job_id: str,
        fencing_token: int,
        duration_ms: float,
        attempts: int,
    ) -> "LifecycleEvent":
        """Create a lock acquired event."""
        return cls(
            event_type=EventType.LOCK_ACQUIRED,
            job_id=job_id,
            fencing_token=fencing_token,
            duration_ms=duration_ms,
            data={"attempts": attempts},
        )

    @classmethod
    def lock_extended(
        cls,
        job_id: str,
        fencing_token: int,
        ttl_ms: int,
    ) -> "LifecycleEvent":
        """Create a lock extended event."""
        return cls(
            event_type=EventType.LOCK_EXTENDED,
            job_id=job_id,
            fencing_token=fencing_token,
            data={"ttl_ms": ttl_ms},
        )

    @classmethod
    def lock_released(
        cls,
        job_id: str,
        fencing_token: int,
        held_ms: float,
        released: bool,
    ) -> "LifecycleEvent":
        """Create a lock released event."""
        return cls(
            event_type=EventType.LOCK_RELEASED,
            job_id=job_id,
            fencing_token=fencing_token,
            duration_ms=held_ms,
            data={"released": released},
        )

    @classmethod
    def lock_failed(
        cls,
        job_id: str,
        duration_ms: float,
        attempts: int,
        reason: str,
    ) -> "LifecycleEvent":
        """Create a lock acquisition failed (or lease lost) event."""
        return cls(
            event_type=EventType.LOCK_FAILED,
            job_id=job_id,
            duration_ms=duration_ms,
            data={"attempts": attempts, "reason": reason},
        )

    @classmethod
    def circuit_state_change(
        cls,
        name: str,
        old: CircuitState,
        new: CircuitState,
        in_state_ms: float,
    ) -> "LifecycleEvent":
        """Create a circuit breaker state change event."""
        return cls(
            event_type=EventType.CIRCUIT_STATE_CHANGE,
            job_id=name,
            duration_ms=in_state_ms,
            data={"old": old.value, "new": new.value},
        )

    @classmethod
    def circuit_rejected(cls, name: str) -> "LifecycleEvent":
        """Create a call rejected by an open circuit event."""
        return cls(event_type=EventType.CIRCUIT_REJECTED, job_id=name)

    @classmethod
    def job_started(
        cls,
        job_id: str,
        execution_id: str,
        fencing_token: int | None,
    ) -> "LifecycleEvent":
        """Create a job started event."""
        return cls(
            event_type=EventType.JOB_STARTED,
            job_id=job_id,
            execution_id=execution_id,
            fencing_token=fencing_token,
        )

    @classmethod
    def job_retrying(
        cls,
        job_id: str,
        execution_id: str,
        attempt: int,
        delay_ms: float,
        error: str,
    ) -> "LifecycleEvent":
        """Create a job retry scheduled event."""
        return cls(
            event_type=EventType.JOB_RETRYING,
            job_id=job_id,
            execution_id=execution_id,
            data={"attempt": attempt, "delay_ms": delay_ms, "error": error},
        )

    @classmethod
    def job_succeeded(
        cls,
        job_id: str,
        execution_id: str,
        duration_ms: float,
        attempts: int,
        fencing_token: int | None,
    ) -> "LifecycleEvent":
        """Create a job succeeded event."""
        return cls(
            event_type=EventType.JOB_SUCCEEDED,
            job_id=job_id,
            execution_id=execution_id,
            duration_ms=duration_ms,
            fencing_token=fencing_token,
            data={"attempts": attempts},
        )

    @classmethod
    def job_failed(
        cls,
        job_id: str,
        execution_id: str,
        duration_ms: float,
        attempts: int,
        error: str,
        fencing_token: int | None,
    ) -> "LifecycleEvent":
        """Create a job failed event."""
        return cls(
            event_type=EventType.JOB_FAILED,
            job_id=job_id,
            execution_id=execution_id,
            duration_ms=duration_ms,
            fencing_token=fencing_token,
            data={"attempts": attempts, "error": error},
        )

    @classmethod
    def job_dead_lettered(
        cls,
        job_id: str,
        execution_id: str,
        entry_id: str,
        attempts: int,
        error: str,
    ) -> "LifecycleEvent":
        """Create a job moved to dead letter queue event."""
        return cls(
            event_type=EventType.JOB_DEAD_LETTERED,
            job_id=job_id,
            execution_id=execution_id,
            data={"entry_id": entry_id, "total_attempts": attempts, "error": error},
        )
