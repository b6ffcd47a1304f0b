"""
Dead letter queue type definitions.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DeadLetterEntry(BaseModel):
    """
    Immutable record of a job that exhausted its retry budget.

    Created only from a retry exhaustion and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    job_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    error: str
    error_type: str
    errors: tuple[str, ...] = ()
    attempts: int
    first_failure_at: datetime
    last_failure_at: datetime
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DeadLetterQuery(BaseModel):
    """
    Filter and pagination for DeadLetterQueue.query().
    Results are always ordered newest first.
    """

    job_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int = Field(default=100, ge=1, le=10_000)
    offset: int = Field(default=0, ge=0)

    @field_validator("since", "until")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        """Naive bounds are taken as UTC; entries are always timestamped in UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class DeadLetterStats(BaseModel):
    """Dead letter counts for alerting."""

    total: int = 0
    by_job: dict[str, int] = Field(default_factory=dict)
    by_age: dict[str, int] = Field(default_factory=dict)
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
