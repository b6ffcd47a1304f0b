"""
Job schedules.

A schedule only answers "is this job due now, given when it last ran?".
Cron grammar and evaluation are delegated to APScheduler's CronTrigger.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

from apscheduler.triggers.cron import CronTrigger


@runtime_checkable
class Schedule(Protocol):
    def is_due(self, now: datetime, last_run: datetime | None) -> bool: ...


class IntervalSchedule:
    """Due every interval_ms, and immediately if the job has never run."""

    def __init__(self, interval_ms: int):
        if interval_ms <= 0:
            msg = "interval_ms must be greater than 0"
            raise ValueError(msg)
        self.interval_ms = interval_ms

    def is_due(self, now: datetime, last_run: datetime | None) -> bool:
        if last_run is None:
            return True
        return now - last_run >= timedelta(milliseconds=self.interval_ms)

    def __repr__(self) -> str:
        return f"IntervalSchedule(interval_ms={self.interval_ms})"


class CronSchedule:
    """
    Due when a cron fire time has passed since the last run.

    A job that has never run becomes due at the first fire time after the
    schedule was created, not retroactively.

    Example:
        CronSchedule("0 2 * * *", timezone="Europe/Berlin")  # daily at 02:00
    """

    def __init__(
        self,
        expression: str,
        timezone: str = "UTC",
        created_at: datetime | None = None,
    ):
        self.expression = expression
        self.timezone = timezone
        self._trigger = CronTrigger.from_crontab(expression, timezone=timezone)
        self._created_at = created_at or datetime.now(UTC)

    def next_fire_time(self, after: datetime) -> datetime | None:
        """First fire time strictly after the given moment."""
        start = after.replace(microsecond=0) + timedelta(seconds=1)
        return self._trigger.get_next_fire_time(None, start)

    def is_due(self, now: datetime, last_run: datetime | None) -> bool:
        next_fire = self.next_fire_time(last_run or self._created_at)
        return next_fire is not None and next_fire <= now

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r}, timezone={self.timezone!r})"
