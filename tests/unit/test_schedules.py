"""
Unit tests for job schedules and the job registry.
"""

from datetime import UTC, datetime, timedelta

import pytest

from jobcore.runner import CronSchedule, IntervalSchedule, JobRegistry, Schedule
from jobcore.types import RetryConfig

CREATED = datetime(2024, 1, 1, 0, 0, tzinfo=UTC)


class TestIntervalSchedule:
    """Tests for IntervalSchedule."""

    def test_due_when_never_run(self):
        """Test a job that never ran is due immediately."""
        assert IntervalSchedule(60_000).is_due(CREATED, None)

    def test_due_after_interval(self):
        """Test the interval boundary."""
        schedule = IntervalSchedule(60_000)

        assert not schedule.is_due(CREATED + timedelta(seconds=59), CREATED)
        assert schedule.is_due(CREATED + timedelta(seconds=60), CREATED)

    def test_rejects_non_positive_interval(self):
        """Test invalid intervals are rejected."""
        with pytest.raises(ValueError):
            IntervalSchedule(0)

    def test_satisfies_protocol(self):
        """Test the schedule matches the Schedule protocol."""
        assert isinstance(IntervalSchedule(1000), Schedule)
        assert isinstance(CronSchedule("* * * * *"), Schedule)


class TestCronSchedule:
    """Tests for CronSchedule."""

    def test_not_due_before_first_fire_time(self):
        """Test a new cron job waits for its first fire time."""
        schedule = CronSchedule("0 2 * * *", created_at=CREATED)

        assert not schedule.is_due(CREATED + timedelta(hours=1, minutes=59), None)
        assert schedule.is_due(CREATED + timedelta(hours=2, seconds=30), None)

    def test_due_once_per_fire_time(self):
        """Test a job that ran is not due again until the next fire time."""
        schedule = CronSchedule("0 2 * * *", created_at=CREATED)
        ran_at = CREATED + timedelta(hours=2, seconds=30)

        assert not schedule.is_due(CREATED + timedelta(hours=3), ran_at)
        assert not schedule.is_due(CREATED + timedelta(days=1, hours=1), ran_at)
        assert schedule.is_due(CREATED + timedelta(days=1, hours=2), ran_at)

    def test_run_exactly_at_fire_time_is_not_due_again(self):
        """Test the fire time a job ran at does not count twice."""
        schedule = CronSchedule("*/5 * * * *", created_at=CREATED)
        ran_at = CREATED + timedelta(minutes=5)

        assert not schedule.is_due(ran_at, ran_at)
        assert schedule.is_due(ran_at + timedelta(minutes=5), ran_at)

    def test_next_fire_time(self):
        """Test the next fire time is strictly after the given moment."""
        schedule = CronSchedule("30 9 * * mon-fri")
        friday_evening = datetime(2024, 1, 5, 18, 0, tzinfo=UTC)

        next_fire = schedule.next_fire_time(friday_evening)

        assert next_fire == datetime(2024, 1, 8, 9, 30, tzinfo=UTC)

    def test_timezone(self):
        """Test fire times are evaluated in the schedule's timezone."""
        schedule = CronSchedule("0 2 * * *", timezone="Europe/Berlin", created_at=CREATED)

        # 02:00 in Berlin is 01:00 UTC in winter
        assert not schedule.is_due(CREATED + timedelta(minutes=59), None)
        assert schedule.is_due(CREATED + timedelta(hours=1), None)

    def test_invalid_expression(self):
        """Test malformed cron expressions are rejected."""
        with pytest.raises(ValueError):
            CronSchedule("every day at two")


async def noop(context):
    return None


class TestJobRegistry:
    """Tests for JobRegistry."""

    def test_register_handler(self):
        """Test registering a handler builds a definition."""
        registry = JobRegistry()
        retry = RetryConfig(max_retries=5)

        definition = registry.register_handler(
            "daily-report",
            noop,
            schedule=IntervalSchedule(1000),
            retry=retry,
            dependency="warehouse",
            metadata={"team": "finance"},
        )

        assert registry.get("daily-report") is definition
        assert definition.retry is retry
        assert definition.dependency == "warehouse"
        assert definition.metadata == {"team": "finance"}
        assert "daily-report" in registry
        assert len(registry) == 1

    def test_job_decorator(self):
        """Test the decorator registers and returns the handler unchanged."""
        registry = JobRegistry()

        @registry.job("cleanup", timeout_ms=5_000, run_on_startup=True)
        async def cleanup(context):
            return None

        definition = registry.get("cleanup")
        assert definition.handler is cleanup
        assert definition.timeout_ms == 5_000
        assert definition.run_on_startup is True

    def test_replace_enable_and_remove(self):
        """Test replacing, disabling and removing jobs."""
        registry = JobRegistry()
        registry.register_handler("daily-report", noop)
        registry.register_handler("daily-report", noop, timeout_ms=10)

        assert len(registry) == 1
        assert registry.get("daily-report").timeout_ms == 10

        assert registry.set_enabled("daily-report", False) is True
        assert registry.get("daily-report").enabled is False
        assert registry.set_enabled("missing", True) is False

        assert registry.list_jobs() == ["daily-report"]
        assert registry.remove("daily-report") is True
        assert registry.remove("daily-report") is False
        assert registry.definitions() == []
