"""
Job runner, registry, schedules and the scheduler loop.
"""

from jobcore.runner.registry import JobRegistry
from jobcore.runner.runner import JobFailedError, JobRunner
from jobcore.runner.schedules import CronSchedule, IntervalSchedule, Schedule

__all__ = [
    "JobRunner",
    "JobFailedError",
    "JobRegistry",
    "Schedule",
    "IntervalSchedule",
    "CronSchedule",
]
