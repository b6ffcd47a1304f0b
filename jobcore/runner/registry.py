"""
Job registry.

Job handlers must be idempotent: a lost lease or a replay from the dead
letter queue can run the same job body more than once.
"""

import logging
from collections.abc import Callable
from typing import Any

from jobcore.runner.schedules import Schedule
from jobcore.types.config import LockConfig, RetryConfig
from jobcore.types.job import JobDefinition, JobHandler

logger = logging.getLogger(__name__)


class JobRegistry:
    """
    The set of jobs a runner knows about.

    Example:
        registry = JobRegistry()

        @registry.job("daily-report", schedule=CronSchedule("0 2 * * *"))
        async def daily_report(context: JobContext) -> JobResult:
            ...
    """

    def __init__(self) -> None:
        self._jobs: dict[str, JobDefinition] = {}

    def register(self, definition: JobDefinition) -> JobDefinition:
        """
        Add or replace a job definition.

        Args:
            definition: The job to register.

        Returns:
            The registered definition.
        """
        if definition.job_id in self._jobs:
            logger.warning(
                "Replacing registered job", extra={"job_id": definition.job_id}
            )
        self._jobs[definition.job_id] = definition
        logger.info(f"Registered job: {definition.job_id}")
        return definition

    def register_handler(
        self,
        job_id: str,
        handler: JobHandler,
        *,
        schedule: Schedule | None = None,
        enabled: bool = True,
        timeout_ms: int | None = None,
        retry: RetryConfig | None = None,
        lock: LockConfig | None = None,
        dependency: str | None = None,
        run_on_startup: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> JobDefinition:
        """Build a definition around handler and register it."""
        return self.register(
            JobDefinition(
                job_id=job_id,
                handler=handler,
                schedule=schedule,
                enabled=enabled,
                timeout_ms=timeout_ms,
                retry=retry,
                lock=lock,
                dependency=dependency,
                run_on_startup=run_on_startup,
                metadata=metadata or {},
            )
        )

    def job(self, job_id: str, **options: Any) -> Callable[[JobHandler], JobHandler]:
        """Decorator form of register_handler()."""

        def decorator(handler: JobHandler) -> JobHandler:
            self.register_handler(job_id, handler, **options)
            return handler

        return decorator

    def get(self, job_id: str) -> JobDefinition | None:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    def set_enabled(self, job_id: str, enabled: bool) -> bool:
        """Enable or disable a job. Returns False for unknown jobs."""
        definition = self._jobs.get(job_id)
        if definition is None:
            return False
        definition.enabled = enabled
        logger.info(
            "Job enabled" if enabled else "Job disabled", extra={"job_id": job_id}
        )
        return True

    def list_jobs(self) -> list[str]:
        """List all registered job ids."""
        return list(self._jobs.keys())

    def definitions(self) -> list[JobDefinition]:
        return list(self._jobs.values())

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)
