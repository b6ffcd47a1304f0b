"""
Job runner.

Orchestrates one run of a job: take the job's lock, call the handler under
the retry engine (through the job's circuit breaker, if it has one), and
dead-letter the job when its retries are exhausted. The lock is released on
every path before control returns to the scheduler.

Per job per tick:
    idle -> locking -> idle                        (lock held elsewhere)
    idle -> locking -> running -> idle             (success)
    running -> retrying -> running                 (retryable failure)
    retrying -> exhausted -> dead_lettered -> idle (retries spent)
"""

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from jobcore.config import get_settings
from jobcore.constants import SPAN_EXECUTE_JOB, JobStatus
from jobcore.dead_letter.queue import DeadLetterQueue
from jobcore.locking.manager import LockHandle, LockManager
from jobcore.observability.listeners import EventListener, emit
from jobcore.observability.logging import job_log_context, set_attempt
from jobcore.observability.tracing import job_span, set_job_attributes
from jobcore.resilience.circuit_breaker import CircuitBreakerRegistry
from jobcore.resilience.retry import RetryExhaustedError, with_retry
from jobcore.runner.registry import JobRegistry
from jobcore.store.base import StoreError
from jobcore.types.config import RetryConfig
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

logger = logging.getLogger(__name__)


class JobFailedError(Exception):
    """Raised for a handler that returned JobResult(success=False)."""

    def __init__(self, job_id: str, result: JobResult):
        self.job_id = job_id
        self.result = result
        super().__init__(result.error or f"Job {job_id} reported failure")


class JobRunner:
    """
    Runs registered jobs under their distributed locks.

    Example:
        runner = JobRunner(lock_manager, dlq, breakers=CircuitBreakerRegistry())
        runner.register_handler("daily-report", build_report, schedule=CronSchedule("0 2 * * *"))
        await runner.run_due(datetime.now(UTC))
    """

    def __init__(
        self,
        lock_manager: LockManager,
        dead_letter_queue: DeadLetterQueue,
        *,
        breakers: CircuitBreakerRegistry | None = None,
        listener: EventListener | None = None,
        registry: JobRegistry | None = None,
        retry_config: RetryConfig | None = None,
        max_concurrent_jobs: int | None = None,
        history_size: int | None = None,
        max_consecutive_failures: int | None = None,
        default_timeout_ms: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the runner.

        Args:
            lock_manager: Lock manager shared by every job of this instance.
            dead_letter_queue: Where exhausted jobs are recorded.
            breakers: Circuit breakers looked up by JobDefinition.dependency.
            listener: Receives job.* events.
            registry: Known jobs; a new empty registry when omitted.
            retry_config: Default retry policy for jobs without their own.
            max_concurrent_jobs: Jobs this instance may run at once.
            history_size: Executions kept for executions().
            max_consecutive_failures: Failures in a row before alerting critical.
            default_timeout_ms: Per-attempt timeout for jobs without their own.
            sleep: Awaitable sleep taking seconds, used for retry backoff.
        """
        settings = get_settings()

        self.lock_manager = lock_manager
        self.dead_letter_queue = dead_letter_queue
        self.breakers = breakers
        self.registry = registry or JobRegistry()
        self.retry_config = retry_config or settings.retry_config()
        self.max_concurrent_jobs = max_concurrent_jobs or settings.runner_max_concurrent_jobs
        self.max_consecutive_failures = (
            max_consecutive_failures or settings.runner_max_consecutive_failures
        )
        self.default_timeout_ms = default_timeout_ms or settings.runner_default_timeout_ms

        self._listener = listener
        self._sleep = sleep
        self._running: set[str] = set()
        self._accepting = True
        self._inflight: set[asyncio.Task[JobExecution | None]] = set()
        self._history: deque[JobExecution] = deque(
            maxlen=history_size or settings.runner_history_size
        )
        self._counters: dict[str, JobCounters] = {}
        self._last_run: dict[str, datetime] = {}
        self._stats = RunnerStats()
        self._total_duration_ms = 0.0
        self._finished_runs = 0

    @property
    def instance_id(self) -> str:
        return self.lock_manager.instance_id

    def register(self, definition: JobDefinition) -> JobDefinition:
        return self.registry.register(definition)

    def register_handler(self, job_id: str, handler: JobHandler, **options: Any) -> JobDefinition:
        return self.registry.register_handler(job_id, handler, **options)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    async def run_job(self, job_id: str) -> JobExecution | None:
        """
        Run one job once, if this instance can take its lock.

        Returns:
            The finished execution, or None when the run was skipped
            (unknown or disabled job, already running here, concurrency
            limit reached, shutting down, or the lock is held elsewhere).
        """
        definition = self.registry.get(job_id)
        if definition is None:
            logger.warning("Unknown job", extra={"job_id": job_id})
            return None

        if not self._accepting:
            logger.debug("Runner shutting down, run refused", extra={"job_id": job_id})
            return None

        if not definition.enabled:
            logger.debug("Job disabled, skipping", extra={"job_id": job_id})
            self._record_skip(job_id)
            return None

        if job_id in self._running:
            logger.debug("Job already running in this instance", extra={"job_id": job_id})
            self._record_skip(job_id)
            return None

        if len(self._running) >= self.max_concurrent_jobs:
            logger.error(
                "Concurrency limit reached, job skipped",
                extra={
                    "job_id": job_id,
                    "running": len(self._running),
                    "max_concurrent_jobs": self.max_concurrent_jobs,
                },
            )
            self._record_skip(job_id)
            return None

        self._running.add(job_id)
        try:
            execution = JobExecution(execution_id=uuid.uuid4().hex, job_id=job_id)
            lock_overrides = asdict(definition.lock) if definition.lock else {}

            outcome = await self.lock_manager.with_lock(
                job_id,
                lambda handle: self._execute(definition, execution, handle),
                **lock_overrides,
            )

            if not outcome.acquired:
                logger.debug("Lock held elsewhere, job skipped", extra={"job_id": job_id})
                self._record_skip(job_id)
                return None

            if outcome.error is not None:
                logger.error(
                    "Unexpected error running job",
                    exc_info=outcome.error,
                    extra={"job_id": job_id, "execution_id": execution.execution_id},
                )
                execution.status = JobStatus.FAILED
                execution.error = str(outcome.error)
                execution.finished_at = execution.finished_at or datetime.now(UTC)
                self._record_failure(execution)

            self._history.append(execution)
            return execution
        finally:
            self._running.discard(job_id)

    async def run_due(self, now: datetime | None = None) -> list[JobExecution]:
        """
        One scheduler tick: run every enabled job whose schedule is due.

        Due jobs run concurrently. Returns the executions that actually ran.
        """
        now = now or datetime.now(UTC)
        due: list[str] = []
        for definition in self.registry.definitions():
            if not definition.enabled or definition.schedule is None:
                continue
            if definition.schedule.is_due(now, self._last_run.get(definition.job_id)):
                self._last_run[definition.job_id] = now
                due.append(definition.job_id)

        if not due:
            return []

        logger.debug("Running due jobs", extra={"job_ids": due})
        return await self._run_many(due)

    async def run_startup_jobs(self) -> list[JobExecution]:
        """Run every enabled job flagged run_on_startup."""
        now = datetime.now(UTC)
        job_ids = [
            d.job_id for d in self.registry.definitions() if d.run_on_startup and d.enabled
        ]
        for job_id in job_ids:
            self._last_run[job_id] = now
        return await self._run_many(job_ids)

    async def replay(
        self,
        entry_id: str,
        remove_on_success: bool = True,
    ) -> JobExecution | None:
        """
        Run a dead-lettered job again.

        Args:
            entry_id: Dead letter entry to replay.
            remove_on_success: Delete the entry if the replay succeeds.

        Returns:
            The execution, or None if the entry does not exist or the run
            was skipped.
        """
        entry = await self.dead_letter_queue.get(entry_id)
        if entry is None:
            logger.warning("Dead letter entry not found", extra={"entry_id": entry_id})
            return None

        logger.info(
            "Replaying dead-lettered job",
            extra={"entry_id": entry_id, "job_id": entry.job_id},
        )
        execution = await self.run_job(entry.job_id)
        if (
            execution is not None
            and execution.status == JobStatus.SUCCEEDED
            and remove_on_success
        ):
            await self.dead_letter_queue.remove(entry_id)
        return execution

    async def shutdown(self, timeout_ms: int | None = None) -> None:
        """
        Stop accepting runs, wait for scheduled runs in flight, release all locks.

        Args:
            timeout_ms: Maximum wait for in-flight runs; unbounded when None.
        """
        self._accepting = False
        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} jobs to complete")
            _, pending = await asyncio.wait(
                self._inflight,
                timeout=timeout_ms / 1000 if timeout_ms is not None else None,
            )
            if pending:
                logger.warning(
                    "Jobs still running at shutdown",
                    extra={"count": len(pending)},
                )
        await self.lock_manager.release_all()
        logger.info("Job runner stopped", extra={"instance_id": self.instance_id})

    def stats(self) -> RunnerStats:
        return self._stats.model_copy(
            update={
                "running": sorted(self._running),
                "average_duration_ms": (
                    self._total_duration_ms / self._finished_runs
                    if self._finished_runs
                    else 0.0
                ),
                "jobs": {
                    job_id: counters.model_copy()
                    for job_id, counters in self._counters.items()
                },
            }
        )

    def executions(self, job_id: str | None = None) -> list[JobExecution]:
        """Recent executions, newest first."""
        return [
            execution
            for execution in reversed(self._history)
            if job_id is None or execution.job_id == job_id
        ]

    async def _run_many(self, job_ids: list[str]) -> list[JobExecution]:
        tasks = [asyncio.create_task(self.run_job(job_id)) for job_id in job_ids]
        self._inflight.update(tasks)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._inflight.difference_update(tasks)

        executions: list[JobExecution] = []
        for job_id, result in zip(job_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Job run crashed",
                    exc_info=result,
                    extra={"job_id": job_id},
                )
            elif result is not None:
                executions.append(result)
        return executions

    async def _execute(
        self,
        definition: JobDefinition,
        execution: JobExecution,
        handle: LockHandle,
    ) -> JobExecution:
        job_id = definition.job_id
        retry_config = definition.retry or self.retry_config
        breaker = (
            self.breakers.get_or_create(definition.dependency)
            if self.breakers is not None and definition.dependency
            else None
        )

        execution.status = JobStatus.RUNNING
        execution.started_at = datetime.now(UTC)
        execution.fencing_token = handle.fencing_token

        counters = self._job_counters(job_id)
        counters.runs += 1
        counters.last_run_at = execution.started_at
        self._stats.total_runs += 1

        with job_log_context(
            job_id, execution.execution_id, handle.fencing_token, self.instance_id
        ), job_span(
            SPAN_EXECUTE_JOB,
            job_id,
            execution_id=execution.execution_id,
            fencing_token=handle.fencing_token,
            dependency=definition.dependency,
        ) as span:
            logger.info("Job started")
            emit(
                self._listener,
                LifecycleEvent.job_started(
                    job_id, execution.execution_id, handle.fencing_token
                ),
            )

            async def attempt() -> Any:
                execution.attempts += 1
                set_attempt(execution.attempts)
                context = JobContext(
                    job_id=job_id,
                    execution_id=execution.execution_id,
                    attempt=execution.attempts,
                    max_attempts=retry_config.max_retries,
                    instance_id=self.instance_id,
                    started_at=execution.started_at,
                    fencing_token=handle.fencing_token,
                    lock=handle,
                    metadata=dict(definition.metadata),
                )
                return await self._invoke(definition, context)

            retried = False

            def on_retry(error: Exception, failed_attempt: int, delay_ms: float) -> None:
                nonlocal retried
                retried = True
                emit(
                    self._listener,
                    LifecycleEvent.job_retrying(
                        job_id, execution.execution_id, failed_attempt, delay_ms, str(error)
                    ),
                )

            try:
                await with_retry(
                    attempt,
                    retry_config,
                    circuit_breaker=breaker,
                    on_retry=on_retry,
                    operation=job_id,
                    sleep=self._sleep,
                )
            except RetryExhaustedError as e:
                await self._handle_exhausted(execution, e)
            except Exception as e:
                self._handle_failure(execution, e)
            else:
                self._handle_success(execution)
            finally:
                if retried:
                    self._stats.retried_runs += 1

            set_job_attributes(
                span,
                status=execution.status.value,
                attempts=execution.attempts,
                dead_lettered=execution.dead_lettered,
            )

        return execution

    async def _invoke(self, definition: JobDefinition, context: JobContext) -> Any:
        timeout_ms = definition.timeout_ms or self.default_timeout_ms
        result = await asyncio.wait_for(
            definition.handler(context), timeout=timeout_ms / 1000
        )
        if isinstance(result, JobResult) and not result.success:
            raise JobFailedError(definition.job_id, result)
        return result

    def _handle_success(self, execution: JobExecution) -> None:
        execution.status = JobStatus.SUCCEEDED
        execution.finished_at = datetime.now(UTC)
        duration_ms = execution.duration_ms or 0.0

        counters = self._job_counters(execution.job_id)
        counters.successes += 1
        counters.consecutive_failures = 0
        counters.last_success_at = execution.finished_at
        self._stats.successful_runs += 1
        self._add_duration(duration_ms)

        logger.info(
            "Job succeeded",
            extra={
                "job_id": execution.job_id,
                "execution_id": execution.execution_id,
                "attempts": execution.attempts,
                "duration_ms": duration_ms,
            },
        )
        emit(
            self._listener,
            LifecycleEvent.job_succeeded(
                execution.job_id,
                execution.execution_id,
                duration_ms,
                execution.attempts,
                execution.fencing_token,
            ),
        )

    async def _handle_exhausted(
        self,
        execution: JobExecution,
        exhausted: RetryExhaustedError,
    ) -> None:
        definition = self.registry.get(execution.job_id)
        payload = {
            "execution_id": execution.execution_id,
            "fencing_token": execution.fencing_token,
            "instance_id": self.instance_id,
            "metadata": dict(definition.metadata) if definition else {},
        }
        try:
            await self.dead_letter_queue.record_exhausted(
                execution.job_id, exhausted, payload
            )
            execution.dead_lettered = True
            self._job_counters(execution.job_id).dead_lettered += 1
            self._stats.dead_lettered_runs += 1
        except StoreError:
            logger.exception(
                "Failed to record dead letter entry",
                extra={"job_id": execution.job_id, "execution_id": execution.execution_id},
            )

        self._handle_failure(execution, exhausted.last_error, attempts=exhausted.attempts)

    def _handle_failure(
        self,
        execution: JobExecution,
        error: Exception,
        attempts: int | None = None,
    ) -> None:
        execution.status = JobStatus.FAILED
        execution.finished_at = datetime.now(UTC)
        execution.error = str(error) or type(error).__name__
        if attempts is not None:
            execution.attempts = attempts
        duration_ms = execution.duration_ms or 0.0
        self._add_duration(duration_ms)

        logger.error(
            "Job failed",
            extra={
                "job_id": execution.job_id,
                "execution_id": execution.execution_id,
                "attempts": execution.attempts,
                "error": execution.error,
                "error_type": type(error).__name__,
                "dead_lettered": execution.dead_lettered,
            },
        )
        emit(
            self._listener,
            LifecycleEvent.job_failed(
                execution.job_id,
                execution.execution_id,
                duration_ms,
                execution.attempts,
                execution.error,
                execution.fencing_token,
            ),
        )
        self._record_failure(execution)

    def _record_failure(self, execution: JobExecution) -> None:
        counters = self._job_counters(execution.job_id)
        counters.failures += 1
        counters.consecutive_failures += 1
        self._stats.failed_runs += 1

        extra = {
            "job_id": execution.job_id,
            "consecutive_failures": counters.consecutive_failures,
            "max_consecutive_failures": self.max_consecutive_failures,
        }
        if counters.consecutive_failures >= self.max_consecutive_failures:
            logger.critical("Job keeps failing", extra=extra)
        elif counters.consecutive_failures > 1:
            logger.warning("Job failed repeatedly", extra=extra)

    def _record_skip(self, job_id: str) -> None:
        self._stats.skipped_runs += 1
        self._job_counters(job_id).skipped += 1

    def _add_duration(self, duration_ms: float) -> None:
        self._total_duration_ms += duration_ms
        self._finished_runs += 1

    def _job_counters(self, job_id: str) -> JobCounters:
        counters = self._counters.get(job_id)
        if counters is None:
            counters = JobCounters()
            self._counters[job_id] = counters
        return counters
