"""
Scheduler process.

Every instance runs the same tick loop; the job locks decide which instance
actually runs each due job.
"""

import asyncio
import importlib
import logging
import signal
from collections.abc import Callable
from datetime import UTC, datetime

from jobcore.config import Settings, get_settings
from jobcore.constants import StoreBackend
from jobcore.dead_letter.queue import DeadLetterQueue
from jobcore.locking.manager import LockManager
from jobcore.observability.listeners import CompositeListener, LoggingListener, MetricsListener
from jobcore.observability.logging import setup_logging
from jobcore.observability.metrics import setup_metrics
from jobcore.observability.tracing import instrument_sql_store, setup_tracing
from jobcore.resilience.circuit_breaker import CircuitBreakerRegistry
from jobcore.runner.registry import JobRegistry
from jobcore.runner.runner import JobRunner
from jobcore.store.connection import get_engine
from jobcore.store.factory import close_store, create_store

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Tick loop driving a JobRunner.

    Features:
    - Runs run_on_startup jobs once before the first tick
    - Runs due jobs every tick_interval_ms
    - Graceful shutdown: stop() ends the loop, start() then shuts the runner down
    """

    def __init__(
        self,
        runner: JobRunner,
        tick_interval_ms: int | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        """
        Initialize the scheduler.

        Args:
            runner: The runner to drive.
            tick_interval_ms: Time between ticks.
            clock: Source of "now" handed to schedules.
        """
        settings = get_settings()

        self.runner = runner
        self.tick_interval_ms = tick_interval_ms or settings.scheduler_tick_interval_ms
        self._clock = clock
        self._stopped = asyncio.Event()
        self._running = False
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run until stop() is called."""
        logger.info(
            "Scheduler starting",
            extra={
                "instance_id": self.runner.instance_id,
                "tick_interval_ms": self.tick_interval_ms,
                "jobs": self.runner.registry.list_jobs(),
            },
        )
        self._running = True
        self._stopped.clear()

        try:
            await self.runner.run_startup_jobs()
        except Exception as e:
            logger.exception(f"Error running startup jobs: {e}")

        while not self._stopped.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            try:
                await asyncio.wait_for(
                    self._stopped.wait(), timeout=self.tick_interval_ms / 1000
                )
            except TimeoutError:
                pass

        await self.runner.shutdown()
        self._running = False
        logger.info("Scheduler stopped", extra={"instance_id": self.runner.instance_id})

    async def tick(self) -> None:
        self.ticks += 1
        await self.runner.run_due(self._clock())

    async def stop(self) -> None:
        """Stop the loop after the current tick."""
        logger.info("Scheduler stopping", extra={"instance_id": self.runner.instance_id})
        self._stopped.set()


def load_registry(settings: Settings) -> JobRegistry:
    """
    Import the jobs module named by settings.jobs_module and return its registry.

    An empty registry is returned when no module is configured.
    """
    if not settings.jobs_module:
        logger.warning("No jobs module configured, scheduler has no jobs")
        return JobRegistry()

    module = importlib.import_module(settings.jobs_module)
    registry = getattr(module, "registry", None)
    if not isinstance(registry, JobRegistry):
        msg = f"{settings.jobs_module} does not define a JobRegistry named 'registry'"
        raise TypeError(msg)
    return registry


async def run_async() -> None:
    """Run the scheduler asynchronously."""
    setup_logging()
    setup_metrics()
    setup_tracing()

    settings = get_settings()
    store = await create_store(settings)
    if settings.store_backend == StoreBackend.SQL:
        instrument_sql_store(get_engine())

    listener = CompositeListener(LoggingListener(), MetricsListener())
    lock_manager = LockManager(
        store,
        instance_id=settings.instance_id,
        config=settings.lock_config(),
        listener=listener,
    )
    runner = JobRunner(
        lock_manager,
        DeadLetterQueue(store, settings.dead_letter_config(), listener=listener),
        breakers=CircuitBreakerRegistry(settings.circuit_config(), listener=listener),
        listener=listener,
        registry=load_registry(settings),
    )
    scheduler = Scheduler(runner)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(scheduler.stop()))

    try:
        await scheduler.start()
    finally:
        await close_store(store)


def run() -> None:
    """Run the scheduler."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
