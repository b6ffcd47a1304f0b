"""
Lifecycle event listeners.

The lock manager, circuit breakers and job runner report what they do to an
injected listener. Presentation (logs, metrics, dashboards) is the
listener's concern; listener failures never reach the core.
"""

import asyncio
import logging
from typing import Protocol, runtime_checkable

from jobcore.constants import CircuitState, EventType
from jobcore.observability.metrics import MetricsCollector, get_metrics
from jobcore.types.events import LifecycleEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class EventListener(Protocol):
    """Receives lifecycle events. Implementations must not block."""

    def on_event(self, event: LifecycleEvent) -> None: ...


def emit(listener: EventListener | None, event: LifecycleEvent) -> None:
    """
    Deliver an event to a listener, containing any listener error.

    Args:
        listener: The listener, or None.
        event: The event to deliver.
    """
    if listener is None:
        return
    try:
        listener.on_event(event)
    except Exception:
        logger.exception(
            "Event listener raised",
            extra={"event_type": event.event_type.value, "job_id": event.job_id},
        )


class NullListener:
    """Discards every event."""

    def on_event(self, event: LifecycleEvent) -> None:
        return None


class LoggingListener:
    """Writes events to the application log at a level matching their severity."""

    _LEVELS: dict[EventType, int] = {
        EventType.LOCK_ACQUIRED: logging.DEBUG,
        EventType.LOCK_EXTENDED: logging.DEBUG,
        EventType.LOCK_RELEASED: logging.DEBUG,
        EventType.LOCK_FAILED: logging.DEBUG,
        EventType.CIRCUIT_STATE_CHANGE: logging.WARNING,
        EventType.CIRCUIT_REJECTED: logging.DEBUG,
        EventType.JOB_STARTED: logging.INFO,
        EventType.JOB_RETRYING: logging.INFO,
        EventType.JOB_SUCCEEDED: logging.INFO,
        EventType.JOB_FAILED: logging.ERROR,
        EventType.JOB_DEAD_LETTERED: logging.ERROR,
    }

    def __init__(self, logger_name: str = "jobcore.events"):
        self._logger = logging.getLogger(logger_name)

    def on_event(self, event: LifecycleEvent) -> None:
        level = self._LEVELS.get(event.event_type, logging.INFO)
        self._logger.log(
            level,
            event.event_type.value,
            extra={
                "job_id": event.job_id,
                "execution_id": event.execution_id,
                "fencing_token": event.fencing_token,
                "duration_ms": event.duration_ms,
                **event.data,
            },
        )


class MetricsListener:
    """Translates events into Prometheus metrics."""

    def __init__(self, metrics: MetricsCollector | None = None):
        self._metrics = metrics or get_metrics()

    def on_event(self, event: LifecycleEvent) -> None:
        job_id = event.job_id
        match event.event_type:
            case EventType.LOCK_ACQUIRED:
                self._metrics.record_lock_acquired(job_id)
            case EventType.LOCK_FAILED:
                self._metrics.record_lock_failed(
                    job_id, str(event.data.get("reason", "unavailable"))
                )
            case EventType.LOCK_EXTENDED:
                self._metrics.record_lock_extended(job_id)
            case EventType.LOCK_RELEASED:
                self._metrics.record_lock_released(job_id)
            case EventType.JOB_STARTED:
                self._metrics.record_job_started(job_id)
            case EventType.JOB_RETRYING:
                self._metrics.record_job_retry(job_id)
            case EventType.JOB_SUCCEEDED | EventType.JOB_FAILED:
                status = "succeeded" if event.event_type == EventType.JOB_SUCCEEDED else "failed"
                self._metrics.record_job_completed(
                    job_id, status, (event.duration_ms or 0.0) / 1000
                )
            case EventType.JOB_DEAD_LETTERED:
                self._metrics.record_dead_lettered(job_id)
            case EventType.CIRCUIT_STATE_CHANGE:
                self._metrics.record_circuit_state(
                    job_id, CircuitState(event.data["new"])
                )
            case EventType.CIRCUIT_REJECTED:
                self._metrics.record_circuit_rejected(job_id)


class BufferedListener:
    """
    Buffers events in a bounded asyncio queue for a consumer task.

    When the buffer is full the oldest event is dropped so producers never
    block on a slow consumer.
    """

    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def on_event(self, event: LifecycleEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "Event buffer full, dropped oldest event",
                extra={"dropped": self.dropped},
            )
        self.queue.put_nowait(event)

    def drain(self) -> list[LifecycleEvent]:
        """Remove and return every buffered event."""
        events: list[LifecycleEvent] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class CompositeListener:
    """Fans events out to several listeners."""

    def __init__(self, *listeners: EventListener):
        self._listeners = list(listeners)

    def add(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def on_event(self, event: LifecycleEvent) -> None:
        for listener in self._listeners:
            emit(listener, event)
