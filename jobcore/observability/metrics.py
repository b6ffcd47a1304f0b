"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobcore.constants import (
    METRIC_CIRCUIT_STATE,
    METRIC_CIRCUIT_TRANSITIONS,
    METRIC_CIRCUIT_REJECTIONS,
    METRIC_DEAD_LETTERED,
    METRIC_JOB_DURATION,
    METRIC_JOB_RETRIES,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_STARTED,
    METRIC_LOCK_ACQUIRED,
    METRIC_LOCK_EXTENDED,
    METRIC_LOCK_FAILED,
    METRIC_LOCK_RELEASED,
    CircuitState,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None

# Numeric encoding of circuit states for the state gauge
CIRCUIT_STATE_VALUES: dict[CircuitState, int] = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class MetricsCollector:
    """
    Prometheus metrics collector for the job execution core.

    Collects metrics for:
    - Lock acquisitions, failures, extensions and releases
    - Job starts, completions and execution duration
    - Retries and dead letters
    - Circuit breaker state
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.lock_acquired = Counter(
            METRIC_LOCK_ACQUIRED,
            "Total number of locks acquired",
            ["job_id"],
            registry=self._registry,
        )

        self.lock_failed = Counter(
            METRIC_LOCK_FAILED,
            "Total number of failed lock acquisitions or lost leases",
            ["job_id", "reason"],
            registry=self._registry,
        )

        self.lock_extended = Counter(
            METRIC_LOCK_EXTENDED,
            "Total number of lease extensions",
            ["job_id"],
            registry=self._registry,
        )

        self.lock_released = Counter(
            METRIC_LOCK_RELEASED,
            "Total number of locks released",
            ["job_id"],
            registry=self._registry,
        )

        self.jobs_started = Counter(
            METRIC_JOBS_STARTED,
            "Total number of job executions started",
            ["job_id"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job executions completed",
            ["job_id", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_id", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 600.0),
            registry=self._registry,
        )

        self.job_retries = Counter(
            METRIC_JOB_RETRIES,
            "Total number of job retry attempts",
            ["job_id"],
            registry=self._registry,
        )

        self.dead_lettered = Counter(
            METRIC_DEAD_LETTERED,
            "Total number of jobs moved to the dead letter queue",
            ["job_id"],
            registry=self._registry,
        )

        self.circuit_state = Gauge(
            METRIC_CIRCUIT_STATE,
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["circuit"],
            registry=self._registry,
        )

        self.circuit_transitions = Counter(
            METRIC_CIRCUIT_TRANSITIONS,
            "Total number of circuit breaker state transitions",
            ["circuit", "to_state"],
            registry=self._registry,
        )

        self.circuit_rejections = Counter(
            METRIC_CIRCUIT_REJECTIONS,
            "Total number of calls rejected by an open circuit",
            ["circuit"],
            registry=self._registry,
        )

    def record_lock_acquired(self, job_id: str) -> None:
        """Record a lock acquisition."""
        self.lock_acquired.labels(job_id=job_id).inc()

    def record_lock_failed(self, job_id: str, reason: str) -> None:
        """Record a failed acquisition or a lost lease."""
        self.lock_failed.labels(job_id=job_id, reason=reason).inc()

    def record_lock_extended(self, job_id: str) -> None:
        """Record a lease extension."""
        self.lock_extended.labels(job_id=job_id).inc()

    def record_lock_released(self, job_id: str) -> None:
        """Record a lock release."""
        self.lock_released.labels(job_id=job_id).inc()

    def record_job_started(self, job_id: str) -> None:
        """Record a job start."""
        self.jobs_started.labels(job_id=job_id).inc()

    def record_job_completed(
        self,
        job_id: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a job completion."""
        self.jobs_completed.labels(job_id=job_id, status=status).inc()
        self.job_duration.labels(job_id=job_id, status=status).observe(
            duration_seconds
        )

    def record_job_retry(self, job_id: str) -> None:
        """Record a retry attempt."""
        self.job_retries.labels(job_id=job_id).inc()

    def record_dead_lettered(self, job_id: str) -> None:
        """Record a dead letter entry."""
        self.dead_lettered.labels(job_id=job_id).inc()

    def record_circuit_state(self, circuit: str, state: CircuitState) -> None:
        """Record a circuit breaker transition."""
        self.circuit_state.labels(circuit=circuit).set(CIRCUIT_STATE_VALUES[state])
        self.circuit_transitions.labels(circuit=circuit, to_state=state.value).inc()

    def record_circuit_rejected(self, circuit: str) -> None:
        """Record a call rejected by an open circuit."""
        self.circuit_rejections.labels(circuit=circuit).inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
