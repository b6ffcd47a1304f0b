"""
Observability module.
Contains logging, metrics, tracing setup and lifecycle event listeners.
"""

from jobcore.observability.listeners import (
    BufferedListener,
    CompositeListener,
    EventListener,
    LoggingListener,
    MetricsListener,
    NullListener,
    emit,
)
from jobcore.observability.logging import job_log_context, setup_logging
from jobcore.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobcore.observability.tracing import job_span, setup_tracing

__all__ = [
    "setup_logging",
    "job_log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "job_span",
    "EventListener",
    "NullListener",
    "LoggingListener",
    "MetricsListener",
    "BufferedListener",
    "CompositeListener",
    "emit",
]
