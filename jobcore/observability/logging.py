"""
Structured logging for jobcore.

Every jobcore module logs through the standard library
(``logging.getLogger(__name__)`` with ``extra=``); setup_logging() routes
those records through structlog so they come out as JSON or console lines.

While a job runs, the runner opens a job_log_context(). Any record logged
inside it (by jobcore, by the handler, by a library the handler calls) is
stamped with the job id, execution id, fencing token, instance id and the
current attempt, so a fenced write can be traced back to the lease that
made it.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, replace
from typing import Any

import structlog
from opentelemetry import trace

from jobcore.config import get_settings


@dataclass(frozen=True)
class JobLogContext:
    """Fields stamped on every record logged during one job run."""

    job_id: str
    execution_id: str
    fencing_token: int
    instance_id: str
    attempt: int = 0


_current_run: ContextVar[JobLogContext | None] = ContextVar("jobcore_run", default=None)


@contextmanager
def job_log_context(
    job_id: str,
    execution_id: str,
    fencing_token: int,
    instance_id: str,
) -> Iterator[JobLogContext]:
    """
    Stamp log records with a job run's identity until the block exits.

    Nests and restores correctly, and each asyncio task sees only its own
    run, so concurrently running jobs never leak fields into each other.
    """
    token = _current_run.set(
        JobLogContext(job_id, execution_id, fencing_token, instance_id)
    )
    try:
        yield _current_run.get()
    finally:
        _current_run.reset(token)


def set_attempt(attempt: int) -> None:
    """Record the attempt number of the current run."""
    run = _current_run.get()
    if run is not None:
        _current_run.set(replace(run, attempt=attempt))


def add_job_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add the current job run's fields to a log record.

    Values passed explicitly through ``extra=`` win over the run's values.
    """
    run = _current_run.get()
    if run is not None:
        for key, value in asdict(run).items():
            if key == "attempt" and not value:
                continue
            event_dict.setdefault(key, value)
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the active span's trace and span ids, if a span is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structured logging for the process.

    Args:
        log_level: Overrides the configured log level.
        log_format: Overrides the configured format ("json" or "console").
    """
    settings = get_settings()

    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    fmt = log_format or settings.log_format

    shared_processors: list[Any] = [
        structlog.stdlib.ExtraAdder(),
        add_job_context,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    renderer: Any
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Store drivers are chatty at INFO
    for name in ("sqlalchemy.engine", "asyncpg", "redis", "apscheduler"):
        logging.getLogger(name).setLevel(logging.WARNING)
