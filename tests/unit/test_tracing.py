"""
Unit tests for job spans.
"""

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from jobcore.constants import SPAN_ACQUIRE_LOCK, SPAN_EXECUTE_JOB, SPAN_RECORD_DEAD_LETTER
from jobcore.dead_letter import DeadLetterQueue
from jobcore.locking import LockManager
from jobcore.observability import tracing
from jobcore.observability.tracing import job_span, set_job_attributes
from jobcore.runner import JobRunner


@pytest.fixture
def exporter(monkeypatch):
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(tracing, "_tracer", provider.get_tracer("jobcore-tests"))
    return exporter


def spans_by_name(exporter):
    return {span.name: span for span in exporter.get_finished_spans()}


class TestJobSpan:
    """Tests for the job_span helper."""

    def test_attributes_are_namespaced(self, exporter):
        """Test job attributes carry the jobcore prefix and None is skipped."""
        with job_span("acquire_lock", "daily-report", ttl_ms=5_000, reason=None) as span:
            set_job_attributes(span, fencing_token=3)

        [span] = exporter.get_finished_spans()
        assert span.attributes["jobcore.job_id"] == "daily-report"
        assert span.attributes["jobcore.ttl_ms"] == 5_000
        assert span.attributes["jobcore.fencing_token"] == 3
        assert "jobcore.reason" not in span.attributes

    def test_exception_marks_span_failed(self, exporter):
        """Test an escaping exception is recorded and re-raised."""
        with pytest.raises(ConnectionError):
            with job_span("execute_job", "daily-report"):
                raise ConnectionError("warehouse unreachable")

        [span] = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert span.status.description == "warehouse unreachable"
        assert [event.name for event in span.events] == ["exception"]

    def test_without_provider_spans_are_noops(self):
        """Test spans work before any tracer provider is installed."""
        with job_span("execute_job", "daily-report") as span:
            set_job_attributes(span, fencing_token=1)


class TestRunnerSpans:
    """Tests for the spans a job run produces."""

    @pytest.mark.asyncio
    async def test_run_spans(self, exporter, lock_store, clock, sleeper, fast_retry):
        """Test lock, execution and dead letter spans describe the run."""
        runner = JobRunner(
            LockManager(lock_store, instance_id="instance-a", clock=clock, sleep=sleeper),
            DeadLetterQueue(lock_store, clock=clock, sleep=sleeper),
            retry_config=fast_retry,
            sleep=sleeper,
        )

        async def handler(context):
            raise ConnectionError("warehouse unreachable")

        runner.register_handler("daily-report", handler)

        execution = await runner.run_job("daily-report")

        spans = spans_by_name(exporter)
        assert spans[SPAN_ACQUIRE_LOCK].attributes["jobcore.fencing_token"] == 1
        executed = spans[SPAN_EXECUTE_JOB].attributes
        assert executed["jobcore.execution_id"] == execution.execution_id
        assert executed["jobcore.status"] == "failed"
        assert executed["jobcore.attempts"] == 3
        assert executed["jobcore.dead_lettered"] is True
        assert spans[SPAN_RECORD_DEAD_LETTER].attributes["jobcore.attempts"] == 3
