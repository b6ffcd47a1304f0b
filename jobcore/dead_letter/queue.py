"""
Dead letter queue.

Durable record of jobs that exhausted their retry budget. Entries live in
the shared store under dlq:entry:<id> with a TTL and are indexed in
dlq:index and dlq:job:<job_id>. Retention (TTL and a maximum entry count)
is enforced lazily on every write.

The queue only records failures. Replaying a dead-lettered job is an
explicit operation on the job runner.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from jobcore.constants import (
    DLQ_AGE_BUCKETS,
    DLQ_INDEX_KEY,
    DLQ_KEY_PREFIX,
    SPAN_RECORD_DEAD_LETTER,
)
from jobcore.observability.listeners import EventListener, emit
from jobcore.observability.tracing import job_span
from jobcore.resilience import retry_conditions
from jobcore.resilience.retry import RetryExhaustedError, with_retry
from jobcore.store.base import KeyValueStore, StoreError
from jobcore.store.memory import wall_clock_ms
from jobcore.types.config import DeadLetterConfig, RetryConfig
from jobcore.types.dead_letter import DeadLetterEntry, DeadLetterQuery, DeadLetterStats
from jobcore.types.events import LifecycleEvent

logger = logging.getLogger(__name__)


def entry_key(entry_id: str) -> str:
    return f"{DLQ_KEY_PREFIX}:entry:{entry_id}"


def job_index_key(job_id: str) -> str:
    return f"{DLQ_KEY_PREFIX}:job:{job_id}"


class DeadLetterQueue:
    """
    Dead letter queue over a shared key-value store.

    Example:
        dlq = DeadLetterQueue(store, DeadLetterConfig(retention_count=500))
        recent = await dlq.query(DeadLetterQuery(job_id="daily-report", limit=10))
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: DeadLetterConfig | None = None,
        listener: EventListener | None = None,
        clock: Callable[[], float] = wall_clock_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the queue.

        Args:
            store: Shared key-value store with set operations.
            config: Retention policy.
            listener: Receives job.dead_lettered events.
            clock: Wall clock in milliseconds.
            sleep: Awaitable sleep taking seconds, used between write retries.
        """
        self.store = store
        self.config = config or DeadLetterConfig()
        self._listener = listener
        self._clock = clock
        self._sleep = sleep
        self._write_retry = RetryConfig(
            max_retries=self.config.write_retries,
            base_delay_ms=self.config.write_retry_delay_ms,
            retry_predicate=retry_conditions.on_exceptions(StoreError),
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock() / 1000, UTC)

    async def record(
        self,
        job_id: str,
        error: Exception | str,
        attempts: int,
        *,
        errors: Iterable[str] = (),
        first_failure_at: datetime | None = None,
        last_failure_at: datetime | None = None,
        payload: dict[str, Any] | None = None,
    ) -> DeadLetterEntry:
        """
        Append an entry for a job that exhausted its retries.

        Args:
            job_id: The failed job.
            error: Final error (exception or message).
            attempts: Attempts made before giving up.
            errors: Message of every failed attempt, oldest first.
            first_failure_at: When the first attempt failed.
            last_failure_at: When the last attempt failed.
            payload: Failure context (execution id, fencing token, metadata).

        Returns:
            The stored entry.

        Raises:
            StoreError: If the entry could not be written after
                config.write_retries attempts. Nothing is left behind.
        """
        now = self._now()
        message = str(error) if isinstance(error, Exception) else error
        entry = DeadLetterEntry(
            id=uuid.uuid4().hex,
            job_id=job_id,
            payload=payload or {},
            error=message or type(error).__name__,
            error_type=type(error).__name__ if isinstance(error, Exception) else "Error",
            errors=tuple(errors),
            attempts=attempts,
            first_failure_at=first_failure_at or now,
            last_failure_at=last_failure_at or now,
            recorded_at=now,
        )

        with job_span(SPAN_RECORD_DEAD_LETTER, job_id, entry_id=entry.id, attempts=attempts):
            try:
                await with_retry(
                    lambda: self._write(entry),
                    self._write_retry,
                    operation=f"dead_letter:{job_id}",
                    sleep=self._sleep,
                )
            except RetryExhaustedError as e:
                await self._discard(entry)
                raise StoreError(
                    f"Dead letter entry for {job_id} not written "
                    f"after {e.attempts} attempts: {e.last_error}"
                ) from e.last_error

        logger.error(
            "Job moved to dead letter queue",
            extra={
                "job_id": job_id,
                "entry_id": entry.id,
                "attempts": attempts,
                "error": entry.error,
                "error_type": entry.error_type,
            },
        )
        emit(
            self._listener,
            LifecycleEvent.job_dead_lettered(
                job_id,
                str(entry.payload.get("execution_id", "")),
                entry.id,
                attempts,
                entry.error,
            ),
        )

        try:
            await self._enforce_retention()
        except StoreError as e:
            logger.warning(
                "Dead letter retention sweep failed", extra={"error": str(e)}
            )

        return entry

    async def record_exhausted(
        self,
        job_id: str,
        exhausted: RetryExhaustedError,
        payload: dict[str, Any] | None = None,
    ) -> DeadLetterEntry:
        """Record an entry straight from a retry exhaustion."""
        return await self.record(
            job_id,
            exhausted.last_error,
            exhausted.attempts,
            errors=exhausted.errors,
            first_failure_at=exhausted.first_failure_at,
            last_failure_at=exhausted.last_failure_at,
            payload=payload,
        )

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        raw = await self.store.get(entry_key(entry_id))
        return self._parse(raw) if raw is not None else None

    async def query(self, query: DeadLetterQuery | None = None) -> list[DeadLetterEntry]:
        """
        Entries matching query, newest first.

        Args:
            query: Filters and pagination; defaults to the first page of all entries.
        """
        query = query or DeadLetterQuery()
        index = job_index_key(query.job_id) if query.job_id else DLQ_INDEX_KEY
        entries = await self._load(index)

        if query.since is not None:
            entries = [e for e in entries if e.recorded_at >= query.since]
        if query.until is not None:
            entries = [e for e in entries if e.recorded_at <= query.until]

        entries.sort(key=lambda e: e.recorded_at, reverse=True)
        return entries[query.offset : query.offset + query.limit]

    async def stats(self) -> DeadLetterStats:
        entries = await self._load(DLQ_INDEX_KEY)
        now = self._now()

        by_job: dict[str, int] = {}
        by_age = {label: 0 for _, label in DLQ_AGE_BUCKETS}
        for entry in entries:
            by_job[entry.job_id] = by_job.get(entry.job_id, 0) + 1
            age_ms = (now - entry.recorded_at).total_seconds() * 1000
            for upper_ms, label in DLQ_AGE_BUCKETS:
                if upper_ms is None or age_ms < upper_ms:
                    by_age[label] += 1
                    break

        recorded = [entry.recorded_at for entry in entries]
        return DeadLetterStats(
            total=len(entries),
            by_job=by_job,
            by_age=by_age,
            oldest_entry=min(recorded) if recorded else None,
            newest_entry=max(recorded) if recorded else None,
        )

    async def count(self) -> int:
        return len(await self._load(DLQ_INDEX_KEY))

    async def remove(self, entry_id: str) -> bool:
        """Delete one entry. Returns False if it did not exist."""
        entry = await self.get(entry_id)
        if entry is None:
            await self.store.srem(DLQ_INDEX_KEY, entry_id)
            return False
        await self._delete(entry)
        logger.info(
            "Dead letter entry removed",
            extra={"entry_id": entry_id, "job_id": entry.job_id},
        )
        return True

    async def purge(self, job_id: str) -> int:
        """Delete every entry for job_id. Returns the number removed."""
        entries = await self._load(job_index_key(job_id))
        for entry in entries:
            await self._delete(entry)
        if entries:
            logger.info(
                "Dead letter entries purged",
                extra={"job_id": job_id, "count": len(entries)},
            )
        return len(entries)

    async def cleanup(self) -> int:
        """
        Run the retention sweep now.

        Returns:
            Number of entries (or dangling index ids) removed.
        """
        removed = await self._enforce_retention()
        if removed:
            logger.info("Dead letter cleanup", extra={"removed": removed})
        return removed

    async def _enforce_retention(self) -> int:
        ids = await self.store.smembers(DLQ_INDEX_KEY)
        entries = await self._load(DLQ_INDEX_KEY, ids)
        removed = len(ids) - len(entries)

        cutoff = self._clock() - self.config.retention_ttl_ms
        live: list[DeadLetterEntry] = []
        for entry in entries:
            if entry.recorded_at.timestamp() * 1000 <= cutoff:
                await self._delete(entry)
                removed += 1
            else:
                live.append(entry)

        excess = len(live) - self.config.retention_count
        if excess > 0:
            live.sort(key=lambda e: e.recorded_at)
            for entry in live[:excess]:
                await self._delete(entry)
            removed += excess
            logger.debug(
                "Dead letter entries evicted over retention count",
                extra={"evicted": excess, "retention_count": self.config.retention_count},
            )

        return removed

    async def _load(
        self,
        index_key: str,
        ids: set[str] | None = None,
    ) -> list[DeadLetterEntry]:
        """Load the entries listed in an index, dropping ids whose entry expired."""
        if ids is None:
            ids = await self.store.smembers(index_key)

        entries: list[DeadLetterEntry] = []
        for entry_id in ids:
            raw = await self.store.get(entry_key(entry_id))
            entry = self._parse(raw) if raw is not None else None
            if entry is None:
                await self.store.srem(index_key, entry_id)
                continue
            entries.append(entry)
        return entries

    async def _write(self, entry: DeadLetterEntry) -> None:
        # Idempotent per entry id: set overwrites, sadd ignores duplicates
        await self.store.set(
            entry_key(entry.id),
            entry.model_dump_json(),
            self.config.retention_ttl_ms,
        )
        await self.store.sadd(DLQ_INDEX_KEY, entry.id)
        await self.store.sadd(job_index_key(entry.job_id), entry.id)

    async def _discard(self, entry: DeadLetterEntry) -> None:
        """Best-effort removal of a partially written entry."""
        try:
            await self._delete(entry)
        except StoreError as e:
            logger.warning(
                "Could not clean up partial dead letter entry",
                extra={"entry_id": entry.id, "job_id": entry.job_id, "error": str(e)},
            )

    async def _delete(self, entry: DeadLetterEntry) -> None:
        await self.store.delete(entry_key(entry.id))
        await self.store.srem(DLQ_INDEX_KEY, entry.id)
        await self.store.srem(job_index_key(entry.job_id), entry.id)

    @staticmethod
    def _parse(raw: str) -> DeadLetterEntry | None:
        try:
            return DeadLetterEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Malformed dead letter entry skipped")
            return None
