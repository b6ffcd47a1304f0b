"""
Distributed lock manager.

Gives at most one process at a time the right to run a given job, using
leases stored under lock:<job_id> in a shared key-value store. Every
successful acquisition carries a fencing token taken from a per-job counter
in the same store, so tokens keep increasing across instances, releases and
lease expiry.

Stores that pass the AtomicLockStore capability check acquire, extend and
release in one atomic step. Other stores get an emulation built from
get/set/delete: read, write, read back to verify. Two instances can both
pass the verify step if their writes interleave inside that window; the
fencing token is what keeps a stale holder from corrupting job state on
this path.
"""

import asyncio
import logging
import os
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any, TypeVar

from jobcore.constants import LOCK_KEY_PREFIX, SPAN_ACQUIRE_LOCK
from jobcore.observability.listeners import EventListener, emit
from jobcore.observability.tracing import job_span, set_job_attributes
from jobcore.store.base import (
    KeyValueStore,
    StoreError,
    fence_key_for,
    supports_atomic_locks,
)
from jobcore.store.memory import wall_clock_ms
from jobcore.types.config import LockConfig
from jobcore.types.events import LifecycleEvent
from jobcore.types.lock import LockInfo, WithLockResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def lock_key_for(job_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}{job_id}"


class LockHandle:
    """
    A held lease on one job's lock.

    is_held is this process's belief, not the store's. It turns False on
    release, on a failed extension and when verify() finds the lease gone.
    """

    def __init__(
        self,
        manager: "LockManager",
        job_id: str,
        fencing_token: int,
        ttl_ms: int,
        acquired_at: float,
    ):
        self.job_id = job_id
        self.lock_key = lock_key_for(job_id)
        self.fencing_token = fencing_token
        self.ttl_ms = ttl_ms
        self.acquired_at = acquired_at
        self.expires_at = acquired_at + ttl_ms
        self.is_held = True
        self._manager = manager
        self._released = False
        self._acquired_monotonic = time.monotonic()
        self._stop_extending = asyncio.Event()
        self._extend_task: asyncio.Task[None] | None = None

    @property
    def owner(self) -> str:
        return self._manager.instance_id

    @property
    def held_ms(self) -> float:
        return (time.monotonic() - self._acquired_monotonic) * 1000

    async def extend(self, ttl_ms: int | None = None) -> bool:
        """
        Push the lease expiry to now + ttl_ms (default: the acquire TTL).

        Returns:
            False if the lease no longer belongs to this handle or the store
            could not be reached; the handle then stops reporting is_held.
        """
        return await self._manager._extend(self, ttl_ms or self.ttl_ms)

    async def release(self) -> bool:
        """
        Delete the lease if the store still shows it as this handle's.

        Returns:
            True the first time the lease is actually deleted, False on every
            later call, when the lease was lost, or on a store error.
        """
        return await self._manager._release(self)

    async def verify(self) -> bool:
        """Re-read the store and check that this handle still owns the lease."""
        return await self._manager._verify(self)

    def _start_auto_extend(self, interval_ms: int) -> None:
        self._extend_task = asyncio.create_task(
            self._auto_extend_loop(interval_ms),
            name=f"lock-extend:{self.job_id}",
        )

    async def _auto_extend_loop(self, interval_ms: int) -> None:
        while not self._stop_extending.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_extending.wait(), timeout=interval_ms / 1000
                )
                return
            except TimeoutError:
                pass

            if not await self.extend():
                logger.warning(
                    "Auto-extension failed, lease abandoned",
                    extra={"job_id": self.job_id, "fencing_token": self.fencing_token},
                )
                return

    def _stop_auto_extend(self) -> None:
        self._stop_extending.set()

    async def _cancel_auto_extend(self) -> None:
        """Stop auto-extension and wait out any extension already in flight."""
        self._stop_extending.set()
        task = self._extend_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def __repr__(self) -> str:
        return (
            f"<LockHandle(job_id={self.job_id}, fencing_token={self.fencing_token}, "
            f"is_held={self.is_held})>"
        )


class LockManager:
    """
    Acquires and tracks job locks for one service instance.

    Example:
        manager = LockManager(store, config=LockConfig(ttl_ms=60_000))
        outcome = await manager.with_lock("daily-report", run_report)
        if not outcome.acquired:
            ...  # another instance is running it
    """

    def __init__(
        self,
        store: KeyValueStore,
        instance_id: str | None = None,
        config: LockConfig | None = None,
        listener: EventListener | None = None,
        clock: Callable[[], float] = wall_clock_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the lock manager.

        Args:
            store: Shared key-value store.
            instance_id: Owner identity written into leases. Defaults to
                hostname, PID and a random suffix.
            config: Default lock configuration.
            listener: Receives lock.* events.
            clock: Wall clock in milliseconds; must agree with the store's.
            sleep: Awaitable sleep taking seconds, used between attempts.
        """
        self.store = store
        self.instance_id = (
            instance_id or f"{os.uname().nodename}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        )
        self.config = config or LockConfig()
        self._listener = listener
        self._clock = clock
        self._sleep = sleep
        self._native = supports_atomic_locks(store)
        self._held: dict[str, LockHandle] = {}

        logger.info(
            "Lock manager initialized",
            extra={
                "instance_id": self.instance_id,
                "atomic_store": self._native,
            },
        )

    @property
    def uses_native_locks(self) -> bool:
        return self._native

    async def acquire(self, job_id: str, **overrides: Any) -> LockHandle | None:
        """
        Try to take the lock for job_id.

        Args:
            job_id: Job to lock.
            **overrides: LockConfig fields overriding the manager default
                for this call.

        Returns:
            A held LockHandle, or None when the lock is held elsewhere, is
            already held by this process, or the store failed. Never raises
            for store problems.
        """
        config = replace(self.config, **overrides) if overrides else self.config

        local = self._held.get(job_id)
        if local is not None and local.is_held:
            logger.debug(
                "Lock already held by this instance",
                extra={"job_id": job_id, "fencing_token": local.fencing_token},
            )
            return None

        lock_key = lock_key_for(job_id)
        started = time.monotonic()
        delay_ms = float(config.retry_delay_ms)
        reason = "contention"
        attempts = 0

        with job_span(SPAN_ACQUIRE_LOCK, job_id, ttl_ms=config.ttl_ms) as span:

            for attempt in range(1, config.retries + 2):
                attempts = attempt
                try:
                    token = await self._try_acquire(lock_key, config.ttl_ms)
                except StoreError as e:
                    reason = "store_error"
                    token = None
                    logger.warning(
                        "Store error during lock acquisition",
                        extra={"job_id": job_id, "attempt": attempt, "error": str(e)},
                    )

                if token is not None:
                    handle = LockHandle(
                        self, job_id, token, config.ttl_ms, self._clock()
                    )
                    self._held[job_id] = handle
                    if config.auto_extend_ms > 0:
                        handle._start_auto_extend(config.auto_extend_ms)

                    duration_ms = (time.monotonic() - started) * 1000
                    set_job_attributes(span, fencing_token=token, attempts=attempt)
                    logger.debug(
                        "Lock acquired",
                        extra={
                            "job_id": job_id,
                            "fencing_token": token,
                            "attempt": attempt,
                        },
                    )
                    emit(
                        self._listener,
                        LifecycleEvent.lock_acquired(job_id, token, duration_ms, attempt),
                    )
                    return handle

                if attempt <= config.retries:
                    await self._sleep(delay_ms / 1000)
                    if config.exponential_backoff:
                        delay_ms = min(delay_ms * 2, config.max_retry_delay_ms)

            set_job_attributes(span, acquired=False, attempts=attempts, reason=reason)

        duration_ms = (time.monotonic() - started) * 1000
        logger.debug(
            "Lock not acquired",
            extra={"job_id": job_id, "attempts": attempts, "reason": reason},
        )
        emit(
            self._listener,
            LifecycleEvent.lock_failed(job_id, duration_ms, attempts, reason),
        )
        return None

    async def with_lock(
        self,
        job_id: str,
        fn: Callable[[LockHandle], Awaitable[T]],
        **overrides: Any,
    ) -> WithLockResult:
        """
        Run fn while holding the lock for job_id, releasing it afterwards.

        Errors raised by fn are captured in the result, not re-raised.
        """
        handle = await self.acquire(job_id, **overrides)
        if handle is None:
            return WithLockResult(acquired=False)

        try:
            result = await fn(handle)
            return WithLockResult(
                acquired=True, result=result, fencing_token=handle.fencing_token
            )
        except Exception as e:
            return WithLockResult(
                acquired=True, error=e, fencing_token=handle.fencing_token
            )
        finally:
            await handle.release()

    async def is_locked(self, job_id: str) -> bool:
        """Whether any instance currently holds a live lease on job_id."""
        return await self.get_lock_info(job_id) is not None

    async def get_lock_info(self, job_id: str) -> LockInfo | None:
        """Current live lease on job_id, or None (also on store errors)."""
        try:
            raw = await self.store.get(lock_key_for(job_id))
        except StoreError as e:
            logger.warning(
                "Store error reading lock", extra={"job_id": job_id, "error": str(e)}
            )
            return None
        if raw is None:
            return None
        info = LockInfo.from_json(raw)
        if info is None or info.is_expired(self._clock()):
            return None
        return info

    def holds(self, job_id: str) -> bool:
        """Whether this instance believes it holds job_id's lock."""
        handle = self._held.get(job_id)
        return handle is not None and handle.is_held

    async def validate_fencing_token(self, job_id: str, fencing_token: int) -> bool:
        """Check that fencing_token is the token of the current live lease."""
        info = await self.get_lock_info(job_id)
        return info is not None and info.fencing_token == fencing_token

    async def force_release(self, job_id: str) -> bool:
        """
        Delete job_id's lease regardless of owner.

        Operator escape hatch for stuck locks; the fencing counter is kept.
        """
        handle = self._held.pop(job_id, None)
        if handle is not None:
            handle.is_held = False
            handle._released = True
            await handle._cancel_auto_extend()

        try:
            deleted = await self.store.delete(lock_key_for(job_id))
        except StoreError as e:
            logger.error(
                "Store error during force release",
                extra={"job_id": job_id, "error": str(e)},
            )
            return False

        if deleted:
            logger.warning("Lock force released", extra={"job_id": job_id})
        return deleted

    async def release_all(self) -> int:
        """Release every lock this instance holds. Returns how many were released."""
        handles = list(self._held.values())
        released = 0
        for handle in handles:
            if await handle.release():
                released += 1
        logger.info(
            "All locks released",
            extra={"instance_id": self.instance_id, "count": released},
        )
        return released

    async def _try_acquire(self, lock_key: str, ttl_ms: int) -> int | None:
        if self._native:
            grant = await self.store.acquire_lock(  # type: ignore[attr-defined]
                lock_key, self.instance_id, ttl_ms
            )
            return grant.fencing_token if grant.acquired else None
        return await self._emulated_acquire(lock_key, ttl_ms)

    async def _emulated_acquire(self, lock_key: str, ttl_ms: int) -> int | None:
        now = self._clock()
        raw = await self.store.get(lock_key)
        previous_token = 0
        if raw is not None:
            existing = LockInfo.from_json(raw)
            if existing is not None:
                if not existing.is_expired(now):
                    return None
                previous_token = existing.fencing_token

        fence_key = fence_key_for(lock_key)
        counter = int(await self.store.get(fence_key) or 0)
        token = max(counter, previous_token) + 1

        lease = LockInfo(
            owner=self.instance_id,
            fencing_token=token,
            acquired_at=now,
            expires_at=now + ttl_ms,
        )
        await self.store.set(lock_key, lease.to_json(), ttl_ms)

        stored = await self.store.get(lock_key)
        confirmed = LockInfo.from_json(stored) if stored is not None else None
        if (
            confirmed is None
            or confirmed.owner != self.instance_id
            or confirmed.fencing_token != token
        ):
            return None

        await self.store.set(fence_key, str(token))
        return token

    async def _owned_lease(self, handle: LockHandle) -> LockInfo | None:
        raw = await self.store.get(handle.lock_key)
        info = LockInfo.from_json(raw) if raw is not None else None
        if (
            info is None
            or info.owner != self.instance_id
            or info.fencing_token != handle.fencing_token
            or info.is_expired(self._clock())
        ):
            return None
        return info

    async def _extend(self, handle: LockHandle, ttl_ms: int) -> bool:
        if handle._released:
            return False

        try:
            if self._native:
                extended = await self.store.extend_lock(  # type: ignore[attr-defined]
                    handle.lock_key, self.instance_id, handle.fencing_token, ttl_ms
                )
            else:
                extended = await self._emulated_extend(handle, ttl_ms)
        except StoreError as e:
            logger.warning(
                "Store error during lock extension",
                extra={"job_id": handle.job_id, "error": str(e)},
            )
            extended = False

        if handle._released:
            # Released while the extension was in flight
            return False
        if not extended:
            handle.is_held = False
            handle._stop_auto_extend()
            emit(
                self._listener,
                LifecycleEvent.lock_failed(handle.job_id, handle.held_ms, 1, "lease_lost"),
            )
            return False

        handle.expires_at = self._clock() + ttl_ms
        emit(
            self._listener,
            LifecycleEvent.lock_extended(handle.job_id, handle.fencing_token, ttl_ms),
        )
        return True

    async def _emulated_extend(self, handle: LockHandle, ttl_ms: int) -> bool:
        info = await self._owned_lease(handle)
        if info is None:
            return False
        lease = LockInfo(
            owner=info.owner,
            fencing_token=info.fencing_token,
            acquired_at=info.acquired_at,
            expires_at=self._clock() + ttl_ms,
        )
        await self.store.set(handle.lock_key, lease.to_json(), ttl_ms)
        return True

    async def _release(self, handle: LockHandle) -> bool:
        if handle._released:
            return False
        await handle._cancel_auto_extend()
        if handle._released:
            return False

        try:
            if self._native:
                released = await self.store.release_lock(  # type: ignore[attr-defined]
                    handle.lock_key, self.instance_id, handle.fencing_token
                )
            else:
                released = await self._owned_lease(handle) is not None and (
                    await self.store.delete(handle.lock_key)
                )
        except StoreError as e:
            logger.error(
                "Store error during lock release, lease will expire on its own",
                extra={"job_id": handle.job_id, "error": str(e)},
            )
            released = False

        handle._released = True
        handle.is_held = False
        if self._held.get(handle.job_id) is handle:
            del self._held[handle.job_id]

        if not released:
            logger.debug(
                "Lock was no longer owned at release",
                extra={"job_id": handle.job_id, "fencing_token": handle.fencing_token},
            )
        emit(
            self._listener,
            LifecycleEvent.lock_released(
                handle.job_id, handle.fencing_token, handle.held_ms, released
            ),
        )
        return released

    async def _verify(self, handle: LockHandle) -> bool:
        if handle._released:
            return False
        try:
            info = await self._owned_lease(handle)
        except StoreError as e:
            logger.warning(
                "Store error verifying lock",
                extra={"job_id": handle.job_id, "error": str(e)},
            )
            return False
        if info is None:
            handle.is_held = False
            return False
        return True
