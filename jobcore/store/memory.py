"""
In-process key-value stores.

Suitable for a single process and for tests: several lock managers sharing
one store instance behave like several service instances sharing Redis.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from jobcore.store.base import StoreError, fence_key_for
from jobcore.types.lock import LockGrant, LockInfo

Clock = Callable[[], float]


def wall_clock_ms() -> float:
    """Current wall-clock time in milliseconds."""
    return time.time() * 1000


class InMemoryStore:
    """
    Dictionary-backed store with per-key expiry.

    Implements only the basic contract, so lock managers using it take the
    emulated compare-and-set path. Setting available=False makes every
    operation raise StoreError, simulating an outage.
    """

    def __init__(self, clock: Clock = wall_clock_ms):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._sets: dict[str, set[str]] = {}
        self.available = True

    def now_ms(self) -> float:
        return self._clock()

    def _check_available(self) -> None:
        if not self.available:
            raise StoreError("store unavailable")

    def _live(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        self._check_available()
        return self._live(key)

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        self._check_available()
        expires_at = self._clock() + ttl_ms if ttl_ms else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        self._check_available()
        existed = self._live(key) is not None
        self._data.pop(key, None)
        return existed

    async def exists(self, key: str) -> bool:
        self._check_available()
        return self._live(key) is not None

    async def sadd(self, key: str, member: str) -> None:
        self._check_available()
        self._sets.setdefault(key, set()).add(member)

    async def srem(self, key: str, member: str) -> bool:
        self._check_available()
        members = self._sets.get(key)
        if not members or member not in members:
            return False
        members.discard(member)
        if not members:
            del self._sets[key]
        return True

    async def smembers(self, key: str) -> set[str]:
        self._check_available()
        return set(self._sets.get(key, ()))


class InMemoryLockStore(InMemoryStore):
    """
    In-memory store that also offers native atomic lock operations.

    Each operation runs without awaiting, so it is atomic with respect to
    every other coroutine sharing the store.
    """

    def _lease(self, key: str) -> LockInfo | None:
        raw = self._live(key)
        return LockInfo.from_json(raw) if raw is not None else None

    async def acquire_lock(self, key: str, owner_id: str, ttl_ms: int) -> LockGrant:
        self._check_available()
        if self._live(key) is not None:
            return LockGrant(acquired=False)

        fence_key = fence_key_for(key)
        token = int(self._live(fence_key) or 0) + 1
        self._data[fence_key] = (str(token), None)

        now = self._clock()
        lease = LockInfo(
            owner=owner_id,
            fencing_token=token,
            acquired_at=now,
            expires_at=now + ttl_ms,
        )
        self._data[key] = (lease.to_json(), lease.expires_at)
        return LockGrant(acquired=True, fencing_token=token)

    async def extend_lock(
        self, key: str, owner_id: str, fencing_token: int, ttl_ms: int
    ) -> bool:
        self._check_available()
        lease = self._lease(key)
        if lease is None or lease.owner != owner_id or lease.fencing_token != fencing_token:
            return False
        expires_at = self._clock() + ttl_ms
        extended = LockInfo(
            owner=lease.owner,
            fencing_token=lease.fencing_token,
            acquired_at=lease.acquired_at,
            expires_at=expires_at,
        )
        self._data[key] = (extended.to_json(), expires_at)
        return True

    async def release_lock(self, key: str, owner_id: str, fencing_token: int) -> bool:
        self._check_available()
        lease = self._lease(key)
        if lease is None or lease.owner != owner_id or lease.fencing_token != fencing_token:
            return False
        del self._data[key]
        return True
