"""
Key-value store contract.

The lock manager and dead letter queue only ever talk to a store through
these protocols. Stores that can perform lock acquisition, extension and
release as single atomic operations additionally implement
AtomicLockStore; everything else gets the emulated compare-and-set path
in the lock manager.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from jobcore.constants import FENCE_KEY_PREFIX
from jobcore.types.lock import LockGrant


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation."""


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal store contract: string values with optional TTL, plus string sets."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def sadd(self, key: str, member: str) -> None: ...

    async def srem(self, key: str, member: str) -> bool: ...

    async def smembers(self, key: str) -> set[str]: ...


@runtime_checkable
class AtomicLockStore(Protocol):
    """
    Native atomic lock operations.

    acquire_lock succeeds only when the key is absent or its lease expired,
    and assigns the next fencing token for the key in the same operation.
    extend_lock and release_lock succeed only while the stored owner and
    fencing token still match the caller's.
    """

    async def acquire_lock(self, key: str, owner_id: str, ttl_ms: int) -> LockGrant: ...

    async def extend_lock(
        self, key: str, owner_id: str, fencing_token: int, ttl_ms: int
    ) -> bool: ...

    async def release_lock(self, key: str, owner_id: str, fencing_token: int) -> bool: ...


def supports_atomic_locks(store: object) -> bool:
    """Capability check gating the native lock path."""
    return isinstance(store, AtomicLockStore)


def fence_key_for(lock_key: str) -> str:
    """Key of the never-expiring fencing counter paired with a lock key."""
    return f"{FENCE_KEY_PREFIX}{lock_key}"
