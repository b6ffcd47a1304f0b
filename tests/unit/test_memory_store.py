"""
Unit tests for the in-memory stores.
"""

import importlib
import typing

import pytest

from jobcore.store import (
    AtomicLockStore,
    InMemoryLockStore,
    InMemoryStore,
    KeyValueStore,
    StoreError,
    supports_atomic_locks,
)
from jobcore.types import LockInfo


class TestInMemoryStore:
    """Tests for the basic key-value contract."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self, memory_store):
        """Test values round-trip and delete reports whether the key existed."""
        await memory_store.set("greeting", "hello")

        assert await memory_store.get("greeting") == "hello"
        assert await memory_store.exists("greeting") is True
        assert await memory_store.delete("greeting") is True
        assert await memory_store.delete("greeting") is False
        assert await memory_store.get("greeting") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, memory_store, clock):
        """Test keys disappear once their TTL has passed."""
        await memory_store.set("session", "abc", ttl_ms=1000)

        clock.advance(999)
        assert await memory_store.get("session") == "abc"

        clock.advance(1)
        assert await memory_store.get("session") is None
        assert await memory_store.exists("session") is False
        assert await memory_store.delete("session") is False

    @pytest.mark.asyncio
    async def test_set_overwrites_ttl(self, memory_store, clock):
        """Test writing without a TTL makes the key permanent."""
        await memory_store.set("key", "v1", ttl_ms=100)
        await memory_store.set("key", "v2")

        clock.advance(10_000)

        assert await memory_store.get("key") == "v2"

    @pytest.mark.asyncio
    async def test_sets(self, memory_store):
        """Test set add, remove and members."""
        await memory_store.sadd("index", "a")
        await memory_store.sadd("index", "b")
        await memory_store.sadd("index", "a")

        assert await memory_store.smembers("index") == {"a", "b"}
        assert await memory_store.srem("index", "a") is True
        assert await memory_store.srem("index", "a") is False
        assert await memory_store.smembers("index") == {"b"}
        assert await memory_store.smembers("missing") == set()

    @pytest.mark.asyncio
    async def test_unavailable_store_raises(self, memory_store):
        """Test an unavailable store raises StoreError on every operation."""
        memory_store.available = False

        with pytest.raises(StoreError):
            await memory_store.get("key")
        with pytest.raises(StoreError):
            await memory_store.set("key", "value")
        with pytest.raises(StoreError):
            await memory_store.smembers("index")

    def test_capabilities(self, memory_store, lock_store):
        """Test only the lock store advertises native atomic locks."""
        assert isinstance(memory_store, KeyValueStore)
        assert not supports_atomic_locks(memory_store)
        assert isinstance(lock_store, AtomicLockStore)
        assert supports_atomic_locks(lock_store)


class TestInMemoryLockStore:
    """Tests for native atomic lock operations."""

    @pytest.mark.asyncio
    async def test_acquire_is_exclusive(self, lock_store):
        """Test a live lease blocks other owners."""
        first = await lock_store.acquire_lock("lock:report", "a", 1000)
        second = await lock_store.acquire_lock("lock:report", "b", 1000)

        assert first.acquired is True
        assert first.fencing_token == 1
        assert second.acquired is False
        assert second.fencing_token is None

    @pytest.mark.asyncio
    async def test_lease_is_stored_as_lock_info(self, lock_store, clock):
        """Test the lease record uses the shared JSON format."""
        await lock_store.acquire_lock("lock:report", "a", 1000)

        info = LockInfo.from_json(await lock_store.get("lock:report"))

        assert info.owner == "a"
        assert info.fencing_token == 1
        assert info.expires_at == clock() + 1000

    @pytest.mark.asyncio
    async def test_tokens_increase_across_release_and_expiry(self, lock_store, clock):
        """Test fencing tokens keep growing after release and after expiry."""
        first = await lock_store.acquire_lock("lock:report", "a", 1000)
        await lock_store.release_lock("lock:report", "a", first.fencing_token)
        second = await lock_store.acquire_lock("lock:report", "b", 1000)
        clock.advance(1000)
        third = await lock_store.acquire_lock("lock:report", "c", 1000)

        assert [first.fencing_token, second.fencing_token, third.fencing_token] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_counters_are_per_key(self, lock_store):
        """Test different lock keys have independent fencing counters."""
        await lock_store.acquire_lock("lock:a", "x", 1000)
        grant = await lock_store.acquire_lock("lock:b", "x", 1000)

        assert grant.fencing_token == 1

    @pytest.mark.asyncio
    async def test_extend_requires_matching_owner_and_token(self, lock_store, clock):
        """Test only the current holder can extend."""
        grant = await lock_store.acquire_lock("lock:report", "a", 1000)

        assert await lock_store.extend_lock("lock:report", "b", 1, 5000) is False
        assert await lock_store.extend_lock("lock:report", "a", 99, 5000) is False
        assert await lock_store.extend_lock("lock:report", "a", grant.fencing_token, 5000)

        clock.advance(4000)
        assert await lock_store.exists("lock:report") is True

    @pytest.mark.asyncio
    async def test_release_requires_matching_owner_and_token(self, lock_store):
        """Test a stale holder cannot delete a newer lease."""
        await lock_store.acquire_lock("lock:report", "a", 1000)

        assert await lock_store.release_lock("lock:report", "b", 1) is False
        assert await lock_store.release_lock("lock:report", "a", 1) is True
        assert await lock_store.release_lock("lock:report", "a", 1) is False

    @pytest.mark.asyncio
    async def test_expired_lease_cannot_be_extended(self, lock_store, clock):
        """Test extending after expiry fails."""
        await lock_store.acquire_lock("lock:report", "a", 1000)
        clock.advance(1000)

        assert await lock_store.extend_lock("lock:report", "a", 1, 1000) is False


class TestStoreModules:
    """Tests for the store module definitions themselves."""

    @pytest.mark.parametrize(
        "module_name, class_name",
        [
            ("jobcore.store.base", "KeyValueStore"),
            ("jobcore.store.memory", "InMemoryStore"),
            ("jobcore.store.redis", "RedisStore"),
            ("jobcore.store.sql", "SqlStore"),
        ],
    )
    def test_smembers_annotation_resolves_to_builtin_set(self, module_name, class_name):
        """Test a store's own set() method does not shadow the builtin in annotations."""
        module = importlib.import_module(module_name)
        store_class = getattr(module, class_name)

        hints = typing.get_type_hints(store_class.smembers)

        assert hints["return"] == set[str]
