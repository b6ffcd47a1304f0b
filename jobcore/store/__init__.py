"""
Key-value store layer.
Contains the store contract and the in-memory, Redis and SQL backends.
"""

from jobcore.store.base import (
    AtomicLockStore,
    KeyValueStore,
    StoreError,
    fence_key_for,
    supports_atomic_locks,
)
from jobcore.store.memory import InMemoryLockStore, InMemoryStore, wall_clock_ms
from jobcore.store.redis import RedisStore
from jobcore.store.sql import SqlStore, create_tables

__all__ = [
    "KeyValueStore",
    "AtomicLockStore",
    "StoreError",
    "fence_key_for",
    "supports_atomic_locks",
    "InMemoryStore",
    "InMemoryLockStore",
    "wall_clock_ms",
    "RedisStore",
    "SqlStore",
    "create_tables",
]
