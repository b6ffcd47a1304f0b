"""
Store construction from settings.
"""

import logging

from jobcore.config import Settings
from jobcore.constants import StoreBackend
from jobcore.store.base import KeyValueStore
from jobcore.store.connection import close_db, init_db
from jobcore.store.memory import InMemoryLockStore
from jobcore.store.redis import RedisStore
from jobcore.store.sql import SqlStore

logger = logging.getLogger(__name__)


async def create_store(settings: Settings) -> KeyValueStore:
    """
    Build the store selected by settings.store_backend.

    Args:
        settings: Application settings.

    Returns:
        A store implementing the basic contract and native atomic locking.
    """
    backend = settings.store_backend
    if backend == StoreBackend.REDIS:
        store: KeyValueStore = RedisStore.from_url(settings.redis_url)
        await store.ping()  # type: ignore[attr-defined]
    elif backend == StoreBackend.SQL:
        store = SqlStore(await init_db())
    else:
        store = InMemoryLockStore()

    logger.info("Store created", extra={"backend": backend.value})
    return store


async def close_store(store: KeyValueStore) -> None:
    """Release connections held by a store created by create_store()."""
    if isinstance(store, RedisStore):
        await store.close()
    elif isinstance(store, SqlStore):
        await close_db()
