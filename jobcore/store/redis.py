"""
Redis-backed key-value store.

Lock acquisition, extension and release run as Lua scripts so each is a
single atomic step on the server. Lease expiry is delegated to Redis key
TTLs (PX); fencing counters are plain keys without TTL.
"""

from __future__ import annotations

import logging
import time
from typing import Any, cast

from redis.asyncio import Redis
from redis.exceptions import RedisError

from jobcore.store.base import StoreError, fence_key_for
from jobcore.types.lock import LockGrant

logger = logging.getLogger(__name__)

# KEYS[1] lock key, KEYS[2] fence key; ARGV[1] owner, ARGV[2] ttl_ms, ARGV[3] now_ms
ACQUIRE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return -1
end
local token = redis.call('INCR', KEYS[2])
local now = tonumber(ARGV[3])
local lease = cjson.encode({
    owner = ARGV[1],
    fencing_token = token,
    acquired_at = now,
    expires_at = now + tonumber(ARGV[2]),
})
redis.call('SET', KEYS[1], lease, 'PX', ARGV[2])
return token
"""

# KEYS[1] lock key; ARGV[1] owner, ARGV[2] token, ARGV[3] ttl_ms, ARGV[4] now_ms
EXTEND_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local lease = cjson.decode(raw)
if lease.owner ~= ARGV[1] or tonumber(lease.fencing_token) ~= tonumber(ARGV[2]) then
    return 0
end
lease.expires_at = tonumber(ARGV[4]) + tonumber(ARGV[3])
redis.call('SET', KEYS[1], cjson.encode(lease), 'PX', ARGV[3])
return 1
"""

# KEYS[1] lock key; ARGV[1] owner, ARGV[2] token
RELEASE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local lease = cjson.decode(raw)
if lease.owner ~= ARGV[1] or tonumber(lease.fencing_token) ~= tonumber(ARGV[2]) then
    return 0
end
return redis.call('DEL', KEYS[1])
"""


class RedisStore:
    """
    Store backed by a Redis server via redis.asyncio.

    Example:
        store = RedisStore.from_url("redis://localhost:6379/0")
        await store.ping()
        ...
        await store.close()
    """

    def __init__(self, client: Redis):
        """
        Initialize the store around a client.

        Args:
            client: A redis.asyncio client created with decode_responses=True.
        """
        self._client = client
        self._acquire = client.register_script(ACQUIRE_SCRIPT)
        self._extend = client.register_script(EXTEND_SCRIPT)
        self._release = client.register_script(RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisStore":
        """Create a store with its own connection pool."""
        client = Redis.from_url(url, decode_responses=True, **kwargs)
        logger.info("Redis store created", extra={"url": url})
        return cls(client)

    @property
    def client(self) -> Redis:
        return self._client

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            raise StoreError(f"Redis ping failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis store closed")

    async def get(self, key: str) -> str | None:
        try:
            return cast("str | None", await self._client.get(key))
        except RedisError as e:
            raise StoreError(f"Redis GET failed: {e}") from e

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        try:
            await self._client.set(key, value, px=ttl_ms or None)
        except RedisError as e:
            raise StoreError(f"Redis SET failed: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            return int(await self._client.delete(key)) > 0
        except RedisError as e:
            raise StoreError(f"Redis DEL failed: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            return int(await self._client.exists(key)) > 0
        except RedisError as e:
            raise StoreError(f"Redis EXISTS failed: {e}") from e

    async def sadd(self, key: str, member: str) -> None:
        try:
            await cast("Any", self._client.sadd(key, member))
        except RedisError as e:
            raise StoreError(f"Redis SADD failed: {e}") from e

    async def srem(self, key: str, member: str) -> bool:
        try:
            return int(await cast("Any", self._client.srem(key, member))) > 0
        except RedisError as e:
            raise StoreError(f"Redis SREM failed: {e}") from e

    async def smembers(self, key: str) -> set[str]:
        try:
            return set(await cast("Any", self._client.smembers(key)))
        except RedisError as e:
            raise StoreError(f"Redis SMEMBERS failed: {e}") from e

    async def acquire_lock(self, key: str, owner_id: str, ttl_ms: int) -> LockGrant:
        try:
            token = int(
                await self._acquire(
                    keys=[key, fence_key_for(key)],
                    args=[owner_id, ttl_ms, _now_ms()],
                )
            )
        except RedisError as e:
            raise StoreError(f"Redis lock acquire failed: {e}") from e
        if token < 0:
            return LockGrant(acquired=False)
        return LockGrant(acquired=True, fencing_token=token)

    async def extend_lock(
        self, key: str, owner_id: str, fencing_token: int, ttl_ms: int
    ) -> bool:
        try:
            result = await self._extend(
                keys=[key],
                args=[owner_id, fencing_token, ttl_ms, _now_ms()],
            )
        except RedisError as e:
            raise StoreError(f"Redis lock extend failed: {e}") from e
        return int(result) == 1

    async def release_lock(self, key: str, owner_id: str, fencing_token: int) -> bool:
        try:
            result = await self._release(keys=[key], args=[owner_id, fencing_token])
        except RedisError as e:
            raise StoreError(f"Redis lock release failed: {e}") from e
        return int(result) == 1


def _now_ms() -> int:
    return int(time.time() * 1000)
