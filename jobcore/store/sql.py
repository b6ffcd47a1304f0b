"""
SQL-backed key-value store.

Uses PostgreSQL upserts (INSERT ... ON CONFLICT) so lock acquisition is a
single transaction: bump the key's fencing counter (row-locking it, which
serializes concurrent acquirers), then insert the lease or overwrite an
expired one. If the lease is still live the transaction is rolled back and
the counter bump with it.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobcore.store.base import StoreError, fence_key_for
from jobcore.store.memory import wall_clock_ms
from jobcore.store.models import Base, FencingCounter, KvEntry, KvSetMember
from jobcore.types.lock import LockGrant, LockInfo

logger = logging.getLogger(__name__)


async def create_tables(engine: AsyncEngine) -> None:
    """Create the store tables (development and tests; production uses alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SqlStore:
    """
    Store backed by PostgreSQL through SQLAlchemy's async engine.

    Every operation runs in its own short transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], float] = wall_clock_ms,
    ):
        """
        Initialize the store.

        Args:
            session_factory: Factory for async sessions.
            clock: Wall-clock source in milliseconds.
        """
        self._session_factory = session_factory
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock() / 1000, UTC)

    @staticmethod
    def _live(now: datetime):
        return or_(KvEntry.expires_at.is_(None), KvEntry.expires_at > now)

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Open a session that commits on success and rolls back on error.

        Raises:
            StoreError: If the database operation fails.
        """
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreError(f"SQL store operation failed: {e}") from e

    async def get(self, key: str) -> str | None:
        async with self._session() as session:
            stmt = select(KvEntry.value).where(
                KvEntry.key == key, self._live(self._now())
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        now = self._now()
        expires_at = now + timedelta(milliseconds=ttl_ms) if ttl_ms else None
        async with self._session() as session:
            stmt = insert(KvEntry).values(
                key=key, value=value, expires_at=expires_at
            ).on_conflict_do_update(
                index_elements=[KvEntry.key],
                set_={"value": value, "expires_at": expires_at},
            )
            await session.execute(stmt)

    async def delete(self, key: str) -> bool:
        now = self._now()
        async with self._session() as session:
            stmt = delete(KvEntry).where(KvEntry.key == key).returning(KvEntry.expires_at)
            rows = (await session.execute(stmt)).scalars().all()
            return any(expires_at is None or expires_at > now for expires_at in rows)

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def sadd(self, key: str, member: str) -> None:
        async with self._session() as session:
            stmt = insert(KvSetMember).values(
                key=key, member=member
            ).on_conflict_do_nothing()
            await session.execute(stmt)

    async def srem(self, key: str, member: str) -> bool:
        async with self._session() as session:
            stmt = delete(KvSetMember).where(
                KvSetMember.key == key, KvSetMember.member == member
            )
            result = await session.execute(stmt)
            return (result.rowcount or 0) > 0

    async def smembers(self, key: str) -> set[str]:
        async with self._session() as session:
            stmt = select(KvSetMember.member).where(KvSetMember.key == key)
            return set((await session.execute(stmt)).scalars().all())

    async def acquire_lock(self, key: str, owner_id: str, ttl_ms: int) -> LockGrant:
        now = self._now()
        expires_at = now + timedelta(milliseconds=ttl_ms)

        async with self._session() as session:
            fence_stmt = insert(FencingCounter).values(
                key=fence_key_for(key), token=1
            ).on_conflict_do_update(
                index_elements=[FencingCounter.key],
                set_={"token": FencingCounter.token + 1},
            ).returning(FencingCounter.token)
            token = int((await session.execute(fence_stmt)).scalar_one())

            lease = LockInfo(
                owner=owner_id,
                fencing_token=token,
                acquired_at=now.timestamp() * 1000,
                expires_at=expires_at.timestamp() * 1000,
            )
            lock_stmt = insert(KvEntry).values(
                key=key, value=lease.to_json(), expires_at=expires_at
            ).on_conflict_do_update(
                index_elements=[KvEntry.key],
                set_={"value": lease.to_json(), "expires_at": expires_at},
                where=and_(KvEntry.expires_at.is_not(None), KvEntry.expires_at <= now),
            ).returning(KvEntry.key)
            won = (await session.execute(lock_stmt)).scalar_one_or_none()

            if won is None:
                await session.rollback()
                return LockGrant(acquired=False)

            return LockGrant(acquired=True, fencing_token=token)

    async def _owned_row(
        self,
        session: AsyncSession,
        key: str,
        owner_id: str,
        fencing_token: int,
    ) -> tuple[KvEntry, LockInfo] | None:
        """The live lease row under key with its parsed lease, if owner and token match."""
        stmt = (
            select(KvEntry)
            .where(KvEntry.key == key, self._live(self._now()))
            .with_for_update()
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        lease = LockInfo.from_json(row.value)
        if lease is None or lease.owner != owner_id or lease.fencing_token != fencing_token:
            return None
        return row, lease

    async def extend_lock(
        self, key: str, owner_id: str, fencing_token: int, ttl_ms: int
    ) -> bool:
        async with self._session() as session:
            owned = await self._owned_row(session, key, owner_id, fencing_token)
            if owned is None:
                return False
            row, lease = owned
            expires_at = self._now() + timedelta(milliseconds=ttl_ms)
            row.value = LockInfo(
                owner=lease.owner,
                fencing_token=lease.fencing_token,
                acquired_at=lease.acquired_at,
                expires_at=expires_at.timestamp() * 1000,
            ).to_json()
            row.expires_at = expires_at
            return True

    async def release_lock(self, key: str, owner_id: str, fencing_token: int) -> bool:
        async with self._session() as session:
            owned = await self._owned_row(session, key, owner_id, fencing_token)
            if owned is None:
                return False
            await session.delete(owned[0])
            return True
