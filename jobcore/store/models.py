"""
SQLAlchemy database models.
Defines the tables backing the SQL key-value store.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class KvEntry(Base):
    """
    A string value with optional expiry.

    Lock leases (lock:<job_id>) and dead letter entries (dlq:entry:<id>)
    live here. Rows past expires_at are treated as absent and overwritten
    or deleted lazily.
    """

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_kv_entries_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<KvEntry(key={self.key}, expires_at={self.expires_at})>"


class KvSetMember(Base):
    """Membership row of a string set (dead letter indexes)."""

    __tablename__ = "kv_set_members"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    member: Mapped[str] = mapped_column(String(512), primary_key=True)


class FencingCounter(Base):
    """
    Last fencing token issued for a lock key.

    Never deleted, so tokens keep increasing across lease expiry and release.
    """

    __tablename__ = "fencing_counters"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    token: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
