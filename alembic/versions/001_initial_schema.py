"""Initial schema with key-value store tables

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Lock leases and dead letter entries
    op.create_table(
        "kv_entries",
        sa.Column("key", sa.String(512), nullable=False),
        sa.Column("value", sa.Text, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )

    # Index for the expiry sweep
    op.create_index(
        "ix_kv_entries_expires_at",
        "kv_entries",
        ["expires_at"],
    )

    # Dead letter indexes
    op.create_table(
        "kv_set_members",
        sa.Column("key", sa.String(512), nullable=False),
        sa.Column("member", sa.String(512), nullable=False),
        sa.PrimaryKeyConstraint("key", "member"),
    )

    # Fencing token counters, never deleted
    op.create_table(
        "fencing_counters",
        sa.Column("key", sa.String(512), nullable=False),
        sa.Column("token", sa.BigInteger, nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("fencing_counters")
    op.drop_table("kv_set_members")
    op.drop_index("ix_kv_entries_expires_at", table_name="kv_entries")
    op.drop_table("kv_entries")
