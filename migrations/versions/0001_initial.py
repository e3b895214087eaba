"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _now_default():
    if _is_postgres():
        return sa.text("now()")
    return sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    op.create_table(
        "connections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("uid", sa.String(length=128), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.UniqueConstraint("uid", name="uq_connections_uid"),
    )

    op.create_table(
        "received_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("uid", sa.String(length=128), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_received_messages_created_at", "received_messages", ["created_at"])
    op.create_index("ix_received_messages_uid_created_at", "received_messages", ["uid", "created_at"])

    op.create_table(
        "queued_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
    )
    op.create_index("ix_queued_messages_created_at", "queued_messages", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_queued_messages_created_at", table_name="queued_messages")
    op.drop_table("queued_messages")
    op.drop_index("ix_received_messages_uid_created_at", table_name="received_messages")
    op.drop_index("ix_received_messages_created_at", table_name="received_messages")
    op.drop_table("received_messages")
    op.drop_table("connections")
