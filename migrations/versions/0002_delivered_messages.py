"""delivered messages

Revision ID: 0002_delivered_messages
Revises: 0001_initial
Create Date: 2026-10-17

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_delivered_messages"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _now_default():
    if _is_postgres():
        return sa.text("now()")
    return sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    # One row per (client, queued message) handed over. The unique pair is
    # what keeps concurrent writers from delivering a message twice.
    op.create_table(
        "delivered_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "uid",
            sa.String(length=128),
            sa.ForeignKey("connections.uid", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "queued_message_id",
            sa.Integer(),
            sa.ForeignKey("queued_messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.UniqueConstraint("uid", "queued_message_id", name="uq_delivered_messages_uid_queued_message_id"),
    )
    op.create_index(
        "ix_delivered_messages_queued_message_id",
        "delivered_messages",
        ["queued_message_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_delivered_messages_queued_message_id", table_name="delivered_messages")
    op.drop_table("delivered_messages")
