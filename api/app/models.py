from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Float,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Connection(Base):
    """A client identity the relay has seen, with its last activity time."""

    __tablename__ = "connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(String(128), nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    deliveries: Mapped[list["DeliveredMessage"]] = relationship(
        back_populates="connection",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (UniqueConstraint("uid", name="uq_connections_uid"),)


class ReceivedMessage(Base):
    __tablename__ = "received_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    # Client-supplied reading time, not arrival time.
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_received_messages_created_at", "created_at"),
        Index("ix_received_messages_uid_created_at", "uid", "created_at"),
    )


class QueuedMessage(Base):
    __tablename__ = "queued_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    deliveries: Mapped[list["DeliveredMessage"]] = relationship(
        back_populates="queued_message",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_queued_messages_created_at", "created_at"),)


class DeliveredMessage(Base):
    """One queued message handed to one client identity."""

    __tablename__ = "delivered_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("connections.uid", ondelete="CASCADE"),
        nullable=False,
    )
    queued_message_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("queued_messages.id", ondelete="CASCADE"),
        nullable=False,
    )
    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    connection: Mapped["Connection"] = relationship(back_populates="deliveries")
    queued_message: Mapped["QueuedMessage"] = relationship(back_populates="deliveries")

    __table_args__ = (
        UniqueConstraint("uid", "queued_message_id", name="uq_delivered_messages_uid_queued_message_id"),
        Index("ix_delivered_messages_queued_message_id", "queued_message_id"),
    )
