from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import NewType

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import Connection, DeliveredMessage, QueuedMessage
from .connections import as_utc


logger = logging.getLogger("relay.outbound")

QueuedMessageId = NewType("QueuedMessageId", int)


class DuplicateDelivery(Exception):
    """The (uid, queued message) pair was already recorded as delivered."""

    def __init__(self, uid: str, queued_message_id: int) -> None:
        super().__init__(f"message {queued_message_id} already delivered to {uid!r}")
        self.uid = uid
        self.queued_message_id = queued_message_id


class DeliveryReferenceError(LookupError):
    """A delivery record would point at a missing connection or queued message."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def enqueue_message(session: Session, payload: str, now: datetime | None = None) -> QueuedMessageId:
    if not isinstance(payload, str) or payload == "":
        raise ValueError("payload must be a non-empty string")
    row = QueuedMessage(payload=payload, created_at=as_utc(now or utcnow()))
    session.add(row)
    session.flush()
    logger.info("message queued", extra={"fields": {"queued_message_id": row.id}})
    return QueuedMessageId(row.id)


def pending_for(session: Session, uid: str) -> list[QueuedMessage]:
    """Queued messages not yet delivered to `uid`, oldest first."""

    return (
        session.query(QueuedMessage)
        .outerjoin(
            DeliveredMessage,
            and_(
                DeliveredMessage.queued_message_id == QueuedMessage.id,
                DeliveredMessage.uid == uid,
            ),
        )
        .filter(DeliveredMessage.id.is_(None))
        .order_by(QueuedMessage.created_at.asc(), QueuedMessage.id.asc())
        .all()
    )


def _delivery_exists(session: Session, uid: str, queued_message_id: int) -> bool:
    return (
        session.query(DeliveredMessage.id)
        .filter(
            DeliveredMessage.uid == uid,
            DeliveredMessage.queued_message_id == queued_message_id,
        )
        .first()
        is not None
    )


def mark_delivered(
    session: Session,
    uid: str,
    queued_message_id: int,
    now: datetime | None = None,
) -> DeliveredMessage:
    """Record that `queued_message_id` was handed to `uid`.

    The insert runs in a SAVEPOINT so a conflict leaves the caller's
    transaction usable. Raises DuplicateDelivery when the pair already exists
    and DeliveryReferenceError when either parent row is missing.
    """

    row = DeliveredMessage(
        uid=uid,
        queued_message_id=int(queued_message_id),
        delivered_at=as_utc(now or utcnow()),
    )
    try:
        with session.begin_nested():
            session.add(row)
            session.flush()
    except IntegrityError as exc:
        if _delivery_exists(session, uid, queued_message_id):
            raise DuplicateDelivery(uid, int(queued_message_id)) from exc
        has_conn = session.query(Connection.id).filter(Connection.uid == uid).first() is not None
        has_msg = session.get(QueuedMessage, int(queued_message_id)) is not None
        if not has_conn or not has_msg:
            missing = "connection" if not has_conn else "queued message"
            raise DeliveryReferenceError(
                f"cannot record delivery of {queued_message_id} to {uid!r}: {missing} does not exist"
            ) from exc
        raise
    return row


def delete_queued_message(session: Session, queued_message_id: int) -> bool:
    row = session.get(QueuedMessage, int(queued_message_id))
    if row is None:
        return False
    session.delete(row)
    session.flush()
    logger.info("queued message deleted", extra={"fields": {"queued_message_id": int(queued_message_id)}})
    return True
