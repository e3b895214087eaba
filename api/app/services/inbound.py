from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from ..models import ReceivedMessage
from .connections import as_utc


def record_reading(session: Session, uid: str, value: float, created_at: datetime) -> ReceivedMessage:
    row = ReceivedMessage(uid=uid, value=float(value), created_at=as_utc(created_at))
    session.add(row)
    session.flush()
    return row


def recent_readings(session: Session, limit: int) -> list[ReceivedMessage]:
    """Newest first, across all clients."""

    if limit <= 0:
        return []
    return (
        session.query(ReceivedMessage)
        .order_by(ReceivedMessage.created_at.desc(), ReceivedMessage.id.desc())
        .limit(limit)
        .all()
    )


def readings_for(
    session: Session,
    uid: str,
    *,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int | None = None,
) -> list[ReceivedMessage]:
    q = session.query(ReceivedMessage).filter(ReceivedMessage.uid == uid)
    if since is not None:
        q = q.filter(ReceivedMessage.created_at >= as_utc(since))
    if until is not None:
        q = q.filter(ReceivedMessage.created_at < as_utc(until))
    q = q.order_by(ReceivedMessage.created_at.asc(), ReceivedMessage.id.asc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()
