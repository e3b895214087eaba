from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ..models import Connection


logger = logging.getLogger("relay.connections")

ConnectionStatus = Literal["online", "offline", "unknown"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _dialect_insert(session: Session):
    dialect = (session.bind.dialect.name if session.bind is not None else "").strip().lower()
    if dialect == "sqlite":
        return sqlite_insert(Connection)
    return pg_insert(Connection)


def upsert_connection(session: Session, uid: str, now: datetime | None = None) -> Connection:
    """Register `uid` or refresh its last_seen, atomically."""

    seen = as_utc(now or utcnow())
    stmt = _dialect_insert(session).values(uid=uid, last_seen=seen)
    stmt = stmt.on_conflict_do_update(index_elements=["uid"], set_={"last_seen": seen})
    session.execute(stmt)
    session.flush()

    conn = get_connection(session, uid)
    if conn is None:
        raise RuntimeError(f"connection {uid!r} missing after upsert")
    session.refresh(conn)
    return conn


def get_connection(session: Session, uid: str) -> Connection | None:
    return session.query(Connection).filter(Connection.uid == uid).one_or_none()


def last_seen(session: Session, uid: str) -> datetime | None:
    value = session.query(Connection.last_seen).filter(Connection.uid == uid).scalar()
    return as_utc(value) if value is not None else None


def list_connections(session: Session) -> list[Connection]:
    return session.query(Connection).order_by(Connection.uid.asc()).all()


def delete_connection(session: Session, uid: str) -> bool:
    """Forget a client; its delivery records go with it."""

    conn = get_connection(session, uid)
    if conn is None:
        return False
    session.delete(conn)
    session.flush()
    logger.info("connection deleted", extra={"fields": {"uid": uid}})
    return True


def compute_status(
    connection: Connection | None,
    now: datetime | None,
    liveness_window_s: int,
) -> tuple[ConnectionStatus, int | None]:
    if connection is None or connection.last_seen is None:
        return "unknown", None
    if now is None:
        now = utcnow()
    seconds = int((as_utc(now) - as_utc(connection.last_seen)).total_seconds())
    if seconds > liveness_window_s:
        return "offline", seconds
    return "online", seconds


def is_reachable(connection: Connection | None, now: datetime | None, liveness_window_s: int) -> bool:
    status, _ = compute_status(connection, now, liveness_window_s)
    return status == "online"
