from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ..db import db_session
from ..models import Connection
from ..schemas import ConnectionOut, EnqueueRequest, EnqueueResponse, QueuedMessageOut, ReadingOut
from ..services.connections import compute_status, get_connection, list_connections
from ..services.inbound import readings_for, recent_readings
from ..services.outbound import delete_queued_message, enqueue_message, pending_for

router = APIRouter(prefix="/api/v1", tags=["relay"])


def _liveness_window_s(request: Request) -> int:
    return int(request.app.state.settings.liveness_window_s)


def _connection_out(conn: Connection, now: datetime, liveness_window_s: int) -> ConnectionOut:
    status, seconds = compute_status(conn, now, liveness_window_s)
    return ConnectionOut(
        uid=conn.uid,
        last_seen=conn.last_seen,
        status=status,
        seconds_since_last_seen=seconds,
    )


@router.get("/connections", response_model=List[ConnectionOut])
def get_connections(request: Request) -> List[ConnectionOut]:
    now = datetime.now(timezone.utc)
    window = _liveness_window_s(request)
    with db_session() as session:
        return [_connection_out(c, now, window) for c in list_connections(session)]


@router.get("/connections/{uid}", response_model=ConnectionOut)
def get_connection_detail(uid: str, request: Request) -> ConnectionOut:
    now = datetime.now(timezone.utc)
    with db_session() as session:
        conn = get_connection(session, uid)
        if conn is None:
            raise HTTPException(status_code=404, detail="Connection not found")
        return _connection_out(conn, now, _liveness_window_s(request))


@router.get("/connections/{uid}/pending", response_model=List[QueuedMessageOut])
def get_pending(uid: str) -> List[QueuedMessageOut]:
    with db_session() as session:
        if get_connection(session, uid) is None:
            raise HTTPException(status_code=404, detail="Connection not found")
        return [
            QueuedMessageOut(id=m.id, payload=m.payload, created_at=m.created_at)
            for m in pending_for(session, uid)
        ]


@router.get("/readings", response_model=List[ReadingOut])
def get_readings(
    uid: Optional[str] = Query(default=None, description="Only readings from this client"),
    limit: int = Query(default=100, ge=1, le=5000),
) -> List[ReadingOut]:
    with db_session() as session:
        if uid is None:
            rows = recent_readings(session, limit)
        else:
            rows = readings_for(session, uid, limit=limit)
        return [ReadingOut(id=r.id, uid=r.uid, value=r.value, created_at=r.created_at) for r in rows]


@router.post("/queue", response_model=EnqueueResponse, status_code=201)
def post_queue(req: EnqueueRequest) -> EnqueueResponse:
    with db_session() as session:
        queued_id = enqueue_message(session, req.payload)
    return EnqueueResponse(id=queued_id)


@router.delete("/queue/{queued_message_id}", status_code=204)
def delete_queue_entry(queued_message_id: int) -> None:
    with db_session() as session:
        if not delete_queued_message(session, queued_message_id):
            raise HTTPException(status_code=404, detail="Queued message not found")
