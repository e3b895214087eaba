from __future__ import annotations

from fastapi import APIRouter, WebSocket

from ..db import db_session
from ..services.relay_session import RelaySession

router = APIRouter(tags=["relay"])


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket) -> None:
    settings = websocket.app.state.settings
    await websocket.accept()
    session = RelaySession(
        websocket,
        session_factory=db_session,
        liveness_window_s=settings.liveness_window_s,
        push_interval_s=settings.push_interval_s,
        max_message_bytes=settings.max_message_bytes,
    )
    await session.run()
