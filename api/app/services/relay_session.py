from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from ..protocol import ConnFrame, DisconnFrame, ParseFailure, SensorFrame, parse_frame
from .connections import get_connection, is_reachable, upsert_connection
from .inbound import record_reading
from .outbound import DeliveryReferenceError, DuplicateDelivery, mark_delivered, pending_for


logger = logging.getLogger("relay.session")

POLICY_VIOLATION = 1008
NORMAL_CLOSURE = 1000
HANDSHAKE_TIMEOUT_S = 30.0

SessionFactory = Callable[[], AbstractContextManager[Session]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RelaySession:
    """Serve one client websocket: a frame reader plus a periodic push writer.

    The first frame must be ``CONN#<uid>``. After that, readings are stored
    as they arrive and queued messages are pushed every `push_interval_s`
    while the client is inside the liveness window. A push is recorded as
    delivered only after the send succeeds.
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        session_factory: SessionFactory,
        liveness_window_s: int,
        push_interval_s: float,
        max_message_bytes: int = 4096,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.websocket = websocket
        self.session_factory = session_factory
        self.liveness_window_s = liveness_window_s
        self.push_interval_s = push_interval_s
        self.max_message_bytes = max_message_bytes
        self.clock = clock
        self.uid: str | None = None

    def _fields(self, **extra: object) -> dict:
        return {"fields": {"uid": self.uid, **extra}}

    async def run(self) -> None:
        if not await self._handshake():
            return

        writer = asyncio.create_task(self._writer_loop())
        try:
            await self._reader_loop()
        finally:
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            await self._close(NORMAL_CLOSURE)
            logger.info("session ended", extra=self._fields())

    # -- inbound ------------------------------------------------------------

    async def _receive(self) -> str | None:
        """Next text frame; None once the peer is gone. Binary frames are decoded."""

        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            return None
        text = message.get("text")
        if text is None:
            raw = message.get("bytes") or b""
            text = raw.decode("utf-8", errors="replace")
        return text

    async def _handshake(self) -> bool:
        try:
            first = await asyncio.wait_for(self._receive(), timeout=HANDSHAKE_TIMEOUT_S)
        except asyncio.TimeoutError:
            logger.warning("handshake timed out")
            await self._close(POLICY_VIOLATION)
            return False
        except WebSocketDisconnect:
            return False
        if first is None:
            return False

        try:
            frame = parse_frame(first)
        except ParseFailure as exc:
            frame = None
            reason = str(exc)
        else:
            reason = "first frame must be CONN"
        if not isinstance(frame, ConnFrame):
            logger.warning("handshake rejected: %s", reason, extra={"fields": {"frame": first[:64]}})
            await self._close(POLICY_VIOLATION)
            return False

        self.uid = frame.uid
        try:
            await run_in_threadpool(self._touch)
        except SQLAlchemyError:
            logger.exception("connection upsert failed", extra=self._fields())
            await self._close(POLICY_VIOLATION)
            return False
        logger.info("client connected", extra=self._fields())
        return True

    async def _reader_loop(self) -> None:
        while True:
            try:
                text = await self._receive()
            except WebSocketDisconnect:
                return
            if text is None:
                return
            if not await self.handle_text(text):
                return

    async def handle_text(self, text: str) -> bool:
        """Handle one inbound frame; False means the session should end."""

        if len(text.encode("utf-8")) > self.max_message_bytes:
            logger.warning("dropping oversized frame", extra=self._fields(bytes=len(text.encode("utf-8"))))
            return True
        try:
            frame = parse_frame(text)
        except ParseFailure as exc:
            logger.warning("dropping frame: %s", exc, extra=self._fields(frame=text[:64]))
            return True

        if frame.uid != self.uid:
            logger.warning("dropping frame for another identity", extra=self._fields(frame_uid=frame.uid))
            return True

        if isinstance(frame, DisconnFrame):
            logger.info("client disconnecting", extra=self._fields())
            return False

        try:
            if isinstance(frame, SensorFrame):
                await run_in_threadpool(self._store_reading, frame)
            else:
                await run_in_threadpool(self._touch)
        except SQLAlchemyError:
            logger.exception("dropping frame after database error", extra=self._fields())
        return True

    def _touch(self) -> None:
        assert self.uid is not None
        with self.session_factory() as session:
            upsert_connection(session, self.uid, self.clock())

    def _store_reading(self, frame: SensorFrame) -> None:
        with self.session_factory() as session:
            record_reading(session, frame.uid, frame.value, frame.created_at)
            upsert_connection(session, frame.uid, self.clock())

    # -- outbound -----------------------------------------------------------

    async def _writer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.push_interval_s)
            try:
                await self.push_pending()
            except SQLAlchemyError:
                logger.exception("push failed", extra=self._fields())
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.info("push stopped: %r", exc, extra=self._fields())
                return

    def _load_pending(self) -> list[tuple[int, str]]:
        assert self.uid is not None
        with self.session_factory() as session:
            conn = get_connection(session, self.uid)
            if not is_reachable(conn, self.clock(), self.liveness_window_s):
                return []
            return [(m.id, m.payload) for m in pending_for(session, self.uid)]

    def _record_delivery(self, queued_message_id: int) -> None:
        assert self.uid is not None
        with self.session_factory() as session:
            mark_delivered(session, self.uid, queued_message_id, self.clock())

    async def push_pending(self) -> int:
        """Send every pending message once; returns how many were sent."""

        pending = await run_in_threadpool(self._load_pending)
        sent = 0
        for queued_message_id, payload in pending:
            await self.websocket.send_text(payload)
            sent += 1
            try:
                await run_in_threadpool(self._record_delivery, queued_message_id)
            except DuplicateDelivery:
                logger.debug("already recorded", extra=self._fields(queued_message_id=queued_message_id))
            except DeliveryReferenceError as exc:
                logger.warning("delivery not recorded: %s", exc, extra=self._fields())
        if sent:
            logger.info("pushed queued messages", extra=self._fields(count=sent))
        return sent

    async def _close(self, code: int) -> None:
        ws = self.websocket
        if ws.application_state == WebSocketState.DISCONNECTED or ws.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await ws.close(code=code)
        except (RuntimeError, WebSocketDisconnect) as exc:
            logger.debug("close after peer left: %r", exc, extra=self._fields())
