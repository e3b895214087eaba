from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.sync.client import ClientConnection, connect


NORMAL_CLOSURE = 1000

_PEER_RESET_MARKERS = (
    "connection reset by peer",
    "connection reset",
    "econnreset",
)


class TransportUnavailable(ConnectionError):
    """The transport cannot be opened or written to right now."""


class TransportListener(Protocol):
    def on_open(self) -> None: ...

    def on_text(self, text: str) -> None: ...

    def on_close(self, code: Optional[int], reason: str) -> None: ...

    def on_error(self, exc: BaseException) -> None: ...


class Transport(Protocol):
    def open(self, listener: TransportListener) -> None: ...

    def write(self, text: str) -> None: ...

    def close(self, code: int = NORMAL_CLOSURE) -> None: ...


def is_peer_reset(exc: BaseException | None) -> bool:
    """True when the error (or anything in its cause chain) is a peer reset."""

    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, ConnectionResetError):
            return True
        text = str(exc).strip().lower()
        if any(marker in text for marker in _PEER_RESET_MARKERS):
            return True
        exc = exc.__cause__ or exc.__context__
    return False


@dataclass(eq=False)
class _Session:
    listener: TransportListener
    conn: ClientConnection | None = None


class WebSocketTransport:
    """Duplex text transport over a websocket.

    Each `open()` starts a reader thread for a new session. Events are
    delivered to the listener from that thread; events from a session that
    has since been closed or replaced are dropped.
    """

    def __init__(
        self,
        url: str,
        *,
        open_timeout_s: float = 10.0,
        close_timeout_s: float = 1.0,
    ) -> None:
        self.url = url
        self.open_timeout_s = float(open_timeout_s)
        self.close_timeout_s = float(close_timeout_s)
        self._lock = threading.Lock()
        self._session: _Session | None = None

    def open(self, listener: TransportListener) -> None:
        session = _Session(listener=listener)
        with self._lock:
            previous = self._session
            self._session = session
        if previous is not None:
            self._close_conn(previous, NORMAL_CLOSURE)

        thread = threading.Thread(target=self._run, args=(session,), name="relay-transport", daemon=True)
        try:
            thread.start()
        except RuntimeError as exc:
            with self._lock:
                if self._session is session:
                    self._session = None
            raise TransportUnavailable(f"cannot start transport thread: {exc}") from exc

    def write(self, text: str) -> None:
        session = self._session
        conn = session.conn if session is not None else None
        if conn is None:
            raise TransportUnavailable("transport is not open")
        try:
            conn.send(text)
        except (ConnectionClosed, OSError) as exc:
            raise TransportUnavailable(f"write failed: {exc}") from exc

    def close(self, code: int = NORMAL_CLOSURE) -> None:
        with self._lock:
            session = self._session
            self._session = None
        if session is not None:
            self._close_conn(session, code)

    def _close_conn(self, session: _Session, code: int) -> None:
        conn = session.conn
        if conn is None:
            return
        try:
            conn.close(code=code)
        except (WebSocketException, OSError) as exc:
            print(f"[relay-agent] transport close failed: {exc!r}")

    def _current(self, session: _Session) -> bool:
        return self._session is session

    def _emit(self, session: _Session, fn: Callable[[TransportListener], Any]) -> None:
        if not self._current(session):
            return
        try:
            fn(session.listener)
        except Exception as exc:
            print(f"[relay-agent] transport listener failed: {exc!r}")

    def _run(self, session: _Session) -> None:
        connected = False
        try:
            with connect(
                self.url,
                open_timeout=self.open_timeout_s,
                close_timeout=self.close_timeout_s,
            ) as conn:
                connected = True
                self._serve(session, conn)
        except (WebSocketException, OSError, TimeoutError) as exc:
            if connected:
                print(f"[relay-agent] transport close failed: {exc!r}")
                return
            err = TransportUnavailable(f"cannot connect to {self.url}: {exc}")
            err.__cause__ = exc
            self._emit(session, lambda listener: listener.on_error(err))

    def _serve(self, session: _Session, conn: ClientConnection) -> None:
        # Leaving the caller's `with` block closes conn, stale or not.
        with self._lock:
            if self._session is not session:
                return
            session.conn = conn

        self._emit(session, lambda listener: listener.on_open())

        try:
            for message in conn:
                text = message.decode("utf-8", errors="replace") if isinstance(message, bytes) else message
                self._emit(session, lambda listener, t=text: listener.on_text(t))
        except ConnectionClosedOK:
            pass
        except (ConnectionClosed, OSError) as exc:
            self._detach(session)
            self._emit_after_detach(session, lambda listener: listener.on_error(exc))
            return

        self._detach(session)
        code = getattr(conn, "close_code", None)
        reason = getattr(conn, "close_reason", None) or ""
        self._emit_after_detach(session, lambda listener: listener.on_close(code, reason))

    def _detach(self, session: _Session) -> bool:
        with self._lock:
            if self._session is session:
                self._session = None
                session.conn = None
                return True
            return False

    def _emit_after_detach(self, session: _Session, fn: Callable[[TransportListener], Any]) -> None:
        # The session was current until _detach; only events from a session
        # that was not closed locally reach the listener.
        if session.conn is not None:
            return
        try:
            fn(session.listener)
        except Exception as exc:
            print(f"[relay-agent] transport listener failed: {exc!r}")
