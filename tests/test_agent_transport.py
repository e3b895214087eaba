from __future__ import annotations

import socket
import struct
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator

import pytest
from websockets.server import ServerProtocol
from websockets.sync.server import ServerConnection, serve

from agent.transport import TransportUnavailable, WebSocketTransport, is_peer_reset


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[tuple] = []
        self._cond = threading.Condition()

    def _add(self, event: tuple) -> None:
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def on_open(self) -> None:
        self._add(("open",))

    def on_text(self, text: str) -> None:
        self._add(("text", text))

    def on_close(self, code, reason: str) -> None:
        self._add(("close", code))

    def on_error(self, exc: BaseException) -> None:
        self._add(("error", exc))

    def wait_for(self, kind: str, timeout: float = 5.0) -> tuple:
        with self._cond:
            found = self._cond.wait_for(lambda: any(e[0] == kind for e in self.events), timeout=timeout)
            assert found, f"no {kind} event; got {self.events}"
            return next(e for e in self.events if e[0] == kind)

    def kinds(self) -> list[str]:
        with self._cond:
            return [e[0] for e in self.events]


@contextmanager
def _ws_server(handler: Callable[[ServerConnection], None]) -> Iterator[str]:
    server = serve(handler, "127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"ws://127.0.0.1:{server.socket.getsockname()[1]}/ws"
    finally:
        server.shutdown()
        thread.join(timeout=5)


@contextmanager
def _resetting_server() -> Iterator[tuple[str, threading.Event]]:
    """Completes the websocket handshake, then aborts the TCP connection with RST."""

    listener = socket.create_server(("127.0.0.1", 0))
    handshake_done = threading.Event()

    def _serve_once() -> None:
        conn, _ = listener.accept()
        protocol = ServerProtocol()
        request = None
        while request is None:
            data = conn.recv(4096)
            if not data:
                conn.close()
                return
            protocol.receive_data(data)
            events = protocol.events_received()
            request = events[0] if events else None
        protocol.send_response(protocol.accept(request))
        for chunk in protocol.data_to_send():
            conn.sendall(chunk)
        handshake_done.wait(timeout=5)
        conn.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        conn.close()

    thread = threading.Thread(target=_serve_once, daemon=True)
    thread.start()
    try:
        yield f"ws://127.0.0.1:{listener.getsockname()[1]}/ws", handshake_done
    finally:
        thread.join(timeout=5)
        listener.close()


def _unused_url() -> str:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return f"ws://127.0.0.1:{port}/ws"


def test_connection_reset_error_is_peer_reset() -> None:
    assert is_peer_reset(ConnectionResetError(104, "Connection reset by peer"))


def test_peer_reset_found_in_cause_chain() -> None:
    try:
        try:
            raise ConnectionResetError("reset")
        except ConnectionResetError as inner:
            raise RuntimeError("websocket closed abnormally") from inner
    except RuntimeError as outer:
        assert is_peer_reset(outer)


def test_peer_reset_from_text() -> None:
    assert is_peer_reset(OSError("[Errno 54] Connection reset by peer"))


@pytest.mark.parametrize(
    "exc",
    [None, TimeoutError("timed out"), OSError("network unreachable"), TransportUnavailable("refused")],
)
def test_other_errors_are_not_peer_reset(exc) -> None:
    assert not is_peer_reset(exc)


def test_write_before_open_raises_transport_unavailable() -> None:
    transport = WebSocketTransport("ws://127.0.0.1:9/ws")

    with pytest.raises(TransportUnavailable):
        transport.write("CONN#abc")


def test_close_without_session_is_noop() -> None:
    transport = WebSocketTransport("ws://127.0.0.1:9/ws")
    transport.close()
    with pytest.raises(TransportUnavailable):
        transport.write("CONN#abc")


def test_session_delivers_open_text_and_close() -> None:
    received: list[str] = []

    def handler(conn: ServerConnection) -> None:
        received.append(conn.recv())
        conn.send("DATA#1700000000#0.5")
        conn.close()

    listener = RecordingListener()
    with _ws_server(handler) as url:
        transport = WebSocketTransport(url)
        transport.open(listener)
        listener.wait_for("open")
        transport.write("CONN#abc")

        assert listener.wait_for("text") == ("text", "DATA#1700000000#0.5")
        assert listener.wait_for("close") == ("close", 1000)

    assert received == ["CONN#abc"]
    assert listener.kinds() == ["open", "text", "close"]
    with pytest.raises(TransportUnavailable):
        transport.write("SENSOR#abc#1700000000#0.1")


def test_refused_connection_reports_transport_unavailable() -> None:
    listener = RecordingListener()
    transport = WebSocketTransport(_unused_url(), open_timeout_s=2.0)

    transport.open(listener)

    _, exc = listener.wait_for("error")
    assert isinstance(exc, TransportUnavailable)
    assert not is_peer_reset(exc)
    assert listener.kinds() == ["error"]


def test_local_close_suppresses_session_events() -> None:
    handler_done = threading.Event()

    def handler(conn: ServerConnection) -> None:
        try:
            for _ in conn:
                pass
        finally:
            handler_done.set()

    listener = RecordingListener()
    with _ws_server(handler) as url:
        transport = WebSocketTransport(url)
        transport.open(listener)
        listener.wait_for("open")

        transport.close()

        assert handler_done.wait(timeout=5)
        # The reader thread sees the close too; give it time to emit anything it would.
        time.sleep(0.3)

    assert listener.kinds() == ["open"]


def test_reopen_drops_events_from_replaced_session() -> None:
    def handler(conn: ServerConnection) -> None:
        for _ in conn:
            pass

    first = RecordingListener()
    second = RecordingListener()
    with _ws_server(handler) as url:
        transport = WebSocketTransport(url)
        transport.open(first)
        first.wait_for("open")

        transport.open(second)
        second.wait_for("open")
        transport.write("CONN#abc")
        transport.close()

    assert first.kinds() == ["open"]
    assert second.kinds() == ["open"]


def test_socket_reset_is_classified_as_peer_reset() -> None:
    listener = RecordingListener()
    with _resetting_server() as (url, handshake_done):
        transport = WebSocketTransport(url)
        transport.open(listener)
        listener.wait_for("open")
        handshake_done.set()

        _, exc = listener.wait_for("error")

    assert is_peer_reset(exc)
    with pytest.raises(TransportUnavailable):
        transport.write("CONN#abc")
