from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Sequence

from agent.buffer import Aggregate, AggregateLog, Reading, SampleBuffer, last_sent_index
from agent.identity import ClientIdentity
from agent.protocol import ParseFailure, encode_conn, encode_disconn, encode_sensor, parse_data
from agent.store import PersistenceFailure
from agent.timers import RepeatingTimer, Timer
from agent.transport import NORMAL_CLOSURE, Transport, TransportUnavailable, is_peer_reset

DEFAULT_SAMPLE_INTERVAL_S = 7.0
DEFAULT_RECONNECT_INTERVAL_S = 8.0
DEFAULT_ROLLBACK_WINDOW = 3


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


TimerFactory = Callable[[float, Callable[[], None], str], Timer]


def rollback_range(readings: Sequence[Reading], window: int) -> range:
    """Indices to re-mark unsent after the peer dropped the connection.

    Readings the transport accepted just before a reset may never have
    reached the server. Starting at the reading after the last sent one, but
    never later than `window` entries from the end, re-covers that tail.
    """

    n = len(readings)
    last_sent = last_sent_index(readings)
    if last_sent is None:
        return range(0)
    start = max(0, min(last_sent + 1, n - max(0, int(window))))
    return range(start, n)


def random_sample() -> float:
    return random.uniform(0.0, 1.0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClientStatus:
    client_id: str
    state: ConnectionState
    want_connected: bool
    buffered: int
    unsent: int
    aggregates: int
    last_aggregate: Optional[Aggregate]


class DeliveryClient:
    """Connection state machine that delivers buffered readings at least once.

    Every public method and transport callback runs under one re-entrant lock,
    which the timers share, so sampling, reconnects and transport events never
    interleave.
    """

    def __init__(
        self,
        *,
        client_id: ClientIdentity,
        transport: Transport,
        buffer: SampleBuffer,
        aggregates: AggregateLog,
        sampler: Callable[[], float] = random_sample,
        clock: Callable[[], datetime] = _utcnow,
        sample_interval_s: float = DEFAULT_SAMPLE_INTERVAL_S,
        reconnect_interval_s: float = DEFAULT_RECONNECT_INTERVAL_S,
        rollback_window: int = DEFAULT_ROLLBACK_WINDOW,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        if rollback_window < 0:
            raise ValueError("rollback_window must be >= 0")
        self.client_id = client_id
        self.transport = transport
        self.buffer = buffer
        self.aggregates = aggregates
        self.sampler = sampler
        self.clock = clock
        self.sample_interval_s = float(sample_interval_s)
        self.reconnect_interval_s = float(reconnect_interval_s)
        self.rollback_window = int(rollback_window)

        self._lock = threading.RLock()
        self._timer_factory = timer_factory or self._default_timer
        self._sample_timer: Timer | None = None
        self._reconnect_timer: Timer | None = None

        self.state = ConnectionState.DISCONNECTED
        self.want_connected = False

    def _default_timer(self, interval_s: float, callback: Callable[[], None], name: str) -> Timer:
        return RepeatingTimer(interval_s, callback, lock=self._lock, name=name)

    @property
    def reconnect_pending(self) -> bool:
        timer = self._reconnect_timer
        return timer is not None and timer.active

    # -- sampling ---------------------------------------------------------

    def start_sampling(self) -> None:
        with self._lock:
            if self._sample_timer is not None and self._sample_timer.active:
                return
            self._sample_timer = self._timer_factory(self.sample_interval_s, self.tick, "relay-sampler")
            self._sample_timer.start()

    def stop_sampling(self) -> None:
        with self._lock:
            if self._sample_timer is not None:
                self._sample_timer.cancel()
                self._sample_timer = None

    def tick(self) -> Reading:
        """Take one sample: append it, persist it, and send if connected."""

        with self._lock:
            reading = Reading.create(self.sampler(), timestamp=self.clock())
            self.buffer.append(reading)
            if not self._save_readings():
                return reading
            if self.state is ConnectionState.CONNECTED:
                self._flush_unsent()
                self._save_readings()
            return reading

    # -- connection lifecycle ----------------------------------------------

    def connect(self) -> None:
        with self._lock:
            self.want_connected = True
            self._open_transport()

    def disconnect(self) -> None:
        with self._lock:
            was = self.state
            self.want_connected = False
            if was is ConnectionState.CONNECTED:
                try:
                    self.transport.write(encode_disconn(self.client_id))
                except TransportUnavailable as exc:
                    print(f"[relay-agent] DISCONN not delivered: {exc}")
            self._cancel_reconnect()
            self.state = ConnectionState.DISCONNECTED
            if was is not ConnectionState.DISCONNECTED:
                self.transport.close(NORMAL_CLOSURE)
                print("[relay-agent] disconnected")

    def shutdown(self) -> None:
        with self._lock:
            self.stop_sampling()
            self.disconnect()

    def _open_transport(self) -> None:
        if self.state is not ConnectionState.DISCONNECTED:
            return
        self.state = ConnectionState.CONNECTING
        try:
            self.transport.open(self)
        except TransportUnavailable as exc:
            print(f"[relay-agent] connect failed: {exc}")
            self.state = ConnectionState.DISCONNECTED
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if not self.want_connected or self.reconnect_pending:
            return
        self._reconnect_timer = self._timer_factory(self.reconnect_interval_s, self._reconnect_tick, "relay-reconnect")
        self._reconnect_timer.start()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _reconnect_tick(self) -> None:
        with self._lock:
            if not self.want_connected or self.state is ConnectionState.CONNECTED:
                self._cancel_reconnect()
                return
            if self.state is ConnectionState.CONNECTING:
                return
            print("[relay-agent] reconnecting")
            self._open_transport()

    # -- transport callbacks -----------------------------------------------

    def on_open(self) -> None:
        with self._lock:
            if not self.want_connected:
                self.transport.close(NORMAL_CLOSURE)
                self.state = ConnectionState.DISCONNECTED
                return
            self.state = ConnectionState.CONNECTED
            self._cancel_reconnect()
            try:
                self.transport.write(encode_conn(self.client_id))
            except TransportUnavailable as exc:
                print(f"[relay-agent] handshake write failed: {exc}")
                return
            sent = self._flush_unsent()
            self._save_readings()
            print(f"[relay-agent] connected client_id={self.client_id} resent={sent}")

    def on_text(self, text: str) -> None:
        with self._lock:
            if not self.want_connected:
                return
            try:
                aggregate = parse_data(text)
            except ParseFailure as exc:
                print(f"[relay-agent] dropping message {text!r}: {exc}")
                return
            self.aggregates.append(aggregate)
            try:
                self.aggregates.save()
            except PersistenceFailure as exc:
                print(f"[relay-agent] aggregate save failed: {exc}")

    def on_close(self, code: Optional[int], reason: str) -> None:
        with self._lock:
            print(f"[relay-agent] connection closed code={code} reason={reason!r}")
            self._mark_disconnected()

    def on_error(self, exc: BaseException) -> None:
        with self._lock:
            print(f"[relay-agent] connection error: {exc}")
            if is_peer_reset(exc):
                self._rollback_tail()
            self._mark_disconnected()

    def _mark_disconnected(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    def _rollback_tail(self) -> None:
        window = rollback_range(self.buffer.all(), self.rollback_window)
        flipped = self.buffer.mark_unsent(window)
        if flipped:
            print(f"[relay-agent] peer reset; re-queued {flipped} readings from index {window.start}")
        self._save_readings()

    # -- delivery ----------------------------------------------------------

    def _flush_unsent(self) -> int:
        sent = 0
        for reading in self.buffer.unsent():
            if not self._send(reading):
                break
            sent += 1
        return sent

    def _send(self, reading: Reading) -> bool:
        if self.state is not ConnectionState.CONNECTED:
            return False
        try:
            self.transport.write(encode_sensor(self.client_id, reading))
        except TransportUnavailable as exc:
            print(f"[relay-agent] send failed for reading {reading.id}: {exc}")
            return False
        self.buffer.mark_sent(reading.id)
        return True

    def _save_readings(self) -> bool:
        try:
            self.buffer.save()
        except PersistenceFailure as exc:
            print(f"[relay-agent] reading save failed (kept in memory): {exc}")
            return False
        return True

    # -- operator actions --------------------------------------------------

    def clear(self) -> None:
        """Drop every buffered reading and aggregate, locally and on disk."""

        with self._lock:
            self.buffer.clear()
            self.aggregates.clear()
            failures: list[PersistenceFailure] = []
            for log in (self.buffer, self.aggregates):
                try:
                    log.save()
                except PersistenceFailure as exc:
                    failures.append(exc)
            if failures:
                raise failures[0]

    def status(self) -> ClientStatus:
        with self._lock:
            return ClientStatus(
                client_id=str(self.client_id),
                state=self.state,
                want_connected=self.want_connected,
                buffered=len(self.buffer),
                unsent=len(self.buffer.unsent()),
                aggregates=len(self.aggregates),
                last_aggregate=self.aggregates.last(),
            )
