"""Client side of the `#`-delimited relay wire format.

Outbound: CONN, DISCONN and SENSOR frames. Inbound: DATA frames pushed by the
collector.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import List

from agent.buffer import Aggregate, Reading
from agent.identity import ClientIdentity

SEPARATOR = "#"
CONN = "CONN"
DISCONN = "DISCONN"
SENSOR = "SENSOR"
DATA = "DATA"


class ParseFailure(ValueError):
    """A wire message that does not match its expected shape."""


def _check_identity(client_id: str) -> str:
    if not client_id or SEPARATOR in client_id:
        raise ValueError(f"invalid client identity: {client_id!r}")
    return client_id


def encode_conn(client_id: ClientIdentity) -> str:
    return f"{CONN}{SEPARATOR}{_check_identity(client_id)}"


def encode_disconn(client_id: ClientIdentity) -> str:
    return f"{DISCONN}{SEPARATOR}{_check_identity(client_id)}"


def encode_sensor(client_id: ClientIdentity, reading: Reading) -> str:
    ts = int(reading.timestamp.timestamp())
    return SEPARATOR.join([SENSOR, _check_identity(client_id), str(ts), repr(float(reading.value))])


def _fields(message: str, *, tag: str, count: int) -> List[str]:
    parts = message.split(SEPARATOR)
    if parts[0] != tag:
        raise ParseFailure(f"expected {tag} message, got tag {parts[0]!r}")
    fields = parts[1:]
    if len(fields) != count:
        raise ParseFailure(f"{tag} message has {len(fields)} fields instead of {count}")
    return fields


def _parse_float(raw: str, *, name: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ParseFailure(f"{name} is not a number: {raw!r}") from exc
    if not math.isfinite(value):
        raise ParseFailure(f"{name} is not finite: {raw!r}")
    return value


def parse_data(message: str) -> Aggregate:
    ts_raw, value_raw = _fields(message, tag=DATA, count=2)
    ts = _parse_float(ts_raw, name="timestamp")
    value = _parse_float(value_raw, name="value")
    try:
        timestamp = datetime.fromtimestamp(ts, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ParseFailure(f"timestamp out of range: {ts_raw!r}") from exc
    return Aggregate(timestamp=timestamp, value=value)
