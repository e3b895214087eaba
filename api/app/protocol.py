"""Server side of the `#`-delimited relay wire format.

Frames accepted from clients:

- ``CONN#<uid>``: handshake; must be the first frame of a session.
- ``SENSOR#<uid>#<unix seconds>#<value>``: one reading.
- ``DISCONN#<uid>``: the client is leaving on purpose.

Frames pushed to clients are opaque queued payloads; the aggregator produces
``DATA#<unix seconds>#<value>``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Union

SEPARATOR = "#"
CONN = "CONN"
DISCONN = "DISCONN"
SENSOR = "SENSOR"
DATA = "DATA"


class ParseFailure(ValueError):
    """An inbound frame that does not match its expected shape."""


@dataclass(frozen=True)
class ConnFrame:
    uid: str


@dataclass(frozen=True)
class DisconnFrame:
    uid: str


@dataclass(frozen=True)
class SensorFrame:
    uid: str
    created_at: datetime
    value: float


Frame = Union[ConnFrame, DisconnFrame, SensorFrame]


def is_valid_uid(uid: str) -> bool:
    return bool(uid) and SEPARATOR not in uid and uid.strip() == uid


def _uid(raw: str) -> str:
    if not is_valid_uid(raw):
        raise ParseFailure(f"invalid client identity: {raw!r}")
    return raw


def _fields(parts: List[str], *, tag: str, count: int) -> List[str]:
    fields = parts[1:]
    if len(fields) != count:
        raise ParseFailure(f"{tag} frame has {len(fields)} fields instead of {count}")
    return fields


def _parse_timestamp(raw: str) -> datetime:
    try:
        ts = int(raw)
    except ValueError as exc:
        raise ParseFailure(f"timestamp is not an integer: {raw!r}") from exc
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ParseFailure(f"timestamp out of range: {raw!r}") from exc


def _parse_value(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ParseFailure(f"value is not a number: {raw!r}") from exc
    if not math.isfinite(value):
        raise ParseFailure(f"value is not finite: {raw!r}")
    return value


def parse_frame(message: str) -> Frame:
    parts = message.split(SEPARATOR)
    tag = parts[0]
    if tag == CONN:
        (uid,) = _fields(parts, tag=tag, count=1)
        return ConnFrame(uid=_uid(uid))
    if tag == DISCONN:
        (uid,) = _fields(parts, tag=tag, count=1)
        return DisconnFrame(uid=_uid(uid))
    if tag == SENSOR:
        uid, ts_raw, value_raw = _fields(parts, tag=tag, count=3)
        return SensorFrame(uid=_uid(uid), created_at=_parse_timestamp(ts_raw), value=_parse_value(value_raw))
    raise ParseFailure(f"unknown frame tag {tag!r}")


def encode_data(timestamp: datetime, value: float) -> str:
    return SEPARATOR.join([DATA, str(int(timestamp.timestamp())), repr(float(value))])
