from __future__ import annotations

from datetime import datetime, timezone

import pytest

from agent.buffer import Reading
from agent.identity import ClientIdentity
from agent.protocol import (
    ParseFailure,
    encode_conn,
    encode_disconn,
    encode_sensor,
    parse_data,
)

CLIENT = ClientIdentity("6F1C2A4E-0B7D-4E0A-9C55-2B8E1D3F4A60")


def test_handshake_frames() -> None:
    assert encode_conn(CLIENT) == f"CONN#{CLIENT}"
    assert encode_disconn(CLIENT) == f"DISCONN#{CLIENT}"


def test_sensor_frame_uses_integer_unix_seconds() -> None:
    reading = Reading.create(0.42, timestamp=datetime.fromtimestamp(1700000000.9, tz=timezone.utc))

    frame = encode_sensor(CLIENT, reading)

    assert frame == f"SENSOR#{CLIENT}#1700000000#0.42"


@pytest.mark.parametrize("bad", ["", "a#b"])
def test_identity_must_be_nonempty_without_separator(bad: str) -> None:
    with pytest.raises(ValueError):
        encode_conn(ClientIdentity(bad))


def test_parse_data_accepts_fractional_timestamp() -> None:
    agg = parse_data("DATA#1700000000.5#0.375")

    assert agg.value == 0.375
    assert agg.timestamp == datetime.fromtimestamp(1700000000.5, tz=timezone.utc)


@pytest.mark.parametrize(
    "message",
    [
        "DATA#1#",
        "DATA#1",
        "DATA#1#2#3",
        "DATA#abc#1.0",
        "DATA#1#nan",
        "DATA#1#inf",
        "SENSOR#1#2",
        "",
    ],
)
def test_parse_data_rejects_malformed(message: str) -> None:
    with pytest.raises(ParseFailure):
        parse_data(message)


def test_parse_failure_is_a_value_error() -> None:
    assert issubclass(ParseFailure, ValueError)
