from __future__ import annotations

from datetime import datetime, timezone

import pytest

from api.app.protocol import (
    ConnFrame,
    DisconnFrame,
    ParseFailure,
    SensorFrame,
    encode_data,
    parse_frame,
)


def test_parse_handshake_frames() -> None:
    assert parse_frame("CONN#u1") == ConnFrame(uid="u1")
    assert parse_frame("DISCONN#u1") == DisconnFrame(uid="u1")


def test_parse_sensor_frame() -> None:
    frame = parse_frame("SENSOR#u1#1700000000#0.42")

    assert frame == SensorFrame(
        uid="u1",
        created_at=datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc),
        value=0.42,
    )


@pytest.mark.parametrize(
    "message",
    [
        "SENSOR#abc#notanumber#3.2",
        "SENSOR#abc#1700000000#x",
        "SENSOR#abc#1700000000#nan",
        "SENSOR#abc#1700000000.5#1.0",
        "SENSOR#abc#1700000000",
        "SENSOR##1700000000#1.0",
        "CONN#",
        "CONN",
        "CONN#a#b",
        "DATA#1#2",
        "HELLO#u1",
        "",
    ],
)
def test_parse_rejects_malformed_frames(message: str) -> None:
    with pytest.raises(ParseFailure):
        parse_frame(message)


def test_encode_data_uses_integer_seconds() -> None:
    ts = datetime(2023, 11, 14, 22, 13, 20, 900000, tzinfo=timezone.utc)

    assert encode_data(ts, 0.5) == "DATA#1700000000#0.5"
