from __future__ import annotations

from datetime import datetime, timedelta, timezone

from api.app.models import Connection
from api.app.services.connections import (
    compute_status,
    delete_connection,
    get_connection,
    is_reachable,
    last_seen,
    list_connections,
    upsert_connection,
)

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_upsert_inserts_then_refreshes_last_seen(session_factory) -> None:
    with session_factory() as session:
        first = upsert_connection(session, "u1", T0)
        assert first.uid == "u1"

    with session_factory() as session:
        upsert_connection(session, "u1", T0 + timedelta(seconds=30))

    with session_factory() as session:
        assert session.query(Connection).count() == 1
        assert last_seen(session, "u1") == T0 + timedelta(seconds=30)
        assert last_seen(session, "missing") is None


def test_list_and_delete_connections(session_factory) -> None:
    with session_factory() as session:
        upsert_connection(session, "u2", T0)
        upsert_connection(session, "u1", T0)

    with session_factory() as session:
        assert [c.uid for c in list_connections(session)] == ["u1", "u2"]
        assert delete_connection(session, "u1") is True
        assert delete_connection(session, "u1") is False

    with session_factory() as session:
        assert get_connection(session, "u1") is None
        assert get_connection(session, "u2") is not None


def test_compute_status_uses_liveness_window() -> None:
    conn = Connection(uid="u1", last_seen=T0)

    assert compute_status(conn, T0 + timedelta(seconds=299), 300) == ("online", 299)
    assert compute_status(conn, T0 + timedelta(seconds=301), 300) == ("offline", 301)
    assert compute_status(None, T0, 300) == ("unknown", None)

    assert is_reachable(conn, T0 + timedelta(seconds=10), 300) is True
    assert is_reachable(conn, T0 + timedelta(hours=1), 300) is False


def test_compute_status_accepts_naive_last_seen() -> None:
    conn = Connection(uid="u1", last_seen=T0.replace(tzinfo=None))

    assert compute_status(conn, T0 + timedelta(seconds=5), 300) == ("online", 5)
