from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from api.app.config import load_settings
from api.app.main import create_app
from api.app.routes import connections as connections_routes
from api.app.services.connections import upsert_connection
from api.app.services.inbound import record_reading


def _client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, session_factory) -> TestClient:
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{tmp_path / 'unused.sqlite3'}")
    monkeypatch.setenv("AUTO_MIGRATE", "0")
    monkeypatch.setenv("ENABLE_SCHEDULER", "0")
    monkeypatch.setattr(connections_routes, "db_session", session_factory)
    return TestClient(create_app(load_settings()))


def test_queue_then_delete(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, session_factory) -> None:
    client = _client(tmp_path, monkeypatch, session_factory)
    with session_factory() as session:
        upsert_connection(session, "u1", datetime.now(timezone.utc))

    created = client.post("/api/v1/queue", json={"payload": "DATA#1#1.0"})
    assert created.status_code == 201
    queued_id = created.json()["id"]

    pending = client.get("/api/v1/connections/u1/pending").json()
    assert [p["id"] for p in pending] == [queued_id]

    assert client.delete(f"/api/v1/queue/{queued_id}").status_code == 204
    assert client.get("/api/v1/connections/u1/pending").json() == []


def test_not_found_uses_error_envelope(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, session_factory) -> None:
    client = _client(tmp_path, monkeypatch, session_factory)

    resp = client.delete("/api/v1/queue/999", headers={"X-Request-ID": "req-123"})

    assert resp.status_code == 404
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.json() == {
        "error": {"code": "HTTP_ERROR", "message": "Queued message not found", "request_id": "req-123"}
    }

    missing = client.get("/api/v1/connections/nobody")
    assert missing.status_code == 404
    assert missing.json()["error"]["message"] == "Connection not found"


def test_empty_payload_is_a_validation_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, session_factory) -> None:
    client = _client(tmp_path, monkeypatch, session_factory)

    resp = client.post("/api/v1/queue", json={"payload": ""})

    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


def test_readings_listing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, session_factory) -> None:
    client = _client(tmp_path, monkeypatch, session_factory)
    with session_factory() as session:
        record_reading(session, "u1", 1.0, datetime(2026, 1, 1, 0, 0, 1, tzinfo=timezone.utc))
        record_reading(session, "u2", 2.0, datetime(2026, 1, 1, 0, 0, 2, tzinfo=timezone.utc))

    newest = client.get("/api/v1/readings", params={"limit": 1}).json()
    assert [r["uid"] for r in newest] == ["u2"]

    only_u1 = client.get("/api/v1/readings", params={"uid": "u1"}).json()
    assert [r["value"] for r in only_u1] == [1.0]

    assert client.get("/api/v1/readings", params={"limit": 0}).status_code == 422


def test_health_reports_version_and_features(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, session_factory) -> None:
    client = _client(tmp_path, monkeypatch, session_factory)

    body = client.get("/healthz").json()

    assert body["ok"] is True
    assert body["version"]
    assert body["features"]["routes"] == {"relay": True, "read": True}
    assert body["features"]["relay"]["liveness_window_s"] == 300
    assert client.get("/healthz").headers["X-Request-ID"]
