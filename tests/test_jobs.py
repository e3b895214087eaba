from __future__ import annotations

from datetime import datetime, timezone

import pytest

from api.app.jobs import aggregate as aggregate_job
from api.app.jobs import migrate as migrate_job
from api.app.services.connections import upsert_connection
from api.app.services.inbound import record_reading
from api.app.services.outbound import pending_for


def test_aggregate_job_queues_one_message(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(aggregate_job, "configure_logging", lambda **kwargs: None)
    monkeypatch.setattr(aggregate_job, "maybe_run_startup_migrations", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(aggregate_job, "db_session", session_factory)

    with session_factory() as session:
        upsert_connection(session, "u1", datetime.now(timezone.utc))
        record_reading(session, "u1", 2.0, datetime(2026, 1, 1, tzinfo=timezone.utc))

    aggregate_job.main()

    assert len(calls) == 1
    with session_factory() as session:
        (msg,) = pending_for(session, "u1")
        assert msg.payload.startswith("DATA#")
        assert msg.payload.endswith("#2.0")


def test_migrate_job_upgrades_head(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(migrate_job, "configure_logging", lambda **kwargs: None)
    monkeypatch.setattr(migrate_job, "upgrade_head", lambda **kwargs: calls.append(kwargs))

    migrate_job.main()

    assert calls == [{"engine": migrate_job.engine}]
