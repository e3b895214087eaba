from __future__ import annotations

import pytest

from api.app.config import load_settings


def test_dev_defaults(monkeypatch) -> None:
    for name in (
        "DATABASE_URL",
        "LIVENESS_WINDOW_S",
        "PUSH_INTERVAL_S",
        "LOG_FORMAT",
        "AUTO_MIGRATE",
        "CORS_ALLOW_ORIGINS",
        "AGGREGATE_SAMPLE_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("APP_ENV", "dev")

    s = load_settings()

    assert s.database_url.startswith("sqlite+pysqlite:///")
    assert s.liveness_window_s == 300
    assert s.push_interval_s == 10.0
    assert s.aggregate_sample_size == 5
    assert s.auto_migrate is True
    assert s.cors_allow_origins == ["*"]


def test_non_dev_requires_database_url(monkeypatch) -> None:
    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        load_settings()


@pytest.mark.parametrize(
    "name,value",
    [
        ("LIVENESS_WINDOW_S", "0"),
        ("PUSH_INTERVAL_S", "-1"),
        ("AGGREGATE_SAMPLE_SIZE", "0"),
        ("LOG_FORMAT", "xml"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv(name, value)

    with pytest.raises(RuntimeError):
        load_settings()
