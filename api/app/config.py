from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Literal


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return float(v)


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return int(v)


def _get_list(name: str, default: List[str]) -> List[str]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return [s.strip() for s in v.split(",") if s.strip()]


LogFormat = Literal["text", "json"]


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    log_format: str

    database_url: str

    # DB bootstrap
    auto_migrate: bool

    # Background jobs
    enable_scheduler: bool

    # API surface toggles
    enable_docs: bool
    enable_relay_routes: bool
    enable_read_routes: bool

    # CORS
    cors_allow_origins: List[str]

    # Relay behavior
    liveness_window_s: int
    push_interval_s: float
    max_message_bytes: int

    # Aggregator job
    enable_aggregator: bool
    aggregate_interval_s: int
    aggregate_sample_size: int


def load_settings() -> Settings:
    app_env = (os.getenv("APP_ENV", "dev").strip() or "dev").lower()

    # Route surface toggles
    #
    # The same image can run as a relay-only service (websocket endpoint) or
    # as a private read/debug service over the same database.
    enable_relay_routes = _get_bool("ENABLE_RELAY_ROUTES", True)
    enable_read_routes = _get_bool("ENABLE_READ_ROUTES", True)

    # --- Required secrets in non-dev ---
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        if app_env == "dev":
            database_url = "sqlite+pysqlite:///./relay.sqlite3"
        else:
            raise RuntimeError("DATABASE_URL must be set when APP_ENV is not 'dev'")

    log_format = (os.getenv("LOG_FORMAT", "text").strip() or "text").lower()
    if log_format not in {"text", "json"}:
        raise RuntimeError("LOG_FORMAT must be one of: text, json")

    liveness_window_s = _get_int("LIVENESS_WINDOW_S", 300)
    if liveness_window_s <= 0:
        raise RuntimeError("LIVENESS_WINDOW_S must be > 0")

    push_interval_s = _get_float("PUSH_INTERVAL_S", 10.0)
    if push_interval_s <= 0:
        raise RuntimeError("PUSH_INTERVAL_S must be > 0")

    aggregate_interval_s = _get_int("AGGREGATE_INTERVAL_S", 10)
    if aggregate_interval_s <= 0:
        raise RuntimeError("AGGREGATE_INTERVAL_S must be > 0")

    aggregate_sample_size = _get_int("AGGREGATE_SAMPLE_SIZE", 5)
    if aggregate_sample_size <= 0:
        raise RuntimeError("AGGREGATE_SAMPLE_SIZE must be > 0")

    # --- Safer defaults ---
    cors_default = ["*"] if app_env == "dev" else []

    return Settings(
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=log_format,
        database_url=database_url,
        auto_migrate=_get_bool("AUTO_MIGRATE", app_env == "dev"),
        enable_scheduler=_get_bool("ENABLE_SCHEDULER", app_env == "dev"),
        enable_docs=_get_bool("ENABLE_DOCS", app_env == "dev"),
        enable_relay_routes=enable_relay_routes,
        enable_read_routes=enable_read_routes,
        cors_allow_origins=_get_list("CORS_ALLOW_ORIGINS", cors_default),
        liveness_window_s=liveness_window_s,
        push_interval_s=push_interval_s,
        max_message_bytes=_get_int("MAX_MESSAGE_BYTES", 4096),
        enable_aggregator=_get_bool("ENABLE_AGGREGATOR", True),
        aggregate_interval_s=aggregate_interval_s,
        aggregate_sample_size=aggregate_sample_size,
    )


settings = load_settings()
