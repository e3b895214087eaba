from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Mapping

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import Settings, settings as global_settings
from .db import engine, db_session
from .migrations import maybe_run_startup_migrations
from .services.aggregator import aggregate_recent
from .routes.connections import router as connections_router
from .routes.relay import router as relay_router
from .observability import (
    RequestContextMiddleware,
    configure_logging,
    get_request_id,
)
from .version import __version__


logger = logging.getLogger("relay")


def _error_response(
    status_code: int,
    error: dict[str, Any],
    *,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    """JSON error envelope carrying the request id in the body and the X-Request-ID header."""

    rid = get_request_id() or "unknown"
    error.setdefault("request_id", rid)
    out_headers = dict(headers or {})
    out_headers.setdefault("X-Request-ID", rid)
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"error": error}), headers=out_headers)


def create_app(_settings: Settings | None = None) -> FastAPI:
    # Allow tests (and advanced deployments) to inject a Settings object
    # without reloading modules.
    settings = _settings or global_settings

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        _setup_logging(settings)
        _init_db(settings)
        if settings.enable_scheduler:
            _start_scheduler(settings)
        else:
            logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")
        yield
        _stop_scheduler()

    docs_url = "/docs" if settings.enable_docs else None
    redoc_url = "/redoc" if settings.enable_docs else None
    openapi_url = "/openapi.json" if settings.enable_docs else None

    app = FastAPI(
        title="Sensor Relay",
        version=__version__,
        lifespan=lifespan,
        docs_url=docs_url,
        redoc_url=redoc_url,
        openapi_url=openapi_url,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request IDs / structured HTTP logs
    app.add_middleware(RequestContextMiddleware)

    def _runtime_features() -> dict:
        return {
            "docs": {"enabled": bool(settings.enable_docs)},
            "routes": {
                "relay": bool(settings.enable_relay_routes),
                "read": bool(settings.enable_read_routes),
            },
            "scheduler": {"enabled": bool(settings.enable_scheduler)},
            "aggregator": {
                "enabled": bool(settings.enable_aggregator),
                "interval_s": int(settings.aggregate_interval_s),
                "sample_size": int(settings.aggregate_sample_size),
            },
            "relay": {
                "liveness_window_s": int(settings.liveness_window_s),
                "push_interval_s": float(settings.push_interval_s),
                "max_message_bytes": int(settings.max_message_bytes),
            },
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"ok": True, "version": __version__, "env": settings.app_env, "features": _runtime_features()}

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error = dict(exc.detail["error"])
        else:
            error = {"code": "HTTP_ERROR", "message": str(exc.detail)}
        return _error_response(exc.status_code, error, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error_response(
            422,
            {"code": "VALIDATION_ERROR", "message": "Request validation failed", "details": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"fields": {"path": str(request.url.path), "method": request.method}},
        )
        # No exception details in the body; request_id is enough to find the log line.
        return _error_response(500, {"code": "INTERNAL", "message": "Internal server error"})

    @app.get("/readyz", include_in_schema=False)
    def readyz():
        """Readiness probe.

        Checks:
        - DB connectivity
        - migrations applied (alembic_version table exists)
        """

        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                conn.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
        except Exception as e:
            raise HTTPException(status_code=503, detail=f"not ready: {type(e).__name__}")

        return {"ready": True}

    @app.get("/api/v1/health")
    def health_api():
        return {"ok": True, "env": settings.app_env, "version": app.version, "features": _runtime_features()}

    # --- Route surface ---
    # Relay surface (client websocket)
    if settings.enable_relay_routes:
        app.include_router(relay_router)
    else:
        logger.info("Relay routes disabled (ENABLE_RELAY_ROUTES=false)")

    # Read/debug surface
    if settings.enable_read_routes:
        app.include_router(connections_router)
    else:
        logger.info("Read routes disabled (ENABLE_READ_ROUTES=false)")

    return app


def _setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)
    logger.info("Logging initialized (level=%s)", settings.log_level)


def _init_db(settings: Settings) -> None:
    # Apply schema migrations when enabled (AUTO_MIGRATE).
    maybe_run_startup_migrations(engine=engine, auto_migrate=settings.auto_migrate)
    logger.info("DB init complete")


_scheduler: BackgroundScheduler | None = None


def _start_scheduler(settings: Settings) -> None:
    global _scheduler
    if not settings.enable_aggregator:
        logger.info("Aggregator disabled (ENABLE_AGGREGATOR=false)")
        return

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        func=_aggregate_job,
        trigger="interval",
        seconds=settings.aggregate_interval_s,
        kwargs={"sample_size": settings.aggregate_sample_size},
        id="aggregate_recent",
        max_instances=1,
        replace_existing=True,
        coalesce=True,
    )

    scheduler.start()
    _scheduler = scheduler
    logger.info(
        "Scheduler started (aggregate_interval_s=%s sample_size=%s)",
        settings.aggregate_interval_s,
        settings.aggregate_sample_size,
    )


def _stop_scheduler() -> None:
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")


def _aggregate_job(sample_size: int) -> None:
    try:
        with db_session() as session:
            aggregate_recent(session, sample_size=sample_size)
    except Exception:
        logger.exception("aggregate_recent failed")


# ASGI entrypoint
app = create_app()
