from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import Engine, text
from sqlalchemy.exc import SQLAlchemyError

from .config import settings


logger = logging.getLogger("relay.migrations")


# Fixed advisory lock ID to prevent concurrent migrations.
# Any 64-bit integer works; keep it stable for this repo.
_MIGRATION_LOCK_ID = 5283190477125503311


def _alembic_config(database_url: str) -> Config:
    # alembic.ini lives at repo root.
    repo_root = Path(__file__).resolve().parents[2]
    cfg = Config(str(repo_root / "alembic.ini"))

    # Make sure the script location resolves even when CWD is not repo root.
    cfg.set_main_option("script_location", str(repo_root / "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def upgrade_head(*, engine: Engine, database_url: str | None = None) -> None:
    """Run `alembic upgrade head`, holding a Postgres advisory lock when available.

    Safe to call from several processes at once; on Postgres only one migrates
    at a time. SQLite has no advisory locks, so the lock is skipped there.
    """

    database_url = database_url or settings.database_url
    if not database_url:
        raise RuntimeError("DATABASE_URL is empty; cannot run migrations")

    lock_conn = None
    try:
        if engine.dialect.name == "postgresql":
            # Session-level advisory locks are held per connection, so this
            # connection stays open until the upgrade is done.
            try:
                lock_conn = engine.connect()
                lock_conn.execute(text("SELECT pg_advisory_lock(:id)"), {"id": _MIGRATION_LOCK_ID})
                lock_conn.commit()
                logger.info("acquired migration advisory lock")
            except SQLAlchemyError:
                if lock_conn is not None:
                    lock_conn.close()
                    lock_conn = None
                logger.warning("pg_advisory_lock failed; continuing without lock")

        cfg = _alembic_config(database_url)
        command.upgrade(cfg, "head")
        logger.info("DB migrations applied (head)")

    finally:
        if lock_conn is not None:
            try:
                lock_conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": _MIGRATION_LOCK_ID})
                lock_conn.commit()
            except SQLAlchemyError:
                logger.warning("pg_advisory_unlock failed")
            finally:
                lock_conn.close()


def maybe_run_startup_migrations(*, engine: Engine, auto_migrate: bool | None = None) -> None:
    enabled = settings.auto_migrate if auto_migrate is None else auto_migrate
    if not enabled:
        logger.info("AUTO_MIGRATE disabled")
        return
    logger.info("AUTO_MIGRATE enabled; applying migrations")
    upgrade_head(engine=engine)
