from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import pytest
from sqlalchemy.orm import Session, sessionmaker

import api.app.models  # noqa: F401  (register models)
from api.app.db import Base, make_engine


@pytest.fixture
def session_factory(tmp_path: Path):
    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'relay.sqlite3'}")
    Base.metadata.create_all(engine)
    session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    @contextmanager
    def _db_session_override() -> Iterator[Session]:
        session = session_local()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    yield _db_session_override
    engine.dispose()
