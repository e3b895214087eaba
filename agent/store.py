from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, TypeVar


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS records (
  key TEXT PRIMARY KEY,
  payload_json TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""

_T = TypeVar("_T")

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "malformed database schema",
    "file is not a database",
    "not a database",
    "database corrupt",
)

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}
_ALLOWED_TEMP_STORE = {"DEFAULT", "FILE", "MEMORY"}


class PersistenceFailure(RuntimeError):
    """Raised when the local durable store cannot be written or read."""


class SqliteRecordStore:
    """Durable key -> sequence-of-records store backed by one sqlite file.

    Every `put` rewrites the whole sequence for a key in one transaction, so a
    crash leaves either the previous or the new sequence, never a mix.
    """

    def __init__(
        self,
        path: str,
        *,
        journal_mode: str = "WAL",
        synchronous: str = "FULL",
        temp_store: str = "MEMORY",
        recover_corruption: bool = True,
    ) -> None:
        self.path = Path(path)
        self.journal_mode = self._normalize_pragma(
            "journal_mode",
            journal_mode,
            allowed=_ALLOWED_JOURNAL_MODES,
            default="WAL",
        )
        self.synchronous = self._normalize_pragma(
            "synchronous",
            synchronous,
            allowed=_ALLOWED_SYNCHRONOUS,
            default="FULL",
        )
        self.temp_store = self._normalize_pragma(
            "temp_store",
            temp_store,
            allowed=_ALLOWED_TEMP_STORE,
            default="MEMORY",
        )
        self.recover_corruption = bool(recover_corruption)

        self._init_db(allow_recovery=True)

    @staticmethod
    def _normalize_pragma(name: str, value: str, *, allowed: set[str], default: str) -> str:
        candidate = (value or "").strip().upper()
        if candidate in allowed:
            return candidate
        print(f"[relay-store] invalid {name}={value!r}; using {default}")
        return default

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")
        conn.execute(f"PRAGMA temp_store={self.temp_store}")
        return conn

    def _init_db(self, *, allow_recovery: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with self._conn() as conn:
                conn.execute(SCHEMA_SQL)
                conn.commit()
        except sqlite3.DatabaseError as exc:
            if allow_recovery and self._is_corruption_error(exc) and self._recover_from_corruption():
                return
            raise PersistenceFailure(f"cannot initialize record store at {self.path}: {exc}") from exc

    @staticmethod
    def _is_corruption_error(exc: BaseException) -> bool:
        text = str(exc).strip().lower()
        return any(marker in text for marker in _CORRUPTION_MARKERS)

    def _corrupt_backup_path(self, source: Path, *, stamp: str) -> Path:
        base = source.with_name(f"{source.name}.corrupt-{stamp}")
        if not base.exists():
            return base
        idx = 1
        while True:
            candidate = source.with_name(f"{source.name}.corrupt-{stamp}-{idx}")
            if not candidate.exists():
                return candidate
            idx += 1

    def _recover_from_corruption(self) -> bool:
        if not self.recover_corruption:
            return False

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        moved: list[Path] = []
        candidates = [
            self.path,
            self.path.with_name(f"{self.path.name}-wal"),
            self.path.with_name(f"{self.path.name}-shm"),
        ]

        for source in candidates:
            if not source.exists():
                continue
            target = self._corrupt_backup_path(source, stamp=stamp)
            try:
                source.replace(target)
            except OSError as exc:
                print(f"[relay-store] failed to move corrupt sqlite file {source}: {exc!r}")
                return False
            moved.append(target)

        if moved:
            print("[relay-store] detected sqlite corruption; moved files: %s" % ", ".join(str(p) for p in moved))

        try:
            self._init_db(allow_recovery=False)
        except PersistenceFailure as exc:
            print(f"[relay-store] failed to reinitialize record store after corruption: {exc!r}")
            return False
        return True

    def _run_db(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        try:
            with self._conn() as conn:
                return fn(conn)
        except sqlite3.DatabaseError as exc:
            if self._is_corruption_error(exc) and self._recover_from_corruption():
                try:
                    with self._conn() as conn:
                        return fn(conn)
                except sqlite3.Error as retry_exc:
                    raise PersistenceFailure(f"sqlite operation failed after recovery: {retry_exc!r}") from retry_exc
            raise PersistenceFailure(f"sqlite database error: {exc!r}") from exc
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"sqlite error: {exc!r}") from exc

    def put(self, key: str, records: List[Dict[str, Any]]) -> None:
        payload_json = json.dumps(records, separators=(",", ":"))
        updated_at = datetime.now(timezone.utc).isoformat()

        def _op(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO records(key, payload_json, updated_at) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET payload_json = excluded.payload_json, "
                "updated_at = excluded.updated_at",
                (key, payload_json, updated_at),
            )
            conn.commit()

        self._run_db(_op)

    def get(self, key: str) -> List[Dict[str, Any]] | None:
        def _op(conn: sqlite3.Connection) -> str | None:
            row = conn.execute("SELECT payload_json FROM records WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

        raw = self._run_db(_op)
        if raw is None:
            return None
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            print(f"[relay-store] undecodable payload for key={key!r}; treating as empty")
            return []
        if not isinstance(decoded, list):
            return []
        return [item for item in decoded if isinstance(item, dict)]
