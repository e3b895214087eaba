from __future__ import annotations

import argparse
import os
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from agent.buffer import AggregateLog, SampleBuffer
from agent.delivery import (
    DEFAULT_RECONNECT_INTERVAL_S,
    DEFAULT_ROLLBACK_WINDOW,
    DEFAULT_SAMPLE_INTERVAL_S,
    ClientStatus,
    DeliveryClient,
)
from agent.identity import load_or_create_identity
from agent.store import PersistenceFailure, SqliteRecordStore
from agent.transport import WebSocketTransport


def _parse_positive_float_env(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        print(f"[relay-agent] invalid {name}={raw!r}; using {default}")
        return default
    if value <= 0:
        print(f"[relay-agent] invalid {name}={raw!r}; using {default}")
        return default
    return value


def _parse_nonnegative_int_env(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        print(f"[relay-agent] invalid {name}={raw!r}; using {default}")
        return default
    if value < 0:
        print(f"[relay-agent] invalid {name}={raw!r}; using {default}")
        return default
    return value


def _parse_bool_env(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    print(f"[relay-agent] invalid {name}={raw!r}; using {default}")
    return default


def build_store_from_env(path: str) -> SqliteRecordStore:
    return SqliteRecordStore(
        path,
        journal_mode=os.getenv("STORE_SQLITE_JOURNAL_MODE", "WAL"),
        synchronous=os.getenv("STORE_SQLITE_SYNCHRONOUS", "FULL"),
        recover_corruption=_parse_bool_env("STORE_RECOVER_CORRUPTION", default=True),
    )


def build_client_from_env() -> DeliveryClient:
    server_url = os.getenv("RELAY_SERVER_URL", "ws://localhost:3000/ws")
    identity_path = os.getenv("CLIENT_IDENTITY_PATH", "./relay_client_id")
    store_path = os.getenv("RECORD_STORE_PATH", "./relay_records.sqlite")

    store = build_store_from_env(store_path)
    buffer = SampleBuffer(store)
    aggregates = AggregateLog(store)
    loaded = buffer.load()
    aggregates.load()

    client = DeliveryClient(
        client_id=load_or_create_identity(identity_path),
        transport=WebSocketTransport(server_url),
        buffer=buffer,
        aggregates=aggregates,
        sample_interval_s=_parse_positive_float_env("SAMPLE_INTERVAL_S", default=DEFAULT_SAMPLE_INTERVAL_S),
        reconnect_interval_s=_parse_positive_float_env("RECONNECT_INTERVAL_S", default=DEFAULT_RECONNECT_INTERVAL_S),
        rollback_window=_parse_nonnegative_int_env("ROLLBACK_WINDOW", default=DEFAULT_ROLLBACK_WINDOW),
    )
    print(
        "[relay-agent] client_id=%s server=%s store=%s buffered=%s unsent=%s"
        % (client.client_id, server_url, store_path, loaded, len(buffer.unsent()))
    )
    return client


def format_status(status: ClientStatus) -> str:
    last = status.last_aggregate
    last_text = f"{last.value:.4f}@{last.timestamp.isoformat()}" if last is not None else "-"
    return (
        f"[relay-agent] state={status.state.value} want_connected={status.want_connected} "
        f"buffered={status.buffered} unsent={status.unsent} aggregates={status.aggregates} last={last_text}"
    )


def run(client: DeliveryClient, *, status_interval_s: float) -> None:
    client.start_sampling()
    client.connect()
    try:
        while True:
            time.sleep(status_interval_s)
            print(format_status(client.status()))
    except KeyboardInterrupt:
        print("[relay-agent] interrupted; disconnecting")
    finally:
        client.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relay-agent", description="Sensor relay edge client")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="sample, buffer and deliver readings (default)")
    sub.add_parser("status", help="print buffered reading and aggregate counts")
    sub.add_parser("clear", help="delete every buffered reading and aggregate")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    # Load repo-level .env (if present), then agent-local overrides.
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")

    args = build_parser().parse_args(argv)
    command = args.command or "run"

    try:
        client = build_client_from_env()
    except PersistenceFailure as exc:
        raise SystemExit(f"[relay-agent] record store unavailable: {exc}") from exc

    if command == "status":
        print(format_status(client.status()))
        return
    if command == "clear":
        try:
            client.clear()
        except PersistenceFailure as exc:
            raise SystemExit(f"[relay-agent] clear failed: {exc}") from exc
        print("[relay-agent] cleared buffered readings and aggregates")
        return

    run(client, status_interval_s=_parse_positive_float_env("STATUS_LOG_INTERVAL_S", default=60.0))


if __name__ == "__main__":
    main()
