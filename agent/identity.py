from __future__ import annotations

import uuid
from pathlib import Path
from typing import NewType

ClientIdentity = NewType("ClientIdentity", str)


def generate_identity() -> ClientIdentity:
    return ClientIdentity(str(uuid.uuid4()).upper())


def load_or_create_identity(path: str | Path) -> ClientIdentity:
    """Return the install's identity, generating and persisting it on first use.

    The identity is immutable once written: a new one is generated only when
    the file is missing or blank. Read errors propagate, and a stored value
    containing the frame separator is rejected rather than overwritten.
    """

    p = Path(path)
    try:
        existing = p.read_text("utf-8").strip()
    except FileNotFoundError:
        existing = ""

    if existing:
        if "#" in existing:
            raise ValueError(f"identity file {p} holds an invalid identity {existing!r}")
        return ClientIdentity(existing)

    identity = generate_identity()
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(f"{p.name}.tmp")
    tmp.write_text(identity + "\n", "utf-8")
    tmp.replace(p)
    print(f"[relay-agent] generated client identity {identity} at {p}")
    return identity
