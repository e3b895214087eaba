from __future__ import annotations

import tomllib
from importlib import metadata
from pathlib import Path


DIST_NAME = "sensor-relay"
UNKNOWN_VERSION = "0.0.0+unknown"


def _pyproject_version() -> str | None:
    path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    try:
        with path.open("rb") as fh:
            project = tomllib.load(fh).get("project") or {}
    except (OSError, tomllib.TOMLDecodeError):
        return None
    version = project.get("version")
    return str(version) if version else None


def get_version(dist_name: str = DIST_NAME) -> str:
    """Installed distribution version, else the checkout's pyproject version."""

    try:
        return metadata.version(dist_name)
    except metadata.PackageNotFoundError:
        return _pyproject_version() or UNKNOWN_VERSION


__version__ = get_version()
