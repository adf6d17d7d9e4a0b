"""Helpers for building lock and state fixtures on disk."""

import os
from pathlib import Path


def make_lock(path: str | Path, pid: int) -> Path:
    """Create a directory lock holding ``pid``, the way workers do."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    (path / "pid").write_text(f"{pid}\n")
    return path


def age_path(path: str | Path, seconds: float) -> None:
    old = os.path.getmtime(path) - seconds
    os.utime(path, (old, old))
