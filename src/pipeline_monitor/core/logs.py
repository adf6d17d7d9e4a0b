"""Script log files: tails, searches and the last-line summary."""

import re
from collections import deque
from pathlib import Path

from pipeline_monitor.config import Config
from pipeline_monitor.errors import ValidationError

DEFAULT_LINES = 200
MAX_LINES = 1000
_SCRIPT_NAME_RE = re.compile(r"^[a-z0-9-]+$", re.IGNORECASE)
_SEARCH_STRIP_RE = re.compile(r"[^a-zA-Z0-9 ._\-:\[\]]")


def log_path(config: Config, script: str) -> Path | None:
    if not _SCRIPT_NAME_RE.match(script):
        return None
    return config.scripts_dir / f"{script}.log"


def last_log_line(path: Path | None) -> str | None:
    """Last non-empty line of a log, or None when missing or empty."""
    if path is None:
        return None
    try:
        with open(path, "rb") as f:
            f.seek(0, 2)
            size = f.tell()
            f.seek(max(0, size - 8192))
            tail = f.read().decode("utf-8", errors="replace")
    except OSError:
        return None
    for line in reversed(tail.splitlines()):
        if line.strip():
            return line.strip()
    return None


def sanitize_search(value: str) -> str:
    return _SEARCH_STRIP_RE.sub("", value)[:100]


def allowed_log_scripts(config: Config) -> list[str]:
    names = [f"dev-worker-{i}" for i in range(1, config.max_workers + 1)]
    names += ["task-fixer"] + [f"task-fixer-{i}" for i in range(2, config.max_fixers + 1)]
    names += ["project-driver", "post-commit-gate", "dev-worker", "watchdog"]
    names += config.triggerable_scripts
    return list(dict.fromkeys(names))


def read_log(
    config: Config,
    script: str,
    lines: int = DEFAULT_LINES,
    search: str | None = None,
) -> dict:
    """Tail of an allow-listed script log, optionally filtered."""
    allowed = allowed_log_scripts(config)
    if script not in allowed:
        raise ValidationError(f"Invalid script. Allowed: {', '.join(allowed)}")
    try:
        lines = min(max(int(lines), 1), MAX_LINES)
    except (TypeError, ValueError):
        raise ValidationError("lines must be an integer") from None
    path = log_path(config, script)
    empty = {"script": script, "lines": [], "totalLines": 0, "fileSizeBytes": 0, "count": 0}

    needle = None
    if search:
        needle = sanitize_search(search).lower()
        if not needle:
            return empty

    try:
        size = path.stat().st_size
        tail: deque[str] = deque(maxlen=lines)
        total = 0
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                total += 1
                line = line.rstrip("\n")
                if not line:
                    continue
                if needle is None or needle in line.lower():
                    tail.append(line)
    except OSError:
        return empty

    return {
        "script": script,
        "lines": list(tail),
        "totalLines": total,
        "fileSizeBytes": size,
        "count": lines,
    }
