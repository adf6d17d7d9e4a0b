"""Backlog listing and insertion under the backlog mutex."""

import logging
import sqlite3

from pipeline_monitor.config import Config
from pipeline_monitor.core import locks, markdown
from pipeline_monitor.core.files import FileStore
from pipeline_monitor.db.store import SqliteStore
from pipeline_monitor.errors import StoreUnavailable, ValidationError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 2000
POSITIONS = ("top", "bottom")


def _has_newline(value: str) -> bool:
    return "\n" in value or "\r" in value


def validate_task(
    config: Config,
    tag,
    title,
    description=None,
    position="top",
    blocked_by=None,
) -> tuple[str, str, str, str, list[str]]:
    """Check a new task's fields and return them normalized.

    Raises ValidationError before anything touches the backlog.
    """
    if not isinstance(tag, str) or tag not in config.task_tags:
        raise ValidationError(f"Invalid tag. Allowed: {', '.join(config.task_tags)}")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"title must be at most {MAX_TITLE_LENGTH} characters")
    if _has_newline(title):
        raise ValidationError("title must not contain newlines")
    # backlog.md splits an item line on these, so they cannot appear as text.
    if "|" in title or markdown.DESCRIPTION_SEPARATOR in f" {title.strip()} ":
        raise ValidationError(
            f"title must not contain '|' or '{markdown.DESCRIPTION_SEPARATOR.strip()}'"
        )

    description = description or ""
    if not isinstance(description, str):
        raise ValidationError("description must be a string")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"description must be at most {MAX_DESCRIPTION_LENGTH} characters"
        )
    if _has_newline(description):
        raise ValidationError("description must not contain newlines")
    if "|" in description:
        raise ValidationError("description must not contain '|'")

    position = position or "top"
    if position not in POSITIONS:
        raise ValidationError("position must be 'top' or 'bottom'")

    blocked_by = blocked_by or []
    if not isinstance(blocked_by, list) or not all(isinstance(b, str) for b in blocked_by):
        raise ValidationError("blockedBy must be a list of task titles")
    for ref in blocked_by:
        if _has_newline(ref) or "|" in ref:
            raise ValidationError("blockedBy entries must not contain newlines or '|'")
    blocked_by = [ref.strip() for ref in blocked_by if ref.strip()]

    return tag, title.strip(), description.strip(), position, blocked_by


def list_backlog(files: FileStore) -> dict:
    """Open and blocked items with counts; done items are left out of ``items``."""
    return files.require_backlog().to_dict(include_done=False)


def add_task(
    config: Config,
    files: FileStore,
    store: SqliteStore | None,
    tag,
    title,
    description=None,
    position="top",
    blocked_by=None,
    lock_retries: int = locks.BACKLOG_LOCK_RETRIES,
    lock_interval: float = locks.BACKLOG_LOCK_INTERVAL,
) -> dict:
    """Validate, then insert a pending task while holding the backlog lock.

    backlog.md is always written since workers read it directly. The
    database copy is kept in step when it is available.
    """
    tag, title, description, position, blocked_by = validate_task(
        config, tag, title, description, position, blocked_by
    )

    with locks.backlog_lock(config.backlog_lock_path, lock_retries, lock_interval):
        task_line = files.add_task(tag, title, description, position, blocked_by)
        if store is not None:
            try:
                store.add_task(tag, title, description, position, blocked_by)
            except (StoreUnavailable, sqlite3.Error) as e:
                logger.warning("Task written to backlog.md only: %s", e)

    logger.info("Added task at %s: %s", position, task_line)
    return {"inserted": task_line, "position": position}
