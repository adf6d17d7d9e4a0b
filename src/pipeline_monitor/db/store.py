"""Structured backend: the SQLite mirror of the markdown state files.

The store is an explicitly constructed handle. It connects lazily on
first use and must be closed by whoever created it.
"""

import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import Protocol

from pipeline_monitor.core import markdown
from pipeline_monitor.db.engine import init_db
from pipeline_monitor.db.models import (
    Backlog,
    BacklogItem,
    Blocker,
    CompletedTask,
    CurrentTask,
    Event,
    FailedTask,
    Heartbeat,
    Task,
    heartbeat_from_epoch,
)
from pipeline_monitor.errors import StoreUnavailable

logger = logging.getLogger(__name__)

COMPLETED_STATUSES = ("done", "completed", "fixed")
FAILED_FILTER = (
    "status IN ('failed', 'blocked', 'fixed', 'superseded') OR status LIKE 'fixing-%'"
)


class StateStore(Protocol):
    """Operations shared by the SQLite and flat-file backends."""

    name: str

    def get_backlog(self) -> Backlog: ...

    def get_completed(self) -> list[CompletedTask]: ...

    def get_completed_count(self) -> int: ...

    def get_average_task_duration(self) -> str | None: ...

    def get_failed(self) -> list[FailedTask]: ...

    def get_blocker_lines(self) -> list[str]: ...

    def get_heartbeats(self, max_workers: int) -> dict[str, Heartbeat]: ...

    def get_current_tasks(self, max_workers: int) -> dict[str, CurrentTask]: ...

    def set_current_task(self, worker_id: int, task: CurrentTask) -> None: ...

    def get_events(self, limit: int = 100) -> list[Event]: ...


def _split_blocked_by(value: str | None) -> list[str]:
    if not value:
        return []
    return [s.strip() for s in value.split(",") if s.strip()]


def normalize_root(title: str) -> str:
    root = re.sub(r"\[[A-Z]*\]\s*", "", title).lower()
    return re.sub(r"\s+", " ", root).strip()[:50]


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        tag=row["tag"] or "",
        description=row["description"] or "",
        status=row["status"],
        blocked_by=_split_blocked_by(row["blocked_by"]),
        branch=row["branch"] or "",
        attempts=row["attempts"] or 0,
        error=row["error"] or "",
        duration=row["duration"] or "",
        priority=row["priority"] or 0,
        created_at=row["created_at"],
        claimed_at=row["claimed_at"],
        completed_at=row["completed_at"],
        failed_at=row["failed_at"],
    )


class SqliteStore:
    """SQLite-backed implementation of the state store."""

    name = "sqlite"

    def __init__(self, db_path: Path, stale_minutes: int = 45):
        self.db_path = Path(db_path)
        self.stale_minutes = stale_minutes
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    # ── Connection lifecycle ─────────────────────────────────────────────

    @property
    def db(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                if not self.db_path.exists():
                    raise StoreUnavailable(f"Database not found: {self.db_path}")
                try:
                    self._conn = init_db(self.db_path)
                except sqlite3.Error as e:
                    raise StoreUnavailable(str(e)) from e
            return self._conn

    def probe(self) -> None:
        """Run one cheap query; raises StoreUnavailable on any failure."""
        try:
            self.db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ── Backlog / tasks ──────────────────────────────────────────────────

    def get_backlog(self) -> Backlog:
        rows = self.db.execute(
            """SELECT id, title, tag, description, status, blocked_by, priority
               FROM tasks
               WHERE status IN ('pending', 'claimed', 'done')
               ORDER BY priority ASC, id ASC"""
        ).fetchall()
        items = []
        for r in rows:
            blocked_by = _split_blocked_by(r["blocked_by"])
            items.append(
                BacklogItem(
                    text=markdown.format_item_text(
                        r["tag"] or "", r["title"], r["description"] or "", blocked_by
                    ),
                    tag=r["tag"] or "",
                    title=r["title"],
                    description=r["description"] or None,
                    status=r["status"],
                    blocked_by=blocked_by,
                )
            )
        return markdown.build_backlog(items)

    def get_task(self, task_id: int) -> Task | None:
        row = self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None
        return _row_to_task(row)

    def add_task(
        self,
        tag: str,
        title: str,
        description: str = "",
        position: str = "top",
        blocked_by: list[str] | None = None,
    ) -> Task:
        """Insert a pending task at the top or bottom of the open queue."""
        blocked = ", ".join(blocked_by or [])
        db = self.db
        if position == "top":
            db.execute(
                "UPDATE tasks SET priority = priority + 1 WHERE status IN ('pending', 'claimed')"
            )
            priority = 0
        else:
            priority = db.execute(
                """SELECT COALESCE(MAX(priority), -1) + 1 FROM tasks
                   WHERE status IN ('pending', 'claimed')"""
            ).fetchone()[0]
        cursor = db.execute(
            """INSERT INTO tasks
               (title, tag, description, status, blocked_by, normalized_root, priority)
               VALUES (?, ?, ?, 'pending', ?, ?, ?)""",
            (title, tag, description, blocked, normalize_root(title), priority),
        )
        db.commit()
        return self.get_task(cursor.lastrowid)

    # ── Completed / failed ───────────────────────────────────────────────

    def get_completed(self, limit: int = 50) -> list[CompletedTask]:
        rows = self.db.execute(
            f"""SELECT completed_at, title, branch, duration, notes
                FROM tasks
                WHERE status IN ({",".join("?" * len(COMPLETED_STATUSES))})
                ORDER BY completed_at DESC
                LIMIT ?""",
            (*COMPLETED_STATUSES, limit),
        ).fetchall()
        return [
            CompletedTask(
                date=(r["completed_at"] or "")[:10],
                task=r["title"],
                branch=r["branch"] or "",
                duration=r["duration"] or "",
                notes=r["notes"] or "",
            )
            for r in rows
        ]

    def get_completed_count(self) -> int:
        return self.db.execute(
            f"SELECT COUNT(*) FROM tasks WHERE status IN ({','.join('?' * len(COMPLETED_STATUSES))})",
            COMPLETED_STATUSES,
        ).fetchone()[0]

    def get_average_task_duration(self) -> str | None:
        avg_secs = self.db.execute(
            f"""SELECT AVG(duration_secs) FROM tasks
                WHERE status IN ({",".join("?" * len(COMPLETED_STATUSES))})
                  AND duration_secs IS NOT NULL AND duration_secs > 0""",
            COMPLETED_STATUSES,
        ).fetchone()[0]
        if avg_secs:
            return markdown.format_duration(avg_secs / 60)
        # Rows written without duration_secs still carry the human string.
        return markdown.average_duration([c.duration for c in self.get_completed(limit=1000)])

    def get_failed(self) -> list[FailedTask]:
        rows = self.db.execute(
            f"""SELECT failed_at, title, branch, error, attempts, status
                FROM tasks WHERE {FAILED_FILTER}
                ORDER BY failed_at DESC"""
        ).fetchall()
        return [
            FailedTask(
                date=(r["failed_at"] or "")[:10],
                task=r["title"],
                branch=r["branch"] or "",
                error=r["error"] or "",
                attempts=str(r["attempts"] or 0),
                status=r["status"],
            )
            for r in rows
        ]

    # ── Blockers ─────────────────────────────────────────────────────────

    def get_active_blockers(self) -> list[Blocker]:
        rows = self.db.execute(
            "SELECT * FROM blockers WHERE status = 'active' ORDER BY created_at ASC, id ASC"
        ).fetchall()
        return [
            Blocker(
                id=r["id"],
                description=r["description"],
                status=r["status"],
                created_at=r["created_at"],
                resolved_at=r["resolved_at"],
            )
            for r in rows
        ]

    def get_blocker_lines(self) -> list[str]:
        return [f"- {b.description}" for b in self.get_active_blockers()]

    # ── Workers ──────────────────────────────────────────────────────────

    def get_current_task(self, worker_id: int) -> CurrentTask | None:
        row = self.db.execute("SELECT * FROM workers WHERE id = ?", (worker_id,)).fetchone()
        if not row:
            return None
        return CurrentTask(
            status=row["status"],
            title=row["task_title"] or None,
            branch=row["branch"] or None,
            started=row["started_at"],
            worker=f"Worker {row['id']}",
            last_info=row["last_info"] or None,
        )

    def get_current_tasks(self, max_workers: int) -> dict[str, CurrentTask]:
        tasks = {}
        for wid in range(1, max_workers + 1):
            task = self.get_current_task(wid)
            if task is not None and task.status != "unknown":
                tasks[f"worker-{wid}"] = task
        return tasks

    def set_current_task(self, worker_id: int, task: CurrentTask) -> None:
        self.db.execute(
            """INSERT INTO workers (id, status, task_title, branch, started_at, last_info)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   status = excluded.status,
                   task_title = excluded.task_title,
                   branch = excluded.branch,
                   started_at = excluded.started_at,
                   last_info = excluded.last_info,
                   updated_at = datetime('now')""",
            (
                worker_id,
                task.status,
                task.title or "",
                task.branch or "",
                task.started,
                task.last_info or "",
            ),
        )
        self.db.commit()

    def get_heartbeats(self, max_workers: int) -> dict[str, Heartbeat]:
        rows = self.db.execute(
            "SELECT id, heartbeat_epoch FROM workers WHERE id <= ?", (max_workers,)
        ).fetchall()
        epochs = {r["id"]: r["heartbeat_epoch"] for r in rows}
        return {
            f"worker-{wid}": heartbeat_from_epoch(epochs.get(wid), self.stale_minutes)
            for wid in range(1, max_workers + 1)
        }

    # ── Events ───────────────────────────────────────────────────────────

    def get_events(self, limit: int = 100) -> list[Event]:
        rows = self.db.execute(
            "SELECT epoch, event, detail, worker_id FROM events ORDER BY epoch DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            Event(
                epoch=r["epoch"],
                event=r["event"],
                detail=r["detail"] or "",
                worker_id=r["worker_id"],
            )
            for r in reversed(rows)
        ]
