"""Flat-file backend: the markdown state directory workers read and write."""

import logging
from pathlib import Path

from pipeline_monitor.core import markdown
from pipeline_monitor.db.models import (
    Backlog,
    CompletedTask,
    CurrentTask,
    Event,
    FailedTask,
    Heartbeat,
    heartbeat_from_epoch,
)
from pipeline_monitor.errors import NotFoundError

logger = logging.getLogger(__name__)


class FileStore:
    """Reads and writes the markdown files under the dev directory."""

    name = "files"

    def __init__(self, dev_dir: Path, stale_minutes: int = 45):
        self.dev_dir = Path(dev_dir)
        self.stale_minutes = stale_minutes

    @property
    def backlog_path(self) -> Path:
        return self.dev_dir / "backlog.md"

    def read(self, filename: str) -> str:
        """Read a state file; missing or unreadable files read as ''."""
        try:
            return (self.dev_dir / filename).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", filename, e)
            return ""

    # ── Backlog ──────────────────────────────────────────────────────────

    def get_backlog(self) -> Backlog:
        return markdown.parse_backlog(self.read("backlog.md"))

    def require_backlog(self) -> Backlog:
        if not self.backlog_path.exists():
            raise NotFoundError(f"Backlog not found: {self.backlog_path}")
        return self.get_backlog()

    def add_task(
        self,
        tag: str,
        title: str,
        description: str = "",
        position: str = "top",
        blocked_by: list[str] | None = None,
    ) -> str:
        """Insert a pending checkbox line. Caller holds the backlog lock."""
        if not self.backlog_path.exists():
            raise NotFoundError(f"Backlog not found: {self.backlog_path}")
        task_line = "- [ ] " + markdown.format_item_text(tag, title, description, blocked_by)
        raw = self.backlog_path.read_text(encoding="utf-8")
        self.backlog_path.write_text(
            markdown.insert_task_line(raw, task_line, position), encoding="utf-8"
        )
        return task_line

    # ── Completed / failed ───────────────────────────────────────────────

    def get_completed(self) -> list[CompletedTask]:
        return markdown.parse_completed(self.read("completed.md"))

    def get_completed_count(self) -> int:
        return len(self.get_completed())

    def get_average_task_duration(self) -> str | None:
        return markdown.average_duration([c.duration for c in self.get_completed()])

    def get_failed(self) -> list[FailedTask]:
        return markdown.parse_failed(self.read("failed-tasks.md"))

    # ── Blockers ─────────────────────────────────────────────────────────

    def get_blocker_lines(self) -> list[str]:
        return markdown.parse_active_blockers(self.read("blockers.md"))

    # ── Workers ──────────────────────────────────────────────────────────

    def get_heartbeats(self, max_workers: int) -> dict[str, Heartbeat]:
        heartbeats = {}
        for wid in range(1, max_workers + 1):
            raw = self.read(f"worker-{wid}.heartbeat").strip()
            epoch = int(raw) if raw.isdigit() else None
            heartbeats[f"worker-{wid}"] = heartbeat_from_epoch(epoch, self.stale_minutes)
        return heartbeats

    def get_legacy_current_task(self) -> CurrentTask | None:
        raw = self.read("current-task.md")
        return markdown.parse_current_task(raw) if raw else None

    def get_current_tasks(self, max_workers: int) -> dict[str, CurrentTask]:
        tasks = {}
        for wid in range(1, max_workers + 1):
            raw = self.read(f"current-task-{wid}.md")
            if raw:
                tasks[f"worker-{wid}"] = markdown.parse_current_task(raw)
        if not tasks:
            legacy = self.get_legacy_current_task()
            if legacy is not None:
                tasks["worker-1"] = legacy
        return tasks

    def get_current_task(self, worker_id: int) -> CurrentTask | None:
        raw = self.read(f"current-task-{worker_id}.md")
        return markdown.parse_current_task(raw) if raw else None

    def set_current_task(self, worker_id: int, task: CurrentTask) -> None:
        self.dev_dir.mkdir(parents=True, exist_ok=True)
        path = self.dev_dir / f"current-task-{worker_id}.md"
        path.write_text(markdown.render_current_task(task), encoding="utf-8")

    def heartbeat_path(self, worker_id: int) -> Path:
        return self.dev_dir / f"worker-{worker_id}.heartbeat"

    # ── Events ───────────────────────────────────────────────────────────

    def get_events(self, limit: int = 100) -> list[Event]:
        return markdown.parse_events(self.read("events.log"), limit=limit)
