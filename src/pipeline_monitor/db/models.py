"""Data models for the pipeline monitor.

Models exposed through the API render themselves with ``to_dict()`` using
the camelCase keys of the JSON envelope consumed by the dashboard.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class WorkerType(str, Enum):
    DEV_WORKER = "dev-worker"
    TASK_FIXER = "task-fixer"
    PROJECT_DRIVER = "project-driver"

    @property
    def label(self) -> str:
        return {
            WorkerType.DEV_WORKER: "Dev Worker",
            WorkerType.TASK_FIXER: "Task Fixer",
            WorkerType.PROJECT_DRIVER: "Project Driver",
        }[self]


class CriterionStatus(str, Enum):
    MET = "met"
    PARTIAL = "partial"
    NOT_MET = "not-met"


@dataclass
class Task:
    id: int | None = None
    title: str = ""
    tag: str = ""
    description: str = ""
    status: str = "pending"
    blocked_by: list[str] = field(default_factory=list)
    branch: str = ""
    attempts: int = 0
    error: str = ""
    duration: str = ""
    priority: int = 0
    created_at: str | None = None
    claimed_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None


@dataclass
class BacklogItem:
    text: str
    tag: str
    title: str
    status: str
    description: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    blocked: bool = False

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "tag": self.tag,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "blockedBy": list(self.blocked_by),
            "blocked": self.blocked,
        }


@dataclass
class Backlog:
    items: list[BacklogItem] = field(default_factory=list)
    pending_count: int = 0
    claimed_count: int = 0
    done_count: int = 0

    def to_dict(self, include_done: bool = True) -> dict:
        items = self.items if include_done else [
            i for i in self.items if i.status != "done"
        ]
        return {
            "items": [i.to_dict() for i in items],
            "pendingCount": self.pending_count,
            "claimedCount": self.claimed_count,
            "doneCount": self.done_count,
        }


@dataclass
class CompletedTask:
    date: str = ""
    task: str = ""
    branch: str = ""
    duration: str = ""
    notes: str = ""

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "task": self.task,
            "branch": self.branch,
            "duration": self.duration,
            "notes": self.notes,
        }


@dataclass
class FailedTask:
    date: str = ""
    task: str = ""
    branch: str = ""
    error: str = ""
    attempts: str = ""
    status: str = ""

    @property
    def is_pending(self) -> bool:
        """Not yet resolved: still failed, being fixed, or awaiting a fixer."""
        return (
            "pending" in self.status
            or self.status == "failed"
            or self.status.startswith("fixing-")
        )

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "task": self.task,
            "branch": self.branch,
            "error": self.error,
            "attempts": self.attempts,
            "status": self.status,
        }


@dataclass
class CurrentTask:
    status: str = "unknown"
    title: str | None = None
    branch: str | None = None
    started: str | None = None
    worker: str | None = None
    last_info: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "title": self.title,
            "branch": self.branch,
            "started": self.started,
            "worker": self.worker,
            "lastInfo": self.last_info,
        }


@dataclass
class Heartbeat:
    last_epoch: int | None = None
    age_ms: int | None = None
    is_stale: bool = False

    def to_dict(self) -> dict:
        return {
            "lastEpoch": self.last_epoch,
            "ageMs": self.age_ms,
            "isStale": self.is_stale,
        }


@dataclass
class Blocker:
    id: int | None = None
    description: str = ""
    status: str = "active"
    created_at: str | None = None
    resolved_at: str | None = None


@dataclass
class Event:
    epoch: int
    event: str
    detail: str = ""
    worker_id: int | None = None

    def to_dict(self) -> dict:
        ts = datetime.fromtimestamp(self.epoch, tz=timezone.utc)
        return {
            "ts": ts.isoformat().replace("+00:00", "Z"),
            "event": self.event,
            "worker": self.worker_id,
            "detail": self.detail,
        }


@dataclass
class RunningWorker:
    type: WorkerType
    id: int
    pid: int
    lock_path: str


@dataclass
class MissionResult:
    id: int
    criterion: str
    status: CriterionStatus
    evidence: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "criterion": self.criterion,
            "status": self.status.value,
            "evidence": self.evidence,
        }


def heartbeat_from_epoch(
    epoch: int | None, stale_minutes: int, now: float | None = None
) -> Heartbeat:
    if not epoch:
        return Heartbeat()
    now = time.time() if now is None else now
    age_ms = int((now - epoch) * 1000)
    return Heartbeat(
        last_epoch=epoch,
        age_ms=age_ms,
        is_stale=age_ms > stale_minutes * 60 * 1000,
    )
