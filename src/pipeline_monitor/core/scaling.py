"""Worker scaling: count live worker slots, spawn and terminate workers.

Two concurrent ``scale`` calls for the same worker type each read the
running count from the lock files independently and can both act on a
stale count. The end state then matches neither caller. There is no
per-type operation lock; callers that need one must serialize requests.
"""

import logging
import os
import re
import signal
import sqlite3
import subprocess
from dataclasses import dataclass
from pathlib import Path

from pipeline_monitor.config import Config
from pipeline_monitor.core import locks
from pipeline_monitor.core.files import FileStore
from pipeline_monitor.db.models import CurrentTask, RunningWorker, WorkerType
from pipeline_monitor.db.store import SqliteStore
from pipeline_monitor.errors import StoreUnavailable, ValidationError

logger = logging.getLogger(__name__)

_WORKER_TYPE_RE = re.compile(r"^[a-z0-9-]+$")


@dataclass
class ScaleResult:
    worker_type: WorkerType
    previous_count: int
    current_count: int
    max_count: int
    spawned_pids: list[int]
    killed_pids: list[int]

    def to_dict(self) -> dict:
        return {
            "workerType": self.worker_type.value,
            "previousCount": self.previous_count,
            "currentCount": self.current_count,
            "maxCount": self.max_count,
        }


def parse_worker_type(value) -> WorkerType:
    allowed = ", ".join(t.value for t in WorkerType)
    if not isinstance(value, str) or not _WORKER_TYPE_RE.match(value):
        raise ValidationError(f"Invalid workerType. Allowed: {allowed}")
    try:
        return WorkerType(value)
    except ValueError:
        raise ValidationError(f"Invalid workerType. Allowed: {allowed}") from None


class WorkerScalingManager:
    """Discovers running workers through their locks and scales them."""

    def __init__(
        self,
        config: Config,
        files: FileStore | None = None,
        store: SqliteStore | None = None,
    ):
        self.config = config
        self.files = files or FileStore(config.dev_dir, config.stale_minutes)
        self.store = store

    # ── Slot naming ──────────────────────────────────────────────────────

    def max_for_type(self, worker_type: WorkerType) -> int:
        if worker_type is WorkerType.DEV_WORKER:
            return self.config.max_workers
        if worker_type is WorkerType.TASK_FIXER:
            return self.config.max_fixers
        return 1

    def slot_name(self, worker_type: WorkerType, slot_id: int) -> str:
        """Process name of a slot: ``dev-worker-N``, ``task-fixer[-N]``, ``project-driver``."""
        if worker_type is WorkerType.DEV_WORKER:
            return f"dev-worker-{slot_id}"
        if worker_type is WorkerType.TASK_FIXER and slot_id > 1:
            return f"task-fixer-{slot_id}"
        return worker_type.value

    def lock_path(self, worker_type: WorkerType, slot_id: int) -> Path:
        return Path(f"{self.config.lock_prefix}-{self.slot_name(worker_type, slot_id)}.lock")

    def log_path(self, worker_type: WorkerType, slot_id: int) -> Path:
        return self.config.scripts_dir / f"{self.slot_name(worker_type, slot_id)}.log"

    def script_path(self, worker_type: WorkerType) -> Path:
        return self.config.scripts_dir / f"{worker_type.value}.sh"

    # ── Discovery ────────────────────────────────────────────────────────

    def get_running(self, worker_type: WorkerType) -> list[RunningWorker]:
        running = []
        for slot_id in range(1, self.max_for_type(worker_type) + 1):
            lock = self.lock_path(worker_type, slot_id)
            pid = locks.lock_holder(lock)
            if pid is not None:
                running.append(RunningWorker(worker_type, slot_id, pid, str(lock)))
        return running

    def list_counts(self) -> list[dict]:
        counts = []
        for worker_type in WorkerType:
            running = self.get_running(worker_type)
            counts.append({
                "type": worker_type.value,
                "label": worker_type.label,
                "count": len(running),
                "maxCount": self.max_for_type(worker_type),
                "pids": [r.pid for r in running],
            })
        return counts

    # ── Scaling ──────────────────────────────────────────────────────────

    def scale(self, worker_type, count) -> ScaleResult:
        """Spawn or terminate workers until ``count`` instances run."""
        worker_type = parse_worker_type(worker_type)
        max_count = self.max_for_type(worker_type)
        if isinstance(count, bool) or not isinstance(count, int) or not 0 <= count <= max_count:
            raise ValidationError(f"count must be an integer between 0 and {max_count}")

        running = self.get_running(worker_type)
        delta = count - len(running)
        spawned: list[int] = []
        killed: list[int] = []

        if delta > 0:
            used = {r.id for r in running}
            for _ in range(delta):
                slot_id = 1
                while slot_id in used:
                    slot_id += 1
                used.add(slot_id)
                spawned.append(self._spawn(worker_type, slot_id))
        elif delta < 0:
            newest_first = sorted(running, key=lambda r: r.id, reverse=True)
            for instance in newest_first[:-delta]:
                self._terminate(instance)
                killed.append(instance.pid)

        return ScaleResult(worker_type, len(running), count, max_count, spawned, killed)

    def _reset_stale_task(self, slot_id: int) -> None:
        """Mark a leftover in-progress task idle; a worker that sees one exits."""
        current = self.files.get_current_task(slot_id)
        if current is not None and current.status == "in_progress":
            logger.info("Resetting stale in-progress task for worker %s", slot_id)
            self.files.set_current_task(slot_id, CurrentTask(status="idle"))
        if self.store is None:
            return
        try:
            stored = self.store.get_current_task(slot_id)
            if stored is not None and stored.status == "in_progress":
                self.store.set_current_task(slot_id, CurrentTask(status="idle"))
        except (StoreUnavailable, sqlite3.Error) as e:
            logger.debug("Skipping database task reset for worker %s: %s", slot_id, e)

    def _spawn(self, worker_type: WorkerType, slot_id: int) -> int:
        if worker_type is WorkerType.DEV_WORKER:
            self._reset_stale_task(slot_id)

        cmd = ["bash", str(self.script_path(worker_type))]
        if worker_type is not WorkerType.PROJECT_DRIVER:
            cmd.append(str(slot_id))

        log_path = self.log_path(worker_type, slot_id)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            proc = subprocess.Popen(
                cmd,
                cwd=self.config.project_dir,
                stdin=subprocess.DEVNULL,
                stdout=f,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        logger.info("Spawned %s (PID %s)", self.slot_name(worker_type, slot_id), proc.pid)
        return proc.pid

    def _terminate(self, instance: RunningWorker) -> None:
        try:
            os.kill(instance.pid, signal.SIGTERM)
        except OSError:
            pass  # Already exited
        logger.info(
            "Terminated %s (PID %s)",
            self.slot_name(instance.type, instance.id), instance.pid,
        )

        try:
            locks.remove_lock(instance.lock_path)
        except OSError:
            pass  # Removed by the worker's exit trap

        if instance.type is WorkerType.DEV_WORKER:
            try:
                self.files.heartbeat_path(instance.id).unlink(missing_ok=True)
            except OSError:
                pass
