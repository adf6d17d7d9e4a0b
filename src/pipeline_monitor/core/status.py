"""Status aggregation: one canonical snapshot of the whole pipeline."""

import base64
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pipeline_monitor.config import Config
from pipeline_monitor.core import locks, logs, markdown, mission
from pipeline_monitor.core.files import FileStore
from pipeline_monitor.core.scaling import WorkerScalingManager
from pipeline_monitor.db.models import CurrentTask, FailedTask, Heartbeat, WorkerType
from pipeline_monitor.db.store import SqliteStore, StateStore
from pipeline_monitor.errors import StoreUnavailable
from pipeline_monitor.integrations.git import git_summary

logger = logging.getLogger(__name__)

STALE_TASK_AGE = timedelta(hours=24)


# ── Scoring ──────────────────────────────────────────────────────────────────


def calculate_health_score(
    failed_pending: int,
    blockers: int,
    stale_heartbeats: int,
    stale_tasks: int,
) -> int:
    """100 minus 5 per pending failure, 10 per blocker, 2 per stale
    heartbeat and 1 per task in progress for over a day, clamped to 0..100."""
    score = 100 - failed_pending * 5 - blockers * 10 - stale_heartbeats * 2 - stale_tasks
    return max(0, min(100, score))


@dataclass
class SelfCorrectionStats:
    fixed: int = 0
    blocked: int = 0
    superseded: int = 0
    pending: int = 0

    @property
    def self_corrected(self) -> int:
        return self.fixed + self.superseded

    @property
    def resolved(self) -> int:
        return self.self_corrected + self.blocked

    @property
    def rate(self) -> int:
        """Share of resolved failures fixed or routed around; pending ones don't count."""
        if self.resolved == 0:
            return 0
        return int(100 * self.self_corrected / self.resolved + 0.5)

    def to_dict(self) -> dict:
        return {
            "fixed": self.fixed,
            "blocked": self.blocked,
            "superseded": self.superseded,
            "pending": self.pending,
            "selfCorrected": self.self_corrected,
        }


def self_correction_stats(failed: list[FailedTask]) -> SelfCorrectionStats:
    stats = SelfCorrectionStats()
    for task in failed:
        if task.status == "fixed":
            stats.fixed += 1
        elif task.status == "blocked":
            stats.blocked += 1
        elif task.status == "superseded":
            stats.superseded += 1
        elif task.is_pending:
            stats.pending += 1
    return stats


def _parse_started(value: str) -> datetime | None:
    value = value.strip()
    # fromisoformat only accepts a trailing Z from Python 3.11 on.
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def count_stale_tasks(current_tasks: dict[str, CurrentTask], now: datetime | None = None) -> int:
    count = 0
    for task in current_tasks.values():
        if task.status != "in_progress" or not task.started:
            continue
        started = _parse_started(task.started)
        if started is None:
            continue
        reference = now or (datetime.now(timezone.utc) if started.tzinfo else datetime.now())
        if started.tzinfo is None and reference.tzinfo is not None:
            reference = reference.replace(tzinfo=None)
        elif started.tzinfo is not None and reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        if reference - started > STALE_TASK_AGE:
            count += 1
    return count


# ── Backend reconciliation ───────────────────────────────────────────────────


def merge_current_tasks(
    primary: dict[str, CurrentTask], fallback: dict[str, CurrentTask]
) -> dict[str, CurrentTask]:
    """Union keyed by worker, the primary backend winning on conflicts."""
    merged = dict(fallback)
    merged.update(primary)
    return dict(sorted(merged.items(), key=lambda kv: int(kv[0].rsplit("-", 1)[-1])))


def merge_heartbeats(
    primary: dict[str, Heartbeat], fallback: dict[str, Heartbeat]
) -> dict[str, Heartbeat]:
    """Per worker, take the primary heartbeat unless it has no epoch."""
    merged = {}
    for key in list(primary) + [k for k in fallback if k not in primary]:
        hb = primary.get(key)
        merged[key] = hb if hb is not None and hb.last_epoch is not None else fallback.get(key, Heartbeat())
    return merged


# ── Auth ─────────────────────────────────────────────────────────────────────


def decode_jwt_exp(token: str) -> int | None:
    """Read the ``exp`` claim of a JWT without verifying it.

    Only used to report remaining lifetime, never for authorization.
    """
    parts = token.strip().split(".")
    if len(parts) != 3:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (ValueError, TypeError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    return int(exp) if isinstance(exp, (int, float)) else None


def auth_status(token_cache: Path, fail_flag: Path) -> dict:
    now = time.time()
    token_cached = token_cache.exists()
    age_ms = None
    expires_at = None
    expires_in_ms = None
    if token_cached:
        try:
            age_ms = int((now - token_cache.stat().st_mtime) * 1000)
            exp = decode_jwt_exp(token_cache.read_text(encoding="utf-8", errors="replace"))
        except OSError:
            exp = None
        if exp is not None:
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc).isoformat()
            expires_in_ms = int((exp - now) * 1000)

    auth_failed = fail_flag.exists()
    last_fail_epoch = None
    if auth_failed:
        try:
            raw = fail_flag.read_text().strip()
            last_fail_epoch = int(raw) if raw.isdigit() else None
        except OSError:
            pass

    return {
        "tokenCached": token_cached,
        "tokenCacheAgeMs": age_ms,
        "tokenExpiresAt": expires_at,
        "tokenExpiresInMs": expires_in_ms,
        "authFailFlag": auth_failed,
        "lastFailEpoch": last_fail_epoch,
    }


def post_commit_gate(log_line: str | None) -> dict:
    result = None
    commit = None
    if log_line:
        upper = log_line.upper()
        result = "pass" if "PASS" in upper else "fail" if "FAIL" in upper else "unknown"
        match = re.search(r"\b([0-9a-f]{7,40})\b", log_line)
        commit = match.group(1) if match else None
    return {
        "lastResult": result,
        "lastCommit": commit,
        "lastTime": markdown.extract_timestamp(log_line),
    }


# ── Aggregator ───────────────────────────────────────────────────────────────


class StatusAggregator:
    """Builds the status snapshot from whichever backend is usable."""

    def __init__(
        self,
        config: Config,
        store: SqliteStore | None = None,
        files: FileStore | None = None,
        scaling: WorkerScalingManager | None = None,
    ):
        self.config = config
        self.store = store
        self.files = files or FileStore(config.dev_dir, config.stale_minutes)
        self.scaling = scaling or WorkerScalingManager(config, self.files, store)

    def active_store(self) -> StateStore:
        """The SQLite store if it opens and answers a probe, else the files.

        Decided per call; a failed probe does not disable SQLite for later calls.
        """
        if self.store is None:
            return self.files
        try:
            self.store.probe()
            return self.store
        except StoreUnavailable as e:
            logger.warning("Structured backend unavailable, using files: %s", e)
            return self.files

    def current_tasks(self, store: StateStore) -> dict[str, CurrentTask]:
        max_workers = self.config.max_workers
        tasks = store.get_current_tasks(max_workers)
        if store is not self.files:
            tasks = merge_current_tasks(tasks, self.files.get_current_tasks(max_workers))
        return tasks

    def heartbeats(self, store: StateStore) -> dict[str, Heartbeat]:
        max_workers = self.config.max_workers
        heartbeats = store.get_heartbeats(max_workers)
        if store is not self.files:
            heartbeats = merge_heartbeats(heartbeats, self.files.get_heartbeats(max_workers))
        return heartbeats

    def worker_roster(
        self,
        current_tasks: dict[str, CurrentTask],
        heartbeats: dict[str, Heartbeat],
    ) -> list[dict]:
        roster = []
        for worker_type in WorkerType:
            max_count = self.scaling.max_for_type(worker_type)
            for slot_id in range(1, max_count + 1):
                name = self.scaling.slot_name(worker_type, slot_id)
                lock = self.scaling.lock_path(worker_type, slot_id)
                pid = locks.lock_holder(lock)
                last_log = logs.last_log_line(logs.log_path(self.config, name))
                key = f"worker-{slot_id}"
                is_dev = worker_type is WorkerType.DEV_WORKER
                task = current_tasks.get(key) if is_dev else None
                heartbeat = heartbeats.get(key) if is_dev else None
                if task is not None:
                    status = task.status
                else:
                    status = "idle" if pid is not None else "unknown"
                roster.append({
                    "name": name,
                    "type": worker_type.value,
                    "id": slot_id,
                    "label": worker_type.label if max_count == 1 else f"{worker_type.label} {slot_id}",
                    "running": pid is not None,
                    "pid": pid,
                    "lockPath": str(lock),
                    "ageMs": locks.lock_age_ms(lock) if pid is not None else None,
                    "lastLog": last_log,
                    "lastLogTime": markdown.extract_timestamp(last_log),
                    "heartbeatEpoch": heartbeat.last_epoch if heartbeat else None,
                    "status": status,
                })
        return roster

    def mission_progress(self, completed_count: int, stats: SelfCorrectionStats) -> list[dict]:
        raw = self.files.read("mission.md")
        if not raw:
            return []
        ctx = mission.MissionContext(
            handler_count=mission.count_files(self.config.handlers_dir, (".py", ".ts", ".js")),
            self_correction_rate=stats.rate,
            resolved_failures=stats.resolved,
            watchdog_issues=mission.count_watchdog_issues(self.config.scripts_dir / "watchdog.log"),
            completed_count=completed_count,
            agent_count=mission.count_files(self.config.agents_dir, (".sh", ".py")),
        )
        return [r.to_dict() for r in mission.evaluate_mission(raw, ctx)]

    def get_status(self) -> dict:
        store = self.active_store()

        current_tasks = self.current_tasks(store)
        heartbeats = self.heartbeats(store)
        backlog = store.get_backlog()
        completed = store.get_completed()
        completed_count = store.get_completed_count()
        failed = store.get_failed()
        blocker_lines = store.get_blocker_lines()

        failed_pending = sum(1 for f in failed if f.is_pending)
        stats = self_correction_stats(failed)
        health = calculate_health_score(
            failed_pending=failed_pending,
            blockers=len(blocker_lines),
            stale_heartbeats=sum(1 for hb in heartbeats.values() if hb.is_stale),
            stale_tasks=count_stale_tasks(current_tasks),
        )
        legacy_task = self.files.get_legacy_current_task() or CurrentTask()

        return {
            "backend": store.name,
            "workers": self.worker_roster(current_tasks, heartbeats),
            "currentTask": legacy_task.to_dict(),
            "currentTasks": {k: t.to_dict() for k, t in current_tasks.items()},
            "heartbeats": {k: hb.to_dict() for k, hb in heartbeats.items()},
            "backlog": backlog.to_dict(),
            "completed": [c.to_dict() for c in completed],
            "completedCount": completed_count,
            "averageTaskDuration": store.get_average_task_duration(),
            "failed": [f.to_dict() for f in failed],
            "failedPendingCount": failed_pending,
            "hasBlockers": bool(blocker_lines),
            "blockerLines": blocker_lines,
            "healthScore": health,
            "selfCorrectionRate": stats.rate,
            "selfCorrectionStats": stats.to_dict(),
            "syncHealth": markdown.parse_sync_health(self.files.read("sync-health.md")),
            "auth": auth_status(self.config.auth_token_cache, self.config.auth_fail_flag),
            "backlogLocked": self.config.backlog_lock_path.exists(),
            "git": git_summary(self.config.project_dir).to_dict(),
            "postCommitGate": post_commit_gate(
                logs.last_log_line(logs.log_path(self.config, "post-commit-gate"))
            ),
            "missionProgress": self.mission_progress(completed_count, stats),
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
