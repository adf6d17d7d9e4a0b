"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TASK_TAGS = ["FEAT", "FIX", "INFRA", "TEST", "NMI"]
DEFAULT_TRIGGERABLE_SCRIPTS = [
    "dev-worker",
    "task-fixer",
    "project-driver",
    "sync-runner",
    "health-check",
    "watchdog",
]


def _split_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class Config:
    project_dir: Path = field(default_factory=lambda: Path.cwd())
    dev_dir: Path | None = None
    scripts_dir: Path | None = None
    db_path: Path | None = None
    lock_prefix: str = "/tmp/pipeline-monitor"
    max_workers: int = 4
    max_fixers: int = 3
    stale_minutes: int = 45
    task_tags: list[str] = field(default_factory=lambda: list(DEFAULT_TASK_TAGS))
    triggerable_scripts: list[str] = field(
        default_factory=lambda: list(DEFAULT_TRIGGERABLE_SCRIPTS)
    )
    auth_token_cache: Path | None = None
    auth_fail_flag: Path | None = None
    handlers_dir: Path | None = None
    agents_dir: Path | None = None

    def __post_init__(self):
        if self.dev_dir is None:
            self.dev_dir = self.project_dir / ".dev"
        if self.scripts_dir is None:
            self.scripts_dir = self.dev_dir / "scripts"
        if self.db_path is None:
            self.db_path = self.dev_dir / "pipeline.db"
        if self.auth_token_cache is None:
            self.auth_token_cache = Path(f"{self.lock_prefix}-claude-token")
        if self.auth_fail_flag is None:
            self.auth_fail_flag = Path(f"{self.lock_prefix}-auth-failed")
        if self.handlers_dir is None:
            self.handlers_dir = self.project_dir / "src" / "handlers"
        if self.agents_dir is None:
            self.agents_dir = self.scripts_dir / "agents"

    @property
    def backlog_lock_path(self) -> Path:
        return Path(f"{self.lock_prefix}-backlog.lock")

    @classmethod
    def from_env(cls) -> "Config":
        kwargs: dict = {}

        if project := os.environ.get("PM_PROJECT_DIR"):
            kwargs["project_dir"] = Path(project)

        if dev_dir := os.environ.get("PM_DEV_DIR"):
            kwargs["dev_dir"] = Path(dev_dir)

        if scripts := os.environ.get("PM_SCRIPTS_DIR"):
            kwargs["scripts_dir"] = Path(scripts)

        if db := os.environ.get("PM_DB_PATH"):
            kwargs["db_path"] = Path(db)

        if prefix := os.environ.get("PM_LOCK_PREFIX"):
            kwargs["lock_prefix"] = prefix

        if max_workers := os.environ.get("PM_MAX_WORKERS"):
            kwargs["max_workers"] = int(max_workers)

        if max_fixers := os.environ.get("PM_MAX_FIXERS"):
            kwargs["max_fixers"] = int(max_fixers)

        if stale := os.environ.get("PM_STALE_MINUTES"):
            kwargs["stale_minutes"] = int(stale)

        if tags := os.environ.get("PM_TASK_TAGS"):
            kwargs["task_tags"] = _split_list(tags)

        if scripts_allowed := os.environ.get("PM_TRIGGERABLE_SCRIPTS"):
            kwargs["triggerable_scripts"] = _split_list(scripts_allowed)

        if token_cache := os.environ.get("PM_AUTH_TOKEN_CACHE"):
            kwargs["auth_token_cache"] = Path(token_cache)

        if fail_flag := os.environ.get("PM_AUTH_FAIL_FLAG"):
            kwargs["auth_fail_flag"] = Path(fail_flag)

        if handlers := os.environ.get("PM_HANDLERS_DIR"):
            kwargs["handlers_dir"] = Path(handlers)

        if agents := os.environ.get("PM_AGENTS_DIR"):
            kwargs["agents_dir"] = Path(agents)

        return cls(**kwargs)


def get_config() -> Config:
    return Config.from_env()
