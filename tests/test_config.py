"""Tests for environment-driven configuration."""

from pathlib import Path

from pipeline_monitor.config import Config


class TestConfig:
    def test_defaults_derive_from_project_dir(self, tmp_path):
        config = Config(project_dir=tmp_path)
        assert config.dev_dir == tmp_path / ".dev"
        assert config.scripts_dir == tmp_path / ".dev" / "scripts"
        assert config.db_path == tmp_path / ".dev" / "pipeline.db"
        assert config.max_workers == 4
        assert config.max_fixers == 3
        assert config.backlog_lock_path == Path("/tmp/pipeline-monitor-backlog.lock")

    def test_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PM_PROJECT_DIR", str(tmp_path))
        monkeypatch.setenv("PM_LOCK_PREFIX", "/run/pm")
        monkeypatch.setenv("PM_MAX_WORKERS", "2")
        monkeypatch.setenv("PM_TASK_TAGS", "FEAT, BUG ,")
        config = Config.from_env()
        assert config.project_dir == tmp_path
        assert config.max_workers == 2
        assert config.task_tags == ["FEAT", "BUG"]
        assert config.auth_fail_flag == Path("/run/pm-auth-failed")
        assert config.auth_token_cache == Path("/run/pm-claude-token")
