"""Tests for the CLI."""

import json
import os
import subprocess

import pytest
from click.testing import CliRunner

from pipeline_monitor.cli import main

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


@pytest.fixture
def cli_env(config):
    """Point the CLI at an isolated project that is a git repository."""
    repo = config.project_dir
    subprocess.run(["git", "init"], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "checkout", "-b", "main"], cwd=repo, capture_output=True, check=True)
    (repo / "README.md").write_text("# Test")
    subprocess.run(["git", "add", "README.md"], cwd=repo, capture_output=True, check=True)
    subprocess.run(
        ["git", "commit", "-m", "init"],
        cwd=repo,
        capture_output=True,
        check=True,
        env={**os.environ, **GIT_ENV},
    )
    return {"PM_PROJECT_DIR": str(repo), "PM_LOCK_PREFIX": config.lock_prefix}


@pytest.fixture
def runner():
    return CliRunner()


def _invoke(runner, env, *args):
    return runner.invoke(main, list(args), env=env)


class TestStatus:
    def test_summary(self, runner, cli_env):
        result = _invoke(runner, cli_env, "status")
        assert result.exit_code == 0, result.output
        assert "Health: 100/100" in result.output
        assert "Dev Worker 1" in result.output
        assert "Git: main" in result.output

    def test_json(self, runner, cli_env):
        result = _invoke(runner, cli_env, "status", "--json")
        assert result.exit_code == 0
        snap = json.loads(result.stdout)
        assert snap["backend"] == "files"
        assert snap["git"]["branch"] == "main"
        assert snap["git"]["lastCommit"].endswith("init")


class TestTaskCommands:
    def test_add_and_list(self, runner, cli_env, write_dev):
        write_dev("backlog.md", "# Backlog\n\n- [ ] [FEAT] Existing\n")
        result = _invoke(runner, cli_env, "task", "add", "New thing", "--tag", "FIX", "--position", "bottom")
        assert result.exit_code == 0, result.output
        assert "Added at bottom: - [ ] [FIX] New thing" in result.output

        listed = _invoke(runner, cli_env, "task", "list")
        lines = listed.output.strip().split("\n")
        assert "Existing" in lines[0]
        assert "New thing" in lines[1]
        assert lines[-1] == "2 pending, 0 claimed, 0 done"

    def test_add_with_blockers(self, runner, cli_env, write_dev):
        path = write_dev("backlog.md", "# Backlog\n\n- [ ] [FEAT] Existing\n")
        _invoke(runner, cli_env, "task", "add", "Later", "-t", "FEAT", "--blocked-by", "Existing, Other")
        assert "- [ ] [FEAT] Later | blockedBy: Existing, Other" in path.read_text()

    def test_add_bad_tag(self, runner, cli_env, write_dev):
        write_dev("backlog.md", "# Backlog\n")
        result = _invoke(runner, cli_env, "task", "add", "X", "--tag", "CHORE")
        assert result.exit_code == 1
        assert "Invalid tag" in result.output

    def test_list_missing_backlog(self, runner, cli_env):
        result = _invoke(runner, cli_env, "task", "list")
        assert result.exit_code == 1
        assert "Backlog not found" in result.output


class TestWorkerCommands:
    def test_workers(self, runner, cli_env):
        result = _invoke(runner, cli_env, "workers")
        assert result.exit_code == 0
        assert "Dev Worker: 0/4" in result.output
        assert "Task Fixer: 0/3" in result.output
        assert "Project Driver: 0/1" in result.output

    def test_scale_rejects_out_of_range(self, runner, cli_env):
        result = _invoke(runner, cli_env, "scale", "dev-worker", "9")
        assert result.exit_code == 1
        assert "between 0 and 4" in result.output

    def test_scale_noop(self, runner, cli_env):
        result = _invoke(runner, cli_env, "scale", "project-driver", "0")
        assert result.exit_code == 0
        assert "project-driver: 0 -> 0 (max 1)" in result.output


class TestLogsAndEvents:
    def test_logs(self, runner, cli_env, config):
        (config.scripts_dir / "watchdog.log").write_text("one\ntwo\nthree\n")
        result = _invoke(runner, cli_env, "logs", "watchdog", "-n", "2")
        assert result.output.split("\n")[:2] == ["two", "three"]

    def test_events(self, runner, cli_env, write_dev):
        write_dev("events.log", "0|boot|Worker 1: up\n")
        result = _invoke(runner, cli_env, "events")
        assert "[1970-01-01T00:00:00Z] boot (worker 1): Worker 1: up" in result.output

    def test_trigger_not_allowed(self, runner, cli_env):
        result = _invoke(runner, cli_env, "trigger", "deploy")
        assert result.exit_code == 1
        assert "Invalid script" in result.output
