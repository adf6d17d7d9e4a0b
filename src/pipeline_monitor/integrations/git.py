"""Git subprocess wrappers for the repository summary in the status snapshot."""

import subprocess
from dataclasses import dataclass
from pathlib import Path

GIT_TIMEOUT = 3


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class GitSummary:
    branch: str = "unknown"
    commits_ahead: int = 0
    dirty_files: int = 0
    last_commit: str | None = None

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "commitsAhead": self.commits_ahead,
            "dirtyFiles": self.dirty_files,
            "lastCommit": self.last_commit,
        }


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=GIT_TIMEOUT,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except (subprocess.TimeoutExpired, OSError) as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


def get_current_branch(cwd: str | Path) -> str:
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def count_commits_ahead(cwd: str | Path, upstream: str = "origin/main") -> int:
    try:
        return int(run_git(["rev-list", "--count", f"{upstream}..HEAD"], cwd=cwd) or 0)
    except (GitError, ValueError):
        return 0


def count_dirty_files(cwd: str | Path) -> int:
    output = run_git(["status", "--porcelain"], cwd=cwd)
    return len(output.split("\n")) if output else 0


def get_last_commit(cwd: str | Path) -> str | None:
    try:
        return run_git(["log", "-1", "--format=%H %s"], cwd=cwd) or None
    except GitError:
        return None


def git_summary(cwd: str | Path) -> GitSummary:
    """Best-effort repository summary; failures leave the defaults."""
    summary = GitSummary()
    try:
        summary.branch = get_current_branch(cwd)
        summary.commits_ahead = count_commits_ahead(cwd)
        summary.dirty_files = count_dirty_files(cwd)
        summary.last_commit = get_last_commit(cwd)
    except GitError:
        pass
    return summary
