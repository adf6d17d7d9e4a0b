"""Shared fixtures: an isolated project directory and lock namespace."""

from pathlib import Path

import pytest

from pipeline_monitor.config import Config
from pipeline_monitor.core.files import FileStore


@pytest.fixture
def config(tmp_path):
    project = tmp_path / "project"
    (project / ".dev" / "scripts").mkdir(parents=True)
    (tmp_path / "locks").mkdir()
    return Config(project_dir=project, lock_prefix=str(tmp_path / "locks" / "pm"))


@pytest.fixture
def files(config):
    return FileStore(config.dev_dir, config.stale_minutes)


@pytest.fixture
def write_dev(config):
    """Write a file under the dev directory."""

    def _write(name: str, content: str) -> Path:
        path = config.dev_dir / name
        path.write_text(content)
        return path

    return _write
