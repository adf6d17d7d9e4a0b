"""Tests for lock probing and the backlog mutex."""

import os
from unittest.mock import patch

import pytest

from pipeline_monitor.core import locks
from pipeline_monitor.errors import LockedError

from helpers import age_path, make_lock


class TestReadLockPid:
    def test_directory_lock(self, tmp_path):
        lock = make_lock(tmp_path / "w.lock", 1234)
        assert locks.read_lock_pid(lock) == 1234

    def test_legacy_file_lock(self, tmp_path):
        lock = tmp_path / "w.lock"
        lock.write_text("5678")
        assert locks.read_lock_pid(lock) == 5678

    def test_garbage_and_zero(self, tmp_path):
        garbage = tmp_path / "a.lock"
        garbage.write_text("not a pid")
        zero = tmp_path / "b.lock"
        zero.write_text("0")
        assert locks.read_lock_pid(garbage) is None
        assert locks.read_lock_pid(zero) is None

    def test_missing(self, tmp_path):
        assert locks.read_lock_pid(tmp_path / "nope.lock") is None
        assert locks.read_lock_pid(tmp_path) is None


class TestLiveness:
    def test_own_process_is_alive(self):
        assert locks.is_pid_alive(os.getpid())

    def test_none_is_not_alive(self):
        assert not locks.is_pid_alive(None)

    def test_no_such_process(self):
        with patch("os.kill", side_effect=ProcessLookupError):
            assert not locks.is_pid_alive(99999)

    def test_permission_error_counts_as_dead(self):
        with patch("os.kill", side_effect=PermissionError):
            assert not locks.is_pid_alive(1)

    def test_lock_holder(self, tmp_path):
        live = make_lock(tmp_path / "live.lock", os.getpid())
        dead = make_lock(tmp_path / "dead.lock", 424242)
        with patch.object(locks, "is_pid_alive", side_effect=lambda pid: pid == os.getpid()):
            assert locks.lock_holder(live) == os.getpid()
            assert locks.lock_holder(dead) is None

    def test_remove_lock(self, tmp_path):
        lock = make_lock(tmp_path / "w.lock", 1)
        locks.remove_lock(lock)
        assert not lock.exists()
        locks.remove_lock(lock)  # already gone


class TestBacklogLock:
    def test_acquire_and_release(self, tmp_path):
        path = tmp_path / "backlog.lock"
        with locks.backlog_lock(path):
            assert path.is_dir()
        assert not path.exists()

    def test_contention_raises_locked(self, tmp_path):
        path = tmp_path / "backlog.lock"
        path.mkdir()
        with pytest.raises(LockedError):
            with locks.backlog_lock(path, retries=3, interval=0):
                pass
        assert path.exists()

    def test_retries_sleep_between_attempts(self, tmp_path):
        path = tmp_path / "backlog.lock"
        path.mkdir()
        with patch("pipeline_monitor.core.locks.time.sleep") as sleep:
            assert not locks.acquire_backlog_lock(path)
        assert sleep.call_count == locks.BACKLOG_LOCK_RETRIES - 1
        sleep.assert_called_with(locks.BACKLOG_LOCK_INTERVAL)

    def test_stale_lock_is_taken_over(self, tmp_path):
        path = tmp_path / "backlog.lock"
        path.mkdir()
        age_path(path, locks.STALE_LOCK_SECONDS + 5)
        assert locks.acquire_backlog_lock(path, retries=2, interval=0)
        assert locks.lock_age_ms(path) < 5000

    def test_released_when_body_fails(self, tmp_path):
        path = tmp_path / "backlog.lock"
        with pytest.raises(RuntimeError):
            with locks.backlog_lock(path):
                raise RuntimeError("write failed")
        assert not path.exists()
