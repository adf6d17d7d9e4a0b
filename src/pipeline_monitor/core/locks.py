"""Lock files: worker slot liveness probing and the backlog mutex."""

import logging
import os
import shutil
import time
from contextlib import contextmanager
from pathlib import Path

from pipeline_monitor.errors import LockedError

logger = logging.getLogger(__name__)

BACKLOG_LOCK_RETRIES = 30
BACKLOG_LOCK_INTERVAL = 0.1
STALE_LOCK_SECONDS = 30


def read_lock_pid(lock_path: str | Path) -> int | None:
    """Read the PID held by a lock.

    Directory locks keep the PID in ``<lock>/pid``; legacy locks are a
    single file containing the PID.
    """
    path = Path(lock_path)
    candidate = path / "pid" if path.is_dir() else path
    try:
        raw = candidate.read_text().strip()
    except OSError:
        return None
    if not raw.isdigit():
        return None
    pid = int(raw)
    return pid if pid > 0 else None


def is_pid_alive(pid: int | None) -> bool:
    """Signal-0 probe. Any failure, including EPERM, counts as not alive."""
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def lock_holder(lock_path: str | Path) -> int | None:
    """PID of the live process holding the lock, or None."""
    pid = read_lock_pid(lock_path)
    return pid if is_pid_alive(pid) else None


def lock_age_ms(lock_path: str | Path) -> int | None:
    try:
        mtime = Path(lock_path).stat().st_mtime
    except OSError:
        return None
    return int((time.time() - mtime) * 1000)


def remove_lock(lock_path: str | Path) -> None:
    """Remove a directory or legacy file lock. Missing locks are fine."""
    path = Path(lock_path)
    try:
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        pass


def _try_mkdir(lock_path: Path) -> bool:
    try:
        lock_path.mkdir()
        return True
    except FileExistsError:
        return False


def acquire_backlog_lock(
    lock_path: str | Path,
    retries: int = BACKLOG_LOCK_RETRIES,
    interval: float = BACKLOG_LOCK_INTERVAL,
) -> bool:
    """Acquire the backlog mutex with ``mkdir``.

    On the last attempt a lock older than STALE_LOCK_SECONDS is treated
    as abandoned, removed, and taken over if no one else wins the race.
    """
    path = Path(lock_path)
    for attempt in range(retries):
        if _try_mkdir(path):
            return True
        if attempt == retries - 1:
            age = lock_age_ms(path)
            if age is None or age > STALE_LOCK_SECONDS * 1000:
                if age is not None:
                    logger.warning("Removing stale backlog lock %s (%sms old)", path, age)
                    remove_lock(path)
                return _try_mkdir(path)
            return False
        time.sleep(interval)
    return False


def release_backlog_lock(lock_path: str | Path) -> None:
    try:
        remove_lock(lock_path)
    except OSError:
        logger.warning("Could not release backlog lock %s", lock_path)


@contextmanager
def backlog_lock(
    lock_path: str | Path,
    retries: int = BACKLOG_LOCK_RETRIES,
    interval: float = BACKLOG_LOCK_INTERVAL,
):
    """Hold the backlog mutex for the duration of the block.

    Raises LockedError when the lock cannot be acquired.
    """
    if not acquire_backlog_lock(lock_path, retries=retries, interval=interval):
        raise LockedError("Backlog is locked by another process")
    try:
        yield
    finally:
        release_backlog_lock(lock_path)
