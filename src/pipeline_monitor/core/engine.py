"""Composition root for the monitoring engine.

Every public operation returns an :class:`Envelope`; errors never escape
as exceptions. ``PipelineError`` subclasses map to their status code and
anything else becomes a 500 carrying the exception message.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from pipeline_monitor.config import Config
from pipeline_monitor.core import backlog, events, logs, trigger
from pipeline_monitor.core.files import FileStore
from pipeline_monitor.core.scaling import WorkerScalingManager
from pipeline_monitor.core.status import StatusAggregator
from pipeline_monitor.db.store import SqliteStore
from pipeline_monitor.errors import PipelineError

logger = logging.getLogger(__name__)


@dataclass
class Envelope:
    data: Any = None
    error: str | None = None
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {"data": self.data, "error": self.error}


def run_operation(fn: Callable, *args, **kwargs) -> Envelope:
    try:
        return Envelope(data=fn(*args, **kwargs))
    except PipelineError as e:
        return Envelope(error=str(e), status_code=e.status_code)
    except Exception as e:
        logger.exception("Unexpected error in %s", getattr(fn, "__name__", fn))
        return Envelope(error=str(e), status_code=500)


class PipelineMonitor:
    """Wires the stores, scaling manager and aggregator for one process.

    The SQLite store is owned here and must be released with ``close()``.
    """

    def __init__(self, config: Config, store: SqliteStore | None = None):
        self.config = config
        self.files = FileStore(config.dev_dir, config.stale_minutes)
        self.store = store if store is not None else SqliteStore(config.db_path, config.stale_minutes)
        self.scaling = WorkerScalingManager(config, self.files, self.store)
        self.aggregator = StatusAggregator(config, self.store, self.files, self.scaling)

    def close(self) -> None:
        self.store.close()

    def get_status(self) -> Envelope:
        return run_operation(self.aggregator.get_status)

    def list_worker_counts(self) -> Envelope:
        return run_operation(self.scaling.list_counts)

    def scale(self, worker_type, count) -> Envelope:
        def _scale():
            return self.scaling.scale(worker_type, count).to_dict()

        return run_operation(_scale)

    def list_backlog(self) -> Envelope:
        return run_operation(backlog.list_backlog, self.files)

    def add_task(self, tag, title, description=None, position="top", blocked_by=None) -> Envelope:
        return run_operation(
            backlog.add_task,
            self.config,
            self.files,
            self.store,
            tag,
            title,
            description,
            position,
            blocked_by,
        )

    def trigger_script(self, script, args=None) -> Envelope:
        return run_operation(trigger.trigger_script, self.config, script, args)

    def list_events(self, limit=events.MAX_EVENTS) -> Envelope:
        return run_operation(events.list_events, self.files, self.store, limit)

    def get_logs(self, script, lines=logs.DEFAULT_LINES, search=None) -> Envelope:
        return run_operation(logs.read_log, self.config, script, lines, search)
