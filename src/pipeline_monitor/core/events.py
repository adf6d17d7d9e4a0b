"""Activity feed read from the active backend."""

import logging

from pipeline_monitor.core.files import FileStore
from pipeline_monitor.db.store import SqliteStore
from pipeline_monitor.errors import StoreUnavailable, ValidationError

logger = logging.getLogger(__name__)

MAX_EVENTS = 100


def list_events(files: FileStore, store: SqliteStore | None = None, limit=MAX_EVENTS) -> dict:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError("limit must be a positive integer")
    limit = min(limit, MAX_EVENTS)

    source = files
    if store is not None:
        try:
            store.probe()
            source = store
        except StoreUnavailable as e:
            logger.warning("Structured backend unavailable, using events.log: %s", e)

    events = source.get_events(limit)
    return {"events": [e.to_dict() for e in events], "count": len(events)}
