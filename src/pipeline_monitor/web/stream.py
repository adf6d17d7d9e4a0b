"""Server-sent status updates driven by changes in the state directory.

The watchdog observer runs on its own thread; its callbacks hop onto the
event loop with ``call_soon_threadsafe`` and every timer lives on the
loop, so cancelling the consuming task tears everything down in one
``finally`` block.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import AsyncIterator, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.5
HEARTBEAT_SECONDS = 30.0
WATCH_CHECK_SECONDS = 1.0
HEARTBEAT_FRAME = ": heartbeat\n\n"

_PUSH = "push"
_HEARTBEAT = "heartbeat"
_ERROR = "error"


def format_frame(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class StateDirHandler(FileSystemEventHandler):
    """Forwards events on markdown files to the notifier."""

    def __init__(self, callback: Callable[[str], None]):
        super().__init__()
        self.callback = callback

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory:
            return
        for path in (event.src_path, getattr(event, "dest_path", "")):
            if path and str(path).endswith(".md"):
                self.callback(str(path))
                return


class ChangeNotifier:
    """One subscriber's stream of status frames.

    ``snapshot`` returns the envelope to push. It is called once on
    subscribe and again after each debounced burst of ``.md`` changes.
    The observer thread is polled every ``watch_check`` seconds; if it has
    died the stream ends so the client can reconnect.
    """

    def __init__(
        self,
        watch_dir: Path,
        snapshot: Callable[[], dict],
        debounce: float = DEBOUNCE_SECONDS,
        heartbeat: float = HEARTBEAT_SECONDS,
        watch_check: float = WATCH_CHECK_SECONDS,
        observer_factory: Callable = Observer,
    ):
        self.watch_dir = Path(watch_dir)
        self.snapshot = snapshot
        self.debounce = debounce
        self.heartbeat = heartbeat
        self.watch_check = watch_check
        self.observer_factory = observer_factory

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue | None = None
        self._observer = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._heartbeat_handle: asyncio.TimerHandle | None = None
        self._watch_handle: asyncio.TimerHandle | None = None

    # ── Callbacks ────────────────────────────────────────────────────────

    def file_changed(self, path: str) -> None:
        """Thread-safe entry point for change events."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._schedule_push)

    def _schedule_push(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = self._loop.call_later(self.debounce, self._fire_push)

    def _fire_push(self) -> None:
        self._debounce_handle = None
        self._queue.put_nowait((_PUSH, None))

    def _fire_heartbeat(self) -> None:
        self._queue.put_nowait((_HEARTBEAT, None))
        self._heartbeat_handle = self._loop.call_later(self.heartbeat, self._fire_heartbeat)

    def _check_watcher(self) -> None:
        if self._observer is not None and not self._observer.is_alive():
            self._watch_handle = None
            self._queue.put_nowait((_ERROR, RuntimeError("file watcher stopped")))
            return
        self._watch_handle = self._loop.call_later(self.watch_check, self._check_watcher)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def _start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        observer = self.observer_factory()
        observer.schedule(StateDirHandler(self.file_changed), str(self.watch_dir), recursive=False)
        observer.start()
        self._observer = observer
        self._heartbeat_handle = self._loop.call_later(self.heartbeat, self._fire_heartbeat)
        self._watch_handle = self._loop.call_later(self.watch_check, self._check_watcher)

    def close(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._heartbeat_handle is not None:
            self._heartbeat_handle.cancel()
            self._heartbeat_handle = None
        if self._watch_handle is not None:
            self._watch_handle.cancel()
            self._watch_handle = None
        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=1)

    @property
    def active(self) -> bool:
        return self._observer is not None

    async def _render(self) -> str:
        payload = await asyncio.to_thread(self.snapshot)
        return format_frame(payload)

    async def frames(self) -> AsyncIterator[str]:
        """Yield SSE frames until cancelled or the watcher fails."""
        try:
            self._start()
        except OSError as e:
            logger.warning("Cannot watch %s: %s", self.watch_dir, e)
            self.close()
            return

        try:
            yield await self._render()
            while True:
                kind, error = await self._queue.get()
                if kind == _ERROR:
                    logger.warning("Closing status stream: %s", error)
                    return
                if kind == _HEARTBEAT:
                    yield HEARTBEAT_FRAME
                else:
                    yield await self._render()
        finally:
            self.close()
