"""Tests for the debounced status stream."""

import asyncio
import json

from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from pipeline_monitor.web.stream import HEARTBEAT_FRAME, ChangeNotifier, StateDirHandler


class FakeObserver:
    """Stands in for a watchdog observer without starting a thread."""

    instances: list["FakeObserver"] = []

    def __init__(self):
        self.handler = None
        self.started = False
        self.stopped = False
        self.alive = True
        FakeObserver.instances.append(self)

    def schedule(self, handler, path, recursive=False):
        self.handler = handler
        self.path = path

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def is_alive(self):
        return self.alive and not self.stopped

    def join(self, timeout=None):
        pass


class DeadObserver(FakeObserver):
    def is_alive(self):
        return False


class FailingObserver(FakeObserver):
    def schedule(self, handler, path, recursive=False):
        raise OSError("no such directory")


class Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return {"data": {"n": self.calls}, "error": None}


def _notifier(tmp_path, snapshot, **kwargs):
    kwargs.setdefault("observer_factory", FakeObserver)
    return ChangeNotifier(tmp_path, snapshot, **kwargs)


class TestHandler:
    def test_only_markdown_files(self):
        seen = []
        handler = StateDirHandler(seen.append)
        handler.dispatch(FileModifiedEvent("/dev/backlog.md"))
        handler.dispatch(FileModifiedEvent("/dev/worker-1.heartbeat"))
        handler.dispatch(DirModifiedEvent("/dev/notes.md"))
        handler.dispatch(FileMovedEvent("/dev/backlog.tmp", "/dev/backlog.md"))
        assert seen == ["/dev/backlog.md", "/dev/backlog.md"]


class TestChangeNotifier:
    def test_initial_snapshot(self, tmp_path):
        snapshot = Counter()

        async def run():
            gen = _notifier(tmp_path, snapshot).frames()
            frame = await gen.__anext__()
            await gen.aclose()
            return frame

        frame = asyncio.run(run())
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        assert json.loads(frame[len("data: "):]) == {"data": {"n": 1}, "error": None}

    def test_burst_of_changes_pushes_once(self, tmp_path):
        snapshot = Counter()
        notifier = _notifier(tmp_path, snapshot)

        async def run():
            gen = notifier.frames()
            await gen.__anext__()
            for _ in range(3):
                notifier.file_changed(str(tmp_path / "backlog.md"))
                await asyncio.sleep(0.1)
            frame = await asyncio.wait_for(gen.__anext__(), timeout=2)
            try:
                await asyncio.wait_for(gen.__anext__(), timeout=0.8)
            except asyncio.TimeoutError:
                pass
            return frame

        frame = asyncio.run(run())
        assert '"n": 2' in frame
        assert snapshot.calls == 2

    def test_cancel_tears_down(self, tmp_path):
        FakeObserver.instances.clear()
        notifier = _notifier(tmp_path, Counter())

        async def run():
            gen = notifier.frames()
            await gen.__anext__()
            notifier.file_changed("backlog.md")
            await asyncio.sleep(0)
            assert notifier._debounce_handle is not None
            await gen.aclose()

        asyncio.run(run())
        [observer] = FakeObserver.instances
        assert observer.stopped
        assert not notifier.active
        assert notifier._debounce_handle is None
        assert notifier._heartbeat_handle is None
        assert notifier._watch_handle is None

    def test_heartbeat_frames(self, tmp_path):
        notifier = _notifier(tmp_path, Counter(), heartbeat=0.05)

        async def run():
            gen = notifier.frames()
            await gen.__anext__()
            frames = [await asyncio.wait_for(gen.__anext__(), timeout=1) for _ in range(2)]
            await gen.aclose()
            return frames

        assert asyncio.run(run()) == [HEARTBEAT_FRAME, HEARTBEAT_FRAME]

    def test_dead_watcher_closes_stream_before_heartbeat(self, tmp_path):
        notifier = _notifier(tmp_path, Counter(), watch_check=0.05, observer_factory=DeadObserver)

        async def run():
            return [frame async for frame in notifier.frames()]

        async def bounded():
            return await asyncio.wait_for(run(), timeout=2)

        frames = asyncio.run(bounded())
        assert len(frames) == 1
        assert not notifier.active

    def test_watch_failure_ends_stream(self, tmp_path):
        snapshot = Counter()
        notifier = _notifier(tmp_path, snapshot, observer_factory=FailingObserver)

        async def run():
            return [frame async for frame in notifier.frames()]

        assert asyncio.run(run()) == []
        assert snapshot.calls == 0
