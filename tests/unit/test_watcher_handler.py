from pathlib import Path
from typing import Optional

import pytest

from autosort.models.schemas import WatchedPath
from autosort.utils.helpers import normalise_path
from domains.watching.events import EventKind
from domains.watching.watcher import DirectoryWatcher, RawEventHandler


class Event:
    def __init__(self, src: Path, dest: Optional[Path] = None, is_directory: bool = False):
        self.src_path = str(src)
        self.dest_path = str(dest) if dest else ""
        self.is_directory = is_directory


class FakeWatch:
    def __init__(self, path: str, recursive: bool):
        self.path = path
        self.is_recursive = recursive


class FakeObserver:
    """Records scheduling calls instead of talking to the OS."""

    def __init__(self):
        self.daemon = False
        self.alive = False
        self.watches = []

    def start(self):
        self.alive = True

    def stop(self):
        self.alive = False

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return self.alive

    def schedule(self, handler, path, recursive=False):
        watch = FakeWatch(path, recursive)
        self.watches.append(watch)
        return watch

    def unschedule(self, watch):
        self.watches.remove(watch)

    def unschedule_all(self):
        self.watches.clear()


def test_handler_translates_events(tmp_path):
    events = []
    handler = RawEventHandler(events.append)
    file_path = tmp_path / "a.txt"

    handler.on_created(Event(file_path))
    handler.on_modified(Event(file_path))
    handler.on_closed(Event(file_path))
    handler.on_deleted(Event(file_path))

    assert [e.kind for e in events] == [
        EventKind.CREATED,
        EventKind.MODIFIED,
        EventKind.MODIFIED,
        EventKind.REMOVED,
    ]
    assert all(e.path == normalise_path(file_path) for e in events)


def test_handler_ignores_directory_modifications(tmp_path):
    events = []
    handler = RawEventHandler(events.append)

    handler.on_modified(Event(tmp_path, is_directory=True))
    assert events == []

    handler.on_created(Event(tmp_path / "sub", is_directory=True))
    assert events[0].is_directory


def test_handler_moves(tmp_path):
    events = []
    handler = RawEventHandler(events.append)

    handler.on_moved(Event(tmp_path / "old.txt", tmp_path / "new.txt"))
    assert events[0].kind is EventKind.RENAMED
    assert events[0].path == normalise_path(tmp_path / "old.txt")
    assert events[0].dest_path == normalise_path(tmp_path / "new.txt")

    # Moved out of every watched tree: only the source side is known
    handler.on_moved(Event(tmp_path / "gone.txt"))
    assert events[1].kind is EventKind.REMOVED


def test_watcher_skips_missing_paths(tmp_path):
    watcher = DirectoryWatcher(lambda event: None, observer_factory=FakeObserver)
    good = tmp_path / "Downloads"
    good.mkdir()

    failures = watcher.start([WatchedPath(path=good), WatchedPath(path=tmp_path / "missing")])

    assert len(failures) == 1
    assert failures[0].path == str(normalise_path(tmp_path / "missing"))
    assert [wp.path for wp in watcher.watched_paths] == [good]
    assert watcher.is_running

    watcher.stop()
    assert not watcher.is_running
    assert watcher.watched_paths == []


def test_watcher_reload_keeps_unchanged_subscriptions(tmp_path):
    watcher = DirectoryWatcher(lambda event: None, observer_factory=FakeObserver)
    a, b, c = tmp_path / "a", tmp_path / "b", tmp_path / "c"
    for path in (a, b, c):
        path.mkdir()

    watcher.start([WatchedPath(path=a), WatchedPath(path=b)])
    observer = watcher.observer
    watch_a = observer.watches[0]

    failures = watcher.reload([WatchedPath(path=a), WatchedPath(path=b, recursive=True), WatchedPath(path=c)])

    assert failures == []
    assert watch_a in observer.watches
    assert len(observer.watches) == 3
    recursive = {Path(w.path).name: w.is_recursive for w in observer.watches}
    assert recursive == {"a": False, "b": True, "c": False}

    watcher.reload([WatchedPath(path=c)])
    assert [Path(w.path).name for w in observer.watches] == ["c"]
    watcher.stop()


def test_reload_requires_start():
    watcher = DirectoryWatcher(lambda event: None, observer_factory=FakeObserver)
    with pytest.raises(RuntimeError):
        watcher.reload([])
