"""
File system watcher for autosort.

Subscribes to OS-level notifications for the configured directories and
forwards every change as a RawEvent.
Uses watchdog library for cross-platform file system event monitoring.
"""

import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger
from watchdog.events import DirModifiedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from autosort.exceptions import WatchSubscribeFailed
from autosort.models.schemas import WatchedPath
from autosort.utils.helpers import normalise_path
from domains.watching.events import EventKind, RawEvent


class RawEventHandler(FileSystemEventHandler):
    """Translates watchdog events into RawEvents."""

    def __init__(self, emit: Callable[[RawEvent], None]):
        """
        Initialize event handler.

        Args:
            emit: Thread-safe sink for raw events (called from the observer thread)
        """
        super().__init__()
        self.emit = emit

    def on_created(self, event: FileSystemEvent):
        """Handle file/directory creation."""
        self._forward(event.src_path, EventKind.CREATED, event.is_directory)

    def on_modified(self, event: FileSystemEvent):
        """Handle file modification."""
        # Directory modifications only mirror child changes
        if event.is_directory or isinstance(event, DirModifiedEvent):
            return
        self._forward(event.src_path, EventKind.MODIFIED, event.is_directory)

    def on_closed(self, event: FileSystemEvent):
        """A writer closed the file; treat it as the last modification."""
        if event.is_directory:
            return
        self._forward(event.src_path, EventKind.MODIFIED, False)

    def on_deleted(self, event: FileSystemEvent):
        """Handle file/directory deletion."""
        self._forward(event.src_path, EventKind.REMOVED, event.is_directory)

    def on_moved(self, event: FileSystemEvent):
        """Handle file/directory move/rename."""
        dest = getattr(event, "dest_path", None)
        if not dest:
            self._forward(event.src_path, EventKind.REMOVED, event.is_directory)
            return

        logger.debug(f"Moved: {event.src_path} -> {dest}")
        self.emit(RawEvent(
            path=normalise_path(Path(_as_str(event.src_path))),
            kind=EventKind.RENAMED,
            dest_path=normalise_path(Path(_as_str(dest))),
            is_directory=event.is_directory,
        ))

    def _forward(self, raw_path, kind: EventKind, is_directory: bool) -> None:
        if not raw_path:
            return
        self.emit(RawEvent(
            path=normalise_path(Path(_as_str(raw_path))),
            kind=kind,
            is_directory=is_directory,
        ))


def _as_str(raw_path) -> str:
    if isinstance(raw_path, bytes):
        return raw_path.decode(errors="surrogateescape")
    return str(raw_path)


class DirectoryWatcher:
    """Owns the WatchedPath set and the watchdog observer."""

    def __init__(self, emit: Callable[[RawEvent], None], observer_factory=Observer):
        """
        Initialize file system watcher.

        Args:
            emit: Sink for raw events; called from the observer thread
            observer_factory: Observer class, overridable for polling backends
        """
        self.event_handler = RawEventHandler(emit)
        self._observer_factory = observer_factory
        self.observer = None
        self._lock = threading.Lock()
        self._watches: Dict[Path, Tuple[WatchedPath, ObservedWatch]] = {}

    @property
    def watched_paths(self) -> List[WatchedPath]:
        with self._lock:
            return [wp for wp, _ in self._watches.values()]

    @property
    def is_running(self) -> bool:
        return self.observer is not None and self.observer.is_alive()

    def start(self, paths: Iterable[WatchedPath]) -> List[WatchSubscribeFailed]:
        """Start the observer and subscribe to ``paths``."""
        self.observer = self._observer_factory()
        self.observer.daemon = True
        self.observer.start()
        failures = self.reload(paths)
        logger.success(f"File system observer started ({len(self._watches)} paths)")
        return failures

    def reload(self, paths: Iterable[WatchedPath]) -> List[WatchSubscribeFailed]:
        """
        Atomically replace subscriptions.

        Paths that stay watched keep their existing subscription so no
        in-flight events are lost. Paths that cannot be subscribed are skipped
        and returned as failures; the others continue.
        """
        if self.observer is None:
            raise RuntimeError("watcher is not started")

        desired: Dict[Path, WatchedPath] = {}
        for wp in paths:
            desired[normalise_path(wp.path)] = wp

        failures: List[WatchSubscribeFailed] = []
        with self._lock:
            for key in list(self._watches):
                current, watch = self._watches[key]
                wanted = desired.get(key)
                if wanted is None or wanted.recursive != current.recursive:
                    self._unschedule(watch)
                    del self._watches[key]
                    logger.info(f"Stopped watching: {key}")

            for key, wp in desired.items():
                if key in self._watches:
                    continue
                try:
                    watch = self._schedule(key, wp.recursive)
                except WatchSubscribeFailed as e:
                    logger.error(f"Failed to watch {key}: {e.message}")
                    failures.append(e)
                    continue
                self._watches[key] = (wp, watch)
                logger.info(f"Started watching: {key} (recursive={wp.recursive})")

        return failures

    def stop(self) -> None:
        """Cancel every subscription and stop the observer."""
        if self.observer is None:
            return
        with self._lock:
            self._watches.clear()
            self.observer.unschedule_all()
        self.observer.stop()
        self.observer.join(timeout=5)
        self.observer = None
        logger.info("File system observer stopped")

    def _schedule(self, path: Path, recursive: bool) -> ObservedWatch:
        if not path.is_dir():
            raise WatchSubscribeFailed(f"{path} is not a readable directory", path=str(path))
        try:
            return self.observer.schedule(self.event_handler, str(path), recursive=recursive)
        except OSError as e:
            raise WatchSubscribeFailed(f"{path}: {e}", path=str(path)) from e

    def _unschedule(self, watch: ObservedWatch) -> None:
        try:
            self.observer.unschedule(watch)
        except KeyError:
            logger.debug(f"Watch already removed: {watch.path}")
