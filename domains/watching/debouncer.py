"""
Per-path debouncing of raw filesystem events.

Editors and copy tools emit bursts of create/modify/truncate notifications
for a single logical write. Each path gets its own timer that is reset on
every new raw event; when the timer fires, exactly one SettledEvent carrying
the last observed kind is emitted.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from domains.watching.events import EventKind, RawEvent, SettledEvent


@dataclass(slots=True)
class _Pending:
    kind: EventKind
    is_directory: bool
    timer: asyncio.TimerHandle


class Debouncer:
    """Coalesces bursts of RawEvents into one SettledEvent per path."""

    def __init__(
        self,
        emit: Callable[[SettledEvent], None],
        quiet_window: float = 0.5,
        max_pending: int = 10000,
    ):
        """
        Initialize debouncer.

        Args:
            emit: Called on the event loop with every settled event
            quiet_window: Seconds without activity before a path settles
            max_pending: Bound on distinct paths waiting to settle
        """
        self._emit = emit
        self.quiet_window = quiet_window
        self.max_pending = max(1, max_pending)
        # Ordered by last activity, oldest first
        self._pending: OrderedDict[Path, _Pending] = OrderedDict()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def observe(self, event: RawEvent) -> None:
        """
        Record a raw event. Must be called from the event loop thread.

        Renames are split into ``removed(old)`` + ``created(new)`` and each
        side is debounced on its own.
        """
        if event.kind is EventKind.RENAMED:
            self._observe(event.path, EventKind.REMOVED, event.is_directory)
            if event.dest_path is not None:
                self._observe(event.dest_path, EventKind.CREATED, event.is_directory)
            return

        self._observe(event.path, event.kind, event.is_directory)

    async def run(self, queue: "asyncio.Queue[RawEvent]") -> None:
        """Consume raw events from ``queue`` until cancelled."""
        while True:
            event = await queue.get()
            try:
                self.observe(event)
            finally:
                queue.task_done()

    def flush(self) -> int:
        """Settle every pending path immediately. Returns how many settled."""
        paths = list(self._pending)
        for path in paths:
            self._settle(path)
        return len(paths)

    def cancel(self) -> int:
        """Drop every pending path without emitting. Returns how many dropped."""
        dropped = len(self._pending)
        for pending in self._pending.values():
            pending.timer.cancel()
        self._pending.clear()
        if dropped:
            logger.info(f"Debouncer dropped {dropped} pending paths")
        return dropped

    def _observe(self, path: Path, kind: EventKind, is_directory: bool) -> None:
        loop = self._get_loop()

        # A removal cancels whatever was pending for the path; the removal
        # itself still settles if nothing follows it.
        existing = self._pending.pop(path, None)
        if existing is not None:
            existing.timer.cancel()
        elif len(self._pending) >= self.max_pending:
            self._evict_oldest()

        timer = loop.call_later(self.quiet_window, self._settle, path)
        self._pending[path] = _Pending(kind=kind, is_directory=is_directory, timer=timer)

    def _evict_oldest(self) -> None:
        oldest = next(iter(self._pending))
        logger.warning(
            f"Debouncer pending limit ({self.max_pending}) reached; settling {oldest} early"
        )
        self._settle(oldest)

    def _settle(self, path: Path) -> None:
        pending = self._pending.pop(path, None)
        if pending is None:
            return
        pending.timer.cancel()

        event = SettledEvent(path=path, kind=pending.kind, is_directory=pending.is_directory)
        logger.debug(f"Settled: {event.kind.value} {path}")
        self._emit(event)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.get_running_loop()
        return self._loop
