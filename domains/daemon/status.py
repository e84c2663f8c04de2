"""Status fan-out for Control Channel subscribers."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional, Set

from loguru import logger

from autosort.models.schemas import DaemonStatus

_CLOSED = None


class StatusBroadcaster:
    """
    Pushes DaemonStatus snapshots to every subscriber.

    Identical consecutive snapshots are published once. Slow subscribers only
    ever see the latest snapshot; intermediate ones are replaced.
    """

    def __init__(self):
        self._subscribers: Set[asyncio.Queue] = set()
        self._last: Optional[DaemonStatus] = None
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, status: DaemonStatus) -> bool:
        """Publish ``status``. Returns False if it equals the previous snapshot."""
        if self._closed:
            return False
        if self._last is not None and self._last == status:
            return False

        self._last = status
        for queue in self._subscribers:
            _replace(queue, status)
        return True

    async def subscribe(self, initial: Optional[DaemonStatus] = None) -> AsyncIterator[DaemonStatus]:
        """
        Yield the current snapshot, then one snapshot per change until closed.

        Args:
            initial: Snapshot to start from when nothing was published yet
        """
        queue: asyncio.Queue = asyncio.Queue()
        first = self._last or initial
        if first is not None:
            queue.put_nowait(first)
        if self._closed:
            queue.put_nowait(_CLOSED)

        self._subscribers.add(queue)
        logger.debug(f"Status subscriber added ({len(self._subscribers)} total)")
        try:
            while True:
                status = await queue.get()
                if status is _CLOSED:
                    return
                yield status
        finally:
            self._subscribers.discard(queue)
            logger.debug(f"Status subscriber removed ({len(self._subscribers)} total)")

    def close(self) -> None:
        """End every subscription."""
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)


def _replace(queue: asyncio.Queue, item) -> None:
    while not queue.empty():
        queue.get_nowait()
    queue.put_nowait(item)
