"""
Watching Domain

Turns raw filesystem notifications into settled per-path events:
- watcher.py - watchdog subscriptions for the configured directories
- debouncer.py - per-path quiet-window coalescing
"""

from domains.watching.debouncer import Debouncer
from domains.watching.events import EventKind, RawEvent, SettledEvent
from domains.watching.watcher import DirectoryWatcher, RawEventHandler

__all__ = [
    "Debouncer",
    "DirectoryWatcher",
    "EventKind",
    "RawEvent",
    "RawEventHandler",
    "SettledEvent",
]
