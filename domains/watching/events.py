"""Event types flowing through the Watcher -> Debouncer -> Rule Engine pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from autosort.utils.helpers import utcnow


class EventKind(str, Enum):
    """Kinds of filesystem change."""

    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


@dataclass(frozen=True, slots=True)
class RawEvent:
    """Single OS notification; ``dest_path`` is only set for renames."""

    path: Path
    kind: EventKind
    observed_at: float = field(default_factory=time.monotonic)
    dest_path: Optional[Path] = None
    is_directory: bool = False


@dataclass(frozen=True, slots=True)
class SettledEvent:
    """Emitted once a path's activity has been quiet for the whole window."""

    path: Path
    kind: EventKind
    settled_at: datetime = field(default_factory=utcnow)
    is_directory: bool = False
