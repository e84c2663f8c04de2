"""
Helper utilities for autosort.

Common functions used across domains.
"""

import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Union
from uuid import uuid4


def generate_uuid() -> str:
    """Generate a unique identifier."""
    return str(uuid4())


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def slugify(text: str) -> str:
    """Lowercase ``text`` and collapse anything non-alphanumeric to dashes."""
    slug = re.sub(r'[^a-z0-9]+', '-', text.lower()).strip('-')
    return slug or 'rule'


_ENV_RE = re.compile(r'\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)')


def expand_path(path: Union[str, Path]) -> Path:
    """
    Expand ``~`` and environment variables in a path.

    Both ``$VAR`` and ``${VAR}`` forms are supported; unknown variables are
    left untouched.
    """
    expanded = os.path.expanduser(str(path))

    def _replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        return os.environ.get(name, match.group(0))

    return Path(_ENV_RE.sub(_replace, expanded))


def normalise_path(path: Path) -> Path:
    """Return an absolute version of ``path`` without forcing existence."""
    try:
        return path.expanduser().resolve()
    except (FileNotFoundError, RuntimeError):
        return path.expanduser().absolute()


def is_hidden(path: Path) -> bool:
    """Check if path is hidden (starts with dot)."""
    return path.name.startswith('.')


def format_uptime(running_secs: int) -> str:
    """Format a duration in seconds as a human-readable uptime string."""
    running_secs = max(int(running_secs), 0)
    hours = running_secs // 3600
    mins = (running_secs % 3600) // 60
    secs = running_secs % 60
    if hours > 0:
        return f"{hours}h {mins}m {secs}s"
    if mins > 0:
        return f"{mins}m {secs}s"
    return f"{secs}s"


def process_is_running(pid: int) -> bool:
    """Probe whether a process with ``pid`` exists (signal 0)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else
        return True
    except OSError:
        return False
    return True
