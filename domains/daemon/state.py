"""
State directory.

Everything the service persists lives in one directory:
- autosort.pid - pid of the running instance
- autosort.lock - advisory lock held for the process lifetime
- activity.jsonl - append-only ExecutionOutcome log, one JSON object per line
- status.json - last published DaemonStatus
- control.sock - Control Channel socket
- autosort.log - rotating log file
"""

from __future__ import annotations

import json
import os
import sys
from collections import deque
from pathlib import Path
from typing import List, Optional, TextIO

from loguru import logger
from pydantic import ValidationError

from autosort.exceptions import AlreadyRunning, StateDirUnavailable
from autosort.models.schemas import DaemonStatus, ExecutionOutcome

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

PID_FILE = "autosort.pid"
LOCK_FILE = "autosort.lock"
ACTIVITY_FILE = "activity.jsonl"
STATUS_FILE = "status.json"
SOCKET_FILE = "control.sock"
LOG_FILE = "autosort.log"


class StateDirectory:
    """Files shared between the service and its clients."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock_handle: Optional[TextIO] = None
        self._activity: Optional[TextIO] = None

    @property
    def pid_file(self) -> Path:
        return self.root / PID_FILE

    @property
    def lock_file(self) -> Path:
        return self.root / LOCK_FILE

    @property
    def activity_file(self) -> Path:
        return self.root / ACTIVITY_FILE

    @property
    def status_file(self) -> Path:
        return self.root / STATUS_FILE

    @property
    def socket_path(self) -> Path:
        return self.root / SOCKET_FILE

    @property
    def log_file(self) -> Path:
        return self.root / LOG_FILE

    @property
    def is_locked(self) -> bool:
        return self._lock_handle is not None

    def ensure(self) -> Path:
        """Create the directory if needed and check it is writable."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateDirUnavailable(f"Cannot create state directory {self.root}: {e}") from e
        if not os.access(self.root, os.W_OK):
            raise StateDirUnavailable(f"State directory {self.root} is not writable")
        return self.root

    # Lock + pid ---------------------------------------------------------------------

    def acquire(self) -> None:
        """
        Take the single-instance lock and write the pid file.

        Raises:
            AlreadyRunning: If another process holds the lock
            StateDirUnavailable: If the lock file cannot be opened
        """
        self.ensure()
        try:
            handle = open(self.lock_file, "a+", encoding="utf-8")
        except OSError as e:
            raise StateDirUnavailable(f"Cannot open lock file {self.lock_file}: {e}") from e

        try:
            _lock(handle)
        except (BlockingIOError, PermissionError) as e:
            handle.close()
            raise AlreadyRunning(pid=self.read_pid()) from e

        self._lock_handle = handle
        self.pid_file.write_text(f"{os.getpid()}\n", encoding="utf-8")
        logger.debug(f"Acquired state lock {self.lock_file}")

    def release(self) -> None:
        """Drop the lock and remove the pid file. Safe to call twice."""
        self.close_activity()
        if self._lock_handle is None:
            return

        if self.read_pid() == os.getpid():
            self.pid_file.unlink(missing_ok=True)
        try:
            _unlock(self._lock_handle)
        finally:
            self._lock_handle.close()
            self._lock_handle = None
        logger.debug(f"Released state lock {self.lock_file}")

    def __enter__(self) -> "StateDirectory":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def read_pid(self) -> Optional[int]:
        try:
            return int(self.pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    # Activity log -------------------------------------------------------------------

    def append_outcome(self, outcome: ExecutionOutcome) -> None:
        """Append one outcome and flush it to disk."""
        if self._activity is None:
            self._activity = open(self.activity_file, "a", encoding="utf-8")
        self._activity.write(outcome.model_dump_json() + "\n")
        self._activity.flush()

    def close_activity(self) -> None:
        if self._activity is not None:
            self._activity.close()
            self._activity = None

    def read_tail(self, n: int) -> List[ExecutionOutcome]:
        """Last ``n`` outcomes from the activity log, oldest first."""
        if n <= 0 or not self.activity_file.exists():
            return []

        with open(self.activity_file, "r", encoding="utf-8") as f:
            lines = deque(f, maxlen=n)

        outcomes = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                outcomes.append(ExecutionOutcome.model_validate_json(line))
            except ValidationError:
                logger.warning(f"Skipping unreadable activity line in {self.activity_file}")
        return outcomes

    # Status snapshot ----------------------------------------------------------------

    def write_status(self, status: DaemonStatus) -> None:
        """Write the status snapshot through a temp file and atomic replace."""
        tmp = self.status_file.with_name(f".{STATUS_FILE}.tmp")
        try:
            tmp.write_text(status.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, self.status_file)
        except OSError as e:
            logger.error(f"Failed to write {self.status_file}: {e}")
            tmp.unlink(missing_ok=True)

    def read_status(self) -> Optional[DaemonStatus]:
        try:
            return DaemonStatus.model_validate(json.loads(self.status_file.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError):
            return None


def _lock(handle: TextIO) -> None:
    if sys.platform == "win32":
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError as e:
            raise BlockingIOError(str(e)) from e
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(handle: TextIO) -> None:
    if sys.platform == "win32":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
