"""Filesystem metadata provider used by condition evaluation."""

from __future__ import annotations

import os
import stat
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from autosort.utils.helpers import is_hidden

_WINDOWS_HIDDEN = getattr(stat, "FILE_ATTRIBUTE_HIDDEN", 0x2)
_UF_HIDDEN = getattr(stat, "UF_HIDDEN", 0x8000)


@dataclass(frozen=True, slots=True)
class FileMetadata:
    """Metadata snapshot for one path; ``exists`` is False for removals."""

    path: Path
    size: int = 0
    modified: Optional[datetime] = None
    is_directory: bool = False
    hidden: bool = False
    exists: bool = True

    @property
    def name(self) -> str:
        return self.path.name


def read_metadata(path: Path) -> FileMetadata:
    """
    Stat ``path`` and build its metadata.

    A missing path yields ``exists=False`` with only the name-derived fields
    filled in, so deletion-driven rules can still match on name.
    """
    try:
        st = path.stat()
    except (FileNotFoundError, NotADirectoryError):
        return FileMetadata(path=path, hidden=is_hidden(path), exists=False)

    return FileMetadata(
        path=path,
        size=st.st_size,
        modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        is_directory=stat.S_ISDIR(st.st_mode),
        hidden=_is_hidden(path, st),
    )


def _is_hidden(path: Path, st: os.stat_result) -> bool:
    if is_hidden(path):
        return True
    if sys.platform == "win32":
        return bool(getattr(st, "st_file_attributes", 0) & _WINDOWS_HIDDEN)
    if sys.platform == "darwin":
        return bool(getattr(st, "st_flags", 0) & _UF_HIDDEN)
    return False
