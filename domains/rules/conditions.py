"""
Condition evaluation.

Pure predicate over (condition, metadata); no I/O and no shared state, so it
is safe to call from concurrent evaluation passes.
"""

import re
from datetime import datetime
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Optional

from autosort.models.schemas import (
    AgeCondition,
    AllOfCondition,
    AnyOfCondition,
    Condition,
    DirectoryCondition,
    ExtensionCondition,
    HiddenCondition,
    NameCondition,
    SizeCondition,
)
from autosort.utils.helpers import utcnow
from domains.rules.metadata import FileMetadata

SECONDS_PER_DAY = 86400


def matches(condition: Condition, metadata: FileMetadata, now: Optional[datetime] = None) -> bool:
    """
    Evaluate ``condition`` against ``metadata``.

    Args:
        condition: Condition tree
        metadata: Metadata supplied by the caller
        now: Reference time for age conditions (defaults to current UTC time)

    Returns:
        True if the condition holds
    """
    if isinstance(condition, AllOfCondition):
        return all(matches(child, metadata, now) for child in condition.conditions)

    if isinstance(condition, AnyOfCondition):
        return any(matches(child, metadata, now) for child in condition.conditions)

    if isinstance(condition, ExtensionCondition):
        return extension_of(metadata.name) in condition.extensions

    if isinstance(condition, NameCondition):
        if condition.mode == "glob":
            return fnmatchcase(metadata.name, condition.pattern)
        return _match_regex(condition.pattern, metadata.name)

    if isinstance(condition, SizeCondition):
        if not metadata.exists:
            return False
        return condition.comparator.compare(metadata.size, condition.bytes)

    if isinstance(condition, AgeCondition):
        days = age_in_days(metadata, now)
        if days is None:
            return False
        return condition.comparator.compare(days, condition.days)

    if isinstance(condition, HiddenCondition):
        return metadata.hidden == condition.value

    if isinstance(condition, DirectoryCondition):
        return metadata.is_directory == condition.value

    raise TypeError(f"Unknown condition type: {type(condition).__name__}")


def extension_of(name: str) -> str:
    """Lowercased suffix after the last dot, or an empty string."""
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[1].lower()


def age_in_days(metadata: FileMetadata, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days since modification, truncated; None when unknown."""
    if metadata.modified is None:
        return None
    now = now or utcnow()
    return int((now - metadata.modified).total_seconds() / SECONDS_PER_DAY)


def _match_regex(pattern: str, name: str) -> bool:
    compiled = _compile(pattern)
    # Patterns the user anchored themselves are searched as written
    if pattern.startswith("^") or pattern.endswith("$"):
        return compiled.search(name) is not None
    return compiled.fullmatch(name) is not None


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern)
