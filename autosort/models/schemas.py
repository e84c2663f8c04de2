"""
Pydantic models for autosort.

Shared data models across the application: watched paths, the condition and
action variants, rules, outcomes, daemon status and the Control Channel
envelope.
"""

import re
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from autosort.utils.helpers import expand_path, generate_uuid, slugify, utcnow


# =====================================================
# Watch Models
# =====================================================

class WatchedPath(BaseModel):
    """Directory to subscribe to, optionally including descendants."""
    path: Path
    recursive: bool = False

    @field_validator("path", mode="before")
    @classmethod
    def _expand(cls, value: Any) -> Path:
        return expand_path(value)


# =====================================================
# Condition Models
# =====================================================

class Comparator(str, Enum):
    """Comparison used by size and age conditions."""
    GREATER_THAN = "gt"
    LESS_THAN = "lt"
    EQUAL = "eq"

    @classmethod
    def _missing_(cls, value: object):
        aliases = {
            "greater_than": cls.GREATER_THAN,
            ">": cls.GREATER_THAN,
            "less_than": cls.LESS_THAN,
            "<": cls.LESS_THAN,
            "equal": cls.EQUAL,
            "equals": cls.EQUAL,
            "==": cls.EQUAL,
        }
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None

    def compare(self, left: float, right: float) -> bool:
        if self is Comparator.GREATER_THAN:
            return left > right
        if self is Comparator.LESS_THAN:
            return left < right
        return left == right


class ExtensionCondition(BaseModel):
    """Matches the suffix after the last dot, case-insensitively."""
    type: Literal["extension"] = "extension"
    extensions: List[str]

    @field_validator("extensions", mode="before")
    @classmethod
    def _normalise(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            value = [value]
        normalised = []
        for ext in value:
            ext = str(ext).strip().lstrip(".").lower()
            if ext and ext not in normalised:
                normalised.append(ext)
        return normalised


class NameCondition(BaseModel):
    """Glob or regex matched against the base name."""
    type: Literal["name"] = "name"
    pattern: str
    mode: Literal["glob", "regex"] = "glob"

    @model_validator(mode="after")
    def _check_regex(self) -> "NameCondition":
        if self.mode == "regex":
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"invalid regex {self.pattern!r}: {e}")
        return self


class SizeCondition(BaseModel):
    """Compares the file size in bytes."""
    type: Literal["size"] = "size"
    comparator: Comparator
    bytes: int = Field(ge=0)


class AgeCondition(BaseModel):
    """Compares whole days since last modification."""
    type: Literal["age"] = "age"
    comparator: Comparator
    days: int = Field(ge=0)


class HiddenCondition(BaseModel):
    type: Literal["hidden"] = "hidden"
    value: bool = True


class DirectoryCondition(BaseModel):
    type: Literal["is_directory"] = "is_directory"
    value: bool = True


class AllOfCondition(BaseModel):
    """Short-circuit AND; empty list matches."""
    type: Literal["all_of"] = "all_of"
    conditions: List["Condition"] = Field(default_factory=list)


class AnyOfCondition(BaseModel):
    """Short-circuit OR; empty list never matches."""
    type: Literal["any_of"] = "any_of"
    conditions: List["Condition"] = Field(default_factory=list)


Condition = Annotated[
    Union[
        ExtensionCondition,
        NameCondition,
        SizeCondition,
        AgeCondition,
        HiddenCondition,
        DirectoryCondition,
        AllOfCondition,
        AnyOfCondition,
    ],
    Field(discriminator="type"),
]

AllOfCondition.model_rebuild()
AnyOfCondition.model_rebuild()


# =====================================================
# Action Models
# =====================================================

class MoveAction(BaseModel):
    type: Literal["move"] = "move"
    destination: Path
    overwrite: Optional[bool] = None


class CopyAction(BaseModel):
    type: Literal["copy"] = "copy"
    destination: Path
    overwrite: Optional[bool] = None


class RenameAction(BaseModel):
    """Rename in place; ``{name}``, ``{date}`` and ``{ext}`` are expanded."""
    type: Literal["rename"] = "rename"
    pattern: str
    overwrite: Optional[bool] = None

    @field_validator("pattern")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("rename pattern must not be empty")
        return value


class TrashAction(BaseModel):
    type: Literal["trash"] = "trash"


class DeleteAction(BaseModel):
    type: Literal["delete"] = "delete"


class RunCommandAction(BaseModel):
    type: Literal["run_command"] = "run_command"
    command: str

    @field_validator("command")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be empty")
        return value


class ArchiveAction(BaseModel):
    """Zip the target; ``destination`` is a ``.zip`` file or a directory."""
    type: Literal["archive"] = "archive"
    destination: Path


Action = Annotated[
    Union[
        MoveAction,
        CopyAction,
        RenameAction,
        TrashAction,
        DeleteAction,
        RunCommandAction,
        ArchiveAction,
    ],
    Field(discriminator="type"),
]


# =====================================================
# Rule Models
# =====================================================

class Rule(BaseModel):
    """Named, toggleable pairing of a condition tree and ordered actions."""
    id: str = Field(default_factory=generate_uuid)
    name: str
    enabled: bool = True
    condition: Condition
    actions: List[Action] = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("rule name must not be empty")
        return value.strip()

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("rule id must not be empty")
        return value


class ServiceConfig(BaseModel):
    """Structured configuration consumed by the service."""
    watches: List[WatchedPath] = Field(default_factory=list)
    rules: List[Rule] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _assign_rule_ids(cls, data: Any) -> Any:
        """Give rules without an id a stable one derived from their name."""
        if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
            return data

        taken = {
            rule["id"] for rule in data["rules"]
            if isinstance(rule, dict) and rule.get("id")
        }
        rules = []
        for raw in data["rules"]:
            if isinstance(raw, dict) and not raw.get("id"):
                base = slugify(str(raw.get("name", "")))
                candidate, counter = base, 2
                while candidate in taken:
                    candidate = f"{base}-{counter}"
                    counter += 1
                taken.add(candidate)
                raw = {**raw, "id": candidate}
            rules.append(raw)
        return {**data, "rules": rules}

    @model_validator(mode="after")
    def _unique_ids(self) -> "ServiceConfig":
        seen = set()
        for rule in self.rules:
            if rule.id in seen:
                raise ValueError(f"duplicate rule id {rule.id!r}")
            seen.add(rule.id)
        return self


# =====================================================
# Outcome Models
# =====================================================

class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    ABORTED = "aborted"


class ExecutionOutcome(BaseModel):
    """Recorded result of applying one action to one path under one rule."""
    rule_id: str
    rule_name: str
    path: str
    action: Action
    status: OutcomeStatus
    reason: Optional[str] = None
    destination: Optional[str] = None
    output: Optional[str] = None
    exit_code: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)


# =====================================================
# Daemon Models
# =====================================================

class DaemonState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RELOADING = "reloading"
    STOPPING = "stopping"
    CRASHED = "crashed"


class DaemonStatus(BaseModel):
    """Process-wide status snapshot exposed read-only to clients."""
    running: bool
    state: DaemonState
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    watched_paths: int = 0
    rule_count: int = 0
    recent_outcomes: List[ExecutionOutcome] = Field(default_factory=list)
    last_error: Optional[str] = None


# =====================================================
# Control Channel Models
# =====================================================

Operation = Literal[
    "get_status",
    "list_rules",
    "add_rule",
    "edit_rule",
    "delete_rule",
    "toggle_rule",
    "reload",
    "stop",
    "tail_log",
]


class ControlRequest(BaseModel):
    """Request envelope: operation name plus parameters."""
    op: Operation
    params: Dict[str, Any] = Field(default_factory=dict)


class ErrorBody(BaseModel):
    kind: str
    message: str


class ControlResponse(BaseModel):
    """Response envelope: exactly one of ``ok`` or ``error`` is meaningful."""
    ok: Any = None
    error: Optional[ErrorBody] = None
