"""
Rules Domain

Evaluates settled events against the configured rules:
- metadata.py - one stat per evaluation pass
- conditions.py - pure condition evaluation
- actions.py - filesystem actions and shell commands
- engine.py - ordered rule set, evaluation passes, outcome log
"""

from domains.rules.actions import ActionExecutor
from domains.rules.conditions import matches
from domains.rules.engine import RuleEngine
from domains.rules.metadata import FileMetadata, read_metadata

__all__ = [
    "ActionExecutor",
    "FileMetadata",
    "RuleEngine",
    "matches",
    "read_metadata",
]
