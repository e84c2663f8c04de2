"""
Exception classes for autosort.

Every error that can cross the Control Channel carries a ``kind`` string so
clients can render it without parsing messages.
"""

from typing import Optional


class AutosortError(Exception):
    """Base exception for autosort operations."""

    kind: str = "AutosortError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        """Structured form used in Control Channel error responses."""
        return {"kind": self.kind, "message": self.message}


class ConfigInvalid(AutosortError):
    """Raised when a rule, condition or action is malformed at load time."""

    kind = "ConfigInvalid"


class WatchSubscribeFailed(AutosortError):
    """Raised when a watched directory is missing or unreadable."""

    kind = "WatchSubscribeFailed"

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class ActionFailed(AutosortError):
    """Raised when an action hits an I/O or command failure."""

    kind = "ActionFailed"

    def __init__(self, message: str, reason: Optional[str] = None):
        self.reason = reason or message
        super().__init__(message)


class ActionTimeout(ActionFailed):
    """Raised when an action or command exceeds its time bound."""

    kind = "Timeout"

    def __init__(self, message: str = "Operation timed out", timeout: Optional[float] = None):
        self.timeout = timeout
        super().__init__(message, reason="timeout")


class ChannelProtocolError(AutosortError):
    """Raised for malformed or oversized Control Channel requests."""

    kind = "ChannelProtocolError"


class AlreadyRunning(AutosortError):
    """Raised when another instance holds the state-directory lock."""

    kind = "AlreadyRunning"

    def __init__(self, message: str = "autosort is already running", pid: Optional[int] = None):
        self.pid = pid
        if pid:
            message += f" (pid {pid})"
        super().__init__(message)


class RuleNotFound(AutosortError):
    """Raised when a rule id does not exist."""

    kind = "NotFound"

    def __init__(self, message: str = "Rule not found", rule_id: Optional[str] = None):
        self.rule_id = rule_id
        super().__init__(message)


class RuleInvalid(AutosortError):
    """Raised when a rule submitted through CRUD fails validation."""

    kind = "RuleInvalid"


class StateDirUnavailable(AutosortError):
    """Raised when the state directory cannot be created or written."""

    kind = "StateDirUnavailable"


class ControlBindFailed(AutosortError):
    """Raised when the Control Channel socket cannot be bound."""

    kind = "ControlBindFailed"


class ServiceStateError(AutosortError):
    """Raised when an operation is not allowed in the current service state."""

    kind = "InvalidState"


class AutostartUnsupported(AutosortError):
    """Raised when auto-start cannot be configured on this platform."""

    kind = "Unsupported"


class DaemonNotRunning(AutosortError):
    """Raised by clients when no service is listening on the control socket."""

    kind = "NotRunning"

    def __init__(self, message: str = "autosort daemon is not running"):
        super().__init__(message)


class RemoteError(AutosortError):
    """Structured error returned by the service to a client."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


# Helper functions for creating common exceptions

def format_rule_not_found(rule_id: str) -> RuleNotFound:
    """Create a formatted not found exception for a rule id."""
    return RuleNotFound(f"Rule '{rule_id}' not found", rule_id=rule_id)


def format_action_timeout(operation: str, timeout: float) -> ActionTimeout:
    """Create a formatted timeout exception for an action."""
    preview = operation[:50] + "..." if len(operation) > 50 else operation
    return ActionTimeout(f"'{preview}' timed out after {timeout}s", timeout=timeout)


def format_config_error(source: str, detail: str) -> ConfigInvalid:
    """Create a formatted configuration exception."""
    return ConfigInvalid(f"Invalid configuration in {source}: {detail}")
