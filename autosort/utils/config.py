"""
Configuration management for autosort.

Uses pydantic-settings to load runtime settings from environment variables
and .env files. The watch/rule configuration itself is a structured
``ServiceConfig``; ``load_service_config`` is the thin adapter that turns a
YAML file into one.
"""

from functools import lru_cache
from pathlib import Path
from typing import Callable, Optional

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from autosort.exceptions import ConfigInvalid, format_config_error
from autosort.models.schemas import ServiceConfig
from autosort.utils.helpers import expand_path

ConfigLoader = Callable[[], ServiceConfig]


class Settings(BaseSettings):
    """Runtime settings loaded from environment."""

    # State Directory
    state_dir: Path = Path("~/.local/state/autosort")
    config_file: Path = Path("~/.config/autosort/config.yaml")
    socket_path: Optional[Path] = None

    # Debouncing
    quiet_window_ms: int = 500
    max_pending_paths: int = 10000

    # Execution bounds
    action_timeout: float = 30.0  # seconds, filesystem I/O
    command_timeout: float = 60.0  # seconds, run_command
    drain_timeout: float = 10.0  # seconds, reload/stop
    output_capture_bytes: int = 4096
    overwrite: bool = False
    trash_dir: Optional[Path] = None
    self_event_ttl: float = 2.0

    # Activity
    outcome_log_size: int = 500
    status_recent_outcomes: int = 20

    # Control Channel
    max_request_bytes: int = 64 * 1024

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="AUTOSORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def get_state_dir(self) -> Path:
        """State directory with ``~`` and variables expanded."""
        return expand_path(self.state_dir)

    def get_config_file(self) -> Path:
        return expand_path(self.config_file)

    def get_socket_path(self) -> Path:
        """Well-known control socket path derived from the state directory."""
        if self.socket_path is not None:
            return expand_path(self.socket_path)
        return self.get_state_dir() / "control.sock"

    def get_trash_dir(self) -> Optional[Path]:
        return expand_path(self.trash_dir) if self.trash_dir else None

    @property
    def quiet_window(self) -> float:
        """Quiet window in seconds."""
        return self.quiet_window_ms / 1000.0


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_service_config(path: Path) -> ServiceConfig:
    """
    Load watches and rules from a YAML file.

    Args:
        path: Configuration file

    Returns:
        Validated ServiceConfig

    Raises:
        ConfigInvalid: If the file is missing, not YAML, or fails validation
    """
    path = expand_path(path)
    if not path.exists():
        raise format_config_error(str(path), "file not found")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise format_config_error(str(path), str(e)) from e

    return parse_service_config(data or {}, source=str(path))


def parse_service_config(data: object, source: str = "<memory>") -> ServiceConfig:
    """Validate already-parsed configuration data."""
    if not isinstance(data, dict):
        raise format_config_error(source, "root must be a mapping")
    try:
        return ServiceConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigInvalid(f"Invalid configuration in {source}: {e}") from e


def file_config_loader(path: Path) -> ConfigLoader:
    """Return a loader that re-reads ``path`` on every call."""
    def _load() -> ServiceConfig:
        return load_service_config(path)
    return _load
