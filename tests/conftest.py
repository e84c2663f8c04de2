import pytest

from autosort.models.schemas import Rule
from autosort.utils.config import Settings


def _make_rule(name: str, condition: dict, *actions: dict, **extra) -> Rule:
    return Rule.model_validate({"name": name, "condition": condition, "actions": list(actions), **extra})


@pytest.fixture
def make_rule():
    """Build a validated Rule from plain dicts: make_rule(name, condition, *actions)."""
    return _make_rule


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        state_dir=tmp_path / "state",
        config_file=tmp_path / "config.yaml",
        trash_dir=tmp_path / "trash",
        quiet_window_ms=100,
        drain_timeout=1.0,
        action_timeout=5.0,
        command_timeout=10.0,
        _env_file=None,
    )
