from pathlib import Path

import pytest
from pydantic import ValidationError

from autosort.exceptions import ConfigInvalid
from autosort.models.schemas import (
    Comparator,
    ExtensionCondition,
    MoveAction,
    Rule,
    ServiceConfig,
)
from autosort.utils.config import Settings, load_service_config, parse_service_config

CONFIG_YAML = """
watches:
  - path: {downloads}
    recursive: true
rules:
  - name: Sort PDFs
    condition:
      type: extension
      extensions: [".PDF", "pdf"]
    actions:
      - type: move
        destination: {pdfs}
  - name: Sort PDFs
    enabled: false
    condition:
      type: all_of
      conditions:
        - type: size
          comparator: greater_than
          bytes: 1024
        - type: name
          pattern: "^report-\\\\d+"
          mode: regex
    actions:
      - type: trash
"""


def test_load_service_config(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(CONFIG_YAML.format(downloads=tmp_path / "Downloads", pdfs=tmp_path / "PDFs"))

    config = load_service_config(config_file)

    assert config.watches[0].path == tmp_path / "Downloads"
    assert config.watches[0].recursive is True
    assert [rule.id for rule in config.rules] == ["sort-pdfs", "sort-pdfs-2"]
    assert config.rules[0].condition.extensions == ["pdf"]
    assert isinstance(config.rules[0].actions[0], MoveAction)
    assert config.rules[1].enabled is False
    size, name = config.rules[1].condition.conditions
    assert size.comparator is Comparator.GREATER_THAN
    assert name.mode == "regex"


def test_load_missing_file_is_config_invalid(tmp_path):
    with pytest.raises(ConfigInvalid, match="file not found"):
        load_service_config(tmp_path / "nope.yaml")


def test_load_broken_yaml_is_config_invalid(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("rules: [unclosed\n")
    with pytest.raises(ConfigInvalid):
        load_service_config(config_file)


def test_empty_file_is_empty_config(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("")
    config = load_service_config(config_file)
    assert config.watches == []
    assert config.rules == []


@pytest.mark.parametrize("rule", [
    {"name": "", "condition": {"type": "hidden"}, "actions": [{"type": "trash"}]},
    {"name": "no actions", "condition": {"type": "hidden"}, "actions": []},
    {"name": "bad type", "condition": {"type": "color"}, "actions": [{"type": "trash"}]},
    {"name": "bad regex", "condition": {"type": "name", "pattern": "(", "mode": "regex"},
     "actions": [{"type": "trash"}]},
    {"name": "negative", "condition": {"type": "age", "comparator": "gt", "days": -1},
     "actions": [{"type": "trash"}]},
])
def test_invalid_rules_are_rejected(rule):
    with pytest.raises(ConfigInvalid):
        parse_service_config({"rules": [rule]})


def test_duplicate_explicit_ids_rejected():
    rule = {"id": "same", "name": "a", "condition": {"type": "hidden"}, "actions": [{"type": "trash"}]}
    with pytest.raises(ConfigInvalid, match="duplicate rule id"):
        parse_service_config({"rules": [rule, {**rule, "name": "b"}]})


def test_root_must_be_mapping():
    with pytest.raises(ConfigInvalid, match="mapping"):
        parse_service_config(["not", "a", "mapping"])


def test_rule_defaults():
    rule = Rule(
        name="  Trim me  ",
        condition=ExtensionCondition(extensions="JPG"),
        actions=[MoveAction(destination=Path("/tmp/out"))],
    )
    assert rule.name == "Trim me"
    assert rule.enabled is True
    assert rule.id
    assert rule.condition.extensions == ["jpg"]


def test_rule_requires_action():
    with pytest.raises(ValidationError):
        Rule(name="x", condition={"type": "hidden"}, actions=[])


def test_comparator_aliases():
    assert Comparator("less_than") is Comparator.LESS_THAN
    assert Comparator(">") is Comparator.GREATER_THAN
    assert Comparator.EQUAL.compare(3, 3)
    assert not Comparator.LESS_THAN.compare(3, 3)


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("AUTOSORT_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("AUTOSORT_QUIET_WINDOW_MS", "250")

    settings = Settings(_env_file=None)

    assert settings.get_state_dir() == tmp_path / "state"
    assert settings.get_socket_path() == tmp_path / "state" / "control.sock"
    assert settings.quiet_window == 0.25
