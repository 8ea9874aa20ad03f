"""Tests for migration configuration loading."""

import pytest

from migrapack.config import get_state_dir, settings
from migrapack.config_loader import MigrationConfig, load_migration_config


def test_defaults_without_file(tmp_path):
    config = load_migration_config(tmp_path)

    assert config == MigrationConfig()
    assert config.language == "go"
    assert config.build_command == "go build ./..."
    assert config.max_retries == 2


def test_migration_section_is_read(tmp_path):
    (tmp_path / "migrapack.yaml").write_text(
        "migration:\n  language: python\n  max_retries: 0\n  test_timeout_seconds: 30\n",
        encoding="utf-8",
    )

    config = load_migration_config(tmp_path)

    assert config.language == "python"
    assert config.test_command == "python -m pytest -q"
    assert config.source_extensions == [".py"]
    assert config.max_retries == 0
    assert config.test_timeout_seconds == 30


def test_top_level_mapping_and_explicit_path(tmp_path):
    path = tmp_path / "custom.yaml"
    path.write_text("build_command: make build\n", encoding="utf-8")

    config = load_migration_config(tmp_path, config_path=path)

    assert config.build_command == "make build"
    assert config.test_command == MigrationConfig().test_command


def test_unknown_keys_are_ignored(tmp_path, caplog):
    (tmp_path / "migrapack.yaml").write_text("migration:\n  colour: blue\n", encoding="utf-8")

    config = load_migration_config(tmp_path)

    assert config == MigrationConfig()
    assert "colour" in caplog.text


def test_malformed_yaml_falls_back(tmp_path):
    (tmp_path / "migrapack.yaml").write_text("migration: [unclosed\n", encoding="utf-8")
    assert load_migration_config(tmp_path) == MigrationConfig()


def test_overrides_win(tmp_path):
    (tmp_path / "migrapack.yaml").write_text("migration:\n  max_stage_size: 3\n", encoding="utf-8")

    config = load_migration_config(tmp_path, overrides={"max_stage_size": 7, "max_retries": None})

    assert config.max_stage_size == 7
    assert config.max_retries == 2


def test_unknown_language(tmp_path):
    with pytest.raises(ValueError, match="Unknown language"):
        MigrationConfig.for_language("cobol")


@pytest.mark.parametrize(
    "field, value",
    [("max_stage_size", 0), ("max_retries", -1), ("checkpoint_interval", 0)],
)
def test_invalid_values(field, value):
    with pytest.raises(ValueError, match=field):
        MigrationConfig(**{field: value})


def test_terminal_save_is_retried_at_least_once():
    assert MigrationConfig(terminal_save_attempts=1).terminal_save_attempts == 2


def test_state_dir_relative_and_absolute(tmp_path, monkeypatch):
    assert get_state_dir(tmp_path) == tmp_path / ".migrapack"

    monkeypatch.setattr(settings, "state_dir", str(tmp_path / "elsewhere"))
    assert get_state_dir(tmp_path / "project") == tmp_path / "elsewhere"
