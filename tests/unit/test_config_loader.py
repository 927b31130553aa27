"""
Unit tests for the settings loader.
"""

from pathlib import Path

import pytest

from pipeline_coordinator.config.loader import apply_env_overrides, load_settings
from pipeline_coordinator.orchestration.errors import ConfigError

REPO_CONFIG = Path(__file__).resolve().parents[2] / "config" / "pipeline.yaml"


@pytest.fixture(autouse=True)
def _clear_overrides(monkeypatch):
    for key in ("PIPELINE_DB_PATH", "PIPELINE_LOG_LEVEL", "PIPELINE_MAX_RETRIES"):
        monkeypatch.delenv(key, raising=False)


def test_default_config_loads():
    settings = load_settings(str(REPO_CONFIG))
    assert [stage.name for stage in settings.stages] == [
        "protocol",
        "search",
        "screening",
        "extraction",
        "synthesis",
    ]
    assert settings.retry.max_retries == 3
    assert settings.retry.base_delay == 1.0
    assert settings.retry.max_delay == 30.0
    assert settings.error_history_size == 5


def test_load_minimal_config(write_config):
    settings = load_settings(write_config({"stages": [{"name": "only"}]}))
    assert settings.stages[0].name == "only"
    assert settings.retry.jitter_ratio == 0.25
    assert settings.gates.notify_after_hours == 24


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(str(tmp_path / "nonexistent.yaml"))


def test_non_mapping_root(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(str(path))


def test_duplicate_stage_names(write_config):
    with pytest.raises(ConfigError):
        load_settings(write_config({"stages": [{"name": "a"}, {"name": "a"}]}))


def test_predecessor_must_be_listed_first(write_config):
    with pytest.raises(ConfigError):
        load_settings(write_config({"stages": [{"name": "a", "predecessor": "b"}, {"name": "b"}]}))


def test_empty_stage_list(write_config):
    with pytest.raises(ConfigError):
        load_settings(write_config({"stages": []}))


def test_env_overrides(write_config, monkeypatch, tmp_path):
    monkeypatch.setenv("PIPELINE_DB_PATH", str(tmp_path / "override.db"))
    monkeypatch.setenv("PIPELINE_MAX_RETRIES", "5")
    monkeypatch.setenv("PIPELINE_LOG_LEVEL", "detailed")

    settings = load_settings(write_config({"stages": [{"name": "a"}], "retry": {"base_delay": 2.0}}))

    assert settings.database.path == str(tmp_path / "override.db")
    assert settings.retry.max_retries == 5
    assert settings.retry.base_delay == 2.0
    assert settings.logging.level == "detailed"


def test_apply_env_overrides_ignores_empty(monkeypatch):
    monkeypatch.setenv("PIPELINE_DB_PATH", "")
    raw = {"database": {"path": "keep.db"}}
    assert apply_env_overrides(raw) == raw
