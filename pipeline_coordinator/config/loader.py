"""YAML and env loader with fail-fast validation."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from pipeline_coordinator.models import CoordinatorSettings
from pipeline_coordinator.orchestration.errors import ConfigError

DEFAULT_CONFIG_PATH = "config/pipeline.yaml"

# Env var -> (section, key) override applied after the YAML is read.
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "PIPELINE_DB_PATH": ("database", "path"),
    "PIPELINE_LOG_LEVEL": ("logging", "level"),
    "PIPELINE_MAX_RETRIES": ("retry", "max_retries"),
}


def _read_yaml(path: str) -> dict:
    resolved = Path(path)
    if not resolved.exists():
        raise FileNotFoundError(f"Missing config file: {path}")
    with resolved.open("r", encoding="utf-8") as file_obj:
        loaded = yaml.safe_load(file_obj) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Expected object at root of YAML file: {path}")
    return loaded


def apply_env_overrides(raw: dict) -> dict:
    """Overlay PIPELINE_* env vars onto the raw config mapping."""
    merged = dict(raw)
    for env_key, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_key)
        if value is None or value == "":
            continue
        block = dict(merged.get(section) or {})
        block[key] = value
        merged[section] = block
    return merged


def _check_stages(settings: CoordinatorSettings) -> None:
    seen: set[str] = set()
    for stage in settings.stages:
        if stage.name in seen:
            raise ConfigError(f"Duplicate stage name: {stage.name}", stage_name=stage.name)
        if stage.predecessor is not None and stage.predecessor not in seen:
            raise ConfigError(
                f"Stage '{stage.name}' depends on '{stage.predecessor}' which is not listed before it",
                stage_name=stage.name,
            )
        seen.add(stage.name)


def load_settings(path: str = DEFAULT_CONFIG_PATH) -> CoordinatorSettings:
    """Load coordinator settings from YAML, .env, and PIPELINE_* overrides."""
    load_dotenv()
    raw = apply_env_overrides(_read_yaml(path))
    try:
        settings = CoordinatorSettings.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}: {e}") from e
    _check_stages(settings)
    return settings
