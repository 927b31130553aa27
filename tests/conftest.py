"""
Pytest configuration and fixtures.
"""

import logging
import random
from typing import Optional

import pytest
import yaml

from pipeline_coordinator.orchestration import RetryPolicy
from pipeline_coordinator.utils.logging_config import ROOT_LOGGER_NAME
from pipeline_coordinator.utils.structured_log import reset_run_logging
from tests.fixtures.executors import FakeClock, RecordingSleep


@pytest.fixture
def db_path(tmp_path) -> str:
    """SQLite file for one test."""
    return str(tmp_path / "pipeline.db")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_policy(recording_sleep) -> RetryPolicy:
    """Default retry budget with sleeps recorded instead of awaited."""
    return RetryPolicy(max_retries=3, sleep=recording_sleep, rng=random.Random(7))


@pytest.fixture
def write_config(tmp_path):
    """Write a pipeline YAML file and return its path."""

    def _write(data: Optional[dict] = None, name: str = "pipeline.yaml") -> str:
        if data is None:
            data = {
                "stages": [
                    {"name": "protocol", "requires_gate": True},
                    {"name": "search"},
                    {"name": "screening", "requires_gate": True},
                ],
                "database": {"path": str(tmp_path / "cli.db")},
                "logging": {"level": "minimal", "log_dir": str(tmp_path / "logs")},
            }
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture(autouse=True)
def _reset_structured_logging():
    yield
    reset_run_logging()


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
