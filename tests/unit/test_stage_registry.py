"""
Unit tests for StageRegistry.
"""

import pytest

from pipeline_coordinator.models import StageConfig
from pipeline_coordinator.orchestration.errors import ConfigError, UnknownStageError
from pipeline_coordinator.orchestration.stage_registry import StageRegistry, import_executor
from tests.fixtures.executors import OutputExecutor


def test_registry_initialization():
    registry = StageRegistry()
    assert len(registry) == 0
    assert registry.order == []


def test_register_chains_predecessors():
    """Each stage defaults to depending on the one registered before it."""
    registry = (
        StageRegistry()
        .register("protocol", requires_gate=True)
        .register("search")
        .register("screening", requires_gate=True)
    )

    assert registry.order == ["protocol", "search", "screening"]
    assert registry.predecessor("protocol") is None
    assert registry.predecessor("search") == "protocol"
    assert registry.predecessor("screening") == "search"
    assert registry.requires_gate("screening")
    assert not registry.requires_gate("search")
    assert "search" in registry
    assert [stage.name for stage in registry] == registry.order


def test_explicit_predecessor():
    registry = StageRegistry().register("a").register("b").register("c", predecessor="a")
    assert registry.predecessor("c") == "a"

    independent = StageRegistry().register("a").register("b", predecessor=None)
    assert independent.predecessor("b") is None


def test_next_stage():
    registry = StageRegistry().register("a").register("b")
    assert registry.next_stage("a") == "b"
    assert registry.next_stage("b") is None


def test_duplicate_stage_rejected():
    registry = StageRegistry().register("a")
    with pytest.raises(ConfigError):
        registry.register("a")


def test_unknown_predecessor_rejected():
    with pytest.raises(ConfigError):
        StageRegistry().register("a").register("b", predecessor="missing")


def test_unknown_stage_lookup():
    with pytest.raises(UnknownStageError):
        StageRegistry().get("missing")


def test_bind_executor():
    executor = OutputExecutor()
    registry = StageRegistry().register("a").bind_executor("a", executor)
    assert registry.get("a").executor is executor


def test_import_executor_instantiates_classes():
    executor = import_executor("tests.fixtures.executors:OutputExecutor")
    assert isinstance(executor, OutputExecutor)


@pytest.mark.parametrize(
    "path",
    [
        "tests.fixtures.executors",
        "tests.fixtures.executors:Missing",
        "tests.fixtures.no_such_module:Thing",
        "tests.fixtures.executors:FakeClock",
    ],
)
def test_import_executor_rejects_bad_paths(path):
    with pytest.raises(ConfigError):
        import_executor(path)


def test_from_stage_configs():
    registry = StageRegistry.from_stage_configs(
        [
            StageConfig(name="protocol", requires_gate=True, executor="tests.fixtures.executors:OutputExecutor"),
            StageConfig(name="search"),
            StageConfig(name="screening", predecessor="protocol"),
        ]
    )
    assert registry.order == ["protocol", "search", "screening"]
    assert isinstance(registry.get("protocol").executor, OutputExecutor)
    assert registry.get("search").executor is None
    assert registry.predecessor("search") == "protocol"
    assert registry.predecessor("screening") == "protocol"
