"""
Stage Registry

Static, ordered stage registration. Order is registration order; each stage
names one predecessor that must complete first.
"""

import importlib
import inspect
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from pipeline_coordinator.models import CoordinatorSettings, StageConfig
from pipeline_coordinator.orchestration.errors import ConfigError, UnknownStageError
from pipeline_coordinator.orchestration.executor import StageExecutor
from pipeline_coordinator.utils.logging_config import get_logger

logger = get_logger(__name__)

_UNSET: Any = object()


@dataclass
class StageDefinition:
    """Definition of a pipeline stage."""

    name: str
    order: int
    predecessor: Optional[str] = None  # Stage that must be completed first
    requires_gate: bool = False  # Human or agent review before completion
    executor: Optional[StageExecutor] = None
    description: str = ""


def import_executor(path: str) -> StageExecutor:
    """
    Resolve a ``package.module:attribute`` path to an executor.

    A class or zero-argument factory is called; anything else is used as is.

    Args:
        path: Dotted import path with a colon before the attribute

    Returns:
        Object with an async ``run`` method

    Raises:
        ConfigError: If the path cannot be imported or is not an executor
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Executor path must look like 'package.module:attribute', got '{path}'")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot import executor '{path}': {e}") from e

    executor = target
    if inspect.isclass(target) or (callable(target) and not isinstance(target, StageExecutor)):
        executor = target()
    if not isinstance(executor, StageExecutor):
        raise ConfigError(f"Executor '{path}' has no async run() method")
    return executor


class StageRegistry:
    """Registry for pipeline stages with predecessor checks."""

    def __init__(self):
        self.stages: Dict[str, StageDefinition] = {}
        self._order: List[str] = []

    def register(
        self,
        name: str,
        executor: Optional[StageExecutor] = None,
        requires_gate: bool = False,
        predecessor: Optional[str] = _UNSET,
        description: str = "",
    ) -> "StageRegistry":
        """
        Register a stage after the ones already registered.

        Args:
            name: Stage name
            executor: Executor for the stage; may be bound later
            requires_gate: Whether completion needs an approved gate decision
            predecessor: Stage that must complete first; defaults to the
                previously registered stage, None for no predecessor
            description: Human-readable description

        Returns:
            Self for method chaining

        Raises:
            ConfigError: On duplicate names or an unregistered predecessor
        """
        if not name:
            raise ConfigError("Stage name must be non-empty")
        if name in self.stages:
            raise ConfigError(f"Stage '{name}' already registered", stage_name=name)
        if predecessor is _UNSET:
            predecessor = self._order[-1] if self._order else None
        if predecessor is not None and predecessor not in self.stages:
            raise ConfigError(
                f"Stage '{name}' depends on '{predecessor}' which is not registered",
                stage_name=name,
            )

        self.stages[name] = StageDefinition(
            name=name,
            order=len(self._order),
            predecessor=predecessor,
            requires_gate=requires_gate,
            executor=executor,
            description=description,
        )
        self._order.append(name)
        return self

    def bind_executor(self, name: str, executor: StageExecutor) -> "StageRegistry":
        self.get(name).executor = executor
        return self

    @classmethod
    def from_settings(cls, settings: CoordinatorSettings) -> "StageRegistry":
        return cls.from_stage_configs(settings.stages)

    @classmethod
    def from_stage_configs(cls, stages: List[StageConfig]) -> "StageRegistry":
        registry = cls()
        for stage in stages:
            executor = import_executor(stage.executor) if stage.executor else None
            kwargs: Dict[str, Any] = {}
            if "predecessor" in stage.model_fields_set:
                kwargs["predecessor"] = stage.predecessor
            registry.register(
                stage.name,
                executor=executor,
                requires_gate=stage.requires_gate,
                description=stage.description,
                **kwargs,
            )
        logger.debug("Registered stages: %s", ", ".join(registry.order))
        return registry

    def get(self, name: str) -> StageDefinition:
        stage = self.stages.get(name)
        if stage is None:
            raise UnknownStageError(f"Stage '{name}' is not registered", stage_name=name)
        return stage

    def requires_gate(self, name: str) -> bool:
        return self.get(name).requires_gate

    def predecessor(self, name: str) -> Optional[str]:
        return self.get(name).predecessor

    def next_stage(self, name: str) -> Optional[str]:
        """Stage registered after ``name``, or None for the last stage."""
        index = self.get(name).order + 1
        return self._order[index] if index < len(self._order) else None

    @property
    def order(self) -> List[str]:
        return list(self._order)

    def __iter__(self) -> Iterator[StageDefinition]:
        return (self.stages[name] for name in self._order)

    def __len__(self) -> int:
        return len(self.stages)

    def __contains__(self, name: str) -> bool:
        return name in self.stages
