"""Pipeline Orchestration Module."""

from .coordinator import PipelineCoordinator
from .errors import (
    CheckpointNotFound,
    ConcurrencyViolation,
    ConfigError,
    ExecutionError,
    GateViolation,
    InvalidTransition,
    MonotonicityViolation,
    PermanentExecutionError,
    PipelineError,
    StageCancelled,
    StageOrderViolation,
    TransientExecutionError,
    UnknownStageError,
)
from .executor import (
    BatchStageExecutor,
    CancelSignal,
    ProgressReporter,
    ResumePoint,
    StageExecutor,
    StageResult,
)
from .gates import GateController
from .retry_policy import RetryPolicy, categorize_error
from .stage_registry import StageDefinition, StageRegistry

__all__ = [
    "BatchStageExecutor",
    "CancelSignal",
    "CheckpointNotFound",
    "ConcurrencyViolation",
    "ConfigError",
    "ExecutionError",
    "GateController",
    "GateViolation",
    "InvalidTransition",
    "MonotonicityViolation",
    "PermanentExecutionError",
    "PipelineCoordinator",
    "PipelineError",
    "ProgressReporter",
    "ResumePoint",
    "RetryPolicy",
    "StageCancelled",
    "StageDefinition",
    "StageExecutor",
    "StageOrderViolation",
    "StageRegistry",
    "StageResult",
    "TransientExecutionError",
    "UnknownStageError",
    "categorize_error",
]
