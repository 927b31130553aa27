"""Model exports for coordinator boundaries."""

from pipeline_coordinator.models.config import (
    CoordinatorSettings,
    DatabaseSettings,
    GateSettings,
    LoggingSettings,
    RetrySettings,
    StageConfig,
)
from pipeline_coordinator.models.enums import (
    ACTIVE_STATUSES,
    SATISFIED_STATUSES,
    ActorType,
    AuditAction,
    CheckpointStatus,
    ErrorCategory,
    ErrorClassification,
    GateDecisionType,
    StageState,
)
from pipeline_coordinator.models.workflow import (
    AuditLogEntry,
    CheckpointSummary,
    ErrorRecord,
    ExecutionContext,
    GateDecision,
    InvocationResult,
    WorkflowState,
    utcnow,
)

__all__ = [
    "ACTIVE_STATUSES",
    "SATISFIED_STATUSES",
    "ActorType",
    "AuditAction",
    "AuditLogEntry",
    "CheckpointStatus",
    "CheckpointSummary",
    "CoordinatorSettings",
    "DatabaseSettings",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorRecord",
    "ExecutionContext",
    "GateDecision",
    "GateDecisionType",
    "GateSettings",
    "InvocationResult",
    "LoggingSettings",
    "RetrySettings",
    "StageConfig",
    "StageState",
    "WorkflowState",
    "utcnow",
]
