"""Enum definitions for checkpoint, gate, and audit records."""

from enum import Enum


class CheckpointStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


ACTIVE_STATUSES = (CheckpointStatus.IN_PROGRESS, CheckpointStatus.PAUSED)
# Statuses that let the next stage start.
SATISFIED_STATUSES = (CheckpointStatus.COMPLETED, CheckpointStatus.SKIPPED)


class StageState(str, Enum):
    """Coordinator-level view of one (unit of work, stage) pair."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    AWAITING_GATE = "awaiting_gate"
    PAUSED = "paused"  # revision required or cancelled
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class GateDecisionType(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"


class ActorType(str, Enum):
    SYSTEM = "system"
    HUMAN = "human"
    AUTOMATED_AGENT = "automated-agent"


class ErrorClassification(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    AUTH_ERROR = "auth_error"
    VALIDATION_ERROR = "validation_error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class AuditAction(str, Enum):
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_RESUMED = "checkpoint_resumed"
    PROGRESS_REJECTED = "progress_rejected"
    RETRY_SCHEDULED = "retry_scheduled"
    STAGE_FAILED = "stage_failed"
    AWAITING_GATE = "awaiting_gate"
    GATE_DECISION = "gate_decision"
    STAGE_COMPLETED = "stage_completed"
    STAGE_PAUSED = "stage_paused"
    STAGE_RERUN = "stage_rerun"
    STAGE_SKIPPED = "stage_skipped"
    OPERATION_REJECTED = "operation_rejected"
