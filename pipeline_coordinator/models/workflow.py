"""Checkpoint, gate, and audit models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from pipeline_coordinator.models.enums import (
    ActorType,
    AuditAction,
    CheckpointStatus,
    ErrorCategory,
    ErrorClassification,
    GateDecisionType,
    StageState,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorRecord(BaseModel):
    """One entry of a checkpoint's bounded error history."""

    error_type: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    classification: ErrorClassification
    message: str
    attempt: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowState(BaseModel):
    """Persisted progress and resume state for one stage execution."""

    id: str
    unit_of_work_id: str
    stage_name: str
    execution_id: str
    checkpoint_data: Dict[str, Any] = Field(default_factory=dict)
    items_processed: int = Field(ge=0, default=0)
    items_total: Optional[int] = Field(default=None, ge=0)
    last_processed_id: Optional[str] = None
    error_count: int = Field(ge=0, default=0)
    last_error_details: List[ErrorRecord] = Field(default_factory=list)
    status: CheckpointStatus = CheckpointStatus.IN_PROGRESS
    awaiting_gate: bool = False
    gate_requested_at: Optional[datetime] = None
    stage_output: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def items_remaining(self) -> Optional[int]:
        """Derived; undefined for streaming sources with no known total."""
        if self.items_total is None:
            return None
        return self.items_total - self.items_processed

    @property
    def is_active(self) -> bool:
        return self.status in (CheckpointStatus.IN_PROGRESS, CheckpointStatus.PAUSED)

    @property
    def stage_state(self) -> StageState:
        if self.status == CheckpointStatus.PAUSED:
            return StageState.AWAITING_GATE if self.awaiting_gate else StageState.PAUSED
        return StageState(self.status.value)

    @property
    def last_error(self) -> Optional[ErrorRecord]:
        return self.last_error_details[-1] if self.last_error_details else None

    def snapshot(self) -> Dict[str, Any]:
        """Compact JSON view used for audit before/after states."""
        return {
            "status": self.status.value,
            "stage_state": self.stage_state.value,
            "execution_id": self.execution_id,
            "items_processed": self.items_processed,
            "items_total": self.items_total,
            "last_processed_id": self.last_processed_id,
            "error_count": self.error_count,
            "awaiting_gate": self.awaiting_gate,
        }


class GateDecision(BaseModel):
    id: Optional[int] = None
    unit_of_work_id: str
    stage_name: str
    checkpoint_id: Optional[str] = None
    decision: GateDecisionType
    reviewer: Optional[str] = None
    feedback: Optional[str] = None
    decided_at: Optional[datetime] = None
    # Only set on the implicit pending decision of a stage awaiting review.
    pending_since: Optional[datetime] = None


class AuditLogEntry(BaseModel):
    id: Optional[int] = None
    unit_of_work_id: str
    stage_name: Optional[str] = None
    checkpoint_id: Optional[str] = None
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: Optional[str] = None
    action: AuditAction
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    reasoning: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class CheckpointSummary(BaseModel):
    """Read model handed back to callers of the trigger interface."""

    checkpoint_id: Optional[str] = None
    unit_of_work_id: str
    stage_name: str
    execution_id: Optional[str] = None
    state: StageState
    items_processed: int = 0
    items_total: Optional[int] = None
    items_remaining: Optional[int] = None
    percent_complete: Optional[float] = None
    error_count: int = 0
    last_error: Optional[ErrorRecord] = None
    pending_since: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: WorkflowState) -> "CheckpointSummary":
        percent: Optional[float] = None
        if state.items_total:
            percent = round(100.0 * state.items_processed / state.items_total, 1)
        return cls(
            checkpoint_id=state.id,
            unit_of_work_id=state.unit_of_work_id,
            stage_name=state.stage_name,
            execution_id=state.execution_id,
            state=state.stage_state,
            items_processed=state.items_processed,
            items_total=state.items_total,
            items_remaining=state.items_remaining,
            percent_complete=percent,
            error_count=state.error_count,
            last_error=state.last_error,
            pending_since=state.gate_requested_at if state.awaiting_gate else None,
            updated_at=state.updated_at,
        )

    @classmethod
    def not_started(cls, unit_of_work_id: str, stage_name: str) -> "CheckpointSummary":
        return cls(
            unit_of_work_id=unit_of_work_id,
            stage_name=stage_name,
            state=StageState.NOT_STARTED,
        )


class ExecutionContext(BaseModel):
    """Per-trigger context supplied by the surrounding application."""

    execution_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    items_total: Optional[int] = Field(default=None, ge=0)
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InvocationResult(BaseModel):
    unit_of_work_id: str
    stage_name: Optional[str] = None
    status: StageState
    checkpoint: Optional[CheckpointSummary] = None
    next_stage: Optional[str] = None
    message: str = ""
