"""
Coordinator Errors

Exception taxonomy raised at stage and checkpoint boundaries. Every error
carries the unit of work, stage, and checkpoint it concerns so callers can act
on it without parsing messages.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pipeline_coordinator.models.enums import (
    ActorType,
    AuditAction,
    ErrorCategory,
    ErrorClassification,
)
from pipeline_coordinator.models.workflow import AuditLogEntry, utcnow


class PipelineError(Exception):
    """Base exception for coordinator errors"""

    def __init__(
        self,
        message: str,
        *,
        unit_of_work_id: Optional[str] = None,
        stage_name: Optional[str] = None,
        checkpoint_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.unit_of_work_id = unit_of_work_id
        self.stage_name = stage_name
        self.checkpoint_id = checkpoint_id

    def with_context(
        self,
        *,
        unit_of_work_id: Optional[str] = None,
        stage_name: Optional[str] = None,
        checkpoint_id: Optional[str] = None,
    ) -> "PipelineError":
        """Fill in context fields that are still unset; returns self."""
        self.unit_of_work_id = self.unit_of_work_id or unit_of_work_id
        self.stage_name = self.stage_name or stage_name
        self.checkpoint_id = self.checkpoint_id or checkpoint_id
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "unit_of_work_id": self.unit_of_work_id,
            "stage_name": self.stage_name,
            "checkpoint_id": self.checkpoint_id,
        }

    def rejection_entry(
        self,
        operation: str,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditLogEntry:
        """Audit entry recording that ``operation`` was refused with this error."""
        return AuditLogEntry(
            unit_of_work_id=self.unit_of_work_id,
            stage_name=self.stage_name,
            checkpoint_id=self.checkpoint_id,
            actor_type=actor_type,
            actor_id=actor_id,
            action=AuditAction.OPERATION_REJECTED,
            reasoning=self.message,
            metadata={"operation": operation, "error_type": type(self).__name__},
            timestamp=timestamp or utcnow(),
        )

    def __str__(self) -> str:
        parts = [
            f"{key}={value}"
            for key, value in (
                ("unit", self.unit_of_work_id),
                ("stage", self.stage_name),
                ("checkpoint", self.checkpoint_id),
            )
            if value
        ]
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


class ExecutionError(PipelineError):
    """A stage executor failed; subclasses fix the retry classification."""

    classification: ErrorClassification = ErrorClassification.PERMANENT

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        attempts: int = 0,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.category = category
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            classification=self.classification.value,
            category=self.category.value,
            attempts=self.attempts,
        )
        return data


class TransientExecutionError(ExecutionError):
    """Network, timeout, or rate-limit failure; retryable"""

    classification = ErrorClassification.TRANSIENT


class PermanentExecutionError(ExecutionError):
    """Validation, auth, or malformed input; never retried"""

    classification = ErrorClassification.PERMANENT


class StageCancelled(PipelineError):
    """Raised by an executor that honored a cancellation request"""


class ConcurrencyViolation(PipelineError):
    """A second active checkpoint was attempted for the same stage"""


class GateViolation(PipelineError):
    """A stage was completed or decided without a valid gate state"""


class MonotonicityViolation(PipelineError):
    """A progress update would move counters backwards"""

    def __init__(self, message: str, *, current: int = 0, attempted: int = 0, **context: Any):
        super().__init__(message, **context)
        self.current = current
        self.attempted = attempted


class InvalidTransition(PipelineError):
    """The checkpoint's status does not allow the requested operation"""


class CheckpointNotFound(PipelineError):
    """No checkpoint row matches the requested id"""


class UnknownStageError(PipelineError):
    """The stage name is not registered"""


class StageOrderViolation(PipelineError):
    """A stage was started before its predecessor completed"""


class ConfigError(PipelineError):
    """Stage registration or settings are inconsistent"""
