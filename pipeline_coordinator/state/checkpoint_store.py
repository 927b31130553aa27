"""
Checkpoint Store Contract

Persistence interface for workflow state, gate decisions, and the audit log.
Every mutating operation is atomic and writes its audit row in the same
transaction as the state change it describes. A refused operation is rolled
back and then recorded as an operation_rejected entry of its own.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pipeline_coordinator.models import (
    ActorType,
    AuditLogEntry,
    ErrorRecord,
    GateDecision,
    WorkflowState,
)


class CheckpointStore(ABC):
    """Abstract base class for checkpoint stores."""

    @abstractmethod
    async def load_active(self, unit_of_work_id: str, stage_name: str) -> Optional[WorkflowState]:
        """
        Load the in_progress or paused checkpoint for a stage.

        Args:
            unit_of_work_id: Unit of work id
            stage_name: Stage name

        Returns:
            Active checkpoint or None
        """
        pass

    @abstractmethod
    async def load(self, checkpoint_id: str) -> WorkflowState:
        """
        Load a checkpoint by id.

        Raises:
            CheckpointNotFound: If no row has that id
        """
        pass

    @abstractmethod
    async def load_latest(self, unit_of_work_id: str, stage_name: str) -> Optional[WorkflowState]:
        """Most recently created checkpoint for a stage, whatever its status."""
        pass

    @abstractmethod
    async def list_states(
        self, unit_of_work_id: str, stage_name: Optional[str] = None
    ) -> List[WorkflowState]:
        pass

    @abstractmethod
    async def create_or_resume(
        self,
        unit_of_work_id: str,
        stage_name: str,
        execution_id: str,
        items_total: Optional[int] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> Tuple[WorkflowState, bool]:
        """
        Return the active checkpoint unchanged, or create one at zero progress.

        Args:
            unit_of_work_id: Unit of work id
            stage_name: Stage name
            execution_id: Execution id stamped on a new row
            items_total: Known item count, None for streaming sources
            actor_type: Actor recorded on the creation audit entry
            actor_id: Optional actor identifier

        Returns:
            (checkpoint, created) where created is False on resume
        """
        pass

    @abstractmethod
    async def start_rerun(
        self,
        unit_of_work_id: str,
        stage_name: str,
        execution_id: str,
        items_total: Optional[int] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        reasoning: str = "",
    ) -> WorkflowState:
        """
        Insert a fresh checkpoint for a deliberate re-run.

        Raises:
            ConcurrencyViolation: If the stage already has an active checkpoint
        """
        pass

    @abstractmethod
    async def record_progress(
        self,
        checkpoint_id: str,
        items_processed: int,
        last_processed_id: Optional[str] = None,
        checkpoint_data: Optional[Dict[str, Any]] = None,
    ) -> WorkflowState:
        """
        Persist one progress batch.

        Raises:
            MonotonicityViolation: If the count decreases or exceeds items_total
            InvalidTransition: If the checkpoint is not in_progress
        """
        pass

    @abstractmethod
    async def record_failure(
        self,
        checkpoint_id: str,
        error: ErrorRecord,
        terminal: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowState:
        """
        Record a failed attempt; terminal failures move the checkpoint to failed.

        Writes a retry_scheduled or stage_failed audit entry.
        """
        pass

    @abstractmethod
    async def mark_awaiting_gate(
        self,
        checkpoint_id: str,
        stage_output: Optional[Dict[str, Any]] = None,
    ) -> WorkflowState:
        pass

    @abstractmethod
    async def resume(
        self,
        checkpoint_id: str,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        reasoning: str = "",
    ) -> WorkflowState:
        """Move a paused checkpoint that is not awaiting review back to in_progress."""
        pass

    @abstractmethod
    async def pause(
        self,
        checkpoint_id: str,
        reason: str = "",
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> WorkflowState:
        pass

    @abstractmethod
    async def skip(
        self,
        unit_of_work_id: str,
        stage_name: str,
        execution_id: str,
        reason: str = "",
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> WorkflowState:
        """
        Mark a stage skipped so later stages may run.

        An active checkpoint moves to skipped; otherwise a skipped row is
        inserted, leaving earlier history untouched.

        Raises:
            InvalidTransition: If the stage is awaiting review or already
                completed or skipped
        """
        pass

    @abstractmethod
    async def complete(
        self,
        checkpoint_id: str,
        requires_gate: bool,
        stage_output: Optional[Dict[str, Any]] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> WorkflowState:
        """
        Mark a checkpoint completed.

        Raises:
            GateViolation: If gated and the latest decision is not approved
        """
        pass

    @abstractmethod
    async def record_gate_decision(
        self,
        decision: GateDecision,
        actor_type: ActorType = ActorType.HUMAN,
    ) -> Tuple[GateDecision, WorkflowState]:
        """
        Record a decision against the stage's awaiting checkpoint and apply it.

        approved completes the checkpoint, rejected pauses it for revision,
        pending leaves it waiting.

        Raises:
            GateViolation: If nothing is awaiting review for the stage
        """
        pass

    @abstractmethod
    async def latest_gate_decision(self, checkpoint_id: str) -> Optional[GateDecision]:
        pass

    @abstractmethod
    async def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        pass

    @abstractmethod
    async def get_audit_trail(
        self, unit_of_work_id: str, stage_name: Optional[str] = None
    ) -> List[AuditLogEntry]:
        pass

    @abstractmethod
    async def list_pending_gates(self, older_than: Optional[datetime] = None) -> List[WorkflowState]:
        """Checkpoints awaiting review, optionally only those requested before older_than."""
        pass

    @abstractmethod
    async def list_stale_checkpoints(self, older_than: datetime) -> List[WorkflowState]:
        """in_progress checkpoints not updated since older_than (likely crashed runs)."""
        pass
