"""Gate policy, decision recording, and pending-review queries."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from pipeline_coordinator.models import (
    ActorType,
    GateDecision,
    GateDecisionType,
    GateSettings,
    WorkflowState,
    utcnow,
)
from pipeline_coordinator.orchestration.errors import GateViolation
from pipeline_coordinator.orchestration.stage_registry import StageRegistry
from pipeline_coordinator.state.checkpoint_store import CheckpointStore
from pipeline_coordinator.utils.logging_config import get_logger
from pipeline_coordinator.utils.structured_log import log_gate_decision

logger = get_logger(__name__)


class GateController:
    def __init__(
        self,
        store: CheckpointStore,
        registry: StageRegistry,
        settings: GateSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.settings = settings or GateSettings()
        self._clock = clock

    def requires_gate(self, stage_name: str) -> bool:
        return self.registry.requires_gate(stage_name)

    async def record_decision(
        self,
        unit_of_work_id: str,
        stage_name: str,
        decision: GateDecisionType,
        reviewer: str | None = None,
        feedback: str | None = None,
        actor_type: ActorType = ActorType.HUMAN,
    ) -> tuple[GateDecision, WorkflowState]:
        """Record a reviewer decision and apply it to the awaiting checkpoint."""
        if not self.requires_gate(stage_name):
            violation = GateViolation(
                "Stage does not require a gate decision",
                unit_of_work_id=unit_of_work_id,
                stage_name=stage_name,
            )
            await self.store.append_audit(
                violation.rejection_entry("gate_decision", actor_type, reviewer, timestamp=self._clock())
            )
            raise violation
        recorded, state = await self.store.record_gate_decision(
            GateDecision(
                unit_of_work_id=unit_of_work_id,
                stage_name=stage_name,
                decision=GateDecisionType(decision),
                reviewer=reviewer,
                feedback=feedback,
            ),
            actor_type=actor_type,
        )
        logger.info(
            "Gate decision for %s/%s: %s by %s",
            unit_of_work_id,
            stage_name,
            recorded.decision.value,
            reviewer or actor_type.value,
        )
        log_gate_decision(stage_name, recorded.decision.value, reviewer, feedback)
        return recorded, state

    async def current_decision(self, unit_of_work_id: str, stage_name: str) -> GateDecision | None:
        """
        Decision governing the stage's latest checkpoint.

        A checkpoint awaiting review yields a synthesized pending decision
        carrying ``pending_since``; None means the stage was never gated.
        """
        state = await self.store.load_latest(unit_of_work_id, stage_name)
        if state is None:
            return None
        if state.awaiting_gate:
            return GateDecision(
                unit_of_work_id=unit_of_work_id,
                stage_name=stage_name,
                checkpoint_id=state.id,
                decision=GateDecisionType.PENDING,
                pending_since=state.gate_requested_at,
            )
        return await self.store.latest_gate_decision(state.id)

    async def pending_since(self, unit_of_work_id: str, stage_name: str) -> datetime | None:
        state = await self.store.load_active(unit_of_work_id, stage_name)
        if state is None or not state.awaiting_gate:
            return None
        return state.gate_requested_at

    async def overdue_gates(self, now: datetime | None = None) -> list[WorkflowState]:
        """Gates pending longer than ``notify_after_hours``; escalation is the caller's job."""
        cutoff = (now or self._clock()) - timedelta(hours=self.settings.notify_after_hours)
        return await self.store.list_pending_gates(older_than=cutoff)
