import pytest

from pipeline_coordinator.db.database import get_db
from pipeline_coordinator.db.repositories import SqliteCheckpointStore
from pipeline_coordinator.models import ActorType, AuditAction, GateDecisionType, GateSettings
from pipeline_coordinator.orchestration.errors import GateViolation
from pipeline_coordinator.orchestration.gates import GateController
from pipeline_coordinator.orchestration.stage_registry import StageRegistry


def _registry() -> StageRegistry:
    return StageRegistry().register("search").register("screening", requires_gate=True)


@pytest.mark.asyncio
async def test_requires_gate_follows_registry(db_path) -> None:
    async with get_db(db_path) as db:
        gates = GateController(SqliteCheckpointStore(db), _registry())
        assert gates.requires_gate("screening")
        assert not gates.requires_gate("search")


@pytest.mark.asyncio
async def test_decision_on_ungated_stage_is_rejected(db_path) -> None:
    async with get_db(db_path) as db:
        store = SqliteCheckpointStore(db)
        gates = GateController(store, _registry())
        state, _ = await store.create_or_resume("uow-1", "search", "exec-1")
        await store.mark_awaiting_gate(state.id)
        with pytest.raises(GateViolation):
            await gates.record_decision("uow-1", "search", GateDecisionType.APPROVED, reviewer="bob")

        rejected = (await store.get_audit_trail("uow-1", "search"))[-1]
        assert rejected.action == AuditAction.OPERATION_REJECTED
        assert rejected.actor_type == ActorType.HUMAN
        assert rejected.actor_id == "bob"
        assert rejected.metadata == {"operation": "gate_decision", "error_type": "GateViolation"}
        assert (await store.load(state.id)).awaiting_gate is True


@pytest.mark.asyncio
async def test_current_decision_lifecycle(db_path, clock) -> None:
    async with get_db(db_path) as db:
        store = SqliteCheckpointStore(db, clock=clock)
        gates = GateController(store, _registry(), clock=clock)
        assert await gates.current_decision("uow-1", "screening") is None

        state, _ = await store.create_or_resume("uow-1", "screening", "exec-1")
        assert await gates.current_decision("uow-1", "screening") is None
        assert await gates.pending_since("uow-1", "screening") is None

        await store.mark_awaiting_gate(state.id)
        pending = await gates.current_decision("uow-1", "screening")
        assert pending.decision == GateDecisionType.PENDING
        assert pending.pending_since == clock()
        assert await gates.pending_since("uow-1", "screening") == clock()

        clock.advance(minutes=5)
        decision, completed = await gates.record_decision(
            "uow-1",
            "screening",
            GateDecisionType.APPROVED,
            reviewer="agent-7",
            actor_type=ActorType.AUTOMATED_AGENT,
        )
        assert decision.decided_at == clock()
        assert completed.status.value == "completed"

        current = await gates.current_decision("uow-1", "screening")
        assert current.decision == GateDecisionType.APPROVED
        assert current.reviewer == "agent-7"
        assert await gates.pending_since("uow-1", "screening") is None

        trail = await store.get_audit_trail("uow-1", "screening")
        gate_entry = next(e for e in trail if e.action.value == "gate_decision")
        assert gate_entry.actor_type == ActorType.AUTOMATED_AGENT
        assert gate_entry.actor_id == "agent-7"


@pytest.mark.asyncio
async def test_overdue_gates(db_path, clock) -> None:
    async with get_db(db_path) as db:
        store = SqliteCheckpointStore(db, clock=clock)
        gates = GateController(store, _registry(), GateSettings(notify_after_hours=24), clock=clock)
        state, _ = await store.create_or_resume("uow-1", "screening", "exec-1")
        await store.mark_awaiting_gate(state.id)

        clock.advance(hours=23)
        assert await gates.overdue_gates() == []

        clock.advance(hours=2)
        overdue = await gates.overdue_gates()
        assert [s.id for s in overdue] == [state.id]
