"""SQLite implementation of the checkpoint store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import aiosqlite

from pipeline_coordinator.models import (
    ActorType,
    AuditAction,
    AuditLogEntry,
    CheckpointStatus,
    ErrorRecord,
    GateDecision,
    GateDecisionType,
    SATISFIED_STATUSES,
    WorkflowState,
    utcnow,
)
from pipeline_coordinator.orchestration.errors import (
    CheckpointNotFound,
    ConcurrencyViolation,
    GateViolation,
    InvalidTransition,
    MonotonicityViolation,
    PipelineError,
)
from pipeline_coordinator.state.checkpoint_store import CheckpointStore
from pipeline_coordinator.utils.logging_config import get_logger

logger = get_logger(__name__)

_STATE_COLUMNS = """
    id, unit_of_work_id, stage_name, execution_id, checkpoint_data,
    items_processed, items_total, last_processed_id, error_count,
    last_error_details, status, awaiting_gate, gate_requested_at,
    stage_output, created_at, updated_at
"""

_ACTIVE_CLAUSE = "status IN ('in_progress', 'paused')"

# Refusals worth a trail entry; progress regressions are audited by the caller.
_AUDITED_REJECTIONS = (ConcurrencyViolation, GateViolation, InvalidTransition)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)


def _row_to_state(row: aiosqlite.Row) -> WorkflowState:
    """Convert a workflow_state row to WorkflowState."""
    errors_raw = _loads(row["last_error_details"], [])
    return WorkflowState(
        id=str(row["id"]),
        unit_of_work_id=str(row["unit_of_work_id"]),
        stage_name=str(row["stage_name"]),
        execution_id=str(row["execution_id"]),
        checkpoint_data=_loads(row["checkpoint_data"], {}),
        items_processed=int(row["items_processed"]),
        items_total=int(row["items_total"]) if row["items_total"] is not None else None,
        last_processed_id=row["last_processed_id"],
        error_count=int(row["error_count"]),
        last_error_details=[ErrorRecord.model_validate(item) for item in errors_raw],
        status=CheckpointStatus(row["status"]),
        awaiting_gate=bool(row["awaiting_gate"]),
        gate_requested_at=_parse_ts(row["gate_requested_at"]),
        stage_output=_loads(row["stage_output"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_decision(row: aiosqlite.Row) -> GateDecision:
    return GateDecision(
        id=int(row["id"]),
        unit_of_work_id=str(row["unit_of_work_id"]),
        stage_name=str(row["stage_name"]),
        checkpoint_id=str(row["checkpoint_id"]),
        decision=GateDecisionType(row["decision"]),
        reviewer=row["reviewer"],
        feedback=row["feedback"],
        decided_at=_parse_ts(row["decided_at"]),
    )


def _row_to_audit(row: aiosqlite.Row) -> AuditLogEntry:
    return AuditLogEntry(
        id=int(row["id"]),
        unit_of_work_id=str(row["unit_of_work_id"]),
        stage_name=row["stage_name"],
        checkpoint_id=row["checkpoint_id"],
        actor_type=ActorType(row["actor_type"]),
        actor_id=row["actor_id"],
        action=AuditAction(row["action"]),
        before_state=_loads(row["before_state"]),
        after_state=_loads(row["after_state"]),
        reasoning=row["reasoning"] or "",
        metadata=_loads(row["metadata"], {}),
        timestamp=_parse_ts(row["timestamp"]),
    )


class SqliteCheckpointStore(CheckpointStore):
    """
    Checkpoint store backed by one aiosqlite connection.

    The connection must be opened in autocommit mode (see ``get_db``). Writes
    on this connection are serialized by an asyncio lock; writers on other
    connections or processes are serialized by ``BEGIN IMMEDIATE`` and the
    busy timeout, and the partial unique index rejects a second active row.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        error_history_size: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        if error_history_size < 1:
            raise ValueError("error_history_size must be >= 1")
        self.db = db
        self.error_history_size = error_history_size
        self._clock = clock
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _transaction(
        self,
        operation: Optional[str] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> AsyncIterator[None]:
        """
        Serialize one write transaction on this connection.

        When ``operation`` is given, a rejection raised inside the block is
        rolled back and then recorded as an operation_rejected audit entry.
        """
        async with self._lock:
            try:
                await self.db.execute("BEGIN IMMEDIATE")
                yield
                await self.db.execute("COMMIT")
            except BaseException as exc:
                await self._rollback()
                if (
                    operation is not None
                    and isinstance(exc, _AUDITED_REJECTIONS)
                    and exc.unit_of_work_id is not None
                ):
                    await self._audit_rejection(exc, operation, actor_type, actor_id)
                raise

    async def _rollback(self) -> None:
        # A cancelled BEGIN may still be queued on the connection thread; the
        # round trip guarantees it has run before in_transaction is checked.
        await self.db.execute("SELECT 1")
        if self.db.in_transaction:
            await self.db.execute("ROLLBACK")

    async def _audit_rejection(
        self,
        error: PipelineError,
        operation: str,
        actor_type: ActorType,
        actor_id: Optional[str],
    ) -> None:
        """Append an operation_rejected entry in its own transaction; caller holds the lock."""
        entry = error.rejection_entry(operation, actor_type, actor_id, timestamp=self._clock())
        try:
            await self.db.execute("BEGIN IMMEDIATE")
            await self._insert_audit(entry)
            await self.db.execute("COMMIT")
        except BaseException:
            await self._rollback()
            raise
        logger.debug(
            "Rejected %s on %s/%s: %s", operation, error.unit_of_work_id, error.stage_name, error.message
        )

    # ------------------------------------------------------------------
    # Row helpers; callers hold the lock
    # ------------------------------------------------------------------

    async def _fetch_state(self, sql: str, params: Tuple[Any, ...]) -> Optional[WorkflowState]:
        async with self.db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return _row_to_state(row) if row is not None else None

    async def _fetch_states(self, sql: str, params: Tuple[Any, ...]) -> List[WorkflowState]:
        async with self.db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_state(row) for row in rows]

    async def _select_active(self, unit_of_work_id: str, stage_name: str) -> Optional[WorkflowState]:
        return await self._fetch_state(
            f"""
            SELECT {_STATE_COLUMNS} FROM workflow_state
            WHERE unit_of_work_id = ? AND stage_name = ? AND {_ACTIVE_CLAUSE}
            """,
            (unit_of_work_id, stage_name),
        )

    async def _select_latest(self, unit_of_work_id: str, stage_name: str) -> Optional[WorkflowState]:
        return await self._fetch_state(
            f"""
            SELECT {_STATE_COLUMNS} FROM workflow_state
            WHERE unit_of_work_id = ? AND stage_name = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (unit_of_work_id, stage_name),
        )

    async def _require(self, checkpoint_id: str) -> WorkflowState:
        state = await self._fetch_state(
            f"SELECT {_STATE_COLUMNS} FROM workflow_state WHERE id = ?",
            (checkpoint_id,),
        )
        if state is None:
            raise CheckpointNotFound(
                "Checkpoint not found",
                checkpoint_id=checkpoint_id,
            )
        return state

    async def _select_latest_decision(self, checkpoint_id: str) -> Optional[GateDecision]:
        async with self.db.execute(
            """
            SELECT id, unit_of_work_id, stage_name, checkpoint_id, decision,
                   reviewer, feedback, decided_at
            FROM gate_decisions
            WHERE checkpoint_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (checkpoint_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_decision(row) if row is not None else None

    async def _insert_state(self, state: WorkflowState) -> None:
        await self.db.execute(
            f"""
            INSERT INTO workflow_state ({_STATE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                state.id,
                state.unit_of_work_id,
                state.stage_name,
                state.execution_id,
                _dumps(state.checkpoint_data),
                state.items_processed,
                state.items_total,
                state.last_processed_id,
                state.error_count,
                _dumps([e.model_dump(mode="json") for e in state.last_error_details]),
                state.status.value,
                1 if state.awaiting_gate else 0,
                _ts(state.gate_requested_at),
                _dumps(state.stage_output),
                _ts(state.created_at),
                _ts(state.updated_at),
            ),
        )

    async def _write_state(self, state: WorkflowState) -> None:
        await self.db.execute(
            """
            UPDATE workflow_state SET
                execution_id = ?,
                checkpoint_data = ?,
                items_processed = ?,
                items_total = ?,
                last_processed_id = ?,
                error_count = ?,
                last_error_details = ?,
                status = ?,
                awaiting_gate = ?,
                gate_requested_at = ?,
                stage_output = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                state.execution_id,
                _dumps(state.checkpoint_data),
                state.items_processed,
                state.items_total,
                state.last_processed_id,
                state.error_count,
                _dumps([e.model_dump(mode="json") for e in state.last_error_details]),
                state.status.value,
                1 if state.awaiting_gate else 0,
                _ts(state.gate_requested_at),
                _dumps(state.stage_output),
                _ts(state.updated_at),
                state.id,
            ),
        )

    async def _insert_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        cursor = await self.db.execute(
            """
            INSERT INTO audit_log (
                unit_of_work_id, stage_name, checkpoint_id, actor_type, actor_id,
                action, before_state, after_state, reasoning, metadata, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.unit_of_work_id,
                entry.stage_name,
                entry.checkpoint_id,
                entry.actor_type.value,
                entry.actor_id,
                entry.action.value,
                _dumps(entry.before_state),
                _dumps(entry.after_state),
                entry.reasoning,
                _dumps(entry.metadata or {}),
                _ts(entry.timestamp),
            ),
        )
        return entry.model_copy(update={"id": cursor.lastrowid})

    async def _transition(
        self,
        before: Optional[WorkflowState],
        after: WorkflowState,
        action: AuditAction,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        reasoning: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowState:
        """Audit then persist a state change; caller owns the transaction."""
        await self._insert_audit(
            AuditLogEntry(
                unit_of_work_id=after.unit_of_work_id,
                stage_name=after.stage_name,
                checkpoint_id=after.id,
                actor_type=actor_type,
                actor_id=actor_id,
                action=action,
                before_state=before.snapshot() if before is not None else None,
                after_state=after.snapshot(),
                reasoning=reasoning,
                metadata={"execution_id": after.execution_id, **(metadata or {})},
                timestamp=after.updated_at,
            )
        )
        if before is None:
            await self._insert_state(after)
        else:
            await self._write_state(after)
        return after

    def _new_state(
        self,
        unit_of_work_id: str,
        stage_name: str,
        execution_id: str,
        items_total: Optional[int],
    ) -> WorkflowState:
        now = self._clock()
        return WorkflowState(
            id=uuid.uuid4().hex,
            unit_of_work_id=unit_of_work_id,
            stage_name=stage_name,
            execution_id=execution_id,
            items_total=items_total,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _require_status(state: WorkflowState, *allowed: CheckpointStatus, operation: str) -> None:
        if state.status not in allowed:
            raise InvalidTransition(
                f"Cannot {operation} a {state.status.value} checkpoint",
                unit_of_work_id=state.unit_of_work_id,
                stage_name=state.stage_name,
                checkpoint_id=state.id,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_active(self, unit_of_work_id: str, stage_name: str) -> Optional[WorkflowState]:
        async with self._lock:
            return await self._select_active(unit_of_work_id, stage_name)

    async def load(self, checkpoint_id: str) -> WorkflowState:
        async with self._lock:
            return await self._require(checkpoint_id)

    async def load_latest(self, unit_of_work_id: str, stage_name: str) -> Optional[WorkflowState]:
        async with self._lock:
            return await self._select_latest(unit_of_work_id, stage_name)

    async def list_states(
        self, unit_of_work_id: str, stage_name: Optional[str] = None
    ) -> List[WorkflowState]:
        sql = f"SELECT {_STATE_COLUMNS} FROM workflow_state WHERE unit_of_work_id = ?"
        params: Tuple[Any, ...] = (unit_of_work_id,)
        if stage_name is not None:
            sql += " AND stage_name = ?"
            params += (stage_name,)
        sql += " ORDER BY created_at, rowid"
        async with self._lock:
            return await self._fetch_states(sql, params)

    async def latest_gate_decision(self, checkpoint_id: str) -> Optional[GateDecision]:
        async with self._lock:
            return await self._select_latest_decision(checkpoint_id)

    async def get_audit_trail(
        self, unit_of_work_id: str, stage_name: Optional[str] = None
    ) -> List[AuditLogEntry]:
        sql = """
            SELECT id, unit_of_work_id, stage_name, checkpoint_id, actor_type, actor_id,
                   action, before_state, after_state, reasoning, metadata, timestamp
            FROM audit_log
            WHERE unit_of_work_id = ?
        """
        params: Tuple[Any, ...] = (unit_of_work_id,)
        if stage_name is not None:
            sql += " AND stage_name = ?"
            params += (stage_name,)
        sql += " ORDER BY id"
        async with self._lock:
            async with self.db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_audit(row) for row in rows]

    async def list_pending_gates(self, older_than: Optional[datetime] = None) -> List[WorkflowState]:
        sql = f"""
            SELECT {_STATE_COLUMNS} FROM workflow_state
            WHERE status = 'paused' AND awaiting_gate = 1
        """
        params: Tuple[Any, ...] = ()
        if older_than is not None:
            sql += " AND gate_requested_at <= ?"
            params = (_ts(older_than),)
        sql += " ORDER BY gate_requested_at"
        async with self._lock:
            return await self._fetch_states(sql, params)

    async def list_stale_checkpoints(self, older_than: datetime) -> List[WorkflowState]:
        async with self._lock:
            return await self._fetch_states(
                f"""
                SELECT {_STATE_COLUMNS} FROM workflow_state
                WHERE status = 'in_progress' AND updated_at < ?
                ORDER BY updated_at
                """,
                (_ts(older_than),),
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_or_resume(
        self,
        unit_of_work_id: str,
        stage_name: str,
        execution_id: str,
        items_total: Optional[int] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> Tuple[WorkflowState, bool]:
        try:
            async with self._transaction("create", actor_type, actor_id):
                existing = await self._select_active(unit_of_work_id, stage_name)
                if existing is not None:
                    return existing, False
                state = self._new_state(unit_of_work_id, stage_name, execution_id, items_total)
                await self._transition(
                    None,
                    state,
                    AuditAction.CHECKPOINT_CREATED,
                    actor_type=actor_type,
                    actor_id=actor_id,
                    reasoning="stage started",
                )
                return state, True
        except sqlite3.IntegrityError as exc:
            # Another writer committed the active row first.
            logger.debug("Active checkpoint race on %s/%s: %s", unit_of_work_id, stage_name, exc)
            async with self._lock:
                winner = await self._select_active(unit_of_work_id, stage_name)
            if winner is None:
                raise ConcurrencyViolation(
                    "Concurrent checkpoint creation could not be resolved",
                    unit_of_work_id=unit_of_work_id,
                    stage_name=stage_name,
                ) from exc
            return winner, False

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
        try:
            async with self._transaction("rerun", actor_type, actor_id):
                existing = await self._select_active(unit_of_work_id, stage_name)
                if existing is not None:
                    raise ConcurrencyViolation(
                        "Stage already has an active checkpoint",
                        unit_of_work_id=unit_of_work_id,
                        stage_name=stage_name,
                        checkpoint_id=existing.id,
                    )
                state = self._new_state(unit_of_work_id, stage_name, execution_id, items_total)
                await self._transition(
                    None,
                    state,
                    AuditAction.STAGE_RERUN,
                    actor_type=actor_type,
                    actor_id=actor_id,
                    reasoning=reasoning or "stage re-run requested",
                )
                return state
        except sqlite3.IntegrityError as exc:
            violation = ConcurrencyViolation(
                "Stage already has an active checkpoint",
                unit_of_work_id=unit_of_work_id,
                stage_name=stage_name,
            )
            async with self._lock:
                await self._audit_rejection(violation, "rerun", actor_type, actor_id)
            raise violation from exc

    async def record_progress(
        self,
        checkpoint_id: str,
        items_processed: int,
        last_processed_id: Optional[str] = None,
        checkpoint_data: Optional[Dict[str, Any]] = None,
    ) -> WorkflowState:
        async with self._transaction("record_progress"):
            state = await self._require(checkpoint_id)
            self._require_status(state, CheckpointStatus.IN_PROGRESS, operation="record progress on")
            context = {
                "unit_of_work_id": state.unit_of_work_id,
                "stage_name": state.stage_name,
                "checkpoint_id": state.id,
            }
            if items_processed < state.items_processed:
                raise MonotonicityViolation(
                    f"items_processed cannot decrease from {state.items_processed} to {items_processed}",
                    current=state.items_processed,
                    attempted=items_processed,
                    **context,
                )
            if state.items_total is not None and items_processed > state.items_total:
                raise MonotonicityViolation(
                    f"items_processed {items_processed} exceeds items_total {state.items_total}",
                    current=state.items_processed,
                    attempted=items_processed,
                    **context,
                )
            updated = state.model_copy(
                update={
                    "items_processed": items_processed,
                    "last_processed_id": (
                        last_processed_id if last_processed_id is not None else state.last_processed_id
                    ),
                    "checkpoint_data": (
                        checkpoint_data if checkpoint_data is not None else state.checkpoint_data
                    ),
                    "updated_at": self._clock(),
                }
            )
            await self._write_state(updated)
            return updated

    async def record_failure(
        self,
        checkpoint_id: str,
        error: ErrorRecord,
        terminal: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowState:
        async with self._transaction("record_failure"):
            state = await self._require(checkpoint_id)
            self._require_status(state, CheckpointStatus.IN_PROGRESS, operation="record a failure on")
            history = (state.last_error_details + [error])[-self.error_history_size:]
            updated = state.model_copy(
                update={
                    "error_count": state.error_count + 1,
                    "last_error_details": history,
                    "status": CheckpointStatus.FAILED if terminal else CheckpointStatus.IN_PROGRESS,
                    "updated_at": self._clock(),
                }
            )
            audit_metadata = {
                "attempt": error.attempt,
                "error_type": error.error_type,
                "category": error.category.value,
                "classification": error.classification.value,
                **(metadata or {}),
            }
            return await self._transition(
                state,
                updated,
                AuditAction.STAGE_FAILED if terminal else AuditAction.RETRY_SCHEDULED,
                reasoning=error.message,
                metadata=audit_metadata,
            )

    async def mark_awaiting_gate(
        self,
        checkpoint_id: str,
        stage_output: Optional[Dict[str, Any]] = None,
    ) -> WorkflowState:
        async with self._transaction("request_review"):
            state = await self._require(checkpoint_id)
            self._require_status(state, CheckpointStatus.IN_PROGRESS, operation="request review for")
            now = self._clock()
            updated = state.model_copy(
                update={
                    "status": CheckpointStatus.PAUSED,
                    "awaiting_gate": True,
                    "gate_requested_at": now,
                    "stage_output": stage_output if stage_output is not None else state.stage_output,
                    "updated_at": now,
                }
            )
            return await self._transition(
                state, updated, AuditAction.AWAITING_GATE, reasoning="stage output awaiting review"
            )

    async def resume(
        self,
        checkpoint_id: str,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        reasoning: str = "",
    ) -> WorkflowState:
        async with self._transaction("resume", actor_type, actor_id):
            state = await self._require(checkpoint_id)
            self._require_status(state, CheckpointStatus.PAUSED, operation="resume")
            if state.awaiting_gate:
                raise GateViolation(
                    "Stage is awaiting a gate decision",
                    unit_of_work_id=state.unit_of_work_id,
                    stage_name=state.stage_name,
                    checkpoint_id=state.id,
                )
            updated = state.model_copy(
                update={"status": CheckpointStatus.IN_PROGRESS, "updated_at": self._clock()}
            )
            return await self._transition(
                state,
                updated,
                AuditAction.CHECKPOINT_RESUMED,
                actor_type=actor_type,
                actor_id=actor_id,
                reasoning=reasoning or "resumed from paused checkpoint",
            )

    async def pause(
        self,
        checkpoint_id: str,
        reason: str = "",
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> WorkflowState:
        async with self._transaction("pause", actor_type, actor_id):
            state = await self._require(checkpoint_id)
            if state.status == CheckpointStatus.PAUSED:
                return state
            self._require_status(state, CheckpointStatus.IN_PROGRESS, operation="pause")
            updated = state.model_copy(
                update={"status": CheckpointStatus.PAUSED, "updated_at": self._clock()}
            )
            return await self._transition(
                state,
                updated,
                AuditAction.STAGE_PAUSED,
                actor_type=actor_type,
                actor_id=actor_id,
                reasoning=reason or "cancelled",
            )

    async def skip(
        self,
        unit_of_work_id: str,
        stage_name: str,
        execution_id: str,
        reason: str = "",
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> WorkflowState:
        async with self._transaction("skip", actor_type, actor_id):
            context = {"unit_of_work_id": unit_of_work_id, "stage_name": stage_name}
            state = await self._select_active(unit_of_work_id, stage_name)
            if state is None:
                latest = await self._select_latest(unit_of_work_id, stage_name)
                if latest is not None and latest.status in SATISFIED_STATUSES:
                    raise InvalidTransition(
                        f"Cannot skip a {latest.status.value} stage",
                        checkpoint_id=latest.id,
                        **context,
                    )
            elif state.awaiting_gate:
                raise InvalidTransition(
                    "Cannot skip a stage awaiting review",
                    checkpoint_id=state.id,
                    **context,
                )

            if state is None:
                before = None
                after = self._new_state(unit_of_work_id, stage_name, execution_id, None).model_copy(
                    update={"status": CheckpointStatus.SKIPPED}
                )
            else:
                before = state
                after = state.model_copy(
                    update={"status": CheckpointStatus.SKIPPED, "updated_at": self._clock()}
                )
            return await self._transition(
                before,
                after,
                AuditAction.STAGE_SKIPPED,
                actor_type=actor_type,
                actor_id=actor_id,
                reasoning=reason or "stage skipped",
            )

    async def _complete_locked(
        self,
        state: WorkflowState,
        requires_gate: bool,
        stage_output: Optional[Dict[str, Any]],
        actor_type: ActorType,
        actor_id: Optional[str],
        reasoning: str,
    ) -> WorkflowState:
        self._require_status(
            state, CheckpointStatus.IN_PROGRESS, CheckpointStatus.PAUSED, operation="complete"
        )
        if requires_gate:
            latest = await self._select_latest_decision(state.id)
            if latest is None or latest.decision != GateDecisionType.APPROVED:
                raise GateViolation(
                    "Gated stage requires an approved decision before completion",
                    unit_of_work_id=state.unit_of_work_id,
                    stage_name=state.stage_name,
                    checkpoint_id=state.id,
                )
        updated = state.model_copy(
            update={
                "status": CheckpointStatus.COMPLETED,
                "awaiting_gate": False,
                "stage_output": stage_output if stage_output is not None else state.stage_output,
                "updated_at": self._clock(),
            }
        )
        return await self._transition(
            state,
            updated,
            AuditAction.STAGE_COMPLETED,
            actor_type=actor_type,
            actor_id=actor_id,
            reasoning=reasoning,
        )

    async def complete(
        self,
        checkpoint_id: str,
        requires_gate: bool,
        stage_output: Optional[Dict[str, Any]] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> WorkflowState:
        async with self._transaction("complete", actor_type, actor_id):
            state = await self._require(checkpoint_id)
            return await self._complete_locked(
                state, requires_gate, stage_output, actor_type, actor_id, "stage completed"
            )

    async def record_gate_decision(
        self,
        decision: GateDecision,
        actor_type: ActorType = ActorType.HUMAN,
    ) -> Tuple[GateDecision, WorkflowState]:
        async with self._transaction("gate_decision", actor_type, decision.reviewer):
            state = await self._select_active(decision.unit_of_work_id, decision.stage_name)
            if state is None or not state.awaiting_gate:
                raise GateViolation(
                    "No checkpoint is awaiting review for this stage",
                    unit_of_work_id=decision.unit_of_work_id,
                    stage_name=decision.stage_name,
                    checkpoint_id=state.id if state is not None else None,
                )
            decided = decision.model_copy(
                update={"checkpoint_id": state.id, "decided_at": self._clock(), "pending_since": None}
            )
            cursor = await self.db.execute(
                """
                INSERT INTO gate_decisions (
                    unit_of_work_id, stage_name, checkpoint_id, decision,
                    reviewer, feedback, decided_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    decided.unit_of_work_id,
                    decided.stage_name,
                    decided.checkpoint_id,
                    decided.decision.value,
                    decided.reviewer,
                    decided.feedback,
                    _ts(decided.decided_at),
                ),
            )
            decided = decided.model_copy(update={"id": cursor.lastrowid})

            after = state
            if decided.decision == GateDecisionType.REJECTED:
                # Revision required: paused, output and progress retained.
                after = state.model_copy(
                    update={
                        "awaiting_gate": False,
                        "gate_requested_at": None,
                        "updated_at": self._clock(),
                    }
                )
            await self._insert_audit(
                AuditLogEntry(
                    unit_of_work_id=state.unit_of_work_id,
                    stage_name=state.stage_name,
                    checkpoint_id=state.id,
                    actor_type=actor_type,
                    actor_id=decided.reviewer,
                    action=AuditAction.GATE_DECISION,
                    before_state=state.snapshot(),
                    after_state={**after.snapshot(), "decision": decided.decision.value},
                    reasoning=decided.feedback or "",
                    metadata={"decision_id": decided.id, "decision": decided.decision.value},
                    timestamp=decided.decided_at,
                )
            )

            if decided.decision == GateDecisionType.APPROVED:
                after = await self._complete_locked(
                    state,
                    True,
                    None,
                    actor_type,
                    decided.reviewer,
                    "approved by reviewer",
                )
            elif decided.decision == GateDecisionType.REJECTED:
                await self._write_state(after)
            return decided, after

    async def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        async with self._transaction():
            return await self._insert_audit(entry)
