"""
Pipeline Coordinator

Per-unit-of-work state machine over the registered stages. Each trigger reads
the latest checkpoint from the store, runs at most one stage through its
executor under the retry policy, and leaves the stage completed, awaiting a
gate decision, paused, or failed. Nothing about checkpoints is cached between
invocations; the only in-process state is the set of stages currently
executing and their cancel signals.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from tenacity import RetryCallState

from pipeline_coordinator.models import (
    ActorType,
    AuditAction,
    AuditLogEntry,
    CheckpointStatus,
    CheckpointSummary,
    CoordinatorSettings,
    ErrorCategory,
    ErrorClassification,
    ErrorRecord,
    ExecutionContext,
    GateDecisionType,
    InvocationResult,
    SATISFIED_STATUSES,
    StageState,
    WorkflowState,
    utcnow,
)
from pipeline_coordinator.orchestration.errors import (
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
)
from pipeline_coordinator.orchestration.executor import (
    CancelSignal,
    ProgressReporter,
    ResumePoint,
    StageResult,
)
from pipeline_coordinator.orchestration.gates import GateController
from pipeline_coordinator.orchestration.retry_policy import RetryPolicy
from pipeline_coordinator.orchestration.stage_registry import StageDefinition, StageRegistry
from pipeline_coordinator.state.checkpoint_store import CheckpointStore
from pipeline_coordinator.utils.logging_config import get_logger
from pipeline_coordinator.utils.structured_log import (
    bind_invocation,
    log_progress,
    log_retry,
    log_stage,
    unbind_invocation,
)

logger = get_logger(__name__)

# Store-level errors that describe coordinator state, not executor failures.
_STATE_ERRORS = (CheckpointNotFound, ConcurrencyViolation, GateViolation, InvalidTransition)

_MAX_ERROR_MESSAGE = 1000

_SATISFIED_RESULTS = (StageState.COMPLETED, StageState.SKIPPED)


@dataclass
class _InFlight:
    signal: CancelSignal = field(default_factory=CancelSignal)
    checkpoint_id: Optional[str] = None
    ready: asyncio.Event = field(default_factory=asyncio.Event)


class PipelineCoordinator:
    """Drives stages through execution, retry, gating, and completion."""

    def __init__(
        self,
        store: CheckpointStore,
        registry: StageRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        gates: Optional[GateController] = None,
        settings: Optional[CoordinatorSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Checkpoint store (source of truth for all stage state)
            registry: Registered stages in execution order
            retry_policy: Retry policy; built from settings when omitted
            gates: Gate controller; built from settings when omitted
            settings: Coordinator settings used for defaults
            clock: Source of UTC timestamps for error records
        """
        self.store = store
        self.registry = registry
        self.settings = settings
        if retry_policy is None:
            retry_policy = (
                RetryPolicy.from_settings(settings.retry) if settings is not None else RetryPolicy()
            )
        self.retry_policy = retry_policy
        self.gates = gates or GateController(
            store, registry, settings.gates if settings is not None else None, clock=clock
        )
        self._clock = clock
        self._inflight: Dict[Tuple[str, str], _InFlight] = {}

    # ------------------------------------------------------------------
    # Trigger interface
    # ------------------------------------------------------------------

    async def invoke_stage(
        self,
        unit_of_work_id: str,
        stage_name: Optional[str] = None,
        context: Optional[ExecutionContext] = None,
    ) -> InvocationResult:
        """
        Run or resume one stage for a unit of work.

        Args:
            unit_of_work_id: Unit of work id
            stage_name: Stage to run; defaults to the first stage neither completed nor skipped
            context: Execution id, item total, and actor for this trigger

        Returns:
            InvocationResult with the stage state reached

        Raises:
            TransientExecutionError: Retry budget exhausted
            PermanentExecutionError: Non-retryable executor failure
            StageOrderViolation: Predecessor stage neither completed nor skipped
            UnknownStageError: Stage is not registered
        """
        context = context or ExecutionContext()
        if stage_name is None:
            stage_name = await self._next_pending_stage(unit_of_work_id)
            if stage_name is None:
                return InvocationResult(
                    unit_of_work_id=unit_of_work_id,
                    status=StageState.COMPLETED,
                    message="All stages completed",
                )
        stage = self.registry.get(stage_name)

        key = (unit_of_work_id, stage_name)
        running = self._inflight.get(key)
        if running is not None:
            return await self._already_running(unit_of_work_id, stage_name, running, context)

        inflight = _InFlight()
        self._inflight[key] = inflight
        try:
            latest = await self.store.load_latest(unit_of_work_id, stage_name)
            if latest is None:
                await self._check_predecessor(unit_of_work_id, stage, "invoke", context)
            else:
                settled = self._settled_result(latest)
                if settled is not None:
                    return settled

            self._require_executor(stage)
            state, created = await self.store.create_or_resume(
                unit_of_work_id,
                stage_name,
                context.execution_id,
                items_total=context.items_total,
                actor_type=context.actor_type,
                actor_id=context.actor_id,
            )
            if state.status == CheckpointStatus.PAUSED:
                state = await self.store.resume(
                    state.id,
                    actor_type=context.actor_type,
                    actor_id=context.actor_id,
                )
            elif not created:
                logger.info(
                    "Resuming interrupted checkpoint %s for %s/%s at %d items",
                    state.id,
                    unit_of_work_id,
                    stage_name,
                    state.items_processed,
                )
            return await self._execute(stage, state, context, inflight)
        finally:
            inflight.ready.set()
            self._inflight.pop(key, None)

    async def rerun_stage(
        self,
        unit_of_work_id: str,
        stage_name: str,
        context: Optional[ExecutionContext] = None,
    ) -> InvocationResult:
        """
        Deliberately re-run a completed or failed stage on a fresh checkpoint.

        History rows are left untouched; the new row gets its own execution id.

        Raises:
            ConcurrencyViolation: If the stage has an active checkpoint
        """
        context = context or ExecutionContext()
        stage = self.registry.get(stage_name)
        key = (unit_of_work_id, stage_name)
        if key in self._inflight:
            raise await self._reject(
                ConcurrencyViolation(
                    "Stage is currently executing",
                    unit_of_work_id=unit_of_work_id,
                    stage_name=stage_name,
                ),
                "rerun",
                context,
            )

        inflight = _InFlight()
        self._inflight[key] = inflight
        try:
            await self._check_predecessor(unit_of_work_id, stage, "rerun", context)
            self._require_executor(stage)
            state = await self.store.start_rerun(
                unit_of_work_id,
                stage_name,
                context.execution_id,
                items_total=context.items_total,
                actor_type=context.actor_type,
                actor_id=context.actor_id,
            )
            return await self._execute(stage, state, context, inflight)
        finally:
            inflight.ready.set()
            self._inflight.pop(key, None)

    async def run_pipeline(
        self,
        unit_of_work_id: str,
        context: Optional[ExecutionContext] = None,
    ) -> List[InvocationResult]:
        """Invoke successive stages until one stops short of completed."""
        context = context or ExecutionContext()
        results: List[InvocationResult] = []
        while True:
            stage_context = ExecutionContext(
                execution_id=uuid.uuid4().hex if results else context.execution_id,
                actor_type=context.actor_type,
                actor_id=context.actor_id,
                metadata=dict(context.metadata),
            )
            result = await self.invoke_stage(unit_of_work_id, context=stage_context)
            results.append(result)
            if result.status not in _SATISFIED_RESULTS or result.next_stage is None:
                return results

    async def submit_decision(
        self,
        unit_of_work_id: str,
        stage_name: str,
        decision: GateDecisionType,
        reviewer: Optional[str] = None,
        feedback: Optional[str] = None,
        actor_type: ActorType = ActorType.HUMAN,
    ) -> InvocationResult:
        """
        Apply a gate decision to a stage awaiting review.

        Approved completes the stage, rejected pauses it for revision (the next
        invocation re-executes with the reviewer's feedback), pending keeps it
        waiting.
        """
        recorded, state = await self.gates.record_decision(
            unit_of_work_id,
            stage_name,
            decision,
            reviewer=reviewer,
            feedback=feedback,
            actor_type=actor_type,
        )
        summary = CheckpointSummary.from_state(state)
        if recorded.decision == GateDecisionType.APPROVED:
            log_stage(stage_name, "completed", checkpoint_id=state.id, approved_by=reviewer)
            return InvocationResult(
                unit_of_work_id=unit_of_work_id,
                stage_name=stage_name,
                status=StageState.COMPLETED,
                checkpoint=summary,
                next_stage=self.registry.next_stage(stage_name),
                message="Approved",
            )
        if recorded.decision == GateDecisionType.REJECTED:
            return InvocationResult(
                unit_of_work_id=unit_of_work_id,
                stage_name=stage_name,
                status=StageState.PAUSED,
                checkpoint=summary,
                message="Revision required" + (f": {feedback}" if feedback else ""),
            )
        return InvocationResult(
            unit_of_work_id=unit_of_work_id,
            stage_name=stage_name,
            status=StageState.AWAITING_GATE,
            checkpoint=summary,
            message="Decision pending",
        )

    async def skip_stage(
        self,
        unit_of_work_id: str,
        stage_name: str,
        reason: str = "",
        context: Optional[ExecutionContext] = None,
    ) -> InvocationResult:
        """
        Mark a stage skipped so the pipeline moves past it.

        A skipped stage counts as done for ordering; ``rerun_stage`` can still
        execute it later on a fresh checkpoint.

        Raises:
            ConcurrencyViolation: If the stage is executing in this process
            StageOrderViolation: Predecessor stage neither completed nor skipped
            InvalidTransition: Stage awaiting review, completed, or already skipped
        """
        context = context or ExecutionContext()
        stage = self.registry.get(stage_name)
        key = (unit_of_work_id, stage_name)
        if key in self._inflight:
            raise await self._reject(
                ConcurrencyViolation(
                    "Stage is currently executing; cancel it before skipping",
                    unit_of_work_id=unit_of_work_id,
                    stage_name=stage_name,
                ),
                "skip",
                context,
            )

        # Held so a concurrent trigger waits and then reads the skipped row.
        inflight = _InFlight()
        self._inflight[key] = inflight
        try:
            await self._check_predecessor(unit_of_work_id, stage, "skip", context)
            skipped = await self.store.skip(
                unit_of_work_id,
                stage_name,
                context.execution_id,
                reason=reason,
                actor_type=context.actor_type,
                actor_id=context.actor_id,
            )
        finally:
            inflight.ready.set()
            self._inflight.pop(key, None)
        next_stage = self.registry.next_stage(stage_name)
        log_stage(stage_name, "skipped", checkpoint_id=skipped.id, reason=reason, next_stage=next_stage)
        logger.info("Stage %s skipped for %s: %s", stage_name, unit_of_work_id, reason or "no reason given")
        return InvocationResult(
            unit_of_work_id=unit_of_work_id,
            stage_name=stage_name,
            status=StageState.SKIPPED,
            checkpoint=CheckpointSummary.from_state(skipped),
            next_stage=next_stage,
            message="Stage skipped" + (f": {reason}" if reason else ""),
        )

    def cancel(self, unit_of_work_id: str, stage_name: str, reason: str = "cancelled") -> bool:
        """Signal the executing stage to stop; returns False if nothing is executing."""
        inflight = self._inflight.get((unit_of_work_id, stage_name))
        if inflight is None:
            return False
        inflight.signal.set(reason)
        logger.info("Cancellation requested for %s/%s: %s", unit_of_work_id, stage_name, reason)
        return True

    async def status(self, unit_of_work_id: str) -> List[CheckpointSummary]:
        """Summary of every registered stage, not_started included."""
        summaries: List[CheckpointSummary] = []
        for stage in self.registry:
            latest = await self.store.load_latest(unit_of_work_id, stage.name)
            if latest is None:
                summaries.append(CheckpointSummary.not_started(unit_of_work_id, stage.name))
            else:
                summaries.append(CheckpointSummary.from_state(latest))
        return summaries

    # ------------------------------------------------------------------
    # Stage selection
    # ------------------------------------------------------------------

    async def _next_pending_stage(self, unit_of_work_id: str) -> Optional[str]:
        for name in self.registry.order:
            latest = await self.store.load_latest(unit_of_work_id, name)
            if latest is None or latest.status not in SATISFIED_STATUSES:
                return name
        return None

    async def _check_predecessor(
        self,
        unit_of_work_id: str,
        stage: StageDefinition,
        operation: str,
        context: ExecutionContext,
    ) -> None:
        if stage.predecessor is None:
            return
        latest = await self.store.load_latest(unit_of_work_id, stage.predecessor)
        if latest is None or latest.status not in SATISFIED_STATUSES:
            raise await self._reject(
                StageOrderViolation(
                    f"Stage '{stage.name}' requires '{stage.predecessor}' to be completed or skipped first",
                    unit_of_work_id=unit_of_work_id,
                    stage_name=stage.name,
                ),
                operation,
                context,
            )

    async def _reject(
        self,
        error: PipelineError,
        operation: str,
        context: ExecutionContext,
    ) -> PipelineError:
        """Audit a refused trigger and hand the error back for raising."""
        logger.warning("Rejected %s: %s", operation, error)
        await self.store.append_audit(
            error.rejection_entry(
                operation, context.actor_type, context.actor_id, timestamp=self._clock()
            )
        )
        return error

    def _require_executor(self, stage: StageDefinition) -> None:
        if stage.executor is None:
            raise ConfigError(
                f"No executor bound to stage '{stage.name}'",
                stage_name=stage.name,
            )

    def _settled_result(self, latest: WorkflowState) -> Optional[InvocationResult]:
        """Result for a stage that must not execute now, or None to proceed."""
        summary = CheckpointSummary.from_state(latest)
        base = {
            "unit_of_work_id": latest.unit_of_work_id,
            "stage_name": latest.stage_name,
            "checkpoint": summary,
        }
        if latest.status == CheckpointStatus.COMPLETED:
            return InvocationResult(
                status=StageState.COMPLETED,
                next_stage=self.registry.next_stage(latest.stage_name),
                message="Stage already completed",
                **base,
            )
        if latest.status == CheckpointStatus.SKIPPED:
            return InvocationResult(
                status=StageState.SKIPPED,
                next_stage=self.registry.next_stage(latest.stage_name),
                message="Stage was skipped",
                **base,
            )
        if latest.status == CheckpointStatus.FAILED:
            last = latest.last_error
            detail = f"{last.classification.value} {last.error_type}: {last.message}" if last else "unknown"
            return InvocationResult(
                status=StageState.FAILED,
                message=f"Stage failed after {latest.error_count} error(s); last: {detail}",
                **base,
            )
        if latest.awaiting_gate:
            return InvocationResult(
                status=StageState.AWAITING_GATE,
                message="Stage output awaiting review",
                **base,
            )
        return None

    async def _already_running(
        self,
        unit_of_work_id: str,
        stage_name: str,
        running: _InFlight,
        context: ExecutionContext,
    ) -> InvocationResult:
        await running.ready.wait()
        if running.checkpoint_id is None:
            # The other trigger returned without executing; answer from the store.
            return await self.invoke_stage(unit_of_work_id, stage_name, context)
        state = await self.store.load(running.checkpoint_id)
        return InvocationResult(
            unit_of_work_id=unit_of_work_id,
            stage_name=stage_name,
            status=StageState.IN_PROGRESS,
            checkpoint=CheckpointSummary.from_state(state),
            message="Stage is already executing",
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        stage: StageDefinition,
        state: WorkflowState,
        context: ExecutionContext,
        inflight: _InFlight,
    ) -> InvocationResult:
        inflight.checkpoint_id = state.id
        inflight.ready.set()

        bind_invocation(state.unit_of_work_id, stage.name, state.execution_id)
        log_stage(
            stage.name,
            "start",
            checkpoint_id=state.id,
            items_processed=state.items_processed,
            items_total=state.items_total,
        )
        logger.info("Executing stage %s for %s", stage.name, state.unit_of_work_id)
        attempts = 0
        try:
            retrying = self.retry_policy.retrying(before_sleep=self._before_sleep(state.id))
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    # A cancel that landed during the backoff wait stops here.
                    inflight.signal.raise_if_cancelled()
                    result = await self._run_once(stage, state.id, attempts - 1, inflight.signal)
        except (StageCancelled, asyncio.CancelledError) as e:
            paused = await self.store.pause(
                state.id,
                reason=str(getattr(e, "message", "") or "cancelled"),
                actor_type=context.actor_type,
                actor_id=context.actor_id,
            )
            log_stage(stage.name, "paused", checkpoint_id=state.id, items_processed=paused.items_processed)
            logger.info("Stage %s paused at %d items", stage.name, paused.items_processed)
            if isinstance(e, asyncio.CancelledError):
                raise
            return InvocationResult(
                unit_of_work_id=state.unit_of_work_id,
                stage_name=stage.name,
                status=StageState.PAUSED,
                checkpoint=CheckpointSummary.from_state(paused),
                message="Stage cancelled; progress kept",
            )
        except _STATE_ERRORS as e:
            raise e.with_context(
                unit_of_work_id=state.unit_of_work_id,
                stage_name=stage.name,
                checkpoint_id=state.id,
            )
        except Exception as e:
            raise await self._fail(stage, state, e, attempts) from e
        finally:
            unbind_invocation()

        return await self._finish(stage, state.id, result)

    async def _run_once(
        self,
        stage: StageDefinition,
        checkpoint_id: str,
        attempt: int,
        signal: CancelSignal,
    ) -> StageResult:
        # Reload each attempt so the executor resumes from the last persisted batch.
        current = await self.store.load(checkpoint_id)
        resume = ResumePoint(
            unit_of_work_id=current.unit_of_work_id,
            stage_name=current.stage_name,
            checkpoint_id=current.id,
            execution_id=current.execution_id,
            checkpoint_data=dict(current.checkpoint_data),
            last_processed_id=current.last_processed_id,
            items_processed=current.items_processed,
            items_total=current.items_total,
            attempt=attempt,
            previous_output=current.stage_output,
            review_feedback=await self._review_feedback(current),
        )
        result = await stage.executor.run(resume, self._progress_reporter(current, signal), signal)
        if result is None:
            result = StageResult.ok()
        if not result.success:
            error_cls = (
                TransientExecutionError
                if result.error_hint == ErrorClassification.TRANSIENT
                else PermanentExecutionError
            )
            raise error_cls(
                result.message or "Stage executor reported failure",
                unit_of_work_id=current.unit_of_work_id,
                stage_name=current.stage_name,
                checkpoint_id=current.id,
            )
        return result

    async def _review_feedback(self, state: WorkflowState) -> Optional[str]:
        if not self.registry.requires_gate(state.stage_name):
            return None
        decision = await self.store.latest_gate_decision(state.id)
        if decision is None or decision.decision != GateDecisionType.REJECTED:
            return None
        return decision.feedback or ""

    def _progress_reporter(self, state: WorkflowState, signal: CancelSignal) -> ProgressReporter:
        async def report(
            items_processed: int,
            last_processed_id: Optional[str] = None,
            checkpoint_data: Optional[Dict[str, Any]] = None,
        ) -> None:
            try:
                updated = await self.store.record_progress(
                    state.id,
                    items_processed,
                    last_processed_id=last_processed_id,
                    checkpoint_data=checkpoint_data,
                )
            except MonotonicityViolation as e:
                logger.warning("Rejected progress for %s: %s", state.id, e.message)
                await self.store.append_audit(
                    AuditLogEntry(
                        unit_of_work_id=state.unit_of_work_id,
                        stage_name=state.stage_name,
                        checkpoint_id=state.id,
                        action=AuditAction.PROGRESS_REJECTED,
                        reasoning=e.message,
                        metadata={
                            "execution_id": state.execution_id,
                            "current": e.current,
                            "attempted": e.attempted,
                        },
                        timestamp=self._clock(),
                    )
                )
            else:
                log_progress(
                    state.id,
                    updated.items_processed,
                    updated.items_total,
                    updated.last_processed_id,
                )
            # Batch boundaries are safe points to stop.
            signal.raise_if_cancelled()

        return report

    def _error_record(self, error: BaseException, attempt: int) -> ErrorRecord:
        message = error.message if isinstance(error, PipelineError) else str(error)
        return ErrorRecord(
            error_type=type(error).__name__,
            category=self.retry_policy.categorize(error),
            classification=self.retry_policy.classify(error),
            message=(message or type(error).__name__)[:_MAX_ERROR_MESSAGE],
            attempt=attempt,
            timestamp=self._clock(),
        )

    def _before_sleep(self, checkpoint_id: str) -> Callable[[RetryCallState], Any]:
        async def record_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            attempt = retry_state.attempt_number - 1
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            record = self._error_record(error, attempt)
            await self.store.record_failure(
                checkpoint_id,
                record,
                terminal=False,
                metadata={"delay_s": round(delay, 3), "next_attempt": attempt + 1},
            )
            logger.warning(
                "Attempt %d failed (%s: %s); retrying in %.2fs",
                attempt + 1,
                record.category.value,
                record.message,
                delay,
            )
            log_retry(checkpoint_id, attempt, delay, record.category.value, record.message)

        return record_retry

    async def _fail(
        self,
        stage: StageDefinition,
        state: WorkflowState,
        error: BaseException,
        attempts: int,
    ) -> ExecutionError:
        """Record the terminal failure and build the error to surface."""
        record = self._error_record(error, max(attempts - 1, 0))
        failed = await self.store.record_failure(
            state.id,
            record,
            terminal=True,
            metadata={"attempts": attempts},
        )
        log_stage(
            stage.name,
            "failed",
            checkpoint_id=state.id,
            error_count=failed.error_count,
            classification=record.classification.value,
        )
        logger.error(
            "Stage %s failed after %d attempt(s): %s",
            stage.name,
            attempts,
            record.message,
        )
        context = {
            "unit_of_work_id": state.unit_of_work_id,
            "stage_name": stage.name,
            "checkpoint_id": state.id,
        }
        if isinstance(error, ExecutionError):
            error.with_context(**context)
            error.attempts = attempts
            if error.category == ErrorCategory.UNKNOWN:
                error.category = record.category
            return error
        error_cls = (
            TransientExecutionError
            if record.classification == ErrorClassification.TRANSIENT
            else PermanentExecutionError
        )
        return error_cls(record.message, category=record.category, attempts=attempts, **context)

    async def _finish(
        self,
        stage: StageDefinition,
        checkpoint_id: str,
        result: StageResult,
    ) -> InvocationResult:
        if stage.requires_gate:
            parked = await self.store.mark_awaiting_gate(checkpoint_id, stage_output=result.output)
            log_stage(stage.name, "awaiting_gate", checkpoint_id=checkpoint_id)
            logger.info("Stage %s awaiting review", stage.name)
            return InvocationResult(
                unit_of_work_id=parked.unit_of_work_id,
                stage_name=stage.name,
                status=StageState.AWAITING_GATE,
                checkpoint=CheckpointSummary.from_state(parked),
                message=result.message or "Stage output awaiting review",
            )

        completed = await self.store.complete(
            checkpoint_id, requires_gate=False, stage_output=result.output
        )
        next_stage = self.registry.next_stage(stage.name)
        log_stage(stage.name, "completed", checkpoint_id=checkpoint_id, next_stage=next_stage)
        logger.info("Stage %s completed", stage.name)
        return InvocationResult(
            unit_of_work_id=completed.unit_of_work_id,
            stage_name=stage.name,
            status=StageState.COMPLETED,
            checkpoint=CheckpointSummary.from_state(completed),
            next_stage=next_stage,
            message=result.message or "Stage completed",
        )
