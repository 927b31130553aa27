"""
Stage Executor

Contract between the coordinator and the code that does a stage's work.
Executors receive a resume point, report progress in batches, and watch a
cancel signal; the coordinator owns persistence, retries, and gating.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from pipeline_coordinator.models import ErrorClassification
from pipeline_coordinator.orchestration.errors import StageCancelled
from pipeline_coordinator.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResumePoint:
    """Where an executor picks up; items_processed is 0 on a fresh checkpoint."""

    unit_of_work_id: str
    stage_name: str
    checkpoint_id: str
    execution_id: str
    checkpoint_data: Dict[str, Any] = field(default_factory=dict)
    last_processed_id: Optional[str] = None
    items_processed: int = 0
    items_total: Optional[int] = None
    attempt: int = 0
    previous_output: Optional[Dict[str, Any]] = None
    # Set when a reviewer rejected the previous output of this checkpoint.
    review_feedback: Optional[str] = None

    @property
    def is_fresh(self) -> bool:
        return self.items_processed == 0 and self.last_processed_id is None


@dataclass
class StageResult:
    """Outcome returned by an executor; failures carry a classification hint."""

    success: bool = True
    output: Optional[Dict[str, Any]] = None
    error_hint: Optional[ErrorClassification] = None
    message: str = ""

    @classmethod
    def ok(cls, output: Optional[Dict[str, Any]] = None, message: str = "") -> "StageResult":
        return cls(success=True, output=output, message=message)

    @classmethod
    def failed(
        cls,
        hint: ErrorClassification = ErrorClassification.PERMANENT,
        message: str = "",
    ) -> "StageResult":
        return cls(success=False, error_hint=ErrorClassification(hint), message=message)


class ProgressReporter(Protocol):
    def __call__(
        self,
        items_processed: int,
        last_processed_id: Optional[str] = None,
        checkpoint_data: Optional[Dict[str, Any]] = None,
    ) -> Awaitable[None]: ...


class CancelSignal:
    """Cooperative cancellation flag shared between coordinator and executor."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def set(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise StageCancelled when cancellation was requested."""
        if self._event.is_set():
            raise StageCancelled(self.reason or "cancelled")


@runtime_checkable
class StageExecutor(Protocol):
    """Anything with an async ``run`` of this shape can execute a stage."""

    async def run(
        self,
        resume: ResumePoint,
        report_progress: ProgressReporter,
        cancel_signal: CancelSignal,
    ) -> StageResult: ...


class BatchStageExecutor(ABC):
    """
    Helper for stages that walk an ordered item list in fixed-size batches.

    Progress is reported after every batch, so a resumed run skips the
    ``items_processed`` items already persisted.
    """

    def __init__(self, batch_size: int = 50):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size

    @abstractmethod
    async def load_items(self, resume: ResumePoint) -> Sequence[Any]:
        """Return the full ordered item list for the unit of work."""

    @abstractmethod
    async def process_batch(self, batch: Sequence[Any], resume: ResumePoint) -> None:
        """Process one batch; raise to fail the attempt."""

    def item_id(self, item: Any) -> Optional[str]:
        return str(getattr(item, "id", item))

    def batch_checkpoint_data(self, resume: ResumePoint, processed: int) -> Optional[Dict[str, Any]]:
        """Extra resume payload persisted with each batch; None keeps the stored payload."""
        return None

    async def finalize(self, resume: ResumePoint, processed: int) -> Optional[Dict[str, Any]]:
        return {"items_processed": processed}

    async def run(
        self,
        resume: ResumePoint,
        report_progress: ProgressReporter,
        cancel_signal: CancelSignal,
    ) -> StageResult:
        items: List[Any] = list(await self.load_items(resume))
        processed = min(resume.items_processed, len(items))
        if processed:
            logger.info(
                "Resuming %s/%s at item %d of %d",
                resume.unit_of_work_id,
                resume.stage_name,
                processed,
                len(items),
            )

        while processed < len(items):
            cancel_signal.raise_if_cancelled()
            batch = items[processed : processed + self.batch_size]
            await self.process_batch(batch, resume)
            processed += len(batch)
            await report_progress(
                processed,
                self.item_id(batch[-1]),
                self.batch_checkpoint_data(resume, processed),
            )

        return StageResult.ok(output=await self.finalize(resume, processed))
