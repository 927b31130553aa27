"""
Fake Stage Executors

Deterministic executors for driving the coordinator in tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from pipeline_coordinator.models import ErrorClassification
from pipeline_coordinator.orchestration.executor import (
    BatchStageExecutor,
    CancelSignal,
    ResumePoint,
    StageResult,
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ListExecutor(BatchStageExecutor):
    """Walks item ids ``item-0 .. item-{n-1}``; can fail once on a given batch."""

    def __init__(
        self,
        total: int,
        batch_size: int = 10,
        fail_on_batch: Optional[int] = None,
        error: Optional[BaseException] = None,
        output: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(batch_size=batch_size)
        self.items = [f"item-{i}" for i in range(total)]
        self.fail_on_batch = fail_on_batch
        self.error = error or ConnectionError("connection reset by peer")
        self.output = output
        self.processed: List[str] = []
        self.resume_points: List[ResumePoint] = []
        self._batches = 0

    async def load_items(self, resume: ResumePoint) -> Sequence[Any]:
        self.resume_points.append(resume)
        return self.items

    async def process_batch(self, batch: Sequence[Any], resume: ResumePoint) -> None:
        if self.fail_on_batch is not None and self._batches == self.fail_on_batch:
            self.fail_on_batch = None
            raise self.error
        self._batches += 1
        self.processed.extend(batch)

    def batch_checkpoint_data(self, resume: ResumePoint, processed: int) -> Optional[Dict[str, Any]]:
        return {"cursor": processed}

    async def finalize(self, resume: ResumePoint, processed: int) -> Optional[Dict[str, Any]]:
        if self.output is not None:
            return self.output
        return {"items_processed": processed}


class FlakyExecutor:
    """Raises the given errors in order, then succeeds."""

    def __init__(self, errors: Sequence[BaseException], output: Optional[Dict[str, Any]] = None):
        self.errors = list(errors)
        self.output = output or {"ok": True}
        self.calls = 0
        self.attempts: List[int] = []

    async def run(self, resume: ResumePoint, report_progress, cancel_signal: CancelSignal) -> StageResult:
        self.calls += 1
        self.attempts.append(resume.attempt)
        if self.errors:
            raise self.errors.pop(0)
        return StageResult.ok(self.output)


class AlwaysFailExecutor:
    def __init__(self, error: BaseException):
        self.error = error
        self.calls = 0

    async def run(self, resume: ResumePoint, report_progress, cancel_signal: CancelSignal) -> StageResult:
        self.calls += 1
        raise self.error


class HintedFailureExecutor:
    """Returns StageResult.failed instead of raising."""

    def __init__(self, hint: ErrorClassification, message: str = "provider rejected request"):
        self.hint = hint
        self.message = message
        self.calls = 0

    async def run(self, resume: ResumePoint, report_progress, cancel_signal: CancelSignal) -> StageResult:
        self.calls += 1
        return StageResult.failed(self.hint, self.message)


class OutputExecutor:
    """Succeeds immediately and records every resume point it sees."""

    def __init__(self, output: Optional[Dict[str, Any]] = None):
        self.output = output if output is not None else {"summary": "done"}
        self.resume_points: List[ResumePoint] = []

    async def run(self, resume: ResumePoint, report_progress, cancel_signal: CancelSignal) -> StageResult:
        self.resume_points.append(resume)
        return StageResult.ok(self.output)


class RegressingExecutor:
    """Reports a decreasing count between two valid batches."""

    async def run(self, resume: ResumePoint, report_progress, cancel_signal: CancelSignal) -> StageResult:
        await report_progress(5, "item-4")
        await report_progress(3, "item-2")
        await report_progress(10, "item-9")
        return StageResult.ok({"items": 10})


class BlockingExecutor:
    """Reports one batch, then waits until released or cancelled."""

    def __init__(self, first_batch: int = 4):
        self.first_batch = first_batch
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def run(self, resume: ResumePoint, report_progress, cancel_signal: CancelSignal) -> StageResult:
        self.calls += 1
        if resume.items_processed < self.first_batch:
            await report_progress(self.first_batch, f"item-{self.first_batch - 1}")
        self.started.set()
        released = asyncio.ensure_future(self.release.wait())
        cancelled = asyncio.ensure_future(cancel_signal.wait())
        try:
            await asyncio.wait({released, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            released.cancel()
            cancelled.cancel()
        cancel_signal.raise_if_cancelled()
        return StageResult.ok({"items": self.first_batch})
