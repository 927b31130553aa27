"""
Unit tests for executor helpers.
"""

import pytest

from pipeline_coordinator.models import ErrorClassification
from pipeline_coordinator.orchestration.errors import StageCancelled
from pipeline_coordinator.orchestration.executor import (
    CancelSignal,
    ResumePoint,
    StageExecutor,
    StageResult,
)
from tests.fixtures.executors import ListExecutor, OutputExecutor


def _resume(items_processed: int = 0, last_processed_id=None) -> ResumePoint:
    return ResumePoint(
        unit_of_work_id="uow-1",
        stage_name="search",
        checkpoint_id="cp-1",
        execution_id="exec-1",
        items_processed=items_processed,
        last_processed_id=last_processed_id,
    )


class _Reports:
    def __init__(self):
        self.calls = []

    async def __call__(self, items_processed, last_processed_id=None, checkpoint_data=None):
        self.calls.append((items_processed, last_processed_id, checkpoint_data))


def test_stage_result_constructors():
    ok = StageResult.ok({"rows": 3})
    assert ok.success and ok.output == {"rows": 3}

    failed = StageResult.failed(ErrorClassification.TRANSIENT, "quota")
    assert not failed.success
    assert failed.error_hint == ErrorClassification.TRANSIENT
    assert StageResult.failed("permanent").error_hint == ErrorClassification.PERMANENT


def test_resume_point_freshness():
    assert _resume().is_fresh
    assert not _resume(10, "item-9").is_fresh


def test_cancel_signal():
    signal = CancelSignal()
    signal.raise_if_cancelled()
    signal.set("operator stop")
    assert signal.is_set()
    with pytest.raises(StageCancelled, match="operator stop"):
        signal.raise_if_cancelled()


def test_protocol_check():
    assert isinstance(OutputExecutor(), StageExecutor)
    assert isinstance(ListExecutor(3), StageExecutor)
    assert not isinstance(object(), StageExecutor)


@pytest.mark.asyncio
async def test_batch_executor_reports_each_batch() -> None:
    executor = ListExecutor(total=25, batch_size=10)
    reports = _Reports()
    result = await executor.run(_resume(), reports, CancelSignal())

    assert result.success
    assert result.output == {"items_processed": 25}
    assert [call[0] for call in reports.calls] == [10, 20, 25]
    assert reports.calls[-1][1] == "item-24"
    assert reports.calls[0][2] == {"cursor": 10}


@pytest.mark.asyncio
async def test_batch_executor_resumes_after_processed_items() -> None:
    executor = ListExecutor(total=25, batch_size=10)
    reports = _Reports()
    await executor.run(_resume(20, "item-19"), reports, CancelSignal())

    assert executor.processed == [f"item-{i}" for i in range(20, 25)]
    assert [call[0] for call in reports.calls] == [25]


@pytest.mark.asyncio
async def test_batch_executor_stops_when_cancelled() -> None:
    executor = ListExecutor(total=25, batch_size=10)
    signal = CancelSignal()
    signal.set()
    with pytest.raises(StageCancelled):
        await executor.run(_resume(), _Reports(), signal)
    assert executor.processed == []
