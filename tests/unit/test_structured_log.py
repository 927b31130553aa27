"""
Unit tests for the JSONL event log.
"""

import pytest

from pipeline_coordinator.utils.structured_log import (
    EVENTS_FILENAME,
    bind_invocation,
    configure_run_logging,
    load_events_from_jsonl,
    log_gate_decision,
    log_progress,
    log_retry,
    log_stage,
    reset_run_logging,
    unbind_invocation,
)


def test_events_are_written_as_json_lines(tmp_path):
    configure_run_logging(str(tmp_path))
    bind_invocation("uow-1", "search", "exec-1")
    log_stage("search", "start", checkpoint_id="cp-1")
    log_progress("cp-1", 10, items_total=100, last_processed_id="item-9")
    log_retry("cp-1", 0, 1.23456, "rate_limit", "429 Too Many Requests")
    unbind_invocation()
    log_gate_decision("screening", "approved", reviewer="reviewer-a")
    reset_run_logging()

    events = load_events_from_jsonl(str(tmp_path / EVENTS_FILENAME))
    assert [e["event"] for e in events] == ["stage", "progress", "retry", "gate_decision"]

    stage = events[0]
    assert stage["unit_of_work_id"] == "uow-1"
    assert stage["execution_id"] == "exec-1"
    assert stage["action"] == "start"
    assert "timestamp" in stage

    retry = events[2]
    assert retry["delay_s"] == 1.235
    assert retry["level"] == "warning"

    assert "unit_of_work_id" not in events[3]


def test_filter_by_event_type(tmp_path):
    configure_run_logging(str(tmp_path))
    log_stage("search", "start")
    log_retry("cp-1", 1, 2.0, "timeout")
    reset_run_logging()

    retries = load_events_from_jsonl(str(tmp_path / EVENTS_FILENAME), event_types={"retry"})
    assert len(retries) == 1
    assert retries[0]["attempt"] == 1


def test_helpers_are_noops_when_unconfigured(tmp_path):
    log_stage("search", "start")
    log_progress("cp-1", 1)
    assert not (tmp_path / EVENTS_FILENAME).exists()


def test_load_skips_bad_lines(tmp_path):
    path = tmp_path / EVENTS_FILENAME
    path.write_text('{"event": "stage"}\nnot json\n\n{"event": "retry"}\n', encoding="utf-8")
    assert [e["event"] for e in load_events_from_jsonl(str(path))] == ["stage", "retry"]


def test_load_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_events_from_jsonl(str(tmp_path / "missing.jsonl"))
