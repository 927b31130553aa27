"""Structured logging for a machine-parseable coordinator event stream."""

from __future__ import annotations

import json
from pathlib import Path
from typing import IO, Any

import structlog
from structlog.processors import JSONRenderer
from structlog.typing import Processor

EVENTS_FILENAME = "events.jsonl"

_configured = False
_logger: structlog.BoundLogger | None = None
_file_handle: IO[str] | None = None


def configure_run_logging(log_dir: str) -> None:
    """One-time setup. Writes JSON lines to {log_dir}/events.jsonl."""
    global _configured, _logger, _file_handle
    if _configured:
        return
    events_path = Path(log_dir) / EVENTS_FILENAME
    events_path.parent.mkdir(parents=True, exist_ok=True)
    _file_handle = open(events_path, "a", encoding="utf-8")
    file_handle = _file_handle

    def _file_logger_factory(*args: Any, **kwargs: Any) -> structlog.PrintLogger:
        return structlog.PrintLogger(file_handle)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        JSONRenderer(),
    ]
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=_file_logger_factory,
        cache_logger_on_first_use=False,
    )
    _configured = True
    _logger = structlog.get_logger()


def reset_run_logging() -> None:
    """Close the event file and return to the unconfigured (no-op) state."""
    global _configured, _logger, _file_handle
    if _file_handle is not None:
        _file_handle.close()
    _file_handle = None
    _logger = None
    _configured = False
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


def bind_invocation(unit_of_work_id: str, stage_name: str, execution_id: str) -> None:
    """Bind invocation context so every event carries unit, stage and execution id."""
    structlog.contextvars.bind_contextvars(
        unit_of_work_id=unit_of_work_id,
        stage_name=stage_name,
        execution_id=execution_id,
    )


def unbind_invocation() -> None:
    structlog.contextvars.unbind_contextvars("unit_of_work_id", "stage_name", "execution_id")


def log_stage(stage: str, action: str, **summary: Any) -> None:
    """Log a stage lifecycle event (action: start|awaiting_gate|completed|failed|paused|skipped)."""
    if _logger is not None:
        _logger.info("stage", stage=stage, action=action, **summary)


def log_progress(
    checkpoint_id: str,
    items_processed: int,
    items_total: int | None = None,
    last_processed_id: str | None = None,
) -> None:
    payload: dict[str, Any] = {"checkpoint_id": checkpoint_id, "items_processed": items_processed}
    if items_total is not None:
        payload["items_total"] = items_total
    if last_processed_id is not None:
        payload["last_processed_id"] = last_processed_id
    if _logger is not None:
        _logger.info("progress", **payload)


def log_retry(
    checkpoint_id: str,
    attempt: int,
    delay_s: float,
    category: str,
    error: str | None = None,
) -> None:
    """Log a scheduled retry; attempt is the zero-based index of the failed attempt."""
    payload: dict[str, Any] = {
        "checkpoint_id": checkpoint_id,
        "attempt": attempt,
        "delay_s": round(delay_s, 3),
        "category": category,
    }
    if error is not None:
        payload["error"] = error[:500]
    if _logger is not None:
        _logger.warning("retry", **payload)


def log_gate_decision(
    stage: str,
    decision: str,
    reviewer: str | None = None,
    feedback: str | None = None,
) -> None:
    payload: dict[str, Any] = {"stage": stage, "decision": decision}
    if reviewer is not None:
        payload["reviewer"] = reviewer
    if feedback is not None:
        payload["feedback"] = feedback
    if _logger is not None:
        _logger.info("gate_decision", **payload)


# ---------------------------------------------------------------------------
# JSONL replay helpers
# ---------------------------------------------------------------------------


def load_events_from_jsonl(path: str, event_types: set[str] | None = None) -> list[dict[str, Any]]:
    """Read an events.jsonl file, optionally filtered by event name.

    Skips lines that fail to parse. A missing file raises FileNotFoundError.
    """
    result: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if event_types is not None and entry.get("event") not in event_types:
                continue
            result.append(entry)
    return result
