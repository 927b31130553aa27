"""
Command Line Interface

Operator surface over the trigger and gate interfaces: inspect stage status,
invoke, re-run or skip stages, record gate decisions, and read the audit
trail and the JSONL event stream.
"""

import argparse
import asyncio
import json
import os
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.rule import Rule
from rich.table import Table

from pipeline_coordinator.config.loader import DEFAULT_CONFIG_PATH, load_settings
from pipeline_coordinator.db.database import get_db
from pipeline_coordinator.db.repositories import SqliteCheckpointStore
from pipeline_coordinator.models import (
    ActorType,
    CheckpointSummary,
    CoordinatorSettings,
    ExecutionContext,
    GateDecisionType,
    InvocationResult,
    StageState,
    utcnow,
)
from pipeline_coordinator.orchestration import PipelineCoordinator, PipelineError, StageRegistry
from pipeline_coordinator.utils.logging_config import LogLevel, get_logger, setup_logging
from pipeline_coordinator.utils.structured_log import (
    EVENTS_FILENAME,
    configure_run_logging,
    load_events_from_jsonl,
    reset_run_logging,
)

console = Console()
logger = get_logger(__name__)

_STATE_STYLES = {
    StageState.NOT_STARTED: "dim",
    StageState.IN_PROGRESS: "cyan",
    StageState.AWAITING_GATE: "yellow",
    StageState.PAUSED: "magenta",
    StageState.COMPLETED: "green",
    StageState.FAILED: "red",
    StageState.SKIPPED: "blue",
}


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="pipeline-coordinator",
        description="Resumable, checkpointed multi-stage pipeline coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=str,
        default=os.getenv("PIPELINE_CONFIG", DEFAULT_CONFIG_PATH),
        help=f"Path to pipeline configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument("--debug", "-d", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--verbose-level",
        type=str,
        choices=[level.value for level in LogLevel],
        default=None,
        help="Log level: minimal, normal, detailed, or full (default: from config)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        nargs="?",
        const="logs/pipeline.log",
        default=None,
        help="Enable file logging (default location: logs/pipeline.log)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show stage status for a unit of work")
    status.add_argument("unit", help="Unit of work id")

    invoke = sub.add_parser("invoke", help="Run or resume one stage")
    invoke.add_argument("unit", help="Unit of work id")
    invoke.add_argument("--stage", type=str, default=None, help="Stage name (default: next pending)")
    invoke.add_argument("--items-total", type=int, default=None, help="Known item count")
    invoke.add_argument("--execution-id", type=str, default=None, help="Execution id for a new checkpoint")

    run = sub.add_parser("run", help="Run stages until a gate, failure, or the end")
    run.add_argument("unit", help="Unit of work id")

    decide = sub.add_parser("decide", help="Record a gate decision")
    decide.add_argument("unit", help="Unit of work id")
    decide.add_argument("stage", help="Stage name")
    decide.add_argument("decision", choices=[d.value for d in GateDecisionType])
    decide.add_argument("--reviewer", type=str, default=None)
    decide.add_argument("--feedback", type=str, default=None)
    decide.add_argument(
        "--actor-type",
        choices=[a.value for a in ActorType],
        default=ActorType.HUMAN.value,
    )

    rerun = sub.add_parser("rerun", help="Re-run a completed or failed stage")
    rerun.add_argument("unit", help="Unit of work id")
    rerun.add_argument("stage", help="Stage name")
    rerun.add_argument("--items-total", type=int, default=None)

    skip = sub.add_parser("skip", help="Mark a stage skipped so later stages can run")
    skip.add_argument("unit", help="Unit of work id")
    skip.add_argument("stage", help="Stage name")
    skip.add_argument("--reason", type=str, default="", help="Why the stage is skipped (kept in the audit trail)")
    skip.add_argument("--actor", type=str, default=None, help="Who requested the skip")
    skip.add_argument(
        "--actor-type",
        choices=[a.value for a in ActorType],
        default=ActorType.HUMAN.value,
    )

    audit = sub.add_parser("audit", help="Print the audit trail")
    audit.add_argument("unit", help="Unit of work id")
    audit.add_argument("--stage", type=str, default=None)
    audit.add_argument("--json", action="store_true", help="Emit JSON lines")

    pending = sub.add_parser("pending", help="List stages awaiting review")
    pending.add_argument("--overdue", action="store_true", help="Only gates past notify_after_hours")
    pending.add_argument("--stale", action="store_true", help="Also list in_progress checkpoints idle past stale_after_hours")

    events = sub.add_parser("events", help="Print recorded JSONL events from the log directory")
    events.add_argument("--type", dest="types", action="append", default=None, help="Event name to keep (repeatable)")

    return parser


@asynccontextmanager
async def open_coordinator(settings: CoordinatorSettings) -> AsyncIterator[PipelineCoordinator]:
    """Open the database and wire a coordinator for one CLI command."""
    async with get_db(settings.database.path, settings.database.busy_timeout) as db:
        store = SqliteCheckpointStore(db, error_history_size=settings.error_history_size)
        registry = StageRegistry.from_settings(settings)
        yield PipelineCoordinator(store, registry, settings=settings)


def _render_summaries(unit: str, summaries: List[CheckpointSummary]) -> None:
    table = Table(title=f"Stages for {unit}")
    table.add_column("Stage")
    table.add_column("State")
    table.add_column("Progress", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Checkpoint")
    table.add_column("Updated")
    for summary in summaries:
        style = _STATE_STYLES.get(summary.state, "")
        progress = str(summary.items_processed)
        if summary.items_total is not None:
            progress = f"{summary.items_processed}/{summary.items_total}"
            if summary.percent_complete is not None:
                progress += f" ({summary.percent_complete:.1f}%)"
        table.add_row(
            summary.stage_name,
            f"[{style}]{summary.state.value}[/{style}]" if style else summary.state.value,
            progress,
            str(summary.error_count),
            summary.checkpoint_id or "-",
            summary.updated_at.isoformat(timespec="seconds") if summary.updated_at else "-",
        )
    console.print(table)


def _render_result(result: InvocationResult) -> None:
    style = _STATE_STYLES.get(result.status, "")
    stage = result.stage_name or "-"
    console.print(f"[bold]{stage}[/bold]: [{style}]{result.status.value}[/{style}] {result.message}")
    if result.checkpoint is not None and result.checkpoint.last_error is not None:
        last = result.checkpoint.last_error
        console.print(f"  last error: {last.classification.value} {last.category.value}: {last.message}")
    if result.next_stage:
        console.print(f"  next stage: {result.next_stage}")


def _print_events(args: argparse.Namespace, settings: CoordinatorSettings) -> int:
    if not settings.logging.log_dir:
        console.print("[bold red]No log_dir configured; events are not recorded[/bold red]")
        return 2
    path = os.path.join(settings.logging.log_dir, EVENTS_FILENAME)
    try:
        entries = load_events_from_jsonl(path, set(args.types) if args.types else None)
    except OSError as e:
        console.print(f"[bold red]Cannot read events:[/bold red] {e}")
        return 1
    for entry in entries:
        print(json.dumps(entry))
    return 0


async def _dispatch(args: argparse.Namespace, settings: CoordinatorSettings) -> int:
    if args.command == "events":
        return _print_events(args, settings)

    async with open_coordinator(settings) as coordinator:
        if args.command == "status":
            _render_summaries(args.unit, await coordinator.status(args.unit))
            return 0

        if args.command in ("invoke", "rerun"):
            context = ExecutionContext(items_total=args.items_total)
            if getattr(args, "execution_id", None):
                context.execution_id = args.execution_id
            if args.command == "invoke":
                result = await coordinator.invoke_stage(args.unit, args.stage, context)
            else:
                result = await coordinator.rerun_stage(args.unit, args.stage, context)
            _render_result(result)
            return 1 if result.status == StageState.FAILED else 0

        if args.command == "run":
            results = await coordinator.run_pipeline(args.unit)
            for result in results:
                _render_result(result)
            return 1 if results and results[-1].status == StageState.FAILED else 0

        if args.command == "decide":
            result = await coordinator.submit_decision(
                args.unit,
                args.stage,
                GateDecisionType(args.decision),
                reviewer=args.reviewer,
                feedback=args.feedback,
                actor_type=ActorType(args.actor_type),
            )
            _render_result(result)
            return 0

        if args.command == "skip":
            context = ExecutionContext(actor_type=ActorType(args.actor_type), actor_id=args.actor)
            result = await coordinator.skip_stage(args.unit, args.stage, reason=args.reason, context=context)
            _render_result(result)
            return 0

        if args.command == "audit":
            entries = await coordinator.store.get_audit_trail(args.unit, args.stage)
            if args.json:
                for entry in entries:
                    print(json.dumps(entry.model_dump(mode="json")))
                return 0
            table = Table(title=f"Audit trail for {args.unit}")
            for column in ("#", "Time", "Stage", "Action", "Actor", "Reasoning"):
                table.add_column(column)
            for entry in entries:
                actor = entry.actor_type.value + (f" ({entry.actor_id})" if entry.actor_id else "")
                table.add_row(
                    str(entry.id),
                    entry.timestamp.isoformat(timespec="seconds"),
                    entry.stage_name or "-",
                    entry.action.value,
                    actor,
                    entry.reasoning,
                )
            console.print(table)
            return 0

        if args.command == "pending":
            if args.overdue:
                states = await coordinator.gates.overdue_gates()
            else:
                states = await coordinator.store.list_pending_gates()
            table = Table(title="Awaiting review")
            for column in ("Unit", "Stage", "Checkpoint", "Pending since"):
                table.add_column(column)
            for state in states:
                since = state.gate_requested_at.isoformat(timespec="seconds") if state.gate_requested_at else "-"
                table.add_row(state.unit_of_work_id, state.stage_name, state.id, since)
            console.print(table)
            if args.stale:
                cutoff = utcnow() - timedelta(hours=settings.database.stale_after_hours)
                stale = await coordinator.store.list_stale_checkpoints(cutoff)
                stale_table = Table(title="Stale in-progress checkpoints")
                for column in ("Unit", "Stage", "Checkpoint", "Last update"):
                    stale_table.add_column(column)
                for state in stale:
                    stale_table.add_row(
                        state.unit_of_work_id,
                        state.stage_name,
                        state.id,
                        state.updated_at.isoformat(timespec="seconds"),
                    )
                console.print(stale_table)
            return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValueError, PipelineError) as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return 2

    level = LogLevel(args.verbose_level or settings.logging.level)
    log_to_file = args.log_file is not None or settings.logging.log_to_file
    log_file = args.log_file
    if log_file is None and settings.logging.log_dir:
        log_file = os.path.join(settings.logging.log_dir, "pipeline.log")
    setup_logging(
        level=level,
        log_to_file=log_to_file,
        log_file=log_file,
        verbose=args.verbose,
        debug=args.debug,
    )
    if settings.logging.log_dir:
        configure_run_logging(settings.logging.log_dir)

    if args.verbose or args.debug:
        console.print(Rule(f"[bold cyan]pipeline-coordinator {args.command}[/bold cyan]", style="cyan"))

    try:
        return asyncio.run(_dispatch(args, settings))
    except PipelineError as e:
        logger.debug("Command failed", exc_info=True)
        console.print(f"[bold red]{type(e).__name__}:[/bold red] {e}")
        return 1
    finally:
        reset_run_logging()


if __name__ == "__main__":
    sys.exit(main())
