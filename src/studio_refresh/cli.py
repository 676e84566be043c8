"""studio-refresh command line: batch lifecycle and lesson lookup.

Run with: studio-refresh init-batch
Process:  studio-refresh process-task 2025-07-17-1a2b3c4d --max-tasks 5
Drive:    studio-refresh run latest
Status:   studio-refresh batch-status latest
Lessons:  studio-refresh lessons gnz 2025-07-18 --table

Machine-readable results (batch id, JSON) go to stdout; logs and human
messages go to stderr.

Exit codes:
  0 = success
  1 = error (message on stderr)
"""

import argparse
import asyncio
import json
import sys
from datetime import date, timedelta

from dotenv import load_dotenv

from studio_refresh.config import RefreshConfig, get_config
from studio_refresh.coordinator import BatchCoordinator
from studio_refresh.driver import ContinuationDriver
from studio_refresh.lesson_store import LessonStore
from studio_refresh.locations import SiteLocationDirectory, StaticLocationDirectory
from studio_refresh.logging import get_logger, setup_logging
from studio_refresh.models import BatchSummary, LessonFilters, LessonRecord
from studio_refresh.session import BrowserSession
from studio_refresh.task_store import TaskStore
from studio_refresh.worker import ExtractionWorker

log = get_logger(__name__)


def _log(msg: str) -> None:
    """Write human messages to stderr so stdout stays clean for JSON."""
    print(msg, file=sys.stderr)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="studio-refresh",
        description="Refresh studio lesson schedules in resumable batches.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Launch browser in headed mode (visible window).",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    init = commands.add_parser("init-batch", help="Create a batch of pending tasks.")
    init.add_argument("--days", type=int, default=None, help="Days in the horizon.")
    init.add_argument(
        "--locations",
        default=None,
        help="JSON file of studios. Scraped from the site when omitted.",
    )
    init.add_argument(
        "--no-clear",
        action="store_true",
        help="Keep stored lessons of the refresh scope.",
    )

    commands.add_parser("clear-lessons", help="Delete every stored lesson.")

    process = commands.add_parser("process-task", help="Process pending tasks.")
    process.add_argument("batch_id", help="Batch id or 'latest'.")
    process.add_argument("--max-tasks", type=int, default=1)

    run = commands.add_parser("run", help="Process tasks until done or out of time.")
    run.add_argument("batch_id", help="Batch id or 'latest'.")
    run.add_argument(
        "--budget",
        type=float,
        default=None,
        help="Wall-clock budget in seconds.",
    )

    status = commands.add_parser("batch-status", help="Show batch progress.")
    status.add_argument("batch_id", help="Batch id or 'latest'.")
    status.add_argument("--json", action="store_true", help="Print JSON.")

    reset_failed = commands.add_parser("reset-failed", help="Re-queue failed tasks.")
    reset_failed.add_argument("batch_id", help="Batch id or 'latest'.")
    reset_failed.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Only re-queue tasks claimed fewer times than this.",
    )

    reset_stale = commands.add_parser(
        "reset-stale", help="Return stuck processing tasks to pending."
    )
    reset_stale.add_argument("batch_id", help="Batch id or 'latest'.")
    reset_stale.add_argument("--minutes", type=int, default=None)

    lessons = commands.add_parser("lessons", help="Show stored lessons of a studio-day.")
    lessons.add_argument("location", help="Studio code, e.g. gnz.")
    lessons.add_argument("date", type=date.fromisoformat, help="YYYY-MM-DD")
    lessons.add_argument("--program", default=None)
    lessons.add_argument("--instructor", default=None)
    lessons.add_argument("--available-only", action="store_true")
    lessons.add_argument("--table", action="store_true", help="Print a table.")

    return parser.parse_args(argv)


def _format_table(lessons: list[LessonRecord]) -> str:
    """Format lessons as a human-readable table.

    Columns: Time | Lesson | Instructor | Seats | Source
    """
    if not lessons:
        return "(no lessons scheduled)"

    headers = ["Time", "Lesson", "Instructor", "Seats", "Source"]
    rows = []
    for lesson in lessons:
        seats = f"{lesson.available_slots}/{lesson.total_slots}"
        if not lesson.is_available:
            seats = "full"
        rows.append(
            [
                f"{lesson.start_time}-{lesson.end_time}",
                lesson.lesson_name,
                lesson.instructor or "-",
                seats,
                lesson.availability_source,
            ]
        )

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    header_line = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-+-".join("-" * w for w in widths)
    row_lines = [
        " | ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)) for row in rows
    ]
    return "\n".join([header_line, separator, *row_lines])


def _format_status(summary: BatchSummary) -> str:
    status = summary.status
    lines = [
        f"Batch {summary.batch_id}: {status.progress_percent}% done",
        f"  total={status.total} pending={status.pending} "
        f"processing={status.processing} completed={status.completed} "
        f"failed={status.failed}",
        f"  lessons={summary.total_lessons} "
        f"duration={summary.total_duration_ms / 1000:.1f}s",
    ]
    if summary.location_progress:
        lines.append("  Locations:")
        for code, progress in sorted(summary.location_progress.items()):
            lines.append(f"    {code}: {progress.completed}/{progress.total}")
    if summary.failures:
        lines.append("  Failures:")
        for failure in summary.failures:
            lines.append(
                f"    {failure.location_code} {failure.target_date} "
                f"(attempts={failure.attempts}): {failure.error_message}"
            )
    if summary.pending_preview:
        preview = ", ".join(str(key) for key in summary.pending_preview)
        lines.append(f"  Next pending: {preview}")
    return "\n".join(lines)


def _open_stores(config: RefreshConfig) -> tuple[TaskStore, LessonStore]:
    task_store = TaskStore(config.database_path, busy_timeout_s=config.store_busy_timeout_s)
    lesson_store = LessonStore(
        config.database_path, busy_timeout_s=config.store_busy_timeout_s
    )
    task_store.migrate()
    lesson_store.migrate()
    return task_store, lesson_store


def _resolve_batch_id(task_store: TaskStore, batch_id: str) -> str:
    if batch_id != "latest":
        return batch_id
    latest = task_store.latest_batch()
    if latest is None:
        raise ValueError("No batch exists yet; run init-batch first")
    return latest.batch_id


async def _init_batch(args: argparse.Namespace, config: RefreshConfig) -> None:
    task_store, lesson_store = _open_stores(config)
    locations_file = args.locations or config.locations_file

    async with BrowserSession(config) as session:
        if locations_file:
            directory = StaticLocationDirectory(locations_file)
        else:
            directory = SiteLocationDirectory(session, config)
        locations = await directory.list_locations()

        coordinator = BatchCoordinator(
            task_store, lesson_store, ExtractionWorker(session, config), config
        )
        batch_id = coordinator.initialize_batch(
            locations, args.days, clear_lessons=not args.no_clear
        )

    _log(f"Created batch {batch_id} for {len(locations)} locations")
    print(batch_id)


async def _drive(
    args: argparse.Namespace,
    config: RefreshConfig,
    *,
    max_tasks: int | None,
    budget_s: float | None,
) -> None:
    task_store, lesson_store = _open_stores(config)
    batch_id = _resolve_batch_id(task_store, args.batch_id)

    async with BrowserSession(config) as session:
        coordinator = BatchCoordinator(
            task_store, lesson_store, ExtractionWorker(session, config), config
        )
        result = await ContinuationDriver(coordinator, config).run(
            batch_id, budget_s=budget_s, max_tasks=max_tasks
        )

    output = {
        "batch_id": batch_id,
        "has_more": result.has_more,
        "outcome": result.outcome.value,
        "processed": result.processed,
        "elapsed_s": round(result.elapsed_s, 1),
        "status": result.summary.model_dump(mode="json") if result.summary else None,
    }
    print(json.dumps(output, indent=2))


def _batch_status(args: argparse.Namespace, config: RefreshConfig) -> None:
    task_store, _ = _open_stores(config)
    batch_id = _resolve_batch_id(task_store, args.batch_id)
    if task_store.get_batch(batch_id) is None:
        raise ValueError(f"Batch {batch_id} not found")

    summary = task_store.get_batch_summary(batch_id)
    if args.json:
        print(json.dumps(summary.model_dump(mode="json"), indent=2, ensure_ascii=False))
    else:
        print(_format_status(summary))


def _lessons(args: argparse.Namespace, config: RefreshConfig) -> None:
    _, lesson_store = _open_stores(config)
    filters = LessonFilters(
        program=args.program,
        instructor=args.instructor,
        available_only=args.available_only,
    )
    lessons = lesson_store.query(args.location, args.date, filters)
    _log(f"{len(lessons)} lessons for {args.location} on {args.date}")

    if args.table:
        print(_format_table(lessons))
    else:
        output = [lesson.model_dump(mode="json") for lesson in lessons]
        print(json.dumps(output, indent=2, ensure_ascii=False))


def run_command(args: argparse.Namespace, config: RefreshConfig) -> None:
    if args.command == "init-batch":
        asyncio.run(_init_batch(args, config))
    elif args.command == "clear-lessons":
        _, lesson_store = _open_stores(config)
        print(json.dumps({"removed": lesson_store.clear()}))
    elif args.command == "process-task":
        asyncio.run(_drive(args, config, max_tasks=args.max_tasks, budget_s=None))
    elif args.command == "run":
        asyncio.run(_drive(args, config, max_tasks=None, budget_s=args.budget))
    elif args.command == "batch-status":
        _batch_status(args, config)
    elif args.command == "reset-failed":
        task_store, _ = _open_stores(config)
        batch_id = _resolve_batch_id(task_store, args.batch_id)
        max_attempts = args.max_attempts
        if max_attempts is None:
            max_attempts = config.max_failed_attempts
        print(json.dumps({"reset": task_store.reset_failed(batch_id, max_attempts)}))
    elif args.command == "reset-stale":
        task_store, _ = _open_stores(config)
        batch_id = _resolve_batch_id(task_store, args.batch_id)
        minutes = args.minutes
        if minutes is None:
            minutes = config.stale_after_minutes
        reset = task_store.reset_stale_processing(batch_id, timedelta(minutes=minutes))
        print(json.dumps({"reset": reset}))
    elif args.command == "lessons":
        _lessons(args, config)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    config = get_config()
    if args.headed:
        config = config.model_copy(update={"headless": False})
    setup_logging(
        json_output=config.log_json,
        log_level=config.log_level,
        command=args.command,
    )

    try:
        run_command(args, config)
    except Exception as e:
        log.error("command_failed", command=args.command, error_type=type(e).__name__)
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
