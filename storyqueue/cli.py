"""Operator CLI for the story generation task queue.

Works directly against the SQLite task store configured in
``database_path`` (or ``--db``).

Usage:
    storyqueue status                    Queue counts and 24h averages
    storyqueue list --status failed      List tasks
    storyqueue show <task-id>            Task details and queue position
    storyqueue show <task-id> --json     Full task record as JSON
    storyqueue cancel <task-id>          Cancel as administrator
    storyqueue retry <task-id>           Requeue a failed or canceled task
    storyqueue cleanup --days 7          Delete old finished tasks
    storyqueue recover                   Requeue orphaned running tasks
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import NoReturn

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from storyqueue.config import StoryQueueConfig, load_config
from storyqueue.errors import ConfigurationError, ErrorCode, StoryQueueError
from storyqueue.observability.logging import configure_logging
from storyqueue.tasks.models import (
    TaskFilters,
    TaskStatus,
    TaskType,
    format_duration,
)
from storyqueue.tasks.service import ADMIN_CANCEL_MESSAGE, TaskQueueService
from storyqueue.tasks.sqlite_store import SQLiteTaskStore

logger = logging.getLogger(__name__)

console = Console()

STATUS_COLORS = {
    TaskStatus.QUEUED: "yellow",
    TaskStatus.RUNNING: "blue",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.CANCELED: "dim",
}

Command = Callable[[TaskQueueService, argparse.Namespace], Awaitable[int]]


def _colored(status: TaskStatus) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def _load(args: argparse.Namespace) -> StoryQueueConfig:
    if not args.config:
        return load_config()
    path = Path(args.config)
    if not path.exists():
        raise ConfigurationError(
            f"Config file not found: {path}", config_path=str(path), code=ErrorCode.CFG_MISSING
        )
    return load_config(path)


def _run_command(args: argparse.Namespace, command: Command) -> int:
    config = _load(args)
    store = SQLiteTaskStore(args.db or config.database_path)
    service = TaskQueueService(store, config=config.queue)
    try:
        return asyncio.run(command(service, args))
    finally:
        store.close()


async def _status(service: TaskQueueService, args: argparse.Namespace) -> int:
    metrics = await service.get_queue_metrics()
    if args.json:
        console.print_json(data=metrics.to_dict())
        return 0

    table = Table(title="Queue Status", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Queued", str(metrics.queued))
    table.add_row("Running", str(metrics.running))
    table.add_row("Completed", str(metrics.completed))
    table.add_row("Failed", str(metrics.failed))
    table.add_row("Avg wait", format_duration(metrics.avg_wait_seconds) or "-")
    table.add_row("Avg processing", format_duration(metrics.avg_processing_seconds) or "-")
    table.add_row("Success rate", f"{metrics.success_rate * 100:.0f}%")
    console.print(table)
    console.print(
        f"[dim]Averages over the last {service.config.metrics_window_hours}h, "
        f"capacity {service.config.max_concurrent_tasks} concurrent tasks[/dim]"
    )
    return 0


async def _list(service: TaskQueueService, args: argparse.Namespace) -> int:
    filters = TaskFilters(limit=args.limit)
    if args.status:
        filters.statuses = [TaskStatus(args.status)]
    if args.type:
        filters.types = [TaskType(args.type)]

    if args.owner:
        tasks, total = await service.get_user_tasks(args.owner, filters)
    else:
        tasks, total = await service.list_tasks(filters)

    if args.json:
        console.print_json(data={"total": total, "tasks": [t.to_display_dict() for t in tasks]})
        return 0

    if not tasks:
        console.print("[dim]No tasks found[/dim]")
        return 0

    table = Table(title="Tasks")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Type")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Progress")
    table.add_column("Retries")
    table.add_column("Queued")

    for task in tasks:
        table.add_row(
            task.id[:12],
            task.task_type.value,
            task.priority.value,
            _colored(task.status),
            f"{task.progress}%",
            f"{task.retry_count}/{task.max_retries}",
            task.queued_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)
    console.print(f"\n[dim]Showing {len(tasks)} of {total} tasks[/dim]")
    return 0


async def _show(service: TaskQueueService, args: argparse.Namespace) -> int:
    task = await service.get_task(args.task_id)
    if task is None:
        console.print(f"[red]Task not found: {args.task_id}[/red]")
        return 1

    position = await service.get_queue_position(task.id)
    if args.json:
        data = task.to_dict()
        data["duration_seconds"] = task.duration_seconds
        data["queue_position"] = position.to_dict() if position else None
        console.print_json(data=data, default=str)
        return 0

    console.print(Panel(f"[bold]Task: {task.id}[/bold]", title="Task Details"))

    info = Table(show_header=False, box=None)
    info.add_column("Field", style="bold")
    info.add_column("Value")
    info.add_row("Owner", task.owner_id)
    info.add_row("Type", task.task_type.value)
    info.add_row("Priority", task.priority.value)
    info.add_row("Status", _colored(task.status))
    progress = f"{task.progress}%"
    if task.current_step:
        progress = f"{progress} - {task.current_step}"
    info.add_row("Progress", progress)
    info.add_row("Retries", f"{task.retry_count}/{task.max_retries}")
    info.add_row("Created", task.created_at.strftime("%Y-%m-%d %H:%M:%S"))
    info.add_row("Queued", task.queued_at.strftime("%Y-%m-%d %H:%M:%S"))
    if task.started_at:
        info.add_row("Started", task.started_at.strftime("%Y-%m-%d %H:%M:%S"))
    if task.completed_at:
        info.add_row("Completed", task.completed_at.strftime("%Y-%m-%d %H:%M:%S"))
    if task.estimated_time is not None:
        info.add_row("Estimated", format_duration(task.estimated_time) or "-")
    if task.actual_time is not None:
        info.add_row("Actual", format_duration(task.actual_time) or "-")
    if task.status == TaskStatus.RUNNING:
        info.add_row("Running for", format_duration(task.duration_seconds) or "-")
    if task.error:
        info.add_row("Error", f"[red]{task.error}[/red]")

    if position is not None:
        wait = format_duration(position.estimated_wait_seconds)
        info.add_row("Queue position", f"#{position.position} (about {wait})")

    console.print(info)
    return 0


async def _cancel(service: TaskQueueService, args: argparse.Namespace) -> int:
    if await service.cancel_task(args.task_id, reason=ADMIN_CANCEL_MESSAGE):
        console.print(f"[green]Task {args.task_id} cancelled[/green]")
        return 0
    console.print(f"[red]Cannot cancel task {args.task_id} (not found or already finished)[/red]")
    return 1


async def _retry(service: TaskQueueService, args: argparse.Namespace) -> int:
    if await service.retry_task(args.task_id):
        console.print(f"[green]Task {args.task_id} requeued[/green]")
        return 0
    console.print(
        f"[red]Cannot retry task {args.task_id} (not failed/cancelled or no retries left)[/red]"
    )
    return 1


async def _delete(service: TaskQueueService, args: argparse.Namespace) -> int:
    if await service.delete_task(args.task_id):
        console.print(f"[green]Task {args.task_id} deleted[/green]")
        return 0
    console.print(f"[red]Cannot delete task {args.task_id} (not found or still active)[/red]")
    return 1


async def _cleanup(service: TaskQueueService, args: argparse.Namespace) -> int:
    deleted = await service.cleanup_old_tasks(args.days)
    console.print(f"Deleted {deleted} finished task(s)")
    return 0


async def _recover(service: TaskQueueService, args: argparse.Namespace) -> int:
    recovered = await service.recover_orphaned_tasks(force=args.force)
    console.print(f"Requeued {recovered} orphaned task(s)")
    return 0


COMMANDS: dict[str, Command] = {
    "status": _status,
    "list": _list,
    "show": _show,
    "cancel": _cancel,
    "retry": _retry,
    "delete": _delete,
    "cleanup": _cleanup,
    "recover": _recover,
}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="storyqueue",
        description="Inspect and operate the story generation task queue.",
    )
    parser.add_argument("--db", help="SQLite task database (defaults to config database_path)")
    parser.add_argument("--config", help="Config file (defaults to ~/.storyqueue/config.json)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit structured JSON logs")

    subparsers = parser.add_subparsers(dest="command", title="commands")

    status_parser = subparsers.add_parser("status", help="Show queue counts and averages")
    status_parser.add_argument("--json", action="store_true", help="Print metrics as JSON")

    list_parser = subparsers.add_parser("list", help="List tasks")
    list_parser.add_argument("--owner", help="Only tasks of this owner")
    list_parser.add_argument(
        "--status", choices=[s.value for s in TaskStatus], help="Filter by status"
    )
    list_parser.add_argument(
        "--type", choices=[t.value for t in TaskType], help="Filter by task type"
    )
    list_parser.add_argument("--json", action="store_true", help="Print tasks as JSON")
    list_parser.add_argument("-n", "--limit", type=int, default=20, help="Max tasks to show")

    for name, help_text in (
        ("show", "Show task details"),
        ("cancel", "Cancel a queued or running task"),
        ("retry", "Requeue a failed or cancelled task"),
        ("delete", "Delete a finished task"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("task_id", help="Task ID")
        if name == "show":
            sub.add_argument("--json", action="store_true", help="Print the full task as JSON")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old finished tasks")
    cleanup_parser.add_argument(
        "--days", type=int, default=None, help="Retention in days (defaults to config)"
    )

    recover_parser = subparsers.add_parser("recover", help="Requeue orphaned running tasks")
    recover_parser.add_argument(
        "--force",
        action="store_true",
        help="Requeue every running task (only when no worker is alive)",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Command-line arguments. Uses sys.argv if None.

    Returns:
        Exit code.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(
        logging.DEBUG if args.verbose else logging.WARNING, structured=args.json_logs
    )

    if args.command is None:
        parser.print_help()
        return 1

    return _run_command(args, COMMANDS[args.command])


def run() -> NoReturn:
    """Entry point that handles errors and exit."""
    try:
        exit_code = main()
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        exit_code = 130
    except StoryQueueError as e:
        console.print(f"[red]Error ({e.code.value}): {e.message}[/red]")
        logger.debug("storyqueue error", exc_info=True)
        exit_code = 1
    except Exception as e:
        console.print(f"[red]Unexpected error: {e}[/red]")
        logger.exception("Unexpected error")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    run()
