"""Command-line interface for fleetcoord."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from rich.console import Console
from rich.table import Table

from fleetcoord import __version__
from fleetcoord.config import Config, load_config
from fleetcoord.coordinator import Coordinator, SystemStatus
from fleetcoord.errors import FleetError
from fleetcoord.logging import get_logger, setup_logging, shutdown_logging
from fleetcoord.state.schema import WorkerStatus
from fleetcoord.state.store import StateStore
from fleetcoord.worker import Worker

console = Console()

_STATUS_STYLES = {
    WorkerStatus.WORKING.value: "green",
    WorkerStatus.WAITING.value: "cyan",
    WorkerStatus.INITIALIZING.value: "blue",
    WorkerStatus.STANDBY.value: "dim",
    WorkerStatus.STALE.value: "yellow",
    WorkerStatus.COMPLETED.value: "bold green",
    WorkerStatus.ERROR.value: "bold red",
    WorkerStatus.STOPPING.value: "magenta",
    WorkerStatus.REASSIGNED.value: "blue",
}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="fleetcoord",
        description="Coordinate worker processes sharing one project directory",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=Path.cwd(),
        help="Project root holding the .fleet/ directory (default: cwd)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("coordinator", help="Initialize state and run the liveness monitor")

    worker_parser = subparsers.add_parser("worker", help="Run a worker")
    worker_parser.add_argument("--id", required=True, dest="worker_id", help="Unique worker id")
    target = worker_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--group", help="Group to work on")
    target.add_argument(
        "--standby",
        action="store_true",
        help="Join without a group and wait for an assignment",
    )
    worker_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log commands instead of running them",
    )

    status_parser = subparsers.add_parser("status", help="Show workers and leases")
    status_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    subparsers.add_parser("list-groups", help="List configured groups and their readiness")

    remove_parser = subparsers.add_parser("remove-worker", help="Remove a worker, releasing its leases")
    remove_parser.add_argument("--worker", required=True, help="Worker id")

    reassign_parser = subparsers.add_parser("reassign-worker", help="Move a worker to another group")
    reassign_parser.add_argument("--worker", required=True, help="Worker id")
    reassign_parser.add_argument("--group", required=True, help="New group")

    subparsers.add_parser("stop", help="Ask every running worker to stop")

    reset_parser = subparsers.add_parser("reset", help="Drop all workers and leases")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")

    return parser


def build_store(root: Path, config: Config) -> StateStore:
    return StateStore(
        root,
        groups=config.groups,
        max_workers=config.coordinator.max_workers,
        lock_timeout=config.store.lock_timeout,
        max_attempts=config.store.max_attempts,
        backoff_base=config.store.backoff_base,
        empty_groups_satisfied=config.resolver.empty_groups_satisfied,
    )


def _install_signal_handlers(callback) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, callback)


async def _run_coordinator(coordinator: Coordinator) -> int:
    _install_signal_handlers(lambda: asyncio.ensure_future(coordinator.stop()))
    await coordinator.run()
    return 0


async def _run_worker(worker: Worker) -> int:
    _install_signal_handlers(worker.shutdown)
    final = await worker.run()
    console.print(f"Worker [bold]{worker.worker_id}[/bold] finished: {final.value}")
    return 0


def render_status(status: SystemStatus) -> None:
    if not status.healthy:
        console.print(f"[red]Unhealthy:[/red] {status.error}")
        return

    progress = status.task_progress
    console.print(
        f"[bold]Workers:[/bold] {status.active_workers}  "
        f"[bold]Tasks:[/bold] {status.completed_tasks}/{status.total_tasks}  "
        f"[bold]Groups:[/bold] {progress.get('completed_groups', 0)}/"
        f"{progress.get('total_groups', 0)} done  "
        f"[bold]Leases:[/bold] {status.active_lease_count}  "
        f"[dim]rev {status.revision}[/dim]"
    )

    if not status.workers:
        console.print("[dim]No workers registered[/dim]")
        return

    table = Table(title="Workers")
    table.add_column("Worker", style="bold")
    table.add_column("Group")
    table.add_column("Status")
    table.add_column("Progress")
    table.add_column("Current task")
    table.add_column("Leases")
    table.add_column("Last heartbeat")

    for worker in status.workers:
        state = worker["status"]
        style = _STATUS_STYLES.get(state, "")
        progress = worker["progress"]
        table.add_row(
            worker["id"],
            worker["group"] or "-",
            f"[{style}]{state}[/{style}]" if style else state,
            f"{progress['completed_tasks']}/{progress['total_tasks']}",
            progress["current_task"] or "-",
            ", ".join(worker["current_files"]) or "-",
            worker["last_heartbeat"] or "-",
        )

    console.print(table)


def render_groups(coordinator: Coordinator) -> None:
    groups = coordinator.list_groups()
    if not groups:
        console.print("[dim]No groups (state not initialized?)[/dim]")
        return

    table = Table(title="Groups")
    table.add_column("Group", style="bold")
    table.add_column("Name")
    table.add_column("Priority")
    table.add_column("Blocked by")
    table.add_column("Tasks")
    table.add_column("Ready")
    table.add_column("Workers")

    for info in groups:
        table.add_row(
            info.spec.id,
            info.spec.name,
            str(info.spec.priority),
            ", ".join(info.spec.blocked_by) or "-",
            str(len(info.spec.tasks)),
            "[green]yes[/green]" if info.ready else f"[yellow]no ({', '.join(info.blockers)})[/yellow]",
            ", ".join(info.workers) or "-",
        )

    console.print(table)


def _dispatch(parsed: argparse.Namespace, config: Config) -> int:
    root = parsed.root.resolve()
    store = build_store(root, config)
    coordinator = Coordinator(store, config)

    if parsed.command == "coordinator":
        return asyncio.run(_run_coordinator(coordinator))

    if parsed.command == "worker":
        config.worker.dry_run = config.worker.dry_run or parsed.dry_run
        worker = Worker(
            parsed.worker_id,
            store,
            config.worker,
            group=parsed.group,
            standby=parsed.standby,
            resolver=config.resolver,
        )
        return asyncio.run(_run_worker(worker))

    if parsed.command == "status":
        status = coordinator.get_system_status()
        if parsed.json:
            console.print_json(json.dumps(status.to_dict()))
        else:
            render_status(status)
        return 0 if status.healthy else 1

    if parsed.command == "list-groups":
        render_groups(coordinator)
        return 0

    if parsed.command in ("remove-worker", "reassign-worker"):
        if parsed.command == "remove-worker":
            result = coordinator.remove_worker(parsed.worker)
        else:
            result = coordinator.reassign_worker(parsed.worker, parsed.group)
        if not result.success:
            console.print(f"[red]Failed:[/red] {result.error}")
            return 1
        released = ", ".join(result.released_resources) or "none"
        console.print(f"[green]Done.[/green] Released: {released}")
        return 0

    if parsed.command == "stop":
        stopped = coordinator.stop_all()
        console.print(f"Stop requested for {len(stopped)} workers")
        return 0

    if parsed.command == "reset":
        if not parsed.yes:
            console.print("[yellow]This drops every worker and lease. Re-run with --yes.[/yellow]")
            return 1
        coordinator.reset()
        console.print("[green]State reset.[/green]")
        return 0

    return 1


def run_cli(args: Sequence[str]) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return 1

    try:
        config = load_config(project_root=parsed.root)
    except FleetError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return 1

    if parsed.verbose:
        config.logging.verbose = parsed.verbose
    process = f"worker:{parsed.worker_id}" if parsed.command == "worker" else parsed.command
    setup_logging(config.logging, process=process)

    try:
        return _dispatch(parsed, config)
    except FleetError as e:
        get_logger("cli").error("%s", e)
        console.print(f"[red]Error:[/red] {e}")
        return 1
    finally:
        shutdown_logging()


def main() -> int:
    """Main entry point for the fleetcoord CLI."""
    return run_cli(sys.argv[1:])
