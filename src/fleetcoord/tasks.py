"""Task definitions and the handler registry used by workers."""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fleetcoord.errors import TaskFailed
from fleetcoord.state.schema import GroupSpec, TaskSpec

# Max characters of command output kept in a failure message
OUTPUT_LIMIT = 4000


@dataclass
class Task:
    """Runtime copy of a TaskSpec, with its attempt counter."""

    name: str
    resources: tuple[str, ...] = ()
    action: str = "noop"
    params: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0

    @classmethod
    def from_spec(cls, spec: TaskSpec) -> Task:
        return cls(
            name=spec.name,
            resources=tuple(spec.resources),
            action=spec.action,
            params=dict(spec.params),
        )


@dataclass
class TaskContext:
    """What a handler knows about the worker running it."""

    worker_id: str
    group: str
    project_root: Path
    dry_run: bool = False
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("fleetcoord.tasks"))


Handler = Callable[[Task, TaskContext], "Awaitable[None] | None"]


def tasks_for_group(group: GroupSpec) -> list[Task]:
    """Build the ordered task list for a group.

    A group configured without tasks still gets one ``noop`` task leasing
    its ``resource_patterns``, so dependents wait for it like any other.
    """
    if not group.tasks:
        return [
            Task(
                name=f"Process {group.id} tasks",
                resources=tuple(group.resource_patterns),
                action="noop",
            )
        ]
    return [Task.from_spec(spec) for spec in group.tasks]


async def noop_handler(task: Task, ctx: TaskContext) -> None:
    ctx.logger.info("[%s] %s: nothing to do", ctx.worker_id, task.name)


async def command_handler(task: Task, ctx: TaskContext) -> None:
    """Run ``params.command`` in the project root.

    ``command`` may be a string (split shell-style) or an argument list.
    Optional ``params.cwd`` is resolved against the project root.

    Raises:
        TaskFailed: Missing command, spawn failure or non-zero exit.
    """
    command = task.params.get("command")
    if not command:
        raise TaskFailed(f"Task {task.name}: 'command' action needs params.command")
    argv = shlex.split(command) if isinstance(command, str) else [str(a) for a in command]

    if ctx.dry_run:
        ctx.logger.info("[%s] dry run, would run: %s", ctx.worker_id, shlex.join(argv))
        return

    cwd = ctx.project_root / task.params.get("cwd", ".")
    env = os.environ.copy()
    env.update({str(k): str(v) for k, v in (task.params.get("env") or {}).items()})
    env["FLEET_WORKER_ID"] = ctx.worker_id
    env["FLEET_GROUP"] = ctx.group

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,  # Merge stderr into stdout
            cwd=str(cwd),
            env=env,
        )
    except OSError as e:
        raise TaskFailed(f"Task {task.name}: cannot run {argv[0]}: {e}") from e

    try:
        stdout_data, _ = await process.communicate()
    except asyncio.CancelledError:
        # Timed out or shutting down; do not leave the child running
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
        raise

    output = stdout_data.decode("utf-8", errors="replace")
    if process.returncode != 0:
        if len(output) > OUTPUT_LIMIT:
            output = "... (output truncated)\n" + output[-OUTPUT_LIMIT:]
        raise TaskFailed(
            f"Task {task.name}: command exited with {process.returncode}\n{output}".rstrip()
        )
    ctx.logger.debug("[%s] %s output:\n%s", ctx.worker_id, task.name, output)


class HandlerRegistry:
    """Maps task action names to handler callables.

    Handlers take ``(task, ctx)``. Coroutine functions are awaited by the
    worker; plain functions run in a thread so they cannot block the
    heartbeat.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._load_builtin_handlers()

    def _load_builtin_handlers(self) -> None:
        self._handlers["noop"] = noop_handler
        self._handlers["command"] = command_handler

    def register(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> Handler:
        """Look up a handler.

        Raises:
            TaskFailed: No handler is registered under ``name``.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise TaskFailed(f"No handler for action '{name}'")
        return handler

    def list_handlers(self) -> list[str]:
        return sorted(self._handlers)

    @staticmethod
    def is_async(handler: Handler) -> bool:
        return inspect.iscoroutinefunction(handler)
