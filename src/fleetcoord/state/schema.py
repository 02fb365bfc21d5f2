"""Data schemas for the shared coordination state document."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class WorkerStatus(Enum):
    """Lifecycle state of a worker."""

    INITIALIZING = "initializing"  # Registered, waiting on dependencies
    WORKING = "working"  # Executing a task
    WAITING = "waiting"  # Alive, no task in hand
    STANDBY = "standby"  # Registered without a group
    STALE = "stale"  # Heartbeat lapsed; leases kept
    COMPLETED = "completed"  # All tasks of the group done
    ERROR = "error"  # Unrecoverable failure
    STOPPING = "stopping"  # Coordinator asked the worker to stop
    REASSIGNED = "reassigned"  # Moved to a new group; restarts as initializing

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES


TERMINAL_STATUSES = frozenset({WorkerStatus.COMPLETED, WorkerStatus.ERROR})
LIVE_STATUSES = frozenset(
    {WorkerStatus.INITIALIZING, WorkerStatus.WORKING, WorkerStatus.WAITING}
)


@dataclass(frozen=True)
class TaskSpec:
    """One unit of work inside a group, as configured."""

    name: str
    resources: tuple[str, ...] = ()
    action: str = "noop"
    params: dict[str, Any] = field(default_factory=dict, hash=False, compare=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "resources": list(self.resources),
            "action": self.action,
            "params": dict(self.params),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskSpec:
        resources = data.get("resources", data.get("files", []))
        return cls(
            name=data["name"],
            resources=tuple(resources or ()),
            action=data.get("action", "noop"),
            params=dict(data.get("params") or {}),
        )


@dataclass(frozen=True)
class GroupSpec:
    """A named partition of work with its dependency and resource configuration.

    Immutable once the state is initialized.
    """

    id: str
    name: str
    priority: int = 1
    blocked_by: tuple[str, ...] = ()
    resource_patterns: tuple[str, ...] = ()
    tasks: tuple[TaskSpec, ...] = ()
    externally_complete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "blocked_by": list(self.blocked_by),
            "resource_patterns": list(self.resource_patterns),
            "tasks": [t.to_dict() for t in self.tasks],
            "externally_complete": self.externally_complete,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], group_id: str | None = None) -> GroupSpec:
        gid = data.get("id", group_id)
        if not gid:
            raise ValueError("group entry has no id")
        # "files" is accepted for configs written against the older layout
        patterns = data.get("resource_patterns", data.get("files", []))
        return cls(
            id=gid,
            name=data.get("name", gid),
            priority=int(data.get("priority", 1)),
            blocked_by=tuple(data.get("blocked_by") or ()),
            resource_patterns=tuple(patterns or ()),
            tasks=tuple(TaskSpec.from_dict(t) for t in data.get("tasks") or ()),
            externally_complete=bool(data.get("externally_complete", False)),
        )


@dataclass
class Progress:
    """Task counters reported by a worker."""

    total_tasks: int = 0
    completed_tasks: int = 0
    current_task: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "current_task": self.current_task,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Progress:
        return cls(
            total_tasks=data.get("total_tasks", 0),
            completed_tasks=data.get("completed_tasks", 0),
            current_task=data.get("current_task"),
        )


@dataclass
class WorkerRecord:
    """A worker's registration in the shared state.

    Status, progress and heartbeat are written by the worker itself; the
    coordinator only writes stale/stopping/reassigned or deletes the record.
    """

    id: str
    group: str | None
    status: WorkerStatus = WorkerStatus.INITIALIZING
    started_at: datetime = field(default_factory=utcnow)
    last_heartbeat: datetime = field(default_factory=utcnow)
    current_files: list[str] = field(default_factory=list)
    progress: Progress = field(default_factory=Progress)
    metadata: dict[str, Any] = field(default_factory=dict)
    previous_group: str | None = None
    reassigned_at: datetime | None = None
    stale_since: datetime | None = None
    # Status held when marked stale
    stale_from: WorkerStatus | None = None
    error: str | None = None

    def touch(self, now: datetime | None = None) -> None:
        """Advance last_heartbeat, never moving it backwards."""
        now = now or utcnow()
        if now > self.last_heartbeat:
            self.last_heartbeat = now

    def clear_stale(self) -> None:
        self.stale_since = None
        self.stale_from = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group": self.group,
            "status": self.status.value,
            "started_at": _format_time(self.started_at),
            "last_heartbeat": _format_time(self.last_heartbeat),
            "current_files": list(self.current_files),
            "progress": self.progress.to_dict(),
            "metadata": dict(self.metadata),
            "previous_group": self.previous_group,
            "reassigned_at": _format_time(self.reassigned_at),
            "stale_since": _format_time(self.stale_since),
            "stale_from": self.stale_from.value if self.stale_from else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerRecord:
        return cls(
            id=data["id"],
            group=data.get("group"),
            status=WorkerStatus(data.get("status", "initializing")),
            started_at=_parse_time(data.get("started_at")) or utcnow(),
            last_heartbeat=_parse_time(data.get("last_heartbeat")) or utcnow(),
            current_files=list(data.get("current_files") or []),
            progress=Progress.from_dict(data.get("progress") or {}),
            metadata=dict(data.get("metadata") or {}),
            previous_group=data.get("previous_group"),
            reassigned_at=_parse_time(data.get("reassigned_at")),
            stale_since=_parse_time(data.get("stale_since")),
            stale_from=WorkerStatus(data["stale_from"]) if data.get("stale_from") else None,
            error=data.get("error"),
        )


@dataclass
class SystemInfo:
    """Bookkeeping about the coordination state itself."""

    initialized_at: datetime = field(default_factory=utcnow)
    version: int = SCHEMA_VERSION
    project_root: str = ""
    max_workers: int = 6
    coordinator_pid: int | None = None
    revision: int = 0  # Incremented by every committed transaction
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "initialized_at": _format_time(self.initialized_at),
            "version": self.version,
            "project_root": self.project_root,
            "max_workers": self.max_workers,
            "coordinator_pid": self.coordinator_pid,
            "revision": self.revision,
            "updated_at": _format_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemInfo:
        return cls(
            initialized_at=_parse_time(data.get("initialized_at")) or utcnow(),
            version=data.get("version", SCHEMA_VERSION),
            project_root=data.get("project_root", ""),
            max_workers=data.get("max_workers", 6),
            coordinator_pid=data.get("coordinator_pid"),
            revision=data.get("revision", 0),
            updated_at=_parse_time(data.get("updated_at")) or utcnow(),
        )


@dataclass
class TaskProgressSummary:
    """Derived group counters; recomputed on every commit."""

    total_groups: int = 0
    completed_groups: int = 0
    active_groups: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_groups": self.total_groups,
            "completed_groups": self.completed_groups,
            "active_groups": self.active_groups,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskProgressSummary:
        return cls(
            total_groups=data.get("total_groups", 0),
            completed_groups=data.get("completed_groups", 0),
            active_groups=data.get("active_groups", 0),
        )


@dataclass
class SystemState:
    """The full shared state document."""

    system_info: SystemInfo = field(default_factory=SystemInfo)
    active_workers: dict[str, WorkerRecord] = field(default_factory=dict)
    resource_leases: dict[str, str] = field(default_factory=dict)
    group_specs: dict[str, GroupSpec] = field(default_factory=dict)
    task_progress: TaskProgressSummary = field(default_factory=TaskProgressSummary)

    @classmethod
    def fresh(
        cls,
        groups: dict[str, GroupSpec] | None = None,
        *,
        project_root: str = "",
        max_workers: int = 6,
    ) -> SystemState:
        """A brand-new state seeded with group specs."""
        state = cls(
            system_info=SystemInfo(
                project_root=project_root,
                max_workers=max_workers,
                coordinator_pid=os.getpid(),
            ),
            group_specs=dict(groups or {}),
        )
        state.recompute_progress()
        return state

    def copy(self) -> SystemState:
        return copy.deepcopy(self)

    def workers_in_group(self, group_id: str) -> list[WorkerRecord]:
        return [w for w in self.active_workers.values() if w.group == group_id]

    def leases_held_by(self, holder_id: str) -> list[str]:
        return sorted(r for r, h in self.resource_leases.items() if h == holder_id)

    def group_satisfied(self, group_id: str, *, empty_groups_satisfied: bool = False) -> bool:
        """True if ``group_id`` counts as completed for its dependents.

        A group is satisfied when at least one of its workers has status
        ``completed``. A group with no workers at all is satisfied only if its
        spec is ``externally_complete`` or ``empty_groups_satisfied`` is on.
        """
        workers = self.workers_in_group(group_id)
        if any(w.status is WorkerStatus.COMPLETED for w in workers):
            return True
        if workers:
            return False
        spec = self.group_specs.get(group_id)
        if spec is not None and spec.externally_complete:
            return True
        return empty_groups_satisfied

    def recompute_progress(self, *, empty_groups_satisfied: bool = False) -> TaskProgressSummary:
        completed = 0
        active = 0
        for group_id in self.group_specs:
            if self.group_satisfied(group_id, empty_groups_satisfied=empty_groups_satisfied):
                completed += 1
            if any(
                not w.status.is_terminal and w.status is not WorkerStatus.STOPPING
                for w in self.workers_in_group(group_id)
            ):
                active += 1
        self.task_progress = TaskProgressSummary(
            total_groups=len(self.group_specs),
            completed_groups=completed,
            active_groups=active,
        )
        return self.task_progress

    def to_dict(self) -> dict[str, Any]:
        return {
            "system_info": self.system_info.to_dict(),
            "active_workers": {wid: w.to_dict() for wid, w in self.active_workers.items()},
            "resource_leases": dict(self.resource_leases),
            "group_specs": {gid: g.to_dict() for gid, g in self.group_specs.items()},
            "task_progress": self.task_progress.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemState:
        workers = {
            wid: WorkerRecord.from_dict({"id": wid, **(w or {})})
            for wid, w in (data.get("active_workers") or {}).items()
        }
        groups = {
            gid: GroupSpec.from_dict(g or {}, group_id=gid)
            for gid, g in (data.get("group_specs") or {}).items()
        }
        return cls(
            system_info=SystemInfo.from_dict(data.get("system_info") or {}),
            active_workers=workers,
            resource_leases={str(k): str(v) for k, v in (data.get("resource_leases") or {}).items()},
            group_specs=groups,
            task_progress=TaskProgressSummary.from_dict(data.get("task_progress") or {}),
        )
