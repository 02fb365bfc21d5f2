"""Coordinator control loop, status queries and operator commands."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from fleetcoord.config.schema import Config
from fleetcoord.errors import FleetError, GroupNotFound, InvalidTransition, UnknownWorker
from fleetcoord.lifecycle import WorkerLifecycle
from fleetcoord.logging import get_logger
from fleetcoord.monitor import LivenessMonitor
from fleetcoord.resolver import can_proceed, execution_order, validate_groups
from fleetcoord.state.schema import GroupSpec, WorkerStatus, utcnow
from fleetcoord.state.store import StateStore


@dataclass
class SystemStatus:
    """Read-only summary of the shared state."""

    active_workers: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    active_lease_count: int = 0
    healthy: bool = False
    workers: list[dict[str, Any]] = field(default_factory=list)
    uptime_seconds: float = 0.0
    stale_workers: list[str] = field(default_factory=list)
    revision: int = 0
    task_progress: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_workers": self.active_workers,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "active_lease_count": self.active_lease_count,
            "healthy": self.healthy,
            "workers": list(self.workers),
            "uptime_seconds": self.uptime_seconds,
            "stale_workers": list(self.stale_workers),
            "revision": self.revision,
            "task_progress": dict(self.task_progress),
            "error": self.error,
        }


@dataclass
class AdminResult:
    """Outcome of an operator command."""

    success: bool
    released_resources: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "released_resources": list(self.released_resources),
            "error": self.error,
        }


@dataclass
class GroupInfo:
    """A configured group with its live readiness."""

    spec: GroupSpec
    ready: bool
    blockers: list[str]
    workers: list[str]


class Coordinator:
    """Owns state initialization and the liveness monitor.

    Example:
        coordinator = Coordinator(StateStore(project_root), config)
        await coordinator.run()      # until stop() is called
    """

    def __init__(
        self,
        store: StateStore,
        config: Config | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._config = config or Config()
        self._log = logger or get_logger("coordinator")
        self._lifecycle = WorkerLifecycle(store, logger=self._log)
        coord = self._config.coordinator
        self._monitor = LivenessMonitor(
            self._lifecycle,
            stale_timeout=coord.effective_stale_timeout,
            sweep_interval=coord.effective_sweep_interval,
            removal_timeout=coord.removal_timeout,
            logger=self._log,
        )
        self._stopped: asyncio.Event | None = None

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def monitor(self) -> LivenessMonitor:
        return self._monitor

    @property
    def lifecycle(self) -> WorkerLifecycle:
        return self._lifecycle

    def initialize(self) -> bool:
        """Validate groups and create the state document if missing.

        Returns:
            True if a new document was created.

        Raises:
            CyclicDependency: The configured groups contain a cycle.
            GroupNotFound: A ``blocked_by`` entry names an unknown group.
        """
        validate_groups(self._config.groups)
        _, created = self._store.initialize(self._config.groups, coordinator_pid=os.getpid())
        if not created:
            self._log.info("Using existing coordination state at %s", self._store.path)
        plan = execution_order(self._config.groups)
        self._log.info("Group plan: %s", " -> ".join(plan) or "(none)")
        return created

    async def start(self) -> None:
        await asyncio.to_thread(self.initialize)
        self._stopped = asyncio.Event()
        self._monitor.start()
        self._log.info("Coordinator started for %s", self._store.project_root)

    async def stop(self) -> None:
        await self._monitor.stop()
        if self._stopped is not None:
            self._stopped.set()
        self._log.info("Coordinator stopped")

    async def run(self) -> None:
        """Start, then serve until ``stop()`` is called or the task is cancelled."""
        await self.start()
        assert self._stopped is not None
        try:
            await self._stopped.wait()
        finally:
            await self._monitor.stop()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_system_status(self) -> SystemStatus:
        """Build a status summary from a snapshot. Never raises on store errors."""
        try:
            state = self._store.snapshot()
        except FleetError as e:
            return SystemStatus(healthy=False, error=str(e))
        if state is None:
            return SystemStatus(healthy=False, error="Coordination state is not initialized")

        workers = sorted(state.active_workers.values(), key=lambda w: w.id)
        progress = state.recompute_progress(
            empty_groups_satisfied=self._config.resolver.empty_groups_satisfied
        )
        now = utcnow()
        return SystemStatus(
            active_workers=len(workers),
            total_tasks=sum(w.progress.total_tasks for w in workers),
            completed_tasks=sum(w.progress.completed_tasks for w in workers),
            active_lease_count=len(state.resource_leases),
            healthy=True,
            workers=[w.to_dict() for w in workers],
            uptime_seconds=max(0.0, (now - state.system_info.initialized_at).total_seconds()),
            stale_workers=[w.id for w in workers if w.status is WorkerStatus.STALE],
            revision=state.system_info.revision,
            task_progress=progress.to_dict(),
        )

    def list_groups(self) -> list[GroupInfo]:
        state = self._store.snapshot()
        if state is None:
            return []
        empty_ok = self._config.resolver.empty_groups_satisfied
        groups: list[GroupInfo] = []
        for gid in execution_order(state.group_specs):
            readiness = can_proceed(gid, state, empty_groups_satisfied=empty_ok)
            groups.append(
                GroupInfo(
                    spec=state.group_specs[gid],
                    ready=readiness.ready,
                    blockers=readiness.blockers,
                    workers=[w.id for w in state.workers_in_group(gid)],
                )
            )
        return groups

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def remove_worker(self, worker_id: str) -> AdminResult:
        """Remove a worker and release its leases in one transaction."""
        try:
            released = self._lifecycle.remove(worker_id)
        except UnknownWorker as e:
            return AdminResult(success=False, error=str(e))
        return AdminResult(success=True, released_resources=released)

    def reassign_worker(self, worker_id: str, group: str) -> AdminResult:
        """Move a worker to ``group``, releasing its leases in one transaction."""
        try:
            released = self._lifecycle.reassign(worker_id, group)
        except (UnknownWorker, GroupNotFound, InvalidTransition) as e:
            return AdminResult(success=False, error=str(e))
        return AdminResult(success=True, released_resources=released)

    def stop_all(self) -> list[str]:
        """Ask every running worker to stop; returns the affected ids."""
        return self._lifecycle.stop_all()

    def reset(self) -> None:
        """Drop all workers and leases."""
        self._store.reset()
