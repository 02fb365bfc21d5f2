"""Worker registration and status state machine.

Each operation is one store transaction. Removal and reassignment release
the worker's leases in the same transaction that changes its record, so no
observer ever sees a removed worker still holding locks (or the reverse).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from fleetcoord.errors import (
    DuplicateWorker,
    GroupNotFound,
    InvalidTransition,
    UnknownWorker,
    WorkerLimitReached,
)
from fleetcoord.leases import release_all_in
from fleetcoord.logging import get_logger
from fleetcoord.state.schema import (
    Progress,
    SystemState,
    WorkerRecord,
    WorkerStatus,
    utcnow,
)
from fleetcoord.state.store import StateStore

S = WorkerStatus

# Status changes a worker may report about itself via update_status.
# Coordinator-driven moves (stale, reassigned, stopping, removal) have
# dedicated operations below.
ALLOWED_TRANSITIONS: dict[WorkerStatus, frozenset[WorkerStatus]] = {
    S.INITIALIZING: frozenset(
        {S.INITIALIZING, S.WORKING, S.WAITING, S.COMPLETED, S.ERROR, S.STOPPING}
    ),
    S.WORKING: frozenset({S.WORKING, S.WAITING, S.COMPLETED, S.ERROR, S.STOPPING}),
    S.WAITING: frozenset({S.WAITING, S.WORKING, S.COMPLETED, S.ERROR, S.STOPPING}),
    S.STANDBY: frozenset({S.STANDBY, S.ERROR, S.STOPPING}),
    S.STALE: frozenset(
        {S.INITIALIZING, S.WORKING, S.WAITING, S.COMPLETED, S.ERROR, S.STOPPING}
    ),
    S.REASSIGNED: frozenset({S.INITIALIZING, S.ERROR, S.STOPPING}),
    S.STOPPING: frozenset({S.STOPPING, S.ERROR}),
    S.COMPLETED: frozenset({S.COMPLETED}),
    S.ERROR: frozenset({S.ERROR}),
}


def _effective_status(record: WorkerRecord) -> WorkerStatus:
    # Coordinator decisions survive a stale spell; live work resumes as working
    prior = record.stale_from
    if record.status is S.STALE and prior is not None and not prior.is_live:
        return prior
    return record.status


def _get(state: SystemState, worker_id: str) -> WorkerRecord:
    record = state.active_workers.get(worker_id)
    if record is None:
        raise UnknownWorker(worker_id)
    return record


class WorkerLifecycle:
    """Registers workers and drives their status transitions."""

    def __init__(self, store: StateStore, *, logger: logging.Logger | None = None) -> None:
        self._store = store
        self._log = logger or get_logger("lifecycle")

    # ------------------------------------------------------------------
    # Worker-side operations
    # ------------------------------------------------------------------

    def register(
        self,
        worker_id: str,
        group: str | None,
        *,
        total_tasks: int = 0,
        metadata: dict[str, Any] | None = None,
        standby: bool = False,
    ) -> WorkerRecord:
        """Add a worker record.

        Args:
            worker_id: Unique id chosen by the joining process.
            group: Group to work on; ignored (stored as None) for standby.
            total_tasks: Number of tasks in the group's task list.
            metadata: Free-form info (pid, host, ...).
            standby: Register without a group and wait for an assignment.

        Raises:
            DuplicateWorker: ``worker_id`` is already registered.
            GroupNotFound: ``group`` is not configured.
            WorkerLimitReached: ``max_workers`` non-terminal workers exist.
        """
        now = utcnow()

        def modifier(state: SystemState) -> WorkerRecord:
            if worker_id in state.active_workers:
                raise DuplicateWorker(worker_id)
            if not standby and (group is None or group not in state.group_specs):
                raise GroupNotFound(str(group))

            limit = state.system_info.max_workers
            if limit > 0:
                active = sum(1 for w in state.active_workers.values() if not w.status.is_terminal)
                if active >= limit:
                    raise WorkerLimitReached(limit)

            record = WorkerRecord(
                id=worker_id,
                group=None if standby else group,
                status=S.STANDBY if standby else S.INITIALIZING,
                started_at=now,
                last_heartbeat=now,
                progress=Progress(total_tasks=total_tasks),
                metadata=dict(metadata or {}),
            )
            state.active_workers[worker_id] = record
            return record

        record = self._store.transact(modifier)
        self._log.info(
            "Worker registered: %s (%s)", worker_id, record.group or record.status.value
        )
        return record

    def update_status(
        self,
        worker_id: str,
        status: WorkerStatus,
        *,
        current_task: str | None = None,
        clear_current_task: bool = False,
        completed_tasks: int | None = None,
        total_tasks: int | None = None,
        error: str | None = None,
    ) -> WorkerRecord:
        """Change a worker's own status and progress; refreshes its heartbeat.

        Raises:
            UnknownWorker: The record is gone (e.g. removed concurrently).
            InvalidTransition: The state machine forbids the move.
        """
        now = utcnow()

        def modifier(state: SystemState) -> WorkerRecord:
            record = _get(state, worker_id)
            if status not in ALLOWED_TRANSITIONS[_effective_status(record)]:
                raise InvalidTransition(worker_id, record.status.value, status.value)
            if record.status is S.STALE and status is not S.STALE:
                record.clear_stale()
            record.status = status
            if current_task is not None:
                record.progress.current_task = current_task
            elif clear_current_task:
                record.progress.current_task = None
            if completed_tasks is not None:
                record.progress.completed_tasks = completed_tasks
            if total_tasks is not None:
                record.progress.total_tasks = total_tasks
            if error is not None:
                record.error = error
            record.touch(now)
            return record

        return self._store.transact(modifier)

    def heartbeat(self, worker_id: str, *, busy: bool = False) -> WorkerRecord:
        """Record liveness and return the current record.

        A stale worker that heartbeats again is back to ``working``, or to
        the stopping, reassigned or standby status it went stale in. While
        working, a heartbeat without a task in hand moves it to ``waiting``,
        and back to ``working`` once it is busy again.

        Raises:
            UnknownWorker: The record was removed.
        """
        now = utcnow()

        def modifier(state: SystemState) -> tuple[WorkerRecord, bool]:
            record = _get(state, worker_id)
            record.touch(now)
            resumed = False
            if record.status is S.STALE:
                prior = _effective_status(record)
                record.status = S.WORKING if prior is S.STALE else prior
                record.clear_stale()
                resumed = True
            elif record.status is S.WORKING and not busy:
                record.status = S.WAITING
            elif record.status is S.WAITING and busy:
                record.status = S.WORKING
            return record, resumed

        record, resumed = self._store.transact(modifier)
        if resumed:
            self._log.info("Worker %s reconnected after being stale", worker_id)
        return record

    def assign_group(self, worker_id: str, group: str) -> WorkerRecord:
        """Move a standby worker into a group (status ``reassigned``)."""
        now = utcnow()

        def modifier(state: SystemState) -> WorkerRecord:
            record = _get(state, worker_id)
            if group not in state.group_specs:
                raise GroupNotFound(group)
            if _effective_status(record) is not S.STANDBY:
                raise InvalidTransition(worker_id, record.status.value, S.REASSIGNED.value)
            record.group = group
            record.clear_stale()
            record.status = S.REASSIGNED
            record.reassigned_at = now
            record.progress = Progress()
            record.touch(now)
            return record

        record = self._store.transact(modifier)
        self._log.info("Standby worker %s joined %s", worker_id, group)
        return record

    # ------------------------------------------------------------------
    # Coordinator / operator operations
    # ------------------------------------------------------------------

    def remove(self, worker_id: str) -> list[str]:
        """Delete a worker record and release its leases atomically.

        Returns:
            The resource names that were released.

        Raises:
            UnknownWorker: No such worker.
        """

        def modifier(state: SystemState) -> tuple[str | None, list[str]]:
            record = _get(state, worker_id)
            released = release_all_in(state, worker_id)
            del state.active_workers[worker_id]
            return record.group, released

        group, released = self._store.transact(modifier)
        self._log.info(
            "Worker removed: %s (%s), released %d leases", worker_id, group, len(released)
        )
        return released

    def reassign(self, worker_id: str, new_group: str) -> list[str]:
        """Move a worker to another group, releasing its leases atomically.

        Progress is reset and the worker restarts under the new group.

        Returns:
            The resource names that were released.

        Raises:
            UnknownWorker: No such worker.
            GroupNotFound: ``new_group`` is not configured.
            InvalidTransition: The worker is in a terminal state.
        """
        now = utcnow()

        def modifier(state: SystemState) -> tuple[str | None, list[str]]:
            record = _get(state, worker_id)
            if new_group not in state.group_specs:
                raise GroupNotFound(new_group)
            if record.status.is_terminal:
                raise InvalidTransition(worker_id, record.status.value, S.REASSIGNED.value)
            released = release_all_in(state, worker_id)
            old_group = record.group
            record.previous_group = old_group
            record.group = new_group
            record.status = S.REASSIGNED
            record.reassigned_at = now
            record.clear_stale()
            record.current_files = []
            record.progress = Progress()
            return old_group, released

        old_group, released = self._store.transact(modifier)
        self._log.info("Worker reassigned: %s (%s -> %s)", worker_id, old_group, new_group)
        return released

    def mark_stale(self, stale_timeout: float, now: datetime | None = None) -> list[str]:
        """Mark non-terminal workers whose heartbeat is older than ``stale_timeout``.

        Leases are left in place; a stale worker may only be slow. Workers
        that were stopping, reassigned or in standby go stale too, so a crash
        in those states still ends in removal.

        Returns:
            Ids of workers newly marked stale.
        """
        now = now or utcnow()
        threshold = timedelta(seconds=stale_timeout)

        def modifier(state: SystemState) -> list[str]:
            marked: list[str] = []
            for record in state.active_workers.values():
                if record.status.is_terminal or record.status is S.STALE:
                    continue
                if now - record.last_heartbeat > threshold:
                    record.stale_from = record.status
                    record.status = S.STALE
                    record.stale_since = now
                    marked.append(record.id)
            return marked

        marked = self._store.transact(modifier)
        for worker_id in marked:
            self._log.warning("Worker %s marked as stale (missed heartbeat)", worker_id)
        return marked

    def remove_expired(
        self, removal_timeout: float, now: datetime | None = None
    ) -> dict[str, list[str]]:
        """Remove stale workers silent for longer than ``removal_timeout``.

        Returns:
            Mapping of removed worker id to the resources released.
        """
        now = now or utcnow()
        threshold = timedelta(seconds=removal_timeout)

        def modifier(state: SystemState) -> dict[str, list[str]]:
            removed: dict[str, list[str]] = {}
            for worker_id, record in list(state.active_workers.items()):
                if record.status is S.STALE and now - record.last_heartbeat > threshold:
                    removed[worker_id] = release_all_in(state, worker_id)
                    del state.active_workers[worker_id]
            return removed

        removed = self._store.transact(modifier)
        for worker_id, released in removed.items():
            self._log.warning(
                "Stale worker %s removed after %ss, released %d leases",
                worker_id,
                removal_timeout,
                len(released),
            )
        return removed

    def stop_all(self) -> list[str]:
        """Ask every non-terminal worker to stop."""

        def modifier(state: SystemState) -> list[str]:
            stopped: list[str] = []
            for record in state.active_workers.values():
                if not record.status.is_terminal and record.status is not S.STOPPING:
                    record.status = S.STOPPING
                    record.clear_stale()
                    stopped.append(record.id)
            return stopped

        stopped = self._store.transact(modifier)
        if stopped:
            self._log.info("Stop requested for %d workers", len(stopped))
        return stopped

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, worker_id: str) -> WorkerRecord | None:
        state = self._store.snapshot()
        if state is None:
            return None
        return state.active_workers.get(worker_id)

    def list_workers(self) -> list[WorkerRecord]:
        state = self._store.snapshot()
        if state is None:
            return []
        return sorted(state.active_workers.values(), key=lambda w: w.id)
