"""Worker control loop.

A worker registers, heartbeats concurrently, waits for its group's
blockers, then runs the group's tasks one at a time while holding each
task's resource leases. Every blocking store call runs in a thread so the
event loop (and with it the heartbeat) never stalls.

Example:
    worker = Worker("w1", store, config.worker, group="eslint")
    final_status = await worker.run()
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import threading
import time
from typing import Any

from fleetcoord.config.schema import ResolverConfig, WorkerConfig
from fleetcoord.errors import (
    DependencyTimeout,
    FleetError,
    GroupNotFound,
    InvalidTransition,
    OperationCancelled,
    StoreUnavailable,
    TaskFailed,
    UnknownWorker,
)
from fleetcoord.leases import LeaseManager
from fleetcoord.lifecycle import WorkerLifecycle
from fleetcoord.logging import get_logger
from fleetcoord.resolver import can_proceed
from fleetcoord.state.schema import WorkerStatus
from fleetcoord.state.store import StateStore
from fleetcoord.tasks import HandlerRegistry, Task, TaskContext, tasks_for_group

S = WorkerStatus


class _Reassigned(Exception):
    """Internal signal: the coordinator moved this worker to another group."""

    def __init__(self, group: str) -> None:
        super().__init__(group)
        self.group = group


class Worker:
    """Runs one worker's lifecycle against the shared store."""

    def __init__(
        self,
        worker_id: str,
        store: StateStore,
        config: WorkerConfig | None = None,
        *,
        group: str | None = None,
        standby: bool = False,
        resolver: ResolverConfig | None = None,
        handlers: HandlerRegistry | None = None,
        metadata: dict[str, Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            worker_id: Unique id for this worker.
            store: Shared state store.
            config: Worker timings and retry policy.
            group: Group to work on. Required unless ``standby``.
            standby: Join without a group and wait for an assignment.
            resolver: Dependency readiness policy.
            handlers: Task action handlers; defaults to the built-ins.
            metadata: Extra info stored in the worker record.
            logger: Logger collaborator; defaults to the "worker" child logger.
        """
        if group is None and not standby:
            raise ValueError("A worker needs a group unless it starts in standby")

        self.worker_id = worker_id
        self._store = store
        self._config = config or WorkerConfig()
        self._group = None if standby else group
        self._standby = standby
        self._resolver = resolver or ResolverConfig()
        self._handlers = handlers or HandlerRegistry()
        self._log = logger or get_logger("worker")
        self._metadata = {"pid": os.getpid(), "host": socket.gethostname(), **(metadata or {})}

        self._lifecycle = WorkerLifecycle(store, logger=self._log)
        self._leases = LeaseManager(
            store, poll_interval=self._config.lease_poll_interval, logger=self._log
        )

        self._busy = False
        self._stop_requested = False
        self._removed = False
        self._reassigned_to: str | None = None
        # Seen by lease polling threads
        self._cancel = threading.Event()
        # Seen by coroutines on the loop
        self._wake: asyncio.Event | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None

    @property
    def group(self) -> str | None:
        return self._group

    # ------------------------------------------------------------------
    # Interruption
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Ask the loop to stop. Waits abort within one poll interval.

        Call from the event loop thread (e.g. a signal handler installed
        with ``loop.add_signal_handler``).
        """
        if not self._stop_requested:
            self._log.info("[%s] Shutdown requested", self.worker_id)
        self._stop_requested = True
        self._interrupt()

    def _interrupt(self) -> None:
        self._cancel.set()
        if self._wake is not None:
            self._wake.set()

    def _clear_interrupt(self) -> None:
        self._cancel.clear()
        if self._wake is not None:
            self._wake.clear()

    def _check_interrupt(self) -> None:
        if self._stop_requested:
            raise OperationCancelled(f"{self.worker_id} is stopping")
        if self._reassigned_to is not None:
            raise _Reassigned(self._reassigned_to)

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early on shutdown or reassignment."""
        assert self._wake is not None
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self._check_interrupt()

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    async def _set_status(self, status: WorkerStatus, **kwargs: Any) -> None:
        """Report our own status, turning coordinator overrides into signals."""
        try:
            await asyncio.to_thread(
                self._lifecycle.update_status, self.worker_id, status, **kwargs
            )
        except InvalidTransition:
            record = await asyncio.to_thread(self._lifecycle.get, self.worker_id)
            if record is not None and record.status is S.REASSIGNED and record.group:
                self._reassigned_to = record.group
                raise _Reassigned(record.group) from None
            if record is not None and record.status is S.STOPPING:
                self._stop_requested = True
                raise OperationCancelled(f"{self.worker_id} was told to stop") from None
            raise

    async def _heartbeat_loop(self) -> None:
        interval = self._config.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            try:
                record = await asyncio.to_thread(
                    self._lifecycle.heartbeat, self.worker_id, busy=self._busy
                )
            except UnknownWorker:
                self._log.warning("[%s] Worker record removed; stopping", self.worker_id)
                self._removed = True
                self._stop_requested = True
                self._interrupt()
                return
            except FleetError as e:
                self._log.error("[%s] Heartbeat failed: %s", self.worker_id, e)
                continue
            except Exception:
                self._log.exception("[%s] Unexpected heartbeat error", self.worker_id)
                continue

            if record.status is S.STOPPING and not self._stop_requested:
                self._log.info("[%s] Coordinator requested stop", self.worker_id)
                self._stop_requested = True
                self._interrupt()
            elif (
                record.status is S.REASSIGNED
                and record.group
                and record.group != self._group
                and self._reassigned_to != record.group
            ):
                self._log.info("[%s] Reassigned to %s", self.worker_id, record.group)
                self._reassigned_to = record.group
                self._interrupt()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _wait_for_assignment(self) -> str:
        """Standby: wait until the coordinator hands us a group."""
        self._log.info("[%s] In standby, waiting for assignment", self.worker_id)
        while True:
            try:
                await self._pause(self._config.heartbeat_interval)
            except _Reassigned as e:
                return e.group
            record = await asyncio.to_thread(self._lifecycle.get, self.worker_id)
            if record is None:
                raise UnknownWorker(self.worker_id)
            if record.status is S.REASSIGNED and record.group:
                return record.group

    async def _wait_for_dependencies(self, group: str) -> None:
        """Poll readiness until every blocker group is satisfied.

        Raises:
            DependencyTimeout: Still blocked after ``dependency_timeout``.
        """
        timeout = self._config.dependency_timeout
        deadline = time.monotonic() + timeout
        logged: list[str] | None = None

        while True:
            self._check_interrupt()
            state = await asyncio.to_thread(self._store.snapshot)
            if state is None:
                raise StoreUnavailable("Coordination state is not initialized")
            readiness = can_proceed(
                group, state, empty_groups_satisfied=self._resolver.empty_groups_satisfied
            )
            if readiness.ready:
                self._log.info("[%s] Dependencies satisfied for %s", self.worker_id, group)
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DependencyTimeout(group, readiness.blockers, timeout)
            if readiness.blockers != logged:
                self._log.info(
                    "[%s] Waiting for dependencies: %s",
                    self.worker_id,
                    ", ".join(readiness.blockers),
                )
                logged = readiness.blockers
            await self._pause(min(self._config.dependency_poll_interval, remaining))

    async def _call_handler(self, task: Task, ctx: TaskContext) -> None:
        """Run one handler attempt, bounded by ``task_timeout``.

        Shutdown or reassignment cancels an async handler promptly. A sync
        handler's thread cannot be killed; it is abandoned and finishes on
        its own.
        """
        assert self._wake is not None
        handler = self._handlers.get(task.action)
        if HandlerRegistry.is_async(handler):
            work = asyncio.ensure_future(handler(task, ctx))
        else:
            work = asyncio.ensure_future(asyncio.to_thread(handler, task, ctx))
        wake = asyncio.ensure_future(self._wake.wait())
        try:
            done, _ = await asyncio.wait(
                {work, wake},
                timeout=self._config.task_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            wake.cancel()

        if work in done:
            work.result()
            return

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:  # the handler may fail while being cancelled
            self._log.debug("[%s] %s raised on cancel: %s", self.worker_id, task.name, e)
        self._check_interrupt()
        raise asyncio.TimeoutError(f"timed out after {self._config.task_timeout}s")

    async def _run_task(self, task: Task, group: str) -> None:
        """Lease the task's resources and run it, retrying failures.

        Raises:
            TaskFailed: Every attempt failed.
            LeaseTimeout: A resource stayed held by another worker.
        """
        ctx = TaskContext(
            worker_id=self.worker_id,
            group=group,
            project_root=self._store.project_root,
            dry_run=self._config.dry_run,
            logger=self._log,
        )
        attempts = 1 + max(0, self._config.max_retries)
        last_error: BaseException | None = None

        while task.attempts < attempts:
            task.attempts += 1
            self._check_interrupt()
            try:
                async with self._leases.hold_async(
                    self.worker_id,
                    task.resources,
                    timeout=self._config.lease_timeout,
                    cancel=self._cancel,
                ):
                    self._log.info("[%s] Executing: %s", self.worker_id, task.name)
                    await self._call_handler(task, ctx)
                return
            except OperationCancelled:
                self._check_interrupt()
                raise
            except _Reassigned:
                raise
            except (TaskFailed, asyncio.TimeoutError) as e:
                last_error = e
            except FleetError:
                raise
            except Exception as e:  # handler code is not ours
                last_error = e

            self._log.warning(
                "[%s] Task %s failed (attempt %d/%d): %s",
                self.worker_id,
                task.name,
                task.attempts,
                attempts,
                last_error,
            )

        raise TaskFailed(
            f"Task {task.name} failed after {attempts} attempts: {last_error}"
        ) from last_error

    async def _run_group(self, group: str) -> None:
        spec_state = await asyncio.to_thread(self._store.snapshot)
        if spec_state is None:
            raise StoreUnavailable("Coordination state is not initialized")
        spec = spec_state.group_specs.get(group)
        if spec is None:
            raise GroupNotFound(group)
        tasks = tasks_for_group(spec)

        await self._wait_for_dependencies(group)

        for index, task in enumerate(tasks):
            self._check_interrupt()
            self._busy = True
            await self._set_status(
                S.WORKING,
                current_task=task.name,
                completed_tasks=index,
                total_tasks=len(tasks),
            )
            await self._run_task(task, group)
            self._busy = False
            self._log.info("[%s] Completed: %s", self.worker_id, task.name)

        self._busy = False
        await self._set_status(
            S.COMPLETED,
            clear_current_task=True,
            completed_tasks=len(tasks),
            total_tasks=len(tasks),
        )
        self._log.info("[%s] Group %s completed", self.worker_id, group)

    async def _restart_in(self, group: str) -> None:
        self._log.info("[%s] Restarting in group %s", self.worker_id, group)
        self._group = group
        self._reassigned_to = None
        self._clear_interrupt()
        state = await asyncio.to_thread(self._store.snapshot)
        total = 0
        if state is not None and group in state.group_specs:
            total = len(tasks_for_group(state.group_specs[group]))
        await self._set_status(
            S.INITIALIZING, clear_current_task=True, completed_tasks=0, total_tasks=total
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> WorkerStatus:
        """Run until the group completes, the worker is stopped, or it fails.

        Returns:
            The final status: ``completed`` or ``stopping``.

        Raises:
            FleetError: Registration failed, or an unrecoverable error
                (``DependencyTimeout``, ``LeaseTimeout``, ``TaskFailed``, ...)
                after the record was marked ``error``.
        """
        self._wake = asyncio.Event()
        if self._stop_requested:
            self._wake.set()

        total = 0
        if self._group is not None:
            state = await asyncio.to_thread(self._store.snapshot)
            if state is not None and self._group in state.group_specs:
                total = len(tasks_for_group(state.group_specs[self._group]))

        await asyncio.to_thread(
            self._lifecycle.register,
            self.worker_id,
            self._group,
            total_tasks=total,
            metadata=self._metadata,
            standby=self._standby,
        )
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        final = S.STOPPING
        try:
            pending: str | None = None
            if self._group is None:
                pending = await self._wait_for_assignment()
            while True:
                try:
                    if pending is not None:
                        await self._restart_in(pending)
                        pending = None
                    assert self._group is not None
                    await self._run_group(self._group)
                    final = S.COMPLETED
                    break
                except _Reassigned as e:
                    pending = e.group
        except OperationCancelled:
            if not self._removed:
                await self._report_final(S.STOPPING)
        except UnknownWorker:
            self._log.warning("[%s] Worker record is gone", self.worker_id)
        except FleetError as e:
            self._log.error("[%s] Worker failed: %s", self.worker_id, e)
            await self._report_final(S.ERROR, error=str(e))
            raise
        finally:
            await self._stop_heartbeat()
            await self._release_all()
        return final

    async def _report_final(self, status: WorkerStatus, **kwargs: Any) -> None:
        try:
            await asyncio.to_thread(
                self._lifecycle.update_status,
                self.worker_id,
                status,
                clear_current_task=True,
                **kwargs,
            )
        except UnknownWorker:
            pass
        except FleetError as e:
            self._log.error("[%s] Could not record final status %s: %s", self.worker_id, status.value, e)

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _release_all(self) -> None:
        try:
            released = await asyncio.to_thread(self._leases.release_all, self.worker_id)
        except FleetError as e:
            self._log.error("[%s] Could not release leases: %s", self.worker_id, e)
            return
        if released:
            self._log.info("[%s] Released %d leases", self.worker_id, len(released))
