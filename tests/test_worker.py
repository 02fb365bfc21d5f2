"""End-to-end tests for the worker control loop."""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace

import pytest

from fleetcoord.config.schema import WorkerConfig
from fleetcoord.errors import (
    DependencyTimeout,
    DuplicateWorker,
    LeaseTimeout,
    TaskFailed,
)
from fleetcoord.leases import LeaseManager
from fleetcoord.lifecycle import WorkerLifecycle
from fleetcoord.state.schema import WorkerStatus
from fleetcoord.state.store import StateStore
from fleetcoord.tasks import HandlerRegistry, Task, TaskContext
from fleetcoord.worker import Worker

# Upper bound for any single worker run in these tests
RUN_LIMIT = 10.0


def recording_registry(calls: list[str]) -> HandlerRegistry:
    registry = HandlerRegistry()

    async def record(task: Task, ctx: TaskContext) -> None:
        calls.append(f"{ctx.worker_id}:{task.name}")

    registry.register("noop", record)
    return registry


async def wait_for_status(
    lifecycle: WorkerLifecycle, worker_id: str, status: WorkerStatus
) -> None:
    for _ in range(200):
        record = await asyncio.to_thread(lifecycle.get, worker_id)
        if record is not None and record.status is status:
            return
        await asyncio.sleep(0.02)
    raise AssertionError(f"{worker_id} never reached {status.value}")


class TestHappyPath:
    """Workers that finish their group."""

    async def test_completes_group(self, store: StateStore, fast_config: WorkerConfig) -> None:
        calls: list[str] = []
        worker = Worker(
            "w1", store, fast_config, group="alpha", handlers=recording_registry(calls)
        )

        final = await asyncio.wait_for(worker.run(), RUN_LIMIT)

        assert final is WorkerStatus.COMPLETED
        assert calls == ["w1:a1"]
        record = store.snapshot().active_workers["w1"]
        assert record.status is WorkerStatus.COMPLETED
        assert record.progress.completed_tasks == 1
        assert record.progress.total_tasks == 1
        assert record.progress.current_task is None
        assert store.snapshot().resource_leases == {}

    async def test_dependency_ordering(self, store: StateStore, fast_config: WorkerConfig) -> None:
        calls: list[str] = []
        registry = recording_registry(calls)
        beta = Worker("w2", store, fast_config, group="beta", handlers=registry)
        alpha = Worker("w1", store, fast_config, group="alpha", handlers=registry)

        results = await asyncio.wait_for(asyncio.gather(beta.run(), alpha.run()), RUN_LIMIT)

        assert results == [WorkerStatus.COMPLETED, WorkerStatus.COMPLETED]
        assert calls == ["w1:a1", "w2:b1", "w2:b2"]
        assert store.snapshot().task_progress.completed_groups == 2

    async def test_group_without_tasks(self, store: StateStore, fast_config: WorkerConfig) -> None:
        held_during: list[dict[str, str]] = []
        registry = HandlerRegistry()

        def record(task: Task, ctx: TaskContext) -> None:
            held_during.append(dict(store.snapshot().resource_leases))

        registry.register("noop", record)
        worker = Worker("w1", store, fast_config, group="gamma", handlers=registry)

        assert await asyncio.wait_for(worker.run(), RUN_LIMIT) is WorkerStatus.COMPLETED

        # the default task runs under a lease on the group's patterns
        assert held_during == [{"src/g/**": "w1"}]
        snapshot = store.snapshot()
        progress = snapshot.active_workers["w1"].progress
        assert (progress.completed_tasks, progress.total_tasks) == (1, 1)
        assert snapshot.resource_leases == {}

    async def test_retry_then_success(self, store: StateStore, fast_config: WorkerConfig) -> None:
        attempts: list[int] = []
        registry = HandlerRegistry()

        async def flaky(task: Task, ctx: TaskContext) -> None:
            attempts.append(task.attempts)
            if len(attempts) == 1:
                raise TaskFailed("first try fails")

        registry.register("noop", flaky)
        worker = Worker("w1", store, fast_config, group="alpha", handlers=registry)

        assert await asyncio.wait_for(worker.run(), RUN_LIMIT) is WorkerStatus.COMPLETED
        assert attempts == [1, 2]


class TestFailures:
    """Unrecoverable errors mark the worker and release its leases."""

    async def test_dependency_timeout(self, store: StateStore, fast_config: WorkerConfig) -> None:
        config = replace(fast_config, dependency_timeout=0.2)
        worker = Worker("w1", store, config, group="beta")

        with pytest.raises(DependencyTimeout) as exc_info:
            await asyncio.wait_for(worker.run(), RUN_LIMIT)

        assert exc_info.value.blockers == ["alpha"]
        record = store.snapshot().active_workers["w1"]
        assert record.status is WorkerStatus.ERROR
        assert "alpha" in record.error

    async def test_handler_failure_releases_leases(
        self, store: StateStore, fast_config: WorkerConfig
    ) -> None:
        held_during: list[dict[str, str]] = []
        registry = HandlerRegistry()

        def broken(task: Task, ctx: TaskContext) -> None:
            held_during.append(dict(store.snapshot().resource_leases))
            raise ValueError("handler bug")

        registry.register("noop", broken)
        worker = Worker("w1", store, fast_config, group="alpha", handlers=registry)

        with pytest.raises(TaskFailed):
            await asyncio.wait_for(worker.run(), RUN_LIMIT)

        # one try plus one retry, each under the lease
        assert held_during == [{"src/a/one.py": "w1"}] * 2
        snapshot = store.snapshot()
        assert snapshot.resource_leases == {}
        assert snapshot.active_workers["w1"].status is WorkerStatus.ERROR

    async def test_task_timeout(self, store: StateStore, fast_config: WorkerConfig) -> None:
        registry = HandlerRegistry()

        async def hang(task: Task, ctx: TaskContext) -> None:
            await asyncio.sleep(30)

        registry.register("noop", hang)
        config = replace(fast_config, task_timeout=0.1, max_retries=0)
        worker = Worker("w1", store, config, group="alpha", handlers=registry)

        with pytest.raises(TaskFailed) as exc_info:
            await asyncio.wait_for(worker.run(), RUN_LIMIT)

        assert "timed out" in str(exc_info.value)
        assert store.snapshot().resource_leases == {}

    async def test_lease_timeout(self, store: StateStore, fast_config: WorkerConfig) -> None:
        WorkerLifecycle(store).register("other", "gamma")
        LeaseManager(store).acquire("other", "src/a/one.py")
        config = replace(fast_config, lease_timeout=0.2)
        worker = Worker("w1", store, config, group="alpha")

        with pytest.raises(LeaseTimeout):
            await asyncio.wait_for(worker.run(), RUN_LIMIT)

        snapshot = store.snapshot()
        assert snapshot.active_workers["w1"].status is WorkerStatus.ERROR
        assert snapshot.resource_leases == {"src/a/one.py": "other"}

    async def test_duplicate_id(self, store: StateStore, fast_config: WorkerConfig) -> None:
        WorkerLifecycle(store).register("w1", "alpha")
        worker = Worker("w1", store, fast_config, group="alpha")
        with pytest.raises(DuplicateWorker):
            await worker.run()

    def test_group_required(self, store: StateStore) -> None:
        with pytest.raises(ValueError):
            Worker("w1", store)


class TestConcurrency:
    """Heartbeat and cancellation run alongside task execution."""

    async def test_heartbeat_during_blocking_handler(
        self, store: StateStore, fast_config: WorkerConfig
    ) -> None:
        beats: list[float] = []
        registry = HandlerRegistry()

        def slow(task: Task, ctx: TaskContext) -> None:
            start = store.snapshot().active_workers["w1"].last_heartbeat
            time.sleep(0.5)
            end = store.snapshot().active_workers["w1"].last_heartbeat
            beats.append((end - start).total_seconds())

        registry.register("noop", slow)
        worker = Worker("w1", store, fast_config, group="alpha", handlers=registry)

        await asyncio.wait_for(worker.run(), RUN_LIMIT)

        assert beats and beats[0] >= 0.2

    async def test_heartbeat_survives_unexpected_error(
        self, store: StateStore, fast_config: WorkerConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        registry = HandlerRegistry()
        registry.register("noop", lambda task, ctx: time.sleep(0.4))
        worker = Worker("w1", store, fast_config, group="alpha", handlers=registry)
        real_heartbeat = worker._lifecycle.heartbeat
        beats: list[str] = []

        def flaky_heartbeat(worker_id: str, *, busy: bool = False):
            beats.append(worker_id)
            if len(beats) == 1:
                raise RuntimeError("heartbeat bug")
            return real_heartbeat(worker_id, busy=busy)

        monkeypatch.setattr(worker._lifecycle, "heartbeat", flaky_heartbeat)

        final = await asyncio.wait_for(worker.run(), RUN_LIMIT)

        assert final is WorkerStatus.COMPLETED
        assert len(beats) >= 2
        assert store.snapshot().active_workers["w1"].status is WorkerStatus.COMPLETED

    async def test_shutdown_during_dependency_wait(
        self, store: StateStore, fast_config: WorkerConfig
    ) -> None:
        config = replace(fast_config, dependency_poll_interval=30.0)
        worker = Worker("w1", store, config, group="beta")
        asyncio.get_running_loop().call_later(0.2, worker.shutdown)

        started = time.monotonic()
        final = await asyncio.wait_for(worker.run(), RUN_LIMIT)

        assert final is WorkerStatus.STOPPING
        assert time.monotonic() - started < 5.0
        assert store.snapshot().active_workers["w1"].status is WorkerStatus.STOPPING

    async def test_shutdown_cancels_running_task(
        self, store: StateStore, fast_config: WorkerConfig
    ) -> None:
        registry = HandlerRegistry()

        async def hang(task: Task, ctx: TaskContext) -> None:
            await asyncio.sleep(30)

        registry.register("noop", hang)
        worker = Worker("w1", store, fast_config, group="alpha", handlers=registry)
        lifecycle = WorkerLifecycle(store)

        async def stop_when_working() -> None:
            await wait_for_status(lifecycle, "w1", WorkerStatus.WORKING)
            worker.shutdown()

        final, _ = await asyncio.wait_for(
            asyncio.gather(worker.run(), stop_when_working()), RUN_LIMIT
        )

        assert final is WorkerStatus.STOPPING
        assert store.snapshot().resource_leases == {}

    async def test_coordinator_stop(self, store: StateStore, fast_config: WorkerConfig) -> None:
        worker = Worker("w1", store, fast_config, group="beta")
        lifecycle = WorkerLifecycle(store)

        async def stop_everyone() -> None:
            await asyncio.sleep(0.2)
            await asyncio.to_thread(lifecycle.stop_all)

        final, _ = await asyncio.wait_for(
            asyncio.gather(worker.run(), stop_everyone()), RUN_LIMIT
        )

        assert final is WorkerStatus.STOPPING
        assert lifecycle.get("w1").status is WorkerStatus.STOPPING

    async def test_removed_by_operator(self, store: StateStore, fast_config: WorkerConfig) -> None:
        registry = HandlerRegistry()

        async def hang(task: Task, ctx: TaskContext) -> None:
            await asyncio.sleep(30)

        registry.register("noop", hang)
        worker = Worker("w1", store, fast_config, group="alpha", handlers=registry)
        lifecycle = WorkerLifecycle(store)
        released: list[str] = []

        async def remove_while_leased() -> None:
            leases = LeaseManager(store)
            for _ in range(200):
                if await asyncio.to_thread(leases.holder_of, "src/a/one.py") == "w1":
                    break
                await asyncio.sleep(0.02)
            released.extend(await asyncio.to_thread(lifecycle.remove, "w1"))

        final, _ = await asyncio.wait_for(
            asyncio.gather(worker.run(), remove_while_leased()), RUN_LIMIT
        )

        assert final is WorkerStatus.STOPPING
        assert released == ["src/a/one.py"]
        snapshot = store.snapshot()
        assert "w1" not in snapshot.active_workers
        assert snapshot.resource_leases == {}


class TestReassignment:
    """Coordinator-driven group changes."""

    async def test_reassigned_while_waiting(
        self, store: StateStore, fast_config: WorkerConfig
    ) -> None:
        worker = Worker("w1", store, fast_config, group="beta")
        lifecycle = WorkerLifecycle(store)

        async def move() -> None:
            await asyncio.sleep(0.2)
            await asyncio.to_thread(lifecycle.reassign, "w1", "gamma")

        final, _ = await asyncio.wait_for(asyncio.gather(worker.run(), move()), RUN_LIMIT)

        assert final is WorkerStatus.COMPLETED
        assert worker.group == "gamma"
        record = lifecycle.get("w1")
        assert record.group == "gamma"
        assert record.previous_group == "beta"
        assert record.status is WorkerStatus.COMPLETED

    async def test_standby_assignment(self, store: StateStore, fast_config: WorkerConfig) -> None:
        calls: list[str] = []
        worker = Worker(
            "w1", store, fast_config, standby=True, handlers=recording_registry(calls)
        )
        lifecycle = WorkerLifecycle(store)

        async def assign() -> None:
            await wait_for_status(lifecycle, "w1", WorkerStatus.STANDBY)
            await asyncio.to_thread(lifecycle.assign_group, "w1", "alpha")

        final, _ = await asyncio.wait_for(asyncio.gather(worker.run(), assign()), RUN_LIMIT)

        assert final is WorkerStatus.COMPLETED
        assert calls == ["w1:a1"]
        assert lifecycle.get("w1").group == "alpha"
