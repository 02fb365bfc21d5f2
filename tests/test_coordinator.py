"""Tests for the coordinator: initialization, status and operator commands."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fleetcoord.config.schema import Config, CoordinatorConfig, ResolverConfig
from fleetcoord.coordinator import Coordinator
from fleetcoord.errors import CyclicDependency
from fleetcoord.leases import LeaseManager
from fleetcoord.lifecycle import WorkerLifecycle
from fleetcoord.state.schema import GroupSpec, WorkerStatus
from fleetcoord.state.store import StateStore


@pytest.fixture
def config(groups: dict[str, GroupSpec]) -> Config:
    return Config(groups=groups)


@pytest.fixture
def coordinator(store: StateStore, config: Config) -> Coordinator:
    return Coordinator(store, config)


class TestInitialize:
    def test_creates_state(self, tmp_path: Path, config: Config) -> None:
        store = StateStore(tmp_path)
        coordinator = Coordinator(store, config)

        assert coordinator.initialize() is True
        assert coordinator.initialize() is False

        state = store.snapshot()
        assert state is not None
        assert sorted(state.group_specs) == ["alpha", "beta", "gamma"]
        assert state.system_info.coordinator_pid is not None

    def test_existing_state_untouched(self, coordinator: Coordinator, store: StateStore) -> None:
        WorkerLifecycle(store).register("w1", "alpha")
        coordinator.initialize()
        assert "w1" in store.snapshot().active_workers

    def test_cycle_rejected(self, tmp_path: Path) -> None:
        cyclic = {
            "a": GroupSpec(id="a", name="A", blocked_by=("b",)),
            "b": GroupSpec(id="b", name="B", blocked_by=("a",)),
        }
        store = StateStore(tmp_path)
        with pytest.raises(CyclicDependency):
            Coordinator(store, Config(groups=cyclic)).initialize()
        assert not store.exists()


class TestSystemStatus:
    """Read-only status summary."""

    def test_uninitialized_is_unhealthy(self, tmp_path: Path) -> None:
        status = Coordinator(StateStore(tmp_path)).get_system_status()
        assert status.healthy is False
        assert status.error is not None
        assert status.active_workers == 0

    def test_counts(self, coordinator: Coordinator, store: StateStore) -> None:
        lifecycle = WorkerLifecycle(store)
        lifecycle.register("w1", "alpha", total_tasks=1)
        lifecycle.register("w2", "beta", total_tasks=2)
        lifecycle.update_status("w1", WorkerStatus.COMPLETED, completed_tasks=1)
        LeaseManager(store).acquire_all("w2", ["src/b/one.py", "src/shared.py"])

        status = coordinator.get_system_status()

        assert status.healthy is True
        assert status.active_workers == 2
        assert status.total_tasks == 3
        assert status.completed_tasks == 1
        assert status.active_lease_count == 2
        assert [w["id"] for w in status.workers] == ["w1", "w2"]
        assert status.task_progress["completed_groups"] == 1
        assert status.stale_workers == []
        assert status.uptime_seconds >= 0

    @pytest.mark.parametrize("empty_ok", [False, True])
    def test_progress_follows_readiness_policy(
        self, store: StateStore, groups: dict[str, GroupSpec], empty_ok: bool
    ) -> None:
        config = Config(groups=groups, resolver=ResolverConfig(empty_groups_satisfied=empty_ok))
        coordinator = Coordinator(store, config)

        status = coordinator.get_system_status()
        beta = next(g for g in coordinator.list_groups() if g.spec.id == "beta")

        # no workers anywhere: alpha unblocks beta only under the policy
        assert beta.ready is empty_ok
        assert status.task_progress["completed_groups"] == (3 if empty_ok else 0)

    def test_to_dict(self, coordinator: Coordinator) -> None:
        data = coordinator.get_system_status().to_dict()
        assert data["healthy"] is True
        assert data["workers"] == []
        assert data["error"] is None


class TestAdminCommands:
    """Operator remove and reassign."""

    def test_remove_worker(self, coordinator: Coordinator, store: StateStore) -> None:
        WorkerLifecycle(store).register("w1", "alpha")
        LeaseManager(store).acquire("w1", "src/a/one.py")

        result = coordinator.remove_worker("w1")

        assert result.success is True
        assert result.released_resources == ["src/a/one.py"]
        assert result.error is None
        assert store.snapshot().resource_leases == {}

    def test_remove_unknown(self, coordinator: Coordinator, store: StateStore) -> None:
        before = store.path.read_bytes()
        result = coordinator.remove_worker("ghost")
        assert result.success is False
        assert "ghost" in result.error
        assert store.path.read_bytes() == before

    def test_remove_terminal_worker(self, coordinator: Coordinator, store: StateStore) -> None:
        lifecycle = WorkerLifecycle(store)
        lifecycle.register("w1", "alpha")
        lifecycle.update_status("w1", WorkerStatus.ERROR, error="boom")
        assert coordinator.remove_worker("w1").success is True

    def test_reassign_worker(self, coordinator: Coordinator, store: StateStore) -> None:
        WorkerLifecycle(store).register("w1", "alpha")
        LeaseManager(store).acquire("w1", "src/a/one.py")

        result = coordinator.reassign_worker("w1", "gamma")

        assert result.success is True
        assert result.released_resources == ["src/a/one.py"]
        record = store.snapshot().active_workers["w1"]
        assert record.group == "gamma"
        assert record.status is WorkerStatus.REASSIGNED

    @pytest.mark.parametrize(
        ("worker_id", "group", "needle"),
        [("ghost", "gamma", "ghost"), ("w1", "nope", "nope")],
    )
    def test_reassign_failure_changes_nothing(
        self,
        coordinator: Coordinator,
        store: StateStore,
        worker_id: str,
        group: str,
        needle: str,
    ) -> None:
        WorkerLifecycle(store).register("w1", "alpha")
        LeaseManager(store).acquire("w1", "src/a/one.py")
        before = store.path.read_bytes()

        result = coordinator.reassign_worker(worker_id, group)

        assert result.success is False
        assert result.released_resources == []
        assert needle in result.error
        assert store.path.read_bytes() == before

    def test_reassign_completed_worker(self, coordinator: Coordinator, store: StateStore) -> None:
        lifecycle = WorkerLifecycle(store)
        lifecycle.register("w1", "alpha")
        lifecycle.update_status("w1", WorkerStatus.COMPLETED)
        assert coordinator.reassign_worker("w1", "beta").success is False

    def test_stop_all(self, coordinator: Coordinator, store: StateStore) -> None:
        lifecycle = WorkerLifecycle(store)
        lifecycle.register("w1", "alpha")
        lifecycle.register("w2", None, standby=True)

        assert coordinator.stop_all() == ["w1", "w2"]
        assert lifecycle.get("w2").status is WorkerStatus.STOPPING

    def test_reset(self, coordinator: Coordinator, store: StateStore) -> None:
        WorkerLifecycle(store).register("w1", "alpha")
        LeaseManager(store).acquire("w1", "fileX")

        coordinator.reset()

        state = store.snapshot()
        assert state.active_workers == {}
        assert state.resource_leases == {}
        assert sorted(state.group_specs) == ["alpha", "beta", "gamma"]


class TestListGroups:
    def test_readiness(self, coordinator: Coordinator, store: StateStore) -> None:
        WorkerLifecycle(store).register("w1", "alpha")

        groups = {g.spec.id: g for g in coordinator.list_groups()}

        assert [g.spec.id for g in coordinator.list_groups()] == ["alpha", "beta", "gamma"]
        assert groups["alpha"].ready
        assert groups["alpha"].workers == ["w1"]
        assert not groups["beta"].ready
        assert groups["beta"].blockers == ["alpha"]

    def test_uninitialized(self, tmp_path: Path) -> None:
        assert Coordinator(StateStore(tmp_path)).list_groups() == []


class TestControlLoop:
    """Background liveness monitoring."""

    async def test_run_marks_silent_workers(self, tmp_path: Path, config: Config) -> None:
        config.coordinator = CoordinatorConfig(heartbeat_interval=0.02, stale_timeout=0.05)
        store = StateStore(tmp_path, groups=config.groups, backoff_base=0.01)
        coordinator = Coordinator(store, config)
        runner = asyncio.create_task(coordinator.run())

        for _ in range(100):
            await asyncio.sleep(0.02)
            state = store.snapshot()
            if state is not None:
                break
        lifecycle = WorkerLifecycle(store)
        lifecycle.register("w1", "alpha")

        for _ in range(100):
            await asyncio.sleep(0.02)
            if lifecycle.get("w1").status is WorkerStatus.STALE:
                break

        await coordinator.stop()
        await asyncio.wait_for(runner, 5.0)

        assert lifecycle.get("w1").status is WorkerStatus.STALE
        assert coordinator.get_system_status().stale_workers == ["w1"]
        assert not coordinator.monitor.running

    async def test_cancel_stops_monitor(self, coordinator: Coordinator) -> None:
        runner = asyncio.create_task(coordinator.run())
        await asyncio.sleep(0.05)
        assert coordinator.monitor.running

        runner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await runner
        assert not coordinator.monitor.running
