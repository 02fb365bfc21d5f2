"""Root pytest configuration for all tests."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from fleetcoord.config import reset_config
from fleetcoord.config.schema import WorkerConfig
from fleetcoord.logging import get_logger, shutdown_logging
from fleetcoord.state.schema import GroupSpec, TaskSpec
from fleetcoord.state.store import StateStore

# Configure pytest-asyncio to use auto mode
# This is redundant with pyproject.toml but ensures it's set
pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch):
    """Keep user config and env overrides from leaking into tests."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path_factory.mktemp("xdg")))
    monkeypatch.delenv("FLEET_LOG", raising=False)
    monkeypatch.delenv("FLEET_LOG_LEVEL", raising=False)
    reset_config()
    yield
    reset_config()
    shutdown_logging()
    get_logger().setLevel(logging.NOTSET)


@pytest.fixture
def groups() -> dict[str, GroupSpec]:
    """alpha -> beta dependency chain plus an independent, task-less gamma."""
    return {
        "alpha": GroupSpec(
            id="alpha",
            name="Alpha",
            priority=1,
            resource_patterns=("src/a/**",),
            tasks=(TaskSpec(name="a1", resources=("src/a/one.py",)),),
        ),
        "beta": GroupSpec(
            id="beta",
            name="Beta",
            priority=2,
            blocked_by=("alpha",),
            tasks=(
                TaskSpec(name="b1", resources=("src/b/one.py",)),
                TaskSpec(name="b2", resources=("src/b/two.py", "src/shared.py")),
            ),
        ),
        "gamma": GroupSpec(id="gamma", name="Gamma", priority=3, resource_patterns=("src/g/**",)),
    }


@pytest.fixture
def store(tmp_path: Path, groups: dict[str, GroupSpec]) -> StateStore:
    """An initialized store in a temporary project root."""
    store = StateStore(tmp_path, groups=groups, lock_timeout=2.0, backoff_base=0.01)
    store.initialize()
    return store


@pytest.fixture
def fast_config() -> WorkerConfig:
    """Worker timings small enough for tests."""
    return WorkerConfig(
        heartbeat_interval=0.05,
        dependency_poll_interval=0.05,
        dependency_timeout=5.0,
        lease_poll_interval=0.05,
        lease_timeout=2.0,
        task_timeout=5.0,
        max_retries=1,
    )
