"""Configuration schema dataclasses for fleetcoord.

Defines the structure of configuration at all levels (system, user, project).
Every field has a default so partial configs merge together cleanly.
Durations are in seconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from fleetcoord.state.schema import GroupSpec

DEFAULT_HEARTBEAT_INTERVAL = 15.0
STALE_HEARTBEAT_MULTIPLIER = 4


@dataclass
class CoordinatorConfig:
    """Coordinator process settings.

    Example config.yaml:
        coordinator:
          heartbeat_interval: 15
          stale_timeout: 60
          removal_timeout: 600   # omit to never auto-remove stale workers
          max_workers: 6
    """

    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    stale_timeout: float | None = None  # Default: 4x heartbeat_interval
    removal_timeout: float | None = None  # None disables stale -> removed escalation
    sweep_interval: float | None = None  # Default: heartbeat_interval
    max_workers: int = 6

    @property
    def effective_stale_timeout(self) -> float:
        if self.stale_timeout is not None:
            return self.stale_timeout
        return self.heartbeat_interval * STALE_HEARTBEAT_MULTIPLIER

    @property
    def effective_sweep_interval(self) -> float:
        if self.sweep_interval is not None:
            return self.sweep_interval
        return self.heartbeat_interval


@dataclass
class WorkerConfig:
    """Worker process settings."""

    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    dependency_poll_interval: float = 10.0
    dependency_timeout: float = 3600.0
    lease_poll_interval: float = 5.0
    lease_timeout: float = 300.0
    task_timeout: float = 300.0
    max_retries: int = 3
    dry_run: bool = False


@dataclass
class StoreConfig:
    """State store locking settings."""

    lock_timeout: float = 10.0  # Per attempt
    max_attempts: int = 5
    backoff_base: float = 0.05  # First retry delay, doubled per attempt plus jitter


@dataclass
class ResolverConfig:
    """Dependency readiness policy.

    empty_groups_satisfied: when True a blocker group that has no registered
    workers counts as satisfied. When False (default) it blocks until some
    worker completes it, unless the group is marked externally_complete.
    """

    empty_groups_satisfied: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, wins over level
    file: str | None = None  # Log file path


@dataclass
class Config:
    """Root configuration object."""

    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    groups: dict[str, GroupSpec] = field(default_factory=dict)

    # Extension point for future config sections
    extra: dict[str, Any] = field(default_factory=dict)
