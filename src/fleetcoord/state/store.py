"""Durable shared state store.

All coordination state lives in one YAML document per project root at
`.fleet/state.yaml`. Every mutation goes through ``StateStore.transact``,
which holds an exclusive ``filelock.FileLock`` for the whole
read-modify-write-replace cycle, so concurrent callers in this or any
other process serialize instead of losing updates.
"""

from __future__ import annotations

import logging
import os
import random
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import yaml
from filelock import FileLock, Timeout

from fleetcoord.config.paths import get_state_path
from fleetcoord.errors import ConcurrentModification, StoreUnavailable
from fleetcoord.logging import get_logger
from fleetcoord.state.schema import GroupSpec, SystemState, utcnow

T = TypeVar("T")


class StateStore:
    """Manages the shared coordination document.

    Writes are atomic file replacements, so lock-free readers (``snapshot``)
    always observe a complete committed document.
    """

    def __init__(
        self,
        project_root: str | Path,
        *,
        groups: dict[str, GroupSpec] | None = None,
        max_workers: int = 6,
        lock_timeout: float = 10.0,
        max_attempts: int = 5,
        backoff_base: float = 0.05,
        empty_groups_satisfied: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            project_root: Project whose `.fleet/` directory holds the state.
            groups: Group specs used to seed the document if it is missing.
            max_workers: Recorded in system info when seeding.
            lock_timeout: Seconds to wait for the lock per attempt.
            max_attempts: Lock attempts before giving up with StoreUnavailable.
            backoff_base: First retry delay in seconds (doubles, with jitter).
            empty_groups_satisfied: Readiness policy applied when counting
                completed groups in the progress summary.
            logger: Logger collaborator; defaults to the "store" child logger.
        """
        self._root = Path(project_root)
        self._path = get_state_path(self._root)
        self._lock_path = self._path.with_suffix(".lock")
        self._groups = dict(groups or {})
        self._max_workers = max_workers
        self._lock_timeout = lock_timeout
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._empty_groups_satisfied = empty_groups_satisfied
        self._log = logger or get_logger("store")

    @property
    def path(self) -> Path:
        return self._path

    @property
    def project_root(self) -> Path:
        return self._root

    def exists(self) -> bool:
        return self._path.exists()

    def _load(self) -> SystemState | None:
        """Load the committed document; None if it does not exist yet."""
        try:
            with open(self._path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError) as e:
            raise StoreUnavailable(f"Cannot read state document {self._path}: {e}") from e

        if data is None:
            return None
        if not isinstance(data, dict):
            raise StoreUnavailable(f"State document {self._path} is not a mapping")
        try:
            return SystemState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreUnavailable(f"State document {self._path} is malformed: {e}") from e

    def _save(self, state: SystemState) -> None:
        """Write the document via a temp file and atomic replace."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=".state-", suffix=".yaml.tmp", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(state.to_dict(), f, default_flow_style=False, sort_keys=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise StoreUnavailable(f"Cannot write state document {self._path}: {e}") from e

    def _seed(self) -> SystemState:
        state = SystemState.fresh(
            self._groups,
            project_root=str(self._root),
            max_workers=self._max_workers,
        )
        state.recompute_progress(empty_groups_satisfied=self._empty_groups_satisfied)
        return state

    def _acquire(self) -> FileLock:
        """Take the document lock, retrying contention with jittered backoff."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        delay = self._backoff_base
        last_error: ConcurrentModification | None = None
        for attempt in range(1, self._max_attempts + 1):
            lock = FileLock(self._lock_path, timeout=self._lock_timeout)
            try:
                lock.acquire()
                return lock
            except Timeout:
                last_error = ConcurrentModification(
                    f"State lock busy (attempt {attempt}/{self._max_attempts})"
                )
                self._log.debug("%s", last_error)
            if attempt < self._max_attempts:
                time.sleep(delay + random.uniform(0, delay))
                delay *= 2
        raise StoreUnavailable(
            f"Could not lock {self._path} after {self._max_attempts} attempts"
        ) from last_error

    def transact(self, fn: Callable[[SystemState], T]) -> T:
        """Atomically apply ``fn`` to the shared state.

        ``fn`` receives a private copy of the committed state. It may mutate
        that copy and returns a result. If ``fn`` raises, nothing is written
        and the exception propagates. Otherwise the mutated copy becomes the
        new committed state.

        A missing document is seeded from the configured groups first.

        Raises:
            StoreUnavailable: The lock could not be obtained or the document
                could not be read or written.
        """
        lock = self._acquire()
        try:
            state = self._load()
            if state is None:
                self._log.info("No state at %s, initializing", self._path)
                state = self._seed()

            working = state.copy()
            result = fn(working)

            now = utcnow()
            working.system_info.revision = state.system_info.revision + 1
            working.system_info.updated_at = now
            working.recompute_progress(empty_groups_satisfied=self._empty_groups_satisfied)
            self._save(working)
            return result
        finally:
            lock.release()

    def initialize(
        self,
        groups: dict[str, GroupSpec] | None = None,
        *,
        coordinator_pid: int | None = None,
    ) -> tuple[SystemState, bool]:
        """Create the state document if it does not exist yet.

        Existing state is preserved untouched (idempotent).

        Returns:
            (state, created) where created is False if a document existed.
        """
        if groups is not None:
            self._groups = dict(groups)

        lock = self._acquire()
        try:
            existing = self._load()
            if existing is not None:
                return existing, False
            state = self._seed()
            state.system_info.revision = 1
            if coordinator_pid is not None:
                state.system_info.coordinator_pid = coordinator_pid
            self._save(state)
            self._log.info(
                "System state initialized at %s (%d groups)", self._path, len(state.group_specs)
            )
            return state, True
        finally:
            lock.release()

    def snapshot(self) -> SystemState | None:
        """Point-in-time copy of the committed state, or None if uninitialized."""
        return self._load()

    def reset(self) -> SystemState:
        """Drop every worker and lease; group specs are kept."""

        def clear(state: SystemState) -> SystemState:
            state.active_workers.clear()
            state.resource_leases.clear()
            return state

        state = self.transact(clear)
        self._log.info("System state reset")
        return state
