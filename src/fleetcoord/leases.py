"""Exclusive resource leases (file locks) keyed to worker ids.

Leases live in the shared state's ``resource_leases`` map. Every grant and
release is a single store transaction, so at any committed state a resource
has at most one holder. A holder's ``current_files`` is kept in sync in the
same transaction.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import threading
import time
from collections.abc import AsyncIterator, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import PurePosixPath

from fleetcoord.errors import LeaseTimeout, OperationCancelled, UnknownWorker
from fleetcoord.logging import get_logger
from fleetcoord.state.schema import SystemState
from fleetcoord.state.store import StateStore

# Upper bound for poll backoff, as a multiple of the base interval
_MAX_BACKOFF_FACTOR = 4.0


@dataclass(frozen=True)
class Granted:
    """All requested resources are now held by the caller."""

    resources: tuple[str, ...] = ()

    granted = True


@dataclass(frozen=True)
class HeldBy:
    """A requested resource is held by another worker; nothing was granted."""

    resource: str
    holder_id: str

    granted = False


LeaseResult = Granted | HeldBy


@dataclass(frozen=True)
class LeaseConflict:
    """Another worker's lease overlapping a name or pattern of interest."""

    resource: str
    holder_id: str
    matched: str


def normalize_resource(resource: str) -> str:
    """Canonical resource name: POSIX separators, no leading './'."""
    return PurePosixPath(resource.replace("\\", "/")).as_posix()


def _sync_current_files(state: SystemState, holder_id: str) -> None:
    record = state.active_workers.get(holder_id)
    if record is not None:
        record.current_files = state.leases_held_by(holder_id)


def grant_in(
    state: SystemState,
    holder_id: str,
    resources: Iterable[str],
    *,
    require_registered: bool = True,
) -> LeaseResult:
    """Grant every resource to ``holder_id`` or none of them.

    Operates on a state inside a transaction.
    """
    if require_registered and holder_id not in state.active_workers:
        raise UnknownWorker(holder_id)

    names = sorted({normalize_resource(r) for r in resources})
    for name in names:
        current = state.resource_leases.get(name)
        if current is not None and current != holder_id:
            return HeldBy(resource=name, holder_id=current)

    for name in names:
        state.resource_leases[name] = holder_id
    _sync_current_files(state, holder_id)
    return Granted(resources=tuple(names))


def release_in(state: SystemState, holder_id: str, resources: Iterable[str]) -> list[str]:
    """Release the given resources if ``holder_id`` holds them."""
    released: list[str] = []
    for resource in resources:
        name = normalize_resource(resource)
        if state.resource_leases.get(name) == holder_id:
            del state.resource_leases[name]
            released.append(name)
    if released:
        _sync_current_files(state, holder_id)
    return sorted(released)


def release_all_in(state: SystemState, holder_id: str) -> list[str]:
    """Release every resource held by ``holder_id``."""
    return release_in(state, holder_id, state.leases_held_by(holder_id))


def _overlaps(name: str, pattern: str) -> bool:
    if name == pattern:
        return True
    return fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(pattern, name)


class LeaseManager:
    """Grants and releases exclusive leases on named resources.

    Example:
        leases = LeaseManager(store)
        with leases.hold("w1", ["src/app.ts"], timeout=60):
            ...  # exclusive access; released on exit, even on error
    """

    def __init__(
        self,
        store: StateStore,
        *,
        poll_interval: float = 5.0,
        require_registered: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the lease manager.

        Args:
            store: Shared state store.
            poll_interval: Base seconds between attempts while waiting.
            require_registered: Refuse grants to holders with no worker
                record, so a lease can never outlive its worker's removal.
            logger: Logger collaborator; defaults to the "leases" child logger.
        """
        self._store = store
        self._poll_interval = poll_interval
        self._require_registered = require_registered
        self._log = logger or get_logger("leases")

    def acquire(self, holder_id: str, resource: str) -> LeaseResult:
        """Try once to lease a single resource."""
        return self.acquire_all(holder_id, [resource])

    def acquire_all(self, holder_id: str, resources: Iterable[str]) -> LeaseResult:
        """Try once to lease all resources, all-or-nothing.

        Returns:
            Granted if every resource is now held by ``holder_id``, otherwise
            HeldBy naming the first conflicting resource; in that case the
            caller holds none of the requested resources from this call.
        """
        wanted = list(resources)
        result = self._store.transact(
            lambda state: grant_in(
                state, holder_id, wanted, require_registered=self._require_registered
            )
        )
        if isinstance(result, Granted):
            if result.resources:
                self._log.debug("Leased to %s: %s", holder_id, ", ".join(result.resources))
        else:
            self._log.debug(
                "%s denied %s (held by %s)", holder_id, result.resource, result.holder_id
            )
        return result

    def wait_acquire(
        self,
        holder_id: str,
        resource: str,
        *,
        timeout: float,
        poll_interval: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Granted:
        """Poll until a single resource is leased."""
        return self.wait_acquire_all(
            holder_id, [resource], timeout=timeout, poll_interval=poll_interval, cancel=cancel
        )

    def wait_acquire_all(
        self,
        holder_id: str,
        resources: Iterable[str],
        *,
        timeout: float,
        poll_interval: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Granted:
        """Poll ``acquire_all`` with backoff until granted.

        Raises:
            LeaseTimeout: Still held by another worker after ``timeout`` seconds.
            OperationCancelled: ``cancel`` was set while waiting.
        """
        wanted = list(resources)
        base = poll_interval if poll_interval is not None else self._poll_interval
        delay = base
        deadline = time.monotonic() + timeout

        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(f"{holder_id} stopped waiting for leases")

            result = self.acquire_all(holder_id, wanted)
            if isinstance(result, Granted):
                return result

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LeaseTimeout(result.resource, result.holder_id, timeout)

            self._log.info(
                "%s waiting for %s (locked by %s)", holder_id, result.resource, result.holder_id
            )
            pause = min(delay, remaining)
            if cancel is not None:
                if cancel.wait(pause):
                    raise OperationCancelled(f"{holder_id} stopped waiting for leases")
            else:
                time.sleep(pause)
            delay = min(delay * 1.5, base * _MAX_BACKOFF_FACTOR)

    def release(self, holder_id: str, resource: str) -> bool:
        """Release one resource. No-op if ``holder_id`` does not hold it."""
        released = self._store.transact(lambda state: release_in(state, holder_id, [resource]))
        if released:
            self._log.debug("Released %s from %s", resource, holder_id)
        return bool(released)

    def release_many(self, holder_id: str, resources: Iterable[str]) -> list[str]:
        """Release the given resources that ``holder_id`` holds."""
        wanted = list(resources)
        return self._store.transact(lambda state: release_in(state, holder_id, wanted))

    def release_all(self, holder_id: str) -> list[str]:
        """Release everything ``holder_id`` holds. Idempotent."""
        released = self._store.transact(lambda state: release_all_in(state, holder_id))
        if released:
            self._log.debug("Released all from %s: %s", holder_id, ", ".join(released))
        return released

    @contextmanager
    def hold(
        self,
        holder_id: str,
        resources: Iterable[str],
        *,
        timeout: float,
        poll_interval: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[Granted]:
        """Scoped acquisition: lease all resources, release them on exit."""
        granted = self.wait_acquire_all(
            holder_id, resources, timeout=timeout, poll_interval=poll_interval, cancel=cancel
        )
        try:
            yield granted
        finally:
            self.release_many(holder_id, granted.resources)

    @asynccontextmanager
    async def hold_async(
        self,
        holder_id: str,
        resources: Iterable[str],
        *,
        timeout: float,
        poll_interval: float | None = None,
        cancel: threading.Event | None = None,
    ) -> AsyncIterator[Granted]:
        """``hold`` for event-loop callers; store calls run in a thread."""
        wanted = list(resources)
        granted = await asyncio.to_thread(
            self.wait_acquire_all,
            holder_id,
            wanted,
            timeout=timeout,
            poll_interval=poll_interval,
            cancel=cancel,
        )
        try:
            yield granted
        finally:
            await asyncio.to_thread(self.release_many, holder_id, granted.resources)

    def holder_of(self, resource: str) -> str | None:
        state = self._store.snapshot()
        if state is None:
            return None
        return state.resource_leases.get(normalize_resource(resource))

    def held_by(self, holder_id: str) -> list[str]:
        state = self._store.snapshot()
        if state is None:
            return []
        return state.leases_held_by(holder_id)

    def find_conflicts(self, holder_id: str, names: Iterable[str]) -> list[LeaseConflict]:
        """List other workers' leases overlapping the given names or globs.

        Advisory only; a glob in either the lease name or the query matches.
        """
        state = self._store.snapshot()
        if state is None:
            return []
        queries = [normalize_resource(n) for n in names]
        conflicts: list[LeaseConflict] = []
        for resource, holder in sorted(state.resource_leases.items()):
            if holder == holder_id:
                continue
            for query in queries:
                if _overlaps(resource, query):
                    conflicts.append(LeaseConflict(resource=resource, holder_id=holder, matched=query))
                    break
        return conflicts
