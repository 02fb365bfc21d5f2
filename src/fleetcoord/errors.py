"""Error taxonomy for fleet coordination.

Every error raised by the coordination core derives from ``FleetError`` so
callers at the process boundary can catch the whole family at once.
"""

from __future__ import annotations


class FleetError(Exception):
    """Base class for coordination errors."""


class ConfigError(FleetError):
    """Configuration could not be loaded or is invalid."""


class DuplicateWorker(FleetError):
    """A worker with this id is already registered."""

    def __init__(self, worker_id: str) -> None:
        super().__init__(f"Worker {worker_id} already registered")
        self.worker_id = worker_id


class UnknownWorker(FleetError):
    """No worker with this id is registered (or it was removed)."""

    def __init__(self, worker_id: str) -> None:
        super().__init__(f"Worker {worker_id} not found")
        self.worker_id = worker_id


class GroupNotFound(FleetError):
    """A referenced work group is not defined."""

    def __init__(self, group_id: str) -> None:
        super().__init__(f"Group '{group_id}' not found")
        self.group_id = group_id


class CyclicDependency(ConfigError):
    """The group ``blocked_by`` graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Cyclic group dependency: " + " -> ".join(cycle))
        self.cycle = cycle


class InvalidTransition(FleetError):
    """The worker state machine does not allow this status change."""

    def __init__(self, worker_id: str, current: str, requested: str) -> None:
        super().__init__(f"Worker {worker_id}: cannot move from {current} to {requested}")
        self.worker_id = worker_id
        self.current = current
        self.requested = requested


class WorkerLimitReached(FleetError):
    """Registering another worker would exceed ``max_workers``."""

    def __init__(self, max_workers: int) -> None:
        super().__init__(f"Worker limit reached ({max_workers} live workers)")
        self.max_workers = max_workers


class LeaseTimeout(FleetError):
    """A resource stayed held by another worker past the caller's timeout."""

    def __init__(self, resource: str, held_by: str | None, timeout: float) -> None:
        super().__init__(f"Timeout after {timeout}s waiting for {resource} (held by {held_by})")
        self.resource = resource
        self.held_by = held_by
        self.timeout = timeout


class DependencyTimeout(FleetError):
    """A group's blockers did not complete within the wait bound."""

    def __init__(self, group_id: str, blockers: list[str], timeout: float) -> None:
        super().__init__(
            f"Group {group_id} still blocked by {', '.join(blockers)} after {timeout}s"
        )
        self.group_id = group_id
        self.blockers = blockers
        self.timeout = timeout


class ConcurrentModification(FleetError):
    """Another participant holds the state lock; retried internally."""


class StoreUnavailable(FleetError):
    """The state store could not be read or committed."""


class TaskFailed(FleetError):
    """A task handler reported failure."""


class OperationCancelled(FleetError):
    """A polling wait was aborted by a shutdown request."""
