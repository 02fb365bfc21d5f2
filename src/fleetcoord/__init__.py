"""fleetcoord: coordinate a fleet of worker processes over shared file state."""

__version__ = "0.1.0"

# Public API
from fleetcoord.config import Config, get_config, load_config
from fleetcoord.coordinator import AdminResult, Coordinator, SystemStatus
from fleetcoord.errors import (
    ConcurrentModification,
    ConfigError,
    CyclicDependency,
    DependencyTimeout,
    DuplicateWorker,
    FleetError,
    GroupNotFound,
    InvalidTransition,
    LeaseTimeout,
    OperationCancelled,
    StoreUnavailable,
    TaskFailed,
    UnknownWorker,
    WorkerLimitReached,
)
from fleetcoord.leases import Granted, HeldBy, LeaseManager
from fleetcoord.lifecycle import WorkerLifecycle
from fleetcoord.monitor import LivenessMonitor
from fleetcoord.resolver import Readiness, can_proceed
from fleetcoord.state import GroupSpec, StateStore, SystemState, TaskSpec, WorkerRecord, WorkerStatus
from fleetcoord.tasks import HandlerRegistry, Task, TaskContext
from fleetcoord.worker import Worker

__all__ = [
    "__version__",
    # Entry points
    "Coordinator",
    "Worker",
    "StateStore",
    # Components
    "LeaseManager",
    "LivenessMonitor",
    "WorkerLifecycle",
    "HandlerRegistry",
    "can_proceed",
    # Results and records
    "AdminResult",
    "Granted",
    "HeldBy",
    "Readiness",
    "SystemStatus",
    "SystemState",
    "GroupSpec",
    "TaskSpec",
    "Task",
    "TaskContext",
    "WorkerRecord",
    "WorkerStatus",
    # Config
    "Config",
    "load_config",
    "get_config",
    # Errors
    "FleetError",
    "ConfigError",
    "ConcurrentModification",
    "CyclicDependency",
    "DependencyTimeout",
    "DuplicateWorker",
    "GroupNotFound",
    "InvalidTransition",
    "LeaseTimeout",
    "OperationCancelled",
    "StoreUnavailable",
    "TaskFailed",
    "UnknownWorker",
    "WorkerLimitReached",
]
