"""Shared coordination state: data model and transactional store."""

from fleetcoord.state.schema import (
    GroupSpec,
    Progress,
    SystemInfo,
    SystemState,
    TaskProgressSummary,
    TaskSpec,
    WorkerRecord,
    WorkerStatus,
)
from fleetcoord.state.store import StateStore

__all__ = [
    "GroupSpec",
    "Progress",
    "StateStore",
    "SystemInfo",
    "SystemState",
    "TaskProgressSummary",
    "TaskSpec",
    "WorkerRecord",
    "WorkerStatus",
]
