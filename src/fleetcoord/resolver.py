"""Dependency readiness between work groups.

Pure functions over group specs and worker records: no I/O, no mutation.
"""

from __future__ import annotations

import heapq
from collections.abc import Mapping
from dataclasses import dataclass, field

from fleetcoord.errors import CyclicDependency, GroupNotFound
from fleetcoord.state.schema import GroupSpec, SystemState


@dataclass(frozen=True)
class Readiness:
    """Whether a group may proceed, and which blocker groups hold it back."""

    ready: bool
    blockers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {"ready": self.ready, "blockers": list(self.blockers)}


def is_group_satisfied(
    group_id: str,
    state: SystemState,
    *,
    empty_groups_satisfied: bool = False,
) -> bool:
    """True if ``group_id`` counts as completed for its dependents.

    A group is satisfied when at least one of its workers has status
    ``completed``. A group with no workers at all is satisfied only if its
    spec is ``externally_complete`` or the ``empty_groups_satisfied`` policy
    is on. The progress summary counts completed groups by the same rule.
    """
    return state.group_satisfied(group_id, empty_groups_satisfied=empty_groups_satisfied)


def can_proceed(
    group_id: str,
    state: SystemState,
    *,
    empty_groups_satisfied: bool = False,
) -> Readiness:
    """Check whether every ``blocked_by`` group of ``group_id`` is satisfied.

    Raises:
        GroupNotFound: ``group_id`` is not a configured group.
    """
    spec = state.group_specs.get(group_id)
    if spec is None:
        raise GroupNotFound(group_id)

    blockers = [
        blocker
        for blocker in spec.blocked_by
        if not is_group_satisfied(
            blocker, state, empty_groups_satisfied=empty_groups_satisfied
        )
    ]
    return Readiness(ready=not blockers, blockers=blockers)


def find_cycle(groups: Mapping[str, GroupSpec]) -> list[str] | None:
    """Return one dependency cycle as a closed path, or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = dict.fromkeys(groups, WHITE)
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        color[node] = GREY
        stack.append(node)
        for dep in groups[node].blocked_by:
            if dep not in groups:
                continue
            if color[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        color[node] = BLACK
        return None

    for group_id in sorted(groups):
        if color[group_id] == WHITE:
            cycle = visit(group_id)
            if cycle:
                return cycle
    return None


def validate_groups(groups: Mapping[str, GroupSpec]) -> None:
    """Reject dependency graphs that could never make progress.

    Raises:
        GroupNotFound: A ``blocked_by`` entry names an undefined group.
        CyclicDependency: A group depends on itself, directly or transitively.
    """
    for spec in groups.values():
        for dep in spec.blocked_by:
            if dep not in groups:
                raise GroupNotFound(dep)

    cycle = find_cycle(groups)
    if cycle:
        raise CyclicDependency(cycle)


def execution_order(groups: Mapping[str, GroupSpec]) -> list[str]:
    """Topological order of groups; ties go to lower priority value, then id.

    Raises:
        CyclicDependency: The graph has a cycle.
    """
    validate_groups(groups)

    remaining = {gid: set(spec.blocked_by) for gid, spec in groups.items()}
    dependents: dict[str, list[str]] = {gid: [] for gid in groups}
    for gid, spec in groups.items():
        for dep in set(spec.blocked_by):
            dependents[dep].append(gid)

    ready = [(groups[gid].priority, gid) for gid, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        _, gid = heapq.heappop(ready)
        order.append(gid)
        for child in dependents[gid]:
            remaining[child].discard(gid)
            if not remaining[child]:
                heapq.heappush(ready, (groups[child].priority, child))
    return order
