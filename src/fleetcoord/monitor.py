"""Liveness monitor: periodic stale sweeps on the coordinator side.

Uses a polling loop like the config watcher. Each sweep is its own store
transaction; a failed sweep is logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from fleetcoord.errors import FleetError
from fleetcoord.lifecycle import WorkerLifecycle
from fleetcoord.logging import get_logger


@dataclass
class SweepResult:
    """What one sweep changed."""

    marked_stale: list[str] = field(default_factory=list)
    removed: dict[str, list[str]] = field(default_factory=dict)


class LivenessMonitor:
    """Marks workers stale when their heartbeat lapses.

    Stale marking never touches leases. When ``removal_timeout`` is set, a
    worker that stays silent past it is removed and its leases released.
    """

    def __init__(
        self,
        lifecycle: WorkerLifecycle,
        *,
        stale_timeout: float,
        sweep_interval: float,
        removal_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._stale_timeout = stale_timeout
        self._sweep_interval = sweep_interval
        self._removal_timeout = removal_timeout
        self._log = logger or get_logger("monitor")
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    def sweep(self) -> SweepResult:
        """Run one stale pass (and the removal pass, if enabled)."""
        result = SweepResult(marked_stale=self._lifecycle.mark_stale(self._stale_timeout))
        if self._removal_timeout is not None:
            result.removed = self._lifecycle.remove_expired(self._removal_timeout)
        return result

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._sweep_interval)

            if not self._running:
                break

            try:
                await asyncio.to_thread(self.sweep)
            except FleetError as e:
                self._log.error("Liveness sweep failed: %s", e)
            except Exception:
                self._log.exception("Unexpected error in liveness sweep")

    def start(self) -> None:
        """Start sweeping. Must be called from within an async context."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        self._log.debug(
            "Liveness monitor started (interval=%.1fs, stale after %.1fs)",
            self._sweep_interval,
            self._stale_timeout,
        )

    async def stop(self) -> None:
        """Stop sweeping and wait for the loop to exit."""
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._log.debug("Liveness monitor stopped")

    async def __aenter__(self) -> LivenessMonitor:
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()
