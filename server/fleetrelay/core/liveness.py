"""Heartbeat sweep over bridged browser connections.

A browser that vanished without a close handshake leaves a half-open socket
and an upstream feed nobody reads. Each sweep sends every connection a
control-frame ping; one that has not answered since the previous sweep is
terminated.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from fleetrelay.core.bridge import RealtimeBridge
    from fleetrelay.core.stats import RelayStats

log = structlog.get_logger()

DEFAULT_INTERVAL_SECONDS = 30.0


class LivenessMonitor:
    """Reaps connections that miss two consecutive heartbeat sweeps."""

    def __init__(
        self,
        bridge: RealtimeBridge,
        stats: RelayStats,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self._bridge = bridge
        self._stats = stats
        self._interval = interval_seconds

    async def sweep(self) -> int:
        """Run one heartbeat round. Returns the number of connections reaped."""
        doomed = []
        for conn in self._bridge.connections:
            if not conn.is_alive:
                log.info("client_unresponsive", connection=conn.id)
                doomed.append(conn)
                continue

            conn.is_alive = False
            if not await conn.ping():
                log.info("client_ping_failed", connection=conn.id)
                doomed.append(conn)

        # Terminations run concurrently; one slow upstream close does not delay the rest.
        results = await asyncio.gather(
            *(conn.terminate() for conn in doomed), return_exceptions=True,
        )
        for conn, result in zip(doomed, results):
            self._stats.record_reaped()
            if isinstance(result, Exception):
                log.error("client_terminate_failed", connection=conn.id,
                          error=str(result))
        return len(doomed)

    async def run(self) -> None:
        """Sweep forever at the configured interval. Runs as a background task."""
        log.info("liveness_monitor_started", interval_seconds=self._interval)
        while True:
            await asyncio.sleep(self._interval)
            try:
                reaped = await self.sweep()
            except Exception:
                log.error("liveness_sweep_failed", exc_info=True)
                continue
            if reaped:
                log.info("liveness_sweep", reaped=reaped,
                         active=len(self._bridge.connections))
