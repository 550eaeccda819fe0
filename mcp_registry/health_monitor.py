"""Periodic health checks for registered servers.

Each tick logs the registry's health report and reconnects auto-connect
servers that have fallen into ``error`` state or whose process exited on its
own.  Servers that were disconnected on purpose are left alone.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from mcp_registry.client import CapabilityClient
from mcp_registry.core.errors import MCPRegistryError
from mcp_registry.models.schemas import ConnectionState, HealthReport
from mcp_registry.registry import ServerRegistry

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Runs ``check_once`` every *interval* seconds until stopped.

    Usage::

        monitor = HealthMonitor(registry, interval=60.0)
        monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(self, registry: ServerRegistry, interval: float = 60.0, reconnect: bool = True) -> None:
        self._registry = registry
        self._interval = interval
        self._reconnect = reconnect
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="mcp-registry-health")
        logger.info("Health monitor started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Health monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.check_once()

    async def check_once(self) -> HealthReport:
        """Log current health and reconnect auto-connect servers that went down."""
        if self._reconnect and self._registry.settings.ENABLE_AUTO_CONNECT:
            for name, client in self._registry.get_clients().items():
                if not client.config.auto_connect or not _needs_recovery(client):
                    continue
                logger.info("Reconnecting server %s (%s)", name, client.state.value)
                try:
                    await client.connect()
                except MCPRegistryError as exc:
                    logger.warning("Reconnect of %s failed: %s", name, exc)

        report = self._registry.health()
        unhealthy = [s.server for s in report.connections if s.state != ConnectionState.CONNECTED]
        if unhealthy:
            logger.warning("Unhealthy servers: %s", ", ".join(unhealthy))
        else:
            logger.debug("All %d server(s) healthy", len(report.connections))
        return report


def _needs_recovery(client: CapabilityClient) -> bool:
    if client.state == ConnectionState.ERROR:
        return True
    # A connection that dropped without disconnect() means the process went away.
    return (
        client.state == ConnectionState.DISCONNECTED
        and client.last_connected is not None
        and not client.disconnect_requested
    )
