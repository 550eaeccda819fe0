"""ServerRegistry: the named collection of capability-server connections.

Owns one ``CapabilityClient`` per configured server, applies auto-connect,
routes tool/resource calls by server name, aggregates capability listings,
and re-projects each client's lifecycle events into a ``Connection`` view.

The registry is an explicitly constructed value owned by the application's
startup sequence; there is no module-level instance.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from mcp_registry.client import CapabilityClient, ClientEvent
from mcp_registry.core.config import Settings
from mcp_registry.core.errors import (
    DuplicateServerError,
    MCPRegistryError,
    ServerNotConnectedError,
    ServerNotFoundError,
)
from mcp_registry.models.schemas import (
    RESOURCES_READ,
    TOOLS_CALL,
    ClientInfo,
    Connection,
    ConnectionState,
    HealthReport,
    ResourceInfo,
    ResourceReadParams,
    RpcResponse,
    ServerConfig,
    ServerHealth,
    ToolCallParams,
    ToolInfo,
)
from mcp_registry.resilience.circuit_breaker import CircuitBreaker
from mcp_registry.transport.base import TransportFactory
from mcp_registry.transport.stdio import ProcessTransport

logger = logging.getLogger(__name__)


class RegistryEvent(str, Enum):
    """Events the registry re-broadcasts on behalf of its clients."""

    SERVER_CONNECTED = "server_connected"
    SERVER_DISCONNECTED = "server_disconnected"
    SERVER_ERROR = "server_error"
    NOTIFICATION = "notification"


RegistryListener = Callable[[RegistryEvent, str, Any], None]


class ServerRegistry:
    """Manages the named set of server connections.

    Args:
        settings:          Global defaults (timeouts, breaker tuning,
                           auto-connect gate, client identity).
        transport_factory: Transport builder handed to every client.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport_factory: TransportFactory = ProcessTransport,
    ) -> None:
        self.settings = settings or Settings()
        self._transport_factory = transport_factory
        self._clients: dict[str, CapabilityClient] = {}
        self._connections: dict[str, Connection] = {}
        self._listeners: list[RegistryListener] = []
        self._lock = asyncio.Lock()

    # ── Registration ─────────────────────────────────────────────────

    async def initialize(self, configs: list[ServerConfig]) -> None:
        """Register every server in *configs*, logging individual failures."""
        logger.info("Initializing registry with %d server definition(s)", len(configs))
        for config in configs:
            try:
                await self.add_server(config)
            except MCPRegistryError as exc:
                logger.error("Failed to add server %s: %s", config.name, exc)
        logger.info("Registry initialized with %d server(s)", len(self._clients))

    async def add_server(self, config: ServerConfig) -> CapabilityClient:
        """Register *config* and connect it unless auto-connect is disabled.

        A failed auto-connect leaves the server registered (in ``error``
        state) and re-raises the connection error.

        Raises:
            DuplicateServerError: If a server with the same name exists.
        """
        async with self._lock:
            if config.name in self._clients:
                raise DuplicateServerError(config.name)
            client = self._build_client(config)
            self._clients[config.name] = client
            self._connections[config.name] = Connection(
                id=_connection_id(),
                server_name=config.name,
                state=client.state,
            )
        logger.info("Registered server %s", config.name)

        if config.auto_connect and self.settings.ENABLE_AUTO_CONNECT:
            await client.connect()
        return client

    async def remove_server(self, name: str) -> None:
        """Disconnect *name* and forget it."""
        async with self._lock:
            client = self._require(name)
            del self._clients[name]
            self._connections.pop(name, None)
        await client.disconnect()
        logger.info("Removed server %s", name)

    def _build_client(self, config: ServerConfig) -> CapabilityClient:
        client = CapabilityClient(
            config,
            default_timeout=self.settings.DEFAULT_TIMEOUT,
            breaker=CircuitBreaker(
                config.name,
                failure_threshold=self.settings.CIRCUIT_BREAKER_THRESHOLD,
                reset_timeout=self.settings.CIRCUIT_BREAKER_RESET_SECONDS,
            ),
            transport_factory=self._transport_factory,
            client_info=ClientInfo(name=self.settings.SERVICE_NAME, version=self.settings.SERVICE_VERSION),
            protocol_version=self.settings.PROTOCOL_VERSION,
        )
        name = config.name
        client.add_listener(ClientEvent.STATE_CHANGED, lambda state: self._on_state_changed(name, state))
        client.add_listener(ClientEvent.CONNECTED, lambda capabilities: self._on_connected(name, capabilities))
        client.add_listener(ClientEvent.DISCONNECTED, lambda code: self._on_disconnected(name, code))
        client.add_listener(ClientEvent.ERROR, lambda exc: self._on_error(name, exc))
        client.add_listener(ClientEvent.NOTIFICATION, lambda message: self._broadcast(RegistryEvent.NOTIFICATION, name, message))
        return client

    # ── Connection projection ────────────────────────────────────────

    def _update_connection(self, name: str, **changes: Any) -> None:
        connection = self._connections.get(name)
        if connection is not None:
            self._connections[name] = connection.model_copy(update=changes)

    def _on_state_changed(self, name: str, state: ConnectionState) -> None:
        self._update_connection(name, state=state)

    def _on_connected(self, name: str, capabilities: Any) -> None:
        if name in self._connections:
            self._connections[name] = Connection(
                id=_connection_id(),
                server_name=name,
                state=ConnectionState.CONNECTED,
                last_connected=datetime.now(UTC),
                capabilities=capabilities,
            )
        logger.info("Connected to server: %s", name)
        self._broadcast(RegistryEvent.SERVER_CONNECTED, name, capabilities)

    def _on_disconnected(self, name: str, exit_code: int | None) -> None:
        self._update_connection(name, state=ConnectionState.DISCONNECTED, capabilities=None)
        logger.info("Disconnected from server: %s", name)
        self._broadcast(RegistryEvent.SERVER_DISCONNECTED, name, exit_code)

    def _on_error(self, name: str, exc: Exception) -> None:
        self._update_connection(name, state=ConnectionState.ERROR, error=str(exc), capabilities=None)
        logger.error("Server error (%s): %s", name, exc)
        self._broadcast(RegistryEvent.SERVER_ERROR, name, exc)

    # ── Events ───────────────────────────────────────────────────────

    def subscribe(self, callback: RegistryListener) -> None:
        self._listeners.append(callback)

    def unsubscribe(self, callback: RegistryListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _broadcast(self, event: RegistryEvent, name: str, payload: Any) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, name, payload)
            except Exception:
                logger.exception("Registry listener raised for %s on %s", event.value, name)

    # ── Lookup ───────────────────────────────────────────────────────

    def _require(self, name: str) -> CapabilityClient:
        client = self._clients.get(name)
        if client is None:
            raise ServerNotFoundError(name)
        return client

    def _require_connected(self, name: str) -> CapabilityClient:
        client = self._require(name)
        if not client.is_connected:
            raise ServerNotConnectedError(name)
        return client

    def get_client(self, name: str) -> CapabilityClient | None:
        return self._clients.get(name)

    def get_clients(self) -> dict[str, CapabilityClient]:
        return dict(self._clients)

    def get_connections(self) -> list[Connection]:
        return list(self._connections.values())

    def get_connection(self, name: str) -> Connection | None:
        return self._connections.get(name)

    # ── Operations ───────────────────────────────────────────────────

    async def connect_server(self, name: str) -> None:
        await self._require(name).connect()

    async def disconnect_server(self, name: str) -> None:
        await self._require(name).disconnect()

    async def call_tool(
        self,
        server: str,
        tool: str,
        arguments: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> RpcResponse:
        """Invoke *tool* on *server* via ``tools/call``.

        Raises:
            ServerNotFoundError: If *server* is not registered.
            ServerNotConnectedError: If *server* is not connected.
        """
        client = self._require_connected(server)
        params = ToolCallParams(name=tool, arguments=arguments or {})
        return await client.request(TOOLS_CALL, params, timeout=timeout)

    async def get_resource(self, server: str, uri: str, *, timeout: float | None = None) -> RpcResponse:
        """Read *uri* from *server* via ``resources/read``."""
        client = self._require_connected(server)
        return await client.request(RESOURCES_READ, ResourceReadParams(uri=uri), timeout=timeout)

    def list_tools(self, server: str | None = None) -> list[ToolInfo]:
        """Tools of *server*, or of every connected server tagged with its name."""
        if server is not None:
            capabilities = self._require(server).capabilities
            return list(capabilities.tools) if capabilities else []

        tools: list[ToolInfo] = []
        for name, client in self._clients.items():
            if client.is_connected and client.capabilities is not None:
                tools.extend(tool.model_copy(update={"server": name}) for tool in client.capabilities.tools)
        return tools

    def list_resources(self, server: str | None = None) -> list[ResourceInfo]:
        """Resources of *server*, or of every connected server tagged with its name."""
        if server is not None:
            capabilities = self._require(server).capabilities
            return list(capabilities.resources) if capabilities else []

        resources: list[ResourceInfo] = []
        for name, client in self._clients.items():
            if client.is_connected and client.capabilities is not None:
                resources.extend(
                    resource.model_copy(update={"server": name}) for resource in client.capabilities.resources
                )
        return resources

    def health(self) -> HealthReport:
        """Healthy when every registered connection is ``connected``."""
        servers = []
        for name, connection in self._connections.items():
            client = self._clients.get(name)
            servers.append(
                ServerHealth(
                    server=name,
                    state=connection.state,
                    last_connected=connection.last_connected,
                    error=connection.error,
                    circuit_breaker=client.circuit_breaker.snapshot() if client else {},
                )
            )
        return HealthReport(
            healthy=all(s.state == ConnectionState.CONNECTED for s in servers),
            connections=servers,
        )

    async def shutdown(self) -> None:
        """Disconnect every client concurrently and clear the registry."""
        logger.info("Shutting down registry (%d server(s))", len(self._clients))
        async with self._lock:
            clients = list(self._clients.values())
            results = await asyncio.gather(*(client.disconnect() for client in clients), return_exceptions=True)
            for client, result in zip(clients, results):
                if isinstance(result, Exception):
                    logger.error("Error disconnecting %s: %s", client.name, result)
            self._clients.clear()
            self._connections.clear()
        logger.info("Registry shutdown complete")


def _connection_id() -> str:
    return f"conn_{uuid.uuid4().hex[:12]}"
