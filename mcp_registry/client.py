"""CapabilityClient: one logical connection to one named capability server.

Wraps a ``Transport``, performs the ``initialize`` handshake, correlates
responses to in-flight requests by id, and applies per-request timeouts,
exponential-backoff retry, and a per-connection circuit breaker.

State machine::

    disconnected --connect()--> connecting --handshake ok--> connected
    connecting   --handshake failure / transport error--> error
    connected    --process exit / disconnect()--> disconnected
    connected    --transport error--> error

``disconnect()`` forces ``disconnected`` from any state.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from mcp_registry.core.errors import (
    CircuitOpenError,
    MCPRegistryError,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
    ServerError,
    ServerNotConnectedError,
    TransportError,
)
from mcp_registry.models.schemas import (
    INITIALIZE,
    INITIALIZED_NOTIFICATION,
    Capabilities,
    ClientInfo,
    ConnectionState,
    InitializeParams,
    RetryPolicy,
    RpcResponse,
    ServerConfig,
)
from mcp_registry.resilience.circuit_breaker import CircuitBreaker
from mcp_registry.resilience.retry import RetryExecutor
from mcp_registry.transport.base import Transport, TransportFactory
from mcp_registry.transport.stdio import ProcessTransport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_PROTOCOL_VERSION = "1.0.0"
DEFAULT_CLIENT_INFO = ClientInfo(name="mcp-registry", version="0.1.0")


class ClientEvent(str, Enum):
    """Lifecycle events a client publishes to its listeners."""

    STATE_CHANGED = "state_changed"  # payload: ConnectionState
    CONNECTED = "connected"  # payload: Capabilities
    DISCONNECTED = "disconnected"  # payload: exit code or None
    ERROR = "error"  # payload: Exception
    NOTIFICATION = "notification"  # payload: dict


Listener = Callable[[Any], None]


@dataclass
class PendingRequest:
    """One in-flight request awaiting its response or timeout."""

    id: str
    method: str
    future: asyncio.Future[RpcResponse]


class CapabilityClient:
    """Connection to a single capability server.

    Args:
        config:            Server definition (immutable).
        default_timeout:   Per-request timeout when neither the call nor the
                           config specifies one.
        breaker:           Circuit breaker for this connection; one is created
                           from defaults when omitted.
        transport_factory: Builds the transport for each connection attempt.
        client_info:       Identity sent during the handshake.
        protocol_version:  Version sent during the handshake.
        retry_executor:    Backoff runner; injectable for tests.
    """

    # Failures that only a fresh connect() can fix, or that must not be retried.
    _NON_RETRYABLE = (CircuitOpenError, TransportError, RequestCancelledError)

    def __init__(
        self,
        config: ServerConfig,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        breaker: CircuitBreaker | None = None,
        transport_factory: TransportFactory = ProcessTransport,
        client_info: ClientInfo = DEFAULT_CLIENT_INFO,
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
        retry_executor: RetryExecutor | None = None,
    ) -> None:
        self.config = config
        self.retry_policy: RetryPolicy = config.retry_policy or RetryPolicy()
        self._default_timeout = config.timeout or default_timeout
        self._breaker = breaker or CircuitBreaker(config.name)
        self._transport_factory = transport_factory
        self._client_info = client_info
        self._protocol_version = protocol_version
        self._retry = retry_executor or RetryExecutor(giveup=self._NON_RETRYABLE)

        self._state = ConnectionState.DISCONNECTED
        self._capabilities: Capabilities | None = None
        self._transport: Transport | None = None
        self._pending: dict[str, PendingRequest] = {}
        self._listeners: dict[ClientEvent, list[Listener]] = defaultdict(list)
        self._connect_lock = asyncio.Lock()
        # Bumped by disconnect() so an in-flight connect() knows it was superseded.
        self._generation = 0
        self._disconnect_requested = False
        self.last_connected: datetime | None = None
        self.last_error: str | None = None

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def capabilities(self) -> Capabilities | None:
        return self._capabilities

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def disconnect_requested(self) -> bool:
        """True while the client is down because ``disconnect()`` was called."""
        return self._disconnect_requested

    # ── Events ───────────────────────────────────────────────────────

    def add_listener(self, event: ClientEvent, callback: Listener) -> None:
        self._listeners[event].append(callback)

    def remove_listener(self, event: ClientEvent, callback: Listener) -> None:
        if callback in self._listeners[event]:
            self._listeners[event].remove(callback)

    def _emit(self, event: ClientEvent, payload: Any = None) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(payload)
            except Exception:
                logger.exception("Listener for %s on %s raised", event.value, self.name)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.debug("Server %s: %s -> %s", self.name, self._state.value, state.value)
        self._state = state
        self._emit(ClientEvent.STATE_CHANGED, state)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Start the transport and negotiate capabilities.

        No-op when already connected.

        Raises:
            TransportError: If the process cannot be started.
            ServerError / RequestTimeoutError / ProtocolError: If the
                handshake fails.
            RequestCancelledError: If ``disconnect()`` interrupts the attempt.
        """
        async with self._connect_lock:
            if self._state == ConnectionState.CONNECTED:
                return

            if self._transport is not None:
                stale = self._detach_transport(lambda entry: RequestCancelledError(self.name, entry.method))
                await stale.close()

            self._disconnect_requested = False
            generation = self._generation
            self._set_state(ConnectionState.CONNECTING)
            transport = self._transport_factory(self.config)
            self._transport = transport

            try:
                await transport.start(self._handle_message, lambda code: self._handle_transport_closed(transport, code))
                capabilities = await self._negotiate(transport)
                if generation != self._generation:
                    raise RequestCancelledError(self.name, INITIALIZE)
            except MCPRegistryError as exc:
                if self._transport is transport:
                    self._detach_transport(lambda entry: RequestCancelledError(self.name, entry.method))
                await transport.close()
                if generation != self._generation:
                    # disconnect() ran mid-handshake and already settled the state.
                    raise
                self.last_error = str(exc)
                self._set_state(ConnectionState.ERROR)
                logger.error("Failed to connect to server %s: %s", self.name, exc)
                self._emit(ClientEvent.ERROR, exc)
                raise

            self._capabilities = capabilities
            self.last_connected = datetime.now(UTC)
            self.last_error = None
            self._set_state(ConnectionState.CONNECTED)
            logger.info(
                "Connected to server %s (%d tools, %d resources)",
                self.name,
                len(capabilities.tools),
                len(capabilities.resources),
            )
            self._emit(ClientEvent.CONNECTED, capabilities)

    async def disconnect(self) -> None:
        """Terminate the transport, fail all pending requests, and go ``disconnected``."""
        self._generation += 1
        self._disconnect_requested = True
        was_connected = self._state == ConnectionState.CONNECTED
        transport = self._detach_transport(lambda entry: RequestCancelledError(self.name, entry.method))
        if transport is not None:
            await transport.close()
        self._set_state(ConnectionState.DISCONNECTED)
        if was_connected:
            logger.info("Disconnected from server %s", self.name)
            self._emit(ClientEvent.DISCONNECTED, None)

    def _detach_transport(self, make_error: Callable[[PendingRequest], Exception]) -> Transport | None:
        """Drop the transport and capabilities, failing every pending request."""
        transport, self._transport = self._transport, None
        self._capabilities = None
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(make_error(entry))
        if pending:
            logger.info("Failed %d pending request(s) on %s", len(pending), self.name)
        return transport

    def _handle_transport_closed(self, transport: Transport, exit_code: int | None) -> None:
        if transport is not self._transport:
            return
        self._detach_transport(lambda _entry: TransportError(self.name, f"process exited with code {exit_code}"))
        if self._state == ConnectionState.CONNECTING:
            # The pending handshake fails and connect() moves to ERROR.
            return
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Server %s went away (exit code %s)", self.name, exit_code)
        self._emit(ClientEvent.DISCONNECTED, exit_code)

    def _handle_transport_error(self, exc: TransportError) -> None:
        self.last_error = str(exc)
        if self._state == ConnectionState.CONNECTED:
            self._set_state(ConnectionState.ERROR)
            logger.error("Transport failure on %s: %s", self.name, exc)
            self._emit(ClientEvent.ERROR, exc)

    async def _negotiate(self, transport: Transport) -> Capabilities:
        params = InitializeParams(protocol_version=self._protocol_version, client_info=self._client_info)
        response = await self._attempt(INITIALIZE, params.to_wire(), self._default_timeout)
        try:
            capabilities = Capabilities.model_validate(response.result or {})
        except ValidationError as exc:
            raise ProtocolError(self.name, f"invalid capabilities manifest: {exc}") from exc

        await transport.send({"jsonrpc": "2.0", "method": INITIALIZED_NOTIFICATION, "params": {}})
        return capabilities

    # ── Requests ─────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        params: BaseModel | dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> RpcResponse:
        """Send *method* and wait for its response.

        Each attempt is guarded by the circuit breaker and bounded by
        *timeout* (falling back to the server's configured timeout); failed
        attempts are retried with exponential backoff.

        Raises:
            ServerNotConnectedError: If the client is not connected.
            CircuitOpenError: If the breaker rejects the attempt.
            RequestTimeoutError: If the final attempt timed out.
            ServerError: If the final attempt got an error response.
            TransportError: If the process is gone.
            RequestCancelledError: If the client disconnected meanwhile.
        """
        if self._state != ConnectionState.CONNECTED and method != INITIALIZE:
            raise ServerNotConnectedError(self.name)

        payload = params.model_dump(by_alias=True, exclude_none=True) if isinstance(params, BaseModel) else params
        effective_timeout = timeout if timeout is not None else self._default_timeout
        return await self._retry.run(
            lambda: self._attempt(method, payload, effective_timeout),
            self.retry_policy,
            label=f"{self.name}:{method}",
        )

    async def _attempt(self, method: str, params: dict[str, Any] | None, timeout: float) -> RpcResponse:
        if not self._breaker.can_execute():
            raise CircuitOpenError(self.name, self._breaker.retry_after())

        transport = self._transport
        if transport is None:
            raise TransportError(self.name, "no live process")

        request_id = self._new_request_id()
        future: asyncio.Future[RpcResponse] = asyncio.get_running_loop().create_future()
        # Registered before writing so a fast response always finds its entry.
        self._pending[request_id] = PendingRequest(id=request_id, method=method, future=future)

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await transport.send(message)
        except TransportError as exc:
            self._pending.pop(request_id, None)
            self._handle_transport_error(exc)
            raise

        try:
            response = await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            self._pending.pop(request_id, None)
            self._breaker.record_failure()
            raise RequestTimeoutError(self.name, method, timeout) from None

        if response.error is not None:
            self._breaker.record_failure()
            raise ServerError(self.name, response.error.code, response.error.message, response.error.data)

        self._breaker.record_success()
        return response

    def _new_request_id(self) -> str:
        request_id = str(uuid.uuid4())
        while request_id in self._pending:
            request_id = str(uuid.uuid4())
        return request_id

    # ── Inbound ──────────────────────────────────────────────────────

    def _handle_message(self, message: dict[str, Any]) -> None:
        message_id = message.get("id")
        if message_id is not None:
            self._resolve(message_id, message)
        elif "method" in message:
            self._emit(ClientEvent.NOTIFICATION, message)
        else:
            logger.warning("Dropping message without id or method from %s", self.name)

    def _resolve(self, message_id: Any, message: dict[str, Any]) -> None:
        if not isinstance(message_id, str) or message_id not in self._pending:
            logger.debug("Ignoring response with unknown id %r from %s", message_id, self.name)
            return
        try:
            response = RpcResponse.model_validate(message)
        except ValidationError as exc:
            logger.warning("Dropping malformed response %s from %s: %s", message_id, self.name, exc)
            return
        pending = self._pending.pop(message_id)
        if not pending.future.done():
            pending.future.set_result(response)
