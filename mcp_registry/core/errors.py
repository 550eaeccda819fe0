"""Structured errors for the capability-server registry.

Exception hierarchy shared by the transport, client, and registry layers,
plus ``StructuredErrorResponse`` for rendering errors to callers without
leaking internals.

Taxonomy:
    TransportError          - spawn / pipe write / process exit (fatal to the connection)
    ProtocolError           - unusable payload from the server
    RequestTimeoutError     - no response within the per-request timeout
    ServerError             - well-formed error response from the server
    CircuitOpenError        - rejected by the circuit breaker, not counted as a failure
    RequestCancelledError   - pending request failed by an explicit disconnect
    ServerNotFoundError / ServerNotConnectedError / DuplicateServerError
                            - caller-input errors raised by the registry
"""

from typing import Any

from pydantic import BaseModel

# JSON-RPC error codes used on the wire.
PARSE_ERROR = -32700
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000
TIMEOUT = -32001
CONNECTION_FAILED = -32002
CIRCUIT_BREAKER_OPEN = -32003


class MCPRegistryError(Exception):
    """Base exception for all registry errors."""

    rpc_code: int = INTERNAL_ERROR


class TransportError(MCPRegistryError):
    """Raised when the process pipe to a server is unusable."""

    rpc_code = CONNECTION_FAILED

    def __init__(self, server_name: str, detail: str = "") -> None:
        self.server_name = server_name
        self.detail = detail
        msg = f"Transport error for '{server_name}'"
        if detail:
            msg += f" - {detail}"
        super().__init__(msg)


class ProtocolError(MCPRegistryError):
    """Raised when a server sends a payload that cannot be interpreted."""

    rpc_code = PARSE_ERROR

    def __init__(self, server_name: str, detail: str) -> None:
        self.server_name = server_name
        self.detail = detail
        super().__init__(f"Protocol error from '{server_name}' - {detail}")


class RequestTimeoutError(MCPRegistryError):
    """Raised when a request gets no response within its timeout."""

    rpc_code = TIMEOUT

    def __init__(self, server_name: str, method: str, timeout_seconds: float) -> None:
        self.server_name = server_name
        self.method = method
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Request '{method}' to '{server_name}' timed out after {timeout_seconds}s")


class ServerError(MCPRegistryError):
    """Raised when a server answers a request with an error object."""

    rpc_code = SERVER_ERROR

    def __init__(self, server_name: str, code: int, message: str, data: Any = None) -> None:
        self.server_name = server_name
        self.code = code
        self.rpc_code = code
        self.message = message
        self.data = data
        super().__init__(f"Server '{server_name}' returned error {code}: {message}")


class CircuitOpenError(MCPRegistryError):
    """Raised when a call is rejected because the server's circuit is open."""

    rpc_code = CIRCUIT_BREAKER_OPEN

    def __init__(self, server_name: str, retry_after: float) -> None:
        self.server_name = server_name
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit open for '{server_name}' - retry after {self.retry_after:.1f}s")


class RequestCancelledError(MCPRegistryError):
    """Raised for requests still pending when their client disconnects."""

    rpc_code = CONNECTION_FAILED

    def __init__(self, server_name: str, method: str) -> None:
        self.server_name = server_name
        self.method = method
        super().__init__(f"Request '{method}' to '{server_name}' cancelled by disconnect")


class ServerNotFoundError(MCPRegistryError):
    rpc_code = INVALID_PARAMS

    def __init__(self, server_name: str) -> None:
        self.server_name = server_name
        super().__init__(f"Server '{server_name}' not found")


class ServerNotConnectedError(MCPRegistryError):
    rpc_code = CONNECTION_FAILED

    def __init__(self, server_name: str) -> None:
        self.server_name = server_name
        super().__init__(f"Server '{server_name}' is not connected")


class DuplicateServerError(MCPRegistryError):
    rpc_code = INVALID_PARAMS

    def __init__(self, server_name: str) -> None:
        self.server_name = server_name
        super().__init__(f"Server '{server_name}' already exists")


class StructuredErrorResponse(BaseModel):
    """Structured error body: ``{"error", "code", "rpc_code", "request_id"}``, no stack traces."""

    error: str
    code: str
    request_id: str
    rpc_code: int = INTERNAL_ERROR

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str) -> "StructuredErrorResponse":
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions.
        """
        for exc_type, code in _ERROR_CODES:
            if isinstance(exc, exc_type):
                rpc_code = exc.rpc_code if isinstance(exc, MCPRegistryError) else INTERNAL_ERROR
                return cls(error=str(exc), code=code, request_id=request_id, rpc_code=rpc_code)
        # Unhandled - never expose internal details
        return cls(
            error="An internal error occurred",
            code="INTERNAL_ERROR",
            request_id=request_id,
        )


# Most specific first; MCPRegistryError is the catch-all for our own errors.
_ERROR_CODES: tuple[tuple[type[Exception], str], ...] = (
    (CircuitOpenError, "CIRCUIT_OPEN"),
    (TransportError, "TRANSPORT_ERROR"),
    (ProtocolError, "PROTOCOL_ERROR"),
    (RequestTimeoutError, "REQUEST_TIMEOUT"),
    (ServerError, "SERVER_ERROR"),
    (RequestCancelledError, "REQUEST_CANCELLED"),
    (ServerNotFoundError, "SERVER_NOT_FOUND"),
    (ServerNotConnectedError, "SERVER_NOT_CONNECTED"),
    (DuplicateServerError, "DUPLICATE_SERVER"),
    (MCPRegistryError, "REGISTRY_ERROR"),
)
