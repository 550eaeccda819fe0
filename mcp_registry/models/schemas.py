"""Pydantic models for server configuration, capabilities, and wire payloads.

Wire and config payloads use camelCase on the outside (``retryPolicy``,
``inputSchema``, ``protocolVersion``) and snake_case in Python; every model
accepts either spelling on input.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

INITIALIZE = "initialize"
INITIALIZED_NOTIFICATION = "notifications/initialized"
TOOLS_CALL = "tools/call"
RESOURCES_READ = "resources/read"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ── Configuration ───────────────────────────────────────────────────────


class RetryPolicy(_CamelModel):
    """Exponential backoff policy; delays are in seconds."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=10.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


class ServerConfig(_CamelModel):
    """Launch definition for one capability server. Immutable after registration."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str = Field(..., min_length=1)
    command: str = Field(..., min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0.0)
    retry_policy: RetryPolicy | None = None
    auto_connect: bool = True


# ── Capabilities manifest ───────────────────────────────────────────────


class ToolInfo(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: str
    description: str = ""
    input_schema: dict[str, Any] | None = None
    server: str | None = None


class ResourceInfo(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    uri: str
    name: str
    description: str | None = None
    mime_type: str | None = None
    server: str | None = None


class PromptInfo(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: str
    description: str | None = None
    arguments: Any = None


class Capabilities(_CamelModel):
    """Manifest a server reports in its ``initialize`` reply."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    tools: list[ToolInfo] = Field(default_factory=list)
    resources: list[ResourceInfo] = Field(default_factory=list)
    prompts: list[PromptInfo] = Field(default_factory=list)


# ── Wire payloads ───────────────────────────────────────────────────────


class ClientInfo(_CamelModel):
    name: str
    version: str


class InitializeParams(_CamelModel):
    """Params of the reserved ``initialize`` handshake request."""

    protocol_version: str
    client_info: ClientInfo


class ToolCallParams(_CamelModel):
    """Params of a ``tools/call`` request."""

    name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


class ResourceReadParams(_CamelModel):
    """Params of a ``resources/read`` request."""

    uri: str = Field(..., min_length=1)


class RpcError(BaseModel):
    code: int
    message: str
    data: Any = None


class RpcResponse(BaseModel):
    """Inbound response: ``{id, result}`` or ``{id, error}``."""

    model_config = ConfigDict(extra="allow")

    id: str | int
    result: Any = None
    error: RpcError | None = None


# ── Connection view ─────────────────────────────────────────────────────


class ConnectionState(str, Enum):
    """Lifecycle state of a client connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Connection(BaseModel):
    """Registry-facing projection of one client's lifecycle."""

    id: str
    server_name: str
    state: ConnectionState = ConnectionState.DISCONNECTED
    last_connected: datetime | None = None
    error: str | None = None
    capabilities: Capabilities | None = None


class ServerHealth(BaseModel):
    server: str
    state: ConnectionState
    last_connected: datetime | None = None
    error: str | None = None
    circuit_breaker: dict[str, Any] = Field(default_factory=dict)


class HealthReport(BaseModel):
    """Healthy when every registered connection is ``connected``."""

    healthy: bool
    connections: list[ServerHealth] = Field(default_factory=list)
