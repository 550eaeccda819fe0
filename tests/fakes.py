"""In-memory transport double for client and registry tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from mcp_registry.core.errors import TransportError
from mcp_registry.models.schemas import ServerConfig
from mcp_registry.transport.base import CloseHandler, MessageHandler, Transport

DEFAULT_CAPABILITIES: dict[str, Any] = {
    "tools": [
        {"name": "echo", "description": "Echo arguments", "inputSchema": {"type": "object"}},
    ],
    "resources": [
        {"uri": "file:///readme", "name": "readme", "mimeType": "text/plain"},
    ],
    "prompts": [],
}

# Returns {"result": ...}, {"error": {...}}, or None to leave the request unanswered.
ReplyHandler = Callable[[dict[str, Any]], dict[str, Any] | None]


def echo_handler(message: dict[str, Any]) -> dict[str, Any] | None:
    return {"result": {"echo": message.get("params")}}


def silent_handler(message: dict[str, Any]) -> dict[str, Any] | None:
    return None


class FakeTransport(Transport):
    """Scripted server: answers ``initialize`` with a manifest and other
    requests through *handler*, delivering replies on the next loop turn."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        capabilities: dict[str, Any] | None = None,
        handler: ReplyHandler = echo_handler,
        init_reply: dict[str, Any] | None = None,
        answer_initialize: bool = True,
        fail_start: bool = False,
    ) -> None:
        self.config = config
        self.capabilities = DEFAULT_CAPABILITIES if capabilities is None else capabilities
        self.handler = handler
        self.init_reply = init_reply
        self.answer_initialize = answer_initialize
        self.fail_start = fail_start
        self.sent: list[dict[str, Any]] = []
        self.started = False
        self.closed = False
        self.fail_send = False
        self._alive = False
        self._on_message: MessageHandler | None = None
        self._on_close: CloseHandler | None = None

    @property
    def is_alive(self) -> bool:
        return self._alive

    @property
    def requests(self) -> list[dict[str, Any]]:
        return [m for m in self.sent if "id" in m]

    async def start(self, on_message: MessageHandler, on_close: CloseHandler) -> None:
        if self.fail_start:
            raise TransportError(self.config.name, "failed to spawn")
        self._on_message = on_message
        self._on_close = on_close
        self._alive = True
        self.started = True

    async def send(self, message: dict[str, Any]) -> None:
        if not self._alive or self.fail_send:
            raise TransportError(self.config.name, "no live process")
        self.sent.append(message)
        if "id" not in message:
            return
        if message["method"] == "initialize":
            if not self.answer_initialize:
                return
            reply = self.init_reply if self.init_reply is not None else {"result": self.capabilities}
        else:
            reply = self.handler(message)
        if reply is not None:
            self.reply(message["id"], reply)

    def reply(self, request_id: str, payload: dict[str, Any]) -> None:
        """Deliver ``{id, **payload}`` on the next loop turn."""
        asyncio.get_running_loop().call_soon(self.push, {"jsonrpc": "2.0", "id": request_id, **payload})

    def push(self, message: dict[str, Any]) -> None:
        if self._alive and self._on_message is not None:
            self._on_message(message)

    def crash(self, exit_code: int = 1) -> None:
        """Simulate the process exiting on its own."""
        self._alive = False
        if self._on_close is not None:
            self._on_close(exit_code)

    async def close(self) -> None:
        self._alive = False
        self.closed = True


class FakeTransportFactory:
    """Transport factory that records every transport it builds."""

    def __init__(self, **options: Any) -> None:
        self.options = options
        self.per_server: dict[str, dict[str, Any]] = {}
        self.created: list[FakeTransport] = []

    def __call__(self, config: ServerConfig) -> FakeTransport:
        options = {**self.options, **self.per_server.get(config.name, {})}
        transport = FakeTransport(config, **options)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]

    def for_server(self, name: str) -> list[FakeTransport]:
        return [t for t in self.created if t.config.name == name]


async def wait_until(predicate: Callable[[], bool], turns: int = 200) -> None:
    """Yield to the loop until *predicate* holds."""
    for _ in range(turns):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")
