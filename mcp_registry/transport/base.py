"""Transport interface between a client and one capability server."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from mcp_registry.models.schemas import ServerConfig

# Called once per parsed inbound message.
MessageHandler = Callable[[dict[str, Any]], None]
# Called once when the server goes away on its own; receives the exit code if known.
CloseHandler = Callable[[int | None], None]


class Transport(ABC):
    """Moves JSON-RPC messages to and from one server.

    A transport surfaces unsolicited closure through the ``on_close``
    handler; ``close()`` initiated by the owner does not invoke it.
    """

    @abstractmethod
    async def start(self, on_message: MessageHandler, on_close: CloseHandler) -> None:
        """Establish the connection and begin delivering inbound messages."""

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Write one message; raise ``TransportError`` if the peer is gone."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the connection. Safe to call more than once."""

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Whether ``send`` can currently succeed."""


TransportFactory = Callable[[ServerConfig], Transport]
