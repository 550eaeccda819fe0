"""Transports between a client and a capability server.

Only the process-pipe transport is implemented; other transports plug in
behind the same ``Transport`` interface.
"""

from mcp_registry.transport.base import CloseHandler, MessageHandler, Transport, TransportFactory
from mcp_registry.transport.stdio import ProcessTransport

__all__ = [
    "CloseHandler",
    "MessageHandler",
    "ProcessTransport",
    "Transport",
    "TransportFactory",
]
