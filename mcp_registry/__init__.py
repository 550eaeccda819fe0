"""Client and registry for out-of-process capability servers.

Speaks line-delimited JSON-RPC over process pipes, with per-request
timeouts, exponential-backoff retry, and a per-connection circuit breaker.
"""

from mcp_registry.client import CapabilityClient, ClientEvent
from mcp_registry.registry import RegistryEvent, ServerRegistry

__all__ = [
    "CapabilityClient",
    "ClientEvent",
    "RegistryEvent",
    "ServerRegistry",
]
