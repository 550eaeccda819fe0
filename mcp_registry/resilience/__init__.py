"""Resilience patterns: circuit breaker and retry for client requests.

Provides the per-connection circuit breaker and the exponential-backoff
retry executor that protect the registry from slow or crashing servers.
"""

from mcp_registry.resilience.circuit_breaker import CircuitBreaker, CircuitState
from mcp_registry.resilience.retry import RetryExecutor, backoff_delays

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RetryExecutor",
    "backoff_delays",
]
