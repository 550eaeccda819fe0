"""Exponential-backoff retry for client requests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from mcp_registry.models.schemas import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(policy: RetryPolicy) -> list[float]:
    """Return the capped delay before each retry under *policy*.

    ``{initial_delay=1, multiplier=2, max_delay=10}`` yields
    ``1, 2, 4, 8, 10, 10, ...`` truncated to ``max_retries`` entries.
    """
    delays = []
    current = policy.initial_delay
    for _ in range(policy.max_retries):
        delays.append(min(current, policy.max_delay))
        current *= policy.backoff_multiplier
    return delays


class RetryExecutor:
    """Runs an async operation with exponential backoff.

    Args:
        giveup: Exception types that propagate immediately without retrying.
        sleep:  Awaitable delay function, injectable for tests.
    """

    def __init__(
        self,
        giveup: tuple[type[BaseException], ...] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._giveup = giveup
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        label: str = "operation",
    ) -> T:
        """Attempt *operation* up to ``1 + policy.max_retries`` times.

        The last failure is re-raised unchanged once retries are exhausted.
        """
        delays = backoff_delays(policy)
        attempts = len(delays) + 1

        for attempt in range(attempts):
            try:
                return await operation()
            except self._giveup:
                raise
            except Exception as exc:
                if attempt == attempts - 1:
                    raise
                delay = delays[attempt]
                logger.warning(
                    "%s failed for %s (attempt %d/%d), retrying in %.1fs",
                    type(exc).__name__,
                    label,
                    attempt + 1,
                    attempts,
                    delay,
                )
                await self._sleep(delay)

        raise AssertionError("unreachable")
