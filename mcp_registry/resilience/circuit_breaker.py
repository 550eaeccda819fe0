"""Per-connection circuit breaker.

Three-state breaker guarding one capability-server connection:

    CLOSED    →  (failure_threshold reached)          →  OPEN
    OPEN      →  (reset_timeout elapsed, probe allowed) →  HALF_OPEN
    HALF_OPEN →  (success recorded)                   →  CLOSED
    HALF_OPEN →  (failure recorded)                   →  OPEN

Each client owns exactly one ``CircuitBreaker``; breakers are never shared
across servers.  The OPEN → HALF_OPEN transition happens as a side effect of
``can_execute()`` admitting the probe, not on a timer.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure-counting breaker for a single connection.

    Args:
        name:               Server name (for logging/errors).
        failure_threshold:  Failures before opening the circuit.
        reset_timeout:      Seconds the circuit stays OPEN before a probe is allowed.
        clock:              Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None

        # Metrics
        self.total_failures = 0
        self.total_rejections = 0
        self.total_successes = 0

    # ── Public properties ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure_time

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit admits a probe (0 when not OPEN)."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self._last_failure_time))

    # ── State machine ────────────────────────────────────────────────

    def can_execute(self) -> bool:
        """Return whether a call may proceed.

        An OPEN circuit admits a call only once ``reset_timeout`` has elapsed
        since the last failure, flipping to HALF_OPEN as it does so.
        """
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if (
                self._last_failure_time is not None
                and self._clock() - self._last_failure_time > self.reset_timeout
            ):
                self._state = CircuitState.HALF_OPEN
                return True
            self.total_rejections += 1
            return False

        return True

    def record_success(self) -> None:
        """Close the circuit after a successful probe; otherwise a no-op."""
        self.total_successes += 1
        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        """Count a failure and open the circuit once the threshold is reached."""
        self._failure_count += 1
        self.total_failures += 1
        self._last_failure_time = self._clock()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for health views."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "total_successes": self.total_successes,
        }
