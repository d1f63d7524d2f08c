"""Circuit breaker guarding the feed and Discord clients.

CLOSED    calls pass through; consecutive failures are counted.
OPEN      calls are rejected with ``CircuitBreakerOpenError`` until
          ``recovery_timeout`` seconds have passed since the last failure.
HALF_OPEN up to ``half_open_max_calls`` probe calls are let through; a
          success closes the circuit, a failure opens it again.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from relay.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpenError(Exception):
    """A call was rejected because the circuit is open."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker '{name}' is OPEN, call rejected")
        self.name = name


class CircuitBreaker:
    """Counts consecutive failures of an external dependency.

    Args:
        name: Identifier used in log events and errors.
        failure_threshold: Consecutive failures that open the circuit.
        recovery_timeout: Seconds the circuit stays open before probing.
        half_open_max_calls: Probe calls allowed while half-open.
        clock: Monotonic time source, replaceable in tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probes = 0
        self._opened_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run *func* if the circuit allows it and record the outcome.

        Raises:
            CircuitBreakerOpenError: The circuit is open or out of probes.
            Exception: Whatever *func* raises.
        """
        async with self._lock:
            self._admit()

        try:
            result = await func(*args, **kwargs)
        except Exception:
            async with self._lock:
                self._record_failure()
            raise

        async with self._lock:
            self._record_success()
        return result

    # Must hold _lock for the helpers below

    def _admit(self) -> None:
        if self._state is CircuitState.OPEN:
            elapsed = self._clock() - self._opened_at
            if elapsed < self.recovery_timeout:
                logger.warning("circuit_breaker_rejected", name=self.name)
                raise CircuitBreakerOpenError(self.name)
            self._state = CircuitState.HALF_OPEN
            self._probes = 0
            logger.info("circuit_breaker_half_open", name=self.name, elapsed_seconds=round(elapsed, 1))

        if self._state is CircuitState.HALF_OPEN:
            if self._probes >= self.half_open_max_calls:
                raise CircuitBreakerOpenError(self.name)
            self._probes += 1

    def _record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            logger.info("circuit_breaker_closed", name=self.name)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probes = 0

    def _record_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state is not CircuitState.OPEN:
                logger.warning(
                    "circuit_breaker_opened",
                    name=self.name,
                    failure_count=self._failures,
                    threshold=self.failure_threshold,
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._probes = 0
