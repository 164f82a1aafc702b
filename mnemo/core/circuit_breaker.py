"""
Circuit breaker for the secondary stores.

Pinecone and Neo4j calls run inside ``guard()``. After ``failure_threshold``
consecutive failures the breaker opens and calls fail fast with
CircuitBreakerOpenError. Once ``recovery_timeout`` has passed it lets trial
calls through (half-open); ``success_threshold`` successes close it again,
a single failure reopens it.

The relational system of record is never guarded: its failures go straight
to the caller.

Usage:
    breaker = get_circuit_breaker("neo4j")

    async with breaker.guard():
        await session.run(query)
"""

import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Optional

import structlog

from mnemo.core.exceptions import CircuitBreakerOpenError
from mnemo.monitoring.metrics import (
    record_circuit_breaker_failure,
    update_circuit_breaker_state,
)

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure breaker for one backend.

    State changes happen synchronously between awaits, so no lock is needed
    on a single event loop.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self.time_until_recovery() == 0.0:
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def time_until_recovery(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self._opened_at))

    def ensure_can_execute(self) -> None:
        """Raise CircuitBreakerOpenError while the breaker is open."""
        if self.state == CircuitState.OPEN:
            raise CircuitBreakerOpenError(self.name, self.time_until_recovery())

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self._failures = 0

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        record_circuit_breaker_failure(self.name)
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._transition(CircuitState.OPEN, error)

    @asynccontextmanager
    async def guard(self) -> AsyncIterator[None]:
        """Fail fast while open, otherwise count the outcome of the wrapped block."""
        self.ensure_can_execute()
        try:
            yield
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)

    def _transition(self, state: CircuitState, error: Optional[BaseException] = None) -> None:
        previous = self._state
        self._state = state
        self._successes = 0
        if state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif state == CircuitState.CLOSED:
            self._failures = 0
            self._opened_at = None
        update_circuit_breaker_state(self.name, state.value)

        if previous == state:
            return
        if state == CircuitState.OPEN:
            logger.warning(
                "circuit_breaker_opened",
                name=self.name,
                failures=self._failures,
                recovery_timeout=self.recovery_timeout,
                error=str(error) if error else None,
            )
        else:
            logger.info("circuit_breaker_state_changed", name=self.name, previous=previous.value, state=state.value)


# =============================================================================
# Registry
# =============================================================================


_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 60.0,
) -> CircuitBreaker:
    """Get or create the process-wide breaker for ``name``."""
    if name not in _breakers:
        _breakers[name] = CircuitBreaker(
            name,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        )
    return _breakers[name]


def reset_all_circuit_breakers() -> None:
    for breaker in _breakers.values():
        breaker.reset()
