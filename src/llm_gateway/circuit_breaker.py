"""Circuit breaker for provider adapters.

The router keeps one breaker per adapter when breakers are enabled. An
open breaker makes the router skip that adapter until the recovery
timeout has passed.

State Machine:
    CLOSED -> (failures >= failure_threshold) -> OPEN
    OPEN -> (timeout expires) -> HALF_OPEN
    HALF_OPEN -> (successes >= success_threshold) -> CLOSED
    HALF_OPEN -> (failure) -> OPEN
"""

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import GatewayError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests allowed
    OPEN = "open"  # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open"  # Probing recovery


class CircuitBreaker:
    """Circuit breaker guarding a single provider.

    Example:
        cb = CircuitBreaker(failure_threshold=5, timeout_seconds=60, provider="openai")

        async def call():
            return await adapter.chat(messages)

        result = await cb.execute(call)
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        success_threshold: int = 3,
        timeout_seconds: float = 60.0,
        provider: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening the circuit.
            success_threshold: Successes in HALF_OPEN needed to close it again.
            timeout_seconds: Time to wait before OPEN moves to HALF_OPEN.
            provider: Name of the provider this breaker guards.
            clock: Time source, injectable for tests.
        """
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout_seconds = timeout_seconds
        self.provider = provider
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._last_state_change: float = clock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state != self._state:
            logger.info(
                f"Circuit for provider '{self.provider}' {self._state.value} -> {new_state.value}"
            )
        self._state = new_state
        self._last_state_change = self._clock()

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0

    def record_failure(self) -> None:
        """Record a failure and potentially trip the circuit."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.CLOSED:
            if self._failure_count >= self.failure_threshold:
                self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.HALF_OPEN:
            # Any failure in HALF_OPEN reopens the circuit
            self._transition_to(CircuitState.OPEN)

    def record_success(self) -> None:
        """Record a success and potentially close the circuit."""
        if self._state == CircuitState.CLOSED:
            self._failure_count = 0
        elif self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._transition_to(CircuitState.CLOSED)

    def allow_request(self) -> bool:
        """Return True if a request may go through.

        An OPEN circuit whose timeout has elapsed moves to HALF_OPEN here.
        """
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            if self._last_failure_time is not None:
                elapsed = self._clock() - self._last_failure_time
                if elapsed >= self.timeout_seconds:
                    self._transition_to(CircuitState.HALF_OPEN)
                    return True
            return False
        return True

    def reset(self) -> None:
        """Force the circuit back to CLOSED."""
        self._last_failure_time = None
        self._transition_to(CircuitState.CLOSED)

    def force_open(self) -> None:
        """Open the circuit immediately, e.g. during a known outage."""
        self._last_failure_time = self._clock()
        self._transition_to(CircuitState.OPEN)

    def get_stats(self) -> Dict[str, Any]:
        """Return current circuit breaker statistics."""
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure_time": self._last_failure_time,
            "last_state_change": self._last_state_change,
            "provider": self.provider,
        }

    async def execute(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` under circuit breaker protection.

        Only failover-eligible gateway errors count as failures; caller
        mistakes such as INVALID_REQUEST leave the circuit untouched.

        Raises:
            GatewayError: CIRCUIT_OPEN if the circuit blocks the request,
                otherwise whatever ``fn`` raised.
        """
        if not self.allow_request():
            raise GatewayError.circuit_open(self.provider)

        try:
            result = await fn()
        except GatewayError as e:
            if e.failover_eligible:
                self.record_failure()
            raise
        self.record_success()
        return result
