"""
Circuit breaker for outbound calls.

Used in front of the log webhook: after ``failure_threshold`` consecutive
failures the breaker opens and calls fail fast for ``recovery_timeout``
seconds. The first call after that is a single trial call; concurrent calls keep
failing fast until it settles.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenException(Exception):
    """Raised instead of calling through an open breaker."""


class CircuitBreaker:
    """Consecutive-failure circuit breaker for async callables."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 name: str = "default",
                 clock: Callable[[], float] = time.monotonic,
                 on_state_change: Optional[Callable[[str, CircuitBreakerState], None]] = None):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` unless the breaker is open."""
        trial = self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        self._on_success()
        return result

    def _admit(self) -> bool:
        """Return True when this call is the half-open trial call."""
        if self._state == CircuitBreakerState.OPEN:
            if self._clock() - self._opened_at < self.recovery_timeout:
                raise CircuitBreakerOpenException(f"Circuit breaker '{self.name}' is open")
            self._transition(CircuitBreakerState.HALF_OPEN)

        if self._state == CircuitBreakerState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitBreakerOpenException(f"Circuit breaker '{self.name}' is testing recovery")
            self._trial_in_flight = True
            return True
        return False

    def _on_success(self) -> None:
        self._consecutive_failures = 0
        if self._state != CircuitBreakerState.CLOSED:
            self._transition(CircuitBreakerState.CLOSED)

    def _on_failure(self) -> None:
        self._consecutive_failures += 1
        if (self._state == CircuitBreakerState.HALF_OPEN
                or self._consecutive_failures >= self.failure_threshold):
            self._opened_at = self._clock()
            if self._state != CircuitBreakerState.OPEN:
                self._transition(CircuitBreakerState.OPEN)

    def _transition(self, state: CircuitBreakerState) -> None:
        previous, self._state = self._state, state
        log = self.logger.warning if state == CircuitBreakerState.OPEN else self.logger.info
        log(
            "Circuit breaker state changed",
            previous=previous.value,
            state=state.value,
            consecutive_failures=self._consecutive_failures,
        )
        if self._on_state_change is not None:
            self._on_state_change(self.name, state)

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }

    def is_open(self) -> bool:
        return self._state == CircuitBreakerState.OPEN
