"""
Circuit breaker around fallible async operations.

closed -> open after `max_failures` consecutive failures.
open -> half_open once `reset_timeout` seconds have passed since the last
failure; exactly one trial call runs in half_open.
half_open -> closed on trial success, back to open on trial failure.
"""

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from tessera_analytics.core.errors import CircuitOpenError
from tessera_analytics.core.metrics import circuit_transitions_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        max_failures: int = 5,
        reset_timeout: float = 60.0,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.max_failures = max(1, max_failures)
        self.reset_timeout = reset_timeout
        self.time_fn = time_fn
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        circuit_transitions_total.inc(labels={"breaker": self.name, "state": new_state.value})
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "circuit.transition",
            extra={"operation": self.name, "status": f"{old_state.value}->{new_state.value}"},
        )

    def _reject(self) -> None:
        raise CircuitOpenError(
            f"Circuit {self.name} is {self._state.value}",
            metadata={"breaker": self.name, "failures": self._failures},
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self._state == CircuitState.OPEN:
            elapsed = self.time_fn() - (self._last_failure_at or 0.0)
            if elapsed < self.reset_timeout:
                self._reject()
            self._transition(CircuitState.HALF_OPEN)
        elif self._state == CircuitState.HALF_OPEN and self._trial_in_flight:
            self._reject()

        is_trial = self._state == CircuitState.HALF_OPEN
        if is_trial:
            self._trial_in_flight = True
        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        finally:
            if is_trial:
                self._trial_in_flight = False
        self._on_success()
        return result

    def _on_success(self) -> None:
        self._failures = 0
        self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._failures += 1
        self._last_failure_at = self.time_fn()
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.max_failures:
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self._failures = 0
        self._last_failure_at = None
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failures": self._failures,
            "max_failures": self.max_failures,
            "reset_timeout_seconds": self.reset_timeout,
            "last_failure_at": self._last_failure_at,
        }
