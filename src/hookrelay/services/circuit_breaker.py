"""Circuit breaker for isolating failing dependencies.

A breaker wraps any awaitable operation and moves through three states:

- closed: calls pass through; consecutive failures are counted
- open: calls fail immediately with CircuitOpenError, the operation is not
  invoked; entered after failure_threshold consecutive failures
- half_open: entered once half_open_after seconds have elapsed since the
  circuit opened; exactly one trial call is let through. Success closes the
  circuit, failure re-opens it.

State checks and transitions never span an await, so on a single event
loop each call observes and mutates the state atomically. The half-open
trial is guarded by a flag so concurrent callers cannot both win it.

Usage:
    registry = CircuitBreakerRegistry(metrics)
    breaker = registry.get("webhook_delivery", failure_threshold=8, half_open_after=60)
    response = await breaker.call(lambda: client.post(url, content=body))
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, NoReturn, TypeVar

from hookrelay.services.metrics import CIRCUIT_STATE_CODES

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from hookrelay.services.metrics import Metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_HALF_OPEN_AFTER = 30.0


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Base exception for circuit breaker operations."""

    pass


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is short-circuited without invoking the operation."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Circuit open: {name}")


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of a circuit for diagnostics."""

    name: str
    state: CircuitState
    failures: int
    opened_at: float | None
    failure_threshold: int
    half_open_after: float


class CircuitBreaker:
    """Failure-isolation state machine around a fallible async operation.

    Attributes:
        name: Identifier used in logs and metric labels.
        failure_threshold: Consecutive failures that open the circuit.
        half_open_after: Seconds an open circuit waits before a trial call.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        half_open_after: float = DEFAULT_HALF_OPEN_AFTER,
        metrics: Metrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the breaker in the closed state.

        Args:
            name: Identifier used in logs and metric labels.
            failure_threshold: Consecutive failures that open the circuit.
            half_open_after: Seconds before an open circuit allows a trial.
            metrics: Optional metrics sink for gauges and transition counters.
            clock: Monotonic time source, injectable for tests.
        """
        if failure_threshold < 1:
            msg = "failure_threshold must be at least 1"
            raise ValueError(msg)

        self.name = name
        self.failure_threshold = failure_threshold
        self.half_open_after = half_open_after
        self._metrics = metrics
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        # Token of the half-open trial currently running, if any
        self._trial: object | None = None

        if metrics is not None:
            metrics.circuit_state.labels(circuit=name).set_function(
                lambda: CIRCUIT_STATE_CODES[self._state.value]
            )
            metrics.circuit_consecutive_failures.labels(circuit=name).set_function(
                lambda: self._failures
            )

    @property
    def state(self) -> CircuitState:
        """Current state, without applying the half-open cooldown."""
        return self._state

    @property
    def failures(self) -> int:
        """Consecutive failures recorded since the last success."""
        return self._failures

    @property
    def opened_at(self) -> float | None:
        """Clock reading when the circuit last opened."""
        return self._opened_at

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation through the breaker.

        Args:
            operation: Zero-argument callable returning an awaitable.

        Returns:
            Whatever the operation returns.

        Raises:
            CircuitOpenError: If the call was short-circuited.
            Exception: The operation's own error, after it is recorded.
        """
        trial = self._admit()

        try:
            result = await operation()
        except Exception:
            self._record_failure()
            raise
        finally:
            if trial is not None and self._trial is trial:
                self._trial = None

        self._record_success()
        return result

    def snapshot(self) -> CircuitSnapshot:
        """Return a diagnostic view of the breaker."""
        return CircuitSnapshot(
            name=self.name,
            state=self._state,
            failures=self._failures,
            opened_at=self._opened_at,
            failure_threshold=self.failure_threshold,
            half_open_after=self.half_open_after,
        )

    def reset(self) -> None:
        """Force the circuit closed (operator action)."""
        self._transition(CircuitState.CLOSED)
        self._failures = 0
        self._trial = None

    def _admit(self) -> object | None:
        """Decide whether a call may proceed.

        Returns:
            A token identifying the half-open trial, or None for a
            normal closed-state call.

        Raises:
            CircuitOpenError: If the call must be short-circuited.
        """
        if self._state is CircuitState.OPEN:
            elapsed = self._clock() - (self._opened_at or 0.0)
            if elapsed < self.half_open_after:
                self._short_circuit()
            self._transition(CircuitState.HALF_OPEN)

        if self._state is CircuitState.HALF_OPEN:
            if self._trial is not None:
                self._short_circuit()
            self._trial = object()
            return self._trial

        return None

    def _short_circuit(self) -> NoReturn:
        if self._metrics is not None:
            self._metrics.circuit_calls.labels(circuit=self.name, outcome="short_circuited").inc()
        raise CircuitOpenError(self.name)

    def _record_success(self) -> None:
        if self._metrics is not None:
            self._metrics.circuit_calls.labels(circuit=self.name, outcome="success").inc()

        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)
        self._failures = 0

    def _record_failure(self) -> None:
        if self._metrics is not None:
            self._metrics.circuit_calls.labels(circuit=self.name, outcome="failure").inc()

        self._failures += 1
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        if previous is new_state:
            return

        self._state = new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state is CircuitState.CLOSED:
            self._failures = 0
            self._opened_at = None

        logger.warning(
            "Circuit transition: circuit=%s, from=%s, to=%s, failures=%d",
            self.name,
            previous.value,
            new_state.value,
            self._failures,
        )
        if self._metrics is not None:
            self._metrics.circuit_transitions.labels(circuit=self.name, state=new_state.value).inc()


class CircuitBreakerRegistry:
    """Creates and tracks named circuit breakers.

    One registry is built per process and handed to the components that need
    breakers, so every breaker shares the same metrics sink and clock.
    """

    def __init__(
        self,
        metrics: Metrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._metrics = metrics
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        half_open_after: float = DEFAULT_HALF_OPEN_AFTER,
    ) -> CircuitBreaker:
        """Return the breaker called name, creating it on first use.

        Thresholds only apply when the breaker is created.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=failure_threshold,
                half_open_after=half_open_after,
                metrics=self._metrics,
                clock=self._clock,
            )
            self._breakers[name] = breaker
            logger.debug(
                "Circuit created: circuit=%s, failure_threshold=%d, half_open_after=%ss",
                name,
                failure_threshold,
                half_open_after,
            )
        return breaker

    def breakers(self) -> list[CircuitBreaker]:
        """All breakers in creation order."""
        return list(self._breakers.values())

    def snapshot(self) -> list[CircuitSnapshot]:
        """Diagnostic views of all breakers."""
        return [breaker.snapshot() for breaker in self._breakers.values()]
