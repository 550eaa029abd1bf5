"""Circuit breaker guarding calls to an unreliable dependency."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TypeVar

from ragforge.errors import circuit_open_error
from ragforge.metrics.observability import PipelineMetrics, get_logger

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of a breaker's counters."""

    state: CircuitState
    failures: int
    last_failure_at: float | None
    failure_threshold: int
    timeout: float


class CircuitBreaker:
    """Fail fast after repeated failures, then probe with a single trial call.

    ``closed`` passes calls through and counts consecutive failures. Reaching
    ``failure_threshold`` opens the circuit: calls are rejected with a
    ``circuit_open`` :class:`~ragforge.errors.PipelineError` until
    ``timeout`` seconds have passed since the last failure. The next caller
    then becomes the ``half_open`` trial; its success closes the circuit and
    its failure reopens it with a fresh timeout. One breaker may be shared by
    any number of threads.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        *,
        name: str = "embedding",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = max(failure_threshold, 1)
        self._timeout = timeout
        self._name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False
        self._logger = get_logger("resilience.circuit")
        PipelineMetrics.set_circuit_state(self._name, self._state.value)

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return CircuitSnapshot(
                state=self._state,
                failures=self._failures,
                last_failure_at=self._last_failure_at,
                failure_threshold=self._threshold,
                timeout=self._timeout,
            )

    def call(self, operation: Callable[..., T], *args, **kwargs) -> T:
        self._acquire()
        try:
            result = operation(*args, **kwargs)
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._last_failure_at = None
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)

    def _acquire(self) -> None:
        with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_at or 0.0)
                if elapsed < self._timeout:
                    raise circuit_open_error(self._name)
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise circuit_open_error(self._name)
                self._trial_in_flight = True

    def _record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._trial_in_flight = False
            if self._state is not CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def _record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_at = self._clock()
            was_trial = self._state is CircuitState.HALF_OPEN
            self._trial_in_flight = False
            if was_trial or self._failures >= self._threshold:
                self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState) -> None:
        # Caller holds the lock.
        if state is self._state:
            return
        previous = self._state
        self._state = state
        PipelineMetrics.set_circuit_state(self._name, state.value)
        self._logger.warning(
            "circuit.transition",
            breaker=self._name,
            previous=previous.value,
            state=state.value,
            failures=self._failures,
        )


__all__ = ["CircuitBreaker", "CircuitSnapshot", "CircuitState"]
