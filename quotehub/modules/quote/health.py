"""Per-provider circuit breaker and health score."""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable

from quotehub.modules.quote.errors import ProviderCircuitOpen


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fails a provider fast after repeated invocation failures.

    ``failure_threshold`` consecutive failures open the circuit. Once
    ``recovery_seconds`` have passed it goes half-open and admits a single
    trial invocation: success closes it, failure opens it again. Only
    network invocations pass through the breaker; mock quotes never do.
    """

    def __init__(
        self,
        provider_id: str,
        failure_threshold: int = 5,
        recovery_seconds: float = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0 or recovery_seconds <= 0:
            raise ValueError("failure_threshold and recovery_seconds must be positive")
        self.provider_id = provider_id
        self.failure_threshold = int(failure_threshold)
        self.recovery_seconds = float(recovery_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._open_until = 0.0
        self._trial_in_flight = False

    def _advance(self, now: float) -> None:
        if self._state is CircuitState.OPEN and now >= self._open_until:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._advance(self._clock())
            return self._state

    def reconfigure(self, failure_threshold: int, recovery_seconds: float) -> None:
        if failure_threshold <= 0 or recovery_seconds <= 0:
            raise ValueError("failure_threshold and recovery_seconds must be positive")
        with self._lock:
            self.failure_threshold = int(failure_threshold)
            self.recovery_seconds = float(recovery_seconds)

    def allow(self) -> None:
        """Admit one invocation or raise ProviderCircuitOpen."""
        with self._lock:
            now = self._clock()
            self._advance(now)
            if self._state is CircuitState.CLOSED:
                return
            if self._state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return
            retry_after = max(0.0, self._open_until - now)
        raise ProviderCircuitOpen(
            self.provider_id,
            f"Circuit for {self.provider_id} is open",
            {"retry_after_seconds": round(retry_after, 3)},
        )

    def record_success(self) -> None:
        with self._lock:
            self._successes += 1
            self._failures = 0
            self._trial_in_flight = False
            self._state = CircuitState.CLOSED
            self._open_until = 0.0

    def record_failure(self) -> bool:
        """Count a failed invocation; returns True when this opened the circuit."""
        with self._lock:
            now = self._clock()
            self._failures += 1
            reopen = self._state is CircuitState.HALF_OPEN
            self._trial_in_flight = False
            if reopen or (self._state is CircuitState.CLOSED and self._failures >= self.failure_threshold):
                self._state = CircuitState.OPEN
                self._open_until = now + self.recovery_seconds
                return True
            return False

    def release(self) -> None:
        """Give back an admitted invocation that ended without a verdict."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._open_until = 0.0
            self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._advance(now)
            return {
                "provider_id": self.provider_id,
                "state": self._state.value,
                "consecutive_failures": self._failures,
                "successes": self._successes,
                "failure_threshold": self.failure_threshold,
                "retry_after_seconds": round(max(0.0, self._open_until - now), 3)
                if self._state is CircuitState.OPEN
                else 0.0,
            }


def health_score(success_rate: float, response_time_ms: float, ok: bool) -> int:
    """0-100 score: 70 points for success rate, 30 for a fast answer.

    A failed check earns no speed points.
    """
    score = success_rate * 70
    if ok:
        score += max(0.0, 100 - response_time_ms / 100) * 0.3
    return int(round(score))
