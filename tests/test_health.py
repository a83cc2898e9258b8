"""Circuit breaker and health score tests."""

import pytest

from quotehub.modules.quote.errors import ProviderCircuitOpen
from quotehub.modules.quote.health import CircuitBreaker, CircuitState, health_score


class FakeClock:
    def __init__(self, now: float = 500.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _tripped(clock: FakeClock, threshold: int = 3, recovery: float = 10.0) -> CircuitBreaker:
    breaker = CircuitBreaker("acme", threshold, recovery, clock=clock)
    for _ in range(threshold):
        breaker.allow()
        breaker.record_failure()
    return breaker


def test_opens_after_consecutive_failures() -> None:
    breaker = CircuitBreaker("acme", failure_threshold=3, recovery_seconds=10, clock=FakeClock())

    assert breaker.record_failure() is False
    assert breaker.record_failure() is False
    assert breaker.state is CircuitState.CLOSED
    assert breaker.record_failure() is True
    assert breaker.state is CircuitState.OPEN


def test_success_resets_the_failure_streak() -> None:
    breaker = CircuitBreaker("acme", failure_threshold=2, recovery_seconds=10, clock=FakeClock())

    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot()["consecutive_failures"] == 1


def test_open_circuit_fails_fast_with_retry_after() -> None:
    clock = FakeClock()
    breaker = _tripped(clock)
    clock.advance(4)

    with pytest.raises(ProviderCircuitOpen) as exc_info:
        breaker.allow()

    assert exc_info.value.kind == "circuit_open"
    assert exc_info.value.retryable is False
    assert exc_info.value.details["retry_after_seconds"] == pytest.approx(6.0)


def test_half_open_admits_a_single_trial() -> None:
    clock = FakeClock()
    breaker = _tripped(clock)
    clock.advance(10)

    assert breaker.state is CircuitState.HALF_OPEN
    breaker.allow()
    with pytest.raises(ProviderCircuitOpen):
        breaker.allow()


def test_successful_trial_closes_the_circuit() -> None:
    clock = FakeClock()
    breaker = _tripped(clock)
    clock.advance(10)

    breaker.allow()
    breaker.record_success()

    assert breaker.state is CircuitState.CLOSED
    breaker.allow()
    breaker.allow()


def test_failed_trial_reopens_for_a_full_recovery_window() -> None:
    clock = FakeClock()
    breaker = _tripped(clock)
    clock.advance(12)

    breaker.allow()
    assert breaker.record_failure() is True

    snapshot = breaker.snapshot()
    assert snapshot["state"] == "open"
    assert snapshot["retry_after_seconds"] == pytest.approx(10.0)


def test_release_frees_the_trial_without_a_verdict() -> None:
    clock = FakeClock()
    breaker = _tripped(clock)
    clock.advance(10)

    breaker.allow()
    breaker.release()

    assert breaker.state is CircuitState.HALF_OPEN
    breaker.allow()


def test_reconfigure_applies_to_the_next_streak() -> None:
    breaker = CircuitBreaker("acme", failure_threshold=5, recovery_seconds=10, clock=FakeClock())
    breaker.record_failure()

    breaker.reconfigure(2, 5)

    assert breaker.record_failure() is True
    assert breaker.snapshot()["failure_threshold"] == 2


def test_reset_closes_the_circuit() -> None:
    breaker = _tripped(FakeClock())

    breaker.reset()

    assert breaker.state is CircuitState.CLOSED
    breaker.allow()


@pytest.mark.parametrize("threshold, recovery", [(0, 10), (3, 0), (-1, 5)])
def test_rejects_non_positive_settings(threshold, recovery) -> None:
    with pytest.raises(ValueError):
        CircuitBreaker("acme", threshold, recovery)


@pytest.mark.parametrize(
    "success_rate, response_time_ms, ok, expected",
    [
        (1.0, 0, True, 100),
        (1.0, 2000, True, 94),
        (0.5, 1000, True, 62),
        (1.0, 20000, True, 70),
        (0.8, 100, False, 56),
        (0.0, 0, False, 0),
    ],
)
def test_health_score(success_rate, response_time_ms, ok, expected) -> None:
    assert health_score(success_rate, response_time_ms, ok) == expected
