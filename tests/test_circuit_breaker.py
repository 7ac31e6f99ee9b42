from __future__ import annotations

import time

import allure
import pytest

from porter_bridges.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from porter_bridges.resilience.errors import EnhancedError, ErrorCategory, RecoveryStrategy

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Circuit Breaker"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _fail() -> None:
    raise ConnectionResetError("connection reset")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def breaker(clock: FakeClock):
    config = CircuitBreakerConfig(
        failure_threshold=3,
        reset_timeout_seconds=30.0,
        monitoring_period_seconds=100.0,
        minimum_number_of_calls=3,
    )
    instance = CircuitBreaker("api", config, clock=clock)
    yield instance
    instance.close()


def test_consecutive_failures_open_the_circuit(breaker: CircuitBreaker) -> None:
    for _ in range(2):
        assert breaker.execute(_fail).state is CircuitState.CLOSED

    result = breaker.execute(_fail)

    assert not result.success
    assert result.state is CircuitState.OPEN
    assert result.error is not None
    assert result.error.category is ErrorCategory.NETWORK
    assert breaker.get_metrics().consecutive_failures == 3


def test_open_circuit_rejects_without_invoking(breaker: CircuitBreaker) -> None:
    breaker.force_open()
    calls: list[int] = []

    result = breaker.execute(lambda: calls.append(1))

    assert calls == []
    assert not result.success
    assert result.error is not None
    assert result.error.code == "CIRCUIT_OPEN"
    assert result.error.recovery_strategy is RecoveryStrategy.CIRCUIT_BREAKER
    assert not result.error.retryable
    assert result.error.context["circuit_name"] == "api"


def test_call_raises_classified_error(breaker: CircuitBreaker) -> None:
    with pytest.raises(EnhancedError) as caught:
        breaker.call(_fail, "fetch")

    assert caught.value.source == "circuit_breaker_api"
    assert breaker.call(lambda: 42) == 42


def test_half_open_success_closes_and_clears_metrics(
    breaker: CircuitBreaker,
    clock: FakeClock,
) -> None:
    for _ in range(3):
        breaker.execute(_fail)
    assert breaker.get_state() is CircuitState.OPEN

    clock.advance(31)
    result = breaker.execute(lambda: "ok")

    assert result.success
    assert result.data == "ok"
    assert breaker.get_state() is CircuitState.CLOSED
    assert breaker.get_metrics().total_calls == 0


def test_half_open_failure_reopens(breaker: CircuitBreaker, clock: FakeClock) -> None:
    breaker.force_open()
    clock.advance(31)

    result = breaker.execute(_fail)

    assert result.state is CircuitState.OPEN
    assert breaker.execute(lambda: "ok").error.code == "CIRCUIT_OPEN"


def test_half_open_admits_a_single_trial(breaker: CircuitBreaker, clock: FakeClock) -> None:
    breaker.force_open()
    clock.advance(31)
    nested: list = []

    def trial() -> str:
        nested.append(breaker.execute(lambda: "second"))
        return "first"

    result = breaker.execute(trial)

    assert result.success
    assert not nested[0].success
    assert nested[0].state is CircuitState.HALF_OPEN
    assert breaker.get_state() is CircuitState.CLOSED


def test_failure_rate_opens_after_minimum_calls(clock: FakeClock) -> None:
    config = CircuitBreakerConfig(failure_threshold=100, minimum_number_of_calls=4)
    breaker = CircuitBreaker("rate", config, clock=clock)

    breaker.execute(lambda: "ok")
    breaker.execute(_fail)
    breaker.execute(lambda: "ok")
    assert breaker.get_state() is CircuitState.CLOSED

    breaker.execute(_fail)

    assert breaker.get_state() is CircuitState.OPEN
    breaker.close()


def test_slow_calls_open_the_circuit(clock: FakeClock) -> None:
    config = CircuitBreakerConfig(
        failure_threshold=100,
        slow_call_threshold=2,
        slow_call_duration_threshold_seconds=1.0,
        minimum_number_of_calls=2,
    )
    breaker = CircuitBreaker("slow", config, clock=clock)

    def slow() -> str:
        clock.advance(2)
        return "ok"

    breaker.execute(slow)
    assert breaker.get_state() is CircuitState.CLOSED
    breaker.execute(slow)

    assert breaker.get_state() is CircuitState.OPEN
    assert breaker.get_metrics().slow_calls == 2
    breaker.close()


def test_metrics_window_rolls_before_recording(breaker: CircuitBreaker, clock: FakeClock) -> None:
    breaker.execute(_fail)
    breaker.execute(_fail)
    clock.advance(101)

    breaker.execute(_fail)

    metrics = breaker.get_metrics()
    assert metrics.total_calls == 1
    assert metrics.consecutive_failures == 1
    assert breaker.get_state() is CircuitState.CLOSED


def test_reset_timer_moves_open_circuit_to_half_open() -> None:
    breaker = CircuitBreaker("timer", CircuitBreakerConfig(reset_timeout_seconds=0.05))
    breaker.force_open()

    deadline = time.monotonic() + 5
    while breaker.get_state() is CircuitState.OPEN and time.monotonic() < deadline:
        time.sleep(0.01)

    assert breaker.get_state() is CircuitState.HALF_OPEN


def test_close_cancels_pending_timer() -> None:
    breaker = CircuitBreaker("cancel", CircuitBreakerConfig(reset_timeout_seconds=0.05))
    breaker.force_open()
    breaker.close()

    time.sleep(0.2)

    assert breaker.get_state() is CircuitState.OPEN


def test_reset_cancels_pending_half_open_timer() -> None:
    breaker = CircuitBreaker("reset", CircuitBreakerConfig(reset_timeout_seconds=0.05))
    breaker.force_open()
    breaker.reset()

    time.sleep(0.2)

    assert breaker.get_state() is CircuitState.CLOSED
    breaker.close()


def test_status_reports_health(breaker: CircuitBreaker) -> None:
    assert breaker.get_status().healthy

    breaker.force_open()
    status = breaker.get_status().to_dict()

    assert status["state"] == "open"
    assert status["healthy"] is False
    assert status["config"]["failure_threshold"] == 3


def test_registry_reuses_breakers_and_reports_overall_health(clock: FakeClock) -> None:
    registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), clock=clock)
    first = registry.get_or_create("a")

    assert registry.get_or_create("a") is first
    assert registry.get("missing") is None

    registry.get_or_create("b").force_open()
    health = registry.get_overall_health()
    assert health["healthy"] is False
    assert health["total_breakers"] == 2
    assert health["unhealthy_breakers"] == 1

    registry.reset_all()
    assert registry.get_overall_health()["healthy"] is True
    assert registry.remove("b") is True
    assert registry.remove("b") is False
    assert set(registry.get_all()) == {"a"}
