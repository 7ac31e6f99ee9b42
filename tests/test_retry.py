from __future__ import annotations

import random
from dataclasses import replace

import allure
import pytest

from porter_bridges.resilience.backoff import BackoffConfig, calculate_backoff_delay
from porter_bridges.resilience.errors import EnhancedError, ErrorCategory, HttpCallError
from porter_bridges.resilience.retry import RetryManager

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Backoff & Retry"),
]

NO_JITTER = BackoffConfig(initial_delay_seconds=1.0, max_delay_seconds=5.0, jitter=False)


def _flaky(failures: int, error: Exception):
    calls = {"count": 0}

    def operation() -> str:
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error
        return "ok"

    return operation, calls


def test_backoff_grows_exponentially_and_caps() -> None:
    delays = [calculate_backoff_delay(attempt, NO_JITTER) for attempt in range(1, 6)]

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_jitter_stays_within_ten_percent() -> None:
    config = BackoffConfig(initial_delay_seconds=2.0, max_delay_seconds=100.0)
    rng = random.Random(7)

    for _ in range(50):
        delay = calculate_backoff_delay(3, config, rng)
        assert 7.2 <= delay <= 8.8


def test_backoff_jitter_never_exceeds_max_delay() -> None:
    config = BackoffConfig(initial_delay_seconds=10.0, max_delay_seconds=10.0)
    rng = random.Random(1)

    assert all(calculate_backoff_delay(4, config, rng) <= 10.0 for _ in range(50))


def test_retry_succeeds_after_transient_failures() -> None:
    sleeps: list[float] = []
    operation, calls = _flaky(2, ConnectionResetError("connection reset"))
    manager = RetryManager(replace(NO_JITTER, max_retries=3), sleep=sleeps.append)

    assert manager.execute_with_retry(operation, "fetch") == "ok"
    assert calls["count"] == 3
    assert sleeps == [1.0, 2.0]


def test_retry_raises_last_error_with_attempts_when_exhausted() -> None:
    operation, calls = _flaky(10, HttpCallError("HTTP 503", url="https://a.test", status_code=503))
    manager = RetryManager(
        replace(NO_JITTER, max_retries=3),
        source="collection",
        sleep=lambda _: None,
    )

    with pytest.raises(EnhancedError) as caught:
        manager.execute_with_retry(operation, "fetch")

    assert calls["count"] == 3
    assert caught.value.code == "HTTP_503"
    assert caught.value.source == "collection"
    assert caught.value.context["attempts"] == 3


def test_retry_stops_immediately_on_non_retryable_error() -> None:
    operation, calls = _flaky(10, HttpCallError("HTTP 401", url="https://a.test", status_code=401))
    sleeps: list[float] = []
    manager = RetryManager(replace(NO_JITTER, max_retries=5), sleep=sleeps.append)

    with pytest.raises(EnhancedError) as caught:
        manager.execute_with_retry(operation)

    assert calls["count"] == 1
    assert sleeps == []
    assert caught.value.category is ErrorCategory.AUTHENTICATION
    assert caught.value.context["attempts"] == 1


def test_retry_delays_never_decrease_with_jitter() -> None:
    sleeps: list[float] = []
    operation, _ = _flaky(10, TimeoutError("timed out"))
    config = BackoffConfig(initial_delay_seconds=1.0, max_delay_seconds=1.0, max_retries=6)
    manager = RetryManager(config, sleep=sleeps.append, rng=random.Random(3))

    with pytest.raises(EnhancedError):
        manager.execute_with_retry(operation)

    assert len(sleeps) == 5
    assert sleeps == sorted(sleeps)
    assert all(delay <= 1.0 for delay in sleeps)


def test_per_call_config_overrides_manager_config() -> None:
    operation, calls = _flaky(10, TimeoutError("timed out"))
    manager = RetryManager(replace(NO_JITTER, max_retries=5), sleep=lambda _: None)

    with pytest.raises(EnhancedError):
        manager.execute_with_retry(operation, "op", replace(NO_JITTER, max_retries=2))

    assert calls["count"] == 2


def test_zero_max_retries_still_runs_once() -> None:
    operation, calls = _flaky(0, TimeoutError("unused"))
    manager = RetryManager(replace(NO_JITTER, max_retries=0), sleep=lambda _: None)

    assert manager.execute_with_retry(operation) == "ok"
    assert calls["count"] == 1

