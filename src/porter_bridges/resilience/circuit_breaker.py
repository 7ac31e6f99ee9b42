"""Circuit breaker guarding named external resources.

CLOSED passes calls through and records them in a rolling metrics window.
OPEN rejects calls without invoking them until the reset timeout elapses.
HALF_OPEN admits exactly one trial call: success closes the circuit, failure
reopens it and restarts the reset timer.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Generic, TypeVar

from porter_bridges.resilience.classifier import classify_error
from porter_bridges.resilience.errors import (
    CIRCUIT_OPEN_CODE,
    EnhancedError,
    ErrorCategory,
    RecoveryStrategy,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

FAILURE_RATE_THRESHOLD = 0.5


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True, frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    monitoring_period_seconds: float = 10.0
    expected_response_time_seconds: float = 5.0
    slow_call_threshold: int = 3
    slow_call_duration_threshold_seconds: float = 10.0
    minimum_number_of_calls: int = 5


DEFAULT_CIRCUIT_BREAKER_CONFIG = CircuitBreakerConfig()


@dataclass(slots=True)
class CircuitBreakerMetrics:
    """Counters for the current monitoring window."""

    window_start: float
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    slow_calls: int = 0
    average_response_time: float = 0.0
    consecutive_failures: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None


@dataclass(slots=True)
class CircuitBreakerResult(Generic[T]):
    """Outcome of one guarded call."""

    success: bool
    state: CircuitState
    duration_seconds: float
    timestamp: float
    data: T | None = None
    error: EnhancedError | None = None


@dataclass(slots=True)
class CircuitBreakerStatus:
    name: str
    state: CircuitState
    metrics: CircuitBreakerMetrics
    config: CircuitBreakerConfig
    healthy: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "metrics": asdict(self.metrics),
            "config": asdict(self.config),
            "healthy": self.healthy,
        }


class CircuitBreaker:
    """Guards one named resource; thread-safe."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig = DEFAULT_CIRCUIT_BREAKER_CONFIG,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config
        self._clock = clock
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._metrics = CircuitBreakerMetrics(window_start=clock())
        self._opened_at: float | None = None
        self._reset_timer: threading.Timer | None = None
        self._trial_in_flight = False

    def execute(
        self,
        operation: Callable[[], T],
        operation_name: str = "operation",
    ) -> CircuitBreakerResult[T]:
        """Run ``operation`` under protection; failures are returned, not raised."""

        started = self._clock()
        rejection = self._admit(operation_name, started)
        if rejection is not None:
            return rejection

        try:
            data = operation()
        except Exception as error:  # noqa: BLE001
            duration = self._clock() - started
            enhanced = classify_error(error, f"circuit_breaker_{self.name}")
            state = self._on_failure(enhanced, operation_name, duration)
            return CircuitBreakerResult(
                success=False,
                state=state,
                duration_seconds=duration,
                timestamp=started,
                error=enhanced,
            )

        duration = self._clock() - started
        state = self._on_success(duration)
        return CircuitBreakerResult(
            success=True,
            state=state,
            duration_seconds=duration,
            timestamp=started,
            data=data,
        )

    def call(self, operation: Callable[[], T], operation_name: str = "operation") -> T:
        """Run ``operation`` under protection; raise the classified error on failure."""

        result = self.execute(operation, operation_name)
        if result.success:
            return result.data  # type: ignore[return-value]
        assert result.error is not None
        raise result.error

    def get_state(self) -> CircuitState:
        with self._lock:
            return self._state

    def get_metrics(self) -> CircuitBreakerMetrics:
        with self._lock:
            return replace(self._metrics)

    def get_status(self) -> CircuitBreakerStatus:
        with self._lock:
            return CircuitBreakerStatus(
                name=self.name,
                state=self._state,
                metrics=replace(self._metrics),
                config=self.config,
                healthy=self._state is CircuitState.CLOSED,
            )

    def reset(self) -> None:
        """Operator reset: close the circuit and clear metrics."""

        with self._lock:
            self._cancel_reset_timer()
            self._state = CircuitState.CLOSED
            self._metrics = CircuitBreakerMetrics(window_start=self._clock())
            self._opened_at = None
            self._trial_in_flight = False
        logger.info("Circuit breaker %s manually reset", self.name)

    def force_open(self) -> None:
        """Operator intervention: open the circuit now."""

        with self._lock:
            self._transition_to_open()
        logger.warning("Circuit breaker %s forced open", self.name)

    def close(self) -> None:
        """Cancel the pending half-open timer without changing state."""

        with self._lock:
            self._cancel_reset_timer()

    def _admit(self, operation_name: str, now: float) -> CircuitBreakerResult[Any] | None:
        with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed = now - (self._opened_at if self._opened_at is not None else now)
                if elapsed < self.config.reset_timeout_seconds:
                    return self._reject(operation_name, now, elapsed)
                self._transition_to_half_open()

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    return self._reject(operation_name, now, None)
                self._trial_in_flight = True
        return None

    def _reject(
        self,
        operation_name: str,
        now: float,
        elapsed: float | None,
    ) -> CircuitBreakerResult[Any]:
        error = EnhancedError(
            f"Circuit breaker is {self._state.value.upper()} for {self.name}. "
            f"Rejecting {operation_name} immediately.",
            category=ErrorCategory.EXTERNAL_API,
            recovery_strategy=RecoveryStrategy.CIRCUIT_BREAKER,
            context={
                "circuit_name": self.name,
                "state": self._state.value,
                "time_since_open": elapsed,
                "reset_timeout_seconds": self.config.reset_timeout_seconds,
            },
            source=f"circuit_breaker_{self.name}",
            code=CIRCUIT_OPEN_CODE,
        )
        logger.warning(
            "Circuit breaker %s %s - rejecting %s",
            self.name,
            self._state.value,
            operation_name,
        )
        return CircuitBreakerResult(
            success=False,
            state=self._state,
            duration_seconds=self._clock() - now,
            timestamp=now,
            error=error,
        )

    def _on_success(self, duration: float) -> CircuitState:
        with self._lock:
            self._roll_window_if_needed()
            metrics = self._metrics
            metrics.total_calls += 1
            metrics.successful_calls += 1
            metrics.last_success_time = self._clock()
            metrics.consecutive_failures = 0
            if duration > self.config.slow_call_duration_threshold_seconds:
                metrics.slow_calls += 1
            self._update_average(duration)

            if self._state is CircuitState.HALF_OPEN:
                self._transition_to_closed()
            elif self._state is CircuitState.CLOSED and self._should_open():
                self._transition_to_open()
            logger.debug(
                "Circuit breaker %s recorded success in %.3fs (total=%d)",
                self.name,
                duration,
                metrics.total_calls,
            )
            return self._state

    def _on_failure(
        self,
        error: EnhancedError,
        operation_name: str,
        duration: float,
    ) -> CircuitState:
        with self._lock:
            self._roll_window_if_needed()
            metrics = self._metrics
            metrics.total_calls += 1
            metrics.failed_calls += 1
            metrics.last_failure_time = self._clock()
            metrics.consecutive_failures += 1
            if duration > self.config.slow_call_duration_threshold_seconds:
                metrics.slow_calls += 1
            self._update_average(duration)

            logger.error(
                "Circuit breaker %s recorded failure of %s: %s (consecutive=%d/%d)",
                self.name,
                operation_name,
                error.message,
                metrics.consecutive_failures,
                self.config.failure_threshold,
            )
            if self._state is CircuitState.HALF_OPEN:
                self._transition_to_open()
            elif self._state is CircuitState.CLOSED and self._should_open():
                self._transition_to_open()
            return self._state

    def _should_open(self) -> bool:
        metrics = self._metrics
        if metrics.total_calls < self.config.minimum_number_of_calls:
            return False
        if metrics.consecutive_failures >= self.config.failure_threshold:
            return True
        if metrics.slow_calls >= self.config.slow_call_threshold:
            return True
        return metrics.failed_calls / metrics.total_calls >= FAILURE_RATE_THRESHOLD

    def _transition_to_open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            "Circuit breaker %s transitioned to OPEN (calls=%d failed=%d slow=%d)",
            self.name,
            self._metrics.total_calls,
            self._metrics.failed_calls,
            self._metrics.slow_calls,
        )
        self._schedule_half_open()

    def _transition_to_half_open(self) -> None:
        self._cancel_reset_timer()
        self._state = CircuitState.HALF_OPEN
        self._trial_in_flight = False
        logger.info("Circuit breaker %s transitioned to HALF_OPEN", self.name)

    def _transition_to_closed(self) -> None:
        self._cancel_reset_timer()
        self._state = CircuitState.CLOSED
        self._metrics = CircuitBreakerMetrics(window_start=self._clock())
        self._opened_at = None
        self._trial_in_flight = False
        logger.info("Circuit breaker %s transitioned to CLOSED", self.name)

    def _schedule_half_open(self) -> None:
        self._cancel_reset_timer()
        timer = threading.Timer(self.config.reset_timeout_seconds, self._on_reset_timer)
        timer.daemon = True
        self._reset_timer = timer
        timer.start()

    def _on_reset_timer(self) -> None:
        with self._lock:
            if self._reset_timer is not threading.current_thread():
                # Cancelled or superseded after firing.
                return
            self._reset_timer = None
            if self._state is CircuitState.OPEN:
                self._transition_to_half_open()

    def _cancel_reset_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _update_average(self, duration: float) -> None:
        metrics = self._metrics
        total_time = metrics.average_response_time * (metrics.total_calls - 1)
        metrics.average_response_time = (total_time + duration) / metrics.total_calls

    def _roll_window_if_needed(self) -> None:
        now = self._clock()
        if now - self._metrics.window_start > self.config.monitoring_period_seconds:
            self._metrics = CircuitBreakerMetrics(window_start=now)


class CircuitBreakerRegistry:
    """Named breakers, one per external resource."""

    def __init__(
        self,
        default_config: CircuitBreakerConfig = DEFAULT_CIRCUIT_BREAKER_CONFIG,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_config = default_config
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, config or self.default_config, clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        with self._lock:
            return self._breakers.get(name)

    def remove(self, name: str) -> bool:
        with self._lock:
            breaker = self._breakers.pop(name, None)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def get_all(self) -> dict[str, CircuitBreaker]:
        with self._lock:
            return dict(self._breakers)

    def get_all_status(self) -> dict[str, CircuitBreakerStatus]:
        return {name: breaker.get_status() for name, breaker in self.get_all().items()}

    def reset_all(self) -> None:
        for breaker in self.get_all().values():
            breaker.reset()

    def get_overall_health(self) -> dict[str, Any]:
        statuses = self.get_all_status()
        healthy = sum(1 for status in statuses.values() if status.healthy)
        return {
            "healthy": healthy == len(statuses),
            "total_breakers": len(statuses),
            "healthy_breakers": healthy,
            "unhealthy_breakers": len(statuses) - healthy,
            "breaker_details": {name: status.to_dict() for name, status in statuses.items()},
        }
