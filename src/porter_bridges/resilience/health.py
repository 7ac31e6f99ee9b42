"""Named health checks executed in parallel and summarized."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from porter_bridges.resilience.classifier import classify_error
from porter_bridges.resilience.errors import (
    EnhancedError,
    ErrorCategory,
    ErrorSeverity,
    RecoveryStrategy,
)
from porter_bridges.timeutil import utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


@dataclass(slots=True)
class HealthCheckResult:
    healthy: bool
    component: str
    message: str
    response_time_ms: float
    timestamp: str = field(default_factory=utc_now_iso)
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "healthy": self.healthy,
            "component": self.component,
            "message": self.message,
            "timestamp": self.timestamp,
            "response_time_ms": self.response_time_ms,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(slots=True)
class SystemHealth:
    healthy: bool
    checks: dict[str, HealthCheckResult]
    total: int
    healthy_count: int
    unhealthy_count: int
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checks": {name: result.to_dict() for name, result in self.checks.items()},
            "summary": {
                "total": self.total,
                "healthy": self.healthy_count,
                "unhealthy": self.unhealthy_count,
                "timestamp": self.timestamp,
            },
        }


HealthCheck = Callable[[], HealthCheckResult]


def elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 3)


class HealthCheckManager:
    """Registry of health checks; a raising check never breaks aggregation."""

    def __init__(self, *, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self.max_workers = max(1, max_workers)
        self._lock = threading.Lock()
        self._checks: dict[str, HealthCheck] = {}

    def register_check(self, name: str, check: HealthCheck) -> None:
        with self._lock:
            self._checks[name] = check

    def unregister_check(self, name: str) -> bool:
        with self._lock:
            return self._checks.pop(name, None) is not None

    def check_names(self) -> list[str]:
        with self._lock:
            return list(self._checks)

    def run_check(self, name: str) -> HealthCheckResult:
        with self._lock:
            check = self._checks.get(name)
            available = list(self._checks)
        if check is None:
            raise EnhancedError(
                f"Health check '{name}' not found",
                category=ErrorCategory.CONFIGURATION,
                severity=ErrorSeverity.MEDIUM,
                recovery_strategy=RecoveryStrategy.ABORT,
                context={"available_checks": available},
                source="health_check_manager",
            )
        return _guarded(name, check)

    def run_all_checks(self) -> dict[str, HealthCheckResult]:
        with self._lock:
            checks = list(self._checks.items())
        if not checks:
            return {}

        workers = min(self.max_workers, len(checks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="health-check") as pool:
            futures = {name: pool.submit(_guarded, name, check) for name, check in checks}
            return {name: future.result() for name, future in futures.items()}

    def get_system_health(self) -> SystemHealth:
        checks = self.run_all_checks()
        healthy_count = sum(1 for result in checks.values() if result.healthy)
        total = len(checks)
        if healthy_count < total:
            logger.warning(
                "Health checks: %d/%d healthy (failing: %s)",
                healthy_count,
                total,
                ", ".join(name for name, result in checks.items() if not result.healthy),
            )
        return SystemHealth(
            healthy=healthy_count == total,
            checks=checks,
            total=total,
            healthy_count=healthy_count,
            unhealthy_count=total - healthy_count,
        )


def _guarded(name: str, check: HealthCheck) -> HealthCheckResult:
    try:
        return check()
    except Exception as error:  # noqa: BLE001
        enhanced = classify_error(error, f"health_check_{name}")
        logger.warning("Health check %s raised: %s", name, enhanced.message)
        return HealthCheckResult(
            healthy=False,
            component=name,
            message=enhanced.message,
            response_time_ms=-1,
            details=enhanced.to_log_format(),
        )
