"""Graceful degradation: keep producing partial results while services fail.

Tracks per-service health, derives a system-wide degradation level after every
report, runs operations with a fallback/skip/abort policy, and decides whether
the pipeline may keep starting new work at all.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Generic, TypeVar

from porter_bridges.resilience.classifier import classify_error
from porter_bridges.resilience.errors import EnhancedError
from porter_bridges.timeutil import utc_now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DegradationLevel(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    PARTIAL = "partial"
    SIGNIFICANT = "significant"
    CRITICAL = "critical"


class DegradationStrategy(str, Enum):
    CONTINUE = "continue"
    FALLBACK = "fallback"
    SKIP = "skip"
    CACHED = "cached"
    MINIMAL_RESULT = "minimal_result"
    ABORT = "abort"


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass(slots=True)
class ServiceHealth:
    name: str
    healthy: bool
    last_check_time: str
    consecutive_failures: int = 0
    last_error: EnhancedError | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "last_check_time": self.last_check_time,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error.to_log_format() if self.last_error else None,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class DegradationContext:
    level: DegradationLevel = DegradationLevel.NONE
    strategy: DegradationStrategy = DegradationStrategy.CONTINUE
    failures: list[str] = field(default_factory=list)
    active_services: list[str] = field(default_factory=list)
    failed_services: list[str] = field(default_factory=list)
    last_update: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "strategy": self.strategy.value,
            "failures": list(self.failures),
            "active_services": list(self.active_services),
            "failed_services": list(self.failed_services),
            "last_update": self.last_update,
        }


@dataclass(slots=True)
class DegradationResult(Generic[T]):
    success: bool
    degraded: bool
    degradation_level: DegradationLevel
    strategy: DegradationStrategy
    data: T | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[EnhancedError] = field(default_factory=list)
    fallbacks_used: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SystemHealthSummary:
    healthy: bool
    degradation_level: DegradationLevel
    total_services: int
    healthy_services: int
    failed_services: int
    can_continue: bool
    recommendations: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "degradation_level": self.degradation_level.value,
            "total_services": self.total_services,
            "healthy_services": self.healthy_services,
            "failed_services": self.failed_services,
            "can_continue": self.can_continue,
            "recommendations": list(self.recommendations),
        }


@dataclass(slots=True)
class _FallbackOutcome:
    success: bool
    strategy: DegradationStrategy
    data: Any = None
    warnings: list[str] = field(default_factory=list)
    errors: list[EnhancedError] = field(default_factory=list)
    fallbacks_used: list[str] = field(default_factory=list)


def level_for_failure_rate(failure_rate: float) -> tuple[DegradationLevel, DegradationStrategy]:
    """Map the unhealthy share of services to a level and default strategy."""

    if failure_rate <= 0:
        return DegradationLevel.NONE, DegradationStrategy.CONTINUE
    if failure_rate < 0.2:  # noqa: PLR2004
        return DegradationLevel.MINIMAL, DegradationStrategy.CONTINUE
    if failure_rate < 0.5:  # noqa: PLR2004
        return DegradationLevel.PARTIAL, DegradationStrategy.FALLBACK
    if failure_rate < 0.8:  # noqa: PLR2004
        return DegradationLevel.SIGNIFICANT, DegradationStrategy.MINIMAL_RESULT
    return DegradationLevel.CRITICAL, DegradationStrategy.ABORT


class GracefulDegradationManager:
    """Per-service health tracking with a derived system degradation level."""

    def __init__(self, minimum_required_services: Iterable[str] = ()) -> None:
        self.minimum_required_services = frozenset(minimum_required_services)
        self._lock = threading.RLock()
        self._services: dict[str, ServiceHealth] = {}
        self._fallbacks: dict[str, Callable[[], Any]] = {}
        self._context = DegradationContext()
        self._recompute()

    def register_service(self, name: str, metadata: dict[str, Any] | None = None) -> None:
        with self._lock:
            self._services[name] = ServiceHealth(
                name=name,
                healthy=True,
                last_check_time=utc_now_iso(),
                metadata=dict(metadata or {}),
            )
            self._recompute()

    def ensure_service(self, name: str) -> None:
        """Register ``name`` unless it is already tracked (keeps its health)."""

        with self._lock:
            if name not in self._services:
                self.register_service(name)

    def register_fallback(self, service_name: str, fallback: Callable[[], Any]) -> None:
        with self._lock:
            self._fallbacks[service_name] = fallback

    def report_failure(self, service_name: str, error: object) -> None:
        enhanced = classify_error(error, service_name)
        with self._lock:
            health = self._services.get(service_name)
            if health is None:
                health = ServiceHealth(
                    name=service_name,
                    healthy=True,
                    last_check_time=utc_now_iso(),
                )
                self._services[service_name] = health
            health.healthy = False
            health.last_check_time = utc_now_iso()
            health.consecutive_failures += 1
            health.last_error = enhanced
            logger.warning(
                "Service %s reported failure (consecutive=%d): %s",
                service_name,
                health.consecutive_failures,
                enhanced.message,
            )
            self._recompute()

    def report_recovery(self, service_name: str) -> None:
        with self._lock:
            health = self._services.get(service_name)
            if health is None:
                self._services[service_name] = ServiceHealth(
                    name=service_name,
                    healthy=True,
                    last_check_time=utc_now_iso(),
                )
            else:
                was_unhealthy = not health.healthy
                health.healthy = True
                health.last_check_time = utc_now_iso()
                health.consecutive_failures = 0
                health.last_error = None
                if was_unhealthy:
                    logger.info("Service %s recovered", service_name)
            self._recompute()

    def execute_with_degradation(  # noqa: PLR0913
        self,
        operation: Callable[[], T],
        service_name: str,
        operation_name: str,
        *,
        allow_degradation: bool = True,
        fallback_data: Any = MISSING,
        skip_on_failure: bool = False,
        required: bool = False,
        is_service_failure: Callable[[EnhancedError], bool] | None = None,
    ) -> DegradationResult[T]:
        """Run ``operation`` and fall back, skip, or abort when it fails.

        ``is_service_failure`` decides whether a failure counts against the
        service health; by default every failure does.
        """

        started = time.monotonic()
        try:
            data = operation()
        except Exception as error:  # noqa: BLE001
            enhanced = classify_error(error, service_name)
        else:
            self.report_recovery(service_name)
            return DegradationResult(
                success=True,
                degraded=False,
                degradation_level=DegradationLevel.NONE,
                strategy=DegradationStrategy.CONTINUE,
                data=data,
                metadata=self._metadata(service_name, operation_name, started),
            )

        service_failure = is_service_failure is None or is_service_failure(enhanced)
        if service_failure:
            self.report_failure(service_name, enhanced)
        else:
            logger.info(
                "%s failed for %s without affecting service health: [%s] %s",
                operation_name,
                service_name,
                enhanced.code,
                enhanced.message,
            )

        if required or not allow_degradation:
            logger.error(
                "Service %s failed during %s; degradation not allowed: %s",
                service_name,
                operation_name,
                enhanced.message,
            )
            return DegradationResult(
                success=False,
                degraded=False,
                degradation_level=DegradationLevel.CRITICAL,
                strategy=DegradationStrategy.ABORT,
                errors=[enhanced],
                metadata={
                    **self._metadata(service_name, operation_name, started),
                    "required": required,
                    "allow_degradation": allow_degradation,
                    "service_failure": service_failure,
                },
            )

        outcome = self._try_fallbacks(
            service_name=service_name,
            operation_name=operation_name,
            fallback_data=fallback_data,
            skip_on_failure=skip_on_failure,
        )
        context = self.get_degradation_context()
        return DegradationResult(
            success=outcome.success,
            degraded=True,
            degradation_level=context.level,
            strategy=outcome.strategy,
            data=outcome.data,
            warnings=outcome.warnings,
            errors=[enhanced, *outcome.errors],
            fallbacks_used=outcome.fallbacks_used,
            metadata={
                **self._metadata(service_name, operation_name, started),
                "original_error": enhanced.to_log_format(),
                "service_failure": service_failure,
                "degradation_context": context.to_dict(),
            },
        )

    def get_degradation_context(self) -> DegradationContext:
        with self._lock:
            return replace(
                self._context,
                failures=list(self._context.failures),
                active_services=list(self._context.active_services),
                failed_services=list(self._context.failed_services),
            )

    def get_service_health(self, service_name: str) -> ServiceHealth:
        """Health of one service; unknown services report as unhealthy."""

        with self._lock:
            health = self._services.get(service_name)
            if health is None:
                return ServiceHealth(
                    name=service_name,
                    healthy=False,
                    last_check_time=utc_now_iso(),
                )
            return replace(health, metadata=dict(health.metadata))

    def get_all_service_health(self) -> dict[str, ServiceHealth]:
        with self._lock:
            return {
                name: replace(health, metadata=dict(health.metadata))
                for name, health in self._services.items()
            }

    def can_continue_operation(self) -> bool:
        with self._lock:
            for required in self.minimum_required_services:
                health = self._services.get(required)
                if health is not None and not health.healthy:
                    return False
            return self._context.level is not DegradationLevel.CRITICAL

    def get_system_health_summary(self) -> SystemHealthSummary:
        with self._lock:
            services = list(self._services.values())
            healthy = [service for service in services if service.healthy]
            failed = [service for service in services if not service.healthy]
            level = self._context.level
            can_continue = self.can_continue_operation()

        recommendations: list[str] = []
        if failed:
            recommendations.append(f"{len(failed)} service(s) need attention")
        if level is not DegradationLevel.NONE:
            recommendations.append("System is operating in degraded mode")
        if not can_continue:
            recommendations.append("System cannot continue operation - critical services failed")

        return SystemHealthSummary(
            healthy=not failed,
            degradation_level=level,
            total_services=len(services),
            healthy_services=len(healthy),
            failed_services=len(failed),
            can_continue=can_continue,
            recommendations=recommendations,
        )

    def _try_fallbacks(
        self,
        *,
        service_name: str,
        operation_name: str,
        fallback_data: Any,
        skip_on_failure: bool,
    ) -> _FallbackOutcome:
        outcome = _FallbackOutcome(success=False, strategy=DegradationStrategy.ABORT)

        with self._lock:
            fallback = self._fallbacks.get(service_name)
        if fallback is not None:
            try:
                data = fallback()
            except Exception as fallback_error:  # noqa: BLE001
                enhanced = classify_error(fallback_error, f"{service_name}_fallback")
                outcome.errors.append(enhanced)
                outcome.warnings.append(f"Fallback failed for {service_name}: {enhanced.message}")
                logger.warning("Fallback failed for %s: %s", service_name, enhanced.message)
            else:
                outcome.fallbacks_used.append(f"{service_name}_fallback")
                outcome.warnings.append(f"Using fallback strategy for {service_name}")
                logger.info("Fallback succeeded for %s (%s)", service_name, operation_name)
                outcome.success = True
                outcome.strategy = DegradationStrategy.FALLBACK
                outcome.data = data
                return outcome

        if fallback_data is not MISSING:
            outcome.fallbacks_used.append(f"{service_name}_fallback_data")
            outcome.warnings.append(f"Using fallback data for {service_name}")
            logger.info("Using fallback data for %s (%s)", service_name, operation_name)
            outcome.success = True
            outcome.strategy = DegradationStrategy.FALLBACK
            outcome.data = fallback_data
            return outcome

        if skip_on_failure:
            outcome.warnings.append(f"Skipping operation for {service_name}")
            logger.info("Skipping %s for %s", operation_name, service_name)
            outcome.success = True
            outcome.strategy = DegradationStrategy.SKIP
            return outcome

        return outcome

    def _recompute(self) -> None:
        services = list(self._services.values())
        healthy = [service.name for service in services if service.healthy]
        failed = [service for service in services if not service.healthy]

        failure_rate = len(failed) / len(services) if services else 0.0
        level, strategy = level_for_failure_rate(failure_rate)
        healthy_names = set(healthy)
        # Required services count as down until they have reported in.
        if any(name not in healthy_names for name in self.minimum_required_services):
            level, strategy = DegradationLevel.CRITICAL, DegradationStrategy.ABORT

        context = self._context
        context.active_services = healthy
        context.failed_services = [service.name for service in failed]
        context.failures = [
            f"{service.name}: {service.last_error.message if service.last_error else 'Unknown error'}"
            for service in failed
        ]
        context.last_update = utc_now_iso()

        if level is not context.level or strategy is not context.strategy:
            previous = context.level
            context.level = level
            context.strategy = strategy
            logger.info(
                "Degradation level changed: %s -> %s (healthy=%d/%d, failure_rate=%d%%)",
                previous.value,
                level.value,
                len(healthy),
                len(services),
                round(failure_rate * 100),
            )

    @staticmethod
    def _metadata(service_name: str, operation_name: str, started: float) -> dict[str, Any]:
        return {
            "service_name": service_name,
            "operation_name": operation_name,
            "duration_seconds": time.monotonic() - started,
            "timestamp": utc_now_iso(),
        }
