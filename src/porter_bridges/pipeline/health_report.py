"""Built-in health checks and the system health report shown by the CLI."""

from __future__ import annotations

import json
import logging
import platform
import sys
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from porter_bridges.config import Settings
from porter_bridges.http.fetcher import HttpFetcher
from porter_bridges.resilience.circuit_breaker import CircuitBreakerRegistry
from porter_bridges.resilience.degradation import GracefulDegradationManager
from porter_bridges.resilience.health import HealthCheckManager, HealthCheckResult, elapsed_ms
from porter_bridges.timeutil import utc_now_iso

logger = logging.getLogger(__name__)

HEALTH_PROBE_CONTENT = "health-check-test"
SERVER_ERROR_STATUS = 500
MIN_PYTHON = (3, 11)


def file_system_check(directory: Path) -> HealthCheckResult:
    """Create, write, read and delete a probe file under ``directory``."""

    started = time.monotonic()
    probe = directory / "health-check.tmp"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        probe.write_text(HEALTH_PROBE_CONTENT, "utf-8")
        content = probe.read_text("utf-8")
        probe.unlink()
    except OSError as error:
        return HealthCheckResult(
            healthy=False,
            component="file_system",
            message=f"File system check failed: {error}",
            response_time_ms=elapsed_ms(started),
            details={"directory": str(directory), "error": str(error)},
        )

    healthy = content == HEALTH_PROBE_CONTENT
    return HealthCheckResult(
        healthy=healthy,
        component="file_system",
        message="File system is healthy" if healthy else "File content verification failed",
        response_time_ms=elapsed_ms(started),
        details={"directory": str(directory), "operations": ["mkdir", "write", "read", "unlink"]},
    )


def pipeline_state_check(state_file: Path) -> HealthCheckResult:
    """A missing state file is healthy: nothing has run yet."""

    started = time.monotonic()
    try:
        payload = json.loads(state_file.read_text("utf-8"))
    except FileNotFoundError:
        return HealthCheckResult(
            healthy=True,
            component="pipeline_state",
            message="Pipeline state file not found (new installation)",
            response_time_ms=elapsed_ms(started),
            details={"state_file": str(state_file), "file_not_found": True},
        )
    except (OSError, json.JSONDecodeError) as error:
        return _state_failure(state_file, started, str(error))

    sources = payload.get("sources") if isinstance(payload, dict) else None
    if not isinstance(sources, dict):
        return _state_failure(state_file, started, "Invalid pipeline state structure")

    context = payload.get("context") if isinstance(payload.get("context"), dict) else {}
    return HealthCheckResult(
        healthy=True,
        component="pipeline_state",
        message=f"Pipeline state is healthy with {len(sources)} sources",
        response_time_ms=elapsed_ms(started),
        details={
            "state_file": str(state_file),
            "source_count": len(sources),
            "last_updated": context.get("last_updated"),
        },
    )


def _state_failure(state_file: Path, started: float, reason: str) -> HealthCheckResult:
    return HealthCheckResult(
        healthy=False,
        component="pipeline_state",
        message=f"Pipeline state check failed: {reason}",
        response_time_ms=elapsed_ms(started),
        details={"state_file": str(state_file), "error": reason, "file_not_found": False},
    )


def directories_check(paths: Iterable[Path]) -> HealthCheckResult:
    started = time.monotonic()
    results = {str(path): path.is_dir() for path in paths}
    accessible = sum(results.values())
    healthy = accessible == len(results)
    return HealthCheckResult(
        healthy=healthy,
        component="generated_directories",
        message=(
            f"All {len(results)} directories are accessible"
            if healthy
            else f"{accessible}/{len(results)} directories are accessible"
        ),
        response_time_ms=elapsed_ms(started),
        details={"directories": results},
    )


def http_endpoint_check(name: str, url: str, fetcher: HttpFetcher) -> HealthCheckResult:
    """Reachable means the endpoint answered below HTTP 500."""

    started = time.monotonic()
    status_code = fetcher.probe(url)
    healthy = status_code < SERVER_ERROR_STATUS
    return HealthCheckResult(
        healthy=healthy,
        component=name,
        message=(
            f"{url} reachable (HTTP {status_code})"
            if healthy
            else f"{url} returned HTTP {status_code}"
        ),
        response_time_ms=elapsed_ms(started),
        details={"url": url, "status_code": status_code},
    )


def configuration_check(settings: Settings) -> HealthCheckResult:
    """Validate the loaded settings and the interpreter version."""

    started = time.monotonic()
    issues: list[str] = []
    try:
        settings.validate()
        settings_ok = True
    except ValueError as error:
        settings_ok = False
        issues.append(str(error))

    python_ok = sys.version_info >= MIN_PYTHON
    if not python_ok:
        issues.append(
            f"Python {platform.python_version()} is below the minimum "
            f"{MIN_PYTHON[0]}.{MIN_PYTHON[1]}",
        )

    healthy = not issues
    return HealthCheckResult(
        healthy=healthy,
        component="configuration",
        message=(
            "Configuration is healthy"
            if healthy
            else f"Configuration issues detected: {', '.join(issues)}"
        ),
        response_time_ms=elapsed_ms(started),
        details={
            "checks": {
                "settings": settings_ok,
                "python_version": python_ok,
                "tool_command": bool(settings.tool.command_template.strip()),
            },
            "issues": issues,
            "python_version": platform.python_version(),
        },
    )


def circuit_breakers_check(registry: CircuitBreakerRegistry) -> HealthCheckResult:
    started = time.monotonic()
    overall = registry.get_overall_health()
    open_breakers = [
        name for name, details in overall["breaker_details"].items() if not details["healthy"]
    ]
    return HealthCheckResult(
        healthy=overall["healthy"],
        component="circuit_breakers",
        message=(
            f"All {overall['total_breakers']} circuit breakers closed"
            if overall["healthy"]
            else f"Circuit breakers not closed: {', '.join(open_breakers)}"
        ),
        response_time_ms=elapsed_ms(started),
        details={
            "total_breakers": overall["total_breakers"],
            "unhealthy_breakers": overall["unhealthy_breakers"],
        },
    )


@dataclass(slots=True)
class SystemHealthReport:
    healthy: bool
    timestamp: str
    uptime_seconds: float
    version: str
    components: dict[str, HealthCheckResult]
    circuit_breakers: dict[str, dict[str, Any]]
    degradation: dict[str, Any]
    total: int
    healthy_count: int
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "timestamp": self.timestamp,
            "uptime_seconds": round(self.uptime_seconds, 3),
            "version": self.version,
            "components": {name: result.to_dict() for name, result in self.components.items()},
            "circuit_breakers": self.circuit_breakers,
            "degradation": self.degradation,
            "summary": {
                "total": self.total,
                "healthy": self.healthy_count,
                "unhealthy": self.total - self.healthy_count,
                "warnings": list(self.warnings),
                "errors": list(self.errors),
            },
        }


@dataclass(slots=True, frozen=True)
class HealthStatus:
    status: str
    timestamp: str
    uptime_seconds: float
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "uptime_seconds": round(self.uptime_seconds, 3),
            "message": self.message,
        }


class SystemHealthReporter:
    """Combines component checks, breaker states and the degradation summary."""

    def __init__(
        self,
        health_manager: HealthCheckManager,
        breakers: CircuitBreakerRegistry,
        degradation: GracefulDegradationManager,
        *,
        version: str,
    ) -> None:
        self.health_manager = health_manager
        self.breakers = breakers
        self.degradation = degradation
        self.version = version
        self._started = time.monotonic()

    def get_system_health(self) -> SystemHealthReport:
        started = time.monotonic()
        components = self.health_manager.run_all_checks()
        breakers = {name: status.to_dict() for name, status in self.breakers.get_all_status().items()}
        context = self.degradation.get_degradation_context()
        summary = self.degradation.get_system_health_summary()

        healthy_count = sum(1 for result in components.values() if result.healthy)
        errors = [f"{name}: {result.message}" for name, result in components.items() if not result.healthy]
        warnings: list[str] = []
        if context.level.value != "none":
            warnings.append(f"System operating in {context.level.value} degradation mode")
        warnings.extend(
            f"Circuit breaker {name} is {details['state']}"
            for name, details in breakers.items()
            if not details["healthy"]
        )

        report = SystemHealthReport(
            healthy=healthy_count == len(components) and summary.can_continue,
            timestamp=utc_now_iso(),
            uptime_seconds=time.monotonic() - self._started,
            version=self.version,
            components=components,
            circuit_breakers=breakers,
            degradation={
                "level": context.level.value,
                "can_continue": summary.can_continue,
                "active_services": list(context.active_services),
                "failed_services": list(context.failed_services),
            },
            total=len(components),
            healthy_count=healthy_count,
            warnings=warnings,
            errors=errors,
        )
        logger.info(
            "System health check completed in %dms (healthy=%s, components=%d/%d, degradation=%s)",
            elapsed_ms(started),
            report.healthy,
            healthy_count,
            len(components),
            context.level.value,
        )
        return report

    def get_component_health(self, name: str) -> HealthCheckResult:
        return self.health_manager.run_check(name)

    def get_health_status(self) -> HealthStatus:
        report = self.get_system_health()
        if report.healthy:
            status, message = "healthy", "All systems operational"
        elif report.degradation["can_continue"]:
            status = "degraded"
            message = f"System degraded: {report.degradation['level']} mode"
        else:
            status, message = "unhealthy", "System cannot continue operation"
        return HealthStatus(
            status=status,
            timestamp=report.timestamp,
            uptime_seconds=report.uptime_seconds,
            message=message,
        )

    def reset_circuit_breakers(self) -> None:
        self.breakers.reset_all()
        logger.info("All circuit breakers reset")
