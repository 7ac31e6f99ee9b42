"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from porter_bridges import __version__
from porter_bridges.backend.cli_backend import CliToolBackend
from porter_bridges.config import Settings
from porter_bridges.http.fetcher import HttpFetcher
from porter_bridges.pipeline.health_report import (
    SystemHealthReport,
    SystemHealthReporter,
    circuit_breakers_check,
    configuration_check,
    directories_check,
    file_system_check,
    http_endpoint_check,
    pipeline_state_check,
)
from porter_bridges.pipeline.models import (
    COLLECTION,
    DISTILLATION,
    PHASES,
    PipelinePhase,
    get_phase,
)
from porter_bridges.pipeline.operations import FetchOperation, ToolOperation
from porter_bridges.pipeline.runner import (
    Operation,
    PhaseRunner,
    PhaseRunOptions,
    PhaseRunSummary,
    host_service_resolver,
)
from porter_bridges.pipeline.state import (
    PipelineStateManager,
    compute_metadata,
    validate_state_document,
)
from porter_bridges.pipeline.validation import CriticalError, validate_phase_output
from porter_bridges.resilience.circuit_breaker import CircuitBreakerRegistry
from porter_bridges.resilience.degradation import GracefulDegradationManager
from porter_bridges.resilience.errors import EnhancedError
from porter_bridges.resilience.health import HealthCheckManager
from porter_bridges.timeutil import utc_now_iso

RUNNABLE_PHASES = (COLLECTION.name, DISTILLATION.name)
PHASE_NAMES = tuple(PHASES)
STATUS_CHOICES = tuple(phase.value for phase in PipelinePhase)


@dataclass(slots=True)
class HealthCommand:
    """CLI input for the health report."""

    state_file: Path | None
    json_output: bool = False
    component: str | None = None
    simple: bool = False
    reset_breakers: bool = False
    watch: bool = False
    interval_seconds: float = 30.0


@dataclass(slots=True)
class StateShowCommand:
    state_file: Path | None
    phase: str | None = None


@dataclass(slots=True)
class StateValidateCommand:
    state_file: Path | None
    phase: str
    max_failure_rate: float | None = None


@dataclass(slots=True)
class RunPhaseCommand:
    """CLI input for one phase run."""

    state_file: Path | None
    phase: str
    include_failed: bool = False
    max_concurrency: int | None = None
    validate_output: bool = False


@dataclass(slots=True)
class CommandResult:
    lines: list[str] = field(default_factory=list)
    success: bool = True


@dataclass(slots=True)
class Runtime:
    """Explicitly wired resilience components for one CLI invocation."""

    settings: Settings
    breakers: CircuitBreakerRegistry
    degradation: GracefulDegradationManager
    health: HealthCheckManager
    fetcher: HttpFetcher

    def close(self) -> None:
        for breaker in self.breakers.get_all().values():
            breaker.close()
        self.fetcher.close()


def build_runtime(settings: Settings) -> Runtime:
    breakers = CircuitBreakerRegistry(settings.circuit_breaker.to_circuit_breaker_config())
    degradation = GracefulDegradationManager(settings.degradation.minimum_required_services)
    fetcher = HttpFetcher(
        timeout_seconds=settings.http.timeout_seconds,
        transport_retries=settings.http.transport_retries,
        user_agent=settings.http.user_agent,
    )
    health = HealthCheckManager()
    state = settings.state
    health.register_check("file_system", lambda: file_system_check(state.generated_dir))
    health.register_check("pipeline_state", lambda: pipeline_state_check(state.state_file))
    health.register_check("generated_directories", lambda: directories_check(state.required_dirs))
    health.register_check("circuit_breakers", lambda: circuit_breakers_check(breakers))
    health.register_check("configuration", lambda: configuration_check(settings))
    for index, url in enumerate(settings.http.health_endpoints, start=1):
        name = f"http_endpoint_{index}"
        health.register_check(
            name,
            lambda name=name, url=url: http_endpoint_check(name, url, fetcher),
        )
    return Runtime(
        settings=settings,
        breakers=breakers,
        degradation=degradation,
        health=health,
        fetcher=fetcher,
    )


class PipelineCliController:
    """Builds components from settings and renders command output as lines."""

    def health(self, command: HealthCommand) -> CommandResult:
        runtime = build_runtime(self._settings(command.state_file))
        try:
            reporter = self._reporter(runtime, command)
            return _health_result(reporter, command)
        finally:
            runtime.close()

    def watch_health(
        self,
        command: HealthCommand,
        emit: Callable[[list[str]], None],
        *,
        sleep: Callable[[float], None] | None = None,
        max_checks: int | None = None,
    ) -> CommandResult:
        """Re-run the health report every ``interval_seconds`` until interrupted.

        One runtime is reused for every check, so breaker state and uptime carry
        over between iterations. Succeeds when the last check was healthy.
        """

        sleep = sleep or time.sleep
        runtime = build_runtime(self._settings(command.state_file))
        emit([f"Health monitoring started (interval: {command.interval_seconds:g}s)"])
        healthy = True
        checks = 0
        reason = "completed"
        try:
            reporter = self._reporter(runtime, command)
            while True:
                checks += 1
                result = _health_result(reporter, command)
                healthy = result.success
                emit(["", f"[{utc_now_iso()}] Health check #{checks}", *result.lines])
                if max_checks is not None and checks >= max_checks:
                    break
                sleep(command.interval_seconds)
        except KeyboardInterrupt:
            reason = "interrupted"
        finally:
            runtime.close()
        return CommandResult(
            lines=["", f"Health monitoring stopped after {checks} check(s) ({reason})"],
            success=healthy,
        )

    @staticmethod
    def _reporter(runtime: Runtime, command: HealthCommand) -> SystemHealthReporter:
        reporter = SystemHealthReporter(
            runtime.health,
            runtime.breakers,
            runtime.degradation,
            version=__version__,
        )
        if command.reset_breakers:
            reporter.reset_circuit_breakers()
        return reporter

    def show_state(self, command: StateShowCommand) -> CommandResult:
        state_file = self._settings(command.state_file).state.state_file
        payload, error_lines = _read_state_file(state_file)
        if payload is None:
            return CommandResult(lines=error_lines, success=not state_file.exists())

        context = payload["context"]
        metadata = compute_metadata(payload["sources"])
        lines = [
            f"State file: {state_file}",
            f"Execution: {context['execution_id']} (pipeline {context['pipeline_version']})",
            f"Current phase: {context['current_phase']}",
            f"Last updated: {context['last_updated']}",
            f"Sources: {metadata['total_sources']} "
            f"(completion {metadata['completion_percentage']}%)",
        ]
        lines.extend(
            f"  {phase}: {count}" for phase, count in metadata["phase_counts"].items() if count
        )

        if command.phase:
            lines.append(f"Sources in {command.phase}:")
            for key, item in payload["sources"].items():
                if item["status"] != command.phase:
                    continue
                lines.append(f"  {key}: {item.get('title') or item.get('url') or '-'}")
                error = item.get("error")
                if isinstance(error, dict):
                    lines.append(
                        f"    error={error.get('code')} retry_count={error.get('retry_count', 0)} "
                        f"message={error.get('message')}",
                    )
        return CommandResult(lines=lines)

    def validate_state(self, command: StateValidateCommand) -> CommandResult:
        settings = self._settings(command.state_file)
        payload, error_lines = _read_state_file(settings.state.state_file)
        if payload is None:
            return CommandResult(lines=error_lines, success=False)

        phase = get_phase(command.phase)
        max_failure_rate = (
            command.max_failure_rate
            if command.max_failure_rate is not None
            else settings.runner.max_failure_rate
        )
        try:
            report = validate_phase_output(payload, phase, max_failure_rate=max_failure_rate)
        except CriticalError as error:
            return CommandResult(lines=error.to_cli_format().splitlines(), success=False)
        return CommandResult(
            lines=[
                f"{phase.name} output OK: {report.succeeded} succeeded, {report.failed} failed, "
                f"{report.pending} pending (failure rate {round(report.failure_rate * 100)}%)",
            ],
        )

    def run_phase(self, command: RunPhaseCommand) -> CommandResult:
        settings = self._settings(command.state_file)
        phase = get_phase(command.phase)
        if phase.name not in RUNNABLE_PHASES:
            raise ValueError(
                f"Phase {phase.name!r} cannot be run from the CLI; "
                f"expected one of: {', '.join(RUNNABLE_PHASES)}",
            )
        if phase is DISTILLATION:
            settings.validate_for_tool()
        else:
            settings.validate()

        runtime = build_runtime(settings)
        try:
            state = PipelineStateManager(settings.state.state_file)
            state.load_state()
            runner = PhaseRunner(state, breakers=runtime.breakers, degradation=runtime.degradation)
            summary = runner.run_phase(
                phase,
                self._operation_for(phase.name, settings, runtime),
                PhaseRunOptions(
                    max_concurrency=command.max_concurrency or settings.runner.max_concurrency,
                    include_failed=command.include_failed,
                    backoff=settings.retry.to_backoff_config(),
                    circuit_config=settings.circuit_breaker.to_circuit_breaker_config(),
                    service_resolver=(
                        host_service_resolver(phase.service_name) if phase is COLLECTION else None
                    ),
                ),
            )
            return self._run_result(summary, state, command, settings)
        finally:
            runtime.close()

    def _run_result(
        self,
        summary: PhaseRunSummary,
        state: PipelineStateManager,
        command: RunPhaseCommand,
        settings: Settings,
    ) -> CommandResult:
        lines = summary.to_lines()
        if summary.failed_services:
            lines.append(f"Failed services: {', '.join(summary.failed_services)}")
        success = not summary.halted
        if command.validate_output:
            try:
                validate_phase_output(
                    state.get_state(),
                    get_phase(command.phase),
                    max_failure_rate=settings.runner.max_failure_rate,
                )
            except CriticalError as error:
                lines.extend(error.to_cli_format().splitlines())
                success = False
        return CommandResult(lines=lines, success=success)

    @staticmethod
    def _operation_for(phase_name: str, settings: Settings, runtime: Runtime) -> Operation:
        if phase_name == COLLECTION.name:
            return FetchOperation(runtime.fetcher, settings.state.collected_dir)
        return ToolOperation(
            CliToolBackend(),
            command_template=settings.tool.command_template,
            output_dir=settings.state.distilled_dir,
            timeout_seconds=settings.tool.timeout_seconds,
            model=settings.tool.model,
            tool=settings.tool.name,
        )

    @staticmethod
    def _settings(state_file: Path | None) -> Settings:
        return Settings.from_env(state_file=state_file)


def render_health_report(report: SystemHealthReport) -> list[str]:
    uptime_minutes = int(report.uptime_seconds // 60)
    lines = [
        f"System Status: {'HEALTHY' if report.healthy else 'UNHEALTHY'}",
        f"Uptime: {uptime_minutes // 60}h {uptime_minutes % 60}m",
        f"Version: {report.version}",
        "",
        "Component Status:",
    ]
    for name, result in report.components.items():
        marker = "OK" if result.healthy else "FAIL"
        lines.append(f"  [{marker}] {name}: {result.message} ({result.response_time_ms:.1f}ms)")

    degradation = report.degradation
    if degradation["level"] != "none":
        lines.extend(
            [
                "",
                f"Degradation Level: {degradation['level'].upper()}",
                f"Can Continue: {'Yes' if degradation['can_continue'] else 'No'}",
            ],
        )
        if degradation["failed_services"]:
            lines.append(f"Failed Services: {', '.join(degradation['failed_services'])}")

    open_breakers = [details for details in report.circuit_breakers.values() if not details["healthy"]]
    if open_breakers:
        lines.extend(["", "Circuit Breaker Status:"])
        lines.extend(f"  {details['name']}: {details['state'].upper()}" for details in open_breakers)

    if report.warnings:
        lines.extend(["", "Warnings:"])
        lines.extend(f"  - {warning}" for warning in report.warnings)
    if report.errors:
        lines.extend(["", "Errors:"])
        lines.extend(f"  - {error}" for error in report.errors)

    lines.extend(
        [
            "",
            "Summary:",
            f"  Components: {report.healthy_count}/{report.total} healthy",
            f"  Warnings: {len(report.warnings)}",
            f"  Errors: {len(report.errors)}",
        ],
    )
    return lines


def _read_state_file(state_file: Path) -> tuple[dict[str, Any] | None, list[str]]:
    try:
        payload = json.loads(state_file.read_text("utf-8"))
    except FileNotFoundError:
        return None, [f"No pipeline state at {state_file}"]
    except json.JSONDecodeError as error:
        return None, [f"Invalid pipeline state {state_file}: {error}"]

    problems = validate_state_document(payload)
    if problems:
        return None, [f"Invalid pipeline state {state_file}:", *(f"  - {p}" for p in problems)]
    return payload, []



def _health_result(reporter: SystemHealthReporter, command: HealthCommand) -> CommandResult:
    if command.component:
        try:
            result = reporter.get_component_health(command.component)
        except EnhancedError as error:
            return CommandResult(lines=error.to_cli_format().splitlines(), success=False)
        if command.json_output:
            return CommandResult(
                lines=[json.dumps(result.to_dict(), indent=2)],
                success=result.healthy,
            )
        marker = "OK" if result.healthy else "FAIL"
        return CommandResult(
            lines=[
                f"[{marker}] {command.component}: {result.message} "
                f"({result.response_time_ms:.1f}ms)",
            ],
            success=result.healthy,
        )

    if command.simple:
        status = reporter.get_health_status()
        if command.json_output:
            lines = [json.dumps(status.to_dict(), indent=2)]
        else:
            lines = [f"Status: {status.status.upper()}", f"Message: {status.message}"]
        return CommandResult(lines=lines, success=status.status != "unhealthy")

    report = reporter.get_system_health()
    if command.json_output:
        return CommandResult(lines=[json.dumps(report.to_dict(), indent=2)], success=report.healthy)
    return CommandResult(lines=render_health_report(report), success=report.healthy)
