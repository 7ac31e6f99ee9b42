"""Phase runner: moves eligible work items through one phase with resilience.

Each item runs ``degradation(retry(circuit_breaker(operation)))`` on a worker
thread. Outcomes are written back through the state manager and persisted
after every item, so a crash loses at most the items still in flight.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from porter_bridges.pipeline.models import PhaseDefinition, PipelinePhase, parse_phase
from porter_bridges.pipeline.state import PipelineStateManager
from porter_bridges.resilience.backoff import DEFAULT_BACKOFF_CONFIG, BackoffConfig
from porter_bridges.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from porter_bridges.resilience.classifier import is_dependency_failure
from porter_bridges.resilience.degradation import (
    MISSING,
    DegradationResult,
    DegradationStrategy,
    GracefulDegradationManager,
)
from porter_bridges.resilience.errors import EnhancedError, ErrorCategory
from porter_bridges.resilience.retry import RetryManager
from porter_bridges.timeutil import utc_now_iso

logger = logging.getLogger(__name__)

Operation = Callable[[str, dict[str, Any]], Any]
ServiceResolver = Callable[[str, dict[str, Any]], str]
SKIPPED_CODE = "skipped"


@dataclass(slots=True)
class PhaseRunOptions:
    max_concurrency: int = 4
    include_failed: bool = False
    allow_degradation: bool = True
    skip_on_failure: bool = False
    required: bool = False
    fallback_data: Any = MISSING
    backoff: BackoffConfig = DEFAULT_BACKOFF_CONFIG
    circuit_name: str | None = None
    service_resolver: ServiceResolver | None = None
    circuit_config: CircuitBreakerConfig | None = None


@dataclass(slots=True)
class PhaseRunSummary:
    phase: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    degraded: int = 0
    not_started: int = 0
    halted: bool = False
    halt_reason: str | None = None
    failed_services: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def processed(self) -> int:
        return self.total - self.not_started

    @property
    def success_rate(self) -> float:
        if not self.processed:
            return 0.0
        return round(100 * self.succeeded / self.processed, 2)

    def to_lines(self) -> list[str]:
        lines = [
            f"{self.phase}: {self.succeeded}/{self.total} succeeded, "
            f"failed={self.failed} skipped={self.skipped} degraded={self.degraded} "
            f"not_started={self.not_started} ({self.duration_seconds:.2f}s)",
        ]
        if self.halted:
            lines.append(f"Run halted: {self.halt_reason}")
        return lines


class _Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_STARTED = "not_started"


@dataclass(slots=True)
class _ItemResult:
    outcome: _Outcome
    input_tokens: int = 0
    output_tokens: int = 0
    first_output: bool = True


class PhaseRunner:
    """Runs one phase over the state manager's eligible work items."""

    def __init__(
        self,
        state: PipelineStateManager,
        *,
        breakers: CircuitBreakerRegistry,
        degradation: GracefulDegradationManager,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.state = state
        self.breakers = breakers
        self.degradation = degradation
        self._sleep = sleep
        self._rng = rng
        self._halt = threading.Event()

    def select_keys(self, phase: PhaseDefinition, *, include_failed: bool = False) -> list[str]:
        """Keys to process: input items, stale in-progress items, optionally retries."""

        keys = list(self.state.get_sources_by_phase(phase.input_status))
        keys.extend(self.state.get_sources_by_phase(phase.in_progress_status))
        if include_failed:
            for key, item in self.state.get_sources_by_phase(PipelinePhase.FAILED).items():
                error = item.get("error")
                if isinstance(error, dict) and parse_phase(error.get("phase")) is phase.in_progress_status:
                    keys.append(key)
        return keys

    def _service_for(self, phase: PhaseDefinition, options: PhaseRunOptions, key: str) -> str:
        if options.service_resolver is None:
            return phase.service_name
        item = self.state.get_source(key) or {}
        return options.service_resolver(key, item) or phase.service_name

    def run_phase(
        self,
        phase: PhaseDefinition,
        operation: Operation,
        options: PhaseRunOptions | None = None,
    ) -> PhaseRunSummary:
        options = options or PhaseRunOptions()
        started = time.monotonic()
        start_time = utc_now_iso()
        self._halt.clear()

        keys = self.select_keys(phase, include_failed=options.include_failed)
        plan = [(key, self._service_for(phase, options, key)) for key in keys]
        # Register every service up front so failure rates are measured against all of them.
        for service in dict.fromkeys(service for _, service in plan):
            self.degradation.ensure_service(service)
        summary = PhaseRunSummary(phase=phase.name, total=len(keys))
        logger.info("Starting %s phase for %d sources", phase.name, len(keys))

        results: list[_ItemResult] = []
        if plan:
            workers = max(1, min(options.max_concurrency, len(plan)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"phase-{phase.name}") as pool:
                futures = [
                    pool.submit(self._process_item, phase, operation, options, key, service)
                    for key, service in plan
                ]
                results = [future.result() for future in futures]

        input_tokens = output_tokens = new_sources = updated_sources = 0
        for result in results:
            input_tokens += result.input_tokens
            output_tokens += result.output_tokens
            if result.outcome in (_Outcome.SUCCEEDED, _Outcome.DEGRADED):
                summary.succeeded += 1
                if result.first_output:
                    new_sources += 1
                else:
                    updated_sources += 1
            if result.outcome is _Outcome.DEGRADED:
                summary.degraded += 1
            elif result.outcome is _Outcome.SKIPPED:
                summary.skipped += 1
            elif result.outcome is _Outcome.FAILED:
                summary.failed += 1
            elif result.outcome is _Outcome.NOT_STARTED:
                summary.not_started += 1

        if self._halt.is_set():
            context = self.degradation.get_degradation_context()
            summary.halted = True
            summary.failed_services = list(context.failed_services)
            summary.halt_reason = (
                f"degradation level {context.level.value}; "
                + ("; ".join(context.failures) or "required service unavailable")
            )
            logger.error("%s phase halted: %s", phase.name, summary.halt_reason)

        summary.duration_seconds = time.monotonic() - started
        self.state.update_phase_stats(
            phase.stats_key,
            {
                "total_sources": summary.total,
                "new_sources": new_sources,
                "updated_sources": updated_sources,
                "failed_sources": summary.failed,
                "skipped_sources": summary.skipped,
                "start_time": start_time,
                "end_time": utc_now_iso(),
                "duration_seconds": round(summary.duration_seconds, 3),
                "total_input_tokens": input_tokens,
                "total_output_tokens": output_tokens,
                "success_rate": summary.success_rate,
            },
        )
        self.state.set_current_phase(phase.output_status)
        self.state.save_state()
        logger.info(
            "Finished %s phase: %d succeeded, %d failed, %d skipped, %d not started",
            phase.name,
            summary.succeeded,
            summary.failed,
            summary.skipped,
            summary.not_started,
        )
        return summary

    def _process_item(
        self,
        phase: PhaseDefinition,
        operation: Operation,
        options: PhaseRunOptions,
        key: str,
        service: str,
    ) -> _ItemResult:
        if self._halt.is_set() or not self.degradation.can_continue_operation():
            self._halt.set()
            return _ItemResult(_Outcome.NOT_STARTED)

        item = self.state.get_source(key)
        if item is None:
            return _ItemResult(_Outcome.NOT_STARTED)
        previous_retries = _previous_retry_count(item)
        first_output = phase.timestamp_field not in item

        self.state.update_source(key, {"status": phase.in_progress_status})
        item["status"] = phase.in_progress_status.value

        breaker = self.breakers.get_or_create(
            options.circuit_name or service,
            options.circuit_config,
        )
        retry = RetryManager(
            options.backoff,
            source=service,
            sleep=self._sleep,
            rng=self._rng,
        )
        operation_name = f"{phase.name}:{key}"
        attempts = 0

        def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return breaker.call(lambda: operation(key, item), operation_name)

        started = time.monotonic()
        result: DegradationResult[Any] = self.degradation.execute_with_degradation(
            lambda: retry.execute_with_retry(attempt, operation_name),
            service,
            operation_name,
            allow_degradation=options.allow_degradation,
            fallback_data=options.fallback_data,
            skip_on_failure=options.skip_on_failure,
            required=options.required,
            is_service_failure=is_dependency_failure,
        )
        duration_ms = round((time.monotonic() - started) * 1000)
        retry_count = previous_retries + attempts

        if result.success and result.strategy is DegradationStrategy.SKIP:
            error = _skip_error(result, phase)
            self.state.mark_failed(key, error, phase.in_progress_status, retry_count)
            outcome = _ItemResult(_Outcome.SKIPPED)
            logger.warning("Skipped %s after failure: %s", operation_name, error.message)
        elif result.success:
            data = result.data if isinstance(result.data, dict) else {}
            try:
                self.state.update_source(
                    key,
                    {
                        "status": phase.output_status,
                        phase.timestamp_field: utc_now_iso(),
                        phase.metadata_field: {
                            "processing_duration_ms": duration_ms,
                            **data,
                            "attempts": attempts,
                            "degraded": result.degraded,
                            "fallbacks_used": list(result.fallbacks_used),
                        },
                        "error": None,
                    },
                )
            except EnhancedError as error:
                self.state.mark_failed(key, error, phase.in_progress_status, retry_count)
                outcome = _ItemResult(_Outcome.FAILED)
                logger.warning("Could not record %s result: %s", operation_name, error.message)
            else:
                input_tokens, output_tokens = _token_usage(data)
                outcome = _ItemResult(
                    _Outcome.DEGRADED if result.degraded else _Outcome.SUCCEEDED,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    first_output=first_output,
                )
        else:
            error = result.errors[0] if result.errors else _unknown_failure(operation_name)
            self.state.mark_failed(key, error, phase.in_progress_status, retry_count)
            outcome = _ItemResult(_Outcome.FAILED)
            logger.warning(
                "Marked %s failed after %d attempt(s): [%s] %s",
                operation_name,
                attempts,
                error.code,
                error.message,
            )

        self.state.save_state()
        return outcome


def _previous_retry_count(item: dict[str, Any]) -> int:
    error = item.get("error")
    if not isinstance(error, dict):
        return 0
    value = error.get("retry_count", 0)
    return value if isinstance(value, int) and not isinstance(value, bool) and value > 0 else 0


def _token_usage(data: dict[str, Any]) -> tuple[int, int]:
    usage = data.get("token_usage")
    if not isinstance(usage, dict):
        return 0, 0
    input_tokens = usage.get("input_tokens", 0)
    output_tokens = usage.get("output_tokens", 0)
    return (
        input_tokens if isinstance(input_tokens, int) else 0,
        output_tokens if isinstance(output_tokens, int) else 0,
    )


def _skip_error(result: DegradationResult[Any], phase: PhaseDefinition) -> EnhancedError:
    cause = result.errors[0] if result.errors else None
    message = cause.message if cause else "operation failed"
    return EnhancedError(
        f"Skipped during {phase.name}: {message}",
        category=cause.category if cause else ErrorCategory.UNKNOWN,
        context={"original_code": cause.code if cause else None},
        source=phase.service_name,
        code=SKIPPED_CODE,
    )


def _unknown_failure(operation_name: str) -> EnhancedError:
    return EnhancedError(
        f"{operation_name} failed without a recorded error",
        category=ErrorCategory.UNKNOWN,
        source="phase_runner",
    )


def host_service_resolver(prefix: str) -> ServiceResolver:
    """Name services ``<prefix>:<host>`` so one failing host does not degrade the others."""

    def resolve(_key: str, item: dict[str, Any]) -> str:
        url = item.get("url")
        host = urlparse(url).hostname if isinstance(url, str) else None
        return f"{prefix}:{host}" if host else prefix

    return resolve
