"""Detect phases whose output is too poor to continue the pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from porter_bridges.pipeline.models import (
    PHASE_SEQUENCE,
    PhaseDefinition,
    PipelinePhase,
    parse_phase,
)
from porter_bridges.timeutil import utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_FAILURE_RATE = 0.5


class CriticalError(Exception):
    """Pipeline-level failure that must stop the run and be shown to an operator."""

    def __init__(self, message: str, phase: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.details = dict(details or {})
        self.timestamp = utc_now_iso()
        self.severity = "critical"

    def to_log_format(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "phase": self.phase,
            "details": self.details,
            "timestamp": self.timestamp,
            "severity": self.severity,
        }

    def to_cli_format(self) -> str:
        return "\n".join(
            [
                "CRITICAL PIPELINE FAILURE",
                f"Phase: {self.phase}",
                f"Issue: {self.message}",
                f"Impact: {self.details.get('impact', 'System unable to continue')}",
                f"Evidence: {self.details.get('evidence', 'See logs for details')}",
                "Recommended Action: "
                f"{self.details.get('recommended_action', 'Fix critical issue before continuing')}",
                "",
                f"Timestamp: {self.timestamp}",
            ],
        )


@dataclass(slots=True, frozen=True)
class PhaseOutputReport:
    phase: str
    succeeded: int
    failed: int
    pending: int

    @property
    def failure_rate(self) -> float:
        finished = self.succeeded + self.failed
        return self.failed / finished if finished else 0.0


def summarize_phase_output(state: dict[str, Any], phase: PhaseDefinition) -> PhaseOutputReport:
    output_index = PHASE_SEQUENCE.index(phase.output_status)
    succeeded = failed = pending = 0
    for item in state.get("sources", {}).values():
        status = parse_phase(item.get("status"))
        if status is None:
            continue
        if status is PipelinePhase.FAILED:
            error = item.get("error")
            if isinstance(error, dict) and parse_phase(error.get("phase")) is phase.in_progress_status:
                failed += 1
        elif status in (phase.input_status, phase.in_progress_status):
            pending += 1
        elif PHASE_SEQUENCE.index(status) >= output_index:
            succeeded += 1
    return PhaseOutputReport(phase=phase.name, succeeded=succeeded, failed=failed, pending=pending)


def validate_phase_output(
    state: dict[str, Any],
    phase: PhaseDefinition,
    *,
    max_failure_rate: float = DEFAULT_MAX_FAILURE_RATE,
) -> PhaseOutputReport:
    """Raise ``CriticalError`` when a phase produced nothing or failed too often."""

    report = summarize_phase_output(state, phase)
    if report.succeeded + report.failed + report.pending == 0:
        return report

    if report.succeeded == 0:
        raise CriticalError(
            f"{phase.name.capitalize()} phase produced ZERO successful results",
            phase.name,
            {
                "impact": f"No {phase.output_status.value} content available for the next phase",
                "evidence": (
                    f"0 succeeded, {report.failed} failed, {report.pending} pending"
                ),
                "recommended_action": f"Investigate {phase.name} errors in the failed sources",
            },
        )

    if report.failure_rate > max_failure_rate:
        raise CriticalError(
            f"{phase.name.capitalize()} phase has {round(report.failure_rate * 100)}% failure rate",
            phase.name,
            {
                "impact": "High failure rate indicates systematic issues",
                "evidence": (
                    f"{report.succeeded} succeeded, {report.failed} failed "
                    f"out of {report.succeeded + report.failed} finished"
                ),
                "recommended_action": f"Investigate {phase.name} errors and fix systematic issues",
            },
        )

    logger.info(
        "%s output valid: %d succeeded, %d failed, %d pending",
        phase.name,
        report.succeeded,
        report.failed,
        report.pending,
    )
    return report
