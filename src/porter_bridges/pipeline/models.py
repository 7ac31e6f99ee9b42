"""Work-item lifecycle: phases, allowed transitions and phase definitions."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from porter_bridges.timeutil import utc_now_iso

PIPELINE_VERSION = "1.0.0"


class PipelinePhase(str, Enum):
    DISCOVERED = "discovered"
    COLLECTING = "collecting"
    COLLECTED = "collected"
    DISTILLING = "distilling"
    DISTILLED = "distilled"
    FAILED = "failed"
    PACKAGING = "packaging"
    PACKAGED = "packaged"
    BUNDLING = "bundling"
    BUNDLED = "bundled"


PHASE_SEQUENCE: tuple[PipelinePhase, ...] = (
    PipelinePhase.DISCOVERED,
    PipelinePhase.COLLECTING,
    PipelinePhase.COLLECTED,
    PipelinePhase.DISTILLING,
    PipelinePhase.DISTILLED,
    PipelinePhase.PACKAGING,
    PipelinePhase.PACKAGED,
    PipelinePhase.BUNDLING,
    PipelinePhase.BUNDLED,
)
IN_PROGRESS_PHASES = frozenset(
    {
        PipelinePhase.COLLECTING,
        PipelinePhase.DISTILLING,
        PipelinePhase.PACKAGING,
        PipelinePhase.BUNDLING,
    },
)
COMPLETED_PHASES = frozenset(
    {
        PipelinePhase.COLLECTED,
        PipelinePhase.DISTILLED,
        PipelinePhase.PACKAGED,
        PipelinePhase.BUNDLED,
    },
)
PHASE_VALUES = frozenset(phase.value for phase in PipelinePhase)
STATS_KEYS = ("discovery", "collection", "distillation", "packaging", "bundling")

_ORDER = {phase: index for index, phase in enumerate(PHASE_SEQUENCE)}


class InvalidTransitionError(ValueError):
    """Raised when a work item status change is not in the transition table."""

    def __init__(self, key: str, current: str, target: str) -> None:
        super().__init__(f"Source {key}: transition {current} -> {target} is not allowed")
        self.key = key
        self.current = current
        self.target = target


def parse_phase(value: object) -> PipelinePhase | None:
    if isinstance(value, PipelinePhase):
        return value
    if isinstance(value, str) and value in PHASE_VALUES:
        return PipelinePhase(value)
    return None


def is_transition_allowed(
    current: PipelinePhase,
    target: PipelinePhase,
    error_phase: PipelinePhase | None = None,
) -> bool:
    """Check one status change against the transition table.

    Forward moves along the phase sequence and self transitions are allowed.
    In-progress phases may fail. A failed item returns to the in-progress
    phase recorded in its error, or to any in-progress phase when no usable
    record exists.
    """

    if current is target:
        return True
    if current is PipelinePhase.FAILED:
        if error_phase in IN_PROGRESS_PHASES:
            return target is error_phase
        return target in IN_PROGRESS_PHASES
    if target is PipelinePhase.FAILED:
        return current in IN_PROGRESS_PHASES
    return _ORDER[target] > _ORDER[current]


def validate_transition(key: str, item: dict[str, Any], target: PipelinePhase) -> None:
    current = parse_phase(item.get("status"))
    if current is None:
        # Unknown statuses only come from hand-edited files; let callers move them on.
        return
    error = item.get("error")
    error_phase = parse_phase(error.get("phase")) if isinstance(error, dict) else None
    if not is_transition_allowed(current, target, error_phase):
        raise InvalidTransitionError(key, current.value, target.value)


def empty_phase_counts() -> dict[str, int]:
    return {phase.value: 0 for phase in PipelinePhase}


def empty_metadata() -> dict[str, Any]:
    return {
        "total_sources": 0,
        "phase_counts": empty_phase_counts(),
        "completion_percentage": 0,
    }


def new_context(options: dict[str, Any] | None = None) -> dict[str, Any]:
    now = utc_now_iso()
    options = dict(options or {})
    skip_phases = [
        phase.value
        for phase in (parse_phase(value) for value in options.get("skip_phases", []))
        if phase is not None
    ]
    return {
        "pipeline_version": PIPELINE_VERSION,
        "execution_id": str(uuid.uuid4()),
        "started_at": now,
        "last_updated": now,
        "current_phase": PipelinePhase.DISCOVERED.value,
        "skip_phases": skip_phases,
        "options": options,
    }


@dataclass(slots=True, frozen=True)
class PhaseDefinition:
    """How one pipeline phase moves work items and where it records results."""

    name: str
    stats_key: str
    input_status: PipelinePhase
    in_progress_status: PipelinePhase
    output_status: PipelinePhase
    service_name: str
    timestamp_field: str
    metadata_field: str


COLLECTION = PhaseDefinition(
    name="collection",
    stats_key="collection",
    input_status=PipelinePhase.DISCOVERED,
    in_progress_status=PipelinePhase.COLLECTING,
    output_status=PipelinePhase.COLLECTED,
    service_name="collection",
    timestamp_field="collected_at",
    metadata_field="collection_metadata",
)
DISTILLATION = PhaseDefinition(
    name="distillation",
    stats_key="distillation",
    input_status=PipelinePhase.COLLECTED,
    in_progress_status=PipelinePhase.DISTILLING,
    output_status=PipelinePhase.DISTILLED,
    service_name="distillation",
    timestamp_field="distilled_at",
    metadata_field="distillation_metadata",
)
PACKAGING = PhaseDefinition(
    name="packaging",
    stats_key="packaging",
    input_status=PipelinePhase.DISTILLED,
    in_progress_status=PipelinePhase.PACKAGING,
    output_status=PipelinePhase.PACKAGED,
    service_name="packaging",
    timestamp_field="packaged_at",
    metadata_field="packaging_metadata",
)
BUNDLING = PhaseDefinition(
    name="bundling",
    stats_key="bundling",
    input_status=PipelinePhase.PACKAGED,
    in_progress_status=PipelinePhase.BUNDLING,
    output_status=PipelinePhase.BUNDLED,
    service_name="bundling",
    timestamp_field="bundled_at",
    metadata_field="bundling_metadata",
)
PHASES: dict[str, PhaseDefinition] = {
    phase.name: phase for phase in (COLLECTION, DISTILLATION, PACKAGING, BUNDLING)
}


def get_phase(name: str) -> PhaseDefinition:
    try:
        return PHASES[name]
    except KeyError:
        raise ValueError(
            f"Unknown phase {name!r}; expected one of: {', '.join(PHASES)}",
        ) from None
