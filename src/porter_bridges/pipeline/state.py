"""Persistent, lock-protected pipeline state backed by one JSON document."""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from porter_bridges.pipeline.models import (
    COMPLETED_PHASES,
    PHASES,
    STATS_KEYS,
    PipelinePhase,
    empty_metadata,
    empty_phase_counts,
    new_context,
    parse_phase,
    validate_transition,
)
from porter_bridges.resilience.errors import EnhancedError, ErrorCategory
from porter_bridges.timeutil import utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = Path("generated/pipeline-state.json")

_CONTEXT_STRING_FIELDS = ("pipeline_version", "execution_id", "started_at", "last_updated")
PROGRESS_FIELDS = frozenset(
    {"status", "error"}
    | {phase.timestamp_field for phase in PHASES.values()}
    | {phase.metadata_field for phase in PHASES.values()},
)


def validate_state_document(payload: object) -> list[str]:
    """Return a list of schema problems; empty means the document is valid."""

    if not isinstance(payload, dict):
        return ["state must be a JSON object"]

    problems: list[str] = []
    context = payload.get("context")
    if not isinstance(context, dict):
        problems.append("context must be an object")
    else:
        for name in _CONTEXT_STRING_FIELDS:
            if not isinstance(context.get(name), str):
                problems.append(f"context.{name} must be a string")
        if parse_phase(context.get("current_phase")) is None:
            problems.append("context.current_phase must be a pipeline phase")
        if not isinstance(context.get("skip_phases", []), list):
            problems.append("context.skip_phases must be an array")
        if not isinstance(context.get("options", {}), dict):
            problems.append("context.options must be an object")

    sources = payload.get("sources")
    if not isinstance(sources, dict):
        problems.append("sources must be an object")
    else:
        for key, item in sources.items():
            if not isinstance(item, dict):
                problems.append(f"sources.{key} must be an object")
            elif parse_phase(item.get("status")) is None:
                problems.append(f"sources.{key}.status must be a pipeline phase")

    if not isinstance(payload.get("stats"), dict):
        problems.append("stats must be an object")
    if not isinstance(payload.get("metadata"), dict):
        problems.append("metadata must be an object")
    return problems


def repair_state_document(payload: dict[str, Any]) -> dict[str, Any]:
    """Fill in missing structural blocks around existing work items."""

    fresh_context = new_context()
    context = payload.get("context")
    if not isinstance(context, dict):
        context = fresh_context
    else:
        for name in _CONTEXT_STRING_FIELDS:
            if not isinstance(context.get(name), str):
                context[name] = fresh_context[name]
        if parse_phase(context.get("current_phase")) is None:
            context["current_phase"] = fresh_context["current_phase"]
        if not isinstance(context.get("skip_phases"), list):
            context["skip_phases"] = []
        if not isinstance(context.get("options"), dict):
            context["options"] = {}

    sources: dict[str, dict[str, Any]] = {}
    for key, item in payload.get("sources", {}).items():
        if not isinstance(item, dict):
            logger.warning("Dropping malformed source %s while repairing state", key)
            continue
        if parse_phase(item.get("status")) is None:
            logger.warning(
                "Resetting source %s with unknown status %r to discovered",
                key,
                item.get("status"),
            )
            item["status"] = PipelinePhase.DISCOVERED.value
        sources[str(key)] = item

    stats = payload.get("stats")
    return {
        "context": context,
        "sources": sources,
        "stats": stats if isinstance(stats, dict) else {},
        "metadata": empty_metadata(),
    }


def compute_metadata(sources: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    counts = empty_phase_counts()
    for item in sources.values():
        counts[item["status"]] += 1
    total = len(sources)
    completed = sum(counts[phase.value] for phase in COMPLETED_PHASES)
    return {
        "total_sources": total,
        "phase_counts": counts,
        "completion_percentage": round(100 * completed / total) if total else 0,
    }


class PipelineStateManager:
    """Owns the work-item map; every mutation and save goes through one lock."""

    def __init__(self, state_file: Path | str = DEFAULT_STATE_FILE) -> None:
        self.state_file = Path(state_file)
        self._lock = threading.RLock()
        self._state: dict[str, Any] | None = None

    @property
    def loaded(self) -> bool:
        return self._state is not None

    def initialize_state(self, options: dict[str, Any] | None = None) -> dict[str, Any]:
        with self._lock:
            self._state = {
                "context": new_context(options),
                "sources": {},
                "stats": {},
                "metadata": empty_metadata(),
            }
            self.save_state()
            logger.info(
                "Initialized new pipeline state (execution_id=%s, file=%s)",
                self._state["context"]["execution_id"],
                self.state_file,
            )
            return self.get_state()

    def load_state(self) -> dict[str, Any]:
        """Load the state file, creating or repairing it as needed."""

        with self._lock:
            try:
                raw = self.state_file.read_text("utf-8")
            except FileNotFoundError:
                logger.info("State file %s not found; creating new pipeline state", self.state_file)
                return self.initialize_state()

            try:
                payload = json.loads(raw)
            except json.JSONDecodeError as error:
                raise EnhancedError(
                    f"Pipeline state file {self.state_file} is not valid JSON: {error}",
                    category=ErrorCategory.VALIDATION,
                    context={"state_file": str(self.state_file)},
                    source="pipeline_state",
                    code="STATE_PARSE_ERROR",
                ) from error

            problems = validate_state_document(payload)
            if problems:
                logger.warning(
                    "Pipeline state validation failed, attempting repair: %s",
                    "; ".join(problems[:3]),
                )
                sources = payload.get("sources") if isinstance(payload, dict) else None
                if not isinstance(sources, dict) or not sources:
                    return self.initialize_state()
                payload = repair_state_document(payload)
                logger.info("Repaired pipeline state structure (%d sources)", len(payload["sources"]))

            self._state = payload
            self.save_state()
            logger.info(
                "Loaded pipeline state (execution_id=%s, sources=%d, current_phase=%s)",
                payload["context"]["execution_id"],
                payload["metadata"]["total_sources"],
                payload["context"]["current_phase"],
            )
            return self.get_state()

    def save_state(self) -> None:
        with self._lock:
            state = self._require_state()
            self.update_metadata()
            state["context"]["last_updated"] = utc_now_iso()
            self._write_atomic(state)
            logger.debug(
                "Saved pipeline state (sources=%d, completion=%d%%)",
                state["metadata"]["total_sources"],
                state["metadata"]["completion_percentage"],
            )

    def update_metadata(self) -> None:
        with self._lock:
            state = self._require_state()
            state["metadata"] = compute_metadata(state["sources"])

    def update_source(self, key: str, updates: Mapping[str, Any]) -> bool:
        """Merge ``updates`` into one work item; ``None`` values remove keys.

        Returns ``False`` (and changes nothing) when the key is unknown. Values
        the state file cannot store raise a VALIDATION ``EnhancedError``.
        """

        with self._lock:
            item = self._require_state()["sources"].get(key)
            if item is None:
                logger.warning("Source %s not found in state; update ignored", key)
                return False

            if "status" in updates:
                target = parse_phase(updates["status"])
                if target is None:
                    raise ValueError(f"Source {key}: unknown status {updates['status']!r}")
                validate_transition(key, item, target)
            _ensure_serializable(key, updates)

            for name, value in updates.items():
                if value is None:
                    item.pop(name, None)
                elif name == "status":
                    item[name] = parse_phase(value).value  # type: ignore[union-attr]
                else:
                    item[name] = copy.deepcopy(value)
            return True

    def mark_failed(
        self,
        key: str,
        error: EnhancedError,
        phase: PipelinePhase,
        retry_count: int,
    ) -> bool:
        return self.update_source(
            key,
            {
                "status": PipelinePhase.FAILED,
                "error": {
                    "code": error.code,
                    "message": error.message,
                    "timestamp": utc_now_iso(),
                    "retry_count": max(0, retry_count),
                    "phase": phase.value,
                },
            },
        )

    def add_sources(self, sources: Mapping[str, Mapping[str, Any]]) -> tuple[int, int]:
        """Insert new items and merge content fields of known ones.

        Returns ``(new, updated)`` counts and adds them to the discovery stats.
        """

        with self._lock:
            existing = self._require_state()["sources"]
            added = updated = 0
            for key, payload in sources.items():
                if not isinstance(payload, Mapping):
                    raise TypeError(f"Source {key} must be an object")
                _ensure_serializable(key, payload)
                current = existing.get(key)
                if current is not None:
                    for name, value in payload.items():
                        if name not in PROGRESS_FIELDS:
                            current[name] = copy.deepcopy(value)
                    updated += 1
                    continue

                item = copy.deepcopy(dict(payload))
                status = parse_phase(item.get("status", PipelinePhase.DISCOVERED.value))
                if status is None:
                    raise ValueError(f"Source {key}: unknown status {item.get('status')!r}")
                item["status"] = status.value
                existing[key] = item
                added += 1

            now = utc_now_iso()
            discovery = self._require_state()["stats"].setdefault("discovery", {})
            discovery.setdefault("start_time", now)
            discovery["end_time"] = now
            discovery["new_sources"] = discovery.get("new_sources", 0) + added
            discovery["updated_sources"] = discovery.get("updated_sources", 0) + updated
            discovery["total_sources"] = len(existing)
            logger.info("Added %d new and updated %d existing sources", added, updated)
            return added, updated

    def get_source(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            item = self._require_state()["sources"].get(key)
            return copy.deepcopy(item) if item is not None else None

    def get_sources_by_phase(self, phase: PipelinePhase | str) -> dict[str, dict[str, Any]]:
        status = _phase_value(phase)
        with self._lock:
            return {
                key: copy.deepcopy(item)
                for key, item in self._require_state()["sources"].items()
                if item["status"] == status
            }

    def get_sources_array(self, phase: PipelinePhase | str | None = None) -> list[dict[str, Any]]:
        status = _phase_value(phase) if phase is not None else None
        with self._lock:
            return [
                {**copy.deepcopy(item), "_source_key": key}
                for key, item in self._require_state()["sources"].items()
                if status is None or item["status"] == status
            ]

    def update_phase_stats(self, stage: str, stats: Mapping[str, Any]) -> None:
        if stage not in STATS_KEYS:
            raise ValueError(f"Unknown stats stage {stage!r}; expected one of: {', '.join(STATS_KEYS)}")
        _ensure_serializable(f"stats.{stage}", stats)
        with self._lock:
            block = self._require_state()["stats"].setdefault(stage, {})
            block.update(copy.deepcopy(dict(stats)))
            logger.info("Updated %s statistics", stage)

    def set_current_phase(self, phase: PipelinePhase | str) -> None:
        with self._lock:
            self._require_state()["context"]["current_phase"] = _phase_value(phase)

    def get_state(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._require_state())

    def _require_state(self) -> dict[str, Any]:
        if self._state is None:
            raise RuntimeError("Pipeline state not loaded; call load_state() or initialize_state()")
        return self._state

    def _write_atomic(self, state: dict[str, Any]) -> None:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_file.with_name(f"{self.state_file.name}.tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(state, handle, ensure_ascii=False, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.state_file)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise


def _phase_value(phase: PipelinePhase | str) -> str:
    parsed = parse_phase(phase)
    if parsed is None:
        raise ValueError(f"Unknown pipeline phase {phase!r}")
    return parsed.value


def _ensure_serializable(key: str, values: Mapping[str, Any]) -> None:
    """Reject values the state file cannot hold before they reach memory."""

    for name, value in values.items():
        try:
            json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as error:
            raise EnhancedError(
                f"{key}: field {name!r} is not JSON serializable: {error}",
                category=ErrorCategory.VALIDATION,
                context={"key": key, "field": name},
                source="pipeline_state",
                code="STATE_NOT_SERIALIZABLE",
            ) from error
