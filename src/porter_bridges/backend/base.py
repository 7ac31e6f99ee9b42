"""Backend interface for the external content-processing tool."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class ToolRunRequest:
    """Inputs required to run the tool once on one content file."""

    input_path: Path
    output_path: Path
    command_template: str
    timeout_seconds: float
    model: str = ""
    tool: str = "tool"
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ToolRunResult:
    """Outcome of a successful tool run."""

    exit_code: int
    duration_seconds: float
    stdout_path: Path
    stderr_path: Path


class ToolBackend(Protocol):
    """Protocol implemented by tool runners."""

    def run(self, request: ToolRunRequest) -> ToolRunResult:
        """Run the tool; raise ``ToolRunError`` when it does not succeed."""
