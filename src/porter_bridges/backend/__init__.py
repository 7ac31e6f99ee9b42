"""Content-processing tool backends."""

from porter_bridges.backend.base import ToolBackend, ToolRunRequest, ToolRunResult
from porter_bridges.backend.cli_backend import CliToolBackend

__all__ = [
    "CliToolBackend",
    "ToolBackend",
    "ToolRunRequest",
    "ToolRunResult",
]
