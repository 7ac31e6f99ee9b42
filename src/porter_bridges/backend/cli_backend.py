"""Subprocess-based runner for the content-processing CLI tool."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import IO

from porter_bridges.backend.base import ToolRunRequest, ToolRunResult
from porter_bridges.resilience.errors import ToolRunError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
OUTPUT_TAIL_CHARS = 4000


class CliToolBackend:
    """Render the command template, run it, and raise typed errors on failure."""

    def run(self, request: ToolRunRequest) -> ToolRunResult:
        run_args, command_head = build_run_args(
            command_template=request.command_template,
            tool=request.tool,
            model=request.model,
            input_path=request.input_path,
            output_path=request.output_path,
        )
        stdout_path = request.output_path.with_name(f"{request.output_path.name}.stdout.log")
        stderr_path = request.output_path.with_name(f"{request.output_path.name}.stderr.log")
        request.output_path.parent.mkdir(parents=True, exist_ok=True)

        env = os.environ.copy()
        env.update(request.env)
        env["PORTER_BRIDGES_TOOL_MODEL"] = request.model

        started = time.monotonic()
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise ToolRunError(
                f"{request.tool} command not found: {command_head}",
                kind="not_found",
                tool=request.tool,
            ) from error
        except OSError as error:
            raise ToolRunError(
                f"{request.tool} failed to start: {error}",
                kind="start_failed",
                tool=request.tool,
            ) from error
        duration = time.monotonic() - started

        if timed_out:
            logger.warning("%s timed out after %.1fs", request.tool, duration)
            raise ToolRunError(
                f"{request.tool} timed out after {request.timeout_seconds}s",
                kind="timed_out",
                tool=request.tool,
                exit_code=exit_code,
                stdout=_tail(stdout_path),
                stderr=_tail(stderr_path),
            )
        if exit_code != 0:
            stderr = _tail(stderr_path)
            logger.warning("%s exited with code %d: %s", request.tool, exit_code, stderr[-200:])
            raise ToolRunError(
                f"{request.tool} exited with code {exit_code}",
                kind="exit_code",
                tool=request.tool,
                exit_code=exit_code,
                stdout=_tail(stdout_path),
                stderr=stderr,
            )

        return ToolRunResult(
            exit_code=exit_code,
            duration_seconds=duration,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )


def build_run_args(
    *,
    command_template: str,
    tool: str,
    model: str,
    input_path: Path,
    output_path: Path,
) -> tuple[list[str], str]:
    """Render ``{input_file}``, ``{output_file}`` and ``{model}`` into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise ToolRunError(f"{tool} command template is empty.", kind="invalid_command", tool=tool)
    if "{input_file}" not in stripped:
        raise ToolRunError(
            f"{tool} command template must include {{input_file}}.",
            kind="invalid_command",
            tool=tool,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            input_file=shlex.quote(str(input_path)),
            output_file=shlex.quote(str(output_path)),
        )
    except (KeyError, IndexError, ValueError) as error:
        raise ToolRunError(
            f"Unsupported command template placeholder: {error}",
            kind="invalid_command",
            tool=tool,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ToolRunError(
            f"{tool} command template rendered empty command.",
            kind="invalid_command",
            tool=tool,
        )
    return argv, argv[0]


def _run_subprocess(
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: float,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> tuple[int, bool]:
    """Return ``(exit_code, timed_out)``; a timed-out process is terminated."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    try:
        return process.wait(timeout=timeout_seconds), False
    except subprocess.TimeoutExpired:
        _terminate_process(process)
        return TIMEOUT_EXIT_CODE, True


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _tail(path: Path) -> str:
    try:
        text = path.read_text("utf-8", errors="replace")
    except FileNotFoundError:
        return ""
    return text[-OUTPUT_TAIL_CHARS:]
