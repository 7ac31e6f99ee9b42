"""CLI entrypoint for porter-bridges."""

from pathlib import Path

import rich_click as click

from porter_bridges import __version__
from porter_bridges.pipeline.controllers import (
    PHASE_NAMES,
    RUNNABLE_PHASES,
    STATUS_CHOICES,
    HealthCommand,
    PipelineCliController,
    RunPhaseCommand,
    StateShowCommand,
    StateValidateCommand,
)
from porter_bridges.resilience.errors import EnhancedError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PipelineCliController()

_STATE_FILE_OPTION = click.option(
    "--state-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Pipeline state JSON file. Defaults to PORTER_BRIDGES_STATE_FILE.",
)


@click.group()
@click.version_option(version=__version__, prog_name="porter-bridges")
def porter_bridges() -> None:
    """Porter Bridges pipeline CLI."""


@porter_bridges.command("health")
@_STATE_FILE_OPTION
@click.option("--json", "json_output", is_flag=True, help="Print the report as JSON.")
@click.option("--component", default=None, help="Run only one named health check.")
@click.option("--simple", is_flag=True, help="Print only healthy, degraded or unhealthy.")
@click.option("--reset-breakers", is_flag=True, help="Reset all circuit breakers first.")
@click.option("--watch", is_flag=True, help="Repeat the check until interrupted with Ctrl+C.")
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=30.0,
    show_default=True,
    help="Seconds between checks in watch mode.",
)
def health(  # noqa: PLR0913
    state_file: Path | None,
    json_output: bool,
    component: str | None,
    simple: bool,
    reset_breakers: bool,
    watch: bool,
    interval_seconds: float,
) -> None:
    """Check system health: storage, pipeline state, configuration, circuit breakers, endpoints."""

    command = HealthCommand(
        state_file=state_file,
        json_output=json_output,
        component=component,
        simple=simple,
        reset_breakers=reset_breakers,
        watch=watch,
        interval_seconds=interval_seconds,
    )
    if command.watch:
        result = CONTROLLER.watch_health(command, _emit_lines)
    else:
        result = CONTROLLER.health(command)
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("System is not healthy.")


@porter_bridges.group()
def state() -> None:
    """Pipeline state commands."""


@state.command("show")
@_STATE_FILE_OPTION
@click.option(
    "--phase",
    type=click.Choice(STATUS_CHOICES),
    default=None,
    help="List the sources currently in this status.",
)
def state_show(state_file: Path | None, phase: str | None) -> None:
    """Summarize the pipeline state without modifying it."""

    result = CONTROLLER.show_state(StateShowCommand(state_file=state_file, phase=phase))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Pipeline state is unreadable.")


@state.command("validate")
@_STATE_FILE_OPTION
@click.option("--phase", type=click.Choice(PHASE_NAMES), required=True, help="Phase to check.")
@click.option(
    "--max-failure-rate",
    type=click.FloatRange(min=0, max=1),
    default=None,
    help="Highest tolerated failure rate. Defaults to PORTER_BRIDGES_MAX_FAILURE_RATE.",
)
def state_validate(state_file: Path | None, phase: str, max_failure_rate: float | None) -> None:
    """Fail when a phase produced no results or failed too often."""

    result = CONTROLLER.validate_state(
        StateValidateCommand(
            state_file=state_file,
            phase=phase,
            max_failure_rate=max_failure_rate,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"{phase} output validation failed.")


@porter_bridges.command("run")
@_STATE_FILE_OPTION
@click.option("--phase", type=click.Choice(RUNNABLE_PHASES), required=True, help="Phase to run.")
@click.option("--include-failed", is_flag=True, help="Retry sources that failed in this phase.")
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel sources. Defaults to PORTER_BRIDGES_MAX_CONCURRENCY.",
)
@click.option(
    "--validate-output",
    is_flag=True,
    help="Fail when the phase produced no results or failed too often.",
)
def run(
    state_file: Path | None,
    phase: str,
    include_failed: bool,
    max_concurrency: int | None,
    validate_output: bool,
) -> None:
    """Run one pipeline phase over the sources in the state file."""

    try:
        result = CONTROLLER.run_phase(
            RunPhaseCommand(
                state_file=state_file,
                phase=phase,
                include_failed=include_failed,
                max_concurrency=max_concurrency,
                validate_output=validate_output,
            ),
        )
    except (ValueError, EnhancedError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"{phase} phase did not complete.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    porter_bridges()
