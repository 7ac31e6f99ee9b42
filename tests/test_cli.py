from __future__ import annotations

import json
from pathlib import Path

import allure
import httpx
import pytest
from click.testing import CliRunner

from porter_bridges.http.fetcher import HttpFetcher
from porter_bridges.main import porter_bridges
from porter_bridges.pipeline import controllers
from porter_bridges.pipeline.state import PipelineStateManager

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Pipeline Commands"),
]


def _seed(state_file: Path, sources: dict[str, dict]) -> None:
    manager = PipelineStateManager(state_file)
    manager.load_state()
    manager.add_sources(sources)
    manager.save_state()


@pytest.fixture()
def docs_site(monkeypatch) -> dict[str, int]:
    """Serve fake documentation pages; map a path to a status to make it fail."""

    statuses: dict[str, int] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.get(request.url.path, 200)
        return httpx.Response(status, text=f"page {request.url.path} body")

    def _fetcher(**kwargs) -> HttpFetcher:
        return HttpFetcher(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(controllers, "HttpFetcher", _fetcher)
    return statuses


def _make_generated_dirs(generated: Path) -> None:
    for name in ("collected-content", "distilled-content", "packages", "bundles"):
        (generated / name).mkdir(parents=True, exist_ok=True)
    (generated.parent / "logs").mkdir(exist_ok=True)


def test_full_collection_and_distillation_flow(pipeline_env, docs_site, fake_distiller) -> None:
    state_file = pipeline_env / "pipeline-state.json"
    _seed(
        state_file,
        {
            "forge": {"url": "https://docs.test/forge", "title": "Forge"},
            "fabric": {"url": "https://docs.test/fabric", "title": "Fabric"},
        },
    )
    runner = CliRunner()

    collected = runner.invoke(
        porter_bridges,
        ["run", "--phase", "collection", "--max-concurrency", "1", "--validate-output"],
    )
    assert collected.exit_code == 0, collected.output
    assert "collection: 2/2 succeeded" in collected.output

    distilled = runner.invoke(porter_bridges, ["run", "--phase", "distillation"])
    assert distilled.exit_code == 0, distilled.output
    assert "distillation: 2/2 succeeded" in distilled.output

    state = json.loads(state_file.read_text("utf-8"))
    assert state["sources"]["forge"]["status"] == "distilled"
    assert state["stats"]["distillation"]["total_input_tokens"] == 6
    assert (pipeline_env / "collected-content" / "forge.txt").is_file()

    shown = runner.invoke(porter_bridges, ["state", "show", "--phase", "distilled"])
    assert shown.exit_code == 0, shown.output
    assert "Sources: 2 (completion 100%)" in shown.output
    assert "  forge: Forge" in shown.output

    validated = runner.invoke(porter_bridges, ["state", "validate", "--phase", "distillation"])
    assert validated.exit_code == 0, validated.output
    assert "distillation output OK: 2 succeeded" in validated.output


def test_validate_output_fails_when_nothing_was_collected(pipeline_env, docs_site) -> None:
    state_file = pipeline_env / "pipeline-state.json"
    _seed(state_file, {"gone": {"url": "https://docs.test/gone"}})
    docs_site["/gone"] = 404

    result = CliRunner().invoke(
        porter_bridges,
        ["run", "--phase", "collection", "--validate-output"],
    )

    assert result.exit_code == 1
    assert "failed=1" in result.output
    assert "CRITICAL PIPELINE FAILURE" in result.output

    shown = CliRunner().invoke(porter_bridges, ["state", "show", "--phase", "failed"])
    assert "error=HTTP_404 retry_count=1" in shown.output


def test_run_halts_when_the_only_service_fails(pipeline_env, docs_site) -> None:
    state_file = pipeline_env / "pipeline-state.json"
    _seed(
        state_file,
        {"a": {"url": "https://docs.test/a"}, "b": {"url": "https://docs.test/b"}},
    )
    docs_site["/a"] = 503
    docs_site["/b"] = 503

    result = CliRunner().invoke(
        porter_bridges,
        ["run", "--phase", "collection", "--max-concurrency", "1"],
    )

    assert result.exit_code == 1
    assert "not_started=1" in result.output
    assert "Run halted: degradation level critical" in result.output
    assert "Failed services: collection:docs.test" in result.output


def test_missing_page_fails_only_its_source(pipeline_env, docs_site) -> None:
    state_file = pipeline_env / "pipeline-state.json"
    _seed(
        state_file,
        {key: {"url": f"https://docs.test/{key}"} for key in ("a", "b", "c")},
    )
    docs_site["/a"] = 404

    result = CliRunner().invoke(
        porter_bridges,
        ["run", "--phase", "collection", "--max-concurrency", "1"],
    )

    assert result.exit_code == 0, result.output
    assert "collection: 2/3 succeeded, failed=1" in result.output
    assert "Run halted" not in result.output


def test_distillation_requires_tool_command(pipeline_env) -> None:
    result = CliRunner().invoke(porter_bridges, ["run", "--phase", "distillation"])

    assert result.exit_code == 1
    assert "PORTER_BRIDGES_TOOL_COMMAND is required" in result.output


def test_run_reports_corrupt_state(pipeline_env) -> None:
    pipeline_env.mkdir(parents=True)
    (pipeline_env / "pipeline-state.json").write_text("{broken", "utf-8")

    result = CliRunner().invoke(porter_bridges, ["run", "--phase", "collection"])

    assert result.exit_code == 1
    assert "not valid JSON" in result.output


def test_state_show_without_state_file(pipeline_env) -> None:
    result = CliRunner().invoke(porter_bridges, ["state", "show"])

    assert result.exit_code == 0
    assert "No pipeline state at" in result.output
    assert not (pipeline_env / "pipeline-state.json").exists()


def test_state_show_rejects_invalid_document(pipeline_env) -> None:
    pipeline_env.mkdir(parents=True)
    (pipeline_env / "pipeline-state.json").write_text(json.dumps({"sources": []}), "utf-8")

    result = CliRunner().invoke(porter_bridges, ["state", "show"])

    assert result.exit_code == 1
    assert "sources must be an object" in result.output


def test_health_simple_and_json(pipeline_env) -> None:
    _make_generated_dirs(pipeline_env)
    runner = CliRunner()

    simple = runner.invoke(porter_bridges, ["health", "--simple"])
    assert simple.exit_code == 0, simple.output
    assert "Status: HEALTHY" in simple.output

    full = runner.invoke(porter_bridges, ["health", "--json"])
    assert full.exit_code == 0, full.output
    payload = json.loads(full.output)
    assert payload["healthy"] is True
    assert set(payload["components"]) == {
        "file_system",
        "pipeline_state",
        "generated_directories",
        "circuit_breakers",
        "configuration",
    }


def test_health_text_report_lists_failures(pipeline_env) -> None:
    result = CliRunner().invoke(porter_bridges, ["health", "--reset-breakers"])

    assert result.exit_code == 1
    assert "System Status: UNHEALTHY" in result.output
    assert "[FAIL] generated_directories" in result.output
    assert "Errors:" in result.output


def test_health_single_component(pipeline_env) -> None:
    runner = CliRunner()

    known = runner.invoke(porter_bridges, ["health", "--component", "pipeline_state"])
    unknown = runner.invoke(porter_bridges, ["health", "--component", "nope"])

    assert known.exit_code == 0, known.output
    assert "[OK] pipeline_state" in known.output
    assert unknown.exit_code == 1
    assert "CONFIGURATION ERROR" in unknown.output


def test_version_option() -> None:
    result = CliRunner().invoke(porter_bridges, ["--version"])

    assert result.exit_code == 0
    assert "porter-bridges" in result.output


def test_health_watch_repeats_until_interrupted(pipeline_env, monkeypatch) -> None:
    _make_generated_dirs(pipeline_env)
    sleeps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise KeyboardInterrupt

    monkeypatch.setattr(controllers.time, "sleep", fake_sleep)

    result = CliRunner().invoke(porter_bridges, ["health", "--watch", "--interval", "5", "--simple"])

    assert result.exit_code == 0, result.output
    assert "Health monitoring started (interval: 5s)" in result.output
    assert "Health check #1" in result.output
    assert "Health check #2" in result.output
    assert "stopped after 2 check(s) (interrupted)" in result.output
    assert sleeps == [5.0, 5.0]


def test_watch_health_stops_after_max_checks(pipeline_env) -> None:
    emitted: list[list[str]] = []

    result = controllers.PipelineCliController().watch_health(
        controllers.HealthCommand(state_file=None, component="configuration", watch=True),
        emitted.append,
        sleep=lambda _: None,
        max_checks=3,
    )

    checks = [lines for lines in emitted if any("[OK] configuration" in line for line in lines)]
    assert len(checks) == 3
    assert result.success
    assert result.lines[-1].endswith("stopped after 3 check(s) (completed)")


def test_health_reports_invalid_configuration(pipeline_env, monkeypatch) -> None:
    monkeypatch.setenv("PORTER_BRIDGES_MAX_FAILURE_RATE", "2")

    result = CliRunner().invoke(porter_bridges, ["health", "--component", "configuration"])

    assert result.exit_code == 1
    assert "[FAIL] configuration" in result.output
    assert "PORTER_BRIDGES_MAX_FAILURE_RATE" in result.output
