"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from porter_bridges.config import Settings

_ENV_PREFIX = "PORTER_BRIDGES_"

_FAKE_DISTILLER = """\
import json
import sys

source, target = sys.argv[1], sys.argv[2]
with open(source, encoding="utf-8") as handle:
    words = len(handle.read().split())
with open(target, "w", encoding="utf-8") as handle:
    json.dump(dict(words=words, token_usage=dict(input_tokens=words, output_tokens=1)), handle)
"""


@pytest.fixture()
def pipeline_env(monkeypatch, tmp_path: Path) -> Path:
    """Point generated content at ``tmp_path`` and make retries instant."""

    for name in list(os.environ):
        if name.startswith(_ENV_PREFIX):
            monkeypatch.delenv(name)
    generated = tmp_path / "generated"
    monkeypatch.setenv("PORTER_BRIDGES_GENERATED_DIR", str(generated))
    monkeypatch.setenv("PORTER_BRIDGES_LOGS_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("PORTER_BRIDGES_RETRY_MAX_RETRIES", "1")
    monkeypatch.setenv("PORTER_BRIDGES_RETRY_INITIAL_DELAY_SECONDS", "0")
    monkeypatch.setenv("PORTER_BRIDGES_RETRY_MAX_DELAY_SECONDS", "0")
    return generated


@pytest.fixture()
def fake_distiller(monkeypatch, tmp_path: Path) -> str:
    """Monkeypatch Settings.from_env to run a local script as the tool."""

    script = tmp_path / "fake_distiller.py"
    script.write_text(_FAKE_DISTILLER, "utf-8")
    template = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{input_file}} {{output_file}}"
    original_from_env = Settings.from_env

    def _patched_from_env(state_file=None):
        settings = original_from_env(state_file=state_file)
        return replace(settings, tool=replace(settings.tool, command_template=template))

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))
    return template
