"""Ready-made phase operations: collect over HTTP, distill with the CLI tool."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Any

from porter_bridges.backend.base import ToolBackend, ToolRunRequest
from porter_bridges.http.fetcher import HttpFetcher
from porter_bridges.resilience.errors import EnhancedError, ErrorCategory, ToolRunError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(key: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", key).strip("._")
    return cleaned or hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FetchOperation:
    """Download ``item["url"]`` into ``<content_dir>/<key>.txt``."""

    def __init__(self, fetcher: HttpFetcher, content_dir: Path) -> None:
        self.fetcher = fetcher
        self.content_dir = Path(content_dir)

    def __call__(self, key: str, item: dict[str, Any]) -> dict[str, Any]:
        url = item.get("url")
        if not isinstance(url, str) or not url.strip():
            raise EnhancedError(
                f"Source {key} has no url to collect",
                category=ErrorCategory.VALIDATION,
                context={"source_key": key},
                source="collection",
                code="MISSING_URL",
            )

        result = self.fetcher.fetch_or_raise(url)
        body = result.content.encode("utf-8")
        self.content_dir.mkdir(parents=True, exist_ok=True)
        content_path = self.content_dir / f"{safe_filename(key)}.txt"
        content_path.write_bytes(body)
        logger.debug("Collected %s (%d bytes) into %s", url, len(body), content_path)

        return {
            "status_code": result.status_code,
            "content_type": result.content_type,
            "size_bytes": len(body),
            "size_kb": round(len(body) / 1024, 2),
            "checksum": checksum(body),
            "final_url": result.final_url or url,
            "content_path": str(content_path),
        }


class ToolOperation:
    """Run the content-processing tool on the collected content of one item."""

    def __init__(  # noqa: PLR0913
        self,
        backend: ToolBackend,
        *,
        command_template: str,
        output_dir: Path,
        timeout_seconds: float,
        model: str = "",
        tool: str = "distiller",
    ) -> None:
        self.backend = backend
        self.command_template = command_template
        self.output_dir = Path(output_dir)
        self.timeout_seconds = timeout_seconds
        self.model = model
        self.tool = tool

    def __call__(self, key: str, item: dict[str, Any]) -> dict[str, Any]:
        input_path = _collected_content_path(key, item)
        output_path = self.output_dir / f"{safe_filename(key)}.json"
        output_path.unlink(missing_ok=True)

        run = self.backend.run(
            ToolRunRequest(
                input_path=input_path,
                output_path=output_path,
                command_template=self.command_template,
                timeout_seconds=self.timeout_seconds,
                model=self.model,
                tool=self.tool,
            ),
        )
        payload = self._read_output(output_path)

        metadata: dict[str, Any] = {
            "tool": self.tool,
            "model": self.model,
            "processing_duration_ms": round(run.duration_seconds * 1000),
            "source_checksum": checksum(input_path.read_bytes()),
            "output_path": str(output_path),
        }
        usage = payload.get("token_usage")
        if isinstance(usage, dict):
            metadata["token_usage"] = usage
        return metadata

    def _read_output(self, output_path: Path) -> dict[str, Any]:
        try:
            payload = json.loads(output_path.read_text("utf-8"))
        except FileNotFoundError as error:
            raise ToolRunError(
                f"{self.tool} produced no output file at {output_path}",
                kind="invalid_output",
                tool=self.tool,
            ) from error
        except json.JSONDecodeError as error:
            raise ToolRunError(
                f"{self.tool} output is not valid JSON: {error}",
                kind="invalid_output",
                tool=self.tool,
            ) from error
        if not isinstance(payload, dict):
            raise ToolRunError(
                f"{self.tool} output must be a JSON object",
                kind="invalid_output",
                tool=self.tool,
            )
        return payload


def _collected_content_path(key: str, item: dict[str, Any]) -> Path:
    metadata = item.get("collection_metadata")
    raw_path = metadata.get("content_path") if isinstance(metadata, dict) else None
    if not isinstance(raw_path, str) or not Path(raw_path).is_file():
        raise EnhancedError(
            f"Source {key} has no collected content to process",
            category=ErrorCategory.VALIDATION,
            context={"source_key": key, "content_path": raw_path},
            source="distillation",
            code="MISSING_CONTENT",
        )
    return Path(raw_path)
