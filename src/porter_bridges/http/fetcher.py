"""HTTP client used to collect source content."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from porter_bridges.resilience.errors import HttpCallError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_TRANSPORT_RETRIES = 0
DEFAULT_USER_AGENT = "porter-bridges/1.0 (+https://github.com/porter-bridges/porter-bridges)"


@dataclass(slots=True)
class FetchResult:
    """Result of an HTTP fetch operation."""

    url: str
    status_code: int
    content: str
    content_type: str
    is_success: bool
    final_url: str = ""
    error: str | None = None
    elapsed_ms: float = 0.0


class HttpFetcher:
    """HTTP client wrapper with timeout and user-agent configuration.

    ``transport_retries`` only retries connection setup inside httpx; request
    level retries belong to ``RetryManager`` so every attempt is classified.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        transport_retries: int = DEFAULT_TRANSPORT_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds)
        base_headers = {"User-Agent": user_agent}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            timeout=self._timeout,
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=transport_retries),
            follow_redirects=True,
        )

    def fetch(self, url: str) -> FetchResult:
        """Fetch URL content, returning structured result."""

        try:
            return self.fetch_or_raise(url)
        except HttpCallError as error:
            return FetchResult(
                url=url,
                status_code=error.status_code,
                content="",
                content_type="",
                is_success=False,
                error=error.reason if error.reason == "timeout" else str(error),
            )

    def fetch_or_raise(self, url: str) -> FetchResult:
        """Fetch URL content; raise ``HttpCallError`` for any unsuccessful outcome."""

        started = time.monotonic()
        try:
            response = self._client.get(url)
        except httpx.TimeoutException as error:
            logger.warning("Timeout fetching %s", url)
            raise HttpCallError(
                f"Timeout fetching {url}: {error}",
                url=url,
                reason="timeout",
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error fetching %s: %s", url, error)
            raise HttpCallError(
                f"Network error fetching {url}: {error}",
                url=url,
                reason="network",
            ) from error

        if not response.is_success:
            logger.warning("HTTP %s fetching %s", response.status_code, url)
            raise HttpCallError(
                f"HTTP {response.status_code} {response.reason_phrase} fetching {url}",
                url=url,
                status_code=response.status_code,
            )

        return FetchResult(
            url=url,
            status_code=response.status_code,
            content=response.text,
            content_type=response.headers.get("content-type", ""),
            is_success=True,
            final_url=str(response.url),
            elapsed_ms=round((time.monotonic() - started) * 1000, 3),
        )

    def probe(self, url: str) -> int:
        """Return the status code of a GET to ``url``; transport failures raise."""

        try:
            response = self._client.get(url)
        except httpx.TimeoutException as error:
            raise HttpCallError(f"Timeout probing {url}", url=url, reason="timeout") from error
        except httpx.HTTPError as error:
            raise HttpCallError(
                f"Network error probing {url}: {error}",
                url=url,
                reason="network",
            ) from error
        return response.status_code

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpFetcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
