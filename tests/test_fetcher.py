"""Tests for the HTTP fetcher."""

from __future__ import annotations

import allure
import httpx
import pytest

from porter_bridges.http.fetcher import HttpFetcher
from porter_bridges.resilience.errors import HttpCallError

pytestmark = [
    allure.epic("Pipeline Operations"),
    allure.feature("HTTP Collection"),
]


def _fetcher(handler) -> HttpFetcher:
    return HttpFetcher(transport=httpx.MockTransport(handler), user_agent="tests/1.0")


class TestFetchOrRaise:
    def test_success_returns_body_and_metadata(self):
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["ua"] = request.headers["user-agent"]
            return httpx.Response(
                200,
                text="hello",
                headers={"content-type": "text/plain; charset=utf-8"},
            )

        with _fetcher(handler) as fetcher:
            result = fetcher.fetch_or_raise("https://example.com/page")

        assert result.is_success
        assert result.content == "hello"
        assert result.content_type.startswith("text/plain")
        assert result.final_url == "https://example.com/page"
        assert seen["ua"] == "tests/1.0"

    def test_follows_redirects(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": "https://example.com/new"})
            return httpx.Response(200, text="moved")

        with _fetcher(handler) as fetcher:
            result = fetcher.fetch_or_raise("https://example.com/old")

        assert result.final_url == "https://example.com/new"
        assert result.content == "moved"

    def test_status_error_carries_code(self):
        with _fetcher(lambda request: httpx.Response(503)) as fetcher:
            with pytest.raises(HttpCallError) as caught:
                fetcher.fetch_or_raise("https://example.com/busy")

        assert caught.value.status_code == 503
        assert caught.value.reason == "status"
        assert caught.value.url == "https://example.com/busy"

    def test_timeout_and_network_reasons(self):
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        def refused(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with _fetcher(timeout) as fetcher, pytest.raises(HttpCallError) as caught:
            fetcher.fetch_or_raise("https://example.com/")
        assert caught.value.reason == "timeout"

        with _fetcher(refused) as fetcher, pytest.raises(HttpCallError) as caught:
            fetcher.fetch_or_raise("https://example.com/")
        assert caught.value.reason == "network"
        assert caught.value.status_code == 0


class TestFetch:
    def test_fetch_returns_failure_result_instead_of_raising(self):
        with _fetcher(lambda request: httpx.Response(404)) as fetcher:
            result = fetcher.fetch("https://example.com/missing")

        assert not result.is_success
        assert result.status_code == 404
        assert "404" in (result.error or "")

    def test_probe_returns_status_code(self):
        with _fetcher(lambda request: httpx.Response(418)) as fetcher:
            assert fetcher.probe("https://example.com/teapot") == 418
