from __future__ import annotations

import errno
import json

import allure
import httpx
import pytest

from porter_bridges.resilience.classifier import classify_error, is_dependency_failure
from porter_bridges.resilience.errors import (
    EnhancedError,
    ErrorCategory,
    ErrorSeverity,
    HttpCallError,
    RecoveryStrategy,
    ToolRunError,
)

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Error Classification"),
]


def test_enhanced_error_is_returned_unchanged() -> None:
    error = EnhancedError("already classified", category=ErrorCategory.SYSTEM, source="x")

    assert classify_error(error, "other") is error


def test_category_policy_sets_severity_and_strategy() -> None:
    error = EnhancedError("bad input", category=ErrorCategory.VALIDATION)

    assert error.severity is ErrorSeverity.HIGH
    assert error.recovery_strategy is RecoveryStrategy.ABORT
    assert error.code == "validation"
    assert not error.retryable


@pytest.mark.parametrize(
    ("status", "category", "strategy"),
    [
        (429, ErrorCategory.RATE_LIMIT, RecoveryStrategy.CIRCUIT_BREAKER),
        (401, ErrorCategory.AUTHENTICATION, RecoveryStrategy.ESCALATE),
        (403, ErrorCategory.AUTHENTICATION, RecoveryStrategy.ESCALATE),
        (408, ErrorCategory.TIMEOUT, RecoveryStrategy.RETRY),
        (404, ErrorCategory.EXTERNAL_API, RecoveryStrategy.ABORT),
        (400, ErrorCategory.VALIDATION, RecoveryStrategy.ABORT),
        (503, ErrorCategory.EXTERNAL_API, RecoveryStrategy.RETRY),
    ],
)
def test_http_call_errors_classify_from_status(
    status: int,
    category: ErrorCategory,
    strategy: RecoveryStrategy,
) -> None:
    error = HttpCallError(f"HTTP {status}", url="https://example.com/a", status_code=status)

    classified = classify_error(error, "collection")

    assert classified.category is category
    assert classified.recovery_strategy is strategy
    assert classified.code == f"HTTP_{status}"
    assert classified.source == "collection"
    assert classified.context["url"] == "https://example.com/a"
    assert classified.__cause__ is error


def test_http_transport_reasons_are_network_and_timeout() -> None:
    timeout = classify_error(HttpCallError("slow", url="https://a.test", reason="timeout"))
    network = classify_error(HttpCallError("reset", url="https://a.test", reason="network"))

    assert timeout.category is ErrorCategory.TIMEOUT
    assert timeout.code == "ETIMEDOUT"
    assert timeout.retryable
    assert network.category is ErrorCategory.NETWORK
    assert network.retryable


def test_httpx_exceptions_are_mapped_by_type() -> None:
    request = httpx.Request("GET", "https://example.com")

    assert classify_error(httpx.ReadTimeout("t", request=request)).category is ErrorCategory.TIMEOUT
    assert classify_error(httpx.ConnectError("c", request=request)).category is ErrorCategory.NETWORK

    response = httpx.Response(502, request=request)
    status_error = httpx.HTTPStatusError("bad gateway", request=request, response=response)
    classified = classify_error(status_error)
    assert classified.category is ErrorCategory.EXTERNAL_API
    assert classified.code == "HTTP_502"


def test_builtin_os_errors_are_mapped_by_type() -> None:
    refused = ConnectionRefusedError(errno.ECONNREFUSED, "refused")
    missing = FileNotFoundError(errno.ENOENT, "no such file", "/tmp/missing")

    assert classify_error(refused).category is ErrorCategory.NETWORK
    assert classify_error(refused).code == "ECONNREFUSED"
    assert classify_error(missing).category is ErrorCategory.FILE_SYSTEM
    assert classify_error(missing).code == "ENOENT"
    assert classify_error(TimeoutError("late")).category is ErrorCategory.TIMEOUT


def test_json_decode_error_is_validation() -> None:
    try:
        json.loads("{not json")
    except json.JSONDecodeError as error:
        classified = classify_error(error)

    assert classified.category is ErrorCategory.VALIDATION
    assert classified.code == "PARSE_ERROR"
    assert classified.recovery_strategy is RecoveryStrategy.ABORT


@pytest.mark.parametrize(
    ("message", "category"),
    [
        ("Connection refused by peer", ErrorCategory.NETWORK),
        ("Too Many Requests", ErrorCategory.RATE_LIMIT),
        ("Unauthorized access", ErrorCategory.AUTHENTICATION),
        ("operation timed out", ErrorCategory.TIMEOUT),
        ("cannot open directory", ErrorCategory.FILE_SYSTEM),
        ("schema mismatch", ErrorCategory.VALIDATION),
        ("something odd", ErrorCategory.UNKNOWN),
    ],
)
def test_untyped_exceptions_fall_back_to_message_matching(
    message: str,
    category: ErrorCategory,
) -> None:
    assert classify_error(RuntimeError(message)).category is category


def test_network_patterns_win_over_rate_limit() -> None:
    classified = classify_error(RuntimeError("network rate limit 429"))

    assert classified.category is ErrorCategory.NETWORK


def test_dict_and_string_inputs_are_classified() -> None:
    from_dict = classify_error({"message": "upstream", "status": 429}, "api")
    from_string = classify_error("plain failure", "api")

    assert from_dict.category is ErrorCategory.RATE_LIMIT
    assert from_dict.code == "HTTP_429"
    assert from_string.category is ErrorCategory.UNKNOWN
    assert from_string.message == "plain failure"
    assert from_string.context == {"original_error": "plain failure"}


def test_tool_run_errors_classify_by_kind() -> None:
    not_found = classify_error(ToolRunError("missing", kind="not_found", tool="distiller"))
    invalid = classify_error(ToolRunError("bad template", kind="invalid_command"))
    timed_out = classify_error(ToolRunError("slow", kind="timed_out"))
    bad_output = classify_error(ToolRunError("garbage", kind="invalid_output"))

    assert not_found.category is ErrorCategory.CONFIGURATION
    assert not_found.code == "TOOL_NOT_FOUND"
    assert invalid.code == "TOOL_INVALID_COMMAND"
    assert invalid.recovery_strategy is RecoveryStrategy.ABORT
    assert timed_out.category is ErrorCategory.TIMEOUT
    assert timed_out.retryable
    assert bad_output.category is ErrorCategory.VALIDATION


def test_tool_exit_code_uses_output_classifier() -> None:
    error = ToolRunError(
        "distiller exited with 1",
        kind="exit_code",
        tool="distiller",
        exit_code=1,
        stderr="Quota exceeded for this project",
    )

    classified = classify_error(error, "distillation")

    assert classified.category is ErrorCategory.RATE_LIMIT
    assert classified.code == "TOOL_EXIT_1"
    assert classified.context["matched_rule"] == "billing_or_quota"
    assert classified.context["reason_code"] == "distiller_billing_or_quota"


def test_log_and_cli_formats_are_serializable() -> None:
    error = EnhancedError(
        "boom",
        category=ErrorCategory.NETWORK,
        context={"attempt": 2, "category": ErrorCategory.NETWORK, "obj": object()},
        source="collection",
    )

    payload = error.to_log_format()

    json.dumps(payload)
    assert payload["category"] == "network"
    assert payload["retryable"] is True
    assert payload["context"]["category"] == "network"
    assert "NETWORK ERROR [medium]" in error.to_cli_format()


def test_with_context_keeps_identity_fields() -> None:
    error = EnhancedError("boom", category=ErrorCategory.TIMEOUT, code="X", context={"a": 1})

    clone = error.with_context(b=2)

    assert clone.context == {"a": 1, "b": 2}
    assert clone.code == "X"
    assert clone.timestamp == error.timestamp
    assert error.context == {"a": 1}


@pytest.mark.parametrize(
    ("error", "dependency"),
    [
        (ConnectionResetError("connection reset"), True),
        (TimeoutError("read timed out"), True),
        (HttpCallError("HTTP 429", url="https://x.test", status_code=429), True),
        (HttpCallError("HTTP 503", url="https://x.test", status_code=503), True),
        (
            EnhancedError(
                "open",
                category=ErrorCategory.EXTERNAL_API,
                recovery_strategy=RecoveryStrategy.CIRCUIT_BREAKER,
                code="CIRCUIT_OPEN",
            ),
            True,
        ),
        (HttpCallError("HTTP 404", url="https://x.test", status_code=404), False),
        (HttpCallError("HTTP 400", url="https://x.test", status_code=400), False),
        (ValueError("schema validation failed"), False),
        (ToolRunError("bad output", kind="invalid_output"), False),
        (ToolRunError("missing", kind="not_found"), False),
    ],
)
def test_dependency_failures_are_told_apart_from_item_faults(error: Exception, dependency: bool) -> None:
    assert is_dependency_failure(classify_error(error, "svc")) is dependency
