from __future__ import annotations

import allure

from porter_bridges.resilience.errors import ErrorCategory
from porter_bridges.resilience.tool_failures import (
    TOOL_FAILURE_CLASSIFIER_VERSION,
    classify_tool_failure,
)

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Tool Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert TOOL_FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_billing_over_transient_exit_code() -> None:
    classified = classify_tool_failure(
        tool="distiller",
        exit_code=137,
        stdout="",
        stderr="Quota exceeded for this project",
    )
    assert classified.category is ErrorCategory.RATE_LIMIT
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"


def test_classifier_maps_model_unavailable_to_configuration() -> None:
    classified = classify_tool_failure(
        tool="distiller",
        exit_code=1,
        stdout="",
        stderr="Invalid model requested",
    )
    assert classified.category is ErrorCategory.CONFIGURATION
    assert classified.reason_code == "distiller_model_not_available"


def test_classifier_maps_auth_failures() -> None:
    classified = classify_tool_failure(
        tool="distiller",
        exit_code=1,
        stdout="Error: not logged in",
        stderr="",
    )
    assert classified.category is ErrorCategory.AUTHENTICATION
    assert classified.matched_rule == "access_or_auth"


def test_classifier_maps_transient_output_to_retryable_processing() -> None:
    classified = classify_tool_failure(
        tool="distiller",
        exit_code=1,
        stdout="",
        stderr="service temporarily unavailable",
    )
    assert classified.category is ErrorCategory.AI_PROCESSING
    assert classified.matched_rule == "generic_transient"


def test_classifier_uses_transient_exit_code_without_pattern() -> None:
    classified = classify_tool_failure(tool="distiller", exit_code=143, stdout="", stderr="")
    assert classified.matched_rule == "transient_exit_code"
    assert classified.matched_pattern is None


def test_classifier_falls_back_to_processing_failure() -> None:
    classified = classify_tool_failure(
        tool="distiller",
        exit_code=2,
        stdout="fatal: unsupported syntax in template",
        stderr="",
    )
    assert classified.category is ErrorCategory.AI_PROCESSING
    assert classified.matched_rule == "fallback"
    assert classified.to_context(tool="distiller", exit_code=2)["classifier_version"] == 1
