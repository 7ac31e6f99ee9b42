"""Deterministic classification of content-processing tool failures."""

from __future__ import annotations

from dataclasses import dataclass

from porter_bridges.resilience.errors import ErrorCategory

TOOL_FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
    "exceeded",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "try again later",
    "connection reset",
    "network error",
    "could not resolve host",
    "overloaded",
    "503",
)


@dataclass(slots=True)
class ToolFailureClassification:
    """Normalized tool failure classification result."""

    category: ErrorCategory
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_context(self, *, tool: str, exit_code: int) -> dict[str, object]:
        """Serialize classifier diagnostics for error context."""

        return {
            "classifier_version": TOOL_FAILURE_CLASSIFIER_VERSION,
            "tool": tool,
            "exit_code": exit_code,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


_RULES: tuple[tuple[str, tuple[str, ...], ErrorCategory], ...] = (
    ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, ErrorCategory.RATE_LIMIT),
    ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, ErrorCategory.AUTHENTICATION),
    ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS, ErrorCategory.CONFIGURATION),
    ("rate_limit", _RATE_LIMIT_PATTERNS, ErrorCategory.RATE_LIMIT),
)


def classify_tool_failure(
    *,
    tool: str,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> ToolFailureClassification:
    """Classify a non-zero tool exit into an error category."""

    haystack = f"{stderr}\n{stdout}".lower()

    for rule, patterns, category in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ToolFailureClassification(
                category=category,
                reason_code=f"{tool}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return ToolFailureClassification(
            category=ErrorCategory.AI_PROCESSING,
            reason_code=f"{tool}_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return ToolFailureClassification(
        category=ErrorCategory.AI_PROCESSING,
        reason_code=f"{tool}_processing_failed",
        matched_rule="fallback",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
