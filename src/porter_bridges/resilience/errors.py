"""Normalized fault representation shared by all resilience components."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from porter_bridges.timeutil import utc_now_iso


CIRCUIT_OPEN_CODE = "CIRCUIT_OPEN"


class ErrorCategory(str, Enum):
    """What kind of dependency or input failed."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    SYSTEM = "system"
    EXTERNAL_API = "external_api"
    AI_PROCESSING = "ai_processing"
    FILE_SYSTEM = "file_system"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategy(str, Enum):
    """How the caller is expected to react to a fault."""

    RETRY = "retry"
    CIRCUIT_BREAKER = "circuit_breaker"
    FALLBACK = "fallback"
    ESCALATE = "escalate"
    IGNORE = "ignore"
    ABORT = "abort"


@dataclass(slots=True, frozen=True)
class CategoryPolicy:
    severity: ErrorSeverity
    strategy: RecoveryStrategy


CATEGORY_POLICIES: dict[ErrorCategory, CategoryPolicy] = {
    ErrorCategory.NETWORK: CategoryPolicy(ErrorSeverity.MEDIUM, RecoveryStrategy.RETRY),
    ErrorCategory.RATE_LIMIT: CategoryPolicy(
        ErrorSeverity.MEDIUM,
        RecoveryStrategy.CIRCUIT_BREAKER,
    ),
    ErrorCategory.AUTHENTICATION: CategoryPolicy(ErrorSeverity.HIGH, RecoveryStrategy.ESCALATE),
    ErrorCategory.VALIDATION: CategoryPolicy(ErrorSeverity.HIGH, RecoveryStrategy.ABORT),
    ErrorCategory.SYSTEM: CategoryPolicy(ErrorSeverity.CRITICAL, RecoveryStrategy.ESCALATE),
    ErrorCategory.EXTERNAL_API: CategoryPolicy(
        ErrorSeverity.MEDIUM,
        RecoveryStrategy.CIRCUIT_BREAKER,
    ),
    ErrorCategory.AI_PROCESSING: CategoryPolicy(ErrorSeverity.HIGH, RecoveryStrategy.RETRY),
    ErrorCategory.FILE_SYSTEM: CategoryPolicy(ErrorSeverity.HIGH, RecoveryStrategy.RETRY),
    ErrorCategory.CONFIGURATION: CategoryPolicy(ErrorSeverity.HIGH, RecoveryStrategy.ABORT),
    ErrorCategory.TIMEOUT: CategoryPolicy(ErrorSeverity.MEDIUM, RecoveryStrategy.RETRY),
    ErrorCategory.UNKNOWN: CategoryPolicy(ErrorSeverity.MEDIUM, RecoveryStrategy.RETRY),
}


class EnhancedError(Exception):
    """Classified fault with severity, recovery strategy and diagnostic context.

    Severity and strategy default to the category policy; callers that know
    better (for example an HTTP 5xx, which is an external API fault that is
    still worth retrying) pass them explicitly.
    """

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity | None = None,
        recovery_strategy: RecoveryStrategy | None = None,
        context: dict[str, Any] | None = None,
        source: str = "unknown",
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        policy = CATEGORY_POLICIES[category]
        self.message = message
        self.category = category
        self.severity = severity or policy.severity
        self.recovery_strategy = recovery_strategy or policy.strategy
        self.context: dict[str, Any] = dict(context or {})
        self.source = source
        self.code = code or category.value
        self.timestamp = utc_now_iso()

    @property
    def retryable(self) -> bool:
        return self.recovery_strategy is RecoveryStrategy.RETRY

    def with_context(self, **extra: Any) -> EnhancedError:
        """Return a copy carrying additional context keys."""

        clone = EnhancedError(
            self.message,
            category=self.category,
            severity=self.severity,
            recovery_strategy=self.recovery_strategy,
            context={**self.context, **extra},
            source=self.source,
            code=self.code,
        )
        clone.timestamp = self.timestamp
        clone.__cause__ = self.__cause__
        return clone

    def to_log_format(self) -> dict[str, Any]:
        """Serialize for structured logs and JSON health output."""

        return {
            "error": self.message,
            "code": self.code,
            "category": self.category.value,
            "severity": self.severity.value,
            "recovery_strategy": self.recovery_strategy.value,
            "retryable": self.retryable,
            "context": {key: _json_safe(value) for key, value in self.context.items()},
            "timestamp": self.timestamp,
            "source": self.source,
        }

    def to_cli_format(self) -> str:
        return "\n".join(
            [
                f"{self.category.value.upper()} ERROR [{self.severity.value}]",
                f"Source: {self.source}",
                f"Message: {self.message}",
                f"Recovery: {self.recovery_strategy.value}",
                f"Retryable: {self.retryable}",
                f"Timestamp: {self.timestamp}",
            ],
        )

    def __repr__(self) -> str:
        return (
            f"EnhancedError({self.message!r}, category={self.category.value}, "
            f"strategy={self.recovery_strategy.value}, code={self.code!r})"
        )


class HttpCallError(Exception):
    """Failed HTTP call, raised by the HTTP client with structured fields.

    ``reason`` is ``"status"`` for a completed request with a non-success
    status code, ``"timeout"`` or ``"network"`` for transport failures.
    """

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int = 0,
        reason: str = "status",
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.reason = reason


class ToolRunError(Exception):
    """Failed subprocess invocation of the content-processing tool.

    ``kind`` is one of ``invalid_command``, ``not_found``, ``start_failed``,
    ``timed_out``, ``exit_code`` and ``invalid_output``.
    """

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        kind: str,
        tool: str = "tool",
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.tool = tool
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    @property
    def transient(self) -> bool:
        return self.kind in {"start_failed", "timed_out"}


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, Enum):
        return value.value
    return repr(value)
