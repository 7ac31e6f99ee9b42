"""Single place where raw failures become classified ``EnhancedError`` faults.

Typed errors raised at the call origins (``HttpCallError``, ``ToolRunError``)
are classified from their structured fields. Library and builtin exceptions are
mapped by type. Only foreign, untyped inputs fall through to message matching.
"""

from __future__ import annotations

import errno
import json
import socket
from typing import Any

import httpx

from porter_bridges.resilience.errors import (
    CIRCUIT_OPEN_CODE,
    EnhancedError,
    ErrorCategory,
    HttpCallError,
    RecoveryStrategy,
    ToolRunError,
)
from porter_bridges.resilience.tool_failures import classify_tool_failure

_NETWORK_CODES = frozenset({"ECONNREFUSED", "ENOTFOUND", "ECONNRESET", "EPIPE", "EHOSTUNREACH"})
_FILE_SYSTEM_CODES = frozenset({"ENOENT", "EACCES", "EPERM", "EEXIST"})
_NETWORK_ERRNOS = frozenset(
    {errno.ECONNREFUSED, errno.ECONNRESET, errno.EPIPE, errno.EHOSTUNREACH, errno.ENETUNREACH},
)
_FILE_SYSTEM_ERRNOS = frozenset({errno.ENOENT, errno.EACCES, errno.EPERM, errno.EEXIST})

_NETWORK_PATTERNS = ("network", "connection", "econnrefused", "enotfound", "econnreset", "socket")
_RATE_LIMIT_PATTERNS = ("rate limit", "too many requests", "429")
_AUTH_PATTERNS = ("unauthorized", "authentication", "401", "403")
_TIMEOUT_PATTERNS = ("timeout", "timed out", "etimedout")
_FILE_SYSTEM_PATTERNS = ("enoent", "eacces", "eperm", "file", "directory")
_VALIDATION_PATTERNS = ("validation", "invalid", "schema", "parse")
_DEPENDENCY_CATEGORIES = frozenset(
    {ErrorCategory.NETWORK, ErrorCategory.TIMEOUT, ErrorCategory.RATE_LIMIT},
)


def classify_error(error: object, source: str = "unknown") -> EnhancedError:
    """Turn any raised error into a categorized ``EnhancedError``."""

    if isinstance(error, EnhancedError):
        return error
    if isinstance(error, HttpCallError):
        return _classify_http_call(error, source)
    if isinstance(error, ToolRunError):
        return _classify_tool_run(error, source)
    if isinstance(error, BaseException):
        typed = _classify_by_type(error, source)
        if typed is not None:
            return typed
        return _classify_by_message(
            message=str(error) or type(error).__name__,
            code=_attr_str(error, "code"),
            status=_attr_int(error, "status") or _attr_int(error, "status_code"),
            source=source,
            context={"error_type": type(error).__name__},
            cause=error,
        )
    if isinstance(error, dict):
        return _classify_by_message(
            message=str(error.get("message", error)),
            code=_as_str(error.get("code")),
            status=_as_int(error.get("status")) or _as_int(error.get("status_code")),
            source=source,
            context={"original_error": error},
            cause=None,
        )

    return EnhancedError(
        error if isinstance(error, str) else repr(error),
        category=ErrorCategory.UNKNOWN,
        context={"original_error": error},
        source=source,
    )


def _classify_http_call(error: HttpCallError, source: str) -> EnhancedError:
    context: dict[str, Any] = {"url": error.url, "status_code": error.status_code}
    status = error.status_code
    message = str(error)

    if error.reason == "timeout":
        return _make(message, ErrorCategory.TIMEOUT, source, context, "ETIMEDOUT", error)
    if error.reason == "network":
        return _make(message, ErrorCategory.NETWORK, source, context, "ECONNRESET", error)

    code = f"HTTP_{status}"
    if status == 429:  # noqa: PLR2004
        return _make(message, ErrorCategory.RATE_LIMIT, source, context, code, error)
    if status in (401, 403):
        return _make(message, ErrorCategory.AUTHENTICATION, source, context, code, error)
    if status == 408:  # noqa: PLR2004
        return _make(message, ErrorCategory.TIMEOUT, source, context, code, error)
    if status in (404, 410):
        return _make(
            message,
            ErrorCategory.EXTERNAL_API,
            source,
            context,
            code,
            error,
            strategy=RecoveryStrategy.ABORT,
        )
    if 400 <= status < 500:  # noqa: PLR2004
        return _make(message, ErrorCategory.VALIDATION, source, context, code, error)
    return _make(
        message,
        ErrorCategory.EXTERNAL_API,
        source,
        context,
        code,
        error,
        strategy=RecoveryStrategy.RETRY,
    )


def _classify_tool_run(error: ToolRunError, source: str) -> EnhancedError:
    context: dict[str, Any] = {"tool": error.tool, "kind": error.kind}
    message = str(error)

    if error.kind == "not_found":
        return _make(message, ErrorCategory.CONFIGURATION, source, context, "TOOL_NOT_FOUND", error)
    if error.kind == "invalid_command":
        return _make(
            message,
            ErrorCategory.CONFIGURATION,
            source,
            context,
            "TOOL_INVALID_COMMAND",
            error,
        )
    if error.kind == "start_failed":
        return _make(
            message,
            ErrorCategory.SYSTEM,
            source,
            context,
            "TOOL_START_FAILED",
            error,
            strategy=RecoveryStrategy.RETRY,
        )
    if error.kind == "timed_out":
        return _make(message, ErrorCategory.TIMEOUT, source, context, "TOOL_TIMEOUT", error)
    if error.kind == "invalid_output":
        return _make(
            message,
            ErrorCategory.VALIDATION,
            source,
            context,
            "TOOL_INVALID_OUTPUT",
            error,
        )

    exit_code = error.exit_code if error.exit_code is not None else -1
    classification = classify_tool_failure(
        tool=error.tool,
        exit_code=exit_code,
        stdout=error.stdout,
        stderr=error.stderr,
    )
    context.update(classification.to_context(tool=error.tool, exit_code=exit_code))
    return _make(
        message,
        classification.category,
        source,
        context,
        f"TOOL_EXIT_{exit_code}",
        error,
    )


def _classify_by_type(error: BaseException, source: str) -> EnhancedError | None:
    message = str(error) or type(error).__name__
    context: dict[str, Any] = {"error_type": type(error).__name__}

    if isinstance(error, httpx.TimeoutException):
        return _make(message, ErrorCategory.TIMEOUT, source, context, "ETIMEDOUT", error)
    if isinstance(error, httpx.NetworkError):
        return _make(message, ErrorCategory.NETWORK, source, context, "ECONNRESET", error)
    if isinstance(error, httpx.HTTPStatusError):
        return _classify_http_call(
            HttpCallError(
                message,
                url=str(error.request.url),
                status_code=error.response.status_code,
            ),
            source,
        )
    if isinstance(error, socket.gaierror):
        return _make(message, ErrorCategory.NETWORK, source, context, "ENOTFOUND", error)
    if isinstance(error, ConnectionError):
        return _make(message, ErrorCategory.NETWORK, source, context, _errno_code(error), error)
    if isinstance(error, TimeoutError):
        return _make(message, ErrorCategory.TIMEOUT, source, context, "ETIMEDOUT", error)
    if isinstance(error, OSError) and error.errno in _NETWORK_ERRNOS:
        return _make(message, ErrorCategory.NETWORK, source, context, _errno_code(error), error)
    if isinstance(error, OSError) and error.errno == errno.ETIMEDOUT:
        return _make(message, ErrorCategory.TIMEOUT, source, context, "ETIMEDOUT", error)
    if isinstance(error, OSError) and error.errno in _FILE_SYSTEM_ERRNOS:
        return _make(
            message,
            ErrorCategory.FILE_SYSTEM,
            source,
            context,
            _errno_code(error),
            error,
        )
    if isinstance(error, (json.JSONDecodeError, SyntaxError)):
        return _make(message, ErrorCategory.VALIDATION, source, context, "PARSE_ERROR", error)
    return None


def _classify_by_message(  # noqa: PLR0913
    *,
    message: str,
    code: str | None,
    status: int | None,
    source: str,
    context: dict[str, Any],
    cause: BaseException | None,
) -> EnhancedError:
    lowered = message.lower()
    upper_code = code.upper() if code else None

    if _contains(lowered, _NETWORK_PATTERNS) or upper_code in _NETWORK_CODES:
        category = ErrorCategory.NETWORK
    elif _contains(lowered, _RATE_LIMIT_PATTERNS) or status == 429:  # noqa: PLR2004
        category = ErrorCategory.RATE_LIMIT
    elif _contains(lowered, _AUTH_PATTERNS) or status in (401, 403):
        category = ErrorCategory.AUTHENTICATION
    elif _contains(lowered, _TIMEOUT_PATTERNS) or upper_code == "ETIMEDOUT":
        category = ErrorCategory.TIMEOUT
    elif _contains(lowered, _FILE_SYSTEM_PATTERNS) or upper_code in _FILE_SYSTEM_CODES:
        category = ErrorCategory.FILE_SYSTEM
    elif _contains(lowered, _VALIDATION_PATTERNS) or context.get("error_type") in {
        "ValidationError",
        "SyntaxError",
    }:
        category = ErrorCategory.VALIDATION
    else:
        category = ErrorCategory.UNKNOWN

    if upper_code is None and status is not None:
        upper_code = f"HTTP_{status}"
    return _make(message, category, source, context, upper_code, cause)


def _make(  # noqa: PLR0913
    message: str,
    category: ErrorCategory,
    source: str,
    context: dict[str, Any],
    code: str | None,
    cause: BaseException | None,
    *,
    strategy: RecoveryStrategy | None = None,
) -> EnhancedError:
    enhanced = EnhancedError(
        message,
        category=category,
        recovery_strategy=strategy,
        context=context,
        source=source,
        code=code,
    )
    enhanced.__cause__ = cause
    return enhanced


def _contains(haystack: str, patterns: tuple[str, ...]) -> bool:
    return any(pattern in haystack for pattern in patterns)


def _errno_code(error: OSError) -> str | None:
    if error.errno is None:
        return None
    return errno.errorcode.get(error.errno)


def _attr_str(error: BaseException, name: str) -> str | None:
    return _as_str(getattr(error, name, None))


def _attr_int(error: BaseException, name: str) -> int | None:
    return _as_int(getattr(error, name, None))


def _as_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, int) else None


def is_dependency_failure(error: EnhancedError) -> bool:
    """True when the fault points at the shared dependency, not at one work item.

    Open circuits, transport failures, rate limits and retryable upstream
    errors (HTTP 5xx) count. A 404, a validation error or a bad tool output
    only concern the item that triggered them.
    """

    if error.code == CIRCUIT_OPEN_CODE:
        return True
    if error.category in _DEPENDENCY_CATEGORIES:
        return True
    return error.category is ErrorCategory.EXTERNAL_API and error.retryable
