"""Bounded retries with classified failures and exponential backoff."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import replace
from typing import TypeVar

from porter_bridges.resilience.backoff import (
    DEFAULT_BACKOFF_CONFIG,
    BackoffConfig,
    calculate_backoff_delay,
)
from porter_bridges.resilience.classifier import classify_error
from porter_bridges.resilience.errors import EnhancedError, ErrorCategory, ErrorSeverity

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryManager:
    """Retries an operation until success, a non-retryable fault, or exhaustion."""

    def __init__(
        self,
        config: BackoffConfig = DEFAULT_BACKOFF_CONFIG,
        *,
        source: str = "retry_manager",
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.source = source
        self._sleep = sleep
        self._random = rng or random.Random()  # noqa: S311

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        operation_name: str = "operation",
        config: BackoffConfig | None = None,
    ) -> T:
        """Run ``operation``; raise the last ``EnhancedError`` when it cannot succeed.

        The raised error carries ``context["attempts"]`` with the number of
        attempts actually made.
        """

        effective = config or self.config
        if effective.max_retries < 1:
            effective = replace(effective, max_retries=1)

        previous_delay = 0.0
        last_error: EnhancedError | None = None
        for attempt in range(1, effective.max_retries + 1):
            try:
                result = operation()
            except Exception as error:  # noqa: BLE001
                enhanced = classify_error(error, self.source)
                last_error = enhanced.with_context(attempts=attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s [%s/%s]",
                    operation_name,
                    attempt,
                    effective.max_retries,
                    enhanced.message,
                    enhanced.category.value,
                    enhanced.recovery_strategy.value,
                )

                if not enhanced.retryable:
                    logger.error(
                        "%s failed with non-retryable error: %s",
                        operation_name,
                        enhanced.message,
                    )
                    raise last_error from error

                if attempt == effective.max_retries:
                    logger.error(
                        "%s failed after %d attempts: %s",
                        operation_name,
                        effective.max_retries,
                        enhanced.message,
                    )
                    raise last_error from error

                delay = min(
                    max(calculate_backoff_delay(attempt, effective, self._random), previous_delay),
                    effective.max_delay_seconds,
                )
                previous_delay = delay
                logger.info(
                    "Retrying %s in %.2fs (attempt %d/%d)",
                    operation_name,
                    delay,
                    attempt + 1,
                    effective.max_retries,
                )
                self._sleep(delay)
                continue

            if attempt > 1:
                logger.info("%s succeeded after %d attempts", operation_name, attempt)
            return result

        raise last_error or EnhancedError(  # pragma: no cover
            f"{operation_name} failed after {effective.max_retries} attempts",
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.HIGH,
            source=self.source,
        )
