"""Exponential backoff with jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass

JITTER_RATIO = 0.1


@dataclass(slots=True, frozen=True)
class BackoffConfig:
    """Retry schedule; ``max_retries`` is the total number of attempts."""

    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    max_retries: int = 3


DEFAULT_BACKOFF_CONFIG = BackoffConfig()


def calculate_backoff_delay(
    attempt: int,
    config: BackoffConfig = DEFAULT_BACKOFF_CONFIG,
    rng: random.Random | None = None,
) -> float:
    """Delay in seconds to wait after failed ``attempt`` (1-based)."""

    base_delay = min(
        config.initial_delay_seconds * config.multiplier ** max(attempt - 1, 0),
        config.max_delay_seconds,
    )
    if not config.jitter:
        return base_delay

    source = rng or random
    jitter_amount = base_delay * JITTER_RATIO
    jittered = base_delay + source.uniform(-jitter_amount, jitter_amount)
    return max(0.0, min(jittered, config.max_delay_seconds))
