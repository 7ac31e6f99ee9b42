"""Resilience primitives shared by every phase.

Raw failures are classified once into ``EnhancedError``; retries, circuit
breakers, degradation and health checks only ever look at the classified form.
"""

from porter_bridges.resilience.backoff import BackoffConfig, calculate_backoff_delay
from porter_bridges.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from porter_bridges.resilience.classifier import classify_error
from porter_bridges.resilience.degradation import (
    DegradationLevel,
    DegradationStrategy,
    GracefulDegradationManager,
)
from porter_bridges.resilience.errors import (
    EnhancedError,
    ErrorCategory,
    ErrorSeverity,
    HttpCallError,
    RecoveryStrategy,
    ToolRunError,
)
from porter_bridges.resilience.health import HealthCheckManager, HealthCheckResult
from porter_bridges.resilience.retry import RetryManager

__all__ = [
    "BackoffConfig",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "DegradationLevel",
    "DegradationStrategy",
    "EnhancedError",
    "ErrorCategory",
    "ErrorSeverity",
    "GracefulDegradationManager",
    "HealthCheckManager",
    "HealthCheckResult",
    "HttpCallError",
    "RecoveryStrategy",
    "RetryManager",
    "ToolRunError",
    "calculate_backoff_delay",
    "classify_error",
]
