"""Runtime configuration for the pipeline core."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from porter_bridges.http.fetcher import DEFAULT_USER_AGENT
from porter_bridges.resilience.backoff import BackoffConfig
from porter_bridges.resilience.circuit_breaker import CircuitBreakerConfig


@dataclass(slots=True)
class StateSettings:
    """Where pipeline state and generated content live."""

    state_file: Path = Path("generated/pipeline-state.json")
    generated_dir: Path = Path("generated")
    logs_dir: Path = Path("logs")

    @property
    def collected_dir(self) -> Path:
        return self.generated_dir / "collected-content"

    @property
    def distilled_dir(self) -> Path:
        return self.generated_dir / "distilled-content"

    @property
    def required_dirs(self) -> tuple[Path, ...]:
        return (
            self.generated_dir,
            self.collected_dir,
            self.distilled_dir,
            self.generated_dir / "packages",
            self.generated_dir / "bundles",
            self.logs_dir,
        )


@dataclass(slots=True)
class RetrySettings:
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    max_retries: int = 3

    def to_backoff_config(self) -> BackoffConfig:
        return BackoffConfig(
            initial_delay_seconds=self.initial_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            multiplier=self.multiplier,
            jitter=self.jitter,
            max_retries=self.max_retries,
        )


@dataclass(slots=True)
class CircuitBreakerSettings:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    monitoring_period_seconds: float = 10.0
    slow_call_threshold: int = 3
    slow_call_duration_threshold_seconds: float = 10.0
    minimum_number_of_calls: int = 5

    def to_circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            reset_timeout_seconds=self.reset_timeout_seconds,
            monitoring_period_seconds=self.monitoring_period_seconds,
            slow_call_threshold=self.slow_call_threshold,
            slow_call_duration_threshold_seconds=self.slow_call_duration_threshold_seconds,
            minimum_number_of_calls=self.minimum_number_of_calls,
        )


@dataclass(slots=True)
class DegradationSettings:
    minimum_required_services: tuple[str, ...] = ()


@dataclass(slots=True)
class RunnerSettings:
    max_concurrency: int = 4
    max_failure_rate: float = 0.5


@dataclass(slots=True)
class HttpSettings:
    timeout_seconds: float = 30.0
    transport_retries: int = 0
    user_agent: str = DEFAULT_USER_AGENT
    health_endpoints: tuple[str, ...] = ()


@dataclass(slots=True)
class ToolSettings:
    """External content-processing tool invocation."""

    command_template: str = ""
    model: str = ""
    timeout_seconds: float = 600.0
    name: str = "distiller"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    state: StateSettings = field(default_factory=StateSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    degradation: DegradationSettings = field(default_factory=DegradationSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    http: HttpSettings = field(default_factory=HttpSettings)
    tool: ToolSettings = field(default_factory=ToolSettings)

    @classmethod
    def from_env(cls, state_file: Path | None = None) -> Settings:
        """Load settings from ``PORTER_BRIDGES_*`` environment variables."""

        generated_dir = Path(os.getenv("PORTER_BRIDGES_GENERATED_DIR", "generated"))
        return cls(
            state=StateSettings(
                state_file=state_file
                or Path(
                    os.getenv(
                        "PORTER_BRIDGES_STATE_FILE",
                        str(generated_dir / "pipeline-state.json"),
                    ),
                ),
                generated_dir=generated_dir,
                logs_dir=Path(os.getenv("PORTER_BRIDGES_LOGS_DIR", "logs")),
            ),
            retry=RetrySettings(
                initial_delay_seconds=float(
                    os.getenv("PORTER_BRIDGES_RETRY_INITIAL_DELAY_SECONDS", "1.0"),
                ),
                max_delay_seconds=float(os.getenv("PORTER_BRIDGES_RETRY_MAX_DELAY_SECONDS", "30.0")),
                multiplier=float(os.getenv("PORTER_BRIDGES_RETRY_MULTIPLIER", "2.0")),
                jitter=_env_bool("PORTER_BRIDGES_RETRY_JITTER", default=True),
                max_retries=int(os.getenv("PORTER_BRIDGES_RETRY_MAX_RETRIES", "3")),
            ),
            circuit_breaker=CircuitBreakerSettings(
                failure_threshold=int(os.getenv("PORTER_BRIDGES_CB_FAILURE_THRESHOLD", "5")),
                reset_timeout_seconds=float(
                    os.getenv("PORTER_BRIDGES_CB_RESET_TIMEOUT_SECONDS", "60.0"),
                ),
                monitoring_period_seconds=float(
                    os.getenv("PORTER_BRIDGES_CB_MONITORING_PERIOD_SECONDS", "10.0"),
                ),
                slow_call_threshold=int(os.getenv("PORTER_BRIDGES_CB_SLOW_CALL_THRESHOLD", "3")),
                slow_call_duration_threshold_seconds=float(
                    os.getenv("PORTER_BRIDGES_CB_SLOW_CALL_DURATION_SECONDS", "10.0"),
                ),
                minimum_number_of_calls=int(
                    os.getenv("PORTER_BRIDGES_CB_MINIMUM_NUMBER_OF_CALLS", "5"),
                ),
            ),
            degradation=DegradationSettings(
                minimum_required_services=_env_list("PORTER_BRIDGES_REQUIRED_SERVICES"),
            ),
            runner=RunnerSettings(
                max_concurrency=int(os.getenv("PORTER_BRIDGES_MAX_CONCURRENCY", "4")),
                max_failure_rate=float(os.getenv("PORTER_BRIDGES_MAX_FAILURE_RATE", "0.5")),
            ),
            http=HttpSettings(
                timeout_seconds=float(os.getenv("PORTER_BRIDGES_HTTP_TIMEOUT_SECONDS", "30.0")),
                transport_retries=int(os.getenv("PORTER_BRIDGES_HTTP_TRANSPORT_RETRIES", "0")),
                user_agent=os.getenv("PORTER_BRIDGES_HTTP_USER_AGENT", DEFAULT_USER_AGENT),
                health_endpoints=_env_list("PORTER_BRIDGES_HEALTH_ENDPOINTS"),
            ),
            tool=ToolSettings(
                command_template=os.getenv("PORTER_BRIDGES_TOOL_COMMAND", ""),
                model=os.getenv("PORTER_BRIDGES_TOOL_MODEL", ""),
                timeout_seconds=float(os.getenv("PORTER_BRIDGES_TOOL_TIMEOUT_SECONDS", "600")),
                name=os.getenv("PORTER_BRIDGES_TOOL_NAME", "distiller"),
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` naming the offending variable."""

        retry = self.retry
        if retry.max_retries < 1:
            raise ValueError("PORTER_BRIDGES_RETRY_MAX_RETRIES must be >= 1.")
        if retry.initial_delay_seconds < 0:
            raise ValueError("PORTER_BRIDGES_RETRY_INITIAL_DELAY_SECONDS must be >= 0.")
        if retry.max_delay_seconds < retry.initial_delay_seconds:
            raise ValueError(
                "PORTER_BRIDGES_RETRY_MAX_DELAY_SECONDS must be >= the initial delay.",
            )
        if retry.multiplier < 1:
            raise ValueError("PORTER_BRIDGES_RETRY_MULTIPLIER must be >= 1.")

        breaker = self.circuit_breaker
        if breaker.failure_threshold < 1:
            raise ValueError("PORTER_BRIDGES_CB_FAILURE_THRESHOLD must be >= 1.")
        if breaker.reset_timeout_seconds <= 0:
            raise ValueError("PORTER_BRIDGES_CB_RESET_TIMEOUT_SECONDS must be > 0.")
        if breaker.monitoring_period_seconds <= 0:
            raise ValueError("PORTER_BRIDGES_CB_MONITORING_PERIOD_SECONDS must be > 0.")
        if breaker.minimum_number_of_calls < 1:
            raise ValueError("PORTER_BRIDGES_CB_MINIMUM_NUMBER_OF_CALLS must be >= 1.")

        if self.runner.max_concurrency < 1:
            raise ValueError("PORTER_BRIDGES_MAX_CONCURRENCY must be >= 1.")
        if not 0 <= self.runner.max_failure_rate <= 1:
            raise ValueError("PORTER_BRIDGES_MAX_FAILURE_RATE must be between 0 and 1.")

        if self.http.timeout_seconds <= 0:
            raise ValueError("PORTER_BRIDGES_HTTP_TIMEOUT_SECONDS must be > 0.")
        if self.http.transport_retries < 0:
            raise ValueError("PORTER_BRIDGES_HTTP_TRANSPORT_RETRIES must be >= 0.")
        for url in self.http.health_endpoints:
            _validate_url(url)

        if self.tool.timeout_seconds <= 0:
            raise ValueError("PORTER_BRIDGES_TOOL_TIMEOUT_SECONDS must be > 0.")

    def validate_for_tool(self) -> None:
        self.validate()
        if not self.tool.command_template.strip():
            raise ValueError("PORTER_BRIDGES_TOOL_COMMAND is required to run the tool.")
        if "{input_file}" not in self.tool.command_template:
            raise ValueError("PORTER_BRIDGES_TOOL_COMMAND must include {input_file}.")


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _validate_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid PORTER_BRIDGES_HEALTH_ENDPOINTS URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
