"""Runtime configuration for planning, execution, retry and learning."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from goal_orchestrator.resilience.models import BackoffStrategy, ErrorType, RetryConfig


@dataclass(slots=True)
class OrchestratorSettings:
    """Engine behaviour switches."""

    enable_learning: bool = True
    auto_optimize: bool = True
    min_confidence: float = 0.6
    parallel_execution_enabled: bool = True
    max_parallel_tasks: int = 4


@dataclass(slots=True)
class RetrySettings:
    """Retry policy applied to every agent invocation."""

    max_attempts: int = 5
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_ms: int = 1_000
    max_delay_ms: int = 16_000
    timeout_ms: int | None = 30_000
    retryable_error_types: tuple[ErrorType, ...] = (ErrorType.TRANSIENT, ErrorType.RETRIABLE)
    circuit_breaker_threshold: int = 10
    circuit_breaker_window_ms: int = 300_000

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            strategy=self.strategy,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            timeout_ms=self.timeout_ms,
            retryable_errors=self.retryable_error_types,
            circuit_breaker_threshold=self.circuit_breaker_threshold,
            circuit_breaker_window_ms=self.circuit_breaker_window_ms,
        )


@dataclass(slots=True)
class LearningSettings:
    """History window and sample thresholds for analytics and lessons."""

    lookback_days: int = 30
    min_sample_size: int = 5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".goal_orchestrator.db")
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    learning: LearningSettings = field(default_factory=LearningSettings)
    classification_rules_path: Path | None = None
    goal_templates_path: Path | None = None

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("GOAL_ORCHESTRATOR_DB_PATH", ".goal_orchestrator.db")),
            orchestrator=OrchestratorSettings(
                enable_learning=_env_bool("GOAL_ORCHESTRATOR_ENABLE_LEARNING", default=True),
                auto_optimize=_env_bool("GOAL_ORCHESTRATOR_AUTO_OPTIMIZE", default=True),
                min_confidence=float(os.getenv("GOAL_ORCHESTRATOR_MIN_CONFIDENCE", "0.6")),
                parallel_execution_enabled=_env_bool(
                    "GOAL_ORCHESTRATOR_PARALLEL_EXECUTION_ENABLED",
                    default=True,
                ),
                max_parallel_tasks=int(os.getenv("GOAL_ORCHESTRATOR_MAX_PARALLEL_TASKS", "4")),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("GOAL_ORCHESTRATOR_RETRY_MAX_ATTEMPTS", "5")),
                strategy=_env_strategy("GOAL_ORCHESTRATOR_RETRY_STRATEGY"),
                base_delay_ms=int(os.getenv("GOAL_ORCHESTRATOR_RETRY_BASE_DELAY_MS", "1000")),
                max_delay_ms=int(os.getenv("GOAL_ORCHESTRATOR_RETRY_MAX_DELAY_MS", "16000")),
                timeout_ms=_env_optional_int("GOAL_ORCHESTRATOR_RETRY_TIMEOUT_MS", 30_000),
                retryable_error_types=_env_error_types("GOAL_ORCHESTRATOR_RETRYABLE_ERRORS"),
                circuit_breaker_threshold=int(
                    os.getenv("GOAL_ORCHESTRATOR_CIRCUIT_BREAKER_THRESHOLD", "10"),
                ),
                circuit_breaker_window_ms=int(
                    os.getenv("GOAL_ORCHESTRATOR_CIRCUIT_BREAKER_WINDOW_MS", "300000"),
                ),
            ),
            learning=LearningSettings(
                lookback_days=int(os.getenv("GOAL_ORCHESTRATOR_LOOKBACK_DAYS", "30")),
                min_sample_size=int(os.getenv("GOAL_ORCHESTRATOR_MIN_SAMPLE_SIZE", "5")),
            ),
            classification_rules_path=_env_path("GOAL_ORCHESTRATOR_CLASSIFICATION_RULES"),
            goal_templates_path=_env_path("GOAL_ORCHESTRATOR_GOAL_TEMPLATES"),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot work with."""

        if not 0 <= self.orchestrator.min_confidence <= 1:
            raise ValueError("GOAL_ORCHESTRATOR_MIN_CONFIDENCE must be between 0 and 1.")
        if self.orchestrator.max_parallel_tasks < 1:
            raise ValueError("GOAL_ORCHESTRATOR_MAX_PARALLEL_TASKS must be >= 1.")
        if self.retry.max_attempts < 0:
            raise ValueError("GOAL_ORCHESTRATOR_RETRY_MAX_ATTEMPTS must be >= 0.")
        if self.retry.base_delay_ms < 0:
            raise ValueError("GOAL_ORCHESTRATOR_RETRY_BASE_DELAY_MS must be >= 0.")
        if self.retry.max_delay_ms < self.retry.base_delay_ms:
            raise ValueError(
                "GOAL_ORCHESTRATOR_RETRY_MAX_DELAY_MS must be >= "
                "GOAL_ORCHESTRATOR_RETRY_BASE_DELAY_MS.",
            )
        if self.retry.timeout_ms is not None and self.retry.timeout_ms <= 0:
            raise ValueError("GOAL_ORCHESTRATOR_RETRY_TIMEOUT_MS must be >= 0 (0 disables it).")
        if self.retry.circuit_breaker_threshold < 1:
            raise ValueError("GOAL_ORCHESTRATOR_CIRCUIT_BREAKER_THRESHOLD must be >= 1.")
        if self.learning.lookback_days < 1:
            raise ValueError("GOAL_ORCHESTRATOR_LOOKBACK_DAYS must be >= 1.")
        if self.learning.min_sample_size < 1:
            raise ValueError("GOAL_ORCHESTRATOR_MIN_SAMPLE_SIZE must be >= 1.")
        for name, path in (
            ("GOAL_ORCHESTRATOR_CLASSIFICATION_RULES", self.classification_rules_path),
            ("GOAL_ORCHESTRATOR_GOAL_TEMPLATES", self.goal_templates_path),
        ):
            if path is not None and not path.is_file():
                raise ValueError(f"{name} points to a missing file: {path}")


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


def _env_optional_int(name: str, default: int) -> int | None:
    """Read an int where 0 means "disabled"."""

    value = int(os.getenv(name, str(default)))
    return value or None


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_strategy(name: str) -> BackoffStrategy:
    value = os.getenv(name, BackoffStrategy.EXPONENTIAL.value).strip().lower()
    try:
        return BackoffStrategy(value)
    except ValueError as error:
        choices = ", ".join(strategy.value for strategy in BackoffStrategy)
        raise ValueError(f"Invalid {name}: {value!r}. Expected one of: {choices}") from error


def _env_error_types(name: str) -> tuple[ErrorType, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return (ErrorType.TRANSIENT, ErrorType.RETRIABLE)
    types: list[ErrorType] = []
    for part in raw.split(","):
        token = part.strip().lower()
        if not token:
            continue
        try:
            types.append(ErrorType(token))
        except ValueError as error:
            raise ValueError(f"Invalid {name} entry: {token!r}") from error
    return tuple(types)
