"""Error taxonomy, retry policy and recovery models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """How an error should be treated by retry and recovery logic."""

    TRANSIENT = "transient"
    RETRIABLE = "retriable"
    FATAL = "fatal"
    CONFLICT = "conflict"


class ErrorCategory(str, Enum):
    NETWORK_TIMEOUT = "network_timeout"
    RATE_LIMIT = "rate_limit"
    CONNECTION_RESET = "connection_reset"
    SERVICE_UNAVAILABLE = "service_unavailable"
    RESOURCE_LOCKED = "resource_locked"
    DEPENDENCY_MISSING = "dependency_missing"
    TEMPORARY_FAILURE = "temporary_failure"
    VALIDATION_ERROR = "validation_error"
    INVALID_CONFIGURATION = "invalid_configuration"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_NOT_FOUND = "resource_not_found"
    SYNTAX_ERROR = "syntax_error"
    OUT_OF_MEMORY = "out_of_memory"
    SECURITY_VULNERABILITY = "security_vulnerability"
    BUSINESS_RULE_VIOLATION = "business_rule_violation"
    DATA_INTEGRITY_ISSUE = "data_integrity_issue"
    POLICY_VIOLATION = "policy_violation"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    FAIL_IMMEDIATELY = "fail_immediately"
    PAUSE_WORKFLOW = "pause_workflow"
    ROLLBACK = "rollback"
    ALTERNATIVE_PATH = "alternative_path"
    CIRCUIT_BREAK = "circuit_break"
    SKIP = "skip"


class BackoffStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIBONACCI = "fibonacci"
    FIXED = "fixed"


@dataclass(slots=True)
class ErrorClassification:
    type: ErrorType
    category: ErrorCategory
    severity: ErrorSeverity
    action: RecoveryAction
    retryable: bool
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, Any]:
        return {
            "error_type": self.type.value,
            "error_category": self.category.value,
            "severity": self.severity.value,
            "action": self.action.value,
            "retryable": self.retryable,
            "matched_pattern": self.matched_pattern,
        }


@dataclass(slots=True)
class RetryConfig:
    """Retry policy; delays and timeout are in milliseconds."""

    max_attempts: int = 5
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_ms: int = 1_000
    max_delay_ms: int = 16_000
    timeout_ms: int | None = 30_000
    retryable_errors: tuple[ErrorType, ...] = (ErrorType.TRANSIENT, ErrorType.RETRIABLE)
    circuit_breaker_threshold: int = 10
    circuit_breaker_window_ms: int = 300_000


DEFAULT_RETRY_CONFIGS: dict[ErrorType, RetryConfig] = {
    ErrorType.TRANSIENT: RetryConfig(
        max_attempts=5,
        strategy=BackoffStrategy.EXPONENTIAL,
        base_delay_ms=1_000,
        max_delay_ms=16_000,
        timeout_ms=30_000,
        retryable_errors=(ErrorType.TRANSIENT,),
        circuit_breaker_threshold=10,
    ),
    ErrorType.RETRIABLE: RetryConfig(
        max_attempts=3,
        strategy=BackoffStrategy.LINEAR,
        base_delay_ms=2_000,
        max_delay_ms=10_000,
        timeout_ms=60_000,
        retryable_errors=(ErrorType.RETRIABLE,),
        circuit_breaker_threshold=5,
    ),
    ErrorType.FATAL: RetryConfig(
        max_attempts=0,
        strategy=BackoffStrategy.FIXED,
        base_delay_ms=0,
        max_delay_ms=0,
        timeout_ms=None,
        retryable_errors=(),
    ),
    ErrorType.CONFLICT: RetryConfig(
        max_attempts=0,
        strategy=BackoffStrategy.FIXED,
        base_delay_ms=0,
        max_delay_ms=0,
        timeout_ms=None,
        retryable_errors=(),
    ),
}


@dataclass(slots=True)
class ErrorContext:
    """Where an error happened; `agent_type` also scopes the circuit breaker."""

    agent_type: str | None = None
    task_id: str | None = None
    workflow_id: str | None = None
    phase: str | None = None
    attempt: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def scope(self) -> str:
        return self.agent_type or "global"


@dataclass(slots=True)
class RetryAttempt:
    number: int
    timestamp: datetime
    delay_ms: int
    success: bool
    error: str | None = None
    duration_ms: int = 0


@dataclass(slots=True)
class RetryHistory:
    operation_id: str
    attempts: list[RetryAttempt] = field(default_factory=list)
    final_success: bool = False
    total_duration_ms: int = 0

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)


@dataclass(slots=True)
class CircuitBreakerState:
    scope: str
    threshold: int
    window_ms: int
    failure_count: int = 0
    is_open: bool = False
    opened_at: datetime | None = None
    last_failure_at: datetime | None = None


@dataclass(slots=True)
class CheckpointMetadata:
    description: str = ""
    automatic: bool = False
    triggered_by: str | None = None


@dataclass(slots=True)
class Checkpoint:
    """Snapshot of orchestrator state; `state_json` is the serialized form."""

    id: str
    timestamp: datetime
    phase: str
    state_json: str
    metadata: CheckpointMetadata = field(default_factory=CheckpointMetadata)


@dataclass(slots=True)
class RecoveryResult:
    success: bool
    action: RecoveryAction
    message: str
    classification: ErrorClassification
    checkpoint_restored: str | None = None
    restored_state: dict[str, Any] | None = None
    alternative_path_used: bool = False
    requires_human_intervention: bool = False
    retry_history: RetryHistory | None = None
    value: Any = None


class AgentError(RuntimeError):
    """Error raised by an agent that already knows how it should be classified."""

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        type: ErrorType,  # noqa: A002
        category: ErrorCategory,
        retryable: bool,
        severity: ErrorSeverity | None = None,
        action: RecoveryAction | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message)
        self.type = type
        self.category = category
        self.retryable = retryable
        self.severity = severity
        self.action = action
        self.context = context


class CircuitOpenError(RuntimeError):
    """Raised without attempting the operation when the scope's breaker is open."""

    def __init__(self, scope: str) -> None:
        super().__init__(f"Circuit breaker is open for scope {scope!r}")
        self.scope = scope


class OperationTimeoutError(TimeoutError):
    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Operation timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class RetryError(RuntimeError):
    """Final failure of a retried operation, carrying the full attempt history."""

    def __init__(
        self,
        *,
        operation_id: str,
        last_error: BaseException,
        classification: ErrorClassification,
        history: RetryHistory,
    ) -> None:
        super().__init__(str(last_error))
        self.operation_id = operation_id
        self.last_error = last_error
        self.classification = classification
        self.history = history

    @property
    def requires_human_intervention(self) -> bool:
        return self.classification.type == ErrorType.CONFLICT


@dataclass(slots=True)
class ErrorLog:
    timestamp: datetime
    phase: str | None
    agent: str | None
    error: str
    traceback: str | None
    severity: ErrorSeverity
