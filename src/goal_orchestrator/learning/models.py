"""Domain models for execution history, lessons and learned predictions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ExecutionStatus(str, Enum):
    """Lifecycle of one recorded execution attempt."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    RETRIED = "retried"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = frozenset(
    status for status in ExecutionStatus if status != ExecutionStatus.RUNNING
)
FAILURE_STATUSES = frozenset({ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT})


class LessonType(str, Enum):
    AGENT_SELECTION = "agent_selection"
    TASK_ORDERING = "task_ordering"
    TIME_ESTIMATION = "time_estimation"
    ERROR_PREVENTION = "error_prevention"
    PARALLEL_EXECUTION = "parallel_execution"
    DEPENDENCY_OPTIMIZATION = "dependency_optimization"
    RESOURCE_ALLOCATION = "resource_allocation"


class RecommendationPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(slots=True)
class ExecutionRecordCreate:
    """Input payload for recording the start of an execution."""

    goal: str
    agent_type: str
    task_description: str
    task_type: str
    estimated_duration_ms: int | None = None
    task_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    parallel_execution: bool = False
    started_at: datetime | None = None


@dataclass(slots=True)
class ExecutionRecordFinish:
    """Terminal update for a running execution."""

    status: ExecutionStatus
    actual_duration_ms: int
    retry_count: int = 0
    error_type: str | None = None
    error_message: str | None = None
    error_stack: str | None = None
    cpu_usage_percent: float | None = None
    memory_usage_mb: float | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class ExecutionRecordView:
    execution_id: int
    goal: str
    goal_hash: str
    task_id: str | None
    task_description: str
    agent_type: str
    task_type: str
    estimated_duration_ms: int | None
    actual_duration_ms: int | None
    status: ExecutionStatus
    retry_count: int
    error_type: str | None
    error_message: str | None
    error_stack: str | None
    context: dict[str, Any]
    dependencies: list[str]
    parallel_execution: bool
    cpu_usage_percent: float | None
    memory_usage_mb: float | None
    started_at: datetime
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ExecutionFilters:
    """Optional filters for execution history queries; `since` is inclusive."""

    agent_types: tuple[str, ...] = ()
    task_types: tuple[str, ...] = ()
    statuses: tuple[ExecutionStatus, ...] = ()
    goal_hash: str | None = None
    since: datetime | None = None
    limit: int | None = None


@dataclass(slots=True)
class LessonCandidate:
    """A detected pattern before it is persisted.

    Only `lesson_type` and `identity` feed the pattern hash; `metrics` is
    stored alongside the identity but can change without creating a new lesson.
    """

    lesson_type: LessonType
    identity: dict[str, Any]
    recommendation: str
    confidence_score: float
    metrics: dict[str, Any] = field(default_factory=dict)
    alternative_agent: str | None = None
    optimal_order: int | None = None
    sample_execution_ids: list[int] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    created_by: str = "system"


@dataclass(slots=True)
class LessonView:
    lesson_id: int
    lesson_type: LessonType
    pattern: dict[str, Any]
    pattern_hash: str
    recommendation: str
    alternative_agent: str | None
    optimal_order: int | None
    confidence_score: float
    effectiveness_score: float | None
    times_applied: int
    times_successful: int
    times_failed: int
    sample_execution_ids: list[int]
    tags: list[str]
    created_by: str
    first_observed_at: datetime
    last_applied_at: datetime | None
    last_successful_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ErrorSummary:
    error_type: str
    count: int
    last_occurrence: datetime
    example_message: str | None


@dataclass(slots=True)
class AgentPerformanceMetrics:
    """Aggregates over one (agent, task type) pair; durations cover successes only."""

    agent_type: str
    task_type: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    avg_duration_ms: int | None = None
    min_duration_ms: int | None = None
    max_duration_ms: int | None = None
    p50_duration_ms: int | None = None
    p95_duration_ms: int | None = None
    p99_duration_ms: int | None = None
    common_errors: list[ErrorSummary] = field(default_factory=list)
    avg_cpu_usage_percent: float | None = None
    avg_memory_usage_mb: float | None = None
    last_execution_at: datetime | None = None
    is_reliable: bool = False


@dataclass(slots=True)
class FailurePattern:
    agent_type: str
    task_type: str
    error_type: str
    occurrences: int
    last_occurrence: datetime
    recommended_fix: str
    example_messages: list[str] = field(default_factory=list)

    @property
    def description(self) -> str:
        return f"{self.agent_type} fails on {self.task_type} with {self.error_type}"


@dataclass(slots=True)
class TaskExecutionPlanItem:
    """A task as seen by history-based ordering; `order` is reassigned on output."""

    task_id: str
    agent_type: str
    task_type: str
    estimated_duration_ms: int
    parallel_group: int | None = None
    order: int = 0


@dataclass(slots=True)
class EstimationAccuracy:
    sample_size: int
    avg_accuracy: float
    overestimate_percent: float
    underestimate_percent: float


@dataclass(slots=True)
class Recommendation:
    lesson_id: int
    type: LessonType
    priority: RecommendationPriority
    title: str
    description: str
    confidence_score: float
    expected_improvement: str
    alternative_agent: str | None = None


@dataclass(slots=True)
class AlternativeAgent:
    agent_type: str
    predicted_duration_ms: int
    success_probability: float


@dataclass(slots=True)
class DurationPrediction:
    agent_type: str
    task_type: str
    predicted_duration_ms: int
    confidence_interval: tuple[int, int]
    success_probability: float
    risk_factors: list[str] = field(default_factory=list)
    alternative_agents: list[AlternativeAgent] = field(default_factory=list)


@dataclass(slots=True)
class AgentPerformanceSummary:
    agent_type: str
    task_type: str
    success_rate: float
    avg_duration_ms: int | None


@dataclass(slots=True)
class LessonImprovement:
    lesson_type: LessonType
    improvement_percent: float
    description: str


@dataclass(slots=True)
class LearningStats:
    total_executions: int
    total_lessons: int
    avg_confidence_score: float
    avg_effectiveness_score: float
    top_performing_agents: list[AgentPerformanceSummary]
    common_failure_patterns: list[FailurePattern]
    recent_improvements: list[LessonImprovement]
    optimization_potential: int
