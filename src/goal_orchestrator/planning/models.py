"""Domain models for goal parsing and execution planning."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentType(str, Enum):
    """Specialized agents a task can be assigned to."""

    API = "agent-api"
    MODELS = "agent-models"
    TEST = "agent-test"
    REALTIME = "agent-realtime"
    QUALITY = "agent-quality"
    INTEGRATION = "agent-integration"
    SECURITY = "agent-security"
    AUTH = "agent-auth"
    RBAC = "agent-rbac"
    DATABASE = "agent-database"
    UI = "agent-ui"
    DOCUMENTATION = "agent-documentation"


class Capability(str, Enum):
    """Capabilities a goal can require."""

    CRUD = "crud"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    REAL_TIME = "real_time"
    TESTING = "testing"
    INTEGRATION = "integration"
    SECURITY = "security"
    DATABASE = "database"
    UI = "ui"
    DOCUMENTATION = "documentation"
    API = "api"
    WEBSOCKET = "websocket"
    CACHING = "caching"
    LOGGING = "logging"


class GoalComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


class TaskStatus(str, Enum):
    """Task lifecycle states. Tasks are only transitioned, never deleted."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK: dict[TaskPriority, int] = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class PlanStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"


class DependencyType(str, Enum):
    REQUIRES = "requires"
    BLOCKS = "blocks"
    OPTIONAL = "optional"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskType(str, Enum):
    COMPLEXITY = "complexity"
    SECURITY = "security"
    EXTERNAL_DEPENDENCY = "external_dependency"
    TIMELINE = "timeline"


@dataclass(slots=True)
class GoalEntity:
    """Entity extracted from a goal, e.g. a resource or an external system."""

    type: str
    name: str
    description: str
    confidence: float


@dataclass(slots=True)
class GoalMetadata:
    requires_auth: bool = False
    requires_database: bool = False
    requires_ui: bool = False
    requires_testing: bool = False
    requires_documentation: bool = False
    is_integration: bool = False
    affects_existing_code: bool = False


@dataclass(slots=True)
class ParsedGoal:
    """Structured interpretation of a natural-language goal."""

    original_goal: str
    normalized_goal: str
    intent: str
    entities: list[GoalEntity]
    capabilities: list[Capability]
    suggested_agents: list[AgentType]
    estimated_complexity: GoalComplexity
    confidence: float
    metadata: GoalMetadata = field(default_factory=GoalMetadata)
    template_id: str | None = None


@dataclass(slots=True)
class TaskMetadata:
    phase: str
    complexity: int
    task_type: str = "general"
    parallel_group: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Task:
    """Unit of work assigned to one agent.

    `estimated_duration` is expressed in minutes; `predicted_duration_ms` is
    stamped by the engine from execution history right before dispatch.
    """

    id: str
    name: str
    agent_type: AgentType
    priority: TaskPriority
    estimated_duration: int
    metadata: TaskMetadata
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    can_run_in_parallel: bool = False
    predicted_duration_ms: int | None = None

    @property
    def task_type(self) -> str:
        return self.metadata.task_type


@dataclass(slots=True)
class TaskDependency:
    from_task: str
    to_task: str
    type: DependencyType = DependencyType.REQUIRES
    reason: str = ""


@dataclass(slots=True)
class DependencyGraph:
    """Acyclic task graph with topological layers and CPM schedule."""

    nodes: list[str]
    edges: list[TaskDependency]
    layers: list[list[str]]
    critical_path: list[str]
    earliest_start: dict[str, float] = field(default_factory=dict)
    latest_start: dict[str, float] = field(default_factory=dict)
    project_duration: float = 0.0


@dataclass(slots=True)
class Milestone:
    id: str
    name: str
    description: str
    task_ids: list[str]
    completion_criteria: list[str]
    estimated_completion: datetime
    is_blocking: bool
    progress: float = 0.0


@dataclass(slots=True)
class ParallelizationOpportunity:
    task_ids: list[str]
    estimated_time_saved: int
    risk_level: RiskLevel
    reason: str


@dataclass(slots=True)
class Risk:
    type: RiskType
    description: str
    probability: float
    impact: float
    mitigation: str


@dataclass(slots=True)
class RiskAssessment:
    overall_risk: RiskLevel
    risks: list[Risk] = field(default_factory=list)


@dataclass(slots=True)
class ExecutionPlan:
    """Versioned execution plan for one goal.

    Optimization and adaptation never mutate a published version; they return
    a copy with `version` incremented.
    """

    id: str
    goal: str
    parsed_goal: ParsedGoal
    tasks: list[Task]
    milestones: list[Milestone]
    dependencies: DependencyGraph
    estimated_duration: int
    parallelization_opportunities: list[ParallelizationOpportunity]
    risk_assessment: RiskAssessment
    created_at: datetime
    updated_at: datetime
    status: PlanStatus = PlanStatus.DRAFT
    version: int = 1

    def task_by_id(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


class ValidationIssueType(str, Enum):
    CIRCULAR_DEPENDENCY = "circular_dependency"
    MISSING_DEPENDENCY = "missing_dependency"
    INVALID_AGENT = "invalid_agent"


@dataclass(slots=True)
class PlanValidationIssue:
    type: ValidationIssueType
    message: str
    task_id: str | None = None
    path: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PlanValidationResult:
    is_valid: bool
    errors: list[PlanValidationIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


class PlanValidationError(ValueError):
    """Raised when a plan cannot be executed because its structure is broken."""

    def __init__(self, issues: list[PlanValidationIssue]) -> None:
        self.issues = issues
        summary = "; ".join(issue.message for issue in issues) or "Invalid plan"
        super().__init__(summary)


class OptimizationObjective(str, Enum):
    MINIMIZE_DURATION = "minimize_duration"
    MINIMIZE_RISK = "minimize_risk"
    MAXIMIZE_PARALLELIZATION = "maximize_parallelization"
    BALANCED = "balanced"


@dataclass(slots=True)
class OptimizationStrategy:
    strategy: OptimizationObjective = OptimizationObjective.BALANCED
    max_parallel_tasks: int | None = None
    risk_tolerance: RiskLevel = RiskLevel.MEDIUM


class AdaptationTrigger(str, Enum):
    TASK_FAILURE = "task_failure"
    CONFLICT_DETECTED = "conflict_detected"
    TIME_OVERRUN = "time_overrun"
    DEPENDENCY_CHANGE = "dependency_change"
    MANUAL = "manual"


class RiskDelta(str, Enum):
    INCREASED = "increased"
    DECREASED = "decreased"
    UNCHANGED = "unchanged"


@dataclass(slots=True)
class ExecutionContext:
    """Snapshot of a running plan used to drive adaptation."""

    completed_tasks: list[str] = field(default_factory=list)
    failed_tasks: list[str] = field(default_factory=list)
    current_task: str | None = None
    elapsed_minutes: int = 0


@dataclass(slots=True)
class PlanAdaptation:
    trigger: AdaptationTrigger
    reason: str
    plan_version: int
    estimated_duration_delta: int
    tasks_affected: list[str]
    risk_delta: RiskDelta
    created_at: datetime


@dataclass(slots=True)
class PlanComparisonEntry:
    plan_id: str
    duration: int
    risk: RiskLevel
    parallelization: float
    score: float


@dataclass(slots=True)
class PlanComparison:
    entries: list[PlanComparisonEntry]
    best_plan_id: str
    reason: str
    tradeoffs: list[str] = field(default_factory=list)
