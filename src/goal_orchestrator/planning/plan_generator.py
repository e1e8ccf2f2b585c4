"""Generate dependency-aware execution plans from parsed goals."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from goal_orchestrator.planning.goal_parser import GoalParser
from goal_orchestrator.planning.graph import (
    build_dependency_graph,
    find_cycle,
    layered_duration,
    task_names,
)
from goal_orchestrator.planning.models import (
    AgentType,
    Capability,
    DependencyGraph,
    ExecutionPlan,
    GoalComplexity,
    Milestone,
    ParallelizationOpportunity,
    ParsedGoal,
    PlanStatus,
    PlanValidationIssue,
    PlanValidationResult,
    Risk,
    RiskAssessment,
    RiskLevel,
    RiskType,
    Task,
    TaskMetadata,
    TaskPriority,
    ValidationIssueType,
)
from goal_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

PHASE_ORDER: tuple[str, ...] = (
    "models",
    "database",
    "api",
    "security",
    "realtime",
    "ui",
    "integration",
    "quality",
    "testing",
    "documentation",
)
BLOCKING_PHASES = frozenset({"models", "database", "security"})
MILESTONE_CRITERIA: tuple[str, ...] = (
    "All tasks in phase completed",
    "Tests passing",
    "Code reviewed",
)

PARALLEL_SAVING_THRESHOLD_MINUTES = 10
LONG_CRITICAL_PATH_MINUTES = 240
LONG_PLAN_WARNING_MINUTES = 480


@dataclass(slots=True, frozen=True)
class TaskTemplate:
    """One entry of the phase task library.

    A template is emitted when any capability in `triggers` is present, or
    unconditionally when `always` is set. Dependencies are template names.
    """

    name: str
    description: str
    agent_type: AgentType
    priority: TaskPriority
    estimated_duration: int
    phase: str
    complexity: int
    task_type: str
    outputs: tuple[str, ...]
    acceptance_criteria: tuple[str, ...]
    dependencies: tuple[str, ...] = ()
    triggers: tuple[Capability, ...] = ()
    always: bool = False

    def applies_to(self, capabilities: set[Capability]) -> bool:
        return self.always or any(capability in capabilities for capability in self.triggers)


TASK_LIBRARY: tuple[TaskTemplate, ...] = (
    TaskTemplate(
        name="Define Data Models",
        description="Define entities, fields and relationships",
        agent_type=AgentType.MODELS,
        priority=TaskPriority.CRITICAL,
        estimated_duration=30,
        phase="models",
        complexity=5,
        task_type="model_definition",
        outputs=("models/",),
        acceptance_criteria=(
            "All entities defined with proper types",
            "Relationships mapped correctly",
        ),
        triggers=(Capability.DATABASE, Capability.CRUD),
    ),
    TaskTemplate(
        name="Create Database Schema",
        description="Design and implement database migrations",
        agent_type=AgentType.DATABASE,
        priority=TaskPriority.CRITICAL,
        estimated_duration=45,
        phase="database",
        complexity=6,
        task_type="database_migration",
        outputs=("migrations/",),
        acceptance_criteria=(
            "Schema matches data models",
            "Indexes created for performance",
            "Foreign keys and constraints defined",
        ),
        dependencies=("Define Data Models",),
        triggers=(Capability.DATABASE, Capability.CRUD),
    ),
    TaskTemplate(
        name="Implement API Controllers",
        description="Create API endpoints with request handling",
        agent_type=AgentType.API,
        priority=TaskPriority.HIGH,
        estimated_duration=60,
        phase="api",
        complexity=7,
        task_type="api_implementation",
        outputs=("controllers/", "routes/"),
        acceptance_criteria=(
            "All CRUD endpoints implemented",
            "Request validation in place",
            "Proper error handling",
        ),
        dependencies=("Define Data Models",),
        triggers=(Capability.API,),
    ),
    TaskTemplate(
        name="Implement Service Layer",
        description="Create business logic services",
        agent_type=AgentType.API,
        priority=TaskPriority.HIGH,
        estimated_duration=45,
        phase="api",
        complexity=6,
        task_type="api_implementation",
        outputs=("services/",),
        acceptance_criteria=(
            "Business logic separated from controllers",
            "Database queries implemented",
        ),
        dependencies=("Define Data Models", "Create Database Schema"),
        triggers=(Capability.API,),
    ),
    TaskTemplate(
        name="Implement Authentication",
        description="Create token-based authentication",
        agent_type=AgentType.AUTH,
        priority=TaskPriority.CRITICAL,
        estimated_duration=90,
        phase="security",
        complexity=8,
        task_type="security_implementation",
        outputs=("middleware/auth", "services/auth"),
        acceptance_criteria=(
            "Token generation and validation",
            "Password hashing implemented",
            "Login and logout endpoints",
        ),
        dependencies=("Define Data Models",),
        triggers=(Capability.AUTHENTICATION,),
    ),
    TaskTemplate(
        name="Implement RBAC",
        description="Create role-based access control",
        agent_type=AgentType.RBAC,
        priority=TaskPriority.HIGH,
        estimated_duration=75,
        phase="security",
        complexity=7,
        task_type="security_implementation",
        outputs=("middleware/rbac", "models/permissions"),
        acceptance_criteria=(
            "Role definitions created",
            "Permission checks implemented",
            "Middleware protects routes",
        ),
        dependencies=("Implement Authentication",),
        triggers=(Capability.AUTHORIZATION,),
    ),
    TaskTemplate(
        name="Implement WebSocket Server",
        description="Set up real-time communication channel",
        agent_type=AgentType.REALTIME,
        priority=TaskPriority.MEDIUM,
        estimated_duration=60,
        phase="realtime",
        complexity=6,
        task_type="websocket_feature",
        outputs=("services/websocket", "models/websocket_events"),
        acceptance_criteria=(
            "WebSocket server running",
            "Event types defined",
            "Room-based broadcasting",
        ),
        dependencies=("Implement API Controllers",),
        triggers=(Capability.REAL_TIME,),
    ),
    TaskTemplate(
        name="Build User Interface",
        description="Create frontend components and pages",
        agent_type=AgentType.UI,
        priority=TaskPriority.MEDIUM,
        estimated_duration=120,
        phase="ui",
        complexity=8,
        task_type="ui_implementation",
        outputs=("public/",),
        acceptance_criteria=("All UI components implemented", "API integration complete"),
        dependencies=("Implement API Controllers",),
        triggers=(Capability.UI,),
    ),
    TaskTemplate(
        name="Implement External Integration",
        description="Connect to external systems",
        agent_type=AgentType.INTEGRATION,
        priority=TaskPriority.MEDIUM,
        estimated_duration=90,
        phase="integration",
        complexity=7,
        task_type="integration",
        outputs=("services/integrations/",),
        acceptance_criteria=(
            "API client implemented",
            "Error handling for external failures",
        ),
        dependencies=("Implement Service Layer",),
        triggers=(Capability.INTEGRATION,),
    ),
    TaskTemplate(
        name="Add Input Validation",
        description="Implement request validation and quality checks",
        agent_type=AgentType.QUALITY,
        priority=TaskPriority.HIGH,
        estimated_duration=45,
        phase="quality",
        complexity=5,
        task_type="validation",
        outputs=("middleware/validation",),
        acceptance_criteria=("All inputs validated", "Error messages user-friendly"),
        dependencies=("Implement API Controllers",),
        triggers=(Capability.VALIDATION,),
    ),
    TaskTemplate(
        name="Write Unit Tests",
        description="Create unit tests for services and utilities",
        agent_type=AgentType.TEST,
        priority=TaskPriority.HIGH,
        estimated_duration=60,
        phase="testing",
        complexity=6,
        task_type="testing",
        outputs=("tests/unit/",),
        acceptance_criteria=("80%+ code coverage", "Edge cases covered"),
        dependencies=("Implement Service Layer",),
        always=True,
    ),
    TaskTemplate(
        name="Write Integration Tests",
        description="Create API integration tests",
        agent_type=AgentType.TEST,
        priority=TaskPriority.HIGH,
        estimated_duration=75,
        phase="testing",
        complexity=7,
        task_type="testing",
        outputs=("tests/integration/",),
        acceptance_criteria=("All endpoints tested", "Error cases covered"),
        dependencies=("Implement API Controllers", "Write Unit Tests"),
        always=True,
    ),
    TaskTemplate(
        name="Write Documentation",
        description="Create API documentation and guides",
        agent_type=AgentType.DOCUMENTATION,
        priority=TaskPriority.LOW,
        estimated_duration=45,
        phase="documentation",
        complexity=4,
        task_type="documentation",
        outputs=("docs/",),
        acceptance_criteria=("API endpoints documented", "Setup instructions clear"),
        triggers=(Capability.DOCUMENTATION,),
    ),
)

RISK_LEVEL_THRESHOLDS: tuple[tuple[float, RiskLevel], ...] = (
    (0.3, RiskLevel.LOW),
    (0.5, RiskLevel.MEDIUM),
    (0.7, RiskLevel.HIGH),
)


class PlanGenerator:
    """Build execution plans from goals using the phase task library."""

    def __init__(
        self,
        *,
        goal_parser: GoalParser | None = None,
        task_library: tuple[TaskTemplate, ...] = TASK_LIBRARY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._goal_parser = goal_parser or GoalParser()
        self._task_library = task_library
        self._clock = clock

    def generate_plan(self, goal: str) -> ExecutionPlan:
        parsed_goal = self._goal_parser.parse_goal(goal)
        tasks = self.generate_tasks(parsed_goal)
        graph = build_dependency_graph(tasks)
        now = self._clock()
        plan = ExecutionPlan(
            id=str(uuid4()),
            goal=goal,
            parsed_goal=parsed_goal,
            tasks=tasks,
            milestones=self.create_milestones(tasks, now=now),
            dependencies=graph,
            estimated_duration=layered_duration(tasks, graph.layers),
            parallelization_opportunities=identify_parallelization_opportunities(
                tasks,
                graph.layers,
            ),
            risk_assessment=assess_risks(parsed_goal, tasks, graph),
            created_at=now,
            updated_at=now,
            status=PlanStatus.DRAFT,
        )
        logger.info(
            "Generated plan %s for goal %r: tasks=%d layers=%d duration=%d risk=%s",
            plan.id,
            goal,
            len(tasks),
            len(graph.layers),
            plan.estimated_duration,
            plan.risk_assessment.overall_risk.value,
        )
        return plan

    def generate_tasks(self, parsed_goal: ParsedGoal) -> list[Task]:
        """Emit tasks for present capabilities and resolve name dependencies to ids.

        Dependencies on templates that were not emitted are dropped, so every
        dependency id resolves within the plan.
        """

        capabilities = set(parsed_goal.capabilities)
        selected = [
            template for template in self._task_library if template.applies_to(capabilities)
        ]
        ids_by_name = {template.name: str(uuid4()) for template in selected}

        tasks: list[Task] = []
        for template in selected:
            dependencies = [
                ids_by_name[name] for name in template.dependencies if name in ids_by_name
            ]
            dropped = [name for name in template.dependencies if name not in ids_by_name]
            if dropped:
                logger.debug(
                    "Dropping dependencies of %r not present in plan: %s",
                    template.name,
                    ", ".join(dropped),
                )
            tasks.append(
                Task(
                    id=ids_by_name[template.name],
                    name=template.name,
                    description=template.description,
                    agent_type=template.agent_type,
                    priority=template.priority,
                    estimated_duration=template.estimated_duration,
                    dependencies=dependencies,
                    outputs=list(template.outputs),
                    acceptance_criteria=list(template.acceptance_criteria),
                    can_run_in_parallel=not dependencies,
                    metadata=TaskMetadata(
                        phase=template.phase,
                        complexity=template.complexity,
                        task_type=template.task_type,
                    ),
                ),
            )
        return tasks

    def create_milestones(self, tasks: list[Task], *, now: datetime) -> list[Milestone]:
        milestones: list[Milestone] = []
        cumulative_minutes = 0
        for phase in PHASE_ORDER:
            phase_tasks = [task for task in tasks if task.metadata.phase == phase]
            if not phase_tasks:
                continue
            cumulative_minutes += max(task.estimated_duration for task in phase_tasks)
            milestones.append(
                Milestone(
                    id=str(uuid4()),
                    name=f"Complete {phase.capitalize()} Phase",
                    description=f"All {phase} tasks completed and validated",
                    task_ids=[task.id for task in phase_tasks],
                    completion_criteria=list(MILESTONE_CRITERIA),
                    estimated_completion=now + timedelta(minutes=cumulative_minutes),
                    is_blocking=phase in BLOCKING_PHASES,
                ),
            )
        return milestones


def identify_parallelization_opportunities(
    tasks: list[Task],
    layers: list[list[str]],
) -> list[ParallelizationOpportunity]:
    durations = {task.id: task.estimated_duration for task in tasks}
    opportunities: list[ParallelizationOpportunity] = []
    for index, layer in enumerate(layers):
        if len(layer) < 2:  # noqa: PLR2004
            continue
        layer_durations = [durations[task_id] for task_id in layer]
        saved = sum(layer_durations) - max(layer_durations)
        if saved > PARALLEL_SAVING_THRESHOLD_MINUTES:
            opportunities.append(
                ParallelizationOpportunity(
                    task_ids=list(layer),
                    estimated_time_saved=saved,
                    risk_level=RiskLevel.LOW,
                    reason=(
                        f"{len(layer)} tasks in layer {index} have no dependencies "
                        "on each other and can run concurrently"
                    ),
                ),
            )
    return opportunities


def assess_risks(
    parsed_goal: ParsedGoal,
    tasks: list[Task],
    graph: DependencyGraph,
) -> RiskAssessment:
    risks: list[Risk] = []
    capabilities = set(parsed_goal.capabilities)
    if parsed_goal.estimated_complexity == GoalComplexity.VERY_COMPLEX:
        risks.append(
            Risk(
                type=RiskType.COMPLEXITY,
                description="Goal has very high complexity with many moving parts",
                probability=0.7,
                impact=0.8,
                mitigation="Break into smaller sub-goals, increase testing, add checkpoints",
            ),
        )
    if Capability.AUTHENTICATION in capabilities:
        risks.append(
            Risk(
                type=RiskType.SECURITY,
                description="Authentication implementation is security-critical",
                probability=0.5,
                impact=0.9,
                mitigation="Use established patterns and schedule a security review",
            ),
        )
    if Capability.INTEGRATION in capabilities:
        risks.append(
            Risk(
                type=RiskType.EXTERNAL_DEPENDENCY,
                description="Integration depends on external system availability",
                probability=0.6,
                impact=0.7,
                mitigation="Retry with backoff, add fallbacks for external failures",
            ),
        )
    critical = set(graph.critical_path)
    critical_minutes = sum(task.estimated_duration for task in tasks if task.id in critical)
    if critical_minutes > LONG_CRITICAL_PATH_MINUTES:
        risks.append(
            Risk(
                type=RiskType.TIMELINE,
                description="Critical path is very long, delays will cascade",
                probability=0.6,
                impact=0.7,
                mitigation="Parallelize where possible and add slack time",
            ),
        )
    return RiskAssessment(overall_risk=overall_risk_level(risks), risks=risks)


def overall_risk_level(risks: list[Risk]) -> RiskLevel:
    """Bucket the mean probability x impact; no risks means low."""

    if not risks:
        return RiskLevel.LOW
    mean_score = sum(risk.probability * risk.impact for risk in risks) / len(risks)
    for threshold, level in RISK_LEVEL_THRESHOLDS:
        if mean_score < threshold:
            return level
    return RiskLevel.CRITICAL


def validate_plan(plan: ExecutionPlan) -> PlanValidationResult:
    """Check plan structure without raising; errors make the plan non-executable."""

    errors: list[PlanValidationIssue] = []
    warnings: list[str] = []
    suggestions: list[str] = []

    cycle = find_cycle(plan.tasks)
    if cycle is not None:
        names = task_names(plan.tasks, cycle)
        errors.append(
            PlanValidationIssue(
                type=ValidationIssueType.CIRCULAR_DEPENDENCY,
                message=f"Circular dependency detected: {' -> '.join(names)}",
                task_id=cycle[0],
                path=names,
            ),
        )

    task_ids = {task.id for task in plan.tasks}
    valid_agents = {agent.value for agent in AgentType}
    for task in plan.tasks:
        for dep_id in task.dependencies:
            if dep_id not in task_ids:
                errors.append(
                    PlanValidationIssue(
                        type=ValidationIssueType.MISSING_DEPENDENCY,
                        message=f"Task {task.name!r} depends on missing task {dep_id}",
                        task_id=task.id,
                    ),
                )
        agent_value = getattr(task.agent_type, "value", task.agent_type)
        if agent_value not in valid_agents:
            errors.append(
                PlanValidationIssue(
                    type=ValidationIssueType.INVALID_AGENT,
                    message=f"Task {task.name!r} has invalid agent type {agent_value!r}",
                    task_id=task.id,
                ),
            )

    if plan.estimated_duration > LONG_PLAN_WARNING_MINUTES:
        warnings.append("Plan duration exceeds 8 hours, consider breaking into sub-goals")
    if plan.parallelization_opportunities:
        suggestions.append(
            f"{len(plan.parallelization_opportunities)} parallelization opportunities "
            "identified that could save time",
        )
    return PlanValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        suggestions=suggestions,
    )
