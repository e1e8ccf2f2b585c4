"""Controllers for goal-orchestrator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from goal_orchestrator.config import Settings
from goal_orchestrator.engine.engine import OrchestratorEngine
from goal_orchestrator.engine.events import CallbackEventSink, OrchestratorEvent
from goal_orchestrator.engine.executor import DryRunAgentExecutor
from goal_orchestrator.learning.models import LessonType
from goal_orchestrator.learning.repository import LearningRepository
from goal_orchestrator.learning.service import LearningService
from goal_orchestrator.planning.goal_parser import GoalParser, load_goal_templates
from goal_orchestrator.planning.graph import task_names
from goal_orchestrator.planning.models import (
    ExecutionPlan,
    OptimizationObjective,
    OptimizationStrategy,
)
from goal_orchestrator.planning.optimizer import ExecutionOptimizer, parallelization_percent
from goal_orchestrator.planning.plan_generator import PlanGenerator, validate_plan
from goal_orchestrator.resilience.error_handler import ErrorHandler
from goal_orchestrator.resilience.failure_classifier import (
    DEFAULT_CLASSIFICATION_RULES,
    ClassificationRule,
    load_classification_rules,
)
from goal_orchestrator.resilience.retry import RetryManager


@dataclass(slots=True)
class PlanCommand:
    """CLI input for plan generation and validation."""

    goal: str


@dataclass(slots=True)
class OptimizeCommand:
    goal: str
    strategy: str
    max_parallel: int | None = None


@dataclass(slots=True)
class OrderCommand:
    goal: str
    max_parallel: int


@dataclass(slots=True)
class RunCommand:
    """CLI input for a dry-run execution that still records history."""

    goal: str
    db_path: Path | None
    max_parallel: int | None = None
    learning: bool = True


@dataclass(slots=True)
class LessonsCommand:
    db_path: Path | None
    lesson_type: str | None
    min_confidence: float
    limit: int


@dataclass(slots=True)
class RecommendCommand:
    goal: str
    db_path: Path | None
    task_type: str | None
    limit: int


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


class GoalOrchestratorCliController:
    """Coordinates planning, execution and learning CLI operations."""

    def plan(self, command: PlanCommand) -> list[str]:
        plan = _plan_generator(Settings.from_env()).generate_plan(command.goal)
        return _render_plan(plan)

    def validate(self, command: PlanCommand) -> list[str]:
        plan = _plan_generator(Settings.from_env()).generate_plan(command.goal)
        result = validate_plan(plan)
        lines = [f"Valid: {'yes' if result.is_valid else 'no'}"]
        lines.extend(f"  error {issue.type.value}: {issue.message}" for issue in result.errors)
        lines.extend(f"  warning: {warning}" for warning in result.warnings)
        lines.extend(f"  suggestion: {suggestion}" for suggestion in result.suggestions)
        return lines

    def optimize(self, command: OptimizeCommand) -> list[str]:
        plan = _plan_generator(Settings.from_env()).generate_plan(command.goal)
        optimizer = ExecutionOptimizer()
        optimized = optimizer.optimize_plan(
            plan,
            OptimizationStrategy(
                strategy=OptimizationObjective(command.strategy),
                max_parallel_tasks=command.max_parallel,
            ),
        )
        comparison = optimizer.compare_plans([plan, optimized])
        preferred = "original" if comparison.best_plan_id == plan.id else "optimized"
        lines = [
            f"Strategy: {command.strategy}",
            f"Duration: {plan.estimated_duration} -> {optimized.estimated_duration} min",
            f"Parallelization: {parallelization_percent(plan):.1f}% -> "
            f"{parallelization_percent(optimized):.1f}%",
            f"Version: {plan.version} -> {optimized.version}",
            f"Preferred: {preferred} ({comparison.reason})",
        ]
        lines.extend(f"  tradeoff: {tradeoff}" for tradeoff in comparison.tradeoffs)
        return lines

    def order(self, command: OrderCommand) -> list[str]:
        plan = _plan_generator(Settings.from_env()).generate_plan(command.goal)
        waves = ExecutionOptimizer().get_execution_order(plan, command.max_parallel)
        lines = [f"Waves: {len(waves)}"]
        for index, wave in enumerate(waves, start=1):
            lines.append(f"  {index}. {', '.join(task.name for task in wave)}")
        return lines

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.orchestrator.enable_learning = command.learning
        if command.max_parallel is not None:
            settings.orchestrator.max_parallel_tasks = command.max_parallel
        settings.validate()
        plan = _plan_generator(settings).generate_plan(command.goal)

        lines: list[str] = []

        def on_event(event: OrchestratorEvent) -> None:
            lines.append(f"  [{event.event_type.value}] {event.task_id or '-'} {event.payload}")

        rules = _classification_rules(settings)
        retry_manager = RetryManager(rules=rules)
        with _learning_service(settings) as learning:
            engine = OrchestratorEngine(
                DryRunAgentExecutor(),
                learning,
                settings=settings.orchestrator,
                retry_manager=retry_manager,
                retry_config=settings.retry.to_retry_config(),
                error_handler=ErrorHandler(retry_manager=retry_manager, rules=rules),
                events=CallbackEventSink(on_event),
            )
            executed, summary = engine.execute_plan(plan)

        return [
            f"Plan: {executed.id} v{executed.version} status={executed.status.value}",
            f"Tasks: {len(executed.tasks)} successful={summary.successful} "
            f"failed={summary.failed} blocked={summary.blocked} skipped={summary.skipped}",
            f"Lessons learned: {summary.lessons_learned}",
            "Events:",
            *lines,
        ]

    def lessons(self, command: LessonsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        lesson_types = (LessonType(command.lesson_type),) if command.lesson_type else ()
        with _learning_service(settings) as learning:
            lessons = learning.repository.list_lessons(
                min_confidence=command.min_confidence,
                lesson_types=lesson_types,
            )
        lines = [f"Lessons: {len(lessons)}"]
        for lesson in lessons[: command.limit]:
            effectiveness = (
                f"{lesson.effectiveness_score:.2f}"
                if lesson.effectiveness_score is not None
                else "-"
            )
            lines.append(
                f"  #{lesson.lesson_id} {lesson.lesson_type.value} "
                f"confidence={lesson.confidence_score:.2f} effectiveness={effectiveness} "
                f"applied={lesson.times_applied}: {lesson.recommendation}",
            )
        return lines

    def recommend(self, command: RecommendCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _learning_service(settings) as learning:
            recommendations = learning.get_recommendations(
                command.goal,
                command.task_type,
                command.limit,
            )
        lines = [f"Recommendations: {len(recommendations)}"]
        for recommendation in recommendations:
            lines.append(
                f"  [{recommendation.priority.value}] {recommendation.title}: "
                f"{recommendation.description} "
                f"(confidence={recommendation.confidence_score:.2f}, "
                f"expected: {recommendation.expected_improvement})",
            )
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _learning_service(settings) as learning:
            stats = learning.get_learning_stats()
        lines = [
            f"Executions: {stats.total_executions}",
            f"Lessons: {stats.total_lessons}",
            f"Avg confidence: {stats.avg_confidence_score:.2f}",
            f"Avg effectiveness: {stats.avg_effectiveness_score:.2f}",
            f"Optimization potential: {stats.optimization_potential}",
            "Top agents:",
        ]
        for performer in stats.top_performing_agents:
            duration = performer.avg_duration_ms if performer.avg_duration_ms is not None else "-"
            lines.append(
                f"  {performer.agent_type} {performer.task_type} "
                f"success={performer.success_rate * 100:.1f}% avg_ms={duration}",
            )
        lines.append("Failure patterns:")
        lines.extend(
            f"  {pattern.description} x{pattern.occurrences}: {pattern.recommended_fix}"
            for pattern in stats.common_failure_patterns
        )
        lines.append("Recent improvements:")
        lines.extend(
            f"  {improvement.lesson_type.value} {improvement.improvement_percent:.0f}%: "
            f"{improvement.description}"
            for improvement in stats.recent_improvements
        )
        return lines


def _render_plan(plan: ExecutionPlan) -> list[str]:
    lines = [
        f"Plan: {plan.id} v{plan.version}",
        f"Goal: {plan.goal}",
        f"Intent: {plan.parsed_goal.intent} "
        f"complexity={plan.parsed_goal.estimated_complexity.value} "
        f"confidence={plan.parsed_goal.confidence:.2f}",
        f"Estimated duration: {plan.estimated_duration} min",
        f"Tasks: {len(plan.tasks)}",
    ]
    for task in plan.tasks:
        depends = ", ".join(task_names(plan.tasks, task.dependencies)) or "-"
        parallel = "yes" if task.can_run_in_parallel else "no"
        lines.append(
            f"  {task.name} agent={task.agent_type.value} priority={task.priority.value} "
            f"duration={task.estimated_duration} parallel={parallel} "
            f"depends_on={depends}",
        )
    lines.append(f"Layers: {len(plan.dependencies.layers)}")
    for index, layer in enumerate(plan.dependencies.layers, start=1):
        lines.append(f"  {index}. {', '.join(task_names(plan.tasks, layer))}")
    critical_path = task_names(plan.tasks, plan.dependencies.critical_path)
    lines.append(f"Critical path: {' -> '.join(critical_path)}")
    lines.append(f"Overall risk: {plan.risk_assessment.overall_risk.value}")
    lines.extend(
        f"  {risk.type.value}: {risk.description} (mitigation: {risk.mitigation})"
        for risk in plan.risk_assessment.risks
    )
    return lines


def _plan_generator(settings: Settings) -> PlanGenerator:
    if settings.goal_templates_path is None:
        return PlanGenerator()
    return PlanGenerator(goal_parser=GoalParser(load_goal_templates(settings.goal_templates_path)))


def _classification_rules(settings: Settings) -> tuple[ClassificationRule, ...]:
    if settings.classification_rules_path is None:
        return DEFAULT_CLASSIFICATION_RULES
    return load_classification_rules(settings.classification_rules_path)


@contextmanager
def _learning_service(settings: Settings) -> Iterator[LearningService]:
    repository = LearningRepository(settings.db_path)
    repository.init_schema()
    try:
        yield LearningService(
            repository,
            min_confidence=settings.orchestrator.min_confidence,
            min_sample_size=settings.learning.min_sample_size,
            lookback_days=settings.learning.lookback_days,
        )
    finally:
        repository.close()
