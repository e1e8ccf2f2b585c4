"""Re-scope execution plans for an objective and compute execution waves."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from goal_orchestrator.planning.graph import (
    build_dependency_graph,
    chunked_layer_duration,
    direct_dependents,
    redundant_dependencies,
)
from goal_orchestrator.planning.models import (
    PRIORITY_RANK,
    AdaptationTrigger,
    ExecutionContext,
    ExecutionPlan,
    OptimizationObjective,
    OptimizationStrategy,
    PlanAdaptation,
    PlanComparison,
    PlanComparisonEntry,
    RiskDelta,
    RiskLevel,
    Task,
    TaskStatus,
)
from goal_orchestrator.planning.plan_generator import identify_parallelization_opportunities
from goal_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 4
PARALLELIZATION_MAX_PARALLEL = 8
TIME_OVERRUN_DURATION_DELTA = -30

RISK_DOWNGRADE: dict[RiskLevel, RiskLevel] = {
    RiskLevel.CRITICAL: RiskLevel.HIGH,
    RiskLevel.HIGH: RiskLevel.MEDIUM,
    RiskLevel.MEDIUM: RiskLevel.LOW,
    RiskLevel.LOW: RiskLevel.LOW,
}
RISK_SCORES: dict[RiskLevel, float] = {
    RiskLevel.LOW: 1.0,
    RiskLevel.MEDIUM: 0.7,
    RiskLevel.HIGH: 0.4,
    RiskLevel.CRITICAL: 0.1,
}
DURATION_WEIGHT = 0.4
RISK_WEIGHT = 0.4
PARALLELIZATION_WEIGHT = 0.2


class ExecutionOptimizer:
    """Produce new plan versions tuned for duration, risk or parallelism."""

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def optimize_plan(
        self,
        plan: ExecutionPlan,
        strategy: OptimizationStrategy | None = None,
    ) -> ExecutionPlan:
        strategy = strategy or OptimizationStrategy()
        optimized = self._new_version(plan)
        objective = strategy.strategy
        if objective == OptimizationObjective.MINIMIZE_DURATION:
            self._minimize_duration(optimized, strategy)
        elif objective == OptimizationObjective.MINIMIZE_RISK:
            self._minimize_risk(optimized)
        elif objective == OptimizationObjective.MAXIMIZE_PARALLELIZATION:
            self._maximize_parallelization(optimized, strategy)
        else:
            self._minimize_duration(optimized, strategy)
            if strategy.risk_tolerance == RiskLevel.LOW:
                self._serialize_critical_path(optimized)
        optimized.parallelization_opportunities = identify_parallelization_opportunities(
            optimized.tasks,
            optimized.dependencies.layers,
        )
        logger.info(
            "Optimized plan %s v%d with %s: duration %d -> %d",
            plan.id,
            optimized.version,
            objective.value,
            plan.estimated_duration,
            optimized.estimated_duration,
        )
        return optimized

    def get_execution_order(
        self,
        plan: ExecutionPlan,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        *,
        completed: Iterable[str] = (),
    ) -> list[list[Task]]:
        return execution_waves(plan.tasks, max_parallel, completed=completed)

    def adapt_plan(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
        trigger: AdaptationTrigger,
        reason: str,
    ) -> tuple[ExecutionPlan, PlanAdaptation]:
        """Return a new plan version adjusted for `trigger` plus the adaptation record."""

        adapted = self._new_version(plan)
        critical = set(adapted.dependencies.critical_path)
        duration_delta = 0
        affected: list[str] = []
        risk_delta = RiskDelta.UNCHANGED

        if trigger == AdaptationTrigger.TASK_FAILURE:
            skipped_any = False
            for task_id in context.failed_tasks:
                task = adapted.task_by_id(task_id)
                if task is None:
                    continue
                if task.id in critical:
                    task.status = TaskStatus.PENDING
                    duration_delta += task.estimated_duration
                else:
                    task.status = TaskStatus.SKIPPED
                    skipped_any = True
                affected.append(task.id)
            if skipped_any:
                risk_delta = RiskDelta.INCREASED
        elif trigger == AdaptationTrigger.CONFLICT_DETECTED:
            if context.current_task is not None:
                blocked = [
                    context.current_task,
                    *direct_dependents(adapted.tasks, context.current_task),
                ]
                for task_id in blocked:
                    task = adapted.task_by_id(task_id)
                    if task is not None:
                        task.status = TaskStatus.BLOCKED
                        affected.append(task.id)
                if affected:
                    risk_delta = RiskDelta.INCREASED
        elif trigger == AdaptationTrigger.TIME_OVERRUN:
            for task in adapted.tasks:
                if task.status == TaskStatus.PENDING and task.id not in critical:
                    task.can_run_in_parallel = True
                    affected.append(task.id)
            duration_delta = TIME_OVERRUN_DURATION_DELTA
            risk_delta = RiskDelta.INCREASED
        elif trigger == AdaptationTrigger.DEPENDENCY_CHANGE:
            adapted.dependencies = build_dependency_graph(adapted.tasks)
            affected = [task.id for task in adapted.tasks]

        adaptation = PlanAdaptation(
            trigger=trigger,
            reason=reason,
            plan_version=adapted.version,
            estimated_duration_delta=duration_delta,
            tasks_affected=affected,
            risk_delta=risk_delta,
            created_at=self._clock(),
        )
        logger.info(
            "Adapted plan %s to v%d on %s (%s): affected=%d delta=%d",
            plan.id,
            adapted.version,
            trigger.value,
            reason,
            len(affected),
            duration_delta,
        )
        return adapted, adaptation

    def compare_plans(self, plans: list[ExecutionPlan]) -> PlanComparison:
        """Score plans on duration, risk and parallelism and pick the best."""

        if not plans:
            raise ValueError("compare_plans requires at least one plan")

        durations = [plan.estimated_duration for plan in plans]
        min_duration = min(durations)
        parallelization = [parallelization_percent(plan) for plan in plans]
        max_parallelization = max(parallelization)

        entries: list[PlanComparisonEntry] = []
        for plan, duration, par in zip(plans, durations, parallelization, strict=True):
            risk = plan.risk_assessment.overall_risk
            duration_score = 1 - (duration - min_duration) / min_duration if min_duration else 1.0
            par_score = par / max_parallelization if max_parallelization else 0.0
            score = (
                duration_score * DURATION_WEIGHT
                + RISK_SCORES[risk] * RISK_WEIGHT
                + par_score * PARALLELIZATION_WEIGHT
            )
            entries.append(
                PlanComparisonEntry(
                    plan_id=plan.id,
                    duration=duration,
                    risk=risk,
                    parallelization=par,
                    score=score,
                ),
            )

        best = max(entries, key=lambda entry: entry.score)
        average_duration = sum(durations) / len(durations)
        faster_pct = (
            round((average_duration - best.duration) / average_duration * 100)
            if average_duration
            else 0
        )
        reason = (
            f"This plan offers the best balance of duration ({best.duration} min, "
            f"{faster_pct}% faster than average), risk level ({best.risk.value}), "
            "and parallelization opportunities."
        )

        tradeoffs: list[str] = []
        fastest = min(entries, key=lambda entry: entry.duration)
        if fastest.plan_id != best.plan_id:
            tradeoffs.append(
                f"Plan {fastest.plan_id} is {best.duration - fastest.duration} min faster "
                f"but carries {fastest.risk.value} risk",
            )
        safest = max(entries, key=lambda entry: RISK_SCORES[entry.risk])
        if safest.plan_id != best.plan_id and RISK_SCORES[safest.risk] > RISK_SCORES[best.risk]:
            tradeoffs.append(
                f"Plan {safest.plan_id} has lower risk ({safest.risk.value}) "
                f"but takes {safest.duration - best.duration} min longer",
            )
        return PlanComparison(
            entries=entries,
            best_plan_id=best.plan_id,
            reason=reason,
            tradeoffs=tradeoffs,
        )

    def _new_version(self, plan: ExecutionPlan) -> ExecutionPlan:
        new_plan = copy.deepcopy(plan)
        new_plan.version = plan.version + 1
        new_plan.updated_at = self._clock()
        return new_plan

    def _minimize_duration(self, plan: ExecutionPlan, strategy: OptimizationStrategy) -> None:
        plan.tasks.sort(
            key=lambda task: (len(task.dependencies), PRIORITY_RANK[task.priority]),
        )
        plan.dependencies = build_dependency_graph(plan.tasks)
        plan.estimated_duration = chunked_layer_duration(
            plan.tasks,
            plan.dependencies.layers,
            strategy.max_parallel_tasks or DEFAULT_MAX_PARALLEL,
        )

    def _minimize_risk(self, plan: ExecutionPlan) -> None:
        self._serialize_critical_path(plan)
        assessment = plan.risk_assessment
        assessment.overall_risk = RISK_DOWNGRADE[assessment.overall_risk]
        plan.estimated_duration = chunked_layer_duration(plan.tasks, plan.dependencies.layers, 1)

    def _maximize_parallelization(
        self,
        plan: ExecutionPlan,
        strategy: OptimizationStrategy,
    ) -> None:
        for task_id, dep_id in redundant_dependencies(plan.tasks):
            task = plan.task_by_id(task_id)
            if task is not None and dep_id in task.dependencies:
                task.dependencies.remove(dep_id)
                logger.debug("Dropped soft dependency %s -> %s", dep_id, task_id)
        for task in plan.tasks:
            if not task.dependencies:
                task.can_run_in_parallel = True
        plan.dependencies = build_dependency_graph(plan.tasks)
        plan.estimated_duration = chunked_layer_duration(
            plan.tasks,
            plan.dependencies.layers,
            strategy.max_parallel_tasks or PARALLELIZATION_MAX_PARALLEL,
        )

    def _serialize_critical_path(self, plan: ExecutionPlan) -> None:
        critical = set(plan.dependencies.critical_path)
        for task in plan.tasks:
            if task.id in critical:
                task.can_run_in_parallel = False


def execution_waves(
    tasks: list[Task],
    max_parallel: int = DEFAULT_MAX_PARALLEL,
    *,
    completed: Iterable[str] = (),
) -> list[list[Task]]:
    """Group tasks into dependency-respecting batches of at most `max_parallel`.

    A task that cannot run in parallel is dispatched alone. Ids in `completed`
    count as satisfied dependencies. Stops early when nothing becomes ready,
    which means the remaining tasks reference a cycle or unknown tasks.
    """

    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")
    done = set(completed)
    remaining = [task for task in tasks if task.id not in done]
    waves: list[list[Task]] = []
    while remaining:
        ready = [task for task in remaining if all(dep in done for dep in task.dependencies)]
        if not ready:
            logger.warning(
                "No task became ready; %d tasks unreachable: %s",
                len(remaining),
                ", ".join(task.name for task in remaining),
            )
            break
        wave = [ready[0]]
        if ready[0].can_run_in_parallel:
            for task in ready[1:]:
                if len(wave) >= max_parallel:
                    break
                if task.can_run_in_parallel:
                    wave.append(task)
        waves.append(wave)
        wave_ids = {task.id for task in wave}
        done |= wave_ids
        remaining = [task for task in remaining if task.id not in wave_ids]
    return waves


def parallelization_percent(plan: ExecutionPlan) -> float:
    if not plan.tasks:
        return 0.0
    parallel = sum(1 for task in plan.tasks if task.can_run_in_parallel)
    return parallel / len(plan.tasks) * 100
