"""Learning-aware execution of plans, task waves and single tasks."""

from __future__ import annotations

import copy
import logging
import time
import traceback
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any

from goal_orchestrator.config import OrchestratorSettings
from goal_orchestrator.engine.events import EventSink, EventType, OrchestratorEvent
from goal_orchestrator.engine.executor import (
    AgentExecutor,
    AgentOutcome,
    AgentOutcomeError,
    AgentOutcomeStatus,
)
from goal_orchestrator.learning.models import (
    ExecutionRecordCreate,
    ExecutionRecordFinish,
    ExecutionRecordView,
    ExecutionStatus,
    LearningStats,
    Recommendation,
    RecommendationPriority,
    TaskExecutionPlanItem,
)
from goal_orchestrator.learning.service import LearningService
from goal_orchestrator.planning.models import (
    AgentType,
    ExecutionPlan,
    PlanStatus,
    PlanValidationError,
    Task,
    TaskStatus,
)
from goal_orchestrator.planning.optimizer import execution_waves
from goal_orchestrator.planning.plan_generator import validate_plan
from goal_orchestrator.resilience.error_handler import ErrorHandler
from goal_orchestrator.resilience.models import (
    CircuitOpenError,
    ErrorContext,
    ErrorType,
    RecoveryAction,
    RecoveryResult,
    RetryConfig,
    RetryError,
)
from goal_orchestrator.resilience.retry import RetryManager
from goal_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000


@dataclass(slots=True)
class TaskRunResult:
    task_id: str
    agent_type: str
    status: TaskStatus
    success: bool
    duration_ms: int = 0
    execution_id: int | None = None
    output: Any = None
    error: str | None = None
    recovery: RecoveryResult | None = None
    applied_lesson_id: int | None = None


@dataclass(slots=True)
class ExecutionSummary:
    """Outcome of one `execute_tasks` call; skipped tasks count as successful."""

    goal: str
    successful: int
    failed: int
    blocked: int
    total_duration_ms: int
    results: list[TaskRunResult] = field(default_factory=list)
    lessons_learned: int = 0

    @property
    def skipped(self) -> int:
        return sum(1 for result in self.results if result.status == TaskStatus.SKIPPED)


class OrchestratorEngine:
    """Run tasks through agents with retry, recovery and history-driven tuning.

    Waves from the dependency graph are dispatched concurrently and awaited
    whole. Dependents of a task that did not succeed are blocked without
    being dispatched.
    """

    def __init__(  # noqa: PLR0913
        self,
        executor: AgentExecutor,
        learning: LearningService,
        *,
        settings: OrchestratorSettings | None = None,
        retry_manager: RetryManager | None = None,
        retry_config: RetryConfig | None = None,
        error_handler: ErrorHandler | None = None,
        events: EventSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.executor = executor
        self.learning = learning
        self.settings = settings or OrchestratorSettings()
        self.retry_manager = retry_manager or RetryManager()
        self.retry_config = retry_config
        self.error_handler = error_handler or ErrorHandler(retry_manager=self.retry_manager)
        self._events = events
        self._clock = clock

    def execute_task(self, task: Task, goal: str) -> TaskRunResult:
        """Execute one task, record it in history and recover from failure."""

        started = time.monotonic()
        applied_lesson_id = None
        if self.settings.enable_learning and self.settings.auto_optimize:
            applied_lesson_id = self._apply_recommendation(task, goal)

        prediction = self.learning.get_predicted_duration(
            task.agent_type.value,
            task.task_type,
            fallback_ms=task.estimated_duration * MINUTE_MS,
        )
        task.predicted_duration_ms = prediction.predicted_duration_ms
        task.status = TaskStatus.IN_PROGRESS

        record = self.learning.record_execution(
            ExecutionRecordCreate(
                goal=goal,
                agent_type=task.agent_type.value,
                task_description=task.description or task.name,
                task_type=task.task_type,
                estimated_duration_ms=prediction.predicted_duration_ms,
                task_id=task.id,
                context={"phase": task.metadata.phase, "priority": task.priority.value},
                dependencies=list(task.dependencies),
                parallel_execution=task.can_run_in_parallel,
            ),
        )
        self._publish(
            EventType.TASK_STARTED,
            task.id,
            {
                "agent_type": task.agent_type.value,
                "execution_id": record.execution_id,
                "predicted_duration_ms": prediction.predicted_duration_ms,
            },
        )

        context = ErrorContext(
            agent_type=task.agent_type.value,
            task_id=task.id,
            phase=task.metadata.phase,
        )
        operation_id = f"task:{task.id}"
        try:
            outcome = self.retry_manager.execute_with_retry(
                operation_id,
                partial(self._invoke_agent, task),
                self.retry_config,
                context,
            )
        except (RetryError, CircuitOpenError) as error:
            result = self._handle_failure(task, record, error, context, started)
        else:
            result = self._handle_success(task, record, outcome, operation_id, started)

        result.applied_lesson_id = applied_lesson_id
        if applied_lesson_id is not None:
            self.learning.record_lesson_application(applied_lesson_id, success=result.success)
        return result

    def execute_tasks(self, tasks: list[Task], goal: str) -> ExecutionSummary:
        """Execute `tasks` wave by wave and run a learning pass at the end."""

        started = time.monotonic()
        ordered = self._optimize_order(tasks) if self.settings.auto_optimize else list(tasks)
        max_parallel = (
            self.settings.max_parallel_tasks if self.settings.parallel_execution_enabled else 1
        )
        waves = execution_waves(ordered, max_parallel)

        results: dict[str, TaskRunResult] = {}
        unsuccessful: set[str] = set()
        for index, wave in enumerate(waves, start=1):
            runnable: list[Task] = []
            for task in wave:
                blockers = [dep for dep in task.dependencies if dep in unsuccessful]
                if blockers:
                    results[task.id] = _blocked(task, f"Blocked by {', '.join(blockers)}")
                    unsuccessful.add(task.id)
                else:
                    runnable.append(task)
            if not runnable:
                continue
            logger.info("Dispatching wave %d/%d with %d tasks", index, len(waves), len(runnable))
            for result in self._run_wave(runnable, goal):
                results[result.task_id] = result
                if not result.success:
                    unsuccessful.add(result.task_id)

        for task in ordered:
            if task.id not in results:
                results[task.id] = _blocked(task, "Dependencies can never be satisfied")

        lessons_learned = 0
        if self.settings.enable_learning:
            lessons_learned = len(self.learning.analyze_patterns())
            self.learning.update_confidence_scores()

        ordered_results = [results[task.id] for task in tasks]
        summary = ExecutionSummary(
            goal=goal,
            successful=sum(1 for result in ordered_results if result.success),
            failed=sum(1 for result in ordered_results if result.status == TaskStatus.FAILED),
            blocked=sum(1 for result in ordered_results if result.status == TaskStatus.BLOCKED),
            total_duration_ms=_elapsed_ms(started),
            results=ordered_results,
            lessons_learned=lessons_learned,
        )
        logger.info(
            "Executed %d tasks for goal %r: %d successful, %d failed, %d blocked",
            len(tasks),
            goal,
            summary.successful,
            summary.failed,
            summary.blocked,
        )
        return summary

    def execute_plan(self, plan: ExecutionPlan) -> tuple[ExecutionPlan, ExecutionSummary]:
        """Validate and execute `plan`, returning the completed next version."""

        validation = validate_plan(plan)
        if not validation.is_valid:
            raise PlanValidationError(validation.errors)

        executed = copy.deepcopy(plan)
        executed.version = plan.version + 1
        executed.status = PlanStatus.EXECUTING
        summary = self.execute_tasks(executed.tasks, plan.goal)
        executed.status = PlanStatus.COMPLETED
        executed.updated_at = self._clock()
        return executed, summary

    def get_recommendations(self, goal: str, task_type: str | None = None) -> list[Recommendation]:
        return self.learning.get_recommendations(goal, task_type)

    def get_learning_stats(self) -> LearningStats:
        return self.learning.get_learning_stats()

    def get_agent_success_rate(self, agent_type: str) -> float:
        return self.learning.analytics.get_agent_success_rate(agent_type)

    def _apply_recommendation(self, task: Task, goal: str) -> int | None:
        recommendations = self.learning.get_recommendations(goal, task.task_type, limit=1)
        if not recommendations or recommendations[0].priority != RecommendationPriority.HIGH:
            return None
        top = recommendations[0]
        self._publish(
            EventType.RECOMMENDATION,
            task.id,
            {
                "lesson_id": top.lesson_id,
                "title": top.title,
                "description": top.description,
                "confidence_score": top.confidence_score,
            },
        )
        if top.confidence_score < self.settings.min_confidence or not top.alternative_agent:
            return None
        try:
            alternative = AgentType(top.alternative_agent)
        except ValueError:
            logger.warning(
                "Lesson %d names unknown agent %r, keeping %s",
                top.lesson_id,
                top.alternative_agent,
                task.agent_type.value,
            )
            return None
        if alternative != task.agent_type:
            previous = task.agent_type
            task.agent_type = alternative
            logger.info(
                "Switched task %s from %s to %s: %s",
                task.id,
                previous.value,
                alternative.value,
                top.description,
            )
            self._publish(
                EventType.AGENT_SWITCHED,
                task.id,
                {"from": previous.value, "to": alternative.value, "reason": top.description},
            )
        return top.lesson_id

    def _invoke_agent(self, task: Task) -> AgentOutcome:
        outcome = self.executor.execute(task)
        if outcome.status != AgentOutcomeStatus.SUCCESS:
            raise AgentOutcomeError(task, outcome)
        return outcome

    def _handle_success(
        self,
        task: Task,
        record: ExecutionRecordView,
        outcome: AgentOutcome,
        operation_id: str,
        started: float,
    ) -> TaskRunResult:
        duration_ms = _elapsed_ms(started)
        history = self.retry_manager.get_retry_history(operation_id)
        self.learning.update_execution(
            record.execution_id,
            ExecutionRecordFinish(
                status=ExecutionStatus.SUCCESS,
                actual_duration_ms=duration_ms,
                retry_count=max(0, history.total_attempts - 1) if history else 0,
                cpu_usage_percent=outcome.resources.cpu_usage_percent,
                memory_usage_mb=outcome.resources.memory_usage_mb,
                completed_at=self._clock(),
            ),
        )
        task.status = TaskStatus.COMPLETED
        self._publish(
            EventType.TASK_COMPLETED,
            task.id,
            {"agent_type": task.agent_type.value, "duration_ms": duration_ms},
        )
        return TaskRunResult(
            task_id=task.id,
            agent_type=task.agent_type.value,
            status=TaskStatus.COMPLETED,
            success=True,
            duration_ms=duration_ms,
            execution_id=record.execution_id,
            output=outcome.output,
        )

    def _handle_failure(
        self,
        task: Task,
        record: ExecutionRecordView,
        error: RetryError | CircuitOpenError,
        context: ErrorContext,
        started: float,
    ) -> TaskRunResult:
        duration_ms = _elapsed_ms(started)
        cause = error.last_error if isinstance(error, RetryError) else error
        recovery = self.error_handler.handle_agent_error(cause, context)
        classification = recovery.classification
        if isinstance(cause, TimeoutError):
            status = ExecutionStatus.TIMEOUT
        elif classification.type == ErrorType.CONFLICT:
            status = ExecutionStatus.CONFLICT
        else:
            status = ExecutionStatus.FAILED
        attempts = error.history.total_attempts if isinstance(error, RetryError) else 0
        message = str(cause) or type(cause).__name__
        outcome = cause.outcome if isinstance(cause, AgentOutcomeError) else None

        self.learning.update_execution(
            record.execution_id,
            ExecutionRecordFinish(
                status=status,
                actual_duration_ms=duration_ms,
                retry_count=max(0, attempts - 1),
                error_type=classification.category.value,
                error_message=message,
                error_stack=_format_stack(cause),
                cpu_usage_percent=outcome.resources.cpu_usage_percent if outcome else None,
                memory_usage_mb=outcome.resources.memory_usage_mb if outcome else None,
                completed_at=self._clock(),
            ),
        )

        if recovery.action == RecoveryAction.PAUSE_WORKFLOW:
            task.status = TaskStatus.BLOCKED
        elif recovery.action == RecoveryAction.SKIP:
            task.status = TaskStatus.SKIPPED
        else:
            task.status = TaskStatus.FAILED
        self._publish(
            EventType.TASK_FAILED,
            task.id,
            {
                "agent_type": task.agent_type.value,
                "error": message,
                "duration_ms": duration_ms,
                "action": recovery.action.value,
            },
        )
        return TaskRunResult(
            task_id=task.id,
            agent_type=task.agent_type.value,
            status=task.status,
            success=task.status == TaskStatus.SKIPPED,
            duration_ms=duration_ms,
            execution_id=record.execution_id,
            output=outcome.output if outcome else None,
            error=message,
            recovery=recovery,
        )

    def _run_wave(self, tasks: list[Task], goal: str) -> list[TaskRunResult]:
        if len(tasks) == 1:
            return [self._execute_guarded(tasks[0], goal)]
        with ThreadPoolExecutor(
            max_workers=len(tasks),
            thread_name_prefix="orchestrator-wave",
        ) as pool:
            futures = [pool.submit(self._execute_guarded, task, goal) for task in tasks]
            wait(futures)
        return [future.result() for future in futures]

    def _execute_guarded(self, task: Task, goal: str) -> TaskRunResult:
        """Run `task`; a crash outside agent recovery fails only this task."""

        started = time.monotonic()
        try:
            return self.execute_task(task, goal)
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            logger.error("Task %s crashed outside recovery: %s", task.id, message, exc_info=True)
            task.status = TaskStatus.FAILED
            self._publish(
                EventType.TASK_FAILED,
                task.id,
                {"agent_type": task.agent_type.value, "error": message},
            )
            return TaskRunResult(
                task_id=task.id,
                agent_type=task.agent_type.value,
                status=TaskStatus.FAILED,
                success=False,
                duration_ms=_elapsed_ms(started),
                error=message,
            )

    def _optimize_order(self, tasks: list[Task]) -> list[Task]:
        by_id = {task.id: task for task in tasks}
        items = [
            TaskExecutionPlanItem(
                task_id=task.id,
                agent_type=task.agent_type.value,
                task_type=task.task_type,
                estimated_duration_ms=task.predicted_duration_ms
                or task.estimated_duration * MINUTE_MS,
                parallel_group=task.metadata.parallel_group,
                order=index,
            )
            for index, task in enumerate(tasks)
        ]
        ordered = self.learning.analytics.get_optimal_task_ordering(items)
        return [by_id[item.task_id] for item in ordered]

    def _publish(self, event_type: EventType, task_id: str | None, payload: dict[str, Any]) -> None:
        if self._events is None:
            return
        self._events.publish(
            OrchestratorEvent(
                event_type=event_type,
                task_id=task_id,
                payload=payload,
                created_at=self._clock(),
            ),
        )


def _blocked(task: Task, reason: str) -> TaskRunResult:
    task.status = TaskStatus.BLOCKED
    return TaskRunResult(
        task_id=task.id,
        agent_type=task.agent_type.value,
        status=TaskStatus.BLOCKED,
        success=False,
        error=reason,
    )


def _format_stack(error: BaseException) -> str | None:
    if error.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
