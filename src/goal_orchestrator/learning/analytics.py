"""Statistical aggregation over recorded execution history."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta

from goal_orchestrator.learning.models import (
    FAILURE_STATUSES,
    AgentPerformanceMetrics,
    ErrorSummary,
    EstimationAccuracy,
    ExecutionFilters,
    ExecutionRecordView,
    ExecutionStatus,
    FailurePattern,
    TaskExecutionPlanItem,
)
from goal_orchestrator.learning.repository import LearningRepository
from goal_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_MIN_SAMPLE_SIZE = 5
MIN_FAILURE_OCCURRENCES = 3
MAX_FAILURE_PATTERNS = 20
MAX_COMMON_ERRORS = 5
DEFAULT_HISTORY_LIMIT = 100
UNKNOWN_ERROR_TYPE = "unknown"

FIX_TEMPLATES: dict[str, str] = {
    "network_timeout": "Increase timeout threshold for {agent} {task} tasks",
    "connection_reset": "Check database/service connectivity before {task}",
    "validation_error": "Add input validation before executing {task}",
    "out_of_memory": "Optimize memory usage or allocate more resources for {agent}",
    "dependency_missing": "Ensure all dependencies are available before {task}",
}
DEFAULT_FIX_TEMPLATE = "Review and fix {error} in {agent}"


class AnalyticsService:
    """Aggregate execution records into success rates, durations and failure patterns."""

    def __init__(
        self,
        repository: LearningRepository,
        *,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        min_sample_size: int = DEFAULT_MIN_SAMPLE_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.lookback_days = lookback_days
        self.min_sample_size = min_sample_size
        self._clock = clock

    def get_agent_success_rate(
        self,
        agent_type: str,
        task_type: str | None = None,
        days: int | None = None,
    ) -> float:
        records = self._window(
            days,
            agent_types=(agent_type,),
            task_types=(task_type,) if task_type else (),
        )
        if not records:
            return 0.0
        return _success_count(records) / len(records)

    def get_average_task_duration(
        self,
        task_type: str,
        agent_type: str | None = None,
        days: int | None = None,
    ) -> float:
        """Mean duration of successful runs in ms, or 0.0 without data."""

        records = self._window(
            days,
            agent_types=(agent_type,) if agent_type else (),
            task_types=(task_type,),
            statuses=(ExecutionStatus.SUCCESS,),
        )
        durations = _successful_durations(records)
        if not durations:
            return 0.0
        return sum(durations) / len(durations)

    def calculate_agent_performance(
        self,
        agent_type: str,
        task_type: str,
        days: int | None = None,
    ) -> AgentPerformanceMetrics | None:
        records = self._window(days, agent_types=(agent_type,), task_types=(task_type,))
        if not records:
            return None
        return build_performance_metrics(
            agent_type,
            task_type,
            records,
            min_sample_size=self.min_sample_size,
        )

    def update_agent_performance_metrics(
        self,
        agent_type: str,
        task_type: str,
    ) -> AgentPerformanceMetrics | None:
        """Recompute aggregates from source rows and store them."""

        metrics = self.calculate_agent_performance(agent_type, task_type)
        if metrics is None:
            return None
        self.repository.upsert_agent_performance(metrics)
        logger.debug(
            "Refreshed performance for %s/%s: %d runs, success %.2f",
            agent_type,
            task_type,
            metrics.total_executions,
            metrics.success_rate,
        )
        return metrics

    def get_common_failure_patterns(self, days: int | None = None) -> list[FailurePattern]:
        records = self._window(days, statuses=tuple(FAILURE_STATUSES))
        groups: dict[tuple[str, str, str], list[ExecutionRecordView]] = defaultdict(list)
        for record in records:
            error_type = record.error_type or UNKNOWN_ERROR_TYPE
            groups[(record.agent_type, record.task_type, error_type)].append(record)

        patterns: list[FailurePattern] = []
        for (agent_type, task_type, error_type), group in groups.items():
            if len(group) < MIN_FAILURE_OCCURRENCES:
                continue
            messages = list(
                dict.fromkeys(record.error_message for record in group if record.error_message),
            )
            patterns.append(
                FailurePattern(
                    agent_type=agent_type,
                    task_type=task_type,
                    error_type=error_type,
                    occurrences=len(group),
                    last_occurrence=max(record.started_at for record in group),
                    recommended_fix=fix_recommendation(agent_type, task_type, error_type),
                    example_messages=messages,
                ),
            )
        patterns.sort(key=lambda pattern: (-pattern.occurrences, pattern.description))
        return patterns[:MAX_FAILURE_PATTERNS]

    def get_optimal_task_ordering(
        self,
        tasks: list[TaskExecutionPlanItem],
    ) -> list[TaskExecutionPlanItem]:
        """Order tasks fastest first while keeping each parallel group contiguous.

        Each declared group moves as one block, placed by its fastest member.
        Historical mean duration is used where known, otherwise the estimate.
        """

        durations: dict[tuple[str, str], float] = {}

        def duration_of(task: TaskExecutionPlanItem) -> float:
            key = (task.agent_type, task.task_type)
            if key not in durations:
                durations[key] = self.get_average_task_duration(task.task_type, task.agent_type)
            return durations[key] or float(task.estimated_duration_ms)

        blocks: list[list[TaskExecutionPlanItem]] = []
        group_blocks: dict[int, list[TaskExecutionPlanItem]] = {}
        for task in tasks:
            if task.parallel_group is None:
                blocks.append([task])
            elif task.parallel_group in group_blocks:
                group_blocks[task.parallel_group].append(task)
            else:
                block = [task]
                group_blocks[task.parallel_group] = block
                blocks.append(block)

        ordered_blocks = sorted(
            (sorted(block, key=duration_of) for block in blocks),
            key=lambda block: duration_of(block[0]),
        )
        ordered: list[TaskExecutionPlanItem] = []
        for block in ordered_blocks:
            for task in block:
                ordered.append(
                    TaskExecutionPlanItem(
                        task_id=task.task_id,
                        agent_type=task.agent_type,
                        task_type=task.task_type,
                        estimated_duration_ms=task.estimated_duration_ms,
                        parallel_group=task.parallel_group,
                        order=len(ordered),
                    ),
                )
        return ordered

    def get_execution_history(
        self,
        filters: ExecutionFilters | None = None,
    ) -> list[ExecutionRecordView]:
        """Recent executions, newest first; defaults to the lookback window and 100 rows."""

        filters = filters or ExecutionFilters()
        effective = ExecutionFilters(
            agent_types=filters.agent_types,
            task_types=filters.task_types,
            statuses=filters.statuses,
            goal_hash=filters.goal_hash,
            since=filters.since or self._since(None),
            limit=filters.limit if filters.limit is not None else DEFAULT_HISTORY_LIMIT,
        )
        return self.repository.list_executions(effective, newest_first=True)

    def get_time_estimation_accuracy(
        self,
        agent_type: str | None = None,
        task_type: str | None = None,
        days: int | None = None,
    ) -> EstimationAccuracy:
        pairs = [
            (record.estimated_duration_ms, record.actual_duration_ms)
            for record in self._window(
                days,
                agent_types=(agent_type,) if agent_type else (),
                task_types=(task_type,) if task_type else (),
                statuses=(ExecutionStatus.SUCCESS,),
            )
            if record.estimated_duration_ms and record.actual_duration_ms is not None
        ]
        if not pairs:
            return EstimationAccuracy(
                sample_size=0,
                avg_accuracy=1.0,
                overestimate_percent=0.0,
                underestimate_percent=0.0,
            )
        errors = [abs(actual - estimated) / estimated for estimated, actual in pairs]
        over = sum(1 for estimated, actual in pairs if estimated > actual)
        under = sum(1 for estimated, actual in pairs if estimated < actual)
        return EstimationAccuracy(
            sample_size=len(pairs),
            avg_accuracy=1 - sum(errors) / len(errors),
            overestimate_percent=over / len(pairs) * 100,
            underestimate_percent=under / len(pairs) * 100,
        )

    def window(self, days: int | None = None) -> list[ExecutionRecordView]:
        """All executions started within the lookback window, oldest first."""

        return self._window(days)

    def _window(
        self,
        days: int | None,
        *,
        agent_types: tuple[str, ...] = (),
        task_types: tuple[str, ...] = (),
        statuses: tuple[ExecutionStatus, ...] = (),
    ) -> list[ExecutionRecordView]:
        return self.repository.list_executions(
            ExecutionFilters(
                agent_types=agent_types,
                task_types=task_types,
                statuses=statuses,
                since=self._since(days),
            ),
        )

    def _since(self, days: int | None) -> datetime:
        return self._clock() - timedelta(days=days if days is not None else self.lookback_days)


def build_performance_metrics(
    agent_type: str,
    task_type: str,
    records: list[ExecutionRecordView],
    *,
    min_sample_size: int = DEFAULT_MIN_SAMPLE_SIZE,
) -> AgentPerformanceMetrics:
    durations = _successful_durations(records)
    failed = [record for record in records if record.status in FAILURE_STATUSES]
    cpu = [record.cpu_usage_percent for record in records if record.cpu_usage_percent is not None]
    memory = [record.memory_usage_mb for record in records if record.memory_usage_mb is not None]
    return AgentPerformanceMetrics(
        agent_type=agent_type,
        task_type=task_type,
        total_executions=len(records),
        successful_executions=_success_count(records),
        failed_executions=len(failed),
        success_rate=_success_count(records) / len(records) if records else 0.0,
        avg_duration_ms=round(sum(durations) / len(durations)) if durations else None,
        min_duration_ms=round(min(durations)) if durations else None,
        max_duration_ms=round(max(durations)) if durations else None,
        p50_duration_ms=round(_percentile(durations, 0.50)) if durations else None,
        p95_duration_ms=round(_percentile(durations, 0.95)) if durations else None,
        p99_duration_ms=round(_percentile(durations, 0.99)) if durations else None,
        common_errors=_common_errors(failed),
        avg_cpu_usage_percent=sum(cpu) / len(cpu) if cpu else None,
        avg_memory_usage_mb=sum(memory) / len(memory) if memory else None,
        last_execution_at=max((record.started_at for record in records), default=None),
        is_reliable=len(records) >= min_sample_size,
    )


def fix_recommendation(agent_type: str, task_type: str, error_type: str) -> str:
    template = FIX_TEMPLATES.get(error_type, DEFAULT_FIX_TEMPLATE)
    return template.format(agent=agent_type, task=task_type, error=error_type)


def _common_errors(failed: list[ExecutionRecordView]) -> list[ErrorSummary]:
    by_type: dict[str, list[ExecutionRecordView]] = defaultdict(list)
    for record in failed:
        by_type[record.error_type or UNKNOWN_ERROR_TYPE].append(record)
    summaries = []
    for error_type, group in by_type.items():
        latest = max(group, key=lambda record: (record.started_at, record.execution_id))
        summaries.append(
            ErrorSummary(
                error_type=error_type,
                count=len(group),
                last_occurrence=latest.started_at,
                example_message=latest.error_message,
            ),
        )
    summaries.sort(key=lambda summary: (-summary.count, summary.error_type))
    return summaries[:MAX_COMMON_ERRORS]


def _success_count(records: list[ExecutionRecordView]) -> int:
    return sum(1 for record in records if record.status == ExecutionStatus.SUCCESS)


def _successful_durations(records: list[ExecutionRecordView]) -> list[float]:
    return [
        float(record.actual_duration_ms)
        for record in records
        if record.status == ExecutionStatus.SUCCESS and record.actual_duration_ms is not None
    ]


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
