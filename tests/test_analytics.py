from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from goal_orchestrator.learning.analytics import AnalyticsService, fix_recommendation
from goal_orchestrator.learning.models import (
    ExecutionFilters,
    ExecutionStatus,
    TaskExecutionPlanItem,
)
from goal_orchestrator.learning.repository import LearningRepository

pytestmark = [
    allure.epic("Learning"),
    allure.feature("Analytics"),
]


@pytest.fixture
def analytics(repository: LearningRepository, clock) -> AnalyticsService:
    return AnalyticsService(repository, clock=clock)


@pytest.fixture
def recent(clock):
    return clock.now - timedelta(hours=1)


def test_success_rate_and_average_duration(
    analytics: AnalyticsService,
    repository: LearningRepository,
    record_run,
    recent,
) -> None:
    for duration in (1_000, 3_000):
        record_run(repository, duration_ms=duration, started_at=recent)
    record_run(
        repository,
        status=ExecutionStatus.FAILED,
        duration_ms=9_000,
        error_type="network_timeout",
        started_at=recent,
    )
    record_run(repository, duration_ms=50_000, started_at=recent - timedelta(days=45))

    assert analytics.get_agent_success_rate("agent-api") == pytest.approx(2 / 3)
    assert analytics.get_agent_success_rate("agent-api", days=60) == pytest.approx(3 / 4)
    assert analytics.get_agent_success_rate("agent-ghost") == 0.0
    assert analytics.get_average_task_duration("api_implementation") == 2_000
    assert analytics.get_average_task_duration("unit_testing") == 0.0


def test_performance_metrics_percentiles_and_errors(
    analytics: AnalyticsService,
    repository: LearningRepository,
    record_run,
    recent,
) -> None:
    for duration in (1_000, 2_000, 3_000, 4_000, 5_000):
        record_run(repository, duration_ms=duration, started_at=recent)
    for index in range(2):
        record_run(
            repository,
            status=ExecutionStatus.TIMEOUT,
            error_type="network_timeout",
            error_message=f"timed out (run {index})",
            started_at=recent + timedelta(minutes=index),
        )
    record_run(
        repository,
        status=ExecutionStatus.FAILED,
        error_type="validation_error",
        started_at=recent,
    )

    metrics = analytics.update_agent_performance_metrics("agent-api", "api_implementation")

    assert metrics is not None
    assert metrics.total_executions == 8
    assert metrics.successful_executions == 5
    assert metrics.failed_executions == 3
    assert metrics.avg_duration_ms == 3_000
    assert metrics.min_duration_ms == 1_000
    assert metrics.max_duration_ms == 5_000
    assert metrics.p50_duration_ms == 3_000
    assert metrics.p95_duration_ms == 4_800
    assert metrics.is_reliable is True
    assert [(error.error_type, error.count) for error in metrics.common_errors] == [
        ("network_timeout", 2),
        ("validation_error", 1),
    ]
    assert metrics.common_errors[0].example_message == "timed out (run 1)"
    stored = repository.list_agent_performance(task_type="api_implementation")
    assert [row.total_executions for row in stored] == [8]
    assert analytics.update_agent_performance_metrics("agent-ghost", "api_implementation") is None


def test_failure_patterns_need_three_occurrences(
    analytics: AnalyticsService,
    repository: LearningRepository,
    record_run,
    recent,
) -> None:
    for _ in range(3):
        record_run(
            repository,
            status=ExecutionStatus.FAILED,
            error_type="network_timeout",
            error_message="Request timed out",
            started_at=recent,
        )
    for _ in range(2):
        record_run(
            repository,
            agent_type="agent-database",
            task_type="database_schema",
            status=ExecutionStatus.FAILED,
            error_type="connection_reset",
            started_at=recent,
        )

    patterns = analytics.get_common_failure_patterns()

    assert len(patterns) == 1
    pattern = patterns[0]
    assert pattern.occurrences == 3
    assert pattern.example_messages == ["Request timed out"]
    assert pattern.recommended_fix == (
        "Increase timeout threshold for agent-api api_implementation tasks"
    )
    assert pattern.description == "agent-api fails on api_implementation with network_timeout"


def test_fix_recommendation_falls_back_to_generic_template() -> None:
    assert fix_recommendation("agent-ui", "ui_component", "syntax_error") == (
        "Review and fix syntax_error in agent-ui"
    )


def test_optimal_ordering_keeps_parallel_groups_together(
    analytics: AnalyticsService,
    repository: LearningRepository,
    record_run,
    recent,
) -> None:
    record_run(
        repository,
        agent_type="agent-test",
        task_type="unit_testing",
        duration_ms=500,
        started_at=recent,
    )
    tasks = [
        TaskExecutionPlanItem("slow", "agent-api", "api_implementation", 9_000),
        TaskExecutionPlanItem("grouped-a", "agent-ui", "ui_component", 7_000, parallel_group=1),
        TaskExecutionPlanItem("fast", "agent-test", "unit_testing", 8_000),
        TaskExecutionPlanItem("grouped-b", "agent-docs", "documentation", 2_000, parallel_group=1),
    ]

    ordered = analytics.get_optimal_task_ordering(tasks)

    assert [task.task_id for task in ordered] == ["fast", "grouped-b", "grouped-a", "slow"]
    assert [task.order for task in ordered] == [0, 1, 2, 3]
    assert tasks[0].order == 0


def test_execution_history_is_newest_first_and_limited(
    analytics: AnalyticsService,
    repository: LearningRepository,
    record_run,
    recent,
) -> None:
    older = record_run(repository, started_at=recent - timedelta(hours=2))
    newer = record_run(repository, started_at=recent)
    record_run(repository, started_at=recent - timedelta(days=90))

    history = analytics.get_execution_history()
    limited = analytics.get_execution_history(ExecutionFilters(limit=1))

    assert [row.execution_id for row in history] == [newer.execution_id, older.execution_id]
    assert [row.execution_id for row in limited] == [newer.execution_id]


def test_time_estimation_accuracy(
    analytics: AnalyticsService,
    repository: LearningRepository,
    record_run,
    recent,
) -> None:
    empty = analytics.get_time_estimation_accuracy()
    assert empty.sample_size == 0
    assert empty.avg_accuracy == 1.0

    record_run(repository, estimated_ms=1_000, duration_ms=1_500, started_at=recent)
    record_run(repository, estimated_ms=1_000, duration_ms=500, started_at=recent)
    record_run(repository, estimated_ms=1_000, duration_ms=1_000, started_at=recent)
    record_run(repository, estimated_ms=None, duration_ms=1_000, started_at=recent)

    accuracy = analytics.get_time_estimation_accuracy(agent_type="agent-api")

    assert accuracy.sample_size == 3
    assert accuracy.avg_accuracy == pytest.approx(2 / 3)
    assert accuracy.overestimate_percent == pytest.approx(100 / 3)
    assert accuracy.underestimate_percent == pytest.approx(100 / 3)
