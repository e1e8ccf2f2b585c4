from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from goal_orchestrator.learning.models import (
    AgentPerformanceMetrics,
    ErrorSummary,
    ExecutionFilters,
    ExecutionRecordCreate,
    ExecutionRecordFinish,
    ExecutionStatus,
    LessonCandidate,
    LessonType,
)
from goal_orchestrator.learning.repository import LearningRepository, goal_hash, pattern_hash

pytestmark = [
    allure.epic("Learning"),
    allure.feature("Execution History Store"),
]

FIXED_NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


def _candidate(confidence: float = 0.9, **metrics: float) -> LessonCandidate:
    return LessonCandidate(
        lesson_type=LessonType.AGENT_SELECTION,
        identity={"task_type": "api_implementation", "best_agent": "agent-api"},
        recommendation="Use agent-api for api_implementation tasks",
        confidence_score=confidence,
        metrics=dict(metrics),
        alternative_agent="agent-api",
        tags=["agent"],
    )


def test_execution_lifecycle(repository: LearningRepository) -> None:
    record = repository.create_execution(
        ExecutionRecordCreate(
            goal="Build API for users",
            agent_type="agent-api",
            task_description="Implement API Controllers",
            task_type="api_implementation",
            estimated_duration_ms=60_000,
            task_id="task-1",
            context={"phase": "api"},
            dependencies=["task-0"],
        ),
    )

    assert record.status == ExecutionStatus.RUNNING
    assert record.goal_hash == goal_hash("Build API for users")
    assert record.completed_at is None
    assert record.started_at.tzinfo is not None

    finished = repository.finish_execution(
        record.execution_id,
        ExecutionRecordFinish(
            status=ExecutionStatus.FAILED,
            actual_duration_ms=42_000,
            retry_count=2,
            error_type="network_timeout",
            error_message="Request timed out",
        ),
    )

    assert finished.status == ExecutionStatus.FAILED
    assert finished.retry_count == 2
    assert finished.context == {"phase": "api"}
    assert finished.dependencies == ["task-0"]
    assert finished.completed_at is not None
    assert repository.get_execution(record.execution_id) == finished
    assert repository.get_execution(9_999) is None


def test_finish_execution_is_single_terminal_update(
    repository: LearningRepository,
    record_run,
) -> None:
    record = record_run(repository)

    with pytest.raises(RuntimeError, match="already finished"):
        repository.finish_execution(
            record.execution_id,
            ExecutionRecordFinish(status=ExecutionStatus.SUCCESS, actual_duration_ms=1),
        )
    with pytest.raises(ValueError, match="final status"):
        repository.finish_execution(
            record.execution_id,
            ExecutionRecordFinish(status=ExecutionStatus.RUNNING, actual_duration_ms=1),
        )


def test_list_executions_filters_and_order(repository: LearningRepository, record_run) -> None:
    first = record_run(repository, started_at=FIXED_NOW - timedelta(days=40))
    second = record_run(
        repository,
        agent_type="agent-test",
        task_type="unit_testing",
        status=ExecutionStatus.FAILED,
        started_at=FIXED_NOW - timedelta(days=2),
    )
    third = record_run(repository, goal="Other goal", started_at=FIXED_NOW - timedelta(days=1))

    everything = repository.list_executions()
    recent = repository.list_executions(ExecutionFilters(since=FIXED_NOW - timedelta(days=30)))
    failed = repository.list_executions(ExecutionFilters(statuses=(ExecutionStatus.FAILED,)))
    by_goal = repository.list_executions(
        ExecutionFilters(goal_hash=goal_hash("Build API for users"), agent_types=("agent-api",)),
    )
    newest = repository.list_executions(ExecutionFilters(limit=1), newest_first=True)

    assert [row.execution_id for row in everything] == [
        first.execution_id,
        second.execution_id,
        third.execution_id,
    ]
    assert [row.execution_id for row in recent] == [second.execution_id, third.execution_id]
    assert [row.execution_id for row in failed] == [second.execution_id]
    assert [row.execution_id for row in by_goal] == [first.execution_id]
    assert [row.execution_id for row in newest] == [third.execution_id]
    assert repository.count_executions() == 3


def test_upsert_lesson_deduplicates_by_pattern(repository: LearningRepository) -> None:
    created, was_created = repository.upsert_lesson(_candidate(confidence=1.7, success_rate=0.9))
    refreshed, refreshed_created = repository.upsert_lesson(
        _candidate(confidence=0.2, success_rate=0.95),
    )

    assert was_created is True
    assert refreshed_created is False
    assert refreshed.lesson_id == created.lesson_id
    assert created.confidence_score == 1.0
    assert refreshed.confidence_score == 1.0
    assert refreshed.pattern["historical_metrics"] == {"success_rate": 0.95}
    assert refreshed.pattern["best_agent"] == "agent-api"
    assert refreshed.pattern_hash == pattern_hash(
        LessonType.AGENT_SELECTION,
        {"task_type": "api_implementation", "best_agent": "agent-api"},
    )
    assert len(repository.list_lessons()) == 1


def test_lesson_applications_drive_confidence(repository: LearningRepository) -> None:
    lesson, _ = repository.upsert_lesson(_candidate(confidence=0.7))
    repository.record_lesson_application(lesson.lesson_id, success=True)
    repository.record_lesson_application(lesson.lesson_id, success=True)
    applied = repository.record_lesson_application(lesson.lesson_id, success=False)

    assert applied.times_applied == 3
    assert applied.times_successful == 2
    assert applied.times_failed == 1
    assert applied.last_applied_at is not None

    assert repository.update_confidence_scores() == 1
    updated = repository.get_lesson(lesson.lesson_id)
    assert updated is not None
    assert updated.effectiveness_score == pytest.approx(2 / 3)
    assert updated.confidence_score == pytest.approx(0.8)

    with pytest.raises(RuntimeError, match="Lesson not found: 404"):
        repository.record_lesson_application(404, success=True)


def test_list_lessons_filters_by_confidence_and_type(repository: LearningRepository) -> None:
    repository.upsert_lesson(_candidate(confidence=0.9))
    repository.upsert_lesson(
        LessonCandidate(
            lesson_type=LessonType.TIME_ESTIMATION,
            identity={"agent_type": "agent-api", "task_type": "api_implementation"},
            recommendation="Increase time estimate",
            confidence_score=0.5,
        ),
    )

    assert [lesson.confidence_score for lesson in repository.list_lessons()] == [0.9, 0.5]
    assert len(repository.list_lessons(min_confidence=0.6)) == 1
    only_time = repository.list_lessons(lesson_types=(LessonType.TIME_ESTIMATION,))
    assert [lesson.lesson_type for lesson in only_time] == [LessonType.TIME_ESTIMATION]


def test_agent_performance_upsert_and_ranking(repository: LearningRepository) -> None:
    for agent, rate, avg in [
        ("agent-api", 0.9, 3_000),
        ("agent-quality", 0.9, 2_000),
        ("agent-test", 0.5, 1_000),
    ]:
        repository.upsert_agent_performance(
            AgentPerformanceMetrics(
                agent_type=agent,
                task_type="api_implementation",
                total_executions=10,
                successful_executions=int(rate * 10),
                failed_executions=10 - int(rate * 10),
                success_rate=rate,
                avg_duration_ms=avg,
                common_errors=[
                    ErrorSummary(
                        error_type="network_timeout",
                        count=1,
                        last_occurrence=FIXED_NOW,
                        example_message="Request timed out",
                    ),
                ],
            ),
        )
    repository.upsert_agent_performance(
        AgentPerformanceMetrics(
            agent_type="agent-test",
            task_type="api_implementation",
            total_executions=12,
            successful_executions=6,
            failed_executions=6,
            success_rate=0.5,
            avg_duration_ms=1_000,
        ),
    )

    ranked = repository.list_agent_performance(task_type="api_implementation")

    assert [metrics.agent_type for metrics in ranked] == [
        "agent-quality",
        "agent-api",
        "agent-test",
    ]
    assert ranked[0].common_errors[0].last_occurrence == FIXED_NOW
    assert ranked[2].total_executions == 12
    assert ranked[2].common_errors == []
    others = repository.list_agent_performance(exclude_agent="agent-quality", limit=1)
    assert [metrics.agent_type for metrics in others] == ["agent-api"]


def _lose_first_lookup(monkeypatch: pytest.MonkeyPatch, repository, method: str, insert) -> None:
    """Let another writer insert the row right after `repository` finds nothing."""

    original = getattr(repository, method)
    calls = {"count": 0}

    def racing_lookup(session, target):
        calls["count"] += 1
        if calls["count"] == 1:
            insert()
            return None
        return original(session, target)

    monkeypatch.setattr(repository, method, racing_lookup)


def test_concurrent_upserts_converge_on_one_lesson(
    repository: LearningRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    other = LearningRepository(repository.db_path)
    try:
        _lose_first_lookup(
            monkeypatch,
            repository,
            "_find_lesson",
            lambda: other.upsert_lesson(_candidate(confidence=0.7, success_rate=0.8)),
        )

        lesson, created = repository.upsert_lesson(_candidate(confidence=0.9, success_rate=0.95))
    finally:
        other.close()

    assert created is False
    assert lesson.confidence_score == 0.7
    assert lesson.pattern["historical_metrics"] == {"success_rate": 0.95}
    assert len(repository.list_lessons()) == 1


def test_concurrent_agent_performance_upserts_keep_one_row(
    repository: LearningRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    other = LearningRepository(repository.db_path)

    def metrics(total: int) -> AgentPerformanceMetrics:
        return AgentPerformanceMetrics(
            agent_type="agent-api",
            task_type="api_implementation",
            total_executions=total,
            successful_executions=total,
            failed_executions=0,
            success_rate=1.0,
            avg_duration_ms=1_000,
        )

    try:
        _lose_first_lookup(
            monkeypatch,
            repository,
            "_find_performance",
            lambda: other.upsert_agent_performance(metrics(5)),
        )

        repository.upsert_agent_performance(metrics(8))
    finally:
        other.close()

    stored = repository.list_agent_performance(task_type="api_implementation")
    assert [(row.agent_type, row.total_executions) for row in stored] == [("agent-api", 8)]
