"""Persistence facade for execution history, lessons and agent performance."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from goal_orchestrator.learning.models import (
    AgentPerformanceMetrics,
    ErrorSummary,
    ExecutionFilters,
    ExecutionRecordCreate,
    ExecutionRecordFinish,
    ExecutionRecordView,
    ExecutionStatus,
    LessonCandidate,
    LessonType,
    LessonView,
)
from goal_orchestrator.storage.alembic_runner import upgrade_head
from goal_orchestrator.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from goal_orchestrator.storage.sqlmodel_models import (
    AgentPerformance,
    ExecutionHistory,
    Lesson,
)

DEFAULT_BUSY_TIMEOUT_MS = 5_000
CONFIDENCE_OPTIMISM = 1.2


def goal_hash(goal: str) -> str:
    """Stable grouping key for executions of the same goal text."""

    return hashlib.md5(goal.encode("utf-8")).hexdigest()  # noqa: S324


def pattern_hash(lesson_type: LessonType, identity: dict[str, Any]) -> str:
    payload = json.dumps(
        {"lesson_type": lesson_type.value, **identity},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.md5(payload.encode("utf-8")).hexdigest()  # noqa: S324


class LearningRepository:
    """SQLModel + SQLite storage for the learning subsystem."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._clock = clock

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def create_execution(self, payload: ExecutionRecordCreate) -> ExecutionRecordView:
        """Insert a `running` execution row."""

        now = self._clock()
        with Session(self.engine) as session:
            row = ExecutionHistory(
                goal=payload.goal,
                goal_hash=goal_hash(payload.goal),
                task_id=payload.task_id,
                task_description=payload.task_description,
                agent_type=payload.agent_type,
                task_type=payload.task_type,
                estimated_duration_ms=payload.estimated_duration_ms,
                status=ExecutionStatus.RUNNING.value,
                context_json=json.dumps(payload.context, sort_keys=True, default=str),
                dependencies_json=json.dumps(payload.dependencies),
                parallel_execution=payload.parallel_execution,
                started_at=to_db_datetime(payload.started_at or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def finish_execution(
        self,
        execution_id: int,
        finish: ExecutionRecordFinish,
    ) -> ExecutionRecordView:
        """Apply the single terminal update to a running execution."""

        if finish.status == ExecutionStatus.RUNNING:
            raise ValueError("Terminal update requires a final status, got running")
        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ExecutionHistory)
                .where(
                    col(ExecutionHistory.execution_id) == execution_id,
                    col(ExecutionHistory.status) == ExecutionStatus.RUNNING.value,
                )
                .values(
                    status=finish.status.value,
                    actual_duration_ms=finish.actual_duration_ms,
                    retry_count=finish.retry_count,
                    error_type=finish.error_type,
                    error_message=finish.error_message,
                    error_stack=finish.error_stack,
                    cpu_usage_percent=finish.cpu_usage_percent,
                    memory_usage_mb=finish.memory_usage_mb,
                    completed_at=to_db_datetime(finish.completed_at or now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    f"Execution record not found or already finished: {execution_id}",
                )
            session.commit()
            row = session.exec(
                select(ExecutionHistory).where(ExecutionHistory.execution_id == execution_id),
            ).one()
            return _to_execution_view(row)

    def get_execution(self, execution_id: int) -> ExecutionRecordView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ExecutionHistory).where(ExecutionHistory.execution_id == execution_id),
            ).one_or_none()
        return _to_execution_view(row) if row is not None else None

    def list_executions(
        self,
        filters: ExecutionFilters | None = None,
        *,
        newest_first: bool = False,
    ) -> list[ExecutionRecordView]:
        """Executions matching `filters`, ordered by start time."""

        filters = filters or ExecutionFilters()
        statement = select(ExecutionHistory)
        if filters.agent_types:
            statement = statement.where(col(ExecutionHistory.agent_type).in_(filters.agent_types))
        if filters.task_types:
            statement = statement.where(col(ExecutionHistory.task_type).in_(filters.task_types))
        if filters.statuses:
            statement = statement.where(
                col(ExecutionHistory.status).in_([status.value for status in filters.statuses]),
            )
        if filters.goal_hash is not None:
            statement = statement.where(ExecutionHistory.goal_hash == filters.goal_hash)
        if filters.since is not None:
            statement = statement.where(
                col(ExecutionHistory.started_at) >= to_db_datetime(filters.since),
            )
        if newest_first:
            statement = statement.order_by(
                col(ExecutionHistory.started_at).desc(),
                col(ExecutionHistory.execution_id).desc(),
            )
        else:
            statement = statement.order_by(
                col(ExecutionHistory.started_at).asc(),
                col(ExecutionHistory.execution_id).asc(),
            )
        if filters.limit is not None:
            statement = statement.limit(filters.limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_execution_view(row) for row in rows]

    def count_executions(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(ExecutionHistory)).one()

    def upsert_lesson(self, candidate: LessonCandidate) -> tuple[LessonView, bool]:
        """Insert a lesson or refresh an existing one with the same pattern hash.

        An existing lesson keeps its confidence and usage counters. Returns the
        stored lesson and whether it was newly created. Safe against another
        repository inserting the same pattern between our lookup and insert.
        """

        key = pattern_hash(candidate.lesson_type, candidate.identity)
        pattern_json = json.dumps(
            {**candidate.identity, "historical_metrics": candidate.metrics},
            sort_keys=True,
            default=str,
        )
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = self._find_lesson(session, key)
            if row is None:
                row = Lesson(
                    lesson_type=candidate.lesson_type.value,
                    pattern_json=pattern_json,
                    pattern_hash=key,
                    recommendation=candidate.recommendation,
                    alternative_agent=candidate.alternative_agent,
                    optimal_order=candidate.optimal_order,
                    confidence_score=min(1.0, max(0.0, candidate.confidence_score)),
                    sample_execution_ids_json=json.dumps(candidate.sample_execution_ids),
                    tags_json=json.dumps(candidate.tags),
                    created_by=candidate.created_by,
                    first_observed_at=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    row = self._find_lesson(session, key)
                    if row is None:
                        raise
                else:
                    session.refresh(row)
                    return _to_lesson_view(row), True

            row.pattern_json = pattern_json
            row.recommendation = candidate.recommendation
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_lesson_view(row), False

    def _find_lesson(self, session: Session, key: str) -> Lesson | None:
        return session.exec(select(Lesson).where(Lesson.pattern_hash == key)).one_or_none()

    def get_lesson(self, lesson_id: int) -> LessonView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Lesson).where(Lesson.lesson_id == lesson_id)).one_or_none()
        return _to_lesson_view(row) if row is not None else None

    def list_lessons(
        self,
        *,
        min_confidence: float | None = None,
        lesson_types: tuple[LessonType, ...] = (),
    ) -> list[LessonView]:
        """Lessons ranked by confidence, effectiveness, then successful applications."""

        statement = select(Lesson)
        if min_confidence is not None:
            statement = statement.where(col(Lesson.confidence_score) >= min_confidence)
        if lesson_types:
            statement = statement.where(
                col(Lesson.lesson_type).in_([lesson_type.value for lesson_type in lesson_types]),
            )
        statement = statement.order_by(
            col(Lesson.confidence_score).desc(),
            col(Lesson.effectiveness_score).desc().nulls_last(),
            col(Lesson.times_successful).desc(),
            col(Lesson.lesson_id).asc(),
        )
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_lesson_view(row) for row in rows]

    def record_lesson_application(self, lesson_id: int, *, success: bool) -> LessonView:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = session.exec(select(Lesson).where(Lesson.lesson_id == lesson_id)).one_or_none()
            if row is None:
                raise RuntimeError(f"Lesson not found: {lesson_id}")
            row.times_applied += 1
            row.last_applied_at = now
            if success:
                row.times_successful += 1
                row.last_successful_at = now
            else:
                row.times_failed += 1
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_lesson_view(row)

    def update_confidence_scores(self) -> int:
        """Recompute effectiveness and confidence for every applied lesson."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            rows = session.exec(select(Lesson).where(col(Lesson.times_applied) > 0)).all()
            for row in rows:
                effectiveness = row.times_successful / row.times_applied
                row.effectiveness_score = effectiveness
                row.confidence_score = min(1.0, effectiveness * CONFIDENCE_OPTIMISM)
                row.updated_at = now
                session.add(row)
            session.commit()
        return len(rows)

    def upsert_agent_performance(self, metrics: AgentPerformanceMetrics) -> None:
        now = to_db_datetime(self._clock())
        errors_json = json.dumps(
            [
                {
                    "error_type": error.error_type,
                    "count": error.count,
                    "last_occurrence": to_utc_aware_datetime(error.last_occurrence).isoformat(),
                    "example_message": error.example_message,
                }
                for error in metrics.common_errors
            ],
        )
        with Session(self.engine) as session:
            row = self._find_performance(session, metrics)
            if row is None:
                row = AgentPerformance(
                    agent_type=metrics.agent_type,
                    task_type=metrics.task_type,
                    created_at=now,
                    updated_at=now,
                    metrics_updated_at=now,
                )
                _apply_performance(row, metrics, errors_json=errors_json, now=now)
                session.add(row)
                try:
                    session.commit()
                    return
                except IntegrityError:
                    session.rollback()
                    row = self._find_performance(session, metrics)
                    if row is None:
                        raise
            _apply_performance(row, metrics, errors_json=errors_json, now=now)
            session.add(row)
            session.commit()

    def _find_performance(
        self,
        session: Session,
        metrics: AgentPerformanceMetrics,
    ) -> AgentPerformance | None:
        return session.exec(
            select(AgentPerformance).where(
                AgentPerformance.agent_type == metrics.agent_type,
                AgentPerformance.task_type == metrics.task_type,
            ),
        ).one_or_none()

    def list_agent_performance(
        self,
        *,
        task_type: str | None = None,
        exclude_agent: str | None = None,
        limit: int | None = None,
    ) -> list[AgentPerformanceMetrics]:
        """Stored aggregates, best success rate first and faster agents breaking ties."""

        statement = select(AgentPerformance)
        if task_type is not None:
            statement = statement.where(AgentPerformance.task_type == task_type)
        if exclude_agent is not None:
            statement = statement.where(AgentPerformance.agent_type != exclude_agent)
        statement = statement.order_by(
            col(AgentPerformance.success_rate).desc(),
            col(AgentPerformance.avg_duration_ms).asc().nulls_last(),
            col(AgentPerformance.agent_type).asc(),
        )
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_performance_metrics(row) for row in rows]


def _apply_performance(
    row: AgentPerformance,
    metrics: AgentPerformanceMetrics,
    *,
    errors_json: str,
    now: datetime,
) -> None:
    row.total_executions = metrics.total_executions
    row.successful_executions = metrics.successful_executions
    row.failed_executions = metrics.failed_executions
    row.avg_duration_ms = metrics.avg_duration_ms
    row.min_duration_ms = metrics.min_duration_ms
    row.max_duration_ms = metrics.max_duration_ms
    row.p50_duration_ms = metrics.p50_duration_ms
    row.p95_duration_ms = metrics.p95_duration_ms
    row.p99_duration_ms = metrics.p99_duration_ms
    row.success_rate = metrics.success_rate
    row.common_errors_json = errors_json
    row.avg_cpu_usage_percent = metrics.avg_cpu_usage_percent
    row.avg_memory_usage_mb = metrics.avg_memory_usage_mb
    row.last_execution_at = (
        to_db_datetime(metrics.last_execution_at)
        if metrics.last_execution_at is not None
        else None
    )
    row.metrics_updated_at = now
    row.updated_at = now


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, type(default)) else default


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_execution_view(row: ExecutionHistory) -> ExecutionRecordView:
    return ExecutionRecordView(
        execution_id=row.execution_id or 0,
        goal=row.goal,
        goal_hash=row.goal_hash,
        task_id=row.task_id,
        task_description=row.task_description,
        agent_type=row.agent_type,
        task_type=row.task_type,
        estimated_duration_ms=row.estimated_duration_ms,
        actual_duration_ms=row.actual_duration_ms,
        status=ExecutionStatus(row.status),
        retry_count=row.retry_count,
        error_type=row.error_type,
        error_message=row.error_message,
        error_stack=row.error_stack,
        context=_load_json(row.context_json, {}),
        dependencies=_load_json(row.dependencies_json, []),
        parallel_execution=row.parallel_execution,
        cpu_usage_percent=row.cpu_usage_percent,
        memory_usage_mb=row.memory_usage_mb,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_lesson_view(row: Lesson) -> LessonView:
    return LessonView(
        lesson_id=row.lesson_id or 0,
        lesson_type=LessonType(row.lesson_type),
        pattern=_load_json(row.pattern_json, {}),
        pattern_hash=row.pattern_hash,
        recommendation=row.recommendation,
        alternative_agent=row.alternative_agent,
        optimal_order=row.optimal_order,
        confidence_score=row.confidence_score,
        effectiveness_score=row.effectiveness_score,
        times_applied=row.times_applied,
        times_successful=row.times_successful,
        times_failed=row.times_failed,
        sample_execution_ids=_load_json(row.sample_execution_ids_json, []),
        tags=_load_json(row.tags_json, []),
        created_by=row.created_by,
        first_observed_at=to_utc_aware_datetime(row.first_observed_at),
        last_applied_at=_optional_aware(row.last_applied_at),
        last_successful_at=_optional_aware(row.last_successful_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_performance_metrics(row: AgentPerformance) -> AgentPerformanceMetrics:
    errors = [
        ErrorSummary(
            error_type=str(item.get("error_type")),
            count=int(item.get("count", 0)),
            last_occurrence=datetime.fromisoformat(str(item.get("last_occurrence"))),
            example_message=item.get("example_message"),
        )
        for item in _load_json(row.common_errors_json, [])
        if isinstance(item, dict)
    ]
    return AgentPerformanceMetrics(
        agent_type=row.agent_type,
        task_type=row.task_type,
        total_executions=row.total_executions,
        successful_executions=row.successful_executions,
        failed_executions=row.failed_executions,
        success_rate=row.success_rate,
        avg_duration_ms=row.avg_duration_ms,
        min_duration_ms=row.min_duration_ms,
        max_duration_ms=row.max_duration_ms,
        p50_duration_ms=row.p50_duration_ms,
        p95_duration_ms=row.p95_duration_ms,
        p99_duration_ms=row.p99_duration_ms,
        common_errors=errors,
        avg_cpu_usage_percent=row.avg_cpu_usage_percent,
        avg_memory_usage_mb=row.avg_memory_usage_mb,
        last_execution_at=_optional_aware(row.last_execution_at),
    )
