"""Pattern detection, lessons, recommendations and duration prediction."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta
from itertools import combinations

from goal_orchestrator.learning.analytics import AnalyticsService
from goal_orchestrator.learning.models import (
    FAILURE_STATUSES,
    AgentPerformanceSummary,
    AlternativeAgent,
    DurationPrediction,
    ExecutionRecordCreate,
    ExecutionRecordFinish,
    ExecutionRecordView,
    ExecutionStatus,
    LearningStats,
    LessonCandidate,
    LessonImprovement,
    LessonType,
    LessonView,
    Recommendation,
    RecommendationPriority,
)
from goal_orchestrator.learning.repository import (
    CONFIDENCE_OPTIMISM,
    LearningRepository,
    goal_hash,
)
from goal_orchestrator.planning.models import AgentType
from goal_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.6
DEFAULT_MIN_SAMPLE_SIZE = 5
DEFAULT_LOOKBACK_DAYS = 30

AGENT_SELECTION_MIN_RATE = 0.8
AGENT_SELECTION_MIN_MARGIN = 0.1
TASK_ORDERING_MIN_RATE = 0.85
TIME_ESTIMATION_MAX_ERROR = 0.2
TIME_ESTIMATION_MIN_CONFIDENCE = 0.6
ERROR_PREVENTION_MAX_CONFIDENCE = 0.9
PARALLEL_WINDOW_SECONDS = 300
PARALLEL_MAX_AVG_GAP_SECONDS = 60
PARALLEL_MAX_CONFIDENCE = 0.9
MAX_LESSONS_PER_DETECTOR = 10
RATE_EPSILON = 1e-9

DEFAULT_PREDICTED_DURATION_MS = 60_000
DEFAULT_SUCCESS_PROBABILITY = 0.7
LOW_SUCCESS_RATE = 0.7
HIGH_VARIABILITY_RATIO = 2
MAX_ALTERNATIVE_AGENTS = 3
HIGH_PRIORITY_THRESHOLD = 0.8
MEDIUM_PRIORITY_THRESHOLD = 0.6
RECENT_IMPROVEMENT_DAYS = 7
RECENT_IMPROVEMENT_MIN_EFFECTIVENESS = 0.7
STATS_TOP_N = 5

TASK_SCOPED_LESSON_TYPES = frozenset(
    {LessonType.AGENT_SELECTION, LessonType.TIME_ESTIMATION, LessonType.ERROR_PREVENTION},
)

DEFAULT_AGENT_FOR_TASK: dict[str, AgentType] = {
    "model_definition": AgentType.MODELS,
    "database_migration": AgentType.DATABASE,
    "api_implementation": AgentType.API,
    "security_implementation": AgentType.AUTH,
    "websocket_feature": AgentType.REALTIME,
    "ui_implementation": AgentType.UI,
    "integration": AgentType.INTEGRATION,
    "validation": AgentType.QUALITY,
    "testing": AgentType.TEST,
    "documentation": AgentType.DOCUMENTATION,
    "bug_fix": AgentType.API,
    "optimization": AgentType.QUALITY,
    "refactoring": AgentType.QUALITY,
}


class LearningService:
    """Turn execution history into confidence-scored lessons and predictions."""

    def __init__(  # noqa: PLR0913
        self,
        repository: LearningRepository,
        analytics: AnalyticsService | None = None,
        *,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        min_sample_size: int = DEFAULT_MIN_SAMPLE_SIZE,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.analytics = analytics or AnalyticsService(
            repository,
            lookback_days=lookback_days,
            min_sample_size=min_sample_size,
            clock=clock,
        )
        self.min_confidence = min_confidence
        self.min_sample_size = min_sample_size
        self.lookback_days = lookback_days
        self._clock = clock
        # Upserts keyed by unique columns race when waves finish concurrently.
        self._write_lock = threading.RLock()

    def record_execution(self, payload: ExecutionRecordCreate) -> ExecutionRecordView:
        return self.repository.create_execution(payload)

    def update_execution(
        self,
        execution_id: int,
        finish: ExecutionRecordFinish,
    ) -> ExecutionRecordView:
        """Finish a running execution, learn from failures and refresh aggregates."""

        record = self.repository.finish_execution(execution_id, finish)
        with self._write_lock:
            if record.status in FAILURE_STATUSES:
                self.analyze_patterns()
            self.analytics.update_agent_performance_metrics(record.agent_type, record.task_type)
        return record

    def analyze_patterns(self) -> list[LessonView]:
        """Run every detector over the lookback window and upsert the lessons found."""

        records = self.analytics.window(self.lookback_days)
        candidates = [
            *self._detect_agent_selection(records),
            *self._detect_task_ordering(records),
            *self._detect_time_estimation(records),
            *self._detect_error_prevention(),
            *self._detect_parallel_execution(records),
        ]
        lessons: list[LessonView] = []
        created_count = 0
        with self._write_lock:
            for candidate in candidates:
                lesson, created = self.repository.upsert_lesson(candidate)
                lessons.append(lesson)
                created_count += int(created)
        logger.info(
            "Pattern analysis over %d executions: %d lessons (%d new)",
            len(records),
            len(lessons),
            created_count,
        )
        return lessons

    def store_lesson(self, candidate: LessonCandidate) -> LessonView:
        with self._write_lock:
            lesson, _ = self.repository.upsert_lesson(candidate)
        return lesson

    def get_recommendations(
        self,
        goal: str,
        task_type: str | None = None,
        limit: int = 10,
    ) -> list[Recommendation]:
        """Lessons relevant to `goal`/`task_type` above the confidence threshold."""

        key = goal_hash(goal)
        relevant = [
            lesson
            for lesson in self.repository.list_lessons(min_confidence=self.min_confidence)
            if _lesson_matches(lesson, goal_key=key, task_type=task_type)
        ]
        return [_to_recommendation(lesson) for lesson in relevant[:limit]]

    def get_best_agent_for_task(self, task_type: str) -> str:
        for performance in self.repository.list_agent_performance(task_type=task_type):
            if performance.total_executions >= self.min_sample_size:
                return performance.agent_type
        return default_agent_for_task(task_type)

    def get_predicted_duration(
        self,
        agent_type: str,
        task_type: str,
        fallback_ms: int | None = None,
    ) -> DurationPrediction:
        """Predict duration from history, or from `fallback_ms` (default one minute)."""

        fallback = fallback_ms or DEFAULT_PREDICTED_DURATION_MS
        performance = self.analytics.calculate_agent_performance(
            agent_type,
            task_type,
            self.lookback_days,
        )
        if performance is None or performance.total_executions < self.min_sample_size:
            return DurationPrediction(
                agent_type=agent_type,
                task_type=task_type,
                predicted_duration_ms=fallback,
                confidence_interval=(fallback // 2, fallback * 2),
                success_probability=DEFAULT_SUCCESS_PROBABILITY,
                risk_factors=["Insufficient historical data"],
            )

        avg = performance.avg_duration_ms
        interval = (
            performance.p50_duration_ms or avg or fallback // 2,
            performance.p95_duration_ms or (avg or fallback) * 2,
        )
        risks: list[str] = []
        if performance.success_rate < LOW_SUCCESS_RATE:
            risks.append("Low historical success rate")
        if performance.common_errors:
            risks.append(f"Common errors: {performance.common_errors[0].error_type}")
        if (
            performance.p95_duration_ms
            and avg
            and performance.p95_duration_ms / avg > HIGH_VARIABILITY_RATIO
        ):
            risks.append("High duration variability")
        alternatives = [
            AlternativeAgent(
                agent_type=other.agent_type,
                predicted_duration_ms=other.avg_duration_ms or DEFAULT_PREDICTED_DURATION_MS,
                success_probability=other.success_rate,
            )
            for other in self.repository.list_agent_performance(
                task_type=task_type,
                exclude_agent=agent_type,
                limit=MAX_ALTERNATIVE_AGENTS,
            )
        ]
        return DurationPrediction(
            agent_type=agent_type,
            task_type=task_type,
            predicted_duration_ms=avg or fallback,
            confidence_interval=interval,
            success_probability=performance.success_rate,
            risk_factors=risks,
            alternative_agents=alternatives,
        )

    def update_confidence_scores(self) -> int:
        updated = self.repository.update_confidence_scores()
        logger.info("Recomputed confidence for %d applied lessons", updated)
        return updated

    def record_lesson_application(self, lesson_id: int, *, success: bool) -> LessonView:
        with self._write_lock:
            return self.repository.record_lesson_application(lesson_id, success=success)

    def get_learning_stats(self) -> LearningStats:
        lessons = self.repository.list_lessons()
        effectiveness = [
            lesson.effectiveness_score
            for lesson in lessons
            if lesson.effectiveness_score is not None
        ]
        recent_cutoff = self._clock() - timedelta(days=RECENT_IMPROVEMENT_DAYS)
        improved = sorted(
            (
                lesson
                for lesson in lessons
                if lesson.last_applied_at is not None
                and lesson.last_applied_at > recent_cutoff
                and (lesson.effectiveness_score or 0.0) > RECENT_IMPROVEMENT_MIN_EFFECTIVENESS
            ),
            key=lambda lesson: lesson.effectiveness_score or 0.0,
            reverse=True,
        )
        return LearningStats(
            total_executions=self.repository.count_executions(),
            total_lessons=len(lessons),
            avg_confidence_score=(
                sum(lesson.confidence_score for lesson in lessons) / len(lessons)
                if lessons
                else 0.0
            ),
            avg_effectiveness_score=(
                sum(effectiveness) / len(effectiveness) if effectiveness else 0.0
            ),
            top_performing_agents=[
                AgentPerformanceSummary(
                    agent_type=performance.agent_type,
                    task_type=performance.task_type,
                    success_rate=performance.success_rate,
                    avg_duration_ms=performance.avg_duration_ms,
                )
                for performance in self.repository.list_agent_performance(limit=STATS_TOP_N)
            ],
            common_failure_patterns=self.analytics.get_common_failure_patterns(
                self.lookback_days,
            )[:STATS_TOP_N],
            recent_improvements=[
                LessonImprovement(
                    lesson_type=lesson.lesson_type,
                    improvement_percent=(lesson.effectiveness_score or 0.0) * 100,
                    description=lesson.recommendation,
                )
                for lesson in improved[:STATS_TOP_N]
            ],
            optimization_potential=self.calculate_optimization_potential(),
        )

    def calculate_optimization_potential(self) -> int:
        """Rough 0-100 score of how much headroom history shows."""

        records = [
            record
            for record in self.analytics.window(self.lookback_days)
            if record.status != ExecutionStatus.RUNNING
        ]
        if not records:
            success_gap = 1.0 - DEFAULT_SUCCESS_PROBABILITY
            estimation_gap = TIME_ESTIMATION_MAX_ERROR
        else:
            successes = sum(1 for record in records if record.status == ExecutionStatus.SUCCESS)
            success_gap = 1.0 - successes / len(records)
            estimation_gap = sum(_estimation_error(record) for record in records) / len(records)
        return round((success_gap + estimation_gap) * 50)

    def _detect_agent_selection(
        self,
        records: list[ExecutionRecordView],
    ) -> list[LessonCandidate]:
        by_task: dict[str, dict[str, list[ExecutionRecordView]]] = defaultdict(
            lambda: defaultdict(list),
        )
        for record in records:
            if record.actual_duration_ms is not None:
                by_task[record.task_type][record.agent_type].append(record)

        candidates: list[LessonCandidate] = []
        for task_type, by_agent in by_task.items():
            ranked = sorted(
                (
                    (_success_rate(group), _mean_duration(group), agent, group)
                    for agent, group in by_agent.items()
                    if len(group) >= self.min_sample_size
                ),
                key=lambda item: (-item[0], item[1], item[2]),
            )
            if not ranked:
                continue
            best_rate, _, best_agent, group = ranked[0]
            if best_rate < AGENT_SELECTION_MIN_RATE - RATE_EPSILON:
                continue
            margin = best_rate - ranked[1][0] if len(ranked) > 1 else 1.0
            if margin < AGENT_SELECTION_MIN_MARGIN - RATE_EPSILON:
                continue
            candidates.append(
                LessonCandidate(
                    lesson_type=LessonType.AGENT_SELECTION,
                    identity={"task_type": task_type, "agent_type": best_agent},
                    metrics={"success_rate": best_rate, "executions": len(group)},
                    recommendation=(
                        f"Use {best_agent} for {task_type} tasks "
                        f"({best_rate * 100:.1f}% success rate)"
                    ),
                    alternative_agent=best_agent,
                    confidence_score=min(1.0, best_rate * CONFIDENCE_OPTIMISM),
                    sample_execution_ids=[record.execution_id for record in group],
                ),
            )
        return candidates

    def _detect_task_ordering(self, records: list[ExecutionRecordView]) -> list[LessonCandidate]:
        by_goal: dict[str, list[ExecutionRecordView]] = defaultdict(list)
        for record in records:
            by_goal[record.goal_hash].append(record)

        qualifying = [
            (_success_rate(group), len(group), key, group)
            for key, group in by_goal.items()
            if len(group) >= self.min_sample_size
            and _success_rate(group) > TASK_ORDERING_MIN_RATE
        ]
        qualifying.sort(key=lambda item: (-item[0], -item[1], item[2]))
        candidates: list[LessonCandidate] = []
        for rate, _, key, group in qualifying[:MAX_LESSONS_PER_DETECTOR]:
            sequence = [record.task_type for record in group]
            candidates.append(
                LessonCandidate(
                    lesson_type=LessonType.TASK_ORDERING,
                    identity={"goal_hash": key},
                    metrics={"success_rate": rate, "task_sequence": sequence},
                    recommendation=(
                        f"Follow task sequence: {' → '.join(sequence)} for optimal results"
                    ),
                    confidence_score=rate,
                    sample_execution_ids=[record.execution_id for record in group],
                ),
            )
        return candidates

    def _detect_time_estimation(
        self,
        records: list[ExecutionRecordView],
    ) -> list[LessonCandidate]:
        groups: dict[tuple[str, str], list[ExecutionRecordView]] = defaultdict(list)
        for record in records:
            if (
                record.status == ExecutionStatus.SUCCESS
                and record.estimated_duration_ms is not None
                and record.actual_duration_ms is not None
            ):
                groups[(record.agent_type, record.task_type)].append(record)

        candidates: list[LessonCandidate] = []
        for (agent_type, task_type), group in groups.items():
            if len(group) < self.min_sample_size:
                continue
            avg_actual = _mean_duration(group)
            avg_estimated = sum(record.estimated_duration_ms or 0 for record in group) / len(group)
            if not avg_estimated:
                continue
            if abs(avg_actual - avg_estimated) <= avg_estimated * TIME_ESTIMATION_MAX_ERROR:
                continue
            error = abs(avg_actual - avg_estimated) / avg_estimated
            direction = "Increase" if avg_actual > avg_estimated else "Decrease"
            candidates.append(
                LessonCandidate(
                    lesson_type=LessonType.TIME_ESTIMATION,
                    identity={"agent_type": agent_type, "task_type": task_type},
                    metrics={"avg_duration_ms": avg_actual, "avg_estimated_ms": avg_estimated},
                    recommendation=(
                        f"{direction} time estimate for {agent_type} {task_type} to "
                        f"{round(avg_actual)}ms (currently off by {error * 100:.1f}%)"
                    ),
                    confidence_score=max(TIME_ESTIMATION_MIN_CONFIDENCE, 1 - error),
                    sample_execution_ids=[record.execution_id for record in group],
                ),
            )
        return candidates

    def _detect_error_prevention(self) -> list[LessonCandidate]:
        return [
            LessonCandidate(
                lesson_type=LessonType.ERROR_PREVENTION,
                identity={
                    "agent_type": pattern.agent_type,
                    "task_type": pattern.task_type,
                    "error_type": pattern.error_type,
                },
                metrics={"occurrences": pattern.occurrences},
                recommendation=pattern.recommended_fix,
                confidence_score=min(ERROR_PREVENTION_MAX_CONFIDENCE, pattern.occurrences / 10),
            )
            for pattern in self.analytics.get_common_failure_patterns(self.lookback_days)
        ]

    def _detect_parallel_execution(
        self,
        records: list[ExecutionRecordView],
    ) -> list[LessonCandidate]:
        by_goal: dict[str, list[ExecutionRecordView]] = defaultdict(list)
        for record in records:
            by_goal[record.goal_hash].append(record)

        gaps: dict[tuple[str, str], list[float]] = defaultdict(list)
        for group in by_goal.values():
            ordered = sorted(group, key=lambda record: record.execution_id)
            for first, second in combinations(ordered, 2):
                gap = abs((first.started_at - second.started_at).total_seconds())
                if gap < PARALLEL_WINDOW_SECONDS:
                    gaps[(first.task_type, second.task_type)].append(gap)

        qualifying = [
            (pair, values)
            for pair, values in gaps.items()
            if len(values) >= self.min_sample_size
            and sum(values) / len(values) < PARALLEL_MAX_AVG_GAP_SECONDS
        ]
        qualifying.sort(key=lambda item: (-len(item[1]), item[0]))
        candidates: list[LessonCandidate] = []
        for (task_type, related), values in qualifying[:MAX_LESSONS_PER_DETECTOR]:
            average_gap = sum(values) / len(values)
            candidates.append(
                LessonCandidate(
                    lesson_type=LessonType.PARALLEL_EXECUTION,
                    identity={"task_type": task_type, "related_task_type": related},
                    metrics={"co_occurrences": len(values), "avg_gap_seconds": average_gap},
                    recommendation=(
                        f"Execute {task_type} and {related} in parallel "
                        f"(co-occur {len(values)} times within {round(average_gap)}s)"
                    ),
                    confidence_score=min(PARALLEL_MAX_CONFIDENCE, len(values) / 20),
                ),
            )
        return candidates


def default_agent_for_task(task_type: str) -> str:
    return DEFAULT_AGENT_FOR_TASK.get(task_type, AgentType.API).value


def recommendation_priority(lesson: LessonView) -> RecommendationPriority:
    score = (
        lesson.effectiveness_score
        if lesson.effectiveness_score is not None
        else lesson.confidence_score
    )
    if score > HIGH_PRIORITY_THRESHOLD:
        return RecommendationPriority.HIGH
    if score > MEDIUM_PRIORITY_THRESHOLD:
        return RecommendationPriority.MEDIUM
    return RecommendationPriority.LOW


def _lesson_matches(lesson: LessonView, *, goal_key: str, task_type: str | None) -> bool:
    if lesson.pattern.get("goal_hash") == goal_key:
        return True
    if task_type is not None and lesson.pattern.get("task_type") == task_type:
        return True
    return task_type is None and lesson.lesson_type in TASK_SCOPED_LESSON_TYPES


def _to_recommendation(lesson: LessonView) -> Recommendation:
    metrics = lesson.pattern.get("historical_metrics") or {}
    if lesson.lesson_type == LessonType.TIME_ESTIMATION and "avg_duration_ms" in metrics:
        improvement = f"{round(float(metrics['avg_duration_ms']) / 1000)}s more accurate"
    else:
        improvement = "10-20% success rate increase"
    return Recommendation(
        lesson_id=lesson.lesson_id,
        type=lesson.lesson_type,
        priority=recommendation_priority(lesson),
        title=f"{lesson.lesson_type.value.replace('_', ' ')} optimization",
        description=lesson.recommendation,
        confidence_score=lesson.confidence_score,
        expected_improvement=improvement,
        alternative_agent=lesson.alternative_agent,
    )


def _success_rate(records: list[ExecutionRecordView]) -> float:
    if not records:
        return 0.0
    return sum(1 for record in records if record.status == ExecutionStatus.SUCCESS) / len(records)


def _mean_duration(records: list[ExecutionRecordView]) -> float:
    durations = [
        record.actual_duration_ms for record in records if record.actual_duration_ms is not None
    ]
    return sum(durations) / len(durations) if durations else 0.0


def _estimation_error(record: ExecutionRecordView) -> float:
    if not record.estimated_duration_ms or record.actual_duration_ms is None:
        return 0.0
    return abs(record.actual_duration_ms - record.estimated_duration_ms) / (
        record.estimated_duration_ms
    )
