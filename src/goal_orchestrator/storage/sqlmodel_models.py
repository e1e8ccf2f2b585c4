"""SQLModel ORM tables for execution history, lessons and agent performance."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ExecutionHistory(SQLModel, table=True):
    __tablename__ = "execution_history"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_execution_history_goal_hash", "goal_hash"),
        Index("idx_execution_history_agent_task", "agent_type", "task_type"),
        Index("idx_execution_history_status", "status"),
        Index("idx_execution_history_started_at", "started_at"),
    )

    execution_id: int | None = Field(default=None, primary_key=True)
    goal: str = Field(sa_column=Column(Text, nullable=False))
    goal_hash: str
    task_id: str | None = None
    task_description: str = Field(sa_column=Column(Text, nullable=False))
    agent_type: str
    task_type: str
    estimated_duration_ms: int | None = None
    actual_duration_ms: int | None = None
    status: str
    retry_count: int = Field(default=0)
    error_type: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_stack: str | None = Field(default=None, sa_column=Column(Text))
    context_json: str | None = Field(default=None, sa_column=Column(Text))
    dependencies_json: str | None = Field(default=None, sa_column=Column(Text))
    parallel_execution: bool = Field(default=False)
    cpu_usage_percent: float | None = None
    memory_usage_mb: float | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Lesson(SQLModel, table=True):
    __tablename__ = "lessons"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_lessons_confidence_range",
        ),
        UniqueConstraint("pattern_hash", name="uq_lessons_pattern_hash"),
        Index("idx_lessons_type_confidence", "lesson_type", "confidence_score"),
    )

    lesson_id: int | None = Field(default=None, primary_key=True)
    lesson_type: str
    pattern_json: str = Field(sa_column=Column(Text, nullable=False))
    pattern_hash: str
    recommendation: str = Field(sa_column=Column(Text, nullable=False))
    alternative_agent: str | None = None
    optimal_order: int | None = None
    confidence_score: float
    effectiveness_score: float | None = None
    times_applied: int = Field(default=0)
    times_successful: int = Field(default=0)
    times_failed: int = Field(default=0)
    sample_execution_ids_json: str | None = Field(default=None, sa_column=Column(Text))
    tags_json: str | None = Field(default=None, sa_column=Column(Text))
    created_by: str = Field(default="system")
    first_observed_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    last_applied_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_successful_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentPerformance(SQLModel, table=True):
    __tablename__ = "agent_performance"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("agent_type", "task_type", name="uq_agent_performance_agent_task"),
    )

    performance_id: int | None = Field(default=None, primary_key=True)
    agent_type: str
    task_type: str
    total_executions: int = Field(default=0)
    successful_executions: int = Field(default=0)
    failed_executions: int = Field(default=0)
    avg_duration_ms: int | None = None
    min_duration_ms: int | None = None
    max_duration_ms: int | None = None
    p50_duration_ms: int | None = None
    p95_duration_ms: int | None = None
    p99_duration_ms: int | None = None
    success_rate: float = Field(default=0.0)
    common_errors_json: str | None = Field(default=None, sa_column=Column(Text))
    avg_cpu_usage_percent: float | None = None
    avg_memory_usage_mb: float | None = None
    last_execution_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    metrics_updated_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
