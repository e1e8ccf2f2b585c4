"""Create execution history, lesson and agent performance tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "execution_history",
        sa.Column("execution_id", sa.Integer(), nullable=False),
        sa.Column("goal", sa.Text(), nullable=False),
        sa.Column("goal_hash", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("task_description", sa.Text(), nullable=False),
        sa.Column("agent_type", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("estimated_duration_ms", sa.Integer(), nullable=True),
        sa.Column("actual_duration_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_type", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("context_json", sa.Text(), nullable=True),
        sa.Column("dependencies_json", sa.Text(), nullable=True),
        sa.Column(
            "parallel_execution",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("cpu_usage_percent", sa.Float(), nullable=True),
        sa.Column("memory_usage_mb", sa.Float(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("execution_id"),
    )
    op.create_index(
        "idx_execution_history_goal_hash",
        "execution_history",
        ["goal_hash"],
        unique=False,
    )
    op.create_index(
        "idx_execution_history_agent_task",
        "execution_history",
        ["agent_type", "task_type"],
        unique=False,
    )
    op.create_index("idx_execution_history_status", "execution_history", ["status"], unique=False)
    op.create_index(
        "idx_execution_history_started_at",
        "execution_history",
        ["started_at"],
        unique=False,
    )

    op.create_table(
        "lessons",
        sa.Column("lesson_id", sa.Integer(), nullable=False),
        sa.Column("lesson_type", sa.String(), nullable=False),
        sa.Column("pattern_json", sa.Text(), nullable=False),
        sa.Column("pattern_hash", sa.String(), nullable=False),
        sa.Column("recommendation", sa.Text(), nullable=False),
        sa.Column("alternative_agent", sa.String(), nullable=True),
        sa.Column("optimal_order", sa.Integer(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("effectiveness_score", sa.Float(), nullable=True),
        sa.Column("times_applied", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("times_successful", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("times_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("sample_execution_ids_json", sa.Text(), nullable=True),
        sa.Column("tags_json", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False, server_default="system"),
        sa.Column("first_observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_successful_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_lessons_confidence_range",
        ),
        sa.PrimaryKeyConstraint("lesson_id"),
        sa.UniqueConstraint("pattern_hash", name="uq_lessons_pattern_hash"),
    )
    op.create_index(
        "idx_lessons_type_confidence",
        "lessons",
        ["lesson_type", "confidence_score"],
        unique=False,
    )

    op.create_table(
        "agent_performance",
        sa.Column("performance_id", sa.Integer(), nullable=False),
        sa.Column("agent_type", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("total_executions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "successful_executions",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("failed_executions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("avg_duration_ms", sa.Integer(), nullable=True),
        sa.Column("min_duration_ms", sa.Integer(), nullable=True),
        sa.Column("max_duration_ms", sa.Integer(), nullable=True),
        sa.Column("p50_duration_ms", sa.Integer(), nullable=True),
        sa.Column("p95_duration_ms", sa.Integer(), nullable=True),
        sa.Column("p99_duration_ms", sa.Integer(), nullable=True),
        sa.Column("success_rate", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("common_errors_json", sa.Text(), nullable=True),
        sa.Column("avg_cpu_usage_percent", sa.Float(), nullable=True),
        sa.Column("avg_memory_usage_mb", sa.Float(), nullable=True),
        sa.Column("last_execution_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metrics_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("performance_id"),
        sa.UniqueConstraint("agent_type", "task_type", name="uq_agent_performance_agent_task"),
    )


def downgrade() -> None:
    op.drop_table("agent_performance")
    op.drop_index("idx_lessons_type_confidence", table_name="lessons")
    op.drop_table("lessons")
    op.drop_index("idx_execution_history_started_at", table_name="execution_history")
    op.drop_index("idx_execution_history_status", table_name="execution_history")
    op.drop_index("idx_execution_history_agent_task", table_name="execution_history")
    op.drop_index("idx_execution_history_goal_hash", table_name="execution_history")
    op.drop_table("execution_history")
