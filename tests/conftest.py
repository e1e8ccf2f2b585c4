from __future__ import annotations

import random
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from goal_orchestrator.learning.models import (
    ExecutionRecordCreate,
    ExecutionRecordFinish,
    ExecutionRecordView,
    ExecutionStatus,
)
from goal_orchestrator.learning.repository import LearningRepository
from goal_orchestrator.resilience.retry import RetryManager

FIXED_NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository(tmp_path: Path) -> Iterator[LearningRepository]:
    repo = LearningRepository(tmp_path / "learning.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture
def retry_manager() -> RetryManager:
    return RetryManager(sleep=lambda _: None, random_source=random.Random(0))


def _record_run(  # noqa: PLR0913
    repository: LearningRepository,
    *,
    goal: str = "Build API for users",
    agent_type: str = "agent-api",
    task_type: str = "api_implementation",
    status: ExecutionStatus = ExecutionStatus.SUCCESS,
    duration_ms: int = 1_000,
    estimated_ms: int | None = 1_000,
    error_type: str | None = None,
    error_message: str | None = None,
    started_at: datetime | None = None,
) -> ExecutionRecordView:
    """Insert one finished execution row."""

    record = repository.create_execution(
        ExecutionRecordCreate(
            goal=goal,
            agent_type=agent_type,
            task_description=f"{task_type} task",
            task_type=task_type,
            estimated_duration_ms=estimated_ms,
            started_at=started_at,
        ),
    )
    return repository.finish_execution(
        record.execution_id,
        ExecutionRecordFinish(
            status=status,
            actual_duration_ms=duration_ms,
            error_type=error_type,
            error_message=error_message,
        ),
    )


@pytest.fixture
def record_run():
    return _record_run
