from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from goal_orchestrator.main import goal_orchestrator

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Plan, Run and Learning Commands"),
]

GOAL = "Build API for users"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("GOAL_ORCHESTRATOR_"):
            monkeypatch.delenv(name)


def _invoke(*args: str) -> str:
    result = CliRunner().invoke(goal_orchestrator, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def test_plan_command_renders_layers_and_critical_path() -> None:
    output = _invoke("plan", GOAL)

    assert "Tasks: 7" in output
    assert "Estimated duration: 270 min" in output
    assert "Layers: 5" in output
    assert (
        "Critical path: Define Data Models -> Create Database Schema -> "
        "Implement Service Layer -> Write Unit Tests -> Write Integration Tests"
    ) in output
    assert "Overall risk: medium" in output


def test_validate_and_order_commands() -> None:
    assert _invoke("validate", GOAL).splitlines()[0] == "Valid: yes"

    order = _invoke("order", GOAL, "--max-parallel", "2")
    assert order.splitlines()[0] == "Waves: 7"
    assert "  1. Define Data Models" in order


def test_optimize_command_reports_comparison() -> None:
    output = _invoke("optimize", GOAL, "--strategy", "minimize_risk")

    assert "Strategy: minimize_risk" in output
    assert "Version: 1 -> 2" in output
    assert "Preferred: " in output


def test_run_records_history_and_learns(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")

    first = _invoke("run", GOAL, "--db-path", db_path)

    assert "status=completed" in first
    assert "Tasks: 7 successful=7 failed=0 blocked=0 skipped=0" in first
    assert "Lessons learned: 1" in first
    assert "[task-started]" in first
    assert "[recommendation]" not in first

    second = _invoke("run", GOAL, "--db-path", db_path)
    assert "[recommendation]" in second

    lessons = _invoke("lessons", "--db-path", db_path, "--type", "task_ordering")
    assert lessons.splitlines()[0] == "Lessons: 1"
    assert "task_ordering confidence=1.00" in lessons

    recommendations = _invoke("recommend", GOAL, "--db-path", db_path)
    assert recommendations.splitlines()[0] == "Recommendations: 1"
    assert "[high] task ordering optimization" in recommendations

    stats = _invoke("stats", "--db-path", db_path)
    assert "Executions: 14" in stats
    assert "Top agents:" in stats


def test_run_without_learning_keeps_history_only(tmp_path: Path) -> None:
    db_path = str(tmp_path / "no-learning.db")

    output = _invoke("run", GOAL, "--db-path", db_path, "--no-learning", "--max-parallel", "1")

    assert "Lessons learned: 0" in output
    assert _invoke("lessons", "--db-path", db_path).splitlines()[0] == "Lessons: 0"
    assert "Executions: 7" in _invoke("stats", "--db-path", db_path)


def test_run_rejects_invalid_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOAL_ORCHESTRATOR_MIN_CONFIDENCE", "2")

    result = CliRunner().invoke(
        goal_orchestrator,
        ["run", GOAL, "--db-path", str(tmp_path / "bad.db")],
    )

    assert result.exit_code != 0
    assert isinstance(result.exception, ValueError)
