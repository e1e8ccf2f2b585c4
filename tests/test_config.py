from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from goal_orchestrator.config import Settings
from goal_orchestrator.resilience.models import BackoffStrategy, ErrorType

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]

ENV_PREFIX = "GOAL_ORCHESTRATOR_"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name)


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".goal_orchestrator.db")
    assert settings.orchestrator.enable_learning is True
    assert settings.orchestrator.max_parallel_tasks == 4
    assert settings.retry.strategy == BackoffStrategy.EXPONENTIAL
    assert settings.retry.timeout_ms == 30_000
    assert settings.retry.retryable_error_types == (ErrorType.TRANSIENT, ErrorType.RETRIABLE)
    assert settings.learning.min_sample_size == 5
    assert settings.classification_rules_path is None
    settings.validate()


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    rules = tmp_path / "rules.json"
    rules.write_text("[]", encoding="utf-8")
    monkeypatch.setenv("GOAL_ORCHESTRATOR_DB_PATH", str(tmp_path / "custom.db"))
    monkeypatch.setenv("GOAL_ORCHESTRATOR_ENABLE_LEARNING", "off")
    monkeypatch.setenv("GOAL_ORCHESTRATOR_PARALLEL_EXECUTION_ENABLED", "No")
    monkeypatch.setenv("GOAL_ORCHESTRATOR_MAX_PARALLEL_TASKS", "2")
    monkeypatch.setenv("GOAL_ORCHESTRATOR_RETRY_STRATEGY", " Fibonacci ")
    monkeypatch.setenv("GOAL_ORCHESTRATOR_RETRY_TIMEOUT_MS", "0")
    monkeypatch.setenv("GOAL_ORCHESTRATOR_RETRYABLE_ERRORS", "transient, ,fatal")
    monkeypatch.setenv("GOAL_ORCHESTRATOR_CLASSIFICATION_RULES", str(rules))

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.orchestrator.enable_learning is False
    assert settings.orchestrator.parallel_execution_enabled is False
    assert settings.orchestrator.max_parallel_tasks == 2
    assert settings.retry.strategy == BackoffStrategy.FIBONACCI
    assert settings.retry.timeout_ms is None
    assert settings.retry.retryable_error_types == (ErrorType.TRANSIENT, ErrorType.FATAL)
    assert settings.classification_rules_path == rules
    settings.validate()

    config = settings.retry.to_retry_config()
    assert config.timeout_ms is None
    assert config.retryable_errors == (ErrorType.TRANSIENT, ErrorType.FATAL)


def test_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GOAL_ORCHESTRATOR_DB_PATH", "ignored.db")

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("GOAL_ORCHESTRATOR_ENABLE_LEARNING", "maybe", "Invalid boolean value"),
        ("GOAL_ORCHESTRATOR_RETRY_STRATEGY", "random", "Expected one of"),
        ("GOAL_ORCHESTRATOR_RETRYABLE_ERRORS", "transient,cosmic", "Invalid"),
    ],
)
def test_invalid_environment_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("GOAL_ORCHESTRATOR_MIN_CONFIDENCE", "1.5", "between 0 and 1"),
        ("GOAL_ORCHESTRATOR_MAX_PARALLEL_TASKS", "0", "MAX_PARALLEL_TASKS"),
        ("GOAL_ORCHESTRATOR_RETRY_MAX_DELAY_MS", "10", "MAX_DELAY_MS"),
        ("GOAL_ORCHESTRATOR_CIRCUIT_BREAKER_THRESHOLD", "0", "CIRCUIT_BREAKER_THRESHOLD"),
        ("GOAL_ORCHESTRATOR_MIN_SAMPLE_SIZE", "0", "MIN_SAMPLE_SIZE"),
        ("GOAL_ORCHESTRATOR_GOAL_TEMPLATES", "/nonexistent/templates.json", "missing file"),
    ],
)
def test_validate_rejects_unusable_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)
    settings = Settings.from_env()

    with pytest.raises(ValueError, match=message):
        settings.validate()
