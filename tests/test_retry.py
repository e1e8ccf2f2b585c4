from __future__ import annotations

import random
import threading

import allure
import pytest

from goal_orchestrator.resilience.models import (
    BackoffStrategy,
    CircuitOpenError,
    ErrorContext,
    ErrorType,
    OperationTimeoutError,
    RetryConfig,
    RetryError,
)
from goal_orchestrator.resilience.retry import RetryManager

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Retry and Circuit Breaker"),
]


class _NoJitter(random.Random):
    def random(self) -> float:
        return 0.0


class _FailingOperation:
    """Raise the given messages in turn, then return "ok"."""

    def __init__(self, *messages: str) -> None:
        self._messages = list(messages)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self._messages:
            raise RuntimeError(self._messages.pop(0))
        return "ok"


def _config(**overrides) -> RetryConfig:
    values = {
        "max_attempts": 2,
        "strategy": BackoffStrategy.FIXED,
        "base_delay_ms": 100,
        "max_delay_ms": 1_000,
        "timeout_ms": None,
        "retryable_errors": (ErrorType.RETRIABLE,),
        "circuit_breaker_threshold": 10,
    }
    values.update(overrides)
    return RetryConfig(**values)


def test_exponential_delay_is_jittered_within_twenty_percent() -> None:
    manager = RetryManager(random_source=random.Random(42))
    config = RetryConfig(strategy=BackoffStrategy.EXPONENTIAL, base_delay_ms=1_000)

    delays = [manager.calculate_delay(3, config) for _ in range(50)]

    assert all(4_000 <= delay < 4_800 for delay in delays)


@pytest.mark.parametrize(
    ("strategy", "expected"),
    [
        (BackoffStrategy.EXPONENTIAL, [100, 200, 400, 800, 1_000]),
        (BackoffStrategy.LINEAR, [100, 200, 300, 400, 500]),
        (BackoffStrategy.FIBONACCI, [100, 100, 200, 300, 500]),
        (BackoffStrategy.FIXED, [100, 100, 100, 100, 100]),
    ],
)
def test_backoff_strategies_without_jitter(
    strategy: BackoffStrategy,
    expected: list[int],
) -> None:
    manager = RetryManager(random_source=_NoJitter())
    config = _config(strategy=strategy, base_delay_ms=100, max_delay_ms=1_000)

    assert [manager.calculate_delay(attempt, config) for attempt in range(1, 6)] == expected


def test_retriable_failures_then_success() -> None:
    sleeps: list[float] = []
    manager = RetryManager(sleep=sleeps.append, random_source=random.Random(0))
    operation = _FailingOperation("resource busy", "temporary failure, try again")

    result = manager.execute_with_retry("op-1", operation, _config())

    assert result == "ok"
    history = manager.get_retry_history("op-1")
    assert history is not None
    assert history.total_attempts == 3
    assert history.final_success is True
    assert [attempt.success for attempt in history.attempts] == [False, False, True]
    assert len(sleeps) == 2
    assert all(0.1 <= value < 0.12 for value in sleeps)


def test_fatal_error_is_not_retried(retry_manager: RetryManager) -> None:
    operation = _FailingOperation("permission denied")

    with pytest.raises(RetryError) as error:
        retry_manager.execute_with_retry("op-fatal", operation, _config())

    assert operation.calls == 1
    assert error.value.classification.type == ErrorType.FATAL
    assert error.value.history.total_attempts == 1
    assert error.value.history.attempts[0].delay_ms == 0
    assert isinstance(error.value.__cause__, RuntimeError)
    assert error.value.requires_human_intervention is False


def test_error_type_outside_retryable_set_stops_immediately(retry_manager: RetryManager) -> None:
    operation = _FailingOperation("connection reset by peer")

    with pytest.raises(RetryError):
        retry_manager.execute_with_retry("op-transient", operation, _config())

    assert operation.calls == 1


def test_exhausted_retries_raise_with_full_history(retry_manager: RetryManager) -> None:
    operation = _FailingOperation("try again", "try again", "try again", "try again")

    with pytest.raises(RetryError, match="try again") as error:
        retry_manager.execute_with_retry("op-exhaust", operation, _config())

    assert operation.calls == 3
    assert error.value.history.final_success is False
    assert [attempt.number for attempt in error.value.history.attempts] == [1, 2, 3]
    assert error.value.history.attempts[-1].delay_ms == 0


def test_conflict_failure_requires_human_intervention(retry_manager: RetryManager) -> None:
    with pytest.raises(RetryError) as error:
        retry_manager.execute_with_retry(
            "op-conflict",
            _FailingOperation("merge conflict in schema"),
            _config(),
        )

    assert error.value.requires_human_intervention is True


def test_circuit_breaker_opens_per_scope_and_resets(retry_manager: RetryManager) -> None:
    config = _config(max_attempts=0, circuit_breaker_threshold=2)
    api = ErrorContext(agent_type="agent-api")

    for index in range(2):
        with pytest.raises(RetryError):
            retry_manager.execute_with_retry(
                f"op-{index}",
                _FailingOperation("kaboom"),
                config,
                api,
            )

    state = retry_manager.get_circuit_breaker_state("agent-api")
    assert state is not None
    assert state.is_open is True
    assert state.failure_count == 2

    guarded = _FailingOperation()
    with pytest.raises(CircuitOpenError, match="agent-api"):
        retry_manager.execute_with_retry("op-guarded", guarded, config, api)
    assert guarded.calls == 0

    other = ErrorContext(agent_type="agent-test")
    assert retry_manager.execute_with_retry("op-other", _FailingOperation(), config, other) == "ok"

    retry_manager.reset_circuit_breaker("agent-api")
    assert retry_manager.get_circuit_breaker_state("agent-api") is None
    assert retry_manager.execute_with_retry("op-after", guarded, config, api) == "ok"


def test_circuit_breaker_closes_after_window(clock) -> None:
    manager = RetryManager(sleep=lambda _: None, random_source=random.Random(0), clock=clock)
    config = _config(max_attempts=0, circuit_breaker_threshold=1, circuit_breaker_window_ms=1_000)

    with pytest.raises(RetryError):
        manager.execute_with_retry("op-1", _FailingOperation("kaboom"), config)
    with pytest.raises(CircuitOpenError):
        manager.execute_with_retry("op-2", _FailingOperation(), config)

    clock.advance(seconds=2)

    assert manager.execute_with_retry("op-3", _FailingOperation(), config) == "ok"
    assert manager.get_all_circuit_breaker_states() == []


def test_success_decrements_failure_count(retry_manager: RetryManager) -> None:
    config = _config(max_attempts=0, circuit_breaker_threshold=5)

    with pytest.raises(RetryError):
        retry_manager.execute_with_retry("op-fail", _FailingOperation("kaboom"), config)
    assert retry_manager.get_circuit_breaker_state().failure_count == 1

    retry_manager.execute_with_retry("op-ok", _FailingOperation(), config)

    assert retry_manager.get_circuit_breaker_state() is None


def test_timeout_is_classified_as_transient(retry_manager: RetryManager) -> None:
    release = threading.Event()

    def slow() -> str:
        release.wait(timeout=2)
        return "late"

    config = _config(
        max_attempts=0,
        timeout_ms=50,
        retryable_errors=(ErrorType.TRANSIENT,),
    )
    try:
        with pytest.raises(RetryError) as error:
            retry_manager.execute_with_retry("op-slow", slow, config)
    finally:
        release.set()

    assert isinstance(error.value.last_error, OperationTimeoutError)
    assert error.value.classification.type == ErrorType.TRANSIENT


def test_statistics_and_history_management(retry_manager: RetryManager) -> None:
    retry_manager.execute_with_retry("op-ok", _FailingOperation("try again"), _config())
    with pytest.raises(RetryError):
        retry_manager.execute_with_retry(
            "op-bad",
            _FailingOperation("permission denied"),
            _config(),
        )

    stats = retry_manager.get_statistics()

    assert stats.total_operations == 2
    assert stats.successful_operations == 1
    assert stats.failed_operations == 1
    assert stats.average_attempts == pytest.approx(1.5)

    retry_manager.clear_history("op-ok")
    assert retry_manager.get_retry_history("op-ok") is None
    retry_manager.clear_history()
    assert retry_manager.get_all_retry_histories() == []


def test_recommended_config_is_a_copy(retry_manager: RetryManager) -> None:
    config = retry_manager.get_recommended_config(ErrorType.TRANSIENT)
    config.max_attempts = 99

    assert retry_manager.get_recommended_config(ErrorType.TRANSIENT).max_attempts == 5
    assert retry_manager.get_recommended_config(ErrorType.FATAL).max_attempts == 0


def test_negative_max_attempts_is_rejected_before_running(retry_manager: RetryManager) -> None:
    operation = _FailingOperation()

    with pytest.raises(ValueError, match="max_attempts must be >= 0"):
        retry_manager.execute_with_retry("op-negative", operation, _config(max_attempts=-1))

    assert operation.calls == 0
    assert retry_manager.get_retry_history("op-negative") is None
    assert retry_manager.get_circuit_breaker_state() is None
