"""Retry with backoff and jitter, guarded by per-scope circuit breakers."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TypeVar

from goal_orchestrator.resilience.failure_classifier import (
    DEFAULT_CLASSIFICATION_RULES,
    ClassificationRule,
    classify_error,
)
from goal_orchestrator.resilience.models import (
    DEFAULT_RETRY_CONFIGS,
    BackoffStrategy,
    CircuitBreakerState,
    CircuitOpenError,
    ErrorClassification,
    ErrorContext,
    ErrorType,
    OperationTimeoutError,
    RetryAttempt,
    RetryConfig,
    RetryError,
    RetryHistory,
)
from goal_orchestrator.resilience.state_store import InMemoryStateStore, StateStore
from goal_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

HISTORY_NAMESPACE = "retry_history"
BREAKER_NAMESPACE = "circuit_breakers"
JITTER_FRACTION = 0.2


@dataclass(slots=True)
class RetryStatistics:
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    average_attempts: float = 0.0
    open_circuit_breakers: int = 0


class RetryManager:
    """Run operations with classified retries and per-scope circuit breakers.

    Breaker scope is the agent type from `ErrorContext`, or "global". Sleep,
    randomness and the wall clock are injectable for deterministic tests.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        default_config: RetryConfig | None = None,
        store: StateStore | None = None,
        rules: tuple[ClassificationRule, ...] = DEFAULT_CLASSIFICATION_RULES,
        sleep: Callable[[float], None] = time.sleep,
        random_source: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.default_config = default_config or RetryConfig()
        self._store: StateStore = store or InMemoryStateStore()
        self._rules = rules
        self._sleep = sleep
        self._random = random_source or random.Random()  # noqa: S311
        self._clock = clock
        self._breaker_lock = threading.Lock()

    def execute_with_retry(
        self,
        operation_id: str,
        operation: Callable[[], T],
        config: RetryConfig | None = None,
        context: ErrorContext | None = None,
    ) -> T:
        """Run `operation` until success or until retries are exhausted.

        Raises `CircuitOpenError` when the scope's breaker is open and
        `RetryError` (chained to the last exception) on final failure.
        """

        config = config or self.default_config
        if config.max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {config.max_attempts}")
        scope = (context or ErrorContext()).scope
        self._ensure_breaker_closed(scope)

        history = RetryHistory(operation_id=operation_id)
        started = time.monotonic()
        last_error: Exception | None = None
        classification: ErrorClassification | None = None

        for attempt in range(1, config.max_attempts + 2):
            if attempt > 1 and self._breaker_is_open(scope):
                self._finish_history(history, started)
                raise CircuitOpenError(scope) from last_error

            attempt_started = time.monotonic()
            try:
                result = self._run_attempt(operation, config.timeout_ms)
            except Exception as error:  # noqa: BLE001
                last_error = error
                classification = classify_error(error, self._rules)
                will_retry = (
                    classification.type in config.retryable_errors
                    and attempt <= config.max_attempts
                )
                delay_ms = self.calculate_delay(attempt, config) if will_retry else 0
                history.attempts.append(
                    RetryAttempt(
                        number=attempt,
                        timestamp=self._clock(),
                        delay_ms=delay_ms,
                        success=False,
                        error=str(error) or type(error).__name__,
                        duration_ms=_elapsed_ms(attempt_started),
                    ),
                )
                if not will_retry:
                    break
                logger.warning(
                    "Attempt %d/%d of %s failed (%s/%s), retrying in %dms: %s",
                    attempt,
                    config.max_attempts + 1,
                    operation_id,
                    classification.type.value,
                    classification.category.value,
                    delay_ms,
                    error,
                )
                self._sleep(delay_ms / 1000.0)
                continue

            history.attempts.append(
                RetryAttempt(
                    number=attempt,
                    timestamp=self._clock(),
                    delay_ms=0,
                    success=True,
                    duration_ms=_elapsed_ms(attempt_started),
                ),
            )
            history.final_success = True
            self._finish_history(history, started)
            self._record_success(scope)
            if attempt > 1:
                logger.info("Operation %s succeeded on attempt %d", operation_id, attempt)
            return result

        if last_error is None or classification is None:
            raise RuntimeError(f"Operation {operation_id} finished without a recorded attempt")
        self._finish_history(history, started)
        self._record_failure(scope, config)
        logger.error(
            "Operation %s failed after %d attempts (%s/%s): %s",
            operation_id,
            history.total_attempts,
            classification.type.value,
            classification.category.value,
            last_error,
        )
        raise RetryError(
            operation_id=operation_id,
            last_error=last_error,
            classification=classification,
            history=history,
        ) from last_error

    def calculate_delay(self, attempt: int, config: RetryConfig) -> int:
        """Backoff delay in ms for `attempt` (1-based), jittered by up to 20%, capped."""

        base = config.base_delay_ms
        if config.strategy == BackoffStrategy.EXPONENTIAL:
            delay = base * 2 ** (attempt - 1)
        elif config.strategy == BackoffStrategy.LINEAR:
            delay = base * attempt
        elif config.strategy == BackoffStrategy.FIBONACCI:
            delay = base * _fibonacci(attempt)
        else:
            delay = base
        jitter = delay * JITTER_FRACTION * self._random.random()
        return int(min(delay + jitter, config.max_delay_ms))

    def get_retry_history(self, operation_id: str) -> RetryHistory | None:
        return self._store.get(HISTORY_NAMESPACE, operation_id)

    def get_all_retry_histories(self) -> list[RetryHistory]:
        return [history for _, history in self._store.items(HISTORY_NAMESPACE)]

    def clear_history(self, operation_id: str | None = None) -> None:
        if operation_id is None:
            self._store.clear(HISTORY_NAMESPACE)
        else:
            self._store.delete(HISTORY_NAMESPACE, operation_id)

    def get_circuit_breaker_state(self, scope: str = "global") -> CircuitBreakerState | None:
        with self._breaker_lock:
            state = self._current_breaker(scope)
            return replace(state) if state is not None else None

    def get_all_circuit_breaker_states(self) -> list[CircuitBreakerState]:
        with self._breaker_lock:
            scopes = [scope for scope, _ in self._store.items(BREAKER_NAMESPACE)]
            states = [self._current_breaker(scope) for scope in scopes]
            return [replace(state) for state in states if state is not None]

    def reset_circuit_breaker(self, scope: str = "global") -> None:
        with self._breaker_lock:
            if self._store.delete(BREAKER_NAMESPACE, scope):
                logger.info("Circuit breaker reset for scope %s", scope)

    def get_recommended_config(self, error_type: ErrorType) -> RetryConfig:
        return replace(DEFAULT_RETRY_CONFIGS[error_type])

    def get_statistics(self) -> RetryStatistics:
        histories = self.get_all_retry_histories()
        successful = sum(1 for history in histories if history.final_success)
        total_attempts = sum(history.total_attempts for history in histories)
        return RetryStatistics(
            total_operations=len(histories),
            successful_operations=successful,
            failed_operations=len(histories) - successful,
            average_attempts=total_attempts / len(histories) if histories else 0.0,
            open_circuit_breakers=sum(
                1 for state in self.get_all_circuit_breaker_states() if state.is_open
            ),
        )

    def _run_attempt(self, operation: Callable[[], T], timeout_ms: int | None) -> T:
        if not timeout_ms:
            return operation()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="retry-attempt")
        future = executor.submit(operation)
        try:
            return future.result(timeout=timeout_ms / 1000.0)
        except TimeoutError as error:
            if future.done():
                raise
            future.cancel()
            raise OperationTimeoutError(timeout_ms) from error
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _finish_history(self, history: RetryHistory, started: float) -> None:
        history.total_duration_ms = _elapsed_ms(started)
        self._store.put(HISTORY_NAMESPACE, history.operation_id, history)

    def _ensure_breaker_closed(self, scope: str) -> None:
        if self._breaker_is_open(scope):
            logger.warning("Circuit breaker open for scope %s, failing fast", scope)
            raise CircuitOpenError(scope)

    def _breaker_is_open(self, scope: str) -> bool:
        with self._breaker_lock:
            state = self._current_breaker(scope)
            return state is not None and state.is_open

    def _current_breaker(self, scope: str) -> CircuitBreakerState | None:
        state: CircuitBreakerState | None = self._store.get(BREAKER_NAMESPACE, scope)
        if state is None or not state.is_open or state.opened_at is None:
            return state
        if self._clock() - state.opened_at >= timedelta(milliseconds=state.window_ms):
            self._store.delete(BREAKER_NAMESPACE, scope)
            logger.info("Circuit breaker window elapsed, reset scope %s", scope)
            return None
        return state

    def _record_success(self, scope: str) -> None:
        with self._breaker_lock:
            state = self._current_breaker(scope)
            if state is None:
                return
            state.failure_count -= 1
            if state.failure_count <= 0:
                self._store.delete(BREAKER_NAMESPACE, scope)
            else:
                self._store.put(BREAKER_NAMESPACE, scope, state)

    def _record_failure(self, scope: str, config: RetryConfig) -> None:
        with self._breaker_lock:
            state = self._current_breaker(scope) or CircuitBreakerState(
                scope=scope,
                threshold=config.circuit_breaker_threshold,
                window_ms=config.circuit_breaker_window_ms,
            )
            now = self._clock()
            state.failure_count += 1
            state.last_failure_at = now
            if not state.is_open and state.failure_count >= state.threshold:
                state.is_open = True
                state.opened_at = now
                logger.warning(
                    "Circuit breaker opened for scope %s after %d failures",
                    scope,
                    state.failure_count,
                )
            self._store.put(BREAKER_NAMESPACE, scope, state)


def _fibonacci(n: int) -> int:
    previous, current = 0, 1
    for _ in range(n - 1):
        previous, current = current, previous + current
    return current


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
