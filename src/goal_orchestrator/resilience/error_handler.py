"""Recovery decisions for agent errors and the checkpoint ring used for rollback."""

from __future__ import annotations

import json
import logging
import threading
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from goal_orchestrator.resilience.failure_classifier import (
    DEFAULT_CLASSIFICATION_RULES,
    ClassificationRule,
    classify_error,
)
from goal_orchestrator.resilience.models import (
    AgentError,
    Checkpoint,
    CheckpointMetadata,
    CircuitOpenError,
    ErrorCategory,
    ErrorClassification,
    ErrorContext,
    ErrorLog,
    ErrorType,
    RecoveryAction,
    RecoveryResult,
    RetryConfig,
    RetryError,
)
from goal_orchestrator.resilience.retry import RetryManager
from goal_orchestrator.resilience.state_store import InMemoryStateStore, StateStore
from goal_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

CHECKPOINT_NAMESPACE = "checkpoints"
DEFAULT_MAX_CHECKPOINTS = 10


@dataclass(slots=True)
class CheckpointStatistics:
    total_checkpoints: int = 0
    oldest_checkpoint: datetime | None = None
    newest_checkpoint: datetime | None = None


class ErrorHandler:
    """Classify agent errors, pick a recovery action and keep rollback snapshots.

    Rollback only returns a deserialized snapshot. Undoing work an agent has
    already done is left to the caller.
    """

    def __init__(
        self,
        *,
        retry_manager: RetryManager | None = None,
        store: StateStore | None = None,
        rules: tuple[ClassificationRule, ...] = DEFAULT_CLASSIFICATION_RULES,
        max_checkpoints: int = DEFAULT_MAX_CHECKPOINTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_checkpoints < 1:
            raise ValueError("max_checkpoints must be >= 1")
        self.retry_manager = retry_manager
        self._store: StateStore = store or InMemoryStateStore()
        self._rules = rules
        self._max_checkpoints = max_checkpoints
        self._clock = clock
        self._sequence = 0
        self._lock = threading.Lock()

    def classify(self, error: BaseException | str) -> ErrorClassification:
        return classify_error(error, self._rules)

    def handle_agent_error(
        self,
        error: BaseException,
        context: ErrorContext | None = None,
        *,
        operation: Callable[[], Any] | None = None,
        retry_config: RetryConfig | None = None,
    ) -> RecoveryResult:
        """Classify `error` and perform exactly one recovery action.

        For retry actions, `operation` is re-run through the retry manager when
        both are available; otherwise the result only announces the retry.
        """

        context = context or ErrorContext()
        classification = self.classify(error)
        self.log_error(error, context, classification)
        action = classification.action
        message = str(error) or type(error).__name__

        if action in (RecoveryAction.RETRY, RecoveryAction.RETRY_WITH_BACKOFF):
            if operation is not None and self.retry_manager is not None:
                return self._retry(
                    self.retry_manager,
                    operation,
                    classification,
                    context,
                    retry_config,
                )
            return RecoveryResult(
                success=False,
                action=action,
                message=f"Will retry operation (error type: {classification.type.value})",
                classification=classification,
            )

        if action == RecoveryAction.FAIL_IMMEDIATELY:
            logger.error(
                "Fatal %s error for %s, failing immediately",
                classification.category.value,
                context.scope,
            )
            return RecoveryResult(
                success=False,
                action=action,
                message=f"Fatal error: {message}",
                classification=classification,
            )

        if action == RecoveryAction.PAUSE_WORKFLOW:
            logger.warning(
                "Conflict (%s) detected for %s, pausing workflow",
                classification.category.value,
                context.scope,
            )
            return RecoveryResult(
                success=False,
                action=action,
                message=f"Workflow paused due to {classification.category.value}",
                classification=classification,
                requires_human_intervention=True,
            )

        if action == RecoveryAction.ROLLBACK:
            checkpoint = self.rollback_to_last_checkpoint()
            if checkpoint is None:
                return RecoveryResult(
                    success=False,
                    action=action,
                    message="No checkpoint available for rollback",
                    classification=classification,
                )
            return RecoveryResult(
                success=True,
                action=action,
                message=f"Rolled back to checkpoint {checkpoint.id}",
                classification=classification,
                checkpoint_restored=checkpoint.id,
                restored_state=json.loads(checkpoint.state_json),
            )

        if action == RecoveryAction.ALTERNATIVE_PATH:
            logger.info("Attempting alternative path for %s", context.scope)
            return RecoveryResult(
                success=False,
                action=action,
                message="Will attempt alternative approach",
                classification=classification,
                alternative_path_used=True,
            )

        if action == RecoveryAction.CIRCUIT_BREAK:
            logger.error("Circuit breaker triggered for %s, system unhealthy", context.scope)
            return RecoveryResult(
                success=False,
                action=action,
                message="System unhealthy - circuit breaker activated",
                classification=classification,
            )

        logger.warning("Skipping operation for %s after %s", context.scope, message)
        return RecoveryResult(
            success=True,
            action=RecoveryAction.SKIP,
            message="Operation skipped",
            classification=classification,
        )

    def create_checkpoint(
        self,
        phase: str,
        state: dict[str, Any],
        metadata: CheckpointMetadata | None = None,
    ) -> Checkpoint:
        """Snapshot `state` as JSON; the oldest checkpoint is evicted past the limit."""

        state_json = json.dumps(state, default=str, sort_keys=True)
        with self._lock:
            self._sequence += 1
            checkpoint = Checkpoint(
                id=f"checkpoint-{self._sequence}",
                timestamp=self._clock(),
                phase=phase,
                state_json=state_json,
                metadata=metadata or CheckpointMetadata(),
            )
            self._store.put(CHECKPOINT_NAMESPACE, checkpoint.id, checkpoint)
            stored = self._store.items(CHECKPOINT_NAMESPACE)
            for oldest_id, _ in stored[: max(0, len(stored) - self._max_checkpoints)]:
                self._store.delete(CHECKPOINT_NAMESPACE, oldest_id)
                logger.info("Removed oldest checkpoint %s", oldest_id)
        logger.info("Checkpoint %s created for phase %s", checkpoint.id, phase)
        return checkpoint

    def rollback(self, checkpoint_id: str) -> dict[str, Any] | None:
        checkpoint = self.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            logger.error("Checkpoint %s not found, cannot roll back", checkpoint_id)
            return None
        logger.info("Rolling back to checkpoint %s (phase %s)", checkpoint.id, checkpoint.phase)
        return json.loads(checkpoint.state_json)

    def rollback_to_last_checkpoint(self) -> Checkpoint | None:
        stored = self._store.items(CHECKPOINT_NAMESPACE)
        if not stored:
            return None
        checkpoint: Checkpoint = stored[-1][1]
        logger.info(
            "Rolling back to last checkpoint %s (phase %s)",
            checkpoint.id,
            checkpoint.phase,
        )
        return checkpoint

    def get_checkpoints(self) -> list[Checkpoint]:
        """Checkpoints newest first."""
        stored = [checkpoint for _, checkpoint in self._store.items(CHECKPOINT_NAMESPACE)]
        return sorted(reversed(stored), key=lambda checkpoint: checkpoint.timestamp, reverse=True)

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return self._store.get(CHECKPOINT_NAMESPACE, checkpoint_id)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return self._store.delete(CHECKPOINT_NAMESPACE, checkpoint_id)

    def clear_checkpoints(self) -> None:
        with self._lock:
            self._store.clear(CHECKPOINT_NAMESPACE)
            self._sequence = 0
        logger.info("All checkpoints cleared")

    def log_error(
        self,
        error: BaseException,
        context: ErrorContext,
        classification: ErrorClassification | None = None,
    ) -> None:
        classification = classification or self.classify(error)
        logger.error(
            "Agent error in %s (task=%s phase=%s attempt=%s): %s [%s/%s/%s]",
            context.scope,
            context.task_id,
            context.phase,
            context.attempt,
            error,
            classification.type.value,
            classification.category.value,
            classification.severity.value,
        )

    def to_error_log(self, error: BaseException, context: ErrorContext | None = None) -> ErrorLog:
        context = context or ErrorContext()
        trace = "".join(traceback.format_exception(error)) if error.__traceback__ else None
        return ErrorLog(
            timestamp=self._clock(),
            phase=context.phase,
            agent=context.agent_type,
            error=str(error) or type(error).__name__,
            traceback=trace,
            severity=self.classify(error).severity,
        )

    def create_agent_error(  # noqa: PLR0913
        self,
        message: str,
        error_type: ErrorType,
        category: ErrorCategory,
        *,
        agent_type: str | None = None,
        task_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentError:
        return AgentError(
            message,
            type=error_type,
            category=category,
            retryable=error_type in (ErrorType.TRANSIENT, ErrorType.RETRIABLE),
            context=ErrorContext(agent_type=agent_type, task_id=task_id, extra=metadata or {}),
        )

    def get_statistics(self) -> CheckpointStatistics:
        timestamps = [
            checkpoint.timestamp for _, checkpoint in self._store.items(CHECKPOINT_NAMESPACE)
        ]
        if not timestamps:
            return CheckpointStatistics()
        return CheckpointStatistics(
            total_checkpoints=len(timestamps),
            oldest_checkpoint=min(timestamps),
            newest_checkpoint=max(timestamps),
        )

    def _retry(  # noqa: PLR0913
        self,
        retry_manager: RetryManager,
        operation: Callable[[], Any],
        classification: ErrorClassification,
        context: ErrorContext,
        retry_config: RetryConfig | None,
    ) -> RecoveryResult:
        operation_id = f"recover-{context.task_id or context.scope}"
        try:
            value = retry_manager.execute_with_retry(
                operation_id,
                operation,
                retry_config,
                context,
            )
        except RetryError as retry_error:
            return RecoveryResult(
                success=False,
                action=classification.action,
                message=f"Retry exhausted: {retry_error.last_error}",
                classification=retry_error.classification,
                requires_human_intervention=retry_error.requires_human_intervention,
                retry_history=retry_error.history,
            )
        except CircuitOpenError as open_error:
            return RecoveryResult(
                success=False,
                action=RecoveryAction.CIRCUIT_BREAK,
                message=str(open_error),
                classification=classification,
                retry_history=retry_manager.get_retry_history(operation_id),
            )
        return RecoveryResult(
            success=True,
            action=classification.action,
            message="Operation recovered after retry",
            classification=classification,
            retry_history=retry_manager.get_retry_history(operation_id),
            value=value,
        )
