from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from goal_orchestrator.resilience.failure_classifier import (
    ClassificationRule,
    classify_error,
    load_classification_rules,
)
from goal_orchestrator.resilience.models import (
    AgentError,
    ErrorCategory,
    ErrorSeverity,
    ErrorType,
    RecoveryAction,
)

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("message", "error_type", "category", "action"),
    [
        (
            "Request timed out",
            ErrorType.TRANSIENT,
            ErrorCategory.NETWORK_TIMEOUT,
            RecoveryAction.RETRY_WITH_BACKOFF,
        ),
        (
            "429 Too Many Requests",
            ErrorType.TRANSIENT,
            ErrorCategory.RATE_LIMIT,
            RecoveryAction.RETRY_WITH_BACKOFF,
        ),
        (
            "Service Unavailable",
            ErrorType.TRANSIENT,
            ErrorCategory.SERVICE_UNAVAILABLE,
            RecoveryAction.RETRY_WITH_BACKOFF,
        ),
        (
            "database is locked",
            ErrorType.RETRIABLE,
            ErrorCategory.RESOURCE_LOCKED,
            RecoveryAction.RETRY_WITH_BACKOFF,
        ),
        (
            "Resource not found",
            ErrorType.RETRIABLE,
            ErrorCategory.DEPENDENCY_MISSING,
            RecoveryAction.RETRY,
        ),
        (
            "validation failed for field email",
            ErrorType.RETRIABLE,
            ErrorCategory.VALIDATION_ERROR,
            RecoveryAction.ALTERNATIVE_PATH,
        ),
        (
            "Permission denied",
            ErrorType.FATAL,
            ErrorCategory.PERMISSION_DENIED,
            RecoveryAction.FAIL_IMMEDIATELY,
        ),
        (
            "HTTP 404",
            ErrorType.FATAL,
            ErrorCategory.RESOURCE_NOT_FOUND,
            RecoveryAction.FAIL_IMMEDIATELY,
        ),
        (
            "Out of memory",
            ErrorType.FATAL,
            ErrorCategory.OUT_OF_MEMORY,
            RecoveryAction.CIRCUIT_BREAK,
        ),
        (
            "Security vulnerability detected",
            ErrorType.CONFLICT,
            ErrorCategory.SECURITY_VULNERABILITY,
            RecoveryAction.PAUSE_WORKFLOW,
        ),
        (
            "UNIQUE constraint failed: users.email",
            ErrorType.CONFLICT,
            ErrorCategory.DATA_INTEGRITY_ISSUE,
            RecoveryAction.PAUSE_WORKFLOW,
        ),
    ],
)
def test_default_rules_classify_by_first_match(
    message: str,
    error_type: ErrorType,
    category: ErrorCategory,
    action: RecoveryAction,
) -> None:
    classification = classify_error(RuntimeError(message))

    assert classification.type == error_type
    assert classification.category == category
    assert classification.action == action
    assert classification.retryable is (error_type in (ErrorType.TRANSIENT, ErrorType.RETRIABLE))
    assert classification.matched_pattern is not None


def test_unmatched_error_is_retriable_unknown() -> None:
    classification = classify_error("kaboom")

    assert classification.type == ErrorType.RETRIABLE
    assert classification.category == ErrorCategory.UNKNOWN
    assert classification.severity == ErrorSeverity.MEDIUM
    assert classification.action == RecoveryAction.RETRY
    assert classification.retryable is True
    assert classification.matched_pattern is None


def test_empty_message_falls_back_to_exception_name() -> None:
    classification = classify_error(TimeoutError())

    assert classification.category == ErrorCategory.NETWORK_TIMEOUT


def test_agent_error_keeps_its_own_classification() -> None:
    error = AgentError(
        "schema drift",
        type=ErrorType.CONFLICT,
        category=ErrorCategory.BUSINESS_RULE_VIOLATION,
        retryable=False,
    )

    classification = classify_error(error)

    assert classification.type == ErrorType.CONFLICT
    assert classification.category == ErrorCategory.BUSINESS_RULE_VIOLATION
    assert classification.severity == ErrorSeverity.HIGH
    assert classification.action == RecoveryAction.PAUSE_WORKFLOW
    assert classification.retryable is False


def test_custom_rules_take_precedence_in_order() -> None:
    rules = (
        ClassificationRule(
            r"flaky",
            ErrorType.TRANSIENT,
            ErrorCategory.TEMPORARY_FAILURE,
            ErrorSeverity.LOW,
            RecoveryAction.RETRY,
        ),
    )

    assert classify_error("flaky permission denied", rules).type == ErrorType.TRANSIENT
    assert classify_error("permission denied", rules).category == ErrorCategory.UNKNOWN


def test_load_rules_from_json_fills_defaults(tmp_path: Path) -> None:
    path = tmp_path / "rules.json"
    path.write_text(
        json.dumps(
            [
                {"pattern": "quota exceeded", "type": "transient", "category": "rate_limit"},
                {
                    "pattern": "license",
                    "type": "conflict",
                    "category": "policy_violation",
                    "action": "skip",
                },
            ],
        ),
        encoding="utf-8",
    )

    rules = load_classification_rules(path)

    assert len(rules) == 2
    assert rules[0].severity == ErrorSeverity.MEDIUM
    assert rules[0].action == RecoveryAction.RETRY_WITH_BACKOFF
    assert classify_error("Quota exceeded for project", rules).category == ErrorCategory.RATE_LIMIT
    assert classify_error("license check", rules).action == RecoveryAction.SKIP


def test_load_rules_rejects_invalid_entries(tmp_path: Path) -> None:
    bad_type = tmp_path / "bad_type.json"
    bad_type.write_text(json.dumps([{"pattern": "x", "type": "cosmic", "category": "unknown"}]))
    bad_pattern = tmp_path / "bad_pattern.json"
    bad_pattern.write_text(
        json.dumps([{"pattern": "(", "type": "fatal", "category": "unknown"}]),
    )
    not_a_list = tmp_path / "object.json"
    not_a_list.write_text(json.dumps({"pattern": "x"}))

    with pytest.raises(ValueError, match="Invalid classification rule"):
        load_classification_rules(bad_type)
    with pytest.raises(ValueError, match="Invalid classification rule"):
        load_classification_rules(bad_pattern)
    with pytest.raises(TypeError, match="Expected JSON array"):
        load_classification_rules(not_a_list)
