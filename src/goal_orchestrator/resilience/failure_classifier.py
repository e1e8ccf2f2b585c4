"""Deterministic error classification shared by retry and recovery logic.

Rules are ordered data: the first rule whose pattern matches the error text
wins. `load_classification_rules` reads the same structure from JSON so the
table can be tuned without code changes.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from goal_orchestrator.resilience.models import (
    AgentError,
    ErrorCategory,
    ErrorClassification,
    ErrorSeverity,
    ErrorType,
    RecoveryAction,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClassificationRule:
    pattern: str
    type: ErrorType
    category: ErrorCategory
    severity: ErrorSeverity
    action: RecoveryAction
    _compiled: re.Pattern[str] | None = field(default=None, repr=False, compare=False)

    def search(self, text: str) -> re.Match[str] | None:
        if self._compiled is None:
            self._compiled = re.compile(self.pattern, re.IGNORECASE)
        return self._compiled.search(text)


DEFAULT_CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        r"timeout|timed out|ETIMEDOUT|ECONNRESET",
        ErrorType.TRANSIENT,
        ErrorCategory.NETWORK_TIMEOUT,
        ErrorSeverity.LOW,
        RecoveryAction.RETRY_WITH_BACKOFF,
    ),
    ClassificationRule(
        r"rate limit|too many requests|429",
        ErrorType.TRANSIENT,
        ErrorCategory.RATE_LIMIT,
        ErrorSeverity.MEDIUM,
        RecoveryAction.RETRY_WITH_BACKOFF,
    ),
    ClassificationRule(
        r"connection reset|ECONNREFUSED|ENOTFOUND",
        ErrorType.TRANSIENT,
        ErrorCategory.CONNECTION_RESET,
        ErrorSeverity.MEDIUM,
        RecoveryAction.RETRY_WITH_BACKOFF,
    ),
    ClassificationRule(
        r"service unavailable|503|502|504",
        ErrorType.TRANSIENT,
        ErrorCategory.SERVICE_UNAVAILABLE,
        ErrorSeverity.MEDIUM,
        RecoveryAction.RETRY_WITH_BACKOFF,
    ),
    ClassificationRule(
        r"locked|EBUSY|resource busy",
        ErrorType.RETRIABLE,
        ErrorCategory.RESOURCE_LOCKED,
        ErrorSeverity.MEDIUM,
        RecoveryAction.RETRY_WITH_BACKOFF,
    ),
    ClassificationRule(
        r"dependency|prerequisite|not found",
        ErrorType.RETRIABLE,
        ErrorCategory.DEPENDENCY_MISSING,
        ErrorSeverity.MEDIUM,
        RecoveryAction.RETRY,
    ),
    ClassificationRule(
        r"validation failed|invalid input",
        ErrorType.RETRIABLE,
        ErrorCategory.VALIDATION_ERROR,
        ErrorSeverity.MEDIUM,
        RecoveryAction.ALTERNATIVE_PATH,
    ),
    ClassificationRule(
        r"temporary failure|try again",
        ErrorType.RETRIABLE,
        ErrorCategory.TEMPORARY_FAILURE,
        ErrorSeverity.LOW,
        RecoveryAction.RETRY,
    ),
    ClassificationRule(
        r"permission denied|EACCES|unauthorized|403|401",
        ErrorType.FATAL,
        ErrorCategory.PERMISSION_DENIED,
        ErrorSeverity.CRITICAL,
        RecoveryAction.FAIL_IMMEDIATELY,
    ),
    ClassificationRule(
        r"invalid config|configuration error|EINVAL",
        ErrorType.FATAL,
        ErrorCategory.INVALID_CONFIGURATION,
        ErrorSeverity.CRITICAL,
        RecoveryAction.FAIL_IMMEDIATELY,
    ),
    ClassificationRule(
        r"not found|ENOENT|404",
        ErrorType.FATAL,
        ErrorCategory.RESOURCE_NOT_FOUND,
        ErrorSeverity.HIGH,
        RecoveryAction.FAIL_IMMEDIATELY,
    ),
    ClassificationRule(
        r"syntax error|parse error|malformed",
        ErrorType.FATAL,
        ErrorCategory.SYNTAX_ERROR,
        ErrorSeverity.HIGH,
        RecoveryAction.FAIL_IMMEDIATELY,
    ),
    ClassificationRule(
        r"out of memory|ENOMEM|heap|memory limit",
        ErrorType.FATAL,
        ErrorCategory.OUT_OF_MEMORY,
        ErrorSeverity.CRITICAL,
        RecoveryAction.CIRCUIT_BREAK,
    ),
    ClassificationRule(
        r"security|vulnerability|CVE|exploit",
        ErrorType.CONFLICT,
        ErrorCategory.SECURITY_VULNERABILITY,
        ErrorSeverity.CRITICAL,
        RecoveryAction.PAUSE_WORKFLOW,
    ),
    ClassificationRule(
        r"business rule|policy|compliance",
        ErrorType.CONFLICT,
        ErrorCategory.BUSINESS_RULE_VIOLATION,
        ErrorSeverity.HIGH,
        RecoveryAction.PAUSE_WORKFLOW,
    ),
    ClassificationRule(
        r"integrity|constraint|conflict",
        ErrorType.CONFLICT,
        ErrorCategory.DATA_INTEGRITY_ISSUE,
        ErrorSeverity.HIGH,
        RecoveryAction.PAUSE_WORKFLOW,
    ),
)

CATEGORY_SEVERITY: dict[ErrorCategory, ErrorSeverity] = {
    ErrorCategory.NETWORK_TIMEOUT: ErrorSeverity.LOW,
    ErrorCategory.RATE_LIMIT: ErrorSeverity.MEDIUM,
    ErrorCategory.CONNECTION_RESET: ErrorSeverity.MEDIUM,
    ErrorCategory.SERVICE_UNAVAILABLE: ErrorSeverity.MEDIUM,
    ErrorCategory.RESOURCE_LOCKED: ErrorSeverity.MEDIUM,
    ErrorCategory.DEPENDENCY_MISSING: ErrorSeverity.MEDIUM,
    ErrorCategory.TEMPORARY_FAILURE: ErrorSeverity.LOW,
    ErrorCategory.VALIDATION_ERROR: ErrorSeverity.MEDIUM,
    ErrorCategory.INVALID_CONFIGURATION: ErrorSeverity.CRITICAL,
    ErrorCategory.PERMISSION_DENIED: ErrorSeverity.CRITICAL,
    ErrorCategory.RESOURCE_NOT_FOUND: ErrorSeverity.HIGH,
    ErrorCategory.SYNTAX_ERROR: ErrorSeverity.HIGH,
    ErrorCategory.OUT_OF_MEMORY: ErrorSeverity.CRITICAL,
    ErrorCategory.SECURITY_VULNERABILITY: ErrorSeverity.CRITICAL,
    ErrorCategory.BUSINESS_RULE_VIOLATION: ErrorSeverity.HIGH,
    ErrorCategory.DATA_INTEGRITY_ISSUE: ErrorSeverity.HIGH,
    ErrorCategory.POLICY_VIOLATION: ErrorSeverity.HIGH,
    ErrorCategory.UNKNOWN: ErrorSeverity.MEDIUM,
}

TYPE_ACTION: dict[ErrorType, RecoveryAction] = {
    ErrorType.TRANSIENT: RecoveryAction.RETRY_WITH_BACKOFF,
    ErrorType.RETRIABLE: RecoveryAction.RETRY,
    ErrorType.FATAL: RecoveryAction.FAIL_IMMEDIATELY,
    ErrorType.CONFLICT: RecoveryAction.PAUSE_WORKFLOW,
}

UNKNOWN_CLASSIFICATION = ErrorClassification(
    type=ErrorType.RETRIABLE,
    category=ErrorCategory.UNKNOWN,
    severity=ErrorSeverity.MEDIUM,
    action=RecoveryAction.RETRY,
    retryable=True,
)


def classify_error(
    error: BaseException | str,
    rules: tuple[ClassificationRule, ...] = DEFAULT_CLASSIFICATION_RULES,
) -> ErrorClassification:
    """Classify an exception or message; unmatched errors are retriable/unknown."""

    if isinstance(error, AgentError):
        return ErrorClassification(
            type=error.type,
            category=error.category,
            severity=error.severity or CATEGORY_SEVERITY[error.category],
            action=error.action or TYPE_ACTION[error.type],
            retryable=error.retryable,
        )

    text = error if isinstance(error, str) else _error_text(error)
    for rule in rules:
        match = rule.search(text)
        if match is not None:
            return ErrorClassification(
                type=rule.type,
                category=rule.category,
                severity=rule.severity,
                action=rule.action,
                retryable=rule.type in (ErrorType.TRANSIENT, ErrorType.RETRIABLE),
                matched_pattern=match.group(0),
            )
    return ErrorClassification(
        type=UNKNOWN_CLASSIFICATION.type,
        category=UNKNOWN_CLASSIFICATION.category,
        severity=UNKNOWN_CLASSIFICATION.severity,
        action=UNKNOWN_CLASSIFICATION.action,
        retryable=UNKNOWN_CLASSIFICATION.retryable,
    )


def load_classification_rules(path: Path) -> tuple[ClassificationRule, ...]:
    """Load ordered rules from a JSON array of objects.

    Each object needs ``pattern``, ``type`` and ``category``; ``severity`` and
    ``action`` default from the category and type tables.
    """

    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise TypeError(f"Expected JSON array of classification rules in {path}")
    rules: list[ClassificationRule] = []
    for raw in payload:
        if not isinstance(raw, dict):
            raise TypeError(f"Classification rule must be an object in {path}")
        try:
            error_type = ErrorType(raw["type"])
            category = ErrorCategory(raw["category"])
            rule = ClassificationRule(
                pattern=str(raw["pattern"]),
                type=error_type,
                category=category,
                severity=ErrorSeverity(raw.get("severity", CATEGORY_SEVERITY[category].value)),
                action=RecoveryAction(raw.get("action", TYPE_ACTION[error_type].value)),
            )
            re.compile(rule.pattern)
        except (KeyError, ValueError, re.error) as error:
            raise ValueError(f"Invalid classification rule in {path}: {raw!r}") from error
        rules.append(rule)
    logger.info("Loaded %d classification rules from %s", len(rules), path)
    return tuple(rules)


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__
