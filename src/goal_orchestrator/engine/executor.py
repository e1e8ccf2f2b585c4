"""Agent executor interface used by the orchestrator engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from goal_orchestrator.planning.models import Task


class AgentOutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass(slots=True)
class AgentResources:
    cpu_usage_percent: float | None = None
    memory_usage_mb: float | None = None


@dataclass(slots=True)
class AgentOutcome:
    """Result of one agent invocation.

    A `partial` outcome carries whatever output the agent produced before it
    stopped; the engine treats it as a failure of the task.
    """

    status: AgentOutcomeStatus
    output: Any = None
    error: str | None = None
    resources: AgentResources = field(default_factory=AgentResources)


class AgentExecutor(Protocol):
    """Protocol implemented by agent runners."""

    def execute(self, task: Task) -> AgentOutcome:
        """Run `task` and return its outcome; raising is treated as a failed attempt."""


class DryRunAgentExecutor:
    """Executor that does no work and reports every task as successful."""

    def execute(self, task: Task) -> AgentOutcome:
        return AgentOutcome(
            status=AgentOutcomeStatus.SUCCESS,
            output={"task_id": task.id, "agent_type": task.agent_type.value, "dry_run": True},
        )


class AgentOutcomeError(RuntimeError):
    """Raised for a non-successful outcome so retry and classification can see it."""

    def __init__(self, task: Task, outcome: AgentOutcome) -> None:
        message = outcome.error or (
            f"Agent {task.agent_type.value} returned a {outcome.status.value} outcome"
        )
        super().__init__(message)
        self.task_id = task.id
        self.outcome = outcome
