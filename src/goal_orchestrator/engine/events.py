"""Engine events and the sinks they are published to."""

from __future__ import annotations

import queue
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from goal_orchestrator.storage.common import utc_now


class EventType(str, Enum):
    RECOMMENDATION = "recommendation"
    AGENT_SWITCHED = "agent-switched"
    TASK_STARTED = "task-started"
    TASK_COMPLETED = "task-completed"
    TASK_FAILED = "task-failed"


@dataclass(slots=True)
class OrchestratorEvent:
    event_type: EventType
    task_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


class EventSink(Protocol):
    """Receiver of engine events; called from worker threads."""

    def publish(self, event: OrchestratorEvent) -> None: ...


class QueueEventChannel:
    """Thread-safe sink that buffers events until they are drained."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: queue.Queue[OrchestratorEvent] = queue.Queue(maxsize=maxsize)

    def publish(self, event: OrchestratorEvent) -> None:
        self._queue.put(event)

    def drain(self) -> list[OrchestratorEvent]:
        events: list[OrchestratorEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class CallbackEventSink:
    """Forward every event to a plain callable, e.g. a CLI printer."""

    def __init__(self, callback: Callable[[OrchestratorEvent], None]) -> None:
        self._callback = callback

    def publish(self, event: OrchestratorEvent) -> None:
        self._callback(event)
