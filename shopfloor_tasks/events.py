"""Domain events emitted by the engine and helpers for dispatching them.

Engine components never publish events themselves; every mutating operation
returns an :class:`Outcome` carrying its result and the events it produced,
and the caller decides when (and where) to dispatch them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from .domain import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEPENDENCY_ADDED = "task.dependency-added"
DEPENDENCY_REMOVED = "task.dependency-removed"
TASK_READY = "task.ready"
TASK_SPLIT = "task.split"
TASK_STATUS_CHANGED = "task.status-changed"
TASK_ASSIGNED = "task.assigned"
TASK_REASSIGNED = "task.reassigned"
TASKS_BULK_REASSIGNED = "tasks.bulk-reassigned"
WORKER_UNAVAILABILITY_HANDLED = "worker.unavailability-handled"
WORKLOAD_BALANCED = "workload.balanced"
EMERGENCY_REDISTRIBUTION_COMPLETED = "emergency.redistribution-completed"


@dataclass(slots=True)
class DomainEvent:
    """A named event carrying the affected entities."""

    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class Outcome(Generic[T]):
    """Result of an engine operation together with the events it produced."""

    result: T
    events: List[DomainEvent] = field(default_factory=list)

    def emit(self, name: str, **payload: Any) -> DomainEvent:
        event = DomainEvent(name=name, payload=payload)
        self.events.append(event)
        return event

    def absorb(self, other: "Outcome[Any]") -> Any:
        """Take over the events of a nested outcome and return its result."""

        self.events.extend(other.events)
        return other.result

    def names(self) -> List[str]:
        return [event.name for event in self.events]


EventSink = Callable[[DomainEvent], None]


class EventLog:
    """In-process event sink that keeps dispatched events for inspection."""

    def __init__(self, limit: int = 1000) -> None:
        self._events: List[DomainEvent] = []
        self._limit = max(limit, 1)

    def __call__(self, event: DomainEvent) -> None:
        logger.debug("Dispatching event %s", event.name)
        self._events.append(event)
        if len(self._events) > self._limit:
            del self._events[: len(self._events) - self._limit]

    def __len__(self) -> int:
        return len(self._events)

    def list(self, name: Optional[str] = None) -> List[DomainEvent]:
        if name is None:
            return list(self._events)
        return [event for event in self._events if event.name == name]

    def clear(self) -> None:
        self._events.clear()


def dispatch(events: Iterable[DomainEvent], sink: Optional[EventSink]) -> None:
    """Deliver events to ``sink``; receiver failures are logged, not raised."""

    if sink is None:
        return
    for event in events:
        try:
            sink(event)
        except Exception:  # pragma: no cover - receiver side effects
            logger.exception("Event sink failed for %s", event.name)


__all__ = [
    "DEPENDENCY_ADDED",
    "DEPENDENCY_REMOVED",
    "TASK_READY",
    "TASK_SPLIT",
    "TASK_STATUS_CHANGED",
    "TASK_ASSIGNED",
    "TASK_REASSIGNED",
    "TASKS_BULK_REASSIGNED",
    "WORKER_UNAVAILABILITY_HANDLED",
    "WORKLOAD_BALANCED",
    "EMERGENCY_REDISTRIBUTION_COMPLETED",
    "DomainEvent",
    "Outcome",
    "EventSink",
    "EventLog",
    "dispatch",
]
