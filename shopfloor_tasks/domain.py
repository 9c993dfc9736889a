"""Core data structures for the shop-floor task scheduling engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import FrozenSet, List, Mapping, Optional, Set, Tuple

from .errors import InvalidStateError


def utcnow() -> datetime:
    """Naive UTC timestamp used throughout the engine."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus(str, Enum):
    """Lifecycle stages for a shop-floor task."""

    PENDING = "Pending"
    READY = "Ready"
    IN_PROGRESS = "In Progress"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class TaskPriority(IntEnum):
    """Ordered priority levels; URGENT and CRITICAL count as urgent work."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4
    CRITICAL = 5

    @property
    def label(self) -> str:
        return {
            TaskPriority.LOW: "Low",
            TaskPriority.NORMAL: "Normal",
            TaskPriority.HIGH: "High",
            TaskPriority.URGENT: "Urgent",
            TaskPriority.CRITICAL: "Critical",
        }[self]

    @property
    def is_urgent(self) -> bool:
        return self >= TaskPriority.URGENT


class AssignmentStatus(str, Enum):
    """Lifecycle of a worker-task pairing."""

    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    REASSIGNED = "Reassigned"


class AssignmentMethod(str, Enum):
    """How an assignment was created."""

    MANUAL = "manual"
    AUTO_SKILL_BASED = "auto_skill_based"
    AUTO_WORKLOAD = "auto_workload"
    AUTO_ROUND_ROBIN = "auto_round_robin"
    AUTO_PRIORITY = "auto_priority"
    AUTO_LOCATION = "auto_location"


TERMINAL_STATUSES: FrozenSet[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.CANCELLED}
)
OPEN_STATUSES: FrozenSet[TaskStatus] = frozenset(
    {TaskStatus.PENDING, TaskStatus.READY, TaskStatus.IN_PROGRESS}
)

STATUS_TRANSITIONS: Mapping[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY, TaskStatus.CANCELLED}),
    TaskStatus.READY: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.PAUSED, TaskStatus.COMPLETED, TaskStatus.FAILED}
    ),
    TaskStatus.PAUSED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.FAILED: frozenset({TaskStatus.READY, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def ensure_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Raise ``InvalidStateError`` unless ``current -> target`` is legal."""

    if target not in STATUS_TRANSITIONS[current]:
        raise InvalidStateError(
            f"Invalid status transition from {current.value} to {target.value}"
        )


@dataclass(slots=True, frozen=True)
class RequestContext:
    """Tenant and acting user for a single engine call."""

    tenant_id: str = "default"
    user_id: str = "system"


@dataclass(slots=True)
class Task:
    """A unit of schedulable work and node of the dependency graph."""

    id: str
    tenant_id: str
    work_order_id: str
    task_number: str
    name: str
    estimated_hours: float = 0.0
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    target_quantity: float = 0.0
    completed_quantity: float = 0.0
    rejected_quantity: float = 0.0
    progress_percentage: int = 0
    assigned_worker_id: Optional[str] = None
    work_center_id: Optional[str] = None
    due_date: Optional[datetime] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    required_skills: Tuple[str, ...] = tuple()
    dependency_ids: Set[str] = field(default_factory=set)
    description: str = ""
    notes: str = ""
    split_from_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # bumped on every commit; a stale copy cannot be written back
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class Worker:
    """A shop-floor worker that tasks can be assigned to."""

    id: str
    tenant_id: str
    name: str
    active: bool = True
    skills: Tuple[str, ...] = tuple()
    work_center_ids: Tuple[str, ...] = tuple()


@dataclass(slots=True)
class ReassignmentRecord:
    """Audit entry written when an assignment is superseded."""

    from_worker_id: str
    to_worker_id: str
    reassigned_at: datetime
    reassigned_by: str
    reason: str


@dataclass(slots=True)
class Assignment:
    """Worker-task pairing; superseded rather than deleted on reassignment."""

    id: str
    tenant_id: str
    task_id: str
    worker_id: str
    status: AssignmentStatus = AssignmentStatus.PENDING
    method: AssignmentMethod = AssignmentMethod.MANUAL
    assigned_at: datetime = field(default_factory=utcnow)
    assigned_by: str = "system"
    priority: int = 50
    notes: str = ""
    skill_match_score: Optional[float] = None
    worker_workload: Optional[int] = None
    completed_at: Optional[datetime] = None
    reassignment_history: List[ReassignmentRecord] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status not in {
            AssignmentStatus.COMPLETED,
            AssignmentStatus.REASSIGNED,
        }


@dataclass(slots=True)
class SubtaskSpec:
    """Description of one subtask produced by splitting a task."""

    name: str
    estimated_hours: float
    target_quantity: float
    description: str = ""
    assign_to_worker_id: Optional[str] = None
    priority: Optional[TaskPriority] = None


@dataclass(slots=True)
class ReassignmentResult:
    """Per-task outcome of a batch reassignment."""

    task_id: str
    new_assignee_id: Optional[str]
    reason: str
    success: bool
    previous_assignee_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class WorkerLoad:
    """Point-in-time workload figures for one worker."""

    worker: Worker
    active_tasks: int = 0
    total_estimated_hours: float = 0.0
    urgent_tasks: int = 0
    overdue_tasks: int = 0

    @property
    def worker_id(self) -> str:
        return self.worker.id

    def workload_score(self, weight: float = 10.0) -> float:
        return self.active_tasks * weight


@dataclass(slots=True)
class RoundRobinState:
    """Persisted rotation cursor for the round-robin strategy."""

    id: str
    last_worker_id: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)


__all__ = [
    "utcnow",
    "TaskStatus",
    "TaskPriority",
    "AssignmentStatus",
    "AssignmentMethod",
    "TERMINAL_STATUSES",
    "OPEN_STATUSES",
    "STATUS_TRANSITIONS",
    "ensure_transition",
    "RequestContext",
    "Task",
    "Worker",
    "ReassignmentRecord",
    "Assignment",
    "SubtaskSpec",
    "ReassignmentResult",
    "WorkerLoad",
    "RoundRobinState",
]
