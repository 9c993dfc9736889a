"""Task scheduling and dependency engine for shop-floor manufacturing.

This package models work-order tasks as nodes of a dependency graph, keeps
that graph acyclic, computes critical paths, cascades readiness as tasks
complete, splits tasks into subtasks and assigns or redistributes tasks across
workers using several heuristics.
"""

from .config import EngineOptions
from .domain import (
    Assignment,
    AssignmentMethod,
    AssignmentStatus,
    RequestContext,
    SubtaskSpec,
    Task,
    TaskPriority,
    TaskStatus,
    Worker,
)
from .errors import (
    ConflictError,
    CycleError,
    GraphLimitError,
    InvalidStateError,
    NotFoundError,
    TaskEngineError,
    ValidationError,
)
from .services import SchedulingService

__all__ = [
    "EngineOptions",
    "Assignment",
    "AssignmentMethod",
    "AssignmentStatus",
    "RequestContext",
    "SubtaskSpec",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "Worker",
    "ConflictError",
    "CycleError",
    "GraphLimitError",
    "InvalidStateError",
    "NotFoundError",
    "TaskEngineError",
    "ValidationError",
    "SchedulingService",
]
