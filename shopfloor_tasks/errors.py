"""Exception hierarchy raised by the task scheduling engine."""

from __future__ import annotations

from typing import List, Sequence


class TaskEngineError(RuntimeError):
    """Base exception for all engine errors."""


class ValidationError(TaskEngineError):
    """Raised for malformed input such as self or duplicate dependencies."""


class CycleError(TaskEngineError):
    """Raised when a dependency graph would contain or contains a cycle."""

    def __init__(self, message: str, cycles: Sequence[Sequence[str]] = ()) -> None:
        super().__init__(message)
        self.cycles: List[List[str]] = [list(cycle) for cycle in cycles]


class NotFoundError(TaskEngineError):
    """Raised when a task, dependency, or worker does not exist."""


class InvalidStateError(TaskEngineError):
    """Raised when an operation is not allowed in the current task state."""


class ConflictError(TaskEngineError):
    """Raised when a commit would overwrite a record changed since it was loaded."""


class GraphLimitError(ValidationError):
    """Raised when a graph exceeds the configured size or time budget."""


__all__ = [
    "TaskEngineError",
    "ValidationError",
    "CycleError",
    "NotFoundError",
    "InvalidStateError",
    "ConflictError",
    "GraphLimitError",
]
