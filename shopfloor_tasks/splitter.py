"""Decomposition of one task into a chain of subtasks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
from uuid import uuid4

from .assignment import AutoAssigner
from .config import EngineOptions
from .domain import AssignmentMethod, SubtaskSpec, Task, TaskStatus
from .errors import InvalidStateError, ValidationError
from .events import TASK_SPLIT, Outcome
from .readiness import ReadinessController
from .tasks import TaskService, WorkerDirectory

logger = logging.getLogger(__name__)

_SPLITTABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.READY})


@dataclass(slots=True)
class SplitResult:
    """The cancelled original and its subtasks in execution order."""

    original: Task
    subtasks: List[Task] = field(default_factory=list)


def _validate_specs(specs: Sequence[SubtaskSpec]) -> None:
    if not specs:
        raise ValidationError("A split needs at least one subtask")
    for index, spec in enumerate(specs, start=1):
        if not spec.name:
            raise ValidationError(f"Subtask {index} needs a name")
        if spec.estimated_hours < 0:
            raise ValidationError(f"Subtask {index} has negative estimated hours")
        if spec.target_quantity < 0:
            raise ValidationError(f"Subtask {index} has a negative target quantity")


class TaskSplitter:
    """Replaces a not-yet-started task by subtasks, rewiring its edges."""

    def __init__(
        self,
        tasks: TaskService,
        readiness: ReadinessController,
        directory: WorkerDirectory,
        assigner: AutoAssigner,
        options: EngineOptions,
    ) -> None:
        self.tasks = tasks
        self.readiness = readiness
        self.directory = directory
        self.assigner = assigner
        self.options = options

    def split_task(
        self,
        task_id: str,
        subtasks: Sequence[SubtaskSpec],
        *,
        preserve_dependencies: bool = True,
        reason: str = "",
        auto_assign: Optional[AssignmentMethod] = None,
    ) -> Outcome[SplitResult]:
        """Split ``task_id`` into ``subtasks`` executed one after another.

        With ``preserve_dependencies`` the first subtask inherits the original
        dependencies; every later subtask depends on its predecessor. Tasks
        that depended on the original depend on the last subtask afterwards.
        """

        original = self.tasks.get_task(task_id)
        if original.status not in _SPLITTABLE_STATUSES:
            raise InvalidStateError(
                f"Can only split tasks that have not started; {original.task_number} "
                f"is {original.status.value}"
            )
        _validate_specs(subtasks)
        assignees = {
            spec.assign_to_worker_id: self.directory.get_worker(spec.assign_to_worker_id)
            for spec in subtasks
            if spec.assign_to_worker_id
        }

        total_quantity = sum(spec.target_quantity for spec in subtasks)
        if abs(total_quantity - original.target_quantity) > self.options.quantity_tolerance:
            logger.warning(
                "Split tasks quantity (%s) doesn't match original (%s)",
                total_quantity,
                original.target_quantity,
            )

        graph = self.tasks.build_graph(original.work_order_id)
        dependent_ids = graph.dependents_of(original.id)

        created: List[Task] = []
        previous: Optional[Task] = None
        for index, spec in enumerate(subtasks, start=1):
            subtask = Task(
                id=str(uuid4()),
                tenant_id=original.tenant_id,
                work_order_id=original.work_order_id,
                task_number=f"{original.task_number}-{index:02d}",
                name=spec.name,
                estimated_hours=float(spec.estimated_hours),
                priority=spec.priority or original.priority,
                target_quantity=float(spec.target_quantity),
                work_center_id=original.work_center_id,
                due_date=original.due_date,
                scheduled_start=original.scheduled_start,
                scheduled_end=original.scheduled_end,
                required_skills=original.required_skills,
                description=spec.description or original.description,
                split_from_id=original.id,
                created_at=self.tasks.clock(),
            )
            if previous is not None:
                subtask.dependency_ids = {previous.id}
            elif preserve_dependencies:
                subtask.dependency_ids = set(original.dependency_ids)
            self.tasks.save(subtask)
            created.append(subtask)
            previous = subtask

        last = created[-1]
        for dependent_id in dependent_ids:
            dependent = self.tasks.get_task(dependent_id)
            dependent.dependency_ids.discard(original.id)
            dependent.dependency_ids.add(last.id)
            self.tasks.save(dependent)

        original.status = TaskStatus.CANCELLED
        original.notes = (
            f"Split into {len(created)} subtasks. "
            f"Reason: {reason or 'Task division required'}"
        )
        self.tasks.save(original)
        self.tasks.release_assignments(original, "Task was split into subtasks")

        outcome: Outcome[SplitResult] = Outcome(SplitResult(original=original, subtasks=created))
        for subtask, spec in zip(created, subtasks):
            if spec.assign_to_worker_id:
                self.tasks.assign_task(
                    subtask,
                    assignees[spec.assign_to_worker_id],
                    notes=f"Split from task {original.task_number}",
                )
            elif auto_assign is not None:
                outcome.absorb(self.assigner.auto_assign(subtask, auto_assign))
        for subtask in created:
            outcome.absorb(self.readiness.update_readiness(subtask.id))

        outcome.emit(TASK_SPLIT, original=original, subtasks=list(created), reason=reason)
        logger.info("Task %s split into %d subtasks", original.task_number, len(created))
        return outcome


__all__ = ["SplitResult", "TaskSplitter"]
