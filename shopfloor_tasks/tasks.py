"""Task persistence and worker directory collaborators used by the engine.

Both classes work inside one :class:`~shopfloor_tasks.repository.UnitOfWork`
and one :class:`~shopfloor_tasks.domain.RequestContext`; records belonging to
another tenant are reported as missing.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Collection, Iterable, List, Optional, Sequence
from uuid import uuid4

from .domain import (
    Assignment,
    AssignmentMethod,
    AssignmentStatus,
    ReassignmentRecord,
    RequestContext,
    Task,
    TaskPriority,
    TaskStatus,
    TERMINAL_STATUSES,
    Worker,
    WorkerLoad,
    ensure_transition,
    utcnow,
)
from .errors import InvalidStateError, NotFoundError, ValidationError
from .graph import DependencyGraph
from .repository import RecordNotFoundError, Repository, UnitOfWork

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_WORKLOAD_STATUSES = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.READY})


class TaskService:
    """Loads and saves tasks and assignments for one tenant."""

    def __init__(
        self,
        uow: UnitOfWork,
        context: RequestContext,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._uow = uow
        self.context = context
        self.clock = clock

    # ------------------------------------------------------------------
    # Task queries
    # ------------------------------------------------------------------
    def find_task(self, task_id: str) -> Optional[Task]:
        task = self._uow.find_task(task_id)
        if task is None or task.tenant_id != self.context.tenant_id:
            return None
        return task

    def get_task(self, task_id: str) -> Task:
        task = self.find_task(task_id)
        if task is None:
            raise NotFoundError(f"Task with ID {task_id!r} not found")
        return task

    def tenant_tasks(self, predicate: Optional[Callable[[Task], bool]] = None) -> List[Task]:
        tenant_id = self.context.tenant_id
        return self._uow.find_tasks(
            lambda task: task.tenant_id == tenant_id
            and (predicate is None or predicate(task))
        )

    def scope_tasks(self, work_order_id: str) -> List[Task]:
        return self.tenant_tasks(lambda task: task.work_order_id == work_order_id)

    def build_graph(self, work_order_id: str) -> DependencyGraph:
        return DependencyGraph.build(self.scope_tasks(work_order_id))

    def dependencies_complete(
        self, task: Task, *, assume_completed: Collection[str] = ()
    ) -> bool:
        for dependency_id in task.dependency_ids:
            if dependency_id in assume_completed:
                continue
            dependency = self.find_task(dependency_id)
            if dependency is None or dependency.status != TaskStatus.COMPLETED:
                return False
        return True

    # ------------------------------------------------------------------
    # Task mutations
    # ------------------------------------------------------------------
    def save(self, task: Task) -> Task:
        return self._uow.save_task(task)

    def create_task(
        self,
        work_order_id: str,
        name: str,
        *,
        task_number: Optional[str] = None,
        estimated_hours: float = 0.0,
        priority: TaskPriority = TaskPriority.NORMAL,
        target_quantity: float = 0.0,
        due_date: Optional[datetime] = None,
        work_center_id: Optional[str] = None,
        required_skills: Sequence[str] = (),
        description: str = "",
        scheduled_start: Optional[datetime] = None,
        scheduled_end: Optional[datetime] = None,
    ) -> Task:
        if not name:
            raise ValidationError("A task needs a name")
        if estimated_hours < 0:
            raise ValidationError("Estimated hours must not be negative")
        if target_quantity < 0:
            raise ValidationError("Target quantity must not be negative")
        task_id = str(uuid4())
        task = Task(
            id=task_id,
            tenant_id=self.context.tenant_id,
            work_order_id=work_order_id,
            task_number=task_number or f"T-{task_id[:8].upper()}",
            name=name,
            estimated_hours=float(estimated_hours),
            priority=priority,
            target_quantity=float(target_quantity),
            due_date=due_date,
            work_center_id=work_center_id,
            required_skills=tuple(dict.fromkeys(required_skills)),
            description=description,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
            created_at=self.clock(),
        )
        return self.save(task)

    def transition_status(self, task: Task, target: TaskStatus) -> Task:
        """Apply a caller-requested status change after validating it."""

        ensure_transition(task.status, target)
        if target == TaskStatus.READY and not self.dependencies_complete(task):
            raise InvalidStateError(
                f"Task {task.task_number} cannot become ready before its dependencies complete"
            )
        now = self.clock()
        task.status = target
        if target == TaskStatus.IN_PROGRESS and task.started_at is None:
            task.started_at = now
        if target == TaskStatus.COMPLETED:
            task.completed_at = now
            task.progress_percentage = 100
        active = self.active_assignment(task.id)
        if active is not None:
            if target == TaskStatus.IN_PROGRESS:
                active.status = AssignmentStatus.IN_PROGRESS
                self._uow.save_assignment(active)
            elif target == TaskStatus.COMPLETED:
                active.status = AssignmentStatus.COMPLETED
                active.completed_at = now
                self._uow.save_assignment(active)
        return self.save(task)

    def record_progress(
        self,
        task: Task,
        completed_quantity: float,
        rejected_quantity: Optional[float] = None,
    ) -> Task:
        if completed_quantity < 0 or (rejected_quantity or 0) < 0:
            raise ValidationError("Quantities must not be negative")
        if task.status in TERMINAL_STATUSES:
            raise InvalidStateError(f"Task {task.task_number} is already closed")
        task.completed_quantity = float(completed_quantity)
        if rejected_quantity is not None:
            task.rejected_quantity = float(rejected_quantity)
        if task.target_quantity > 0:
            task.progress_percentage = min(
                100, round(task.completed_quantity / task.target_quantity * 100)
            )
        return self.save(task)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------
    def assignments_for(self, task_id: str) -> List[Assignment]:
        tenant_id = self.context.tenant_id
        assignments = self._uow.find_assignments(
            lambda item: item.task_id == task_id and item.tenant_id == tenant_id
        )
        assignments.sort(key=lambda item: item.assigned_at, reverse=True)
        return assignments

    def tenant_assignments(self) -> List[Assignment]:
        tenant_id = self.context.tenant_id
        return self._uow.find_assignments(lambda item: item.tenant_id == tenant_id)

    def active_assignment(self, task_id: str) -> Optional[Assignment]:
        for assignment in self.assignments_for(task_id):
            if assignment.is_active:
                return assignment
        return None

    def assign_task(
        self,
        task: Task,
        worker: Worker,
        *,
        method: AssignmentMethod = AssignmentMethod.MANUAL,
        notes: str = "",
        reason: Optional[str] = None,
        priority: Optional[int] = None,
        skill_match_score: Optional[float] = None,
        worker_workload: Optional[int] = None,
    ) -> Assignment:
        """Create the active assignment, superseding the current one if any."""

        if task.status in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Task {task.task_number} is {task.status.value} and cannot be assigned"
            )
        current = self.active_assignment(task.id)
        if current is not None and current.worker_id == worker.id:
            return current
        now = self.clock()
        if current is not None:
            current.status = AssignmentStatus.REASSIGNED
            current.reassignment_history.append(
                ReassignmentRecord(
                    from_worker_id=current.worker_id,
                    to_worker_id=worker.id,
                    reassigned_at=now,
                    reassigned_by=self.context.user_id,
                    reason=reason or notes or "Reassigned",
                )
            )
            self._uow.save_assignment(current)
        if priority is None:
            if current is not None:
                priority = current.priority
            else:
                priority = 100 if task.priority.is_urgent else 50
        assignment = Assignment(
            id=str(uuid4()),
            tenant_id=task.tenant_id,
            task_id=task.id,
            worker_id=worker.id,
            method=method,
            assigned_at=now,
            assigned_by=self.context.user_id,
            priority=priority,
            notes=notes,
            skill_match_score=skill_match_score,
            worker_workload=worker_workload,
        )
        self._uow.save_assignment(assignment)
        task.assigned_worker_id = worker.id
        self.save(task)
        return assignment

    def reassign_task(
        self,
        task: Task,
        worker: Worker,
        reason: str,
        *,
        method: AssignmentMethod = AssignmentMethod.MANUAL,
    ) -> Assignment:
        previous = task.assigned_worker_id
        assignment = self.assign_task(
            task,
            worker,
            method=method,
            notes=f"Reassigned: {reason}",
            reason=reason,
        )
        logger.info(
            "Task %s reassigned from %s to %s: %s",
            task.task_number,
            previous,
            worker.id,
            reason,
        )
        return assignment

    def release_assignments(self, task: Task, note: str) -> List[Assignment]:
        """Supersede every active assignment of ``task`` without a successor."""

        released: List[Assignment] = []
        for assignment in self.assignments_for(task.id):
            if assignment.is_active:
                assignment.status = AssignmentStatus.REASSIGNED
                assignment.notes = note
                self._uow.save_assignment(assignment)
                released.append(assignment)
        task.assigned_worker_id = None
        self.save(task)
        return released

    # ------------------------------------------------------------------
    # Round-robin cursors
    # ------------------------------------------------------------------
    def rotation_key(self, pool: str = "tasks") -> str:
        return f"{self.context.tenant_id}:{pool}"

    def rotation_cursor(self, pool: str = "tasks") -> Optional[str]:
        return self._uow.rotation_cursor(self.rotation_key(pool))

    def advance_rotation(self, worker_id: str, pool: str = "tasks") -> None:
        """Move the cursor; it is persisted only when the unit of work commits."""

        self._uow.stage_rotation(self.rotation_key(pool), worker_id)


class WorkerDirectory:
    """Read access to the workers of one tenant and their workload."""

    def __init__(self, workers: Repository[Worker], context: RequestContext) -> None:
        self._workers = workers
        self.context = context

    def get_worker(self, worker_id: str) -> Worker:
        try:
            worker = self._workers.get(worker_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(f"Worker with ID {worker_id!r} not found") from exc
        if worker.tenant_id != self.context.tenant_id:
            raise NotFoundError(f"Worker with ID {worker_id!r} not found")
        return worker

    def active_workers(self, exclude: Iterable[str] = ()) -> List[Worker]:
        excluded = set(exclude)
        workers = [
            worker
            for worker in self._workers
            if worker.tenant_id == self.context.tenant_id
            and worker.active
            and worker.id not in excluded
        ]
        workers.sort(key=lambda worker: worker.id)
        return workers

    def workloads(
        self,
        tasks: Iterable[Task],
        *,
        now: datetime,
        exclude: Iterable[str] = (),
    ) -> List[WorkerLoad]:
        """Workload snapshot for every active worker not in ``exclude``."""

        loads = {worker.id: WorkerLoad(worker=worker) for worker in self.active_workers(exclude)}
        for task in tasks:
            load = loads.get(task.assigned_worker_id or "")
            if load is None or task.status in TERMINAL_STATUSES:
                continue
            if task.status in _WORKLOAD_STATUSES:
                load.active_tasks += 1
                load.total_estimated_hours += task.estimated_hours or 0.0
            if task.priority.is_urgent:
                load.urgent_tasks += 1
            if task.due_date is not None and task.due_date < now:
                load.overdue_tasks += 1
        return list(loads.values())


__all__ = ["TaskService", "WorkerDirectory", "Clock"]
