"""Batch reassignment: bulk moves, unavailability, balancing and emergencies.

Every batch processes its tasks one at a time and reports a
:class:`~shopfloor_tasks.domain.ReassignmentResult` per task. A failure on one
task is logged and recorded; it never aborts the rest of the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .assignment import AutoAssigner, has_required_skills
from .config import EngineOptions
from .domain import (
    AssignmentMethod,
    OPEN_STATUSES,
    ReassignmentResult,
    Task,
    TaskPriority,
    TaskStatus,
    Worker,
)
from .errors import TaskEngineError, ValidationError
from .events import (
    EMERGENCY_REDISTRIBUTION_COMPLETED,
    TASK_REASSIGNED,
    TASKS_BULK_REASSIGNED,
    WORKER_UNAVAILABILITY_HANDLED,
    WORKLOAD_BALANCED,
    Outcome,
)
from .tasks import TaskService, WorkerDirectory

logger = logging.getLogger(__name__)

Results = List[ReassignmentResult]

REDISTRIBUTION_STRATEGIES: Dict[str, AssignmentMethod] = {
    "workload": AssignmentMethod.AUTO_WORKLOAD,
    "skills": AssignmentMethod.AUTO_SKILL_BASED,
    "priority": AssignmentMethod.AUTO_PRIORITY,
}

_MOVABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.READY})


def _urgency_key(task: Task) -> Tuple[int, int, datetime]:
    """Priority descending, then due date ascending with undated tasks last."""

    return (-int(task.priority), task.due_date is None, task.due_date or datetime.max)


def _movable_key(task: Task) -> Tuple[int, int, float]:
    """Priority ascending, then tasks due latest first; undated tasks lead."""

    due = -task.due_date.timestamp() if task.due_date is not None else 0.0
    return (int(task.priority), task.due_date is not None, due)


@dataclass(slots=True)
class _WorkerStat:
    worker_id: str
    task_count: int = 0
    total_hours: float = 0.0


def resolve_strategy(strategy: Union[str, AssignmentMethod]) -> AssignmentMethod:
    if isinstance(strategy, AssignmentMethod):
        return strategy
    try:
        return REDISTRIBUTION_STRATEGIES[strategy]
    except KeyError as exc:
        raise ValidationError(f"Unknown redistribution strategy {strategy!r}") from exc


class ReassignmentOrchestrator:
    def __init__(
        self,
        tasks: TaskService,
        directory: WorkerDirectory,
        assigner: AutoAssigner,
        options: EngineOptions,
    ) -> None:
        self.tasks = tasks
        self.directory = directory
        self.assigner = assigner
        self.options = options

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------
    def _reassign(
        self,
        outcome: Outcome[Results],
        task: Task,
        worker: Worker,
        reason: str,
        *,
        method: AssignmentMethod = AssignmentMethod.MANUAL,
        result_reason: Optional[str] = None,
    ) -> ReassignmentResult:
        previous = task.assigned_worker_id
        try:
            assignment = self.tasks.reassign_task(task, worker, reason, method=method)
        except TaskEngineError as exc:
            logger.error("Failed to reassign task %s: %s", task.id, exc)
            result = ReassignmentResult(
                task_id=task.id,
                previous_assignee_id=previous,
                new_assignee_id=worker.id,
                reason=result_reason or reason,
                success=False,
                error=str(exc),
            )
        else:
            result = ReassignmentResult(
                task_id=task.id,
                previous_assignee_id=previous,
                new_assignee_id=worker.id,
                reason=result_reason or reason,
                success=True,
            )
            outcome.emit(
                TASK_REASSIGNED,
                task=task,
                assignment=assignment,
                previous_worker_id=previous,
                reason=reason,
            )
        outcome.result.append(result)
        return result

    @staticmethod
    def _succeeded(results: Iterable[ReassignmentResult]) -> int:
        return sum(1 for result in results if result.success)

    # ------------------------------------------------------------------
    # Bulk reassignment
    # ------------------------------------------------------------------
    def bulk_reassign_tasks(
        self,
        task_ids: Sequence[str],
        to_worker_id: str,
        reason: str,
        *,
        from_worker_id: Optional[str] = None,
    ) -> Outcome[Results]:
        """Move the listed tasks to ``to_worker_id``; one result per requested id."""

        target = self.directory.get_worker(to_worker_id)
        outcome: Outcome[Results] = Outcome([])

        for task_id in task_ids:
            task = self.tasks.find_task(task_id)
            failure: Optional[str] = None
            if task is None:
                failure = "Task not found"
            elif from_worker_id is not None and task.assigned_worker_id != from_worker_id:
                failure = f"Task is not assigned to worker {from_worker_id}"
            elif task.is_terminal:
                failure = "Task is already completed or cancelled"
            if failure is not None:
                logger.warning("Skipping task %s in bulk reassignment: %s", task_id, failure)
                outcome.result.append(
                    ReassignmentResult(
                        task_id=task_id,
                        previous_assignee_id=task.assigned_worker_id if task else None,
                        new_assignee_id=target.id,
                        reason=reason,
                        success=False,
                        error=failure,
                    )
                )
                continue
            result = self._reassign(outcome, task, target, reason)
            if result.success:
                logger.info("Task %s reassigned to %s", task.task_number, target.id)

        outcome.emit(
            TASKS_BULK_REASSIGNED,
            from_worker_id=from_worker_id,
            to_worker_id=target.id,
            task_count=self._succeeded(outcome.result),
            reason=reason,
            reassigned_by=self.tasks.context.user_id,
        )
        return outcome

    # ------------------------------------------------------------------
    # Worker unavailability
    # ------------------------------------------------------------------
    def handle_worker_unavailability(
        self,
        worker_id: str,
        reason: str,
        strategy: Union[str, AssignmentMethod] = "workload",
    ) -> Outcome[Results]:
        method = resolve_strategy(strategy)
        worker = self.directory.get_worker(worker_id)
        open_tasks = self.tasks.tenant_tasks(
            lambda task: task.assigned_worker_id == worker.id and not task.is_terminal
        )
        open_tasks.sort(key=_urgency_key)
        outcome: Outcome[Results] = Outcome([])
        full_reason = f"Worker unavailable: {reason}"

        if not open_tasks:
            logger.info("No active tasks found for worker %s", worker.id)

        for task in open_tasks:
            selection = self.assigner.find(method, task, exclude={worker.id})
            if selection is None:
                logger.warning("No suitable replacement found for task %s", task.task_number)
                continue
            self._reassign(outcome, task, selection.worker, full_reason, method=method)

        outcome.emit(
            WORKER_UNAVAILABILITY_HANDLED,
            worker_id=worker.id,
            tasks_reassigned=self._succeeded(outcome.result),
            total_tasks=len(open_tasks),
            reason=reason,
        )
        return outcome

    # ------------------------------------------------------------------
    # Workload balancing
    # ------------------------------------------------------------------
    def balance_workload(
        self,
        *,
        work_center_id: Optional[str] = None,
        max_tasks_per_worker: Optional[int] = None,
        consider_skills: bool = False,
        time_window: Optional[Tuple[datetime, datetime]] = None,
    ) -> Outcome[Results]:
        """Greedily move excess tasks from overloaded to underloaded workers."""

        limit = max_tasks_per_worker or self.options.max_tasks_per_worker
        if limit < 1:
            raise ValidationError("max_tasks_per_worker must be at least 1")

        def in_scope(task: Task) -> bool:
            if task.status not in OPEN_STATUSES or task.assigned_worker_id is None:
                return False
            if work_center_id is not None and task.work_center_id != work_center_id:
                return False
            if time_window is not None:
                start, end = time_window
                if task.scheduled_start is None or task.scheduled_end is None:
                    return False
                if task.scheduled_start < start or task.scheduled_end > end:
                    return False
            return True

        scoped = self.tasks.tenant_tasks(in_scope)
        workers = {worker.id: worker for worker in self.directory.active_workers()}
        stats: Dict[str, _WorkerStat] = {
            worker_id: _WorkerStat(worker_id) for worker_id in workers
        }
        for task in scoped:
            stat = stats.setdefault(task.assigned_worker_id, _WorkerStat(task.assigned_worker_id))
            stat.task_count += 1
            stat.total_hours += task.estimated_hours or 0.0

        overloaded = sorted(
            (stat for stat in stats.values() if stat.task_count > limit),
            key=lambda stat: (-stat.task_count, stat.worker_id),
        )
        underloaded = [
            stats[worker_id] for worker_id in sorted(workers) if stats[worker_id].task_count < limit
        ]
        outcome: Outcome[Results] = Outcome([])

        if not overloaded or not underloaded:
            logger.info("Workload is already balanced or no workers available for balancing")
        else:
            for source in overloaded:
                movable = [
                    task
                    for task in scoped
                    if task.assigned_worker_id == source.worker_id
                    and task.status in _MOVABLE_STATUSES
                ]
                movable.sort(key=_movable_key)
                for task in movable[: source.task_count - limit]:
                    candidates = [
                        stat
                        for stat in underloaded
                        if stat.task_count < limit
                        and stat.task_count + 1 < source.task_count
                        and (
                            not consider_skills
                            or has_required_skills(task, workers[stat.worker_id])
                        )
                    ]
                    if not candidates:
                        if consider_skills:
                            continue
                        break
                    candidates.sort(
                        key=lambda stat: (stat.task_count, stat.total_hours, stat.worker_id)
                    )
                    target = candidates[0]
                    result = self._reassign(
                        outcome,
                        task,
                        workers[target.worker_id],
                        "Workload balancing",
                        method=AssignmentMethod.AUTO_WORKLOAD,
                    )
                    if result.success:
                        target.task_count += 1
                        target.total_hours += task.estimated_hours or 0.0
                        source.task_count -= 1
                        source.total_hours -= task.estimated_hours or 0.0

        outcome.emit(
            WORKLOAD_BALANCED,
            tasks_reassigned=self._succeeded(outcome.result),
            work_center_id=work_center_id,
        )
        return outcome

    # ------------------------------------------------------------------
    # Emergency redistribution
    # ------------------------------------------------------------------
    def emergency_redistribution(
        self,
        *,
        priority: Optional[TaskPriority] = None,
        due_within_hours: Optional[float] = None,
        work_center_id: Optional[str] = None,
    ) -> Outcome[Results]:
        deadline = (
            self.tasks.clock() + timedelta(hours=due_within_hours)
            if due_within_hours
            else None
        )

        def matches(task: Task) -> bool:
            if task.status not in OPEN_STATUSES:
                return False
            if priority is not None and task.priority != priority:
                return False
            if deadline is not None and (task.due_date is None or task.due_date > deadline):
                return False
            if work_center_id is not None and task.work_center_id != work_center_id:
                return False
            return True

        urgent = self.tasks.tenant_tasks(matches)
        urgent.sort(key=_urgency_key)
        outcome: Outcome[Results] = Outcome([])

        for task in urgent:
            selection = self.assigner.find(AssignmentMethod.AUTO_PRIORITY, task)
            if selection is None:
                logger.warning("No worker available for urgent task %s", task.task_number)
                continue
            if task.assigned_worker_id == selection.worker.id:
                continue
            self._reassign(
                outcome,
                task,
                selection.worker,
                "Emergency redistribution - urgent task",
                method=AssignmentMethod.AUTO_PRIORITY,
                result_reason="Emergency redistribution",
            )

        outcome.emit(
            EMERGENCY_REDISTRIBUTION_COMPLETED,
            tasks_reassigned=self._succeeded(outcome.result),
            criteria={
                "priority": priority,
                "due_within_hours": due_within_hours,
                "work_center_id": work_center_id,
            },
        )
        return outcome


__all__ = [
    "REDISTRIBUTION_STRATEGIES",
    "resolve_strategy",
    "ReassignmentOrchestrator",
]
