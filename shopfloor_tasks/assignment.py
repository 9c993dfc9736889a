"""Worker selection strategies for task assignment.

:class:`AssignmentEngine` is pure: it ranks a snapshot of
:class:`~shopfloor_tasks.domain.WorkerLoad` values and never touches storage.
The round-robin cursor is passed in by the caller. :class:`AutoAssigner`
glues the engine to the task service and stages cursor moves on the unit of
work, so an operation that rolls back leaves the rotation where it was.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .domain import (
    Assignment,
    AssignmentMethod,
    Task,
    Worker,
    WorkerLoad,
)
from .errors import ValidationError
from .events import TASK_ASSIGNED, Outcome
from .tasks import TaskService, WorkerDirectory

logger = logging.getLogger(__name__)

SkillScorer = Callable[[Task, Worker], float]


def skill_coverage_score(task: Task, worker: Worker) -> float:
    """Percentage of the task's required skills the worker holds."""

    required = {skill.lower() for skill in task.required_skills}
    if not required:
        return 100.0
    held = {skill.lower() for skill in worker.skills}
    return 100.0 * len(required & held) / len(required)


def has_required_skills(task: Task, worker: Worker) -> bool:
    held = {skill.lower() for skill in worker.skills}
    return all(skill.lower() in held for skill in task.required_skills)


def rotate(worker_ids: Sequence[str], last_worker_id: Optional[str]) -> Optional[str]:
    """Next id after ``last_worker_id`` in sorted order, wrapping around."""

    ordered = sorted(worker_ids)
    if not ordered:
        return None
    if last_worker_id is None:
        return ordered[0]
    for worker_id in ordered:
        if worker_id > last_worker_id:
            return worker_id
    return ordered[0]


@dataclass(slots=True)
class Selection:
    """Worker picked by a strategy, with the score that decided it."""

    load: WorkerLoad
    method: AssignmentMethod
    score: float

    @property
    def worker(self) -> Worker:
        return self.load.worker


class AssignmentEngine:
    """Candidate ranking for the automatic assignment methods."""

    def __init__(
        self,
        *,
        capacity: int = 10,
        workload_weight: float = 10.0,
        skill_scorer: Optional[SkillScorer] = None,
    ) -> None:
        self.capacity = capacity
        self.workload_weight = workload_weight
        self.skill_scorer: SkillScorer = skill_scorer or skill_coverage_score
        self._strategies: Dict[AssignmentMethod, Callable[..., Optional[Selection]]] = {
            AssignmentMethod.AUTO_SKILL_BASED: self.best_skill_match,
            AssignmentMethod.AUTO_WORKLOAD: self.least_loaded,
            AssignmentMethod.AUTO_ROUND_ROBIN: self.next_in_rotation,
            AssignmentMethod.AUTO_PRIORITY: self.by_priority,
            AssignmentMethod.AUTO_LOCATION: self.nearest,
        }

    def eligible(self, loads: Iterable[WorkerLoad]) -> List[WorkerLoad]:
        """Active workers below the capacity ceiling, in id order."""

        candidates = [
            load
            for load in loads
            if load.worker.active and load.active_tasks < self.capacity
        ]
        candidates.sort(key=lambda load: load.worker_id)
        return candidates

    def select(
        self,
        method: AssignmentMethod,
        task: Task,
        loads: Iterable[WorkerLoad],
        *,
        last_worker_id: Optional[str] = None,
    ) -> Optional[Selection]:
        strategy = self._strategies.get(method)
        if strategy is None:
            raise ValidationError(f"Unsupported assignment method {method.value!r}")
        if method == AssignmentMethod.AUTO_ROUND_ROBIN:
            return strategy(task, loads, last_worker_id=last_worker_id)
        return strategy(task, loads)

    def best_skill_match(self, task: Task, loads: Iterable[WorkerLoad]) -> Optional[Selection]:
        scored = []
        for load in self.eligible(loads):
            score = float(self.skill_scorer(task, load.worker))
            if score > 0:
                scored.append((score, load))
        if not scored:
            return None
        scored.sort(
            key=lambda item: (
                -item[0],
                item[1].workload_score(self.workload_weight),
                item[1].worker_id,
            )
        )
        score, load = scored[0]
        logger.info(
            "Best skill match for task %s: worker %s with score %.1f",
            task.task_number,
            load.worker_id,
            score,
        )
        return Selection(load=load, method=AssignmentMethod.AUTO_SKILL_BASED, score=score)

    def least_loaded(self, task: Task, loads: Iterable[WorkerLoad]) -> Optional[Selection]:
        candidates = self.eligible(loads)
        if not candidates:
            return None
        candidates.sort(
            key=lambda load: (
                load.workload_score(self.workload_weight),
                load.total_estimated_hours,
                load.worker_id,
            )
        )
        load = candidates[0]
        logger.info(
            "Least loaded worker for task %s: %s with %d active tasks",
            task.task_number,
            load.worker_id,
            load.active_tasks,
        )
        return Selection(
            load=load,
            method=AssignmentMethod.AUTO_WORKLOAD,
            score=load.workload_score(self.workload_weight),
        )

    def next_in_rotation(
        self,
        task: Task,
        loads: Iterable[WorkerLoad],
        *,
        last_worker_id: Optional[str] = None,
    ) -> Optional[Selection]:
        candidates = {load.worker_id: load for load in self.eligible(loads)}
        worker_id = rotate(list(candidates), last_worker_id)
        if worker_id is None:
            return None
        logger.info("Round-robin assignment for task %s: worker %s", task.task_number, worker_id)
        return Selection(
            load=candidates[worker_id],
            method=AssignmentMethod.AUTO_ROUND_ROBIN,
            score=0.0,
        )

    def by_priority(self, task: Task, loads: Iterable[WorkerLoad]) -> Optional[Selection]:
        """Steer work away from workers already holding urgent tasks."""

        candidates = self.eligible(loads)
        if not candidates:
            return None

        def priority_score(load: WorkerLoad) -> int:
            return load.urgent_tasks * 10 + load.active_tasks

        candidates.sort(key=lambda load: (priority_score(load), load.worker_id))
        load = candidates[0]
        logger.info(
            "Priority-based assignment for task %s: worker %s with priority score %d",
            task.task_number,
            load.worker_id,
            priority_score(load),
        )
        return Selection(
            load=load,
            method=AssignmentMethod.AUTO_PRIORITY,
            score=float(priority_score(load)),
        )

    def nearest(self, task: Task, loads: Iterable[WorkerLoad]) -> Optional[Selection]:
        if not task.work_center_id:
            return None
        candidates = self.eligible(loads)
        if not candidates:
            return None
        local = [
            load for load in candidates if task.work_center_id in load.worker.work_center_ids
        ]
        if local:
            local.sort(
                key=lambda load: (load.workload_score(self.workload_weight), load.worker_id)
            )
            load = local[0]
        else:
            # nobody at this work center: first available worker
            load = candidates[0]
        logger.info("Location-based assignment for task %s: worker %s", task.task_number, load.worker_id)
        return Selection(load=load, method=AssignmentMethod.AUTO_LOCATION, score=0.0)


class AutoAssigner:
    """Runs an engine strategy against live workloads and records the result."""

    def __init__(
        self,
        engine: AssignmentEngine,
        tasks: TaskService,
        directory: WorkerDirectory,
    ) -> None:
        self.engine = engine
        self.tasks = tasks
        self.directory = directory

    def workloads(self, exclude: Iterable[str] = ()) -> List[WorkerLoad]:
        return self.directory.workloads(
            self.tasks.tenant_tasks(), now=self.tasks.clock(), exclude=exclude
        )

    def find(
        self,
        method: AssignmentMethod,
        task: Task,
        *,
        exclude: Iterable[str] = (),
    ) -> Optional[Selection]:
        if method != AssignmentMethod.AUTO_ROUND_ROBIN:
            return self.engine.select(method, task, self.workloads(exclude))
        selection = self.engine.select(
            method,
            task,
            self.workloads(exclude),
            last_worker_id=self.tasks.rotation_cursor(),
        )
        if selection is not None:
            self.tasks.advance_rotation(selection.worker.id)
        return selection

    def auto_assign(
        self, task: Task, method: AssignmentMethod
    ) -> Outcome[Optional[Assignment]]:
        logger.info("Auto-assigning task %s using %s", task.task_number, method.value)
        selection = self.find(method, task)
        if selection is None:
            logger.warning("No suitable worker found for task %s", task.task_number)
            return Outcome(None)
        assignment = self.tasks.assign_task(
            task,
            selection.worker,
            method=method,
            skill_match_score=float(self.engine.skill_scorer(task, selection.worker)),
            worker_workload=selection.load.active_tasks,
        )
        outcome: Outcome[Optional[Assignment]] = Outcome(assignment)
        outcome.emit(TASK_ASSIGNED, task=task, assignment=assignment, strategy=method.value)
        return outcome


__all__ = [
    "SkillScorer",
    "skill_coverage_score",
    "has_required_skills",
    "rotate",
    "Selection",
    "AssignmentEngine",
    "AutoAssigner",
]
