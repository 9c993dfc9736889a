"""Readiness cascade: keeps PENDING/READY in line with dependency completion."""

from __future__ import annotations

import logging
from typing import List

from .domain import Task, TaskStatus
from .events import TASK_READY, Outcome
from .tasks import TaskService

logger = logging.getLogger(__name__)


class ReadinessController:
    """Promotes and demotes tasks as their dependencies change."""

    def __init__(self, tasks: TaskService) -> None:
        self.tasks = tasks

    def update_readiness(self, task_id: str) -> Outcome[Task]:
        task = self.tasks.get_task(task_id)
        outcome: Outcome[Task] = Outcome(task)
        complete = self.tasks.dependencies_complete(task)
        if complete and task.status == TaskStatus.PENDING:
            task.status = TaskStatus.READY
            self.tasks.save(task)
            outcome.emit(TASK_READY, task=task)
            logger.info("Task %s is now ready (all dependencies completed)", task.task_number)
        elif not complete and task.status == TaskStatus.READY:
            task.status = TaskStatus.PENDING
            self.tasks.save(task)
            logger.info(
                "Task %s is now pending (has incomplete dependencies)", task.task_number
            )
        return outcome

    def cascade_on_completion(self, completed_task_id: str) -> Outcome[List[Task]]:
        """Ready every transitive dependent whose dependencies are now complete."""

        completed = self.tasks.get_task(completed_task_id)
        graph = self.tasks.build_graph(completed.work_order_id)
        promoted: List[Task] = []
        outcome: Outcome[List[Task]] = Outcome(promoted)
        for dependent_id in graph.dependents_of(completed.id, transitive=True):
            dependent = graph.nodes[dependent_id]
            if dependent.status != TaskStatus.PENDING:
                continue
            if not self.tasks.dependencies_complete(
                dependent, assume_completed={completed.id}
            ):
                continue
            dependent.status = TaskStatus.READY
            self.tasks.save(dependent)
            promoted.append(dependent)
            outcome.emit(TASK_READY, task=dependent)
            logger.info(
                "Task %s is now ready after dependency completion", dependent.task_number
            )
        return outcome


__all__ = ["ReadinessController"]
