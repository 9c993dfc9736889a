"""Dependency edge maintenance with cycle prevention."""

from __future__ import annotations

import logging
from typing import List

from .config import EngineOptions
from .domain import Task
from .errors import CycleError, GraphLimitError, NotFoundError, ValidationError
from .events import DEPENDENCY_ADDED, DEPENDENCY_REMOVED, Outcome
from .graph import DependencyGraph
from .readiness import ReadinessController
from .tasks import TaskService

logger = logging.getLogger(__name__)


class DependencyGraphManager:
    """Adds, removes and queries "depends on" edges inside one work order."""

    def __init__(
        self,
        tasks: TaskService,
        readiness: ReadinessController,
        options: EngineOptions,
    ) -> None:
        self.tasks = tasks
        self.readiness = readiness
        self.options = options

    def build_graph(self, work_order_id: str) -> DependencyGraph:
        graph = self.tasks.build_graph(work_order_id)
        graph.check_limits(self.options.max_graph_nodes, self.options.max_graph_edges)
        return graph

    def add_dependency(self, task_id: str, depends_on_id: str) -> Outcome[Task]:
        """Record that ``task_id`` depends on ``depends_on_id``.

        Every structural check runs before the task is touched, so a rejected
        edge leaves the graph unchanged.
        """

        if task_id == depends_on_id:
            raise ValidationError("A task cannot depend on itself")
        task = self.tasks.get_task(task_id)
        dependency = self.tasks.get_task(depends_on_id)
        if depends_on_id in task.dependency_ids:
            raise ValidationError(
                f"Task {task.task_number} already depends on {dependency.task_number}"
            )
        if task.work_order_id != dependency.work_order_id:
            raise ValidationError(
                "Dependencies are only allowed between tasks of the same work order"
            )

        graph = self.build_graph(task.work_order_id)
        max_edges = self.options.max_graph_edges
        if max_edges and graph.edge_count >= max_edges:
            raise GraphLimitError(
                f"Work order {task.work_order_id} already has {graph.edge_count} dependencies"
            )
        if graph.would_create_cycle(task.id, dependency.id):
            path = [dependency.id, *_path_between(graph, dependency.id, task.id)]
            raise CycleError(
                f"Adding dependency {task.task_number} -> {dependency.task_number} "
                "would create a cycle",
                [path],
            )

        task.dependency_ids.add(dependency.id)
        self.tasks.save(task)
        outcome: Outcome[Task] = Outcome(task)
        outcome.absorb(self.readiness.update_readiness(task.id))
        outcome.emit(DEPENDENCY_ADDED, task=task, depends_on=dependency)
        logger.info(
            "Added dependency: %s depends on %s", task.task_number, dependency.task_number
        )
        return outcome

    def remove_dependency(self, task_id: str, depends_on_id: str) -> Outcome[Task]:
        task = self.tasks.get_task(task_id)
        if depends_on_id not in task.dependency_ids:
            raise NotFoundError(
                f"Task {task.task_number} does not depend on {depends_on_id!r}"
            )
        dependency = self.tasks.find_task(depends_on_id)
        task.dependency_ids.discard(depends_on_id)
        self.tasks.save(task)
        outcome: Outcome[Task] = Outcome(task)
        outcome.absorb(self.readiness.update_readiness(task.id))
        outcome.emit(
            DEPENDENCY_REMOVED,
            task=task,
            depends_on=dependency,
            depends_on_id=depends_on_id,
        )
        logger.info("Removed dependency: %s no longer depends on %s", task.task_number, depends_on_id)
        return outcome

    def get_dependencies(self, task_id: str, transitive: bool = False) -> List[Task]:
        task = self.tasks.get_task(task_id)
        graph = self.build_graph(task.work_order_id)
        return [graph.nodes[node_id] for node_id in graph.dependencies_of(task.id, transitive)]

    def get_dependents(self, task_id: str, transitive: bool = False) -> List[Task]:
        task = self.tasks.get_task(task_id)
        graph = self.build_graph(task.work_order_id)
        return [graph.nodes[node_id] for node_id in graph.dependents_of(task.id, transitive)]


def _path_between(graph: DependencyGraph, start_id: str, target_id: str) -> List[str]:
    """Nodes after ``start_id`` on a shortest dependency path to ``target_id``."""

    parents = {start_id: start_id}
    frontier = [start_id]
    while frontier and target_id not in parents:
        next_frontier = []
        for node_id in frontier:
            for neighbor in sorted(graph.edges.get(node_id, ())):
                if neighbor not in parents:
                    parents[neighbor] = node_id
                    next_frontier.append(neighbor)
        frontier = next_frontier
    if target_id not in parents:
        return []
    path = [target_id]
    while path[-1] != start_id:
        path.append(parents[path[-1]])
    path.pop()
    path.reverse()
    return path


__all__ = ["DependencyGraphManager"]
