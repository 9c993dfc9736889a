"""Diagnostic validation and critical path reports for a work order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from .config import EngineOptions
from .domain import Task, TaskStatus
from .graph import (
    DependencyGraph,
    TaskTiming,
    compute_critical_path,
    find_cycles,
)
from .tasks import TaskService

logger = logging.getLogger(__name__)

_BLOCKABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.READY})


@dataclass(slots=True)
class BlockedTask:
    """A not-yet-started task waiting on unfinished or missing dependencies."""

    task: Task
    incomplete_dependencies: List[Task] = field(default_factory=list)
    missing_dependency_ids: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ValidationReport:
    """Health of one work order's graph.

    ``is_valid`` turns false only for cycles. ``issues`` also lists edges to
    tasks outside the work order or deleted ones; ready and blocked tasks are
    informational.
    """

    is_valid: bool
    issues: List[str] = field(default_factory=list)
    cycles: List[List[str]] = field(default_factory=list)
    ready_tasks: List[Task] = field(default_factory=list)
    blocked_tasks: List[BlockedTask] = field(default_factory=list)


@dataclass(slots=True)
class CriticalPathReport:
    """Critical tasks ordered by earliest start, plus per-task CPM figures."""

    tasks: List[Task]
    project_duration: float
    timings: Dict[str, TaskTiming] = field(default_factory=dict)

    @property
    def task_ids(self) -> List[str]:
        return [task.id for task in self.tasks]


class DependencyAnalyzer:
    def __init__(self, tasks: TaskService, options: EngineOptions) -> None:
        self.tasks = tasks
        self.options = options

    def _graph(self, work_order_id: str) -> DependencyGraph:
        graph = self.tasks.build_graph(work_order_id)
        graph.check_limits(self.options.max_graph_nodes, self.options.max_graph_edges)
        return graph

    def validate_dependencies(self, work_order_id: str) -> ValidationReport:
        """Report cycles, dangling edges, ready and blocked tasks of a work order."""

        graph = self._graph(work_order_id)
        cycles = find_cycles(graph)
        report = ValidationReport(is_valid=not cycles, cycles=cycles)

        for cycle in cycles:
            labels = [graph.nodes[node_id].task_number for node_id in cycle]
            labels.append(labels[0])
            report.issues.append("Circular dependency detected: " + " -> ".join(labels))
        for task_id, missing_id in graph.dangling:
            report.issues.append(
                f"Task {graph.nodes[task_id].task_number} depends on missing task {missing_id}"
            )

        for task_id in sorted(graph.nodes):
            task = graph.nodes[task_id]
            if task.status not in _BLOCKABLE_STATUSES:
                continue
            incomplete: List[Task] = []
            missing: List[str] = []
            for dependency_id in sorted(task.dependency_ids):
                dependency = graph.nodes.get(dependency_id) or self.tasks.find_task(
                    dependency_id
                )
                if dependency is None:
                    missing.append(dependency_id)
                elif dependency.status != TaskStatus.COMPLETED:
                    incomplete.append(dependency)
            if incomplete or missing:
                report.blocked_tasks.append(
                    BlockedTask(
                        task=task,
                        incomplete_dependencies=incomplete,
                        missing_dependency_ids=missing,
                    )
                )
            elif task.status == TaskStatus.PENDING:
                report.ready_tasks.append(task)

        if not report.is_valid:
            logger.warning(
                "Work order %s has %d dependency cycle(s)", work_order_id, len(cycles)
            )
        return report

    def critical_path(self, work_order_id: str) -> CriticalPathReport:
        graph = self._graph(work_order_id)
        result = compute_critical_path(
            graph,
            tolerance=self.options.critical_path_tolerance,
            max_seconds=self.options.max_compute_seconds,
        )
        logger.info(
            "Critical path for work order %s: %d task(s), %.2fh",
            work_order_id,
            len(result.task_ids),
            result.project_duration,
        )
        return CriticalPathReport(
            tasks=[graph.nodes[task_id] for task_id in result.task_ids],
            project_duration=result.project_duration,
            timings=result.timings,
        )


__all__ = [
    "BlockedTask",
    "ValidationReport",
    "CriticalPathReport",
    "DependencyAnalyzer",
]
