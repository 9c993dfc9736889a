"""ID-indexed dependency graph and the algorithms that run over it.

Edges point from a task to the tasks it depends on. All functions here are
synchronous and side-effect free; loading tasks and persisting changes is the
job of the service layer.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .domain import Task
from .errors import CycleError, GraphLimitError

DEFAULT_TOLERANCE = 0.01

_ON_STACK = 1
_DONE = 2


@dataclass(slots=True)
class DependencyGraph:
    """Transient view over the tasks of one scope."""

    nodes: Dict[str, Task] = field(default_factory=dict)
    edges: Dict[str, Set[str]] = field(default_factory=dict)
    reverse_edges: Dict[str, Set[str]] = field(default_factory=dict)
    dangling: List[Tuple[str, str]] = field(default_factory=list)

    @classmethod
    def build(cls, tasks: Iterable[Task]) -> "DependencyGraph":
        graph = cls()
        task_list = list(tasks)
        for task in task_list:
            graph.nodes[task.id] = task
            graph.edges[task.id] = set()
            graph.reverse_edges[task.id] = set()
        for task in task_list:
            for dependency_id in task.dependency_ids:
                if dependency_id in graph.nodes:
                    graph.edges[task.id].add(dependency_id)
                    graph.reverse_edges[dependency_id].add(task.id)
                else:
                    graph.dangling.append((task.id, dependency_id))
        return graph

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def edge_count(self) -> int:
        return sum(len(targets) for targets in self.edges.values())

    def has_edge(self, task_id: str, depends_on_id: str) -> bool:
        return depends_on_id in self.edges.get(task_id, ())

    def add_edge(self, task_id: str, depends_on_id: str) -> None:
        self.edges.setdefault(task_id, set()).add(depends_on_id)
        self.reverse_edges.setdefault(depends_on_id, set()).add(task_id)

    def remove_edge(self, task_id: str, depends_on_id: str) -> None:
        self.edges.get(task_id, set()).discard(depends_on_id)
        self.reverse_edges.get(depends_on_id, set()).discard(task_id)

    def dependencies_of(self, task_id: str, transitive: bool = False) -> List[str]:
        """Direct dependencies, or every ancestor in breadth-first order."""

        return _walk(self.edges, task_id, transitive)

    def dependents_of(self, task_id: str, transitive: bool = False) -> List[str]:
        """Direct dependents, or every descendant in breadth-first order."""

        return _walk(self.reverse_edges, task_id, transitive)

    def can_reach(self, start_id: str, target_id: str) -> bool:
        """Whether ``target_id`` is reachable from ``start_id`` along dependencies."""

        if start_id == target_id:
            return True
        return target_id in self.dependencies_of(start_id, transitive=True)

    def would_create_cycle(self, task_id: str, depends_on_id: str) -> bool:
        # task -> depends_on closes a cycle iff depends_on already reaches task.
        return self.can_reach(depends_on_id, task_id)

    def check_limits(self, max_nodes: int, max_edges: int) -> None:
        if max_nodes and len(self.nodes) > max_nodes:
            raise GraphLimitError(
                f"Graph has {len(self.nodes)} tasks, limit is {max_nodes}"
            )
        edge_count = self.edge_count
        if max_edges and edge_count > max_edges:
            raise GraphLimitError(
                f"Graph has {edge_count} dependencies, limit is {max_edges}"
            )


def _walk(adjacency: Dict[str, Set[str]], start_id: str, transitive: bool) -> List[str]:
    direct = sorted(adjacency.get(start_id, ()))
    if not transitive:
        return direct
    visited: Set[str] = set()
    ordered: List[str] = []
    queue = deque(direct)
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        ordered.append(current)
        queue.extend(sorted(adjacency.get(current, ())))
    return ordered


def _canonical(cycle: List[str]) -> Tuple[str, ...]:
    pivot = cycle.index(min(cycle))
    return tuple(cycle[pivot:] + cycle[:pivot])


def find_cycles(graph: DependencyGraph) -> List[List[str]]:
    """Return every distinct cycle reached by a depth-first search.

    Each cycle is listed once, as the nodes along the dependency direction
    without repeating the first node at the end.
    """

    cycles: List[List[str]] = []
    seen: Set[Tuple[str, ...]] = set()
    state: Dict[str, int] = {}

    for root in sorted(graph.nodes):
        if root in state:
            continue
        state[root] = _ON_STACK
        path = [root]
        stack = [(root, iter(sorted(graph.edges.get(root, ()))))]
        while stack:
            node, neighbors = stack[-1]
            descended = False
            for neighbor in neighbors:
                if neighbor not in graph.nodes:
                    continue
                mark = state.get(neighbor)
                if mark is None:
                    state[neighbor] = _ON_STACK
                    path.append(neighbor)
                    stack.append(
                        (neighbor, iter(sorted(graph.edges.get(neighbor, ()))))
                    )
                    descended = True
                    break
                if mark == _ON_STACK:
                    cycle = path[path.index(neighbor):]
                    key = _canonical(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
            if not descended:
                stack.pop()
                path.pop()
                state[node] = _DONE
    return cycles


def topological_order(graph: DependencyGraph) -> Optional[List[str]]:
    """Kahn's algorithm; dependencies come first. ``None`` if a cycle exists."""

    in_degree = {
        node_id: len([dep for dep in graph.edges.get(node_id, ()) if dep in graph.nodes])
        for node_id in graph.nodes
    }
    queue = deque(sorted(node_id for node_id, degree in in_degree.items() if degree == 0))
    ordered: List[str] = []
    while queue:
        current = queue.popleft()
        ordered.append(current)
        for dependent in sorted(graph.reverse_edges.get(current, ())):
            if dependent not in in_degree:
                continue
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
    if len(ordered) < len(graph.nodes):
        return None
    return ordered


@dataclass(slots=True)
class TaskTiming:
    """CPM figures for one task, in hours from project start."""

    task_id: str
    duration: float
    earliest_start: float
    earliest_finish: float
    latest_start: float
    latest_finish: float
    slack: float
    critical: bool


@dataclass(slots=True)
class CriticalPath:
    """Result of a critical path computation."""

    task_ids: List[str]
    project_duration: float
    timings: Dict[str, TaskTiming]


class _Deadline:
    def __init__(self, max_seconds: Optional[float]) -> None:
        self._expires = (
            time.monotonic() + max_seconds if max_seconds and max_seconds > 0 else None
        )

    def check(self) -> None:
        if self._expires is not None and time.monotonic() > self._expires:
            raise GraphLimitError("Critical path computation exceeded its time budget")


def compute_critical_path(
    graph: DependencyGraph,
    *,
    tolerance: float = DEFAULT_TOLERANCE,
    max_seconds: Optional[float] = None,
) -> CriticalPath:
    """Forward/backward CPM pass over an acyclic graph."""

    deadline = _Deadline(max_seconds)
    order = topological_order(graph)
    if order is None:
        raise CycleError(
            "Cannot compute critical path due to circular dependencies",
            find_cycles(graph),
        )

    duration = {
        task_id: max(float(task.estimated_hours or 0.0), 0.0)
        for task_id, task in graph.nodes.items()
    }
    earliest_start: Dict[str, float] = {}
    for task_id in order:
        earliest_start[task_id] = max(
            (
                earliest_start[dep] + duration[dep]
                for dep in graph.edges.get(task_id, ())
                if dep in graph.nodes
            ),
            default=0.0,
        )
        deadline.check()

    project_duration = max(
        (earliest_start[task_id] + duration[task_id] for task_id in order),
        default=0.0,
    )

    latest_finish = {task_id: project_duration for task_id in order}
    for task_id in reversed(order):
        dependents = [
            dep for dep in graph.reverse_edges.get(task_id, ()) if dep in graph.nodes
        ]
        if dependents:
            latest_finish[task_id] = min(
                latest_finish[dep] - duration[dep] for dep in dependents
            )
        deadline.check()

    position = {task_id: index for index, task_id in enumerate(order)}
    timings: Dict[str, TaskTiming] = {}
    for task_id in order:
        earliest_finish = earliest_start[task_id] + duration[task_id]
        slack = latest_finish[task_id] - earliest_finish
        timings[task_id] = TaskTiming(
            task_id=task_id,
            duration=duration[task_id],
            earliest_start=earliest_start[task_id],
            earliest_finish=earliest_finish,
            latest_start=latest_finish[task_id] - duration[task_id],
            latest_finish=latest_finish[task_id],
            slack=slack,
            critical=abs(slack) < tolerance,
        )

    critical = [task_id for task_id in order if timings[task_id].critical]
    critical.sort(key=lambda task_id: (earliest_start[task_id], position[task_id]))
    return CriticalPath(
        task_ids=critical,
        project_duration=project_duration,
        timings=timings,
    )


__all__ = [
    "DEFAULT_TOLERANCE",
    "DependencyGraph",
    "find_cycles",
    "topological_order",
    "TaskTiming",
    "CriticalPath",
    "compute_critical_path",
]
