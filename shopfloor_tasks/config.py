"""Tunable parameters of the scheduling engine."""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(slots=True, frozen=True)
class EngineOptions:
    """Fine-tuning parameters shared by all engine components."""

    worker_capacity: int = 10
    workload_weight: float = 10.0
    max_tasks_per_worker: int = 5
    critical_path_tolerance: float = 0.01
    quantity_tolerance: float = 0.01
    max_graph_nodes: int = 5000
    max_graph_edges: int = 50000
    max_compute_seconds: float = 5.0

    def updated(self, **changes) -> "EngineOptions":
        """Return a copy with ``changes`` applied and clamped to sane minimums."""

        merged = replace(self, **changes)
        return EngineOptions(
            worker_capacity=max(int(merged.worker_capacity), 1),
            workload_weight=max(float(merged.workload_weight), 0.0),
            max_tasks_per_worker=max(int(merged.max_tasks_per_worker), 1),
            critical_path_tolerance=max(float(merged.critical_path_tolerance), 1e-9),
            quantity_tolerance=max(float(merged.quantity_tolerance), 0.0),
            max_graph_nodes=max(int(merged.max_graph_nodes), 0),
            max_graph_edges=max(int(merged.max_graph_edges), 0),
            max_compute_seconds=max(float(merged.max_compute_seconds), 0.0),
        )


__all__ = ["EngineOptions"]
