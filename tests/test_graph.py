from __future__ import annotations

import pytest

from conftest import make_task
from shopfloor_tasks.errors import CycleError, GraphLimitError
from shopfloor_tasks.graph import (
    DependencyGraph,
    compute_critical_path,
    find_cycles,
    topological_order,
)


def build(*tasks):
    return DependencyGraph.build(tasks)


def closure(graph: DependencyGraph, start: str, adjacency) -> set:
    """Reference fixed point: repeatedly add direct neighbours until stable."""

    result = set(adjacency[start])
    while True:
        expanded = set(result)
        for node in result:
            expanded |= adjacency[node]
        if expanded == result:
            return result
        result = expanded


@pytest.fixture
def diamond():
    return build(
        make_task("A"),
        make_task("B", deps=["A"]),
        make_task("C", deps=["A"]),
        make_task("D", deps=["B", "C"]),
        make_task("E", deps=["D"]),
    )


def test_build_indexes_forward_and_reverse_edges(diamond):
    assert diamond.edges["D"] == {"B", "C"}
    assert diamond.reverse_edges["A"] == {"B", "C"}
    assert diamond.edge_count == 5
    assert diamond.dangling == []


def test_build_records_dangling_edges():
    graph = build(make_task("A", deps=["missing"]))
    assert graph.edges["A"] == set()
    assert graph.dangling == [("A", "missing")]


def test_transitive_queries_match_fixed_point(diamond):
    for node in diamond.nodes:
        assert set(diamond.dependencies_of(node, transitive=True)) == closure(
            diamond, node, diamond.edges
        )
        assert set(diamond.dependents_of(node, transitive=True)) == closure(
            diamond, node, diamond.reverse_edges
        )


def test_direct_queries(diamond):
    assert diamond.dependencies_of("D") == ["B", "C"]
    assert diamond.dependents_of("A") == ["B", "C"]
    assert diamond.dependents_of("E") == []


def test_would_create_cycle_follows_dependency_direction(diamond):
    # E depends transitively on A, so A -> E closes a cycle
    assert diamond.would_create_cycle("A", "E")
    assert diamond.would_create_cycle("B", "D")
    # E -> A is redundant but acyclic
    assert not diamond.would_create_cycle("E", "A")
    assert not diamond.would_create_cycle("B", "C")


def test_find_cycles_two_node_cycle():
    graph = build(make_task("A", deps=["B"]), make_task("B", deps=["A"]))
    cycles = find_cycles(graph)
    assert len(cycles) == 1
    assert sorted(cycles[0]) == ["A", "B"]


def test_find_cycles_reports_each_cycle_once():
    graph = build(
        make_task("A", deps=["B"]),
        make_task("B", deps=["C"]),
        make_task("C", deps=["A"]),
        make_task("D", deps=["D"]),
        make_task("E"),
    )
    cycles = find_cycles(graph)
    assert sorted(sorted(cycle) for cycle in cycles) == [["A", "B", "C"], ["D"]]


def test_find_cycles_on_dag_is_empty(diamond):
    assert find_cycles(diamond) == []


def test_topological_order_puts_dependencies_first(diamond):
    order = topological_order(diamond)
    assert order is not None
    position = {node: index for index, node in enumerate(order)}
    for node, dependencies in diamond.edges.items():
        for dependency in dependencies:
            assert position[dependency] < position[node]


def test_topological_order_none_on_cycle():
    graph = build(make_task("A", deps=["B"]), make_task("B", deps=["A"]), make_task("C"))
    assert topological_order(graph) is None


def test_critical_path_reference_network():
    graph = build(
        make_task("T1", 2),
        make_task("T2", 3, ["T1"]),
        make_task("T3", 1, ["T1"]),
        make_task("T4", 2, ["T2", "T3"]),
    )
    result = compute_critical_path(graph)
    assert result.task_ids == ["T1", "T2", "T4"]
    assert result.project_duration == pytest.approx(7.0)
    t3 = result.timings["T3"]
    assert t3.earliest_start == pytest.approx(2.0)
    assert t3.latest_start == pytest.approx(3.0)
    assert t3.slack == pytest.approx(1.0)
    assert not t3.critical


def test_critical_path_handles_floating_point_sums():
    graph = build(
        make_task("A", 0.1),
        make_task("B", 0.2, ["A"]),
        make_task("C", 0.3, ["A"]),
        make_task("D", 0.1, ["B"]),
    )
    result = compute_critical_path(graph)
    # A->B->D and A->C both last 0.4h
    assert set(result.task_ids) == {"A", "B", "C", "D"}
    assert result.project_duration == pytest.approx(0.4)


def test_critical_path_rejects_cycles():
    graph = build(make_task("A", deps=["B"]), make_task("B", deps=["A"]))
    with pytest.raises(CycleError) as excinfo:
        compute_critical_path(graph)
    assert excinfo.value.cycles


def test_critical_path_of_empty_graph():
    result = compute_critical_path(DependencyGraph())
    assert result.task_ids == []
    assert result.project_duration == 0.0


def test_check_limits(diamond):
    diamond.check_limits(5, 5)
    with pytest.raises(GraphLimitError):
        diamond.check_limits(4, 0)
    with pytest.raises(GraphLimitError):
        diamond.check_limits(0, 4)
