from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import START, force_status, register
from shopfloor_tasks import NotFoundError, TaskPriority, TaskStatus, ValidationError
from shopfloor_tasks.events import (
    EMERGENCY_REDISTRIBUTION_COMPLETED,
    TASKS_BULK_REASSIGNED,
    WORKER_UNAVAILABILITY_HANDLED,
    WORKLOAD_BALANCED,
)


def assigned_task(service, ctx, worker_id, name, **kwargs):
    task = service.create_task(ctx, kwargs.pop("work_order_id", "WO-1"), name, **kwargs)
    service.assign_task(ctx, task.id, worker_id, force=True)
    return task


def test_bulk_reassign_isolates_terminal_tasks(service, ctx, events):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    tasks = [assigned_task(service, ctx, "w1", f"Task {index}") for index in range(3)]
    force_status(service, tasks[1].id, TaskStatus.COMPLETED)

    results = service.bulk_reassign_tasks(ctx, [task.id for task in tasks], "w2", "Rebalance")

    assert len(results) == 3
    assert [result.success for result in results] == [True, False, True]
    assert results[1].error == "Task is already completed or cancelled"
    assert all(result.previous_assignee_id == "w1" for result in results)
    assert service.get_task(ctx, tasks[0].id).assigned_worker_id == "w2"
    assert service.get_task(ctx, tasks[1].id).assigned_worker_id == "w1"
    event = events.list(TASKS_BULK_REASSIGNED)[-1]
    assert event.payload["task_count"] == 2
    assert event.payload["reassigned_by"] == "planner"


def test_bulk_reassign_reports_missing_and_foreign_tasks(service, ctx):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    register(service, ctx, "w3")
    mine = assigned_task(service, ctx, "w1", "Mine")
    theirs = assigned_task(service, ctx, "w3", "Theirs")

    results = service.bulk_reassign_tasks(
        ctx, [mine.id, "ghost", theirs.id], "w2", "Cover", from_worker_id="w1"
    )

    assert [result.task_id for result in results] == [mine.id, "ghost", theirs.id]
    assert [result.success for result in results] == [True, False, False]
    assert results[1].error == "Task not found"
    assert service.get_task(ctx, theirs.id).assigned_worker_id == "w3"


def test_bulk_reassign_requires_existing_target(service, ctx):
    register(service, ctx, "w1")
    task = assigned_task(service, ctx, "w1", "Cut")
    with pytest.raises(NotFoundError):
        service.bulk_reassign_tasks(ctx, [task.id], "nobody", "Cover")


def test_worker_unavailability_redistributes_open_tasks(service, ctx, events):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    register(service, ctx, "w3")
    low = assigned_task(service, ctx, "w1", "Low", priority=TaskPriority.LOW)
    high = assigned_task(service, ctx, "w1", "High", priority=TaskPriority.HIGH)
    done = assigned_task(service, ctx, "w1", "Done")
    force_status(service, done.id, TaskStatus.COMPLETED)

    results = service.handle_worker_unavailability(ctx, "w1", "Sick leave")

    assert [result.task_id for result in results] == [high.id, low.id]
    assert all(result.success for result in results)
    assert [result.new_assignee_id for result in results] == ["w2", "w3"]
    assert results[0].reason == "Worker unavailable: Sick leave"
    assert service.get_task(ctx, done.id).assigned_worker_id == "w1"
    event = events.list(WORKER_UNAVAILABILITY_HANDLED)[-1]
    assert event.payload["tasks_reassigned"] == 2
    assert event.payload["total_tasks"] == 2


def test_worker_unavailability_by_skills_skips_unmatched_tasks(service, ctx):
    register(service, ctx, "w1", skills=["welding", "cnc"])
    register(service, ctx, "w2", skills=["cnc"])
    weld = assigned_task(service, ctx, "w1", "Weld", required_skills=["welding"])
    mill = assigned_task(service, ctx, "w1", "Mill", required_skills=["cnc"])

    results = service.handle_worker_unavailability(ctx, "w1", "Training", "skills")

    assert [result.task_id for result in results] == [mill.id]
    assert service.get_task(ctx, mill.id).assigned_worker_id == "w2"
    assert service.get_task(ctx, weld.id).assigned_worker_id == "w1"


def test_worker_unavailability_rejects_unknown_strategy(service, ctx):
    register(service, ctx, "w1")
    with pytest.raises(ValidationError):
        service.handle_worker_unavailability(ctx, "w1", "Leave", "coin-flip")


def test_balance_moves_lowest_priority_tasks_first(service, ctx, events):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    for index in range(6):
        assigned_task(service, ctx, "w1", f"Normal {index}", priority=TaskPriority.NORMAL)
    low = assigned_task(service, ctx, "w1", "Low", priority=TaskPriority.LOW)
    started = assigned_task(service, ctx, "w1", "Started", priority=TaskPriority.LOW)
    service.change_status(ctx, started.id, TaskStatus.IN_PROGRESS)

    results = service.balance_workload(ctx, max_tasks_per_worker=5)

    # w1 holds 8 open tasks, 3 above the limit; the started one stays
    assert len(results) == 3
    assert results[0].task_id == low.id
    assert all(result.new_assignee_id == "w2" for result in results)
    assert started.id not in {result.task_id for result in results}
    assert events.list(WORKLOAD_BALANCED)[-1].payload["tasks_reassigned"] == 3
    loads = {load.worker_id: load.active_tasks for load in service.worker_workloads(ctx)}
    assert loads == {"w1": 5, "w2": 3}


def test_balance_with_skills_only_moves_to_qualified_workers(service, ctx):
    register(service, ctx, "w1", skills=["welding"])
    register(service, ctx, "w2", skills=["cnc"])
    for index in range(3):
        assigned_task(service, ctx, "w1", f"Weld {index}", required_skills=["welding"])
    mill = assigned_task(
        service, ctx, "w1", "Mill", required_skills=["cnc"], priority=TaskPriority.LOW
    )

    # the two least important tasks are candidates; only the milling job has a taker
    results = service.balance_workload(ctx, max_tasks_per_worker=2, consider_skills=True)

    assert [result.task_id for result in results] == [mill.id]
    assert service.get_task(ctx, mill.id).assigned_worker_id == "w2"


def test_balance_respects_work_center_filter(service, ctx):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    for index in range(3):
        assigned_task(service, ctx, "w1", f"Paint {index}", work_center_id="WC-PAINT")

    assert service.balance_workload(ctx, work_center_id="WC-MILL", max_tasks_per_worker=1) == []
    moved = service.balance_workload(ctx, work_center_id="WC-PAINT", max_tasks_per_worker=2)
    assert len(moved) == 1


def test_balance_when_already_balanced(service, ctx, events):
    register(service, ctx, "w1")
    assigned_task(service, ctx, "w1", "Cut")
    assert service.balance_workload(ctx) == []
    assert events.list(WORKLOAD_BALANCED)[-1].payload["tasks_reassigned"] == 0


def test_emergency_redistribution_moves_urgent_work(service, ctx, events):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    soon = START + timedelta(hours=3)
    for index in range(2):
        assigned_task(service, ctx, "w1", f"Busy {index}", priority=TaskPriority.CRITICAL)
    urgent = assigned_task(
        service, ctx, "w1", "Rush", priority=TaskPriority.URGENT, due_date=soon
    )
    later = assigned_task(
        service,
        ctx,
        "w1",
        "Later",
        priority=TaskPriority.URGENT,
        due_date=START + timedelta(days=5),
    )

    results = service.emergency_redistribution(
        ctx, priority=TaskPriority.URGENT, due_within_hours=8
    )

    assert [result.task_id for result in results] == [urgent.id]
    assert results[0].success
    assert results[0].new_assignee_id == "w2"
    assert results[0].reason == "Emergency redistribution"
    assert service.get_task(ctx, later.id).assigned_worker_id == "w1"
    event = events.list(EMERGENCY_REDISTRIBUTION_COMPLETED)[-1]
    assert event.payload["tasks_reassigned"] == 1
    assert event.payload["criteria"]["due_within_hours"] == 8


def test_emergency_redistribution_skips_tasks_already_with_best_worker(service, ctx):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    assigned_task(service, ctx, "w2", "Other", priority=TaskPriority.CRITICAL)
    assigned_task(service, ctx, "w1", "Rush", priority=TaskPriority.URGENT)

    assert service.emergency_redistribution(ctx, priority=TaskPriority.URGENT) == []


def test_emergency_redistribution_filters_by_work_center(service, ctx):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    assigned_task(service, ctx, "w1", "Busy", priority=TaskPriority.CRITICAL)
    weld = assigned_task(service, ctx, "w1", "Weld", work_center_id="WC-WELD")
    assigned_task(service, ctx, "w1", "Mill", work_center_id="WC-MILL")

    results = service.emergency_redistribution(ctx, work_center_id="WC-WELD")
    assert [result.task_id for result in results] == [weld.id]
    assert isinstance(results[0].previous_assignee_id, str)
