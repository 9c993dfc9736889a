"""Demonstration script for the shop-floor task scheduling engine."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pprint import pprint

from . import (
    AssignmentMethod,
    RequestContext,
    SchedulingService,
    SubtaskSpec,
    TaskPriority,
    TaskStatus,
)
from .events import EventLog


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    events = EventLog()
    service = SchedulingService(event_sink=events)
    ctx = RequestContext(tenant_id="werk-nord", user_id="planner")

    # Workers
    anna = service.register_worker(ctx, "Anna Schulz", skills=["cnc", "milling"], work_center_ids=["WC-MILL"])
    ben = service.register_worker(ctx, "Ben Koch", skills=["welding"], work_center_ids=["WC-WELD"])
    cara = service.register_worker(ctx, "Cara Vogel", skills=["assembly", "milling"], work_center_ids=["WC-ASSY"])

    # Work order with a small dependency network
    cut = service.create_task(ctx, "WO-2024-015", "Saw blanks", estimated_hours=2, target_quantity=100)
    mill = service.create_task(
        ctx,
        "WO-2024-015",
        "Mill housings",
        depends_on=[cut.id],
        estimated_hours=3,
        target_quantity=100,
        required_skills=["milling"],
        work_center_id="WC-MILL",
    )
    deburr = service.create_task(
        ctx, "WO-2024-015", "Deburr", depends_on=[cut.id], estimated_hours=1, target_quantity=100
    )
    assemble = service.create_task(
        ctx,
        "WO-2024-015",
        "Assemble",
        depends_on=[mill.id, deburr.id],
        estimated_hours=2,
        target_quantity=100,
        priority=TaskPriority.URGENT,
        due_date=datetime.now() + timedelta(hours=12),
    )

    report = service.critical_path(ctx, "WO-2024-015")
    print("Critical path")
    for task in report.tasks:
        print(f" - {task.task_number} {task.name} ({task.estimated_hours:.1f}h)")
    print(f"Project duration: {report.project_duration:.1f}h")

    # Assignment and execution
    service.auto_assign_task(ctx, cut.id, AssignmentMethod.AUTO_ROUND_ROBIN)
    service.auto_assign_task(ctx, mill.id, AssignmentMethod.AUTO_SKILL_BASED)
    service.assign_task(ctx, deburr.id, cara.id)
    service.change_status(ctx, cut.id, TaskStatus.IN_PROGRESS)
    service.change_status(ctx, cut.id, TaskStatus.COMPLETED)
    print("\nReady after completing the blanks:")
    for task in service.list_tasks(ctx, status=TaskStatus.READY):
        print(f" - {task.task_number} {task.name}")

    # Split the milling step into two batches
    split = service.split_task(
        ctx,
        mill.id,
        [
            SubtaskSpec(name="Mill housings batch 1", estimated_hours=1.5, target_quantity=50),
            SubtaskSpec(
                name="Mill housings batch 2",
                estimated_hours=1.5,
                target_quantity=50,
                assign_to_worker_id=cara.id,
            ),
        ],
        reason="Second milling machine available",
        auto_assign=AssignmentMethod.AUTO_SKILL_BASED,
    )
    print("\nSplit result")
    for subtask in split.subtasks:
        print(f" - {subtask.task_number} {subtask.name}: {subtask.status.value}")

    # Redistribution
    results = service.handle_worker_unavailability(ctx, anna.id, "Sick leave", "skills")
    print("\nRedistributed tasks")
    pprint(results)
    service.bulk_reassign_tasks(ctx, [assemble.id], ben.id, "Welding needed on final assembly")

    validation = service.validate_dependencies(ctx, "WO-2024-015")
    print(f"\nDependency graph valid: {validation.is_valid}")
    pprint(validation.issues)

    print("\nAssignment statistics")
    pprint(service.assignment_statistics(ctx))
    print("\nEvents")
    for event in events.list():
        print(f" - {event.name}")


if __name__ == "__main__":  # pragma: no cover - manual execution
    main()
