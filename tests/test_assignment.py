from __future__ import annotations

import pytest

from conftest import make_task, register
from shopfloor_tasks import (
    AssignmentMethod,
    AssignmentStatus,
    InvalidStateError,
    TaskPriority,
    TaskStatus,
    ValidationError,
)
from shopfloor_tasks.assignment import (
    AssignmentEngine,
    rotate,
    skill_coverage_score,
)
from shopfloor_tasks.domain import Worker, WorkerLoad
from shopfloor_tasks.events import TASK_ASSIGNED
from shopfloor_tasks.repository import InMemoryRepository, RepositoryRotationStore


def load(worker_id, active_tasks=0, *, skills=(), centers=(), urgent=0, hours=0.0, active=True):
    worker = Worker(
        id=worker_id,
        tenant_id="acme",
        name=worker_id.upper(),
        active=active,
        skills=tuple(skills),
        work_center_ids=tuple(centers),
    )
    return WorkerLoad(
        worker=worker,
        active_tasks=active_tasks,
        total_estimated_hours=hours,
        urgent_tasks=urgent,
    )


def skilled_task(*skills, work_center_id=None):
    task = make_task("T1")
    task.required_skills = tuple(skills)
    task.work_center_id = work_center_id
    return task


@pytest.fixture
def engine():
    return AssignmentEngine()


def test_eligible_excludes_inactive_and_full_workers(engine):
    loads = [load("c", 2), load("a", 10), load("b", 9), load("d", 0, active=False)]
    assert [item.worker_id for item in engine.eligible(loads)] == ["b", "c"]


def test_skill_coverage_score():
    task = skilled_task("welding", "cnc")
    assert skill_coverage_score(task, load("a", skills=["CNC"]).worker) == 50.0
    assert skill_coverage_score(skilled_task(), load("a").worker) == 100.0


def test_best_skill_match_prefers_coverage_then_workload(engine):
    task = skilled_task("welding", "cnc")
    loads = [
        load("a", 1, skills=["welding"]),
        load("b", 3, skills=["welding", "cnc"]),
        load("c", 1, skills=["welding", "cnc"]),
        load("d", 0),
    ]
    selection = engine.best_skill_match(task, loads)
    assert selection.worker.id == "c"
    assert selection.score == 100.0


def test_best_skill_match_without_any_match(engine):
    assert engine.best_skill_match(skilled_task("painting"), [load("a", skills=["cnc"])]) is None


def test_skill_scorer_is_pluggable():
    def seniority(task, worker):
        return 10.0 if worker.id == "senior" else 1.0

    engine = AssignmentEngine(skill_scorer=seniority)
    selection = engine.best_skill_match(skilled_task(), [load("junior"), load("senior", 4)])
    assert selection.worker.id == "senior"


def test_least_loaded(engine):
    loads = [load("a", 3), load("b", 1, hours=8), load("c", 1, hours=2)]
    selection = engine.least_loaded(skilled_task(), loads)
    assert selection.worker.id == "c"
    assert selection.score == 10.0


def test_rotate_wraps_around():
    assert rotate(["b", "a", "c"], None) == "a"
    assert rotate(["b", "a", "c"], "a") == "b"
    assert rotate(["b", "a", "c"], "c") == "a"
    # cursor pointing at a worker that left the pool
    assert rotate(["a", "c"], "b") == "c"
    assert rotate([], "a") is None


def test_next_in_rotation_continues_after_the_cursor(engine):
    loads = [load("c"), load("a"), load("b", 10)]
    task = skilled_task()
    assert engine.next_in_rotation(task, loads).worker.id == "a"
    assert engine.next_in_rotation(task, loads, last_worker_id="a").worker.id == "c"
    # b is at capacity, so the rotation wraps
    assert engine.next_in_rotation(task, loads, last_worker_id="c").worker.id == "a"
    assert engine.next_in_rotation(task, [], last_worker_id="a") is None


def test_rotation_store_only_advances_from_the_cursor_it_read():
    store = RepositoryRotationStore(InMemoryRepository())
    assert store.compare_and_set("acme:tasks", None, "a")
    assert not store.compare_and_set("acme:tasks", None, "b")
    assert store.compare_and_set("acme:tasks", "a", "b")
    assert store.load("acme:tasks") == "b"
    assert store.load("other") is None


def test_by_priority_steers_away_from_urgent_work(engine):
    loads = [load("a", 1, urgent=1), load("b", 4), load("c", 3, urgent=1)]
    selection = engine.by_priority(skilled_task(), loads)
    assert selection.worker.id == "b"
    assert selection.score == 4.0


def test_nearest_prefers_local_workers(engine):
    loads = [load("a", 0), load("b", 2, centers=["WC-1"]), load("c", 1, centers=["WC-1"])]
    assert engine.nearest(skilled_task(work_center_id="WC-1"), loads).worker.id == "c"
    assert engine.nearest(skilled_task(work_center_id="WC-9"), loads).worker.id == "a"
    assert engine.nearest(skilled_task(), loads) is None


def test_select_rejects_manual_method(engine):
    with pytest.raises(ValidationError):
        engine.select(AssignmentMethod.MANUAL, skilled_task(), [load("a")])


def test_manual_assignment_checks_skills(service, ctx):
    register(service, ctx, "w1", skills=["cnc"])
    task = service.create_task(ctx, "WO-1", "Weld", required_skills=["welding"])
    with pytest.raises(ValidationError):
        service.assign_task(ctx, task.id, "w1")
    assignment = service.assign_task(ctx, task.id, "w1", force=True)
    assert assignment.method == AssignmentMethod.MANUAL
    assert assignment.skill_match_score == 0.0
    assert service.get_task(ctx, task.id).assigned_worker_id == "w1"


def test_assignment_to_inactive_worker_is_rejected(service, ctx):
    register(service, ctx, "w1", active=False)
    task = service.create_task(ctx, "WO-1", "Cut")
    with pytest.raises(InvalidStateError):
        service.assign_task(ctx, task.id, "w1")


def test_reassignment_keeps_history(service, ctx):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    task = service.create_task(ctx, "WO-1", "Cut", priority=TaskPriority.URGENT)
    first = service.assign_task(ctx, task.id, "w1")
    assert first.priority == 100

    second = service.reassign_task(ctx, task.id, "w2", "Machine breakdown")

    history = service.task_assignments(ctx, task.id)
    assert [item.id for item in history] == [second.id, first.id]
    superseded = history[1]
    assert superseded.status == AssignmentStatus.REASSIGNED
    record = superseded.reassignment_history[0]
    assert (record.from_worker_id, record.to_worker_id, record.reason) == (
        "w1",
        "w2",
        "Machine breakdown",
    )
    assert record.reassigned_by == "planner"
    assert second.status == AssignmentStatus.PENDING
    assert second.priority == 100
    assert sum(1 for item in history if item.is_active) == 1


def test_reassigning_terminal_task_fails(service, ctx):
    register(service, ctx, "w1")
    task = service.create_task(ctx, "WO-1", "Cut")
    service.change_status(ctx, task.id, TaskStatus.CANCELLED)
    with pytest.raises(InvalidStateError):
        service.reassign_task(ctx, task.id, "w1", "late")


def test_auto_assign_uses_live_workload(service, ctx, events):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    busy = service.create_task(ctx, "WO-1", "Busy")
    service.assign_task(ctx, busy.id, "w1")
    task = service.create_task(ctx, "WO-1", "Cut")

    assignment = service.auto_assign_task(ctx, task.id, AssignmentMethod.AUTO_WORKLOAD)

    assert assignment.worker_id == "w2"
    assert assignment.method == AssignmentMethod.AUTO_WORKLOAD
    assert assignment.worker_workload == 0
    assert events.list(TASK_ASSIGNED)[-1].payload["strategy"] == "auto_workload"


def test_auto_assign_without_candidates_returns_none(service, ctx):
    task = service.create_task(ctx, "WO-1", "Cut")
    assert service.auto_assign_task(ctx, task.id, AssignmentMethod.AUTO_PRIORITY) is None


def test_round_robin_through_service_rotates(service, ctx):
    for worker_id in ("w1", "w2"):
        register(service, ctx, worker_id)
    picks = []
    for index in range(3):
        task = service.create_task(ctx, "WO-1", f"Task {index}")
        picks.append(
            service.auto_assign_task(ctx, task.id, AssignmentMethod.AUTO_ROUND_ROBIN).worker_id
        )
    assert picks == ["w1", "w2", "w1"]


def test_failed_round_robin_assignment_leaves_the_cursor(service, ctx):
    for worker_id in ("a", "b", "c"):
        register(service, ctx, worker_id)
    closed = service.create_task(ctx, "WO-1", "Closed")
    service.change_status(ctx, closed.id, TaskStatus.CANCELLED)

    with pytest.raises(InvalidStateError):
        service.auto_assign_task(ctx, closed.id, AssignmentMethod.AUTO_ROUND_ROBIN)
    assert service.rotation_store.load("acme:tasks") is None

    task = service.create_task(ctx, "WO-1", "Open")
    assignment = service.auto_assign_task(ctx, task.id, AssignmentMethod.AUTO_ROUND_ROBIN)
    assert assignment.worker_id == "a"
    assert service.rotation_store.load("acme:tasks") == "a"


def test_assignment_statistics(service, ctx):
    register(service, ctx, "w1")
    register(service, ctx, "w2")
    task = service.create_task(ctx, "WO-1", "Cut")
    service.assign_task(ctx, task.id, "w1")
    service.reassign_task(ctx, task.id, "w2", "shift change")

    stats = service.assignment_statistics(ctx)
    assert stats.total == 2
    assert stats.active == 1
    assert stats.by_status == {"Reassigned": 1, "Pending": 1}
    assert stats.by_method == {"manual": 2}
    assert stats.by_worker == {"w2": 1}
