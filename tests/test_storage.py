from __future__ import annotations

import pytest

from conftest import complete, make_task, register
from shopfloor_tasks import AssignmentMethod, EngineOptions, SchedulingService, TaskStatus
from shopfloor_tasks.domain import RoundRobinState
from shopfloor_tasks.errors import ConflictError, NotFoundError
from shopfloor_tasks.repository import (
    DuplicateRecordError,
    InMemoryRepository,
    RecordNotFoundError,
    RepositoryRotationStore,
    UnitOfWork,
)
from shopfloor_tasks.storage import SchedulingDatabase


@pytest.fixture
def database(tmp_path):
    with SchedulingDatabase(str(tmp_path / "engine.sqlite3")) as db:
        yield db


def test_sqlite_repository_crud(database):
    repo = database.tasks
    task = make_task("T1", 2.0)
    repo.add(task.id, task)

    assert "T1" in repo
    assert 42 not in repo
    assert repo.get("T1").estimated_hours == 2.0

    with pytest.raises(DuplicateRecordError):
        repo.add(task.id, task)

    task.status = TaskStatus.READY
    repo.upsert(task.id, task)
    assert repo.get("T1").status == TaskStatus.READY

    repo.remove("T1")
    with pytest.raises(RecordNotFoundError):
        repo.get("T1")
    with pytest.raises(RecordNotFoundError):
        repo.remove("T1")


def test_record_not_found_is_an_engine_not_found_error(database):
    with pytest.raises(NotFoundError):
        database.workers.get("missing")


def test_upsert_many_writes_all_records(database):
    tasks = {task.id: task for task in (make_task("B"), make_task("A"), make_task("C"))}
    database.tasks.upsert_many(tasks)
    assert [task.id for task in database.tasks.list()] == ["A", "B", "C"]

    database.rotation_state.upsert_many(
        {"acme:tasks": RoundRobinState(id="acme:tasks", last_worker_id="w2")}
    )
    assert database.rotation_state.get("acme:tasks").last_worker_id == "w2"


def test_unit_of_work_discards_changes_on_error():
    tasks = InMemoryRepository()
    tasks.add("T1", make_task("T1"))

    with pytest.raises(RuntimeError):
        with UnitOfWork(tasks, InMemoryRepository()) as uow:
            task = uow.get_task("T1")
            task.status = TaskStatus.CANCELLED
            uow.save_task(task)
            raise RuntimeError("boom")

    assert tasks.get("T1").status == TaskStatus.PENDING


def test_unit_of_work_isolates_loaded_records():
    tasks = InMemoryRepository()
    tasks.add("T1", make_task("T1"))

    with UnitOfWork(tasks, InMemoryRepository()) as uow:
        task = uow.get_task("T1")
        task.status = TaskStatus.READY
        assert tasks.get("T1").status == TaskStatus.PENDING
        uow.save_task(task)

    assert tasks.get("T1").status == TaskStatus.READY


def test_stale_unit_of_work_cannot_overwrite_a_newer_task():
    tasks = InMemoryRepository()
    tasks.add("T1", make_task("T1"))
    first = UnitOfWork(tasks, InMemoryRepository())
    second = UnitOfWork(tasks, InMemoryRepository())

    assigned = first.get_task("T1")
    linked = second.get_task("T1")
    assigned.assigned_worker_id = "w1"
    first.save_task(assigned)
    linked.dependency_ids.add("T0")
    second.save_task(linked)

    first.commit()
    with pytest.raises(ConflictError):
        second.commit()

    stored = tasks.get("T1")
    assert stored.assigned_worker_id == "w1"
    assert stored.dependency_ids == set()
    assert stored.version == 1


def test_rotation_cursor_is_written_only_on_commit():
    store = RepositoryRotationStore()

    with pytest.raises(RuntimeError):
        with UnitOfWork(InMemoryRepository(), InMemoryRepository(), rotation=store) as uow:
            uow.stage_rotation("acme:tasks", "a")
            assert uow.rotation_cursor("acme:tasks") == "a"
            raise RuntimeError("boom")
    assert store.load("acme:tasks") is None

    first = UnitOfWork(InMemoryRepository(), InMemoryRepository(), rotation=store)
    second = UnitOfWork(InMemoryRepository(), InMemoryRepository(), rotation=store)
    assert first.rotation_cursor("acme:tasks") is None
    assert second.rotation_cursor("acme:tasks") is None
    first.stage_rotation("acme:tasks", "a")
    second.stage_rotation("acme:tasks", "a")
    first.commit()
    with pytest.raises(ConflictError):
        second.commit()
    assert store.load("acme:tasks") == "a"


def build_service(db, events=None):
    return SchedulingService(
        task_repo=db.tasks,
        assignment_repo=db.assignments,
        worker_repo=db.workers,
        rotation_repo=db.rotation_state,
        options=EngineOptions(),
        event_sink=events,
    )


def test_state_survives_reopening_the_database(tmp_path, ctx):
    path = str(tmp_path / "plant.sqlite3")
    with SchedulingDatabase(path) as db:
        service = build_service(db)
        register(service, ctx, "w1")
        first = service.create_task(ctx, "WO-7", "Cut", estimated_hours=2)
        second = service.create_task(ctx, "WO-7", "Weld", estimated_hours=3, depends_on=[first.id])
        service.assign_task(ctx, second.id, "w1")
        complete(service, ctx, first.id)

    with SchedulingDatabase(path) as db:
        service = build_service(db)
        reopened = service.get_task(ctx, second.id)
        assert reopened.status == TaskStatus.READY
        assert reopened.dependency_ids == {first.id}
        assert reopened.assigned_worker_id == "w1"
        assert [item.worker_id for item in service.task_assignments(ctx, second.id)] == ["w1"]
        assert service.critical_path(ctx, "WO-7").project_duration == 5.0


def test_round_robin_cursor_is_persisted(tmp_path, ctx):
    path = str(tmp_path / "rotation.sqlite3")
    with SchedulingDatabase(path) as db:
        service = build_service(db)
        register(service, ctx, "w1")
        register(service, ctx, "w2")
        task = service.create_task(ctx, "WO-1", "Cut")
        service.auto_assign_task(ctx, task.id, AssignmentMethod.AUTO_ROUND_ROBIN)

    with SchedulingDatabase(path) as db:
        service = build_service(db)
        task = service.create_task(ctx, "WO-1", "Mill")
        assignment = service.auto_assign_task(ctx, task.id, AssignmentMethod.AUTO_ROUND_ROBIN)
        assert assignment.worker_id == "w2"
