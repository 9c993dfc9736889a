from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

import pytest

from shopfloor_tasks import RequestContext, SchedulingService, TaskStatus
from shopfloor_tasks.domain import Task
from shopfloor_tasks.events import EventLog

START = datetime(2024, 5, 6, 8, 0)


class TickingClock:
    """Deterministic clock advancing one minute per call."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(minutes=1)
        return self.current


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(tenant_id="acme", user_id="planner")


@pytest.fixture
def events() -> EventLog:
    return EventLog()


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def service(events: EventLog, clock: TickingClock) -> SchedulingService:
    return SchedulingService(event_sink=events, clock=clock)


def make_task(
    task_id: str,
    hours: float = 1.0,
    deps: Iterable[str] = (),
    *,
    work_order_id: str = "WO-1",
    status: TaskStatus = TaskStatus.PENDING,
    tenant_id: str = "acme",
) -> Task:
    return Task(
        id=task_id,
        tenant_id=tenant_id,
        work_order_id=work_order_id,
        task_number=task_id,
        name=f"Task {task_id}",
        estimated_hours=hours,
        status=status,
        dependency_ids=set(deps),
    )


def force_status(service: SchedulingService, task_id: str, status: TaskStatus) -> Task:
    """Write a status straight into storage, bypassing the state machine."""

    task = service.tasks.get(task_id)
    task.status = status
    service.tasks.upsert(task.id, task)
    return task


def complete(service: SchedulingService, ctx: RequestContext, task_id: str) -> Task:
    task = service.get_task(ctx, task_id)
    if task.status == TaskStatus.READY:
        service.change_status(ctx, task_id, TaskStatus.IN_PROGRESS)
    return service.change_status(ctx, task_id, TaskStatus.COMPLETED)


@pytest.fixture
def example_network(service: SchedulingService, ctx: RequestContext):
    """T1(2h) <- T2(3h), T3(1h) <- T4(2h) in work order WO-1."""

    t1 = service.create_task(ctx, "WO-1", "T1", task_number="T1", estimated_hours=2)
    t2 = service.create_task(
        ctx, "WO-1", "T2", task_number="T2", estimated_hours=3, depends_on=[t1.id]
    )
    t3 = service.create_task(
        ctx, "WO-1", "T3", task_number="T3", estimated_hours=1, depends_on=[t1.id]
    )
    t4 = service.create_task(
        ctx,
        "WO-1",
        "T4",
        task_number="T4",
        estimated_hours=2,
        depends_on=[t2.id, t3.id],
    )
    return t1, t2, t3, t4


def register(service: SchedulingService, ctx: RequestContext, worker_id: str, **kwargs):
    return service.register_worker(ctx, kwargs.pop("name", worker_id), worker_id=worker_id, **kwargs)


def ids(tasks) -> list:
    return [task.id for task in tasks]
