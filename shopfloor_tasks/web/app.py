"""FastAPI-based JSON interface for the task scheduling engine."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..analysis import CriticalPathReport, ValidationReport
from ..domain import (
    Assignment,
    AssignmentMethod,
    ReassignmentResult,
    RequestContext,
    SubtaskSpec,
    Task,
    TaskPriority,
    TaskStatus,
    Worker,
)
from ..errors import (
    CycleError,
    NotFoundError,
    TaskEngineError,
    ValidationError,
)
from ..events import DomainEvent, EventLog
from ..repository import DuplicateRecordError
from ..services import SchedulingService
from ..storage import SchedulingDatabase

logger = logging.getLogger(__name__)


class WorkerIn(BaseModel):
    name: str
    skills: List[str] = Field(default_factory=list)
    work_center_ids: List[str] = Field(default_factory=list)
    active: bool = True


class TaskIn(BaseModel):
    work_order_id: str
    name: str
    task_number: Optional[str] = None
    estimated_hours: float = 0.0
    priority: TaskPriority = TaskPriority.NORMAL
    target_quantity: float = 0.0
    due_date: Optional[datetime] = None
    work_center_id: Optional[str] = None
    required_skills: List[str] = Field(default_factory=list)
    description: str = ""
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    depends_on: List[str] = Field(default_factory=list)


class DependencyIn(BaseModel):
    depends_on_id: str


class StatusIn(BaseModel):
    status: TaskStatus


class ProgressIn(BaseModel):
    completed_quantity: float
    rejected_quantity: Optional[float] = None


class SubtaskIn(BaseModel):
    name: str
    estimated_hours: float
    target_quantity: float
    description: str = ""
    assign_to_worker_id: Optional[str] = None
    priority: Optional[TaskPriority] = None


class SplitIn(BaseModel):
    subtasks: List[SubtaskIn]
    preserve_dependencies: bool = True
    reason: str = ""
    auto_assign: Optional[AssignmentMethod] = None


class AssignIn(BaseModel):
    worker_id: str
    notes: str = ""
    force: bool = False


class AutoAssignIn(BaseModel):
    strategy: AssignmentMethod = AssignmentMethod.AUTO_WORKLOAD


class ReassignIn(BaseModel):
    worker_id: str
    reason: str


class BulkReassignIn(BaseModel):
    task_ids: List[str]
    to_worker_id: str
    reason: str
    from_worker_id: Optional[str] = None


class UnavailabilityIn(BaseModel):
    reason: str
    strategy: str = "workload"


class BalanceIn(BaseModel):
    work_center_id: Optional[str] = None
    max_tasks_per_worker: Optional[int] = None
    consider_skills: bool = False
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


class EmergencyIn(BaseModel):
    priority: Optional[TaskPriority] = None
    due_within_hours: Optional[float] = None
    work_center_id: Optional[str] = None


class OptionsIn(BaseModel):
    worker_capacity: Optional[int] = None
    workload_weight: Optional[float] = None
    max_tasks_per_worker: Optional[int] = None
    critical_path_tolerance: Optional[float] = None
    quantity_tolerance: Optional[float] = None
    max_graph_nodes: Optional[int] = None
    max_graph_edges: Optional[int] = None
    max_compute_seconds: Optional[float] = None


def request_context(
    x_tenant_id: str = Header("default"),
    x_user_id: str = Header("system"),
) -> RequestContext:
    return RequestContext(tenant_id=x_tenant_id, user_id=x_user_id)


def task_payload(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "work_order_id": task.work_order_id,
        "task_number": task.task_number,
        "name": task.name,
        "status": task.status.value,
        "priority": task.priority.label,
        "estimated_hours": task.estimated_hours,
        "target_quantity": task.target_quantity,
        "completed_quantity": task.completed_quantity,
        "rejected_quantity": task.rejected_quantity,
        "progress_percentage": task.progress_percentage,
        "assigned_worker_id": task.assigned_worker_id,
        "work_center_id": task.work_center_id,
        "due_date": task.due_date,
        "required_skills": list(task.required_skills),
        "dependency_ids": sorted(task.dependency_ids),
        "split_from_id": task.split_from_id,
        "notes": task.notes,
    }


def worker_payload(worker: Worker) -> Dict[str, Any]:
    return {
        "id": worker.id,
        "name": worker.name,
        "active": worker.active,
        "skills": list(worker.skills),
        "work_center_ids": list(worker.work_center_ids),
    }


def assignment_payload(assignment: Assignment) -> Dict[str, Any]:
    return {
        "id": assignment.id,
        "task_id": assignment.task_id,
        "worker_id": assignment.worker_id,
        "status": assignment.status.value,
        "method": assignment.method.value,
        "assigned_at": assignment.assigned_at,
        "assigned_by": assignment.assigned_by,
        "priority": assignment.priority,
        "notes": assignment.notes,
        "skill_match_score": assignment.skill_match_score,
        "reassignment_history": [
            {
                "from_worker_id": record.from_worker_id,
                "to_worker_id": record.to_worker_id,
                "reassigned_at": record.reassigned_at,
                "reassigned_by": record.reassigned_by,
                "reason": record.reason,
            }
            for record in assignment.reassignment_history
        ],
    }


def result_payload(result: ReassignmentResult) -> Dict[str, Any]:
    return {
        "task_id": result.task_id,
        "previous_assignee_id": result.previous_assignee_id,
        "new_assignee_id": result.new_assignee_id,
        "reason": result.reason,
        "success": result.success,
        "error": result.error,
    }


def validation_payload(report: ValidationReport) -> Dict[str, Any]:
    return {
        "is_valid": report.is_valid,
        "issues": report.issues,
        "cycles": report.cycles,
        "ready_tasks": [task.id for task in report.ready_tasks],
        "blocked_tasks": [
            {
                "task_id": blocked.task.id,
                "incomplete_dependencies": [
                    task.id for task in blocked.incomplete_dependencies
                ],
                "missing_dependency_ids": blocked.missing_dependency_ids,
            }
            for blocked in report.blocked_tasks
        ],
    }


def critical_path_payload(report: CriticalPathReport) -> Dict[str, Any]:
    return {
        "tasks": [task_payload(task) for task in report.tasks],
        "project_duration": report.project_duration,
        "timings": {
            task_id: {
                "earliest_start": timing.earliest_start,
                "earliest_finish": timing.earliest_finish,
                "latest_start": timing.latest_start,
                "latest_finish": timing.latest_finish,
                "slack": timing.slack,
                "critical": timing.critical,
            }
            for task_id, timing in report.timings.items()
        },
    }


def _summarize(value: Any) -> Any:
    if isinstance(value, Task):
        return value.id
    if isinstance(value, (Worker, Assignment)):
        return value.id
    if isinstance(value, (list, tuple)):
        return [_summarize(item) for item in value]
    if isinstance(value, dict):
        return {key: _summarize(item) for key, item in value.items()}
    return value


def event_payload(event: DomainEvent) -> Dict[str, Any]:
    return {
        "name": event.name,
        "occurred_at": event.occurred_at,
        "payload": {key: _summarize(value) for key, value in event.payload.items()},
    }


def error_status(exc: TaskEngineError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    # cycles, illegal transitions and stale commits
    return 409


def create_app(
    database_path: str = "shopfloor.sqlite3", *, demo_data: bool = True
) -> FastAPI:
    database = SchedulingDatabase(database_path)
    event_log = EventLog()
    service = SchedulingService(
        task_repo=database.tasks,
        assignment_repo=database.assignments,
        worker_repo=database.workers,
        rotation_repo=database.rotation_state,
        event_sink=event_log,
    )
    if demo_data:
        ensure_demo_data(service)

    app = FastAPI(title="Shop-floor Task Scheduling")
    app.state.scheduling_service = service
    app.state.database = database
    app.state.event_log = event_log

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        database.close()

    @app.exception_handler(TaskEngineError)
    async def engine_error_handler(request: Request, exc: TaskEngineError):
        body: Dict[str, Any] = {"detail": str(exc)}
        if isinstance(exc, CycleError):
            body["cycles"] = exc.cycles
        return JSONResponse(status_code=error_status(exc), content=body)

    @app.exception_handler(DuplicateRecordError)
    async def duplicate_handler(request: Request, exc: DuplicateRecordError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    @app.post("/workers", status_code=201)
    async def register_worker(
        body: WorkerIn, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        worker = service.register_worker(
            ctx,
            body.name,
            skills=body.skills,
            work_center_ids=body.work_center_ids,
            active=body.active,
        )
        return worker_payload(worker)

    @app.get("/workers")
    async def list_workers(request: Request, ctx: RequestContext = Depends(request_context)):
        service: SchedulingService = request.app.state.scheduling_service
        return [worker_payload(worker) for worker in service.list_workers(ctx)]

    @app.get("/workers/workload")
    async def worker_workload(request: Request, ctx: RequestContext = Depends(request_context)):
        service: SchedulingService = request.app.state.scheduling_service
        return [
            {
                "worker_id": load.worker_id,
                "active_tasks": load.active_tasks,
                "total_estimated_hours": load.total_estimated_hours,
                "urgent_tasks": load.urgent_tasks,
                "overdue_tasks": load.overdue_tasks,
            }
            for load in service.worker_workloads(ctx)
        ]

    @app.post("/workers/{worker_id}/unavailable")
    async def worker_unavailable(
        worker_id: str,
        body: UnavailabilityIn,
        request: Request,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        results = service.handle_worker_unavailability(
            ctx, worker_id, body.reason, body.strategy
        )
        return [result_payload(result) for result in results]

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    @app.post("/tasks", status_code=201)
    async def create_task(
        body: TaskIn, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        task = service.create_task(
            ctx,
            body.work_order_id,
            body.name,
            depends_on=body.depends_on,
            task_number=body.task_number,
            estimated_hours=body.estimated_hours,
            priority=body.priority,
            target_quantity=body.target_quantity,
            due_date=body.due_date,
            work_center_id=body.work_center_id,
            required_skills=body.required_skills,
            description=body.description,
            scheduled_start=body.scheduled_start,
            scheduled_end=body.scheduled_end,
        )
        return task_payload(task)

    @app.get("/tasks")
    async def list_tasks(
        request: Request,
        work_order_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        tasks = service.list_tasks(ctx, work_order_id=work_order_id, status=status)
        return [task_payload(task) for task in tasks]

    @app.get("/tasks/{task_id}")
    async def get_task(
        task_id: str, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        return task_payload(service.get_task(ctx, task_id))

    @app.post("/tasks/{task_id}/status")
    async def change_status(
        task_id: str,
        body: StatusIn,
        request: Request,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        return task_payload(service.change_status(ctx, task_id, body.status))

    @app.post("/tasks/{task_id}/progress")
    async def record_progress(
        task_id: str,
        body: ProgressIn,
        request: Request,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        task = service.record_progress(
            ctx, task_id, body.completed_quantity, body.rejected_quantity
        )
        return task_payload(task)

    @app.post("/tasks/{task_id}/dependencies", status_code=201)
    async def add_dependency(
        task_id: str,
        body: DependencyIn,
        request: Request,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        return task_payload(service.add_dependency(ctx, task_id, body.depends_on_id))

    @app.delete("/tasks/{task_id}/dependencies/{depends_on_id}")
    async def remove_dependency(
        task_id: str,
        depends_on_id: str,
        request: Request,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        return task_payload(service.remove_dependency(ctx, task_id, depends_on_id))

    @app.get("/tasks/{task_id}/dependencies")
    async def get_dependencies(
        task_id: str,
        request: Request,
        transitive: bool = False,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        tasks = service.get_dependencies(ctx, task_id, transitive=transitive)
        return [task_payload(task) for task in tasks]

    @app.get("/tasks/{task_id}/dependents")
    async def get_dependents(
        task_id: str,
        request: Request,
        transitive: bool = False,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        tasks = service.get_dependents(ctx, task_id, transitive=transitive)
        return [task_payload(task) for task in tasks]

    @app.post("/tasks/{task_id}/split", status_code=201)
    async def split_task(
        task_id: str,
        body: SplitIn,
        request: Request,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        specs = [
            SubtaskSpec(
                name=item.name,
                estimated_hours=item.estimated_hours,
                target_quantity=item.target_quantity,
                description=item.description,
                assign_to_worker_id=item.assign_to_worker_id,
                priority=item.priority,
            )
            for item in body.subtasks
        ]
        result = service.split_task(
            ctx,
            task_id,
            specs,
            preserve_dependencies=body.preserve_dependencies,
            reason=body.reason,
            auto_assign=body.auto_assign,
        )
        return {
            "original": task_payload(result.original),
            "subtasks": [task_payload(task) for task in result.subtasks],
        }

    @app.get("/tasks/{task_id}/assignments")
    async def task_assignments(
        task_id: str, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        return [assignment_payload(item) for item in service.task_assignments(ctx, task_id)]

    @app.post("/tasks/{task_id}/assign", status_code=201)
    async def assign_task(
        task_id: str,
        body: AssignIn,
        request: Request,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        assignment = service.assign_task(
            ctx, task_id, body.worker_id, notes=body.notes, force=body.force
        )
        return assignment_payload(assignment)

    @app.post("/tasks/{task_id}/auto-assign")
    async def auto_assign_task(
        task_id: str,
        body: AutoAssignIn,
        request: Request,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        assignment = service.auto_assign_task(ctx, task_id, body.strategy)
        if assignment is None:
            return {"assigned": False, "assignment": None}
        return {"assigned": True, "assignment": assignment_payload(assignment)}

    @app.post("/tasks/{task_id}/reassign")
    async def reassign_task(
        task_id: str,
        body: ReassignIn,
        request: Request,
        ctx: RequestContext = Depends(request_context),
    ):
        service: SchedulingService = request.app.state.scheduling_service
        assignment = service.reassign_task(ctx, task_id, body.worker_id, body.reason)
        return assignment_payload(assignment)

    # ------------------------------------------------------------------
    # Work order analysis
    # ------------------------------------------------------------------
    @app.get("/work-orders/{work_order_id}/validation")
    async def validate_dependencies(
        work_order_id: str, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        return validation_payload(service.validate_dependencies(ctx, work_order_id))

    @app.get("/work-orders/{work_order_id}/critical-path")
    async def critical_path(
        work_order_id: str, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        return critical_path_payload(service.critical_path(ctx, work_order_id))

    # ------------------------------------------------------------------
    # Batch reassignment
    # ------------------------------------------------------------------
    @app.post("/assignments/bulk-reassign")
    async def bulk_reassign(
        body: BulkReassignIn, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        results = service.bulk_reassign_tasks(
            ctx,
            body.task_ids,
            body.to_worker_id,
            body.reason,
            from_worker_id=body.from_worker_id,
        )
        return [result_payload(result) for result in results]

    @app.post("/assignments/balance")
    async def balance_workload(
        body: BalanceIn, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        window = None
        if body.window_start is not None and body.window_end is not None:
            window = (body.window_start, body.window_end)
        results = service.balance_workload(
            ctx,
            work_center_id=body.work_center_id,
            max_tasks_per_worker=body.max_tasks_per_worker,
            consider_skills=body.consider_skills,
            time_window=window,
        )
        return [result_payload(result) for result in results]

    @app.post("/assignments/emergency")
    async def emergency_redistribution(
        body: EmergencyIn, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        results = service.emergency_redistribution(
            ctx,
            priority=body.priority,
            due_within_hours=body.due_within_hours,
            work_center_id=body.work_center_id,
        )
        return [result_payload(result) for result in results]

    @app.get("/assignments/statistics")
    async def assignment_statistics(
        request: Request, ctx: RequestContext = Depends(request_context)
    ):
        service: SchedulingService = request.app.state.scheduling_service
        stats = service.assignment_statistics(ctx)
        return {
            "total": stats.total,
            "active": stats.active,
            "by_status": stats.by_status,
            "by_method": stats.by_method,
            "by_worker": stats.by_worker,
        }

    # ------------------------------------------------------------------
    # Configuration and events
    # ------------------------------------------------------------------
    @app.post("/options")
    async def update_options(body: OptionsIn, request: Request):
        service: SchedulingService = request.app.state.scheduling_service
        changes = {key: value for key, value in body.model_dump().items() if value is not None}
        options = service.update_engine_options(**changes)
        return {
            "worker_capacity": options.worker_capacity,
            "workload_weight": options.workload_weight,
            "max_tasks_per_worker": options.max_tasks_per_worker,
            "critical_path_tolerance": options.critical_path_tolerance,
            "quantity_tolerance": options.quantity_tolerance,
            "max_graph_nodes": options.max_graph_nodes,
            "max_graph_edges": options.max_graph_edges,
            "max_compute_seconds": options.max_compute_seconds,
        }

    @app.get("/events")
    async def list_events(request: Request, name: Optional[str] = None):
        log: EventLog = request.app.state.event_log
        return [event_payload(event) for event in log.list(name)]

    return app


def ensure_demo_data(service: SchedulingService) -> None:
    if len(service.workers) > 0:
        return
    ctx = RequestContext(tenant_id="default", user_id="demo")

    service.register_worker(ctx, "Jonas Weber", skills=["cnc", "milling"], work_center_ids=["WC-MILL"])
    service.register_worker(ctx, "Sabine Hartmann", skills=["welding"], work_center_ids=["WC-WELD"])
    service.register_worker(ctx, "Mehmet Yilmaz", skills=["assembly", "qa"], work_center_ids=["WC-ASSY"])

    cut = service.create_task(ctx, "WO-1001", "Cut raw material", estimated_hours=1.5, target_quantity=20)
    mill = service.create_task(
        ctx,
        "WO-1001",
        "Mill housing",
        depends_on=[cut.id],
        estimated_hours=4.0,
        target_quantity=20,
        work_center_id="WC-MILL",
        required_skills=["milling"],
    )
    weld = service.create_task(
        ctx,
        "WO-1001",
        "Weld bracket",
        depends_on=[cut.id],
        estimated_hours=2.0,
        target_quantity=20,
        work_center_id="WC-WELD",
        required_skills=["welding"],
    )
    service.create_task(
        ctx,
        "WO-1001",
        "Final assembly",
        depends_on=[mill.id, weld.id],
        estimated_hours=3.0,
        target_quantity=20,
        work_center_id="WC-ASSY",
        required_skills=["assembly"],
    )
    logger.info("Seeded demo data for tenant %s", ctx.tenant_id)
