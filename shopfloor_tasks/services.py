"""Service layer that wires the scheduling engine to storage and events.

:class:`SchedulingService` is the entry point used by the web adapter and the
sample script. Each call opens a unit of work, builds the engine components
for the caller's :class:`~shopfloor_tasks.domain.RequestContext`, commits the
staged changes in one batch and only then dispatches the produced events.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from .analysis import CriticalPathReport, DependencyAnalyzer, ValidationReport
from .assignment import (
    AssignmentEngine,
    AutoAssigner,
    SkillScorer,
    has_required_skills,
)
from .config import EngineOptions
from .dependencies import DependencyGraphManager
from .domain import (
    Assignment,
    AssignmentMethod,
    RequestContext,
    RoundRobinState,
    SubtaskSpec,
    Task,
    TaskPriority,
    TaskStatus,
    Worker,
    WorkerLoad,
    utcnow,
)
from .errors import InvalidStateError, ValidationError
from .events import (
    TASK_ASSIGNED,
    TASK_REASSIGNED,
    TASK_STATUS_CHANGED,
    DomainEvent,
    EventSink,
    Outcome,
    dispatch,
)
from .graph import DependencyGraph
from .readiness import ReadinessController
from .reassignment import ReassignmentOrchestrator, Results
from .repository import (
    InMemoryRepository,
    RecordNotFoundError,
    Repository,
    RepositoryRotationStore,
    UnitOfWork,
)
from .splitter import SplitResult, TaskSplitter
from .tasks import Clock, TaskService, WorkerDirectory

logger = logging.getLogger(__name__)


class ScopeLocks:
    """One re-entrant lock per scope key, created on first use.

    Keys are ``"<tenant>:<work order>"`` for dependency scopes and
    ``"<tenant>:assignments"`` for assignment state. Every operation that
    writes a task holds the key of that task's work order.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # sorted acquisition keeps multi-key holders deadlock free
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.lock_for(key))
            yield


@dataclass(slots=True)
class AssignmentStatistics:
    """Totals over all assignments of a tenant."""

    total: int = 0
    active: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    by_method: Dict[str, int] = field(default_factory=dict)
    by_worker: Dict[str, int] = field(default_factory=dict)


class _Session:
    """Engine components bound to one unit of work and request context."""

    def __init__(
        self,
        uow: UnitOfWork,
        context: RequestContext,
        service: "SchedulingService",
    ) -> None:
        options = service.engine_options
        self.events: List[DomainEvent] = []
        self.tasks = TaskService(uow, context, clock=service.clock)
        self.directory = WorkerDirectory(service.workers, context)
        self.readiness = ReadinessController(self.tasks)
        self.dependencies = DependencyGraphManager(self.tasks, self.readiness, options)
        self.analyzer = DependencyAnalyzer(self.tasks, options)
        self.assigner = AutoAssigner(service.assignment_engine, self.tasks, self.directory)
        self.splitter = TaskSplitter(
            self.tasks, self.readiness, self.directory, self.assigner, options
        )
        self.orchestrator = ReassignmentOrchestrator(
            self.tasks, self.directory, self.assigner, options
        )

    def collect(self, outcome: Outcome):
        self.events.extend(outcome.events)
        return outcome.result


class SchedulingService:
    """Facade exposing task dependency and assignment operations."""

    def __init__(
        self,
        *,
        task_repo: Optional[Repository[Task]] = None,
        assignment_repo: Optional[Repository[Assignment]] = None,
        worker_repo: Optional[Repository[Worker]] = None,
        rotation_repo: Optional[Repository[RoundRobinState]] = None,
        options: Optional[EngineOptions] = None,
        event_sink: Optional[EventSink] = None,
        skill_scorer: Optional[SkillScorer] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.tasks = task_repo if task_repo is not None else InMemoryRepository()
        self.assignments = (
            assignment_repo if assignment_repo is not None else InMemoryRepository()
        )
        self.workers = worker_repo if worker_repo is not None else InMemoryRepository()
        self.rotation_store = RepositoryRotationStore(rotation_repo)
        self.event_sink = event_sink
        self.clock = clock
        self.locks = ScopeLocks()
        self._commit_lock = threading.Lock()
        self._skill_scorer = skill_scorer
        self.engine_options = options or EngineOptions()
        self.assignment_engine = self._build_engine()

    def _build_engine(self) -> AssignmentEngine:
        return AssignmentEngine(
            capacity=self.engine_options.worker_capacity,
            workload_weight=self.engine_options.workload_weight,
            skill_scorer=self._skill_scorer,
        )

    def update_engine_options(self, **changes) -> EngineOptions:
        unknown = set(changes) - set(EngineOptions.__dataclass_fields__)
        if unknown:
            raise ValidationError(f"Unknown engine options: {', '.join(sorted(unknown))}")
        self.engine_options = self.engine_options.updated(**changes)
        self.assignment_engine = self._build_engine()
        return self.engine_options

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------
    @contextmanager
    def _session(self, context: RequestContext, *lock_keys: str) -> Iterator[_Session]:
        with self.locks.hold(*lock_keys):
            with UnitOfWork(
                self.tasks,
                self.assignments,
                rotation=self.rotation_store,
                commit_lock=self._commit_lock,
            ) as uow:
                session = _Session(uow, context, self)
                yield session
        dispatch(session.events, self.event_sink)

    @staticmethod
    def _scope_key(context: RequestContext, work_order_id: str) -> str:
        return f"{context.tenant_id}:{work_order_id}"

    @staticmethod
    def _assignments_key(context: RequestContext) -> str:
        return f"{context.tenant_id}:assignments"

    def _task_scope_key(self, context: RequestContext, task_id: str) -> str:
        try:
            work_order_id = self.tasks.get(task_id).work_order_id
        except RecordNotFoundError:
            work_order_id = "-"
        return self._scope_key(context, work_order_id)

    def _task_write_keys(self, context: RequestContext, *task_ids: str) -> List[str]:
        keys = [self._task_scope_key(context, task_id) for task_id in task_ids]
        keys.append(self._assignments_key(context))
        return keys

    def _tenant_write_keys(self, context: RequestContext) -> List[str]:
        # tasks filed under a work order created after this snapshot are
        # still protected by the version check in UnitOfWork.commit
        keys = {
            self._scope_key(context, task.work_order_id)
            for task in self.tasks
            if task.tenant_id == context.tenant_id
        }
        keys.add(self._assignments_key(context))
        return sorted(keys)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    def register_worker(
        self,
        context: RequestContext,
        name: str,
        *,
        skills: Sequence[str] = (),
        work_center_ids: Sequence[str] = (),
        active: bool = True,
        worker_id: Optional[str] = None,
    ) -> Worker:
        if not name:
            raise ValidationError("A worker needs a name")
        worker = Worker(
            id=worker_id or str(uuid4()),
            tenant_id=context.tenant_id,
            name=name,
            active=active,
            skills=tuple(dict.fromkeys(skills)),
            work_center_ids=tuple(dict.fromkeys(work_center_ids)),
        )
        self.workers.add(worker.id, worker)
        return worker

    def set_worker_active(self, context: RequestContext, worker_id: str, active: bool) -> Worker:
        worker = WorkerDirectory(self.workers, context).get_worker(worker_id)
        worker.active = active
        self.workers.upsert(worker.id, worker)
        return worker

    def list_workers(self, context: RequestContext) -> List[Worker]:
        workers = [worker for worker in self.workers if worker.tenant_id == context.tenant_id]
        workers.sort(key=lambda worker: worker.name)
        return workers

    def worker_workloads(self, context: RequestContext) -> List[WorkerLoad]:
        with self._session(context) as session:
            return session.assigner.workloads()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    def create_task(
        self,
        context: RequestContext,
        work_order_id: str,
        name: str,
        *,
        depends_on: Sequence[str] = (),
        task_number: Optional[str] = None,
        estimated_hours: float = 0.0,
        priority: TaskPriority = TaskPriority.NORMAL,
        target_quantity: float = 0.0,
        due_date: Optional[datetime] = None,
        work_center_id: Optional[str] = None,
        required_skills: Sequence[str] = (),
        description: str = "",
        scheduled_start: Optional[datetime] = None,
        scheduled_end: Optional[datetime] = None,
    ) -> Task:
        with self._session(context, self._scope_key(context, work_order_id)) as session:
            task = session.tasks.create_task(
                work_order_id,
                name,
                task_number=task_number,
                estimated_hours=estimated_hours,
                priority=priority,
                target_quantity=target_quantity,
                due_date=due_date,
                work_center_id=work_center_id,
                required_skills=required_skills,
                description=description,
                scheduled_start=scheduled_start,
                scheduled_end=scheduled_end,
            )
            for dependency_id in depends_on:
                session.collect(session.dependencies.add_dependency(task.id, dependency_id))
            session.collect(session.readiness.update_readiness(task.id))
            logger.info("Created task %s in work order %s", task.task_number, work_order_id)
            return task

    def get_task(self, context: RequestContext, task_id: str) -> Task:
        with self._session(context) as session:
            return session.tasks.get_task(task_id)

    def list_tasks(
        self,
        context: RequestContext,
        *,
        work_order_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
    ) -> List[Task]:
        with self._session(context) as session:
            tasks = session.tasks.tenant_tasks(
                lambda task: (work_order_id is None or task.work_order_id == work_order_id)
                and (status is None or task.status == status)
            )
        tasks.sort(key=lambda task: (task.work_order_id, task.task_number))
        return tasks

    def task_assignments(self, context: RequestContext, task_id: str) -> List[Assignment]:
        with self._session(context) as session:
            session.tasks.get_task(task_id)
            return session.tasks.assignments_for(task_id)

    def change_status(
        self, context: RequestContext, task_id: str, status: TaskStatus
    ) -> Task:
        """Apply a status transition; completing a task readies its dependents."""

        with self._session(context, *self._task_write_keys(context, task_id)) as session:
            task = session.tasks.get_task(task_id)
            previous = task.status
            session.tasks.transition_status(task, status)
            session.events.append(
                DomainEvent(
                    TASK_STATUS_CHANGED,
                    {"task": task, "previous_status": previous, "status": status},
                )
            )
            if status == TaskStatus.COMPLETED:
                session.collect(session.readiness.cascade_on_completion(task.id))
            logger.info(
                "Task %s changed from %s to %s",
                task.task_number,
                previous.value,
                status.value,
            )
            return task

    def record_progress(
        self,
        context: RequestContext,
        task_id: str,
        completed_quantity: float,
        rejected_quantity: Optional[float] = None,
    ) -> Task:
        with self._session(context, self._task_scope_key(context, task_id)) as session:
            task = session.tasks.get_task(task_id)
            return session.tasks.record_progress(task, completed_quantity, rejected_quantity)

    def update_readiness(self, context: RequestContext, task_id: str) -> Task:
        with self._session(context, self._task_scope_key(context, task_id)) as session:
            return session.collect(session.readiness.update_readiness(task_id))

    # ------------------------------------------------------------------
    # Dependencies and analysis
    # ------------------------------------------------------------------
    def add_dependency(
        self, context: RequestContext, task_id: str, depends_on_id: str
    ) -> Task:
        with self._session(context, self._task_scope_key(context, task_id)) as session:
            return session.collect(session.dependencies.add_dependency(task_id, depends_on_id))

    def remove_dependency(
        self, context: RequestContext, task_id: str, depends_on_id: str
    ) -> Task:
        with self._session(context, self._task_scope_key(context, task_id)) as session:
            return session.collect(
                session.dependencies.remove_dependency(task_id, depends_on_id)
            )

    def get_dependencies(
        self, context: RequestContext, task_id: str, *, transitive: bool = False
    ) -> List[Task]:
        with self._session(context, self._task_scope_key(context, task_id)) as session:
            return session.dependencies.get_dependencies(task_id, transitive)

    def get_dependents(
        self, context: RequestContext, task_id: str, *, transitive: bool = False
    ) -> List[Task]:
        with self._session(context, self._task_scope_key(context, task_id)) as session:
            return session.dependencies.get_dependents(task_id, transitive)

    def build_graph(self, context: RequestContext, work_order_id: str) -> DependencyGraph:
        with self._session(context, self._scope_key(context, work_order_id)) as session:
            return session.dependencies.build_graph(work_order_id)

    def validate_dependencies(
        self, context: RequestContext, work_order_id: str
    ) -> ValidationReport:
        with self._session(context, self._scope_key(context, work_order_id)) as session:
            return session.analyzer.validate_dependencies(work_order_id)

    def critical_path(self, context: RequestContext, work_order_id: str) -> CriticalPathReport:
        with self._session(context, self._scope_key(context, work_order_id)) as session:
            return session.analyzer.critical_path(work_order_id)

    # ------------------------------------------------------------------
    # Splitting
    # ------------------------------------------------------------------
    def split_task(
        self,
        context: RequestContext,
        task_id: str,
        subtasks: Sequence[SubtaskSpec],
        *,
        preserve_dependencies: bool = True,
        reason: str = "",
        auto_assign: Optional[AssignmentMethod] = None,
    ) -> SplitResult:
        with self._session(context, *self._task_write_keys(context, task_id)) as session:
            return session.collect(
                session.splitter.split_task(
                    task_id,
                    subtasks,
                    preserve_dependencies=preserve_dependencies,
                    reason=reason,
                    auto_assign=auto_assign,
                )
            )

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------
    def assign_task(
        self,
        context: RequestContext,
        task_id: str,
        worker_id: str,
        *,
        notes: str = "",
        force: bool = False,
    ) -> Assignment:
        with self._session(context, *self._task_write_keys(context, task_id)) as session:
            task = session.tasks.get_task(task_id)
            worker = session.directory.get_worker(worker_id)
            if not worker.active:
                raise InvalidStateError(f"Worker {worker.name} is not active")
            if not force and not has_required_skills(task, worker):
                raise ValidationError(
                    f"Worker {worker.name} lacks skills required by task {task.task_number}"
                )
            assignment = session.tasks.assign_task(
                task,
                worker,
                notes=notes,
                skill_match_score=float(session.assigner.engine.skill_scorer(task, worker)),
            )
            session.events.append(
                DomainEvent(
                    TASK_ASSIGNED,
                    {"task": task, "assignment": assignment, "strategy": "manual"},
                )
            )
            logger.info("Task %s assigned to worker %s", task.task_number, worker.id)
            return assignment

    def auto_assign_task(
        self,
        context: RequestContext,
        task_id: str,
        strategy: AssignmentMethod = AssignmentMethod.AUTO_WORKLOAD,
    ) -> Optional[Assignment]:
        with self._session(context, *self._task_write_keys(context, task_id)) as session:
            task = session.tasks.get_task(task_id)
            return session.collect(session.assigner.auto_assign(task, strategy))

    def reassign_task(
        self,
        context: RequestContext,
        task_id: str,
        worker_id: str,
        reason: str,
    ) -> Assignment:
        with self._session(context, *self._task_write_keys(context, task_id)) as session:
            task = session.tasks.get_task(task_id)
            worker = session.directory.get_worker(worker_id)
            previous = task.assigned_worker_id
            assignment = session.tasks.reassign_task(task, worker, reason)
            session.events.append(
                DomainEvent(
                    TASK_REASSIGNED,
                    {
                        "task": task,
                        "assignment": assignment,
                        "previous_worker_id": previous,
                        "reason": reason,
                    },
                )
            )
            return assignment

    def bulk_reassign_tasks(
        self,
        context: RequestContext,
        task_ids: Sequence[str],
        to_worker_id: str,
        reason: str,
        *,
        from_worker_id: Optional[str] = None,
    ) -> Results:
        with self._session(context, *self._task_write_keys(context, *task_ids)) as session:
            return session.collect(
                session.orchestrator.bulk_reassign_tasks(
                    task_ids, to_worker_id, reason, from_worker_id=from_worker_id
                )
            )

    def handle_worker_unavailability(
        self,
        context: RequestContext,
        worker_id: str,
        reason: str,
        strategy: Union[str, AssignmentMethod] = "workload",
    ) -> Results:
        with self._session(context, *self._tenant_write_keys(context)) as session:
            return session.collect(
                session.orchestrator.handle_worker_unavailability(worker_id, reason, strategy)
            )

    def balance_workload(
        self,
        context: RequestContext,
        *,
        work_center_id: Optional[str] = None,
        max_tasks_per_worker: Optional[int] = None,
        consider_skills: bool = False,
        time_window: Optional[Tuple[datetime, datetime]] = None,
    ) -> Results:
        with self._session(context, *self._tenant_write_keys(context)) as session:
            return session.collect(
                session.orchestrator.balance_workload(
                    work_center_id=work_center_id,
                    max_tasks_per_worker=max_tasks_per_worker,
                    consider_skills=consider_skills,
                    time_window=time_window,
                )
            )

    def emergency_redistribution(
        self,
        context: RequestContext,
        *,
        priority: Optional[TaskPriority] = None,
        due_within_hours: Optional[float] = None,
        work_center_id: Optional[str] = None,
    ) -> Results:
        with self._session(context, *self._tenant_write_keys(context)) as session:
            return session.collect(
                session.orchestrator.emergency_redistribution(
                    priority=priority,
                    due_within_hours=due_within_hours,
                    work_center_id=work_center_id,
                )
            )

    def assignment_statistics(self, context: RequestContext) -> AssignmentStatistics:
        with self._session(context) as session:
            assignments = session.tasks.tenant_assignments()
        active = [assignment for assignment in assignments if assignment.is_active]
        return AssignmentStatistics(
            total=len(assignments),
            active=len(active),
            by_status=dict(Counter(item.status.value for item in assignments)),
            by_method=dict(Counter(item.method.value for item in assignments)),
            by_worker=dict(Counter(item.worker_id for item in active)),
        )


__all__ = ["ScopeLocks", "AssignmentStatistics", "SchedulingService"]
