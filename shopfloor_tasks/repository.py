"""In-memory repositories and the unit of work used by the engine."""

from __future__ import annotations

import copy
import threading
from dataclasses import asdict
from typing import (
    Callable,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    MutableMapping,
    Optional,
    Protocol,
    TypeVar,
)

from .domain import Assignment, RoundRobinState, Task, utcnow
from .errors import ConflictError, NotFoundError

T = TypeVar("T")


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(RepositoryError, NotFoundError):
    """Raised when a requested record is missing."""


class Repository(Protocol[T]):
    """Interface shared by the in-memory and SQLite repositories."""

    def __contains__(self, item_id: object) -> bool: ...

    def __iter__(self) -> Iterator[T]: ...

    def add(self, item_id: str, item: T) -> None: ...

    def upsert(self, item_id: str, item: T) -> None: ...

    def upsert_many(self, items: Dict[str, T]) -> None: ...

    def get(self, item_id: str) -> T: ...

    def remove(self, item_id: str) -> None: ...

    def list(self) -> List[T]: ...


class InMemoryRepository(Generic[T]):
    """Generic repository backed by a simple dictionary."""

    def __init__(self) -> None:
        self._items: MutableMapping[str, T] = {}

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:  # pragma: no cover - convenience
        return len(self._items)

    def add(self, item_id: str, item: T) -> None:
        if item_id in self._items:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        self._items[item_id] = item

    def upsert(self, item_id: str, item: T) -> None:
        self._items[item_id] = item

    def upsert_many(self, items: Dict[str, T]) -> None:
        self._items.update(items)

    def get(self, item_id: str) -> T:
        try:
            return self._items[item_id]
        except KeyError as exc:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found") from exc

    def remove(self, item_id: str) -> None:
        if item_id not in self._items:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        del self._items[item_id]

    def list(self) -> List[T]:
        return list(self._items.values())

    def as_dicts(self) -> Iterable[Dict]:  # pragma: no cover - convenience
        for item in self._items.values():
            yield asdict(item)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items.values())


class RotationStore(Protocol):
    """Shared round-robin cursors keyed by ``"<tenant>:<pool>"``."""

    def load(self, key: str) -> Optional[str]: ...

    def compare_and_set(
        self, key: str, expected: Optional[str], worker_id: str
    ) -> bool: ...


class RepositoryRotationStore:
    """Round-robin cursors persisted in a repository of ``RoundRobinState``."""

    def __init__(self, repository: Optional[Repository[RoundRobinState]] = None) -> None:
        self._repository = repository if repository is not None else InMemoryRepository()
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[str]:
        with self._lock:
            return self._current(key)

    def compare_and_set(self, key: str, expected: Optional[str], worker_id: str) -> bool:
        """Advance the cursor only if nobody moved it since ``expected`` was read."""

        with self._lock:
            if self._current(key) != expected:
                return False
            self._repository.upsert(
                key, RoundRobinState(id=key, last_worker_id=worker_id, updated_at=utcnow())
            )
            return True

    def _current(self, key: str) -> Optional[str]:
        try:
            return self._repository.get(key).last_worker_id
        except RecordNotFoundError:
            return None


class UnitOfWork:
    """Batch boundary for task and assignment changes.

    Records are copied into an identity map on first load, so mutations stay
    invisible to the repositories until :meth:`commit` writes every staged
    record with a single ``upsert_many`` per repository. Leaving a ``with``
    block through an exception discards the staged changes, including any
    round-robin cursor moves.

    Commits are serialized on ``commit_lock``. A task whose stored
    ``version`` moved since it was loaded, or a cursor moved by another
    session, makes :meth:`commit` raise :class:`ConflictError` before anything
    is written.
    """

    def __init__(
        self,
        tasks: Repository[Task],
        assignments: Repository[Assignment],
        *,
        rotation: Optional[RotationStore] = None,
        commit_lock: Optional[threading.Lock] = None,
    ) -> None:
        self._task_repo = tasks
        self._assignment_repo = assignments
        self._rotation = rotation if rotation is not None else RepositoryRotationStore()
        self._commit_lock = commit_lock if commit_lock is not None else threading.Lock()
        self._tasks: Dict[str, Task] = {}
        self._assignments: Dict[str, Assignment] = {}
        self._dirty_tasks: Dict[str, Task] = {}
        self._dirty_assignments: Dict[str, Assignment] = {}
        self._versions: Dict[str, int] = {}
        self._cursors_read: Dict[str, Optional[str]] = {}
        self._cursors: Dict[str, str] = {}
        self._tasks_loaded = False
        self._assignments_loaded = False

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    def get_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            task = self._track(copy.deepcopy(self._task_repo.get(task_id)))
        return task

    def find_task(self, task_id: str) -> Optional[Task]:
        try:
            return self.get_task(task_id)
        except RecordNotFoundError:
            return None

    def find_tasks(self, predicate: Callable[[Task], bool]) -> List[Task]:
        self._load_all_tasks()
        return [task for task in self._tasks.values() if predicate(task)]

    def save_task(self, task: Task) -> Task:
        self._tasks[task.id] = task
        self._dirty_tasks[task.id] = task
        return task

    def _load_all_tasks(self) -> None:
        if self._tasks_loaded:
            return
        for task in self._task_repo.list():
            if task.id not in self._tasks:
                self._track(copy.deepcopy(task))
        self._tasks_loaded = True

    def _track(self, task: Task) -> Task:
        self._tasks[task.id] = task
        self._versions[task.id] = task.version
        return task

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------
    def find_assignments(
        self, predicate: Callable[[Assignment], bool]
    ) -> List[Assignment]:
        if not self._assignments_loaded:
            for assignment in self._assignment_repo.list():
                if assignment.id not in self._assignments:
                    self._assignments[assignment.id] = copy.deepcopy(assignment)
            self._assignments_loaded = True
        return [item for item in self._assignments.values() if predicate(item)]

    def save_assignment(self, assignment: Assignment) -> Assignment:
        self._assignments[assignment.id] = assignment
        self._dirty_assignments[assignment.id] = assignment
        return assignment

    # ------------------------------------------------------------------
    # Round-robin cursors
    # ------------------------------------------------------------------
    def rotation_cursor(self, key: str) -> Optional[str]:
        """Last worker picked for ``key``, including moves staged here."""

        if key in self._cursors:
            return self._cursors[key]
        if key not in self._cursors_read:
            self._cursors_read[key] = self._rotation.load(key)
        return self._cursors_read[key]

    def stage_rotation(self, key: str, worker_id: str) -> None:
        self.rotation_cursor(key)
        self._cursors[key] = worker_id

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------
    @property
    def pending_changes(self) -> int:
        return len(self._dirty_tasks) + len(self._dirty_assignments) + len(self._cursors)

    def commit(self) -> None:
        with self._commit_lock:
            self._check_versions()
            for key, worker_id in self._cursors.items():
                if not self._rotation.compare_and_set(key, self._cursors_read[key], worker_id):
                    raise ConflictError(f"Round-robin cursor {key!r} moved during this operation")
            if self._dirty_tasks:
                for task in self._dirty_tasks.values():
                    task.version = self._versions.get(task.id, 0) + 1
                self._task_repo.upsert_many(dict(self._dirty_tasks))
            if self._dirty_assignments:
                self._assignment_repo.upsert_many(dict(self._dirty_assignments))
        self._reset()

    def _check_versions(self) -> None:
        for task_id, task in self._dirty_tasks.items():
            try:
                stored: Optional[int] = self._task_repo.get(task_id).version
            except RecordNotFoundError:
                stored = None
            if stored != self._versions.get(task_id):
                raise ConflictError(
                    f"Task {task.task_number} was changed by another operation"
                )

    def rollback(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._tasks.clear()
        self._assignments.clear()
        self._dirty_tasks.clear()
        self._dirty_assignments.clear()
        self._versions.clear()
        self._cursors_read.clear()
        self._cursors.clear()
        self._tasks_loaded = False
        self._assignments_loaded = False


__all__ = [
    "Repository",
    "InMemoryRepository",
    "RotationStore",
    "RepositoryRotationStore",
    "UnitOfWork",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
]
