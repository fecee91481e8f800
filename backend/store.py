"""
Persistence boundary for the task engine.

The core operations (hierarchy, dependency graph, bulk mutations, activity
trail) only talk to a TaskStore. SqlAlchemyTaskStore is the implementation
backed by a SQLAlchemy Session; tests and the API layer both use it.

The store also owns the two concurrency primitives the core relies on:
- a transaction scope that commits once at the outermost level and turns
  database failures into StorageError
- a process-wide lock registry serializing writes to the same task ids and
  to the dependency graph as a whole
"""

import logging
import threading
from contextlib import contextmanager, ExitStack
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
from errors import DuplicateEdgeError, StorageError, TaskCoreError

logger = logging.getLogger(__name__)


class TaskLockRegistry:
    """
    Per-task re-entrant locks, created on first use.

    Locks for several tasks are always acquired in ascending id order so two
    bulk operations over overlapping id sets cannot deadlock each other. A
    lock is dropped from the registry once no thread holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # task id -> [lock, number of holders and waiters]
        self._locks: Dict[int, list] = {}
        self.graph_lock = threading.RLock()

    def _checkout(self, task_id: int) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(task_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[task_id] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, task_id: int) -> None:
        with self._guard:
            entry = self._locks[task_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[task_id]

    @contextmanager
    def hold(self, task_ids: Iterable[int]) -> Iterator[None]:
        ordered = sorted(set(task_ids))
        with ExitStack() as stack:
            for task_id in ordered:
                lock = self._checkout(task_id)
                stack.callback(self._checkin, task_id)
                stack.enter_context(lock)
            logger.debug(f"Holding task locks for {len(ordered)} task(s)")
            yield


# Shared by every store in the process
lock_registry = TaskLockRegistry()


class TaskStore(Protocol):
    """Operations the core needs from persistence."""

    def find_task(self, task_id: int) -> Optional[models.Task]: ...

    def find_tasks(self, task_ids: Sequence[int]) -> List[models.Task]: ...

    def find_children(self, task_id: int) -> List[models.Task]: ...

    def save_task(self, task: models.Task) -> models.Task: ...

    def delete_task(self, task: models.Task) -> None: ...

    def batch_update_tasks(self, task_ids: Sequence[int], values: Dict[str, Any]) -> int: ...

    def find_edges(self, dependent_id: Optional[int] = None,
                   blocking_id: Optional[int] = None) -> List[models.TaskDependency]: ...

    def find_edge(self, edge_id: int) -> Optional[models.TaskDependency]: ...

    def insert_edge(self, dependent_id: int, blocking_id: int) -> models.TaskDependency: ...

    def delete_edge(self, edge: models.TaskDependency) -> None: ...

    def insert_activity(self, activity: models.TaskActivity) -> models.TaskActivity: ...

    def insert_activities(self, activities: Sequence[models.TaskActivity]) -> List[models.TaskActivity]: ...

    def list_activity(self, task_id: int) -> List[models.TaskActivity]: ...

    def find_user(self, user_id: int) -> Optional[models.User]: ...

    def find_team(self, team_id: int) -> Optional[models.Team]: ...

    def find_membership(self, user_id: int, team_id: int) -> Optional[models.TeamMember]: ...

    def find_attachments(self, task_ids: Sequence[int]) -> List[models.TaskAttachment]: ...

    def find_attachment(self, attachment_id: int) -> Optional[models.TaskAttachment]: ...

    def save_attachment(self, attachment: models.TaskAttachment) -> models.TaskAttachment: ...

    def delete_attachment(self, attachment: models.TaskAttachment) -> None: ...

    def transaction(self): ...

    def lock_tasks(self, task_ids: Iterable[int]): ...

    def lock_graph(self): ...


class SqlAlchemyTaskStore:
    """TaskStore backed by a SQLAlchemy Session."""

    def __init__(self, db: Session, locks: TaskLockRegistry = lock_registry):
        self.db = db
        self.locks = locks
        self._depth = 0

    # ============== Transactions & Locks ==============

    @contextmanager
    def transaction(self) -> Iterator["SqlAlchemyTaskStore"]:
        """
        Run a unit of work. Only the outermost scope commits; any failure
        rolls back everything written since the outermost scope began.
        """
        self._depth += 1
        outermost = self._depth == 1
        try:
            yield self
            if outermost:
                self.db.commit()
                logger.debug("Transaction committed")
        except TaskCoreError:
            if outermost:
                self.db.rollback()
                logger.debug("Transaction rolled back after a core error")
            raise
        except SQLAlchemyError as e:
            if outermost:
                self.db.rollback()
            logger.error(f"Transaction failed: {str(e)}")
            raise StorageError(f"Storage operation failed: {e.__class__.__name__}") from e
        finally:
            self._depth -= 1

    def lock_tasks(self, task_ids: Iterable[int]):
        return self.locks.hold(task_ids)

    def lock_graph(self):
        return self.locks.graph_lock

    # ============== Tasks ==============

    def find_task(self, task_id: int) -> Optional[models.Task]:
        return self.db.query(models.Task).filter(models.Task.id == task_id).first()

    def find_tasks(self, task_ids: Sequence[int]) -> List[models.Task]:
        if not task_ids:
            return []
        return self.db.query(models.Task).filter(models.Task.id.in_(list(task_ids))).all()

    def find_children(self, task_id: int) -> List[models.Task]:
        return self.db.query(models.Task)\
            .filter(models.Task.parent_task_id == task_id)\
            .order_by(models.Task.id)\
            .all()

    def save_task(self, task: models.Task) -> models.Task:
        self.db.add(task)
        self.db.flush()
        return task

    def delete_task(self, task: models.Task) -> None:
        self.db.delete(task)
        self.db.flush()

    def batch_update_tasks(self, task_ids: Sequence[int], values: Dict[str, Any]) -> int:
        if not task_ids:
            return 0
        count = self.db.query(models.Task)\
            .filter(models.Task.id.in_(list(task_ids)))\
            .update(values, synchronize_session="fetch")
        self.db.flush()
        logger.debug(f"Batch updated {count} task(s) with fields {sorted(values.keys())}")
        return count

    # ============== Dependency Edges ==============

    def find_edges(self, dependent_id: Optional[int] = None,
                   blocking_id: Optional[int] = None) -> List[models.TaskDependency]:
        query = self.db.query(models.TaskDependency)
        if dependent_id is not None:
            query = query.filter(models.TaskDependency.dependent_task_id == dependent_id)
        if blocking_id is not None:
            query = query.filter(models.TaskDependency.blocking_task_id == blocking_id)
        return query.order_by(models.TaskDependency.id).all()

    def find_edge(self, edge_id: int) -> Optional[models.TaskDependency]:
        return self.db.query(models.TaskDependency).filter(models.TaskDependency.id == edge_id).first()

    def insert_edge(self, dependent_id: int, blocking_id: int) -> models.TaskDependency:
        edge = models.TaskDependency(dependent_task_id=dependent_id, blocking_task_id=blocking_id)
        self.db.add(edge)
        try:
            self.db.flush()
        except IntegrityError as e:
            # Unique (dependent, blocking) constraint caught a concurrent insert
            logger.info(f"Unique constraint rejected edge {blocking_id} -> {dependent_id}")
            raise DuplicateEdgeError("Dependency already exists") from e
        return edge

    def delete_edge(self, edge: models.TaskDependency) -> None:
        self.db.delete(edge)
        self.db.flush()

    # ============== Activity ==============

    def insert_activity(self, activity: models.TaskActivity) -> models.TaskActivity:
        self.db.add(activity)
        self.db.flush()
        return activity

    def insert_activities(self, activities: Sequence[models.TaskActivity]) -> List[models.TaskActivity]:
        # add_all keeps list order, so ids are assigned in input order
        self.db.add_all(list(activities))
        self.db.flush()
        return list(activities)

    def list_activity(self, task_id: int) -> List[models.TaskActivity]:
        return self.db.query(models.TaskActivity)\
            .filter(models.TaskActivity.task_id == task_id)\
            .order_by(models.TaskActivity.created_at.desc(), models.TaskActivity.id.desc())\
            .all()

    # ============== Users & Teams ==============

    def find_user(self, user_id: int) -> Optional[models.User]:
        return self.db.query(models.User).filter(models.User.id == user_id).first()

    def find_team(self, team_id: int) -> Optional[models.Team]:
        return self.db.query(models.Team).filter(models.Team.id == team_id).first()

    def find_membership(self, user_id: int, team_id: int) -> Optional[models.TeamMember]:
        return self.db.query(models.TeamMember)\
            .filter(
                models.TeamMember.user_id == user_id,
                models.TeamMember.team_id == team_id
            )\
            .first()

    # ============== Attachments ==============

    def find_attachments(self, task_ids: Sequence[int]) -> List[models.TaskAttachment]:
        if not task_ids:
            return []
        return self.db.query(models.TaskAttachment)\
            .filter(models.TaskAttachment.task_id.in_(list(task_ids)))\
            .all()

    def find_attachment(self, attachment_id: int) -> Optional[models.TaskAttachment]:
        return self.db.query(models.TaskAttachment)\
            .filter(models.TaskAttachment.id == attachment_id)\
            .first()

    def save_attachment(self, attachment: models.TaskAttachment) -> models.TaskAttachment:
        self.db.add(attachment)
        self.db.flush()
        return attachment

    def delete_attachment(self, attachment: models.TaskAttachment) -> None:
        self.db.delete(attachment)
        self.db.flush()
