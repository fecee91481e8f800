"""
Blocking-dependency graph between tasks.

An edge (dependent, blocking) means the dependent task waits on the blocking
task. The edge set must stay acyclic, free of self-edges and free of
duplicate pairs; add_dependency validates all three before inserting, under
the graph lock, so the reachability check and the insert happen as one
critical section.
"""

import logging
from collections import defaultdict, deque
from typing import Dict, Iterable, List, Optional

import models
from activity import record_activity
from auth.permissions import Actor, Operation, require_operation
from errors import CycleError, DuplicateEdgeError, NotFoundError, SelfDependencyError
from store import TaskStore
from time_utils import Deadline, check_deadline

logger = logging.getLogger(__name__)


def _depends_on_index(store: TaskStore) -> Dict[int, List[int]]:
    """Map each dependent task id to the ids of the tasks blocking it."""
    index: Dict[int, List[int]] = defaultdict(list)
    for edge in store.find_edges():
        index[edge.dependent_task_id].append(edge.blocking_task_id)
    return index


def would_create_cycle(
    store: TaskStore,
    dependent_id: int,
    blocking_id: int,
    deadline: Optional[Deadline] = None,
) -> bool:
    """
    Check if adding "dependent_id depends on blocking_id" would close a cycle.

    Uses BFS from blocking_id along depends-on edges. If dependent_id is
    reachable, blocking_id already (transitively) waits on dependent_id and
    the new edge would make the two wait on each other.
    """
    logger.debug(f"Checking circular dependency: dependent={dependent_id}, blocking={blocking_id}")

    if dependent_id == blocking_id:
        return True

    index = _depends_on_index(store)
    visited = set()
    queue = deque([blocking_id])

    while queue:
        check_deadline(deadline, "dependency cycle check")
        current_id = queue.popleft()

        if current_id in visited:
            continue
        visited.add(current_id)

        for next_id in index.get(current_id, []):
            if next_id == dependent_id:
                logger.info(
                    f"Circular dependency detected: task {blocking_id} already depends on task {dependent_id}"
                )
                return True
            queue.append(next_id)

    logger.debug(f"No circular dependency for dependent={dependent_id}, blocking={blocking_id} "
                 f"({len(visited)} task(s) visited)")
    return False


def find_edge(store: TaskStore, dependent_id: int, blocking_id: int) -> Optional[models.TaskDependency]:
    edges = store.find_edges(dependent_id=dependent_id, blocking_id=blocking_id)
    return edges[0] if edges else None


def insert_dependency(
    store: TaskStore,
    actor: Actor,
    dependent: models.Task,
    blocking: models.Task,
    deadline: Optional[Deadline] = None,
) -> models.TaskDependency:
    """
    Validate and insert one edge inside the caller's transaction.

    The caller must hold the graph lock. Used by add_dependency and by task
    creation with depends_on ids.
    """
    if dependent.id == blocking.id:
        logger.info(f"Self-dependency rejected for task {dependent.id}")
        raise SelfDependencyError("A task cannot depend on itself")

    if find_edge(store, dependent.id, blocking.id) is not None:
        logger.info(f"Dependency already exists: {blocking.id} -> {dependent.id}")
        raise DuplicateEdgeError("Dependency already exists")

    if would_create_cycle(store, dependent.id, blocking.id, deadline=deadline):
        raise CycleError("Cannot create dependency: would create a circular dependency")

    check_deadline(deadline, "add dependency")
    edge = store.insert_edge(dependent.id, blocking.id)

    record_activity(
        store,
        task_id=dependent.id,
        actor_id=actor.user_id,
        action=models.ActivityAction.dependency_added,
        description=f'Now depends on "{blocking.title}"',
        new_value=blocking.id,
    )
    logger.info(f"Created dependency: task {blocking.id} blocks task {dependent.id}")
    return edge


def add_dependency(
    store: TaskStore,
    actor: Actor,
    dependent_id: int,
    blocking_id: int,
    deadline: Optional[Deadline] = None,
) -> models.TaskDependency:
    """
    Record that dependent_id cannot proceed until blocking_id is finished.

    Validation order: both tasks exist, actor may edit the dependent and view
    the blocking task, no self-edge, no duplicate pair, no cycle.

    Raises:
        NotFoundError, ForbiddenError, SelfDependencyError,
        DuplicateEdgeError, CycleError
    """
    logger.debug(f"User {actor.user_id} adding dependency: blocking={blocking_id}, dependent={dependent_id}")

    with store.lock_graph(), store.transaction():
        dependent = store.find_task(dependent_id)
        if dependent is None:
            logger.info(f"Dependent task {dependent_id} not found")
            raise NotFoundError("Task not found")

        blocking = store.find_task(blocking_id)
        if blocking is None:
            logger.info(f"Blocking task {blocking_id} not found")
            raise NotFoundError("Blocking task not found")

        require_operation(actor, dependent, Operation.EDIT)
        require_operation(actor, blocking, Operation.VIEW)

        return insert_dependency(store, actor, dependent, blocking, deadline=deadline)


def _remove_edge(store: TaskStore, actor: Actor, edge: models.TaskDependency) -> None:
    dependent = store.find_task(edge.dependent_task_id)
    if dependent is None:
        raise NotFoundError("Task not found")

    require_operation(actor, dependent, Operation.EDIT)

    blocking = store.find_task(edge.blocking_task_id)
    blocking_id = edge.blocking_task_id
    store.delete_edge(edge)

    blocking_title = blocking.title if blocking is not None else f"#{blocking_id}"
    record_activity(
        store,
        task_id=dependent.id,
        actor_id=actor.user_id,
        action=models.ActivityAction.dependency_removed,
        description=f'No longer depends on "{blocking_title}"',
        old_value=blocking_id,
    )
    logger.info(f"Removed dependency: task {blocking_id} no longer blocks task {dependent.id}")


def remove_dependency(store: TaskStore, actor: Actor, edge_id: int) -> None:
    """Delete an edge by id (requires edit access to the dependent task)."""
    logger.debug(f"User {actor.user_id} removing dependency {edge_id}")

    with store.lock_graph(), store.transaction():
        edge = store.find_edge(edge_id)
        if edge is None:
            logger.info(f"Dependency {edge_id} not found")
            raise NotFoundError("Dependency not found")
        _remove_edge(store, actor, edge)


def remove_dependency_between(store: TaskStore, actor: Actor, dependent_id: int, blocking_id: int) -> None:
    """Delete the edge addressed by its endpoints."""
    with store.lock_graph(), store.transaction():
        edge = find_edge(store, dependent_id, blocking_id)
        if edge is None:
            logger.info(f"Dependency not found: {blocking_id} -> {dependent_id}")
            raise NotFoundError("Dependency not found")
        _remove_edge(store, actor, edge)


def list_blocking(store: TaskStore, task_id: int) -> List[models.Task]:
    """Tasks that task_id waits on, in edge creation order."""
    if store.find_task(task_id) is None:
        raise NotFoundError("Task not found")

    blocking_ids = [edge.blocking_task_id for edge in store.find_edges(dependent_id=task_id)]
    by_id = {task.id: task for task in store.find_tasks(blocking_ids)}
    return [by_id[i] for i in blocking_ids if i in by_id]


def list_dependents(store: TaskStore, task_id: int) -> List[models.Task]:
    """Tasks waiting on task_id, in edge creation order."""
    if store.find_task(task_id) is None:
        raise NotFoundError("Task not found")

    dependent_ids = [edge.dependent_task_id for edge in store.find_edges(blocking_id=task_id)]
    by_id = {task.id: task for task in store.find_tasks(dependent_ids)}
    return [by_id[i] for i in dependent_ids if i in by_id]


def is_blocked(store: TaskStore, task_id: int) -> bool:
    """
    Calculate if a task is blocked by checking if it has any blocking
    dependencies that are neither DONE nor CANCELLED.
    """
    blocking_ids = [edge.blocking_task_id for edge in store.find_edges(dependent_id=task_id)]
    if not blocking_ids:
        logger.debug(f"Task {task_id} has no blocking dependencies")
        return False

    blocking_tasks = store.find_tasks(blocking_ids)
    incomplete = [t for t in blocking_tasks if t.status not in models.TERMINAL_STATUSES]
    logger.debug(f"Task {task_id} is_blocked={bool(incomplete)} ({len(incomplete)} incomplete blockers)")
    return bool(incomplete)


def bulk_is_blocked(store: TaskStore, task_ids: Iterable[int]) -> Dict[int, bool]:
    """
    Calculate is_blocked for several tasks with one edge lookup per task and
    one status lookup overall.
    """
    task_ids = list(task_ids)
    if not task_ids:
        return {}

    blocking_by_task = {
        task_id: [edge.blocking_task_id for edge in store.find_edges(dependent_id=task_id)]
        for task_id in task_ids
    }
    all_blocking_ids = {i for ids in blocking_by_task.values() for i in ids}
    status_by_id = {task.id: task.status for task in store.find_tasks(list(all_blocking_ids))}

    result = {
        task_id: any(
            status_by_id.get(blocking_id) not in models.TERMINAL_STATUSES
            for blocking_id in blocking_ids
            if blocking_id in status_by_id
        )
        for task_id, blocking_ids in blocking_by_task.items()
    }
    logger.debug(f"Bulk calculation complete: {sum(result.values())} of {len(task_ids)} tasks are blocked")
    return result
