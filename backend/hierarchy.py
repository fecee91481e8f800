"""
Parent/child (subtask) hierarchy.

Parent links live on the task rows themselves (parent_task_id), so the
hierarchy is an edge collection indexed by child. Cycle checks walk that
index upward from the prospective parent; the walk is bounded by a visited
set and a maximum depth so corrupted data cannot turn it into an endless
loop.
"""

import logging
import math
from collections import deque
from typing import Iterable, Iterator, List, Optional, Set

import config
import models
import schemas
from activity import record_activity
from auth.permissions import Actor, Operation, require_operation
from errors import CycleError, NotFoundError, ValidationError
from store import TaskStore
from time_utils import Deadline, check_deadline

logger = logging.getLogger(__name__)


def iter_ancestor_ids(
    store: TaskStore,
    task_id: int,
    max_depth: Optional[int] = None,
    deadline: Optional[Deadline] = None,
) -> Iterator[int]:
    """
    Yield the ids of a task's ancestors, nearest first.

    Raises:
        CycleError: if the parent chain loops back on itself or is deeper
            than max_depth (both mean the stored hierarchy is corrupt)
    """
    limit = max_depth if max_depth is not None else config.MAX_HIERARCHY_DEPTH
    visited = {task_id}
    current = store.find_task(task_id)
    depth = 0

    while current is not None and current.parent_task_id is not None:
        check_deadline(deadline, "hierarchy walk")
        parent_id = current.parent_task_id

        if parent_id in visited:
            logger.warning(f"Circular parent chain detected involving task {parent_id}")
            raise CycleError(f"Parent chain of task {task_id} is circular")

        depth += 1
        if depth > limit:
            logger.warning(f"Parent chain of task {task_id} exceeds maximum depth {limit}")
            raise CycleError(f"Parent chain of task {task_id} exceeds maximum depth {limit}")

        visited.add(parent_id)
        yield parent_id
        current = store.find_task(parent_id)


def is_ancestor(
    store: TaskStore,
    potential_ancestor_id: int,
    task_id: int,
    deadline: Optional[Deadline] = None,
) -> bool:
    """Check if potential_ancestor_id is a parent, grandparent, etc. of task_id."""
    for ancestor_id in iter_ancestor_ids(store, task_id, deadline=deadline):
        if ancestor_id == potential_ancestor_id:
            logger.debug(f"Task {potential_ancestor_id} is an ancestor of task {task_id}")
            return True
    return False


def collect_descendant_ids(
    store: TaskStore,
    task_ids: Iterable[int],
    deadline: Optional[Deadline] = None,
) -> Set[int]:
    """All transitive subtasks of the given tasks (the roots themselves excluded)."""
    roots = list(task_ids)
    visited = set(roots)
    descendants: Set[int] = set()
    queue = deque(roots)

    while queue:
        check_deadline(deadline, "descendant walk")
        current_id = queue.popleft()
        for child in store.find_children(current_id):
            if child.id not in visited:
                visited.add(child.id)
                descendants.add(child.id)
                queue.append(child.id)

    logger.debug(f"Found {len(descendants)} descendant subtask(s) under {len(roots)} task(s)")
    return descendants


def _validate_attach(
    store: TaskStore,
    parent: models.Task,
    child: models.Task,
    deadline: Optional[Deadline],
) -> None:
    if parent.id == child.id:
        logger.info(f"Self-reference detected: task {child.id} cannot be its own parent")
        raise CycleError("A task cannot be its own subtask")

    # Walking up from the new parent must never reach the child
    if is_ancestor(store, child.id, parent.id, deadline=deadline):
        logger.info(f"Circular subtask detected: task {child.id} is an ancestor of task {parent.id}")
        raise CycleError("Cannot create circular subtask relationship")


def link_subtask(
    store: TaskStore,
    actor: Actor,
    parent: models.Task,
    child: models.Task,
    deadline: Optional[Deadline] = None,
) -> models.Task:
    """
    Validate and apply a parent link inside the caller's transaction.

    Used by attach_subtask and by task creation with a parent id.
    """
    _validate_attach(store, parent, child, deadline)
    check_deadline(deadline, "attach subtask")

    child.parent_task_id = parent.id
    store.save_task(child)

    record_activity(
        store,
        task_id=parent.id,
        actor_id=actor.user_id,
        action=models.ActivityAction.subtask_added,
        description=f'Subtask "{child.title}" added',
        new_value=child.id,
    )
    logger.info(f"Task {child.id} attached as subtask of task {parent.id}")
    return child


def attach_subtask(
    store: TaskStore,
    actor: Actor,
    parent_id: int,
    child_id: int,
    deadline: Optional[Deadline] = None,
) -> models.Task:
    """
    Make child_id a subtask of parent_id (reparenting it if it already has a parent).

    Raises:
        NotFoundError: either task does not exist
        ForbiddenError: actor may not edit both tasks
        CycleError: the link would make a task its own ancestor
    """
    logger.debug(f"User {actor.user_id} attaching task {child_id} under task {parent_id}")

    with store.lock_graph(), store.lock_tasks([parent_id, child_id]), store.transaction():
        parent = store.find_task(parent_id)
        if parent is None:
            logger.info(f"Parent task {parent_id} not found")
            raise NotFoundError("Parent task not found")

        child = store.find_task(child_id)
        if child is None:
            logger.info(f"Task {child_id} not found")
            raise NotFoundError("Task not found")

        require_operation(actor, parent, Operation.EDIT)
        require_operation(actor, child, Operation.EDIT)

        if child.parent_task_id == parent.id:
            logger.debug(f"Task {child_id} is already a subtask of task {parent_id}")
            return child

        return link_subtask(store, actor, parent, child, deadline=deadline)


def detach_subtask(
    store: TaskStore,
    actor: Actor,
    child_id: int,
    deadline: Optional[Deadline] = None,
) -> models.Task:
    """Turn a subtask back into a top-level task."""
    logger.debug(f"User {actor.user_id} detaching task {child_id} from its parent")

    with store.lock_tasks([child_id]), store.transaction():
        child = store.find_task(child_id)
        if child is None:
            logger.info(f"Task {child_id} not found")
            raise NotFoundError("Task not found")

        require_operation(actor, child, Operation.EDIT)

        if child.parent_task_id is None:
            raise ValidationError("Task is not a subtask")

        check_deadline(deadline, "detach subtask")
        parent = store.find_task(child.parent_task_id)
        old_parent_id = child.parent_task_id
        child.parent_task_id = None
        store.save_task(child)

        parent_title = parent.title if parent is not None else f"#{old_parent_id}"
        record_activity(
            store,
            task_id=child.id,
            actor_id=actor.user_id,
            action=models.ActivityAction.updated,
            description=f'Detached from parent task "{parent_title}"',
            old_value=old_parent_id,
        )

    logger.info(f"Task {child_id} detached from task {old_parent_id}")
    return child


def list_subtasks(store: TaskStore, task_id: int) -> List[models.Task]:
    if store.find_task(task_id) is None:
        raise NotFoundError("Task not found")
    return store.find_children(task_id)


def compute_progress(store: TaskStore, task_id: int) -> schemas.TaskProgress:
    """
    Completion of a task's direct subtasks.

    Only direct children count (no recursive roll-up); a child is complete
    when its status is DONE. percent is rounded half up and 0 when the task
    has no subtasks.
    """
    if store.find_task(task_id) is None:
        logger.info(f"Task {task_id} not found")
        raise NotFoundError("Task not found")

    subtasks = store.find_children(task_id)
    total = len(subtasks)
    completed = sum(1 for s in subtasks if s.status == models.TaskStatus.DONE)
    percent = math.floor(100 * completed / total + 0.5) if total else 0

    logger.debug(f"Task {task_id} progress: {completed}/{total} subtasks completed ({percent}%)")
    return schemas.TaskProgress(task_id=task_id, completed=completed, total=total, percent=percent)
