"""
Append-only activity trail.

Every core operation that mutates task state records exactly one
TaskActivity per affected task through this module. Records are never
updated or deleted here; they disappear only when their task is deleted.
"""

import logging
from typing import Iterable, List, Optional, Tuple

import models
from auth.permissions import Actor, Operation, require_operation
from errors import NotFoundError
from store import TaskStore

logger = logging.getLogger(__name__)


def _stringify(value) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def build_activity(
    task_id: int,
    actor_id: Optional[int],
    action: models.ActivityAction,
    description: str,
    old_value=None,
    new_value=None,
) -> models.TaskActivity:
    return models.TaskActivity(
        task_id=task_id,
        user_id=actor_id,
        action=action.value,
        old_value=_stringify(old_value),
        new_value=_stringify(new_value),
        description=description,
    )


def record_activity(
    store: TaskStore,
    task_id: int,
    actor_id: Optional[int],
    action: models.ActivityAction,
    description: str,
    old_value=None,
    new_value=None,
) -> models.TaskActivity:
    """
    Append one activity record for a task.

    Must be called inside the same store transaction as the mutation it
    describes, so the record and the change commit or roll back together.

    Args:
        store: Task store
        task_id: ID of the task the change applies to
        actor_id: ID of the user who triggered the change
        action: Activity tag
        description: Human-readable summary
        old_value: Previous value (optional, stringified)
        new_value: New value (optional, stringified)

    Returns:
        The flushed TaskActivity
    """
    logger.debug(f"Recording activity: action={action.value}, task_id={task_id}, actor_id={actor_id}")
    activity = store.insert_activity(
        build_activity(task_id, actor_id, action, description, old_value, new_value)
    )
    logger.debug(f"Activity recorded: id={activity.id}, action={action.value}")
    return activity


def record_activities(
    store: TaskStore,
    entries: Iterable[Tuple[int, Optional[int], models.ActivityAction, str, Optional[str], Optional[str]]],
) -> List[models.TaskActivity]:
    """
    Append a batch of activity records in one write.

    Entries are (task_id, actor_id, action, description, old_value, new_value)
    tuples; records are inserted in the order given so the audit log of a
    bulk operation follows the order of the supplied task ids.
    """
    activities = [
        build_activity(task_id, actor_id, action, description, old_value, new_value)
        for task_id, actor_id, action, description, old_value, new_value in entries
    ]
    if not activities:
        return []
    inserted = store.insert_activities(activities)
    logger.debug(f"Recorded {len(inserted)} activity record(s) in one batch")
    return inserted


def get_activity(store: TaskStore, actor: Actor, task_id: int) -> List[models.TaskActivity]:
    """Activity of one task, newest first (requires view access)."""
    task = store.find_task(task_id)
    if task is None:
        logger.info(f"Task {task_id} not found")
        raise NotFoundError("Task not found")

    require_operation(actor, task, Operation.VIEW)

    activities = store.list_activity(task_id)
    logger.info(f"Found {len(activities)} activity record(s) for task {task_id}")
    return activities
