"""
Single-task operations: creation, reads, field edits, status and assignee
changes, deletion and attachment metadata.

Structural changes (parent links, dependency edges) are delegated to the
hierarchy and dependency_graph modules so their invariants are enforced in
one place, also when a task is created with a parent or with depends_on ids.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

import models
import schemas
from activity import record_activity
from attachments import delete_attachment_files
from auth.permissions import Actor, Operation, can_operate, require_operation
from bulk_operations import delete_task_trees
from dependency_graph import insert_dependency
from errors import ForbiddenError, NotFoundError, ValidationError
from hierarchy import link_subtask
from store import TaskStore
from time_utils import Deadline, check_deadline

logger = logging.getLogger(__name__)


def _get_task_or_404(store: TaskStore, task_id: int) -> models.Task:
    task = store.find_task(task_id)
    if task is None:
        logger.info(f"Task {task_id} not found")
        raise NotFoundError("Task not found")
    return task


def _require_active_user(store: TaskStore, user_id: int) -> models.User:
    user = store.find_user(user_id)
    if user is None or not user.is_active:
        logger.info(f"Assignee {user_id} not found or inactive")
        raise NotFoundError(f"Assignee with ID {user_id} not found")
    return user


def _is_active_member(store: TaskStore, user_id: int, team_id: int) -> bool:
    membership = store.find_membership(user_id, team_id)
    return membership is not None and membership.is_active


def _validate_assignee(store: TaskStore, assignee_id: int, task_type: models.TaskType,
                       team_id: Optional[int]) -> models.User:
    assignee = _require_active_user(store, assignee_id)
    if task_type == models.TaskType.TEAM and not _is_active_member(store, assignee_id, team_id):
        logger.info(f"Assignee {assignee_id} is not an active member of team {team_id}")
        raise ValidationError(
            f"Cannot assign task to user {assignee.email}: user is not a member of this team"
        )
    return assignee


# Columns declared NOT NULL; an explicit null in an update is rejected
REQUIRED_FIELDS = ("title", "priority")


def _same_value(old, new) -> bool:
    """Compare a stored column value with an incoming one of a different Python type."""
    if isinstance(old, Decimal) and isinstance(new, (int, float)):
        return old == Decimal(str(new))
    if isinstance(old, datetime) and isinstance(new, datetime):
        # SQLite hands back naive datetimes for timezone-aware columns
        if old.tzinfo is None:
            old = old.replace(tzinfo=timezone.utc)
        if new.tzinfo is None:
            new = new.replace(tzinfo=timezone.utc)
    return old == new


def _format_value(value) -> str:
    if value is None:
        return "empty"
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


# ============== Create & Read ==============

def create_task(
    store: TaskStore,
    actor: Actor,
    data: schemas.TaskCreate,
    deadline: Optional[Deadline] = None,
) -> models.Task:
    """
    Create a task owned by the actor.

    TEAM tasks need an existing active team the actor belongs to (unless
    ADMIN); an assignee on a TEAM task must be an active team member. A
    parent_task_id links the new task under that parent (EDIT on the parent
    required) and depends_on ids become blocking edges.
    """
    logger.info(f"User {actor.user_id} creating task: {data.title}")

    if data.type == models.TaskType.TEAM:
        if data.team_id is None:
            raise ValidationError("Team tasks require a team_id")

        team = store.find_team(data.team_id)
        if team is None:
            logger.info(f"Team {data.team_id} not found")
            raise NotFoundError("Team not found")
        if not team.is_active:
            raise ValidationError("Team is not active")

        if not actor.is_admin and data.team_id not in actor.led_team_ids \
                and not _is_active_member(store, actor.user_id, data.team_id):
            logger.info(f"User {actor.user_id} is not a member of team {data.team_id}")
            raise ForbiddenError("Only team members can create team tasks")
    elif data.team_id is not None:
        raise ValidationError("Personal tasks cannot belong to a team")

    if data.assignee_id is not None:
        _validate_assignee(store, data.assignee_id, data.type, data.team_id)

    depends_on = list(dict.fromkeys(data.depends_on))

    with store.lock_graph(), store.transaction():
        parent = None
        if data.parent_task_id is not None:
            parent = store.find_task(data.parent_task_id)
            if parent is None:
                logger.info(f"Parent task {data.parent_task_id} not found")
                raise NotFoundError("Parent task not found")
            require_operation(actor, parent, Operation.EDIT)

        blocking_tasks = []
        for blocking_id in depends_on:
            blocking = store.find_task(blocking_id)
            if blocking is None:
                logger.info(f"Blocking task {blocking_id} not found")
                raise NotFoundError("Blocking task not found")
            require_operation(actor, blocking, Operation.VIEW)
            blocking_tasks.append(blocking)

        check_deadline(deadline, "create task")

        # creator_id always comes from the actor, never from request data
        task_data = data.model_dump(exclude={"parent_task_id", "depends_on"})
        task = store.save_task(models.Task(**task_data, creator_id=actor.user_id))

        record_activity(
            store,
            task_id=task.id,
            actor_id=actor.user_id,
            action=models.ActivityAction.created,
            description=f'Task "{task.title}" created',
        )

        if parent is not None:
            link_subtask(store, actor, parent, task, deadline=deadline)

        for blocking in blocking_tasks:
            insert_dependency(store, actor, task, blocking, deadline=deadline)

    logger.info(f"Task created successfully: id={task.id}")
    return task


def get_task(store: TaskStore, actor: Actor, task_id: int) -> models.Task:
    task = _get_task_or_404(store, task_id)
    require_operation(actor, task, Operation.VIEW)
    return task


# ============== Mutations ==============

def update_task(
    store: TaskStore,
    actor: Actor,
    task_id: int,
    data: schemas.TaskUpdate,
    deadline: Optional[Deadline] = None,
) -> models.Task:
    """Edit plain fields. One `updated` record lists every field that changed."""
    logger.info(f"User {actor.user_id} updating task {task_id}")
    update_data = data.model_dump(exclude_unset=True)

    for field_name in REQUIRED_FIELDS:
        if field_name in update_data and update_data[field_name] is None:
            logger.info(f"Rejected null {field_name} for task {task_id}")
            raise ValidationError(f"{field_name} cannot be null")

    with store.lock_tasks([task_id]), store.transaction():
        task = _get_task_or_404(store, task_id)
        require_operation(actor, task, Operation.EDIT)

        changes = []
        for field_name, new_value in update_data.items():
            old_value = getattr(task, field_name)
            if not _same_value(old_value, new_value):
                changes.append((field_name, old_value, new_value))
                setattr(task, field_name, new_value)

        if not changes:
            logger.debug(f"No changes for task {task_id}")
            return task

        check_deadline(deadline, "update task")
        store.save_task(task)

        description = "Updated: " + ", ".join(
            f"{name}: {_format_value(old)} → {_format_value(new)}" for name, old, new in changes
        )
        record_activity(
            store,
            task_id=task.id,
            actor_id=actor.user_id,
            action=models.ActivityAction.updated,
            description=description,
            old_value=", ".join(name for name, _, _ in changes),
        )

    logger.info(f"Task {task_id} updated successfully ({len(changes)} field(s))")
    return task


def change_status(
    store: TaskStore,
    actor: Actor,
    task_id: int,
    status: models.TaskStatus,
    deadline: Optional[Deadline] = None,
) -> models.Task:
    with store.lock_tasks([task_id]), store.transaction():
        task = _get_task_or_404(store, task_id)
        require_operation(actor, task, Operation.STATUS)

        old_status = task.status
        if old_status == status:
            logger.debug(f"Task {task_id} already has status {status.value}")
            return task

        check_deadline(deadline, "change status")
        task.status = status
        store.save_task(task)

        record_activity(
            store,
            task_id=task.id,
            actor_id=actor.user_id,
            action=models.ActivityAction.status_changed,
            description=f"Status changed from {old_status.value} to {status.value}",
            old_value=old_status,
            new_value=status,
        )

    logger.info(f"Task {task_id} status changed: {old_status.value} -> {status.value}")
    return task


def assign_task(
    store: TaskStore,
    actor: Actor,
    task_id: int,
    assignee_id: Optional[int],
    deadline: Optional[Deadline] = None,
) -> models.Task:
    """Set or clear (assignee_id=None) the assignee of a task."""
    with store.lock_tasks([task_id]), store.transaction():
        task = _get_task_or_404(store, task_id)
        require_operation(actor, task, Operation.ASSIGN)

        old_assignee_id = task.assignee_id
        if old_assignee_id == assignee_id:
            logger.debug(f"Task {task_id} assignee unchanged")
            return task

        assignee = None
        if assignee_id is not None:
            assignee = _validate_assignee(store, assignee_id, task.type, task.team_id)

        check_deadline(deadline, "assign task")
        task.assignee_id = assignee_id
        store.save_task(task)

        if assignee is not None:
            action = models.ActivityAction.assigned
            description = f"Assigned to {assignee.name}"
        else:
            action = models.ActivityAction.unassigned
            description = "Assignee removed"

        record_activity(
            store,
            task_id=task.id,
            actor_id=actor.user_id,
            action=action,
            description=description,
            old_value=old_assignee_id,
            new_value=assignee_id,
        )

    logger.info(f"Task {task_id} assignee changed: {old_assignee_id} -> {assignee_id}")
    return task


def delete_task(
    store: TaskStore,
    actor: Actor,
    task_id: int,
    upload_dir: Optional[Path] = None,
    deadline: Optional[Deadline] = None,
) -> None:
    """
    Delete a task with its subtasks, edges, activity and attachments.

    Attachment files are removed from disk after commit, best-effort.
    """
    logger.debug(f"User {actor.user_id} deleting task {task_id}")

    with store.lock_graph(), store.lock_tasks([task_id]), store.transaction():
        task = _get_task_or_404(store, task_id)
        require_operation(actor, task, Operation.DELETE)
        outcome = delete_task_trees(store, actor, [task], deadline)

    delete_attachment_files(outcome.filenames, upload_dir)
    logger.info(
        f"Task {task_id} deleted by user {actor.user_id} "
        f"(cascade-deleted {len(outcome.descendant_ids)} subtask(s))"
    )


# ============== Attachments ==============

def add_attachment(
    store: TaskStore,
    actor: Actor,
    task_id: int,
    data: schemas.AttachmentCreate,
) -> models.TaskAttachment:
    """Register metadata of a file already stored by the upload layer."""
    with store.lock_tasks([task_id]), store.transaction():
        task = _get_task_or_404(store, task_id)
        require_operation(actor, task, Operation.EDIT)

        attachment = store.save_attachment(models.TaskAttachment(
            task_id=task.id,
            filename=data.filename,
            original_name=data.original_name,
            mime_type=data.mime_type,
            size=data.size,
            uploaded_by=actor.user_id,
        ))

        record_activity(
            store,
            task_id=task.id,
            actor_id=actor.user_id,
            action=models.ActivityAction.attachment_added,
            description=f'Attachment "{data.original_name}" added',
            new_value=attachment.id,
        )

    logger.info(f"Attachment {attachment.id} added to task {task_id}")
    return attachment


def remove_attachment(
    store: TaskStore,
    actor: Actor,
    task_id: int,
    attachment_id: int,
    upload_dir: Optional[Path] = None,
) -> None:
    """Delete an attachment (uploader or anyone who may edit the task)."""
    logger.debug(f"Deleting attachment {attachment_id} from task {task_id}")

    with store.lock_tasks([task_id]), store.transaction():
        attachment = store.find_attachment(attachment_id)
        if attachment is None or attachment.task_id != task_id:
            raise NotFoundError("Attachment not found")

        task = _get_task_or_404(store, task_id)
        if attachment.uploaded_by != actor.user_id and not can_operate(actor, task, Operation.EDIT):
            raise ForbiddenError(f"Insufficient permissions to remove attachment {attachment_id}")

        # Save metadata before the row is gone
        filename = attachment.filename
        original_name = attachment.original_name
        store.delete_attachment(attachment)

        record_activity(
            store,
            task_id=task.id,
            actor_id=actor.user_id,
            action=models.ActivityAction.attachment_removed,
            description=f'Attachment "{original_name}" removed',
            old_value=attachment_id,
        )

    delete_attachment_files([filename], upload_dir)
    logger.info(f"Successfully deleted attachment {attachment_id} from task {task_id}")
