"""
Bulk mutations over many tasks.

Every bulk operation runs in two phases:

Phase 1 pre-validates ALL tasks (existence, per-task authorization, and
operation-specific checks) and collects one error per failing task id. If
any error was found the whole request is rejected with PartialFailureError
and nothing has been written.

Phase 2 applies the change to every task in one transaction: one batch
update plus one batch insert of activity records in the order the task ids
were supplied. A storage failure rolls back both.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import config
import models
import schemas
from activity import record_activities
from attachments import delete_attachment_files, stored_filenames
from auth.permissions import Actor, Operation, can_operate, require_bulk_capability
from dependency_graph import bulk_is_blocked
from errors import NotFoundError, PartialFailureError, ValidationError
from hierarchy import collect_descendant_ids, iter_ancestor_ids
from store import TaskStore
from time_utils import Deadline, check_deadline, utc_now

logger = logging.getLogger(__name__)


def normalize_task_ids(task_ids: Sequence[int]) -> List[int]:
    """De-duplicate task ids (preserving order) and enforce the batch size limit."""
    unique_ids = list(dict.fromkeys(task_ids))
    if len(unique_ids) != len(task_ids):
        logger.debug(f"De-duplicated to {len(unique_ids)} unique task IDs")

    if len(unique_ids) > config.MAX_BULK_TASKS:
        logger.info(f"Batch size {len(unique_ids)} exceeds limit of {config.MAX_BULK_TASKS}")
        raise ValidationError(f"Maximum {config.MAX_BULK_TASKS} tasks per bulk operation")
    return unique_ids


def _bulk_error(task_id: int, error: str, error_code: str) -> Dict:
    return schemas.BulkOperationError(task_id=task_id, error=error, error_code=error_code).model_dump()


def _prevalidate(
    store: TaskStore,
    actor: Actor,
    task_ids: List[int],
    operation: Operation,
    check_permissions: bool = True,
) -> Tuple[Dict[int, models.Task], List[Dict]]:
    """
    Phase 1 checks shared by every bulk operation.

    Returns the tasks keyed by id and the list of per-task errors.
    """
    logger.debug(f"Phase 1: Pre-validating {len(task_ids)} task(s) for bulk {operation.value}")
    tasks_by_id = {task.id: task for task in store.find_tasks(task_ids)}
    errors = []

    for task_id in task_ids:
        task = tasks_by_id.get(task_id)
        if task is None:
            logger.debug(f"Task {task_id} not found")
            errors.append(_bulk_error(task_id, "Task not found", "NOT_FOUND"))
        elif check_permissions and not can_operate(actor, task, operation):
            errors.append(_bulk_error(
                task_id, f"Insufficient permissions to {operation.value} task {task_id}", "FORBIDDEN"
            ))

    return tasks_by_id, errors


def _reject(operation: Operation, errors: List[Dict]) -> None:
    logger.info(f"Pre-validation failed for bulk {operation.value}: {len(errors)} task(s) rejected")
    raise PartialFailureError(
        f"Bulk {operation.value} rejected: {len(errors)} task(s) failed validation",
        errors=errors,
    )


def bulk_status_change(
    store: TaskStore,
    actor: Actor,
    task_ids: Sequence[int],
    new_status: models.TaskStatus,
    deadline: Optional[Deadline] = None,
) -> schemas.BulkOperationResult:
    """
    Set the status of many tasks with all-or-nothing semantics.

    Every task needs STATUS permission. Tasks already in new_status are
    reported in the result but get no activity record.
    """
    task_ids = normalize_task_ids(task_ids)
    logger.info(f"Bulk status change of {len(task_ids)} task(s) to {new_status.value} by user {actor.user_id}")

    if not task_ids:
        return schemas.BulkOperationResult(success=True, updated_count=0, task_ids=[])

    with store.lock_tasks(task_ids), store.transaction():
        tasks_by_id, errors = _prevalidate(store, actor, task_ids, Operation.STATUS)
        if errors:
            _reject(Operation.STATUS, errors)

        old_status = {task_id: tasks_by_id[task_id].status for task_id in task_ids}
        changed_ids = [task_id for task_id in task_ids if old_status[task_id] != new_status]

        # Phase 2: apply in one transaction
        check_deadline(deadline, "bulk status change")
        logger.debug(f"Phase 2: Updating {len(changed_ids)} task(s)")
        store.batch_update_tasks(changed_ids, {"status": new_status, "updated_at": utc_now()})
        record_activities(store, [
            (
                task_id, actor.user_id, models.ActivityAction.status_changed,
                f"Bulk update: status {old_status[task_id].value} → {new_status.value}",
                old_status[task_id], new_status,
            )
            for task_id in changed_ids
        ])

    logger.info(f"Successfully bulk updated status of {len(changed_ids)} task(s)")
    return schemas.BulkOperationResult(
        success=True,
        updated_count=len(changed_ids),
        task_ids=task_ids,
        results=[
            schemas.BulkTaskResult(task_id=task_id, old_value=old_status[task_id].value, new_value=new_status.value)
            for task_id in task_ids
        ],
    )


def bulk_assign(
    store: TaskStore,
    actor: Actor,
    task_ids: Sequence[int],
    assignee_id: int,
    deadline: Optional[Deadline] = None,
) -> schemas.BulkOperationResult:
    """
    Assign many tasks to one user with all-or-nothing semantics.

    Requires the ADMIN or TEAM_LEADER role. For TEAM tasks the assignee must
    be an active member of the task's team.
    """
    require_bulk_capability(actor, Operation.ASSIGN)
    task_ids = normalize_task_ids(task_ids)
    logger.info(f"Bulk assigning {len(task_ids)} task(s) to user {assignee_id} by user {actor.user_id}")

    if not task_ids:
        return schemas.BulkOperationResult(success=True, updated_count=0, task_ids=[])

    with store.lock_tasks(task_ids), store.transaction():
        assignee = store.find_user(assignee_id)
        if assignee is None or not assignee.is_active:
            logger.info(f"Assignee {assignee_id} not found or inactive")
            raise NotFoundError("Assignee not found")

        tasks_by_id, errors = _prevalidate(
            store, actor, task_ids, Operation.ASSIGN,
            check_permissions=config.BULK_PER_TASK_AUTHORIZATION,
        )

        for task_id in task_ids:
            task = tasks_by_id.get(task_id)
            if task is None or task.type != models.TaskType.TEAM:
                continue
            membership = store.find_membership(assignee_id, task.team_id)
            if membership is None or not membership.is_active:
                logger.debug(f"Assignee {assignee_id} is not an active member of team {task.team_id}")
                errors.append(_bulk_error(
                    task_id, f"Assignee is not an active member of team {task.team_id}", "ASSIGNEE_NOT_IN_TEAM"
                ))

        if errors:
            _reject(Operation.ASSIGN, errors)

        old_assignee = {task_id: tasks_by_id[task_id].assignee_id for task_id in task_ids}
        changed_ids = [task_id for task_id in task_ids if old_assignee[task_id] != assignee_id]

        check_deadline(deadline, "bulk assign")
        logger.debug(f"Phase 2: Assigning {len(changed_ids)} task(s)")
        store.batch_update_tasks(changed_ids, {"assignee_id": assignee_id, "updated_at": utc_now()})
        record_activities(store, [
            (
                task_id, actor.user_id, models.ActivityAction.assigned,
                f"Bulk update: assignee {old_assignee[task_id] or 'unassigned'} → {assignee.name}",
                old_assignee[task_id], assignee_id,
            )
            for task_id in changed_ids
        ])

    logger.info(f"Successfully bulk assigned {len(changed_ids)} task(s) to user {assignee_id}")
    return schemas.BulkOperationResult(
        success=True,
        updated_count=len(changed_ids),
        task_ids=task_ids,
        results=[
            schemas.BulkTaskResult(
                task_id=task_id,
                old_value=str(old_assignee[task_id]) if old_assignee[task_id] is not None else None,
                new_value=str(assignee_id),
            )
            for task_id in task_ids
        ],
    )


def bulk_delete(
    store: TaskStore,
    actor: Actor,
    task_ids: Sequence[int],
    upload_dir: Optional[Path] = None,
    deadline: Optional[Deadline] = None,
) -> schemas.BulkDeleteResult:
    """
    Delete multiple tasks in a single transaction.

    Cascade delete removes subtasks (recursively), dependency edges touching
    any deleted task, activity records and attachment rows. Surviving tasks
    that lose a blocking edge get a dependency_removed record. Attachment
    files are removed from disk after commit, best-effort.

    Returns information about cascade-deleted subtasks and tasks that became
    unblocked.
    """
    require_bulk_capability(actor, Operation.DELETE)
    task_ids = normalize_task_ids(task_ids)
    logger.info(f"Bulk deleting {len(task_ids)} task(s) by user {actor.user_id}")

    if not task_ids:
        return schemas.BulkDeleteResult(
            success=True, deleted_count=0, deleted_task_ids=[], cascade_deleted_count=0, affected_tasks=[]
        )

    with store.lock_graph(), store.lock_tasks(task_ids), store.transaction():
        tasks_by_id, errors = _prevalidate(
            store, actor, task_ids, Operation.DELETE,
            check_permissions=config.BULK_PER_TASK_AUTHORIZATION,
        )
        if errors:
            _reject(Operation.DELETE, errors)

        outcome = delete_task_trees(store, actor, [tasks_by_id[task_id] for task_id in task_ids], deadline)

    delete_attachment_files(outcome.filenames, upload_dir)

    logger.info(
        f"Successfully bulk deleted {len(task_ids)} task(s), "
        f"cascade-deleted {len(outcome.descendant_ids)} subtask(s), "
        f"unblocked {len(outcome.unblocked_ids)} task(s)"
    )
    return schemas.BulkDeleteResult(
        success=True,
        deleted_count=len(task_ids),
        deleted_task_ids=task_ids,
        cascade_deleted_count=len(outcome.descendant_ids),
        affected_tasks=outcome.unblocked_ids,
    )


@dataclass
class DeletionOutcome:
    descendant_ids: Set[int] = field(default_factory=set)
    unblocked_ids: List[int] = field(default_factory=list)
    filenames: List[str] = field(default_factory=list)  # Attachment files to remove after commit


def delete_task_trees(
    store: TaskStore,
    actor: Actor,
    tasks: List[models.Task],
    deadline: Optional[Deadline] = None,
) -> DeletionOutcome:
    """
    Delete tasks with their subtask trees inside the caller's transaction.

    The caller holds the graph lock and the task locks and has already
    authorized every task. Attachment files are NOT removed here: the
    returned filenames must be deleted only after the transaction commits.
    """
    task_ids = [task.id for task in tasks]
    descendants = collect_descendant_ids(store, task_ids, deadline=deadline)
    requested = set(task_ids)
    # Roots nested under another root go with their ancestor
    nested_roots = {
        task.id for task in tasks
        if any(a in requested for a in iter_ancestor_ids(store, task.id, deadline=deadline))
    }
    all_ids = set(task_ids) | descendants
    logger.debug(f"Will cascade-delete {len(descendants)} subtask(s)")

    # Edges from deleted blocking tasks to tasks that survive
    severed = []
    for blocking_id in sorted(all_ids):
        check_deadline(deadline, "delete tasks")
        for edge in store.find_edges(blocking_id=blocking_id):
            if edge.dependent_task_id not in all_ids:
                severed.append(edge)
    blocking_titles = {task.id: task.title for task in store.find_tasks([e.blocking_task_id for e in severed])}
    lost_blockers: Dict[int, List[int]] = {}
    for edge in severed:
        lost_blockers.setdefault(edge.dependent_task_id, []).append(edge.blocking_task_id)

    candidate_ids = list(lost_blockers)
    blocked_before = bulk_is_blocked(store, candidate_ids)

    filenames = stored_filenames(store.find_attachments(sorted(all_ids)))

    check_deadline(deadline, "delete tasks")
    logger.debug("Phase 2: Deleting tasks in transaction")
    for task in tasks:
        if task.id not in nested_roots:
            store.delete_task(task)

    # One record per surviving task, however many of its blockers went away
    record_activities(store, [
        (
            dependent_id, actor.user_id, models.ActivityAction.dependency_removed,
            "Blocking task(s) deleted: " + ", ".join(f'"{blocking_titles[b]}"' for b in blocking_ids),
            ",".join(str(b) for b in blocking_ids), None,
        )
        for dependent_id, blocking_ids in lost_blockers.items()
    ])

    blocked_after = bulk_is_blocked(store, candidate_ids)
    unblocked_ids = [
        task_id for task_id in candidate_ids
        if blocked_before.get(task_id, False) and not blocked_after.get(task_id, False)
    ]
    logger.debug(f"After deletion, {len(unblocked_ids)} task(s) actually became unblocked")

    return DeletionOutcome(descendant_ids=descendants, unblocked_ids=unblocked_ids, filenames=filenames)
