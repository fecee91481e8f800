"""
Task-level permission checking utilities.

This module decides whether an actor may perform an operation on a task,
based on the actor's global role, creatorship, assignment, and active team
membership. The decision functions are pure: they read only the Actor and
Task passed in and never raise. The `require_*` wrappers raise
ForbiddenError for callers that want to abort instead of skip.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, List, Sequence

from errors import ForbiddenError
from models import Task, TaskType, User, UserRole

logger = logging.getLogger(__name__)


class Operation(str, enum.Enum):
    VIEW = "view"
    COMMENT = "comment"
    EDIT = "edit"
    STATUS = "status"
    ASSIGN = "assign"
    DELETE = "delete"


# Grants per relationship between actor and task
CREATOR_OPERATIONS = frozenset({
    Operation.VIEW, Operation.COMMENT, Operation.EDIT,
    Operation.STATUS, Operation.ASSIGN, Operation.DELETE,
})
ASSIGNEE_OPERATIONS = frozenset({Operation.VIEW, Operation.COMMENT, Operation.STATUS})
TEAM_MEMBER_OPERATIONS = frozenset({Operation.VIEW, Operation.COMMENT, Operation.STATUS})
TEAM_LEADER_OPERATIONS = TEAM_MEMBER_OPERATIONS | {Operation.ASSIGN, Operation.DELETE}

# Bulk variants of these operations need ADMIN or TEAM_LEADER outright
BULK_RESTRICTED_OPERATIONS = frozenset({Operation.ASSIGN, Operation.DELETE})
BULK_CAPABLE_ROLES = frozenset({UserRole.ADMIN, UserRole.TEAM_LEADER})


@dataclass(frozen=True)
class Actor:
    """
    Authenticated identity requesting an operation.

    team_ids holds teams with an active membership; led_team_ids holds
    active teams the user leads. Both are supplied by the identity layer.
    """
    user_id: int
    role: UserRole = UserRole.USER
    team_ids: FrozenSet[int] = field(default_factory=frozenset)
    led_team_ids: FrozenSet[int] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass
class AuthorizationDecision:
    allowed: List[Task] = field(default_factory=list)
    denied: List[Task] = field(default_factory=list)

    @property
    def all_allowed(self) -> bool:
        return not self.denied


def actor_for_user(user: User) -> Actor:
    """
    Build an Actor from a User row and its loaded memberships.

    Example:
        >>> actor = actor_for_user(current_user)
        >>> can_operate(actor, task, Operation.STATUS)
    """
    team_ids = frozenset(
        m.team_id for m in user.memberships
        if m.is_active and (m.team is None or m.team.is_active)
    )
    led_team_ids = frozenset(t.id for t in user.led_teams if t.is_active)
    role = user.role if isinstance(user.role, UserRole) else UserRole(user.role)
    return Actor(user_id=user.id, role=role, team_ids=team_ids, led_team_ids=led_team_ids)


def can_operate(actor: Actor, task: Task, operation: Operation) -> bool:
    """
    Check if an actor may perform an operation on a task.

    Permission sources (in order, first grant wins):
    1. Global ADMIN role (bypasses all checks)
    2. Creator of the task - view, comment, edit, status, assign, delete
    3. Assignee of the task - view, comment, status
    4. Active member of the task's team (TEAM tasks) - view, comment, status
    5. TEAM_LEADER leading or belonging to the task's team - adds assign, delete

    Args:
        actor: Identity requesting the operation
        task: Task the operation targets
        operation: Requested operation

    Returns:
        True if the operation is permitted, False otherwise
    """
    if actor.is_admin:
        logger.debug(f"User {actor.user_id} is admin, granting {operation.value} on task {task.id}")
        return True

    if task.creator_id == actor.user_id and operation in CREATOR_OPERATIONS:
        logger.debug(f"User {actor.user_id} created task {task.id}, granting {operation.value}")
        return True

    if task.assignee_id is not None and task.assignee_id == actor.user_id \
            and operation in ASSIGNEE_OPERATIONS:
        logger.debug(f"User {actor.user_id} is assignee of task {task.id}, granting {operation.value}")
        return True

    if task.type == TaskType.TEAM and task.team_id is not None:
        is_member = task.team_id in actor.team_ids
        if is_member and operation in TEAM_MEMBER_OPERATIONS:
            logger.debug(
                f"User {actor.user_id} is active member of team {task.team_id}, "
                f"granting {operation.value} on task {task.id}"
            )
            return True

        leads_team = is_member or task.team_id in actor.led_team_ids
        if actor.role == UserRole.TEAM_LEADER and leads_team and operation in TEAM_LEADER_OPERATIONS:
            logger.debug(
                f"User {actor.user_id} is team leader over team {task.team_id}, "
                f"granting {operation.value} on task {task.id}"
            )
            return True

    logger.info(f"User {actor.user_id} denied {operation.value} on task {task.id}")
    return False


def can_operate_all(actor: Actor, tasks: Sequence[Task], operation: Operation) -> AuthorizationDecision:
    """Split tasks into allowed and denied lists, preserving input order."""
    decision = AuthorizationDecision()
    for task in tasks:
        if can_operate(actor, task, operation):
            decision.allowed.append(task)
        else:
            decision.denied.append(task)

    logger.debug(
        f"User {actor.user_id} {operation.value} over {len(tasks)} task(s): "
        f"{len(decision.allowed)} allowed, {len(decision.denied)} denied"
    )
    return decision


def has_bulk_capability(actor: Actor, operation: Operation) -> bool:
    """
    Check the role-level capability for a bulk operation.

    Bulk assign and bulk delete require ADMIN or TEAM_LEADER regardless of
    the actor's relationship to the individual tasks. Other bulk operations
    have no role requirement beyond the per-task checks.
    """
    if operation not in BULK_RESTRICTED_OPERATIONS:
        return True
    return actor.role in BULK_CAPABLE_ROLES


def require_operation(actor: Actor, task: Task, operation: Operation) -> None:
    """
    Require permission for an operation on a task, or raise.

    Raises:
        ForbiddenError: if the actor may not perform the operation
    """
    if not can_operate(actor, task, operation):
        raise ForbiddenError(f"Insufficient permissions to {operation.value} task {task.id}")


def require_bulk_capability(actor: Actor, operation: Operation) -> None:
    """
    Raises:
        ForbiddenError: if the actor's role cannot run this bulk operation
    """
    if not has_bulk_capability(actor, operation):
        logger.info(
            f"User {actor.user_id} with role {actor.role.value} lacks capability for bulk {operation.value}"
        )
        raise ForbiddenError(f"Insufficient permissions for bulk {operation.value}")
