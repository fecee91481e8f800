"""
Error taxonomy for the task relationship engine.

Every error carries a stable machine-readable code and the HTTP status the
API layer should answer with. Route handlers never build error payloads
themselves; the exception handler in main.py renders any TaskCoreError.
"""

from typing import Any, Dict, List, Optional


class TaskCoreError(Exception):
    """Base class for all errors raised by the core."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class NotFoundError(TaskCoreError):
    """Referenced task, edge, user or team does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class ForbiddenError(TaskCoreError):
    """Authorization denied for the requested operation."""

    code = "FORBIDDEN"
    status_code = 403


class ValidationError(TaskCoreError):
    """Malformed input, e.g. a TEAM task without a team id."""

    code = "VALIDATION_ERROR"
    status_code = 400


class SelfDependencyError(TaskCoreError):
    code = "SELF_DEPENDENCY"
    status_code = 400


class DuplicateEdgeError(TaskCoreError):
    code = "DUPLICATE_EDGE"
    status_code = 409


class CycleError(TaskCoreError):
    """Raised when a parent link or dependency edge would close a cycle."""

    code = "CYCLE_DETECTED"
    status_code = 409


class DeadlineExceededError(TaskCoreError):
    """The caller-supplied deadline passed before the operation could write."""

    code = "DEADLINE_EXCEEDED"
    status_code = 504


class StorageError(TaskCoreError):
    """Wraps an underlying database failure so it never leaks undecorated."""

    code = "STORAGE_ERROR"
    status_code = 500


class PartialFailureError(TaskCoreError):
    """
    A bulk operation was rejected for a subset of its task ids.

    Bulk operations are all-or-nothing, so when this is raised no task in the
    batch has been touched. `errors` lists one entry per failing task id with
    its own error code (NOT_FOUND, FORBIDDEN, ...).
    """

    code = "PARTIAL_FAILURE"
    status_code = 400

    def __init__(self, message: str, errors: List[Dict[str, Any]]):
        self.errors = errors
        super().__init__(message)

    @property
    def failed_task_ids(self) -> List[int]:
        return [error["task_id"] for error in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["errors"] = self.errors
        return payload
