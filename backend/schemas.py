from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from datetime import datetime
from typing import Optional, List

from models import TaskPriority, TaskStatus, TaskType, UserRole


# User schemas
class UserSummary(BaseModel):
    id: int
    name: str
    email: EmailStr
    role: UserRole

    class Config:
        from_attributes = True


# Task Attachment schemas
class AttachmentBase(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    original_name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., min_length=1, max_length=100)
    size: int = Field(..., ge=0)

    @field_validator("filename")
    @classmethod
    def check_stored_name(cls, v: str) -> str:
        # Stored name, relative to the upload directory
        if "\x00" in v or "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("filename must be a plain file name")
        return v


class AttachmentCreate(AttachmentBase):
    pass


class Attachment(AttachmentBase):
    id: int
    task_id: int
    uploaded_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Task Activity schemas
class TaskActivity(BaseModel):
    """
    One entry of a task's audit trail.

    Note: Database stores action as VARCHAR(50); ActivityAction lists the
    tags the engine writes, but readers accept any string.
    """
    id: int
    task_id: int
    user_id: Optional[int] = None
    action: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    description: str
    created_at: datetime

    class Config:
        from_attributes = True


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0, description="Estimated hours (must be >= 0)")
    actual_hours: Optional[float] = Field(None, ge=0, description="Actual hours spent (must be >= 0)")


class TaskCreate(TaskBase):
    status: TaskStatus = TaskStatus.TODO
    type: TaskType = TaskType.PERSONAL
    team_id: Optional[int] = None
    assignee_id: Optional[int] = None
    parent_task_id: Optional[int] = None
    depends_on: List[int] = Field(default_factory=list, description="IDs of tasks the new task waits on")

    @model_validator(mode="after")
    def check_team_consistency(self):
        if self.type == TaskType.PERSONAL and self.team_id is not None:
            raise ValueError("Personal tasks cannot belong to a team")
        if self.type == TaskType.TEAM and self.team_id is None:
            raise ValueError("Team tasks require a team_id")
        return self


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0, description="Estimated hours (must be >= 0)")
    actual_hours: Optional[float] = Field(None, ge=0, description="Actual hours spent (must be >= 0)")

    @field_validator("title", "priority")
    @classmethod
    def reject_explicit_null(cls, v, info):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v


class StatusChange(BaseModel):
    status: TaskStatus


class AssigneeChange(BaseModel):
    assignee_id: Optional[int] = None  # None unassigns


class Task(TaskBase):
    id: int
    status: TaskStatus
    type: TaskType
    creator_id: Optional[int]
    assignee_id: Optional[int] = None
    team_id: Optional[int] = None
    parent_task_id: Optional[int] = None
    creator: Optional[UserSummary] = None
    assignee: Optional[UserSummary] = None
    attachments: List[Attachment] = Field(default_factory=list)
    is_blocked: bool = False
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TaskSummary(BaseModel):
    id: int
    title: str
    status: TaskStatus
    priority: TaskPriority
    type: TaskType
    creator_id: Optional[int] = None
    assignee_id: Optional[int] = None
    team_id: Optional[int] = None
    parent_task_id: Optional[int] = None
    due_date: Optional[datetime] = None

    class Config:
        from_attributes = True


# Subtask schemas
class SubtaskAttach(BaseModel):
    child_task_id: int


class TaskProgress(BaseModel):
    task_id: int
    completed: int
    total: int
    percent: int = Field(..., ge=0, le=100)


# Task Dependency schemas
class DependencyCreate(BaseModel):
    blocking_task_id: int


class TaskDependency(BaseModel):
    id: int
    dependent_task_id: int
    blocking_task_id: int
    created_at: datetime

    class Config:
        from_attributes = True


class TaskDependencies(BaseModel):
    task_id: int
    blocking: List[TaskSummary] = []    # Tasks this one waits on
    dependents: List[TaskSummary] = []  # Tasks waiting on this one
    is_blocked: bool = False


# Bulk operation schemas
class BulkOperationError(BaseModel):
    task_id: int
    error: str
    error_code: str  # NOT_FOUND, FORBIDDEN, ASSIGNEE_NOT_IN_TEAM


class BulkTaskResult(BaseModel):
    task_id: int
    old_value: Optional[str] = None
    new_value: Optional[str] = None


class BulkOperationResult(BaseModel):
    success: bool
    updated_count: int = 0
    task_ids: List[int] = []
    results: List[BulkTaskResult] = []


class BulkDeleteResult(BaseModel):
    success: bool
    deleted_count: int
    deleted_task_ids: List[int]
    cascade_deleted_count: int  # Subtasks auto-deleted
    affected_tasks: List[int]  # Tasks that became unblocked


class BulkStatusChange(BaseModel):
    task_ids: List[int]
    status: TaskStatus


class BulkAssign(BaseModel):
    task_ids: List[int]
    assignee_id: int


class BulkDelete(BaseModel):
    task_ids: List[int]


# Error payload rendered by the TaskCoreError handler
class ErrorResponse(BaseModel):
    detail: str
    code: str
    errors: List[BulkOperationError] = []
