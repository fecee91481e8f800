from fastapi import FastAPI, Depends, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List
import logging

import config
import models
import schemas
import activity
import bulk_operations
import dependency_graph
import hierarchy
import task_service
from auth.dependencies import get_current_actor
from auth.permissions import Actor
from database import get_db, engine, Base
from errors import TaskCoreError, ValidationError
from store import SqlAlchemyTaskStore
from time_utils import Deadline

# Configure logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Task Core API",
    description="Task hierarchy, dependency graph and bulk mutations for team task tracking",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3001"
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TaskCoreError)
async def task_core_error_handler(request: Request, exc: TaskCoreError):
    payload = schemas.ErrorResponse(**exc.to_dict()).model_dump()
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies get the same payload shape as core ValidationErrors."""
    messages = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    error = ValidationError("; ".join(messages) or "Invalid request")
    logger.info(f"{request.method} {request.url.path} rejected: {error.code} {error.message}")
    payload = schemas.ErrorResponse(**error.to_dict()).model_dump()
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload)


def get_store(db: Session = Depends(get_db)) -> SqlAlchemyTaskStore:
    return SqlAlchemyTaskStore(db)


def operation_deadline() -> Deadline:
    return Deadline(config.OPERATION_TIMEOUT_SECONDS)


def task_response(store: SqlAlchemyTaskStore, task: models.Task) -> schemas.Task:
    response = schemas.Task.model_validate(task)
    return response.model_copy(update={"is_blocked": dependency_graph.is_blocked(store, task.id)})


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Bulk Operations ==============

@app.post("/api/tasks/bulk/status", response_model=schemas.BulkOperationResult)
def bulk_status_change(
    request: schemas.BulkStatusChange,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    """Change the status of many tasks (all-or-nothing)."""
    return bulk_operations.bulk_status_change(store, actor, request.task_ids, request.status, deadline=deadline)


@app.post("/api/tasks/bulk/assign", response_model=schemas.BulkOperationResult)
def bulk_assign(
    request: schemas.BulkAssign,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    """Assign many tasks to one user (ADMIN or TEAM_LEADER)."""
    return bulk_operations.bulk_assign(store, actor, request.task_ids, request.assignee_id, deadline=deadline)


@app.post("/api/tasks/bulk/delete", response_model=schemas.BulkDeleteResult)
def bulk_delete(
    request: schemas.BulkDelete,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    """Delete many tasks with their subtasks (ADMIN or TEAM_LEADER)."""
    return bulk_operations.bulk_delete(
        store, actor, request.task_ids, upload_dir=config.UPLOAD_DIR, deadline=deadline
    )


# ============== Tasks ==============

@app.post("/api/tasks", response_model=schemas.Task)
def create_task(
    task: schemas.TaskCreate,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    db_task = task_service.create_task(store, actor, task, deadline=deadline)
    return task_response(store, db_task)


@app.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(
    task_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
):
    return task_response(store, task_service.get_task(store, actor, task_id))


@app.put("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    db_task = task_service.update_task(store, actor, task_id, task_update, deadline=deadline)
    return task_response(store, db_task)


@app.patch("/api/tasks/{task_id}/status", response_model=schemas.Task)
def change_status(
    task_id: int,
    status_change: schemas.StatusChange,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    db_task = task_service.change_status(store, actor, task_id, status_change.status, deadline=deadline)
    return task_response(store, db_task)


@app.put("/api/tasks/{task_id}/assignee", response_model=schemas.Task)
def assign_task(
    task_id: int,
    assignee_change: schemas.AssigneeChange,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    db_task = task_service.assign_task(store, actor, task_id, assignee_change.assignee_id, deadline=deadline)
    return task_response(store, db_task)


@app.delete("/api/tasks/{task_id}")
def delete_task(
    task_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    task_service.delete_task(store, actor, task_id, upload_dir=config.UPLOAD_DIR, deadline=deadline)
    return {"message": "Task deleted"}


@app.get("/api/tasks/{task_id}/activity", response_model=List[schemas.TaskActivity])
def get_task_activity(
    task_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
):
    """Audit trail of a task, newest first."""
    return [schemas.TaskActivity.model_validate(a) for a in activity.get_activity(store, actor, task_id)]


# ============== Subtasks ==============

@app.get("/api/tasks/{task_id}/subtasks", response_model=List[schemas.TaskSummary])
def get_task_subtasks(
    task_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
):
    task_service.get_task(store, actor, task_id)
    return [schemas.TaskSummary.model_validate(t) for t in hierarchy.list_subtasks(store, task_id)]


@app.post("/api/tasks/{task_id}/subtasks", response_model=schemas.Task)
def attach_subtask(
    task_id: int,
    subtask: schemas.SubtaskAttach,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    """Make an existing task a subtask of task_id (edit access to both required)."""
    child = hierarchy.attach_subtask(store, actor, task_id, subtask.child_task_id, deadline=deadline)
    return task_response(store, child)


@app.delete("/api/tasks/{task_id}/parent", response_model=schemas.Task)
def detach_subtask(
    task_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    child = hierarchy.detach_subtask(store, actor, task_id, deadline=deadline)
    return task_response(store, child)


@app.get("/api/tasks/{task_id}/progress", response_model=schemas.TaskProgress)
def get_task_progress(
    task_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
):
    """Completion percentage of the direct subtasks."""
    task_service.get_task(store, actor, task_id)
    return hierarchy.compute_progress(store, task_id)


# ============== Dependencies ==============

@app.get("/api/tasks/{task_id}/dependencies", response_model=schemas.TaskDependencies)
def get_task_dependencies(
    task_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
):
    task_service.get_task(store, actor, task_id)
    return schemas.TaskDependencies(
        task_id=task_id,
        blocking=[schemas.TaskSummary.model_validate(t) for t in dependency_graph.list_blocking(store, task_id)],
        dependents=[schemas.TaskSummary.model_validate(t) for t in dependency_graph.list_dependents(store, task_id)],
        is_blocked=dependency_graph.is_blocked(store, task_id),
    )


@app.post("/api/tasks/{task_id}/dependencies", response_model=schemas.TaskDependency)
def add_task_dependency(
    task_id: int,
    dependency: schemas.DependencyCreate,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
    deadline: Deadline = Depends(operation_deadline),
):
    """Make task_id wait on the blocking task."""
    edge = dependency_graph.add_dependency(store, actor, task_id, dependency.blocking_task_id, deadline=deadline)
    return schemas.TaskDependency.model_validate(edge)


@app.delete("/api/tasks/{task_id}/dependencies/{blocking_id}")
def remove_task_dependency(
    task_id: int,
    blocking_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
):
    dependency_graph.remove_dependency_between(store, actor, task_id, blocking_id)
    return {"message": "Dependency removed"}


@app.delete("/api/dependencies/{edge_id}")
def remove_dependency(
    edge_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
):
    dependency_graph.remove_dependency(store, actor, edge_id)
    return {"message": "Dependency removed"}


# ============== Attachments ==============

@app.post("/api/tasks/{task_id}/attachments", response_model=schemas.Attachment)
def add_attachment(
    task_id: int,
    attachment: schemas.AttachmentCreate,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
):
    """Register an already-stored file on a task."""
    db_attachment = task_service.add_attachment(store, actor, task_id, attachment)
    return schemas.Attachment.model_validate(db_attachment)


@app.delete("/api/tasks/{task_id}/attachments/{attachment_id}")
def delete_attachment(
    task_id: int,
    attachment_id: int,
    actor: Actor = Depends(get_current_actor),
    store: SqlAlchemyTaskStore = Depends(get_store),
):
    task_service.remove_attachment(store, actor, task_id, attachment_id, upload_dir=config.UPLOAD_DIR)
    return {"message": "Attachment deleted"}


if __name__ == "__main__":
    import uvicorn

    # Development convenience; production schemas are managed outside the app
    Base.metadata.create_all(bind=engine)
    uvicorn.run(app, host="0.0.0.0", port=8000)
