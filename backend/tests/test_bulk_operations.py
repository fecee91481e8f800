"""
Tests for bulk status change, bulk assign and bulk delete.

Bulk operations are all-or-nothing: any per-task error rejects the whole
batch with PartialFailureError before a single row is written.
"""

import logging

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

import config
import models
from bulk_operations import bulk_assign, bulk_delete, bulk_status_change, normalize_task_ids
from errors import ForbiddenError, NotFoundError, PartialFailureError, StorageError, ValidationError
from store import SqlAlchemyTaskStore
from tests.conftest import activity_actions, actor_for, make_edge, make_task

logger = logging.getLogger(__name__)


def _status_of(db: Session, task_id: int) -> models.TaskStatus:
    db.expire_all()
    return db.query(models.Task).filter(models.Task.id == task_id).one().status


# ============== Input Normalization ==============


def test_normalize_dedupes_preserving_order():
    assert normalize_task_ids([3, 1, 3, 2, 1]) == [3, 1, 2]


def test_normalize_enforces_batch_limit(monkeypatch):
    monkeypatch.setattr(config, "MAX_BULK_TASKS", 2)

    with pytest.raises(ValidationError):
        normalize_task_ids([1, 2, 3])

    # Duplicates do not count against the limit
    assert normalize_task_ids([1, 2, 2, 1]) == [1, 2]


# ============== Bulk Status ==============


def test_bulk_status_change_records_one_activity_per_task_in_input_order(
    test_db: Session, store: SqlAlchemyTaskStore, admin_user: models.User, regular_user: models.User
):
    tasks = [make_task(test_db, regular_user, f"Task {i}") for i in range(3)]
    task_ids = [tasks[2].id, tasks[0].id, tasks[1].id]

    result = bulk_status_change(store, actor_for(test_db, admin_user), task_ids, models.TaskStatus.DONE)

    assert result.success
    assert result.updated_count == 3
    assert result.task_ids == task_ids
    for task_id in task_ids:
        assert _status_of(test_db, task_id) == models.TaskStatus.DONE

    rows = test_db.query(models.TaskActivity)\
        .filter(models.TaskActivity.action == models.ActivityAction.status_changed.value)\
        .order_by(models.TaskActivity.id)\
        .all()
    assert [row.task_id for row in rows] == task_ids
    assert all(row.user_id == admin_user.id for row in rows)
    assert rows[0].old_value == "TODO"
    assert rows[0].new_value == "DONE"
    logger.info("✓ Bulk status change wrote activity in input order")


def test_bulk_status_change_skips_activity_for_unchanged_tasks(
    test_db: Session, store: SqlAlchemyTaskStore, regular_user: models.User
):
    already_done = make_task(test_db, regular_user, "Done", status=models.TaskStatus.DONE)
    todo = make_task(test_db, regular_user, "Todo")

    result = bulk_status_change(
        store, actor_for(test_db, regular_user), [already_done.id, todo.id], models.TaskStatus.DONE
    )

    assert result.updated_count == 1
    assert result.task_ids == [already_done.id, todo.id]
    assert activity_actions(test_db, already_done.id) == []
    assert activity_actions(test_db, todo.id) == [models.ActivityAction.status_changed.value]


def test_bulk_status_change_rejects_whole_batch(
    test_db: Session, store: SqlAlchemyTaskStore, regular_user: models.User, another_user: models.User
):
    mine = make_task(test_db, regular_user, "Mine")
    theirs = make_task(test_db, another_user, "Theirs")

    with pytest.raises(PartialFailureError) as exc_info:
        bulk_status_change(
            store, actor_for(test_db, regular_user), [mine.id, theirs.id, 9999], models.TaskStatus.DONE
        )

    error = exc_info.value
    assert error.failed_task_ids == [theirs.id, 9999]
    assert [e["error_code"] for e in error.errors] == ["FORBIDDEN", "NOT_FOUND"]
    assert error.to_dict()["code"] == "PARTIAL_FAILURE"

    # Nothing written, not even for the task that passed validation
    assert _status_of(test_db, mine.id) == models.TaskStatus.TODO
    assert activity_actions(test_db, mine.id) == []
    logger.info("✓ Partial failure left every task untouched")


def test_bulk_status_change_empty_list(test_db: Session, store: SqlAlchemyTaskStore, regular_user: models.User):
    result = bulk_status_change(store, actor_for(test_db, regular_user), [], models.TaskStatus.DONE)

    assert result.success
    assert result.updated_count == 0
    assert result.task_ids == []


def test_bulk_status_change_dedupes_ids(test_db: Session, store: SqlAlchemyTaskStore, regular_user: models.User):
    task = make_task(test_db, regular_user, "Task")

    result = bulk_status_change(
        store, actor_for(test_db, regular_user), [task.id, task.id], models.TaskStatus.IN_PROGRESS
    )

    assert result.task_ids == [task.id]
    assert activity_actions(test_db, task.id) == [models.ActivityAction.status_changed.value]


# ============== Bulk Assign ==============


def test_bulk_assign_requires_bulk_capability(
    test_db: Session, store: SqlAlchemyTaskStore, regular_user: models.User, another_user: models.User
):
    task = make_task(test_db, regular_user, "Task")

    with pytest.raises(ForbiddenError):
        bulk_assign(store, actor_for(test_db, regular_user), [task.id], another_user.id)

    test_db.refresh(task)
    assert task.assignee_id is None


def test_bulk_assign_team_tasks_by_leader(
    test_db: Session,
    store: SqlAlchemyTaskStore,
    leader_user: models.User,
    regular_user: models.User,
    team: models.Team,
):
    tasks = [
        make_task(test_db, leader_user, f"Team task {i}", type=models.TaskType.TEAM, team_id=team.id)
        for i in range(2)
    ]

    result = bulk_assign(store, actor_for(test_db, leader_user), [t.id for t in tasks], regular_user.id)

    assert result.updated_count == 2
    assert [r.new_value for r in result.results] == [str(regular_user.id)] * 2
    for task in tasks:
        test_db.refresh(task)
        assert task.assignee_id == regular_user.id
        assert activity_actions(test_db, task.id) == [models.ActivityAction.assigned.value]


def test_bulk_assign_assignee_not_in_team(
    test_db: Session,
    store: SqlAlchemyTaskStore,
    leader_user: models.User,
    another_user: models.User,
    team: models.Team,
):
    team_task = make_task(test_db, leader_user, "Team task", type=models.TaskType.TEAM, team_id=team.id)
    personal = make_task(test_db, leader_user, "Personal")

    with pytest.raises(PartialFailureError) as exc_info:
        bulk_assign(store, actor_for(test_db, leader_user), [personal.id, team_task.id], another_user.id)

    assert exc_info.value.errors == [{
        "task_id": team_task.id,
        "error": f"Assignee is not an active member of team {team.id}",
        "error_code": "ASSIGNEE_NOT_IN_TEAM",
    }]
    test_db.refresh(personal)
    assert personal.assignee_id is None


def test_bulk_assign_unknown_assignee(test_db: Session, store: SqlAlchemyTaskStore, admin_user: models.User):
    task = make_task(test_db, admin_user, "Task")

    with pytest.raises(NotFoundError):
        bulk_assign(store, actor_for(test_db, admin_user), [task.id], 9999)


def test_bulk_assign_checks_each_task_when_enabled(
    test_db: Session,
    store: SqlAlchemyTaskStore,
    leader_user: models.User,
    regular_user: models.User,
    another_user: models.User,
    monkeypatch,
):
    """A leader has no assign grant on someone else's personal task."""
    foreign = make_task(test_db, another_user, "Foreign personal")
    actor = actor_for(test_db, leader_user)

    monkeypatch.setattr(config, "BULK_PER_TASK_AUTHORIZATION", True)
    with pytest.raises(PartialFailureError) as exc_info:
        bulk_assign(store, actor, [foreign.id], regular_user.id)
    assert exc_info.value.errors[0]["error_code"] == "FORBIDDEN"

    monkeypatch.setattr(config, "BULK_PER_TASK_AUTHORIZATION", False)
    result = bulk_assign(store, actor, [foreign.id], regular_user.id)
    assert result.updated_count == 1


# ============== Bulk Delete ==============


def test_bulk_delete_rejected_for_regular_user_before_any_write(
    test_db: Session, store: SqlAlchemyTaskStore, regular_user: models.User
):
    tasks = [make_task(test_db, regular_user, f"Task {i}") for i in range(2)]

    with pytest.raises(ForbiddenError):
        bulk_delete(store, actor_for(test_db, regular_user), [t.id for t in tasks])

    assert test_db.query(models.Task).count() == 2
    logger.info("✓ Regular user cannot bulk delete, even own tasks")


def test_bulk_delete_cascades_and_reports_unblocked(
    test_db: Session, store: SqlAlchemyTaskStore, admin_user: models.User, regular_user: models.User
):
    root = make_task(test_db, regular_user, "Root")
    child = make_task(test_db, regular_user, "Child", parent_task_id=root.id)
    grandchild = make_task(test_db, regular_user, "Grandchild", parent_task_id=child.id)
    survivor = make_task(test_db, regular_user, "Survivor")
    still_blocked = make_task(test_db, regular_user, "Still blocked")
    other_blocker = make_task(test_db, regular_user, "Other blocker")
    make_edge(test_db, survivor, root)
    make_edge(test_db, survivor, grandchild)
    make_edge(test_db, still_blocked, child)
    make_edge(test_db, still_blocked, other_blocker)
    root_id, child_id, grandchild_id = root.id, child.id, grandchild.id

    result = bulk_delete(store, actor_for(test_db, admin_user), [root_id])

    assert result.deleted_count == 1
    assert result.deleted_task_ids == [root_id]
    assert result.cascade_deleted_count == 2
    assert result.affected_tasks == [survivor.id]

    remaining = {t.id for t in test_db.query(models.Task).all()}
    assert remaining == {survivor.id, still_blocked.id, other_blocker.id}
    assert test_db.query(models.TaskDependency)\
        .filter(models.TaskDependency.blocking_task_id.in_([root_id, child_id, grandchild_id]))\
        .count() == 0

    # One record per surviving dependent, however many blockers it lost
    survivor_rows = test_db.query(models.TaskActivity)\
        .filter(models.TaskActivity.task_id == survivor.id)\
        .all()
    assert [r.action for r in survivor_rows] == [models.ActivityAction.dependency_removed.value]
    assert survivor_rows[0].old_value == f"{root_id},{grandchild_id}"
    assert activity_actions(test_db, still_blocked.id) == [models.ActivityAction.dependency_removed.value]
    logger.info("✓ Bulk delete cascaded subtasks and reported unblocked tasks")


@pytest.mark.parametrize("parent_first", [True, False])
def test_bulk_delete_nested_roots(
    test_db: Session,
    store: SqlAlchemyTaskStore,
    admin_user: models.User,
    regular_user: models.User,
    parent_first: bool,
):
    parent = make_task(test_db, regular_user, "Parent")
    child = make_task(test_db, regular_user, "Child", parent_task_id=parent.id)
    task_ids = [parent.id, child.id] if parent_first else [child.id, parent.id]

    result = bulk_delete(store, actor_for(test_db, admin_user), task_ids)

    assert result.deleted_count == 2
    assert test_db.query(models.Task).count() == 0


def test_bulk_delete_missing_task_rejects_batch(
    test_db: Session, store: SqlAlchemyTaskStore, admin_user: models.User
):
    task = make_task(test_db, admin_user, "Task")

    with pytest.raises(PartialFailureError) as exc_info:
        bulk_delete(store, actor_for(test_db, admin_user), [task.id, 4242])

    assert exc_info.value.failed_task_ids == [4242]
    assert test_db.query(models.Task).count() == 1


def test_bulk_delete_removes_attachment_files(
    test_db: Session, store: SqlAlchemyTaskStore, admin_user: models.User, tmp_path
):
    task = make_task(test_db, admin_user, "With file")
    stored = tmp_path / "abc123.pdf"
    stored.write_bytes(b"%PDF-1.4")
    test_db.add(models.TaskAttachment(
        task_id=task.id, filename="abc123.pdf", original_name="report.pdf",
        mime_type="application/pdf", size=8, uploaded_by=admin_user.id,
    ))
    test_db.commit()

    bulk_delete(store, actor_for(test_db, admin_user), [task.id], upload_dir=tmp_path)

    assert not stored.exists()
    assert test_db.query(models.TaskAttachment).count() == 0


def test_bulk_delete_tolerates_missing_files(
    test_db: Session, store: SqlAlchemyTaskStore, admin_user: models.User, tmp_path
):
    task = make_task(test_db, admin_user, "File already gone")
    test_db.add(models.TaskAttachment(
        task_id=task.id, filename="gone.txt", original_name="gone.txt",
        mime_type="text/plain", size=0, uploaded_by=admin_user.id,
    ))
    test_db.commit()

    result = bulk_delete(store, actor_for(test_db, admin_user), [task.id], upload_dir=tmp_path)

    assert result.success
    assert test_db.query(models.Task).count() == 0


def test_bulk_delete_survives_unusable_stored_filename(
    test_db: Session, store: SqlAlchemyTaskStore, admin_user: models.User, tmp_path
):
    """A filename the filesystem rejects outright is logged, not raised, after commit."""
    task = make_task(test_db, admin_user, "Legacy row")
    test_db.add(models.TaskAttachment(
        task_id=task.id, filename="bad\x00name", original_name="bad.txt",
        mime_type="text/plain", size=0, uploaded_by=admin_user.id,
    ))
    test_db.commit()

    result = bulk_delete(store, actor_for(test_db, admin_user), [task.id], upload_dir=tmp_path)

    assert result.success
    assert test_db.query(models.Task).count() == 0


# ============== Atomicity ==============


def _failing_activity_insert(activities):
    raise OperationalError("INSERT INTO task_activities", {}, Exception("disk I/O error"))


def test_bulk_status_change_rolls_back_when_activity_write_fails(
    test_db: Session, store: SqlAlchemyTaskStore, admin_user: models.User, monkeypatch
):
    tasks = [make_task(test_db, admin_user, f"Task {i}") for i in range(3)]
    task_ids = [t.id for t in tasks]
    monkeypatch.setattr(store, "insert_activities", _failing_activity_insert)

    with pytest.raises(StorageError) as exc_info:
        bulk_status_change(store, actor_for(test_db, admin_user), task_ids, models.TaskStatus.DONE)

    assert exc_info.value.code == "STORAGE_ERROR"
    for task_id in task_ids:
        assert _status_of(test_db, task_id) == models.TaskStatus.TODO
    assert test_db.query(models.TaskActivity).count() == 0
    logger.info("✓ Status update rolled back with its activity batch")


def test_bulk_delete_rolls_back_when_activity_write_fails(
    test_db: Session, store: SqlAlchemyTaskStore, admin_user: models.User, monkeypatch, tmp_path
):
    doomed = make_task(test_db, admin_user, "Doomed")
    child = make_task(test_db, admin_user, "Child", parent_task_id=doomed.id)
    dependent = make_task(test_db, admin_user, "Dependent")
    make_edge(test_db, dependent, doomed)
    stored = tmp_path / "keep.bin"
    stored.write_bytes(b"data")
    test_db.add(models.TaskAttachment(
        task_id=doomed.id, filename="keep.bin", original_name="keep.bin",
        mime_type="application/octet-stream", size=4, uploaded_by=admin_user.id,
    ))
    test_db.commit()
    doomed_id, child_id = doomed.id, child.id
    monkeypatch.setattr(store, "insert_activities", _failing_activity_insert)

    with pytest.raises(StorageError):
        bulk_delete(store, actor_for(test_db, admin_user), [doomed_id], upload_dir=tmp_path)

    test_db.expire_all()
    assert {t.id for t in test_db.query(models.Task).all()} == {doomed_id, child_id, dependent.id}
    assert test_db.query(models.TaskDependency).count() == 1
    assert test_db.query(models.TaskAttachment).count() == 1
    # Files are only removed after a successful commit
    assert stored.exists()
