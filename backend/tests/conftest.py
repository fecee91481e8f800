"""
Test configuration and fixtures for the task engine tests.

Provides:
- Test database with SQLite in-memory for speed
- A SqlAlchemyTaskStore over that database with its own lock registry
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users (one per role), a team with members, and tasks
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Generator, Dict

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
from database import Base, get_db, enable_sqlite_foreign_keys
from main import app
import models
from auth.permissions import Actor, actor_for_user
from store import SqlAlchemyTaskStore, TaskLockRegistry
from time_utils import utc_now

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def store(test_db: Session) -> SqlAlchemyTaskStore:
    """Task store over the test session, isolated from the process-wide locks."""
    return SqlAlchemyTaskStore(test_db, locks=TaskLockRegistry())


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_user(db: Session, name: str, email: str, role: models.UserRole) -> models.User:
    user = models.User(name=name, email=email, role=role, is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created {role.value} user with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def admin_user(test_db: Session) -> models.User:
    return _create_user(test_db, "Admin User", "admin@test.com", models.UserRole.ADMIN)


@pytest.fixture(scope="function")
def leader_user(test_db: Session) -> models.User:
    return _create_user(test_db, "Leader User", "leader@test.com", models.UserRole.TEAM_LEADER)


@pytest.fixture(scope="function")
def regular_user(test_db: Session) -> models.User:
    return _create_user(test_db, "Regular User", "user@test.com", models.UserRole.USER)


@pytest.fixture(scope="function")
def another_user(test_db: Session) -> models.User:
    """A user with no team memberships, for multi-user scenarios."""
    return _create_user(test_db, "Another User", "another@test.com", models.UserRole.USER)


@pytest.fixture(scope="function")
def team(test_db: Session, leader_user: models.User, regular_user: models.User) -> models.Team:
    """
    Create a test team led by leader_user, with leader_user and regular_user
    as active members.
    """
    team = models.Team(name="Test Team", leader_id=leader_user.id, is_active=True)
    test_db.add(team)
    test_db.commit()
    test_db.refresh(team)

    for user in (leader_user, regular_user):
        test_db.add(models.TeamMember(team_id=team.id, user_id=user.id, is_active=True))
    test_db.commit()

    logger.info(f"Created test team with ID: {team.id}")
    return team


def make_task(db: Session, creator: models.User, title: str, **kwargs) -> models.Task:
    """Insert a task row directly, bypassing the service layer."""
    task = models.Task(title=title, creator_id=creator.id, **kwargs)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def make_edge(db: Session, dependent: models.Task, blocking: models.Task) -> models.TaskDependency:
    edge = models.TaskDependency(dependent_task_id=dependent.id, blocking_task_id=blocking.id)
    db.add(edge)
    db.commit()
    db.refresh(edge)
    return edge


def actor_for(db: Session, user: models.User) -> Actor:
    """Actor with the user's current role and memberships."""
    db.refresh(user)
    return actor_for_user(user)


def activity_actions(db: Session, task_id: int):
    """Activity tags of a task, oldest first."""
    rows = db.query(models.TaskActivity)\
        .filter(models.TaskActivity.task_id == task_id)\
        .order_by(models.TaskActivity.id)\
        .all()
    return [row.action for row in rows]


def create_auth_token(user: models.User, expires_delta: timedelta = None, token_type: str = "access") -> str:
    """
    Mint a bearer token the way the identity service does.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override (default 15 minutes)
        token_type: Value of the "type" claim

    Returns:
        JWT string signed with the configured key
    """
    logger.debug(f"Creating auth token for user {user.id}")
    token_data = {
        "sub": str(user.id),
        "role": user.role.value,
        "email": user.email,
        "type": token_type,
        "exp": utc_now() + (expires_delta or timedelta(minutes=15)),
    }
    return jwt.encode(token_data, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def auth_headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}
