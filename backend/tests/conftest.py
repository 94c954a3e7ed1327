"""
Test configuration and fixtures.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users, teams, projects, and recurring tasks
"""

import os
import sys
import logging
from datetime import datetime, timedelta, timezone
from typing import Generator, Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Must be set before main is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ["ENABLE_JOBS"] = "false"

from database import Database, get_db
from main import app
import models
from auth.security import hash_password, create_access_token

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

SQLALCHEMY_TEST_DATABASE_URL = "sqlite://"


@pytest.fixture(scope="function")
def database() -> Generator[Database, None, None]:
    """Fresh in-memory SQLite database handle for each test."""
    handle = Database(SQLALCHEMY_TEST_DATABASE_URL).open()
    try:
        yield handle
    finally:
        handle.close()


@pytest.fixture(scope="function")
def test_db(database: Database) -> Generator[Session, None, None]:
    db = database.session()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.
    """
    def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _make_user(db: Session, name: str, email: str, password: str, role: str) -> models.User:
    user = models.User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
        email_verified=True
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created {role} user {email} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def admin_user(test_db: Session) -> models.User:
    return _make_user(test_db, "Admin User", "admin@test.com", "admin123", "admin")


@pytest.fixture(scope="function")
def regular_user(test_db: Session) -> models.User:
    return _make_user(test_db, "Regular User", "user@test.com", "user1234", "editor")


@pytest.fixture(scope="function")
def another_user(test_db: Session) -> models.User:
    return _make_user(test_db, "Another User", "another@test.com", "another123", "editor")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.
    """
    token_data = {
        "sub": str(user.id),
        "role": user.role,
    }
    return create_access_token(token_data, expires_delta)


def auth_header(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def auth_headers(admin_user: models.User) -> Dict[str, str]:
    return auth_header(admin_user)


@pytest.fixture(scope="function")
def user_auth_headers(regular_user: models.User) -> Dict[str, str]:
    return auth_header(regular_user)


@pytest.fixture(scope="function")
def another_user_auth_headers(another_user: models.User) -> Dict[str, str]:
    return auth_header(another_user)


@pytest.fixture(scope="function")
def team(test_db: Session, admin_user: models.User) -> models.Team:
    """
    Create a test team with admin as creator and team admin.
    """
    team = models.Team(name="Test Team", description="A team for testing", created_by=admin_user.id)
    test_db.add(team)
    test_db.commit()
    test_db.refresh(team)

    test_db.add(models.TeamMember(team_id=team.id, user_id=admin_user.id, role="admin"))
    test_db.commit()
    return team


@pytest.fixture(scope="function")
def personal_project(test_db: Session, regular_user: models.User) -> models.Project:
    """
    Create a personal project (no team) owned by the regular user.
    """
    project = models.Project(
        name="Personal Project",
        description="A personal project",
        author_id=regular_user.id,
        team_id=None
    )
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)

    test_db.add(models.ProjectMember(project_id=project.id, user_id=regular_user.id, role="owner"))
    test_db.commit()
    return project


@pytest.fixture(scope="function")
def team_project(test_db: Session, admin_user: models.User, team: models.Team) -> models.Project:
    project = models.Project(
        name="Team Project",
        description="A team project",
        author_id=admin_user.id,
        team_id=team.id
    )
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)
    return project


def make_recurring_task(db: Session, user: models.User, **overrides) -> models.RecurringTask:
    """Insert a recurring task definition directly, bypassing the API."""
    values = dict(
        title="Daily standup",
        description="Team sync",
        user_id=user.id,
        frequency="daily",
        interval=1,
        days_of_week=[],
        days_of_month=[],
        months_of_year=[],
        start_date=datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
        end_date=None,
        active=True,
        created_tasks_count=0,
        task_template={"title": "Standup", "priority": "medium", "tags": ["meeting"]},
    )
    values.update(overrides)
    definition = models.RecurringTask(**values)
    db.add(definition)
    db.commit()
    db.refresh(definition)
    return definition
