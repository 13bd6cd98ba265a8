"""
Pytest configuration and fixtures for the item store tests
"""

import os
from decimal import Decimal

import pytest
from sqlalchemy.pool import NullPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"

from app.db.config import StoreConfig, create_session_factory, create_store_engine, init_store
from app.db.executor import AccessPatternExecutor
from app.models.entities import Category, Course, Lesson, User
from app.repositories.lms_repo import LmsRepository
from app.services.enrollment_service import EnrollmentService


@pytest.fixture
def store_config(tmp_path):
    """Config for a throwaway SQLite file with instant retries"""
    return StoreConfig(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'items.db'}",
        base_backoff=0.0,
        backoff_cap=0.0,
    )


@pytest.fixture
async def executor(store_config):
    engine = create_store_engine(store_config, poolclass=NullPool)
    await init_store(engine)
    yield AccessPatternExecutor(store_config, create_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def repo(executor):
    return LmsRepository(executor)


@pytest.fixture
def service(executor):
    return EnrollmentService(executor)


@pytest.fixture
def sample_user():
    return User(
        user_id="u1",
        email="student@example.com",
        role="student",
        hashed_password="$2b$12$abcdefghijklmnopqrstuv",
        full_name="Sam Student",
    )


@pytest.fixture
def sample_instructor():
    return User(
        user_id="i1",
        email="instructor@example.com",
        role="instructor",
        hashed_password="$2b$12$abcdefghijklmnopqrstuv",
        full_name="Ada Instructor",
    )


@pytest.fixture
def sample_course():
    return Course(
        course_id="c1",
        instructor_id="i1",
        category_id="cat1",
        title="Python for Beginners",
        price=Decimal("49.99"),
    )


@pytest.fixture
async def catalog(repo, sample_user, sample_instructor, sample_course):
    """Student u1, instructor i1, category cat1 and published course c1 with two lessons"""
    await repo.create_user(sample_user)
    await repo.create_user(sample_instructor)
    await repo.create_category(Category(category_id="cat1", name="Programming"))
    await repo.create_course(sample_course)
    await repo.add_lesson(Lesson(lesson_id="l1", course_id="c1", order_index=0, title="Welcome", duration=300))
    await repo.add_lesson(Lesson(lesson_id="l2", course_id="c1", order_index=1, title="Variables", duration=900))
    course = await repo.publish_course("c1")
    return {
        "student": sample_user,
        "instructor": sample_instructor,
        "course": course,
    }


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )


# Helper functions for tests
def assert_response_success(response, expected_status=200):
    """Assert that response is successful"""
    assert response.status_code == expected_status, f"Expected {expected_status}, got {response.status_code}: {response.text}"


def assert_response_error(response, expected_status=400, kind=None):
    """Assert that response carries the error envelope"""
    assert response.status_code == expected_status, f"Expected error {expected_status}, got {response.status_code}: {response.text}"
    body = response.json()
    assert body["success"] is False
    assert "timestamp" in body and "path" in body
    if kind is not None:
        assert body["kind"] == kind
