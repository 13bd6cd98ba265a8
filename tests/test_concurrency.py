"""
Concurrent writers racing for the same uniquely constrained item
"""

import asyncio

import pytest

from app.db.errors import ConstraintViolation
from app.models.entities import Enrollment, User


def _outcomes(results):
    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    return successes, failures


@pytest.mark.integration
async def test_concurrent_enrollment_puts_have_one_winner(executor):
    results = await asyncio.gather(
        executor.put_item(Enrollment(user_id="u1", course_id="c1", transaction_id="t1")),
        executor.put_item(Enrollment(user_id="u1", course_id="c1", transaction_id="t2")),
        return_exceptions=True,
    )
    successes, failures = _outcomes(results)
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], ConstraintViolation)

    stored = await executor.get_by_key("USER#u1", "ENROLLMENT#c1")
    assert stored.transaction_id == successes[0].transaction_id


@pytest.mark.integration
async def test_concurrent_signups_with_one_email(executor):
    results = await asyncio.gather(
        executor.put_item(User(user_id="u1", email="same@example.com", hashed_password="h")),
        executor.put_item(User(user_id="u2", email="SAME@example.com", hashed_password="h")),
        return_exceptions=True,
    )
    successes, failures = _outcomes(results)
    assert len(successes) == 1
    assert isinstance(failures[0], ConstraintViolation)


@pytest.mark.integration
async def test_concurrent_enroll_calls_count_once(repo, service, catalog):
    results = await asyncio.gather(
        service.enroll("u1", "c1"),
        service.enroll("u1", "c1"),
        return_exceptions=True,
    )
    successes, failures = _outcomes(results)
    assert len(successes) == 1
    assert isinstance(failures[0], ConstraintViolation)

    course = await repo.get_course("c1")
    assert course.enrollment_count == 1
    assert len(await repo.list_user_transactions("u1")) == 1
