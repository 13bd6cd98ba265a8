"""
Access-pattern executor tests against a file-backed SQLite store
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.db import keys
from app.db.errors import (
    ConstraintViolation,
    InvalidIdentity,
    NotFound,
    StoreUnavailable,
    TransactionConflict,
)
from app.db.executor import CONDITION_FAILED, ITEM_NOT_FOUND, decode_token, encode_token
from app.db.operations import (
    ConditionCheck,
    Delete,
    Put,
    Update,
    attribute_equals,
    item_exists,
    item_not_exists,
)
from app.models.entities import Course, Enrollment, Lesson, User


def _lesson(index, course_id="c1"):
    return Lesson(lesson_id=f"l{index}", course_id=course_id, order_index=index, title=f"Lesson {index}")


def _course(course_id, category_id="cat1"):
    return Course(course_id=course_id, instructor_id="i1", category_id=category_id, title=course_id)


class TestReads:

    async def test_get_missing_item_raises_not_found(self, executor):
        with pytest.raises(NotFound):
            await executor.get_by_key("USER#nobody", "USER#nobody")

    async def test_get_item_returns_none_when_missing(self, executor):
        assert await executor.get_item("USER#nobody", "USER#nobody") is None

    async def test_put_then_get(self, executor, sample_user):
        await executor.put_item(sample_user)
        loaded = await executor.get_by_key("USER#u1", "USER#u1")
        assert loaded.email == sample_user.email
        assert loaded.is_active is True

        raw = await executor.get_item("USER#u1", "USER#u1")
        assert raw["entityType"] == "User"
        assert raw["schemaVersion"] == 1
        assert raw["createdAt"].endswith("Z")

    async def test_prefix_scan_is_ordered_and_paginated(self, executor):
        await executor.put_item(_course("c1"))
        for index in (3, 1, 4, 0, 2):
            await executor.put_item(_lesson(index))

        first = await executor.scan_prefix("COURSE#c1", "LESSON#", limit=2)
        assert [lesson.order_index for lesson in first.items] == [0, 1]
        assert first.next_token is not None

        second = await executor.scan_prefix("COURSE#c1", "LESSON#", limit=2, start_token=first.next_token)
        assert [lesson.order_index for lesson in second.items] == [2, 3]

        third = await executor.scan_prefix("COURSE#c1", "LESSON#", limit=2, start_token=second.next_token)
        assert [lesson.order_index for lesson in third.items] == [4]
        assert third.next_token is None

    async def test_iter_prefix_walks_every_page(self, executor):
        for index in range(5):
            await executor.put_item(_lesson(index))
        seen = [lesson.order_index async for lesson in executor.iter_prefix("COURSE#c1", "LESSON#", page_size=2)]
        assert seen == [0, 1, 2, 3, 4]

    async def test_secondary_index_scan(self, executor):
        for course_id in ("c3", "c1", "c2"):
            await executor.put_item(_course(course_id))
        await executor.put_item(_course("other", category_id="cat2"))

        first = await executor.scan_secondary_index("CATEGORY#cat1", "COURSE#", limit=2)
        assert [c.course_id for c in first.items] == ["c1", "c2"]
        rest = await executor.scan_secondary_index(
            "CATEGORY#cat1", "COURSE#", limit=2, start_token=first.next_token
        )
        assert [c.course_id for c in rest.items] == ["c3"]
        assert rest.next_token is None

    async def test_token_from_another_partition_is_rejected(self, executor):
        token = encode_token({"pk": "COURSE#c2", "sk": "LESSON#0000000001"})
        with pytest.raises(InvalidIdentity):
            await executor.scan_prefix("COURSE#c1", "LESSON#", start_token=token)

    async def test_garbage_token_is_rejected(self, executor):
        with pytest.raises(InvalidIdentity):
            await executor.scan_prefix("COURSE#c1", "LESSON#", start_token="not-a-token")

    async def test_ping(self, executor):
        assert await executor.ping() is True


def test_token_round_trip():
    position = {"pk": "USER#u1", "sk": "ENROLLMENT#c1"}
    assert decode_token(encode_token(position)) == position


class TestWrites:

    async def test_overwrite_keeps_created_at(self, executor, sample_user):
        await executor.put_item(sample_user)
        first = await executor.get_item("USER#u1", "USER#u1")
        await executor.put_item(sample_user.model_copy(update={"full_name": "Renamed"}))
        second = await executor.get_item("USER#u1", "USER#u1")
        assert second["createdAt"] == first["createdAt"]
        assert second["updatedAt"] >= first["updatedAt"]
        assert second["fullName"] == "Renamed"

    async def test_update_increments_and_bumps_version(self, executor):
        await executor.put_item(_course("c1"))
        updated = await executor.update_item(keys.course_key("c1"), increment={"enrollmentCount": 2})
        assert updated.enrollment_count == 2
        _, version = await executor.get_versioned(keys.course_key("c1"))
        assert version == 2

    async def test_update_missing_item(self, executor):
        with pytest.raises(NotFound):
            await executor.update_item(keys.course_key("ghost"), set={"title": "x"})

    async def test_update_with_failed_condition(self, executor):
        await executor.put_item(_course("c1"))
        with pytest.raises(ConstraintViolation):
            await executor.update_item(
                keys.course_key("c1"),
                set={"title": "x"},
                condition=attribute_equals("isPublished", True),
            )

    async def test_update_to_invalid_value(self, executor):
        await executor.put_item(_course("c1"))
        with pytest.raises(ConstraintViolation):
            await executor.update_item(keys.course_key("c1"), set={"price": "-1"})
        course = await executor.get_by_key("COURSE#c1", "COURSE#c1")
        assert course.price == Decimal("0")

    async def test_update_cannot_touch_keys(self, executor):
        await executor.put_item(_course("c1"))
        with pytest.raises(InvalidIdentity):
            await executor.update_item(keys.course_key("c1"), set={"PK": "COURSE#c9"})
        with pytest.raises(InvalidIdentity):
            await executor.update_item(keys.course_key("c1"), set={"courseId": "c9"})

    async def test_delete_with_condition(self, executor):
        await executor.put_item(_lesson(0))
        key = keys.lesson_key("c1", 0)
        with pytest.raises(ConstraintViolation):
            await executor.delete_item(key, condition=attribute_equals("lessonId", "someone-else"))
        await executor.delete_item(key, condition=attribute_equals("lessonId", "l0"))
        assert await executor.get_item(key.pk, key.sk) is None


class TestTransactions:

    async def test_failed_precondition_writes_nothing(self, executor, sample_user):
        ops = [
            Put(sample_user, item_not_exists()),
            Put(Enrollment(user_id="u1", course_id="c1")),
            ConditionCheck(keys.course_key("c1"), item_exists()),
        ]
        with pytest.raises(TransactionConflict) as info:
            await executor.transact_write(ops)
        assert info.value.reasons == [None, None, CONDITION_FAILED]
        assert info.value.failed_indexes() == [2]

        assert await executor.get_item("USER#u1", "USER#u1") is None
        assert await executor.get_item("USER#u1", "ENROLLMENT#c1") is None

    async def test_update_of_missing_item_reports_reason(self, executor):
        with pytest.raises(TransactionConflict) as info:
            await executor.transact_write([Update(keys.course_key("ghost"), set={"title": "x"})])
        assert info.value.reasons == [ITEM_NOT_FOUND]

    async def test_results_follow_submission_order(self, executor, sample_user):
        await executor.put_item(_course("c1"))
        stored_user, none_for_check, stored_course = await executor.transact_write([
            Put(sample_user),
            ConditionCheck(keys.course_key("c1"), item_exists()),
            Update(keys.course_key("c1"), set={"isPublished": True}),
        ])
        assert stored_user.user_id == "u1"
        assert none_for_check is None
        assert stored_course.is_published is True

    async def test_two_operations_on_one_item_rejected(self, executor):
        with pytest.raises(InvalidIdentity):
            await executor.transact_write([
                Put(_course("c1")),
                Delete(keys.course_key("c1")),
            ])

    async def test_empty_transaction_rejected(self, executor):
        with pytest.raises(InvalidIdentity):
            await executor.transact_write([])

    async def test_enrollment_is_create_only(self, executor):
        await executor.put_item(Enrollment(user_id="u1", course_id="c1"))
        with pytest.raises(ConstraintViolation):
            await executor.put_item(Enrollment(user_id="u1", course_id="c1"))

    async def test_lesson_slot_belongs_to_one_lesson(self, executor):
        await executor.put_item(_lesson(0))
        # same lesson may be rewritten in place
        await executor.put_item(_lesson(0).model_copy(update={"title": "Renamed"}))
        intruder = Lesson(lesson_id="other", course_id="c1", order_index=0, title="Other")
        with pytest.raises(ConstraintViolation):
            await executor.put_item(intruder)

    async def test_lesson_id_holds_one_slot(self, executor):
        await executor.put_item(_lesson(0))
        with pytest.raises(ConstraintViolation, match="lessonId"):
            await executor.put_item(_lesson(0).model_copy(update={"order_index": 3}))
        assert await executor.get_item("COURSE#c1", "LESSON#0000000003") is None

    async def test_guard_moves_with_deleted_owner(self, executor):
        await executor.put_item(_lesson(0))
        moved = _lesson(0).model_copy(update={"order_index": 3})
        await executor.transact_write([Put(moved, item_not_exists()), Delete(keys.lesson_key("c1", 0))])

        guard = await executor.get_item(*_lesson_guard("l0"))
        assert guard["ownerSK"] == "LESSON#0000000003"
        assert await executor.get_item("COURSE#c1", "LESSON#0000000000") is None

    async def test_invalid_put_is_rejected(self, executor):
        broken = _lesson(0).model_copy(update={"duration": -5})
        with pytest.raises(ConstraintViolation, match="duration"):
            await executor.put_item(broken)
        assert await executor.get_item("COURSE#c1", "LESSON#0000000000") is None


class TestUniqueEmail:

    async def test_email_taken_case_insensitively(self, executor, sample_user):
        await executor.put_item(sample_user)
        clash = User(user_id="u2", email="STUDENT@example.com", hashed_password="h")
        with pytest.raises(ConstraintViolation):
            await executor.put_item(clash)
        assert await executor.get_item("USER#u2", "USER#u2") is None

    async def test_changing_email_releases_the_old_one(self, executor, sample_user):
        await executor.put_item(sample_user)
        await executor.update_item(keys.user_key("u1"), set={"email": "new@example.com"})
        assert await executor.get_item(*_guard("student@example.com")) is None
        assert (await executor.get_item(*_guard("new@example.com")))["ownerPK"] == "USER#u1"

        await executor.put_item(User(user_id="u2", email="student@example.com", hashed_password="h"))

    async def test_delete_releases_email(self, executor, sample_user):
        await executor.put_item(sample_user)
        await executor.delete_item(keys.user_key("u1"))
        await executor.put_item(User(user_id="u2", email=sample_user.email, hashed_password="h"))


def _guard(email):
    key = keys.unique_guard_key("User", "email", email)
    return key.pk, key.sk


def _lesson_guard(lesson_id):
    key = keys.unique_guard_key("Lesson", "lessonId", lesson_id)
    return key.pk, key.sk


class TestRetryPolicy:

    async def test_transient_failure_is_retried(self, executor):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            return "ok"

        assert await executor._run("flaky", flaky) == "ok"
        assert len(calls) == 3

    async def test_exhausted_retries_raise_store_unavailable(self, executor, caplog):
        calls = []

        async def down():
            calls.append(1)
            raise OperationalError("SELECT 1", {}, Exception("unable to open database file"))

        with pytest.raises(StoreUnavailable):
            await executor._run("down", down)
        assert len(calls) == executor.config.max_attempts
        assert any(record.levelname == "ERROR" for record in caplog.records)

    async def test_integrity_errors_are_not_retried(self, executor):
        calls = []

        async def duplicate():
            calls.append(1)
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(IntegrityError):
            await executor._run("duplicate", duplicate)
        assert len(calls) == 1

    async def test_deadline(self, executor):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await executor._run("slow", slow, timeout=0.05)
