"""
Item codec tests: tagging, round trips, extras and corruption handling
"""

import logging
from decimal import Decimal

import pytest
from pydantic import BaseModel

from app.db import codec
from app.db.errors import MalformedItem, UnknownEntityType
from app.models.entities import (
    Category,
    Course,
    Enrollment,
    Lesson,
    LessonProgress,
    Transaction,
    User,
)


ENTITIES = [
    User(user_id="u1", email="a@example.com", hashed_password="h", role="admin"),
    Course(course_id="c1", instructor_id="i1", category_id="cat1", title="T", price=Decimal("49.99")),
    Lesson(lesson_id="l1", course_id="c1", order_index=3, title="Intro", duration=120),
    Enrollment(user_id="u1", course_id="c1", progress_percentage=37.5, transaction_id="t1"),
    LessonProgress(user_id="u1", lesson_id="l1", course_id="c1", time_spent=42, is_completed=True),
    Transaction(transaction_id="t1", user_id="u1", course_id="c1", amount=Decimal("49.99"), status="completed"),
    Category(category_id="cat2", name="Python", parent_category_id="cat1"),
]


@pytest.mark.parametrize("entity", ENTITIES, ids=lambda e: type(e).__name__)
def test_round_trip(entity):
    assert codec.decode(codec.encode(entity)) == entity


def test_encode_tags_and_keys():
    bag = codec.encode(ENTITIES[1])
    assert bag["PK"] == "COURSE#c1"
    assert bag["SK"] == "COURSE#c1"
    assert bag["GSI1PK"] == "CATEGORY#cat1"
    assert bag["GSI1SK"] == "COURSE#c1"
    assert bag["entityType"] == "Course"
    assert bag["schemaVersion"] == 1
    assert bag["price"] == "49.99"
    assert bag["instructorId"] == "i1"
    assert "createdAt" in bag and "updatedAt" in bag


def test_unindexed_type_has_no_secondary_keys():
    bag = codec.encode(ENTITIES[0])
    assert "GSI1PK" not in bag and "GSI1SK" not in bag


def test_unknown_attributes_survive_decode_and_encode():
    bag = codec.encode(ENTITIES[0])
    bag["nickname"] = "sam"
    bag["preferences"] = {"theme": "dark"}

    user = codec.decode(bag)
    assert user.model_extra == {"nickname": "sam", "preferences": {"theme": "dark"}}

    again = codec.encode(user)
    assert again["nickname"] == "sam"
    assert again["preferences"] == {"theme": "dark"}


def test_encode_refuses_extras_named_like_reserved_keys():
    user = User(user_id="u1", email="a@example.com", hashed_password="h", PK="USER#other", entityType="Course")
    with pytest.raises(MalformedItem, match="PK, entityType"):
        codec.encode(user)


def test_encode_rejects_foreign_model():
    class Invoice(BaseModel):
        invoice_id: str

    with pytest.raises(UnknownEntityType):
        codec.encode(Invoice(invoice_id="x"))


class TestCorruptItems:

    def test_missing_type_tag(self):
        bag = codec.encode(ENTITIES[0])
        del bag["entityType"]
        with pytest.raises(UnknownEntityType):
            codec.decode(bag)

    def test_unknown_type_tag_is_logged(self, caplog):
        bag = codec.encode(ENTITIES[0])
        bag["entityType"] = "Invoice"
        with caplog.at_level(logging.ERROR, logger="app.db.codec"):
            with pytest.raises(UnknownEntityType):
                codec.decode(bag)
        assert any("Invoice" in record.getMessage() for record in caplog.records)

    def test_missing_required_field(self):
        bag = codec.encode(ENTITIES[0])
        del bag["email"]
        with pytest.raises(MalformedItem):
            codec.decode(bag)

    def test_wrong_field_type(self):
        bag = codec.encode(ENTITIES[1])
        bag["price"] = "forty"
        with pytest.raises(MalformedItem):
            codec.decode(bag)

    def test_newer_schema_version(self):
        bag = codec.encode(ENTITIES[2])
        bag["schemaVersion"] = codec.CURRENT_SCHEMA_VERSION + 1
        with pytest.raises(MalformedItem):
            codec.decode(bag)

    def test_missing_timestamp(self):
        bag = codec.encode(ENTITIES[3])
        del bag["createdAt"]
        with pytest.raises(MalformedItem):
            codec.decode(bag)


def test_unique_values_are_case_insensitive():
    bag = codec.encode(User(user_id="u9", email="Mixed.Case@Example.com", hashed_password="h"))
    assert codec.unique_values(bag) == [("email", "mixed.case@example.com")]


def test_lesson_ids_are_unique_as_written():
    bag = codec.encode(Lesson(lesson_id="Intro-A", course_id="c1", order_index=0, title="x"))
    assert codec.unique_values(bag) == [("lessonId", "Intro-A")]


def test_format_timestamp_uses_z_suffix():
    stamp = codec.format_timestamp()
    assert stamp.endswith("Z")
    assert "+00:00" not in stamp
