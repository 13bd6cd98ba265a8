"""Key builder for the single-table layout.

Maps an entity type plus its identity fields onto the physical
``(PK, SK, GSI1PK, GSI1SK)`` composite key. Every component carries the
entity-type prefix, so two entity types can never share a physical key even
when their identifiers are equal.

The prefixes are part of the persisted format: changing one requires a data
backfill.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional

from app.db.errors import InvalidIdentity

SEPARATOR = "#"

USER = "USER#"
COURSE = "COURSE#"
LESSON = "LESSON#"
ENROLLMENT = "ENROLLMENT#"
TRANSACTION = "TRANSACTION#"
CATEGORY = "CATEGORY#"
PROGRESS = "PROGRESS#"
UNIQUE = "UNIQUE#"

ORDER_INDEX_WIDTH = 10

# Entity type tags stored in ``entityType``
USER_TYPE = "User"
COURSE_TYPE = "Course"
LESSON_TYPE = "Lesson"
ENROLLMENT_TYPE = "Enrollment"
PROGRESS_TYPE = "LessonProgress"
TRANSACTION_TYPE = "Transaction"
CATEGORY_TYPE = "Category"
UNIQUE_GUARD_TYPE = "UniqueGuard"


@dataclass(frozen=True)
class ItemKey:
    """Primary key of a physical item."""
    pk: str
    sk: str


@dataclass(frozen=True)
class ItemKeys:
    """Primary key plus the optional secondary-index key."""
    pk: str
    sk: str
    gsi1pk: Optional[str] = None
    gsi1sk: Optional[str] = None

    @property
    def primary(self) -> ItemKey:
        return ItemKey(self.pk, self.sk)


def _ident(name: str, value: Any) -> str:
    if value is None:
        raise InvalidIdentity(f"{name} is required")
    text = str(value)
    if not text.strip():
        raise InvalidIdentity(f"{name} must not be empty")
    if SEPARATOR in text:
        raise InvalidIdentity(f"{name} must not contain '{SEPARATOR}'")
    return text


def _order(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidIdentity("order_index must be an integer")
    if value < 0 or value >= 10 ** ORDER_INDEX_WIDTH:
        raise InvalidIdentity("order_index out of range")
    return str(value).zfill(ORDER_INDEX_WIDTH)


# Primary keys ---------------------------------------------------------------
def user_key(user_id: str) -> ItemKey:
    uid = _ident("user_id", user_id)
    return ItemKey(USER + uid, USER + uid)


def course_key(course_id: str) -> ItemKey:
    cid = _ident("course_id", course_id)
    return ItemKey(COURSE + cid, COURSE + cid)


def lesson_key(course_id: str, order_index: int) -> ItemKey:
    return ItemKey(COURSE + _ident("course_id", course_id), LESSON + _order(order_index))


def enrollment_key(user_id: str, course_id: str) -> ItemKey:
    return ItemKey(USER + _ident("user_id", user_id), ENROLLMENT + _ident("course_id", course_id))


def progress_key(user_id: str, lesson_id: str) -> ItemKey:
    return ItemKey(USER + _ident("user_id", user_id), PROGRESS + _ident("lesson_id", lesson_id))


def transaction_key(transaction_id: str) -> ItemKey:
    tid = _ident("transaction_id", transaction_id)
    return ItemKey(TRANSACTION + tid, TRANSACTION + tid)


def category_key(category_id: str) -> ItemKey:
    cid = _ident("category_id", category_id)
    return ItemKey(CATEGORY + cid, CATEGORY + cid)


def unique_guard_key(entity_type: str, attribute: str, value: str) -> ItemKey:
    """Key of the guard item that reserves ``value`` for ``entity_type.attribute``."""
    if not value:
        raise InvalidIdentity(f"{attribute} must not be empty")
    key = f"{UNIQUE}{entity_type}{SEPARATOR}{attribute}{SEPARATOR}{value}"
    return ItemKey(key, key)


# Secondary-index partitions ---------------------------------------------------
def category_partition(category_id: Optional[str]) -> str:
    """GSI partition grouping courses and child categories of a category.

    Root categories (no parent) share the bare ``CATEGORY#`` partition, which
    cannot collide with a real category since identifiers are never empty.
    """
    if category_id is None:
        return CATEGORY
    return CATEGORY + _ident("category_id", category_id)


def user_partition(user_id: str) -> str:
    return USER + _ident("user_id", user_id)


def course_partition(course_id: str) -> str:
    return COURSE + _ident("course_id", course_id)


def lesson_partition(lesson_id: str) -> str:
    return LESSON + _ident("lesson_id", lesson_id)


# Full key sets per entity type ----------------------------------------------
def build_keys(entity_type: str, **identity: Any) -> ItemKeys:
    """Derive every physical key of an item from its type and identity fields."""
    if entity_type == USER_TYPE:
        key = user_key(identity.get("user_id"))
        return ItemKeys(key.pk, key.sk)
    if entity_type == COURSE_TYPE:
        key = course_key(identity.get("course_id"))
        return ItemKeys(
            key.pk, key.sk,
            category_partition(_ident("category_id", identity.get("category_id"))),
            key.sk,
        )
    if entity_type == LESSON_TYPE:
        key = lesson_key(identity.get("course_id"), identity.get("order_index"))
        gsi = lesson_partition(identity.get("lesson_id"))
        return ItemKeys(key.pk, key.sk, gsi, gsi)
    if entity_type == ENROLLMENT_TYPE:
        key = enrollment_key(identity.get("user_id"), identity.get("course_id"))
        return ItemKeys(
            key.pk, key.sk,
            course_partition(identity.get("course_id")),
            ENROLLMENT + _ident("user_id", identity.get("user_id")),
        )
    if entity_type == PROGRESS_TYPE:
        key = progress_key(identity.get("user_id"), identity.get("lesson_id"))
        return ItemKeys(key.pk, key.sk)
    if entity_type == TRANSACTION_TYPE:
        key = transaction_key(identity.get("transaction_id"))
        return ItemKeys(key.pk, key.sk, user_partition(identity.get("user_id")), key.sk)
    if entity_type == CATEGORY_TYPE:
        key = category_key(identity.get("category_id"))
        return ItemKeys(
            key.pk, key.sk,
            category_partition(identity.get("parent_category_id")),
            key.sk,
        )
    raise InvalidIdentity(f"No key layout for entity type {entity_type!r}")
