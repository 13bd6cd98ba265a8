"""Item codec: typed entities <-> stored attribute bags.

An attribute bag is the plain ``dict`` persisted at a key. Besides the entity
fields (camelCase) it always carries:

* ``PK``/``SK`` and, when the type is indexed, ``GSI1PK``/``GSI1SK``
* ``entityType`` - the discriminator used to pick the model on decode
* ``schemaVersion`` - layout version of the bag
* ``createdAt``/``updatedAt`` - ISO-8601 timestamps

Attributes the model does not know are carried on the entity as pydantic
extras and written back untouched.
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Type

from pydantic import ValidationError as PydanticValidationError

from app.db import keys
from app.db.errors import ConstraintViolation, MalformedItem, UnknownEntityType
from app.models.entities import (
    Category,
    Course,
    Enrollment,
    Entity,
    Lesson,
    LessonProgress,
    Transaction,
    User,
    utc_now,
)
from app.models.items import (
    CREATED_AT,
    ENTITY_TYPE,
    GSI1PK,
    GSI1SK,
    PK,
    SCHEMA_VERSION,
    SK,
    UPDATED_AT,
)

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 1

ENTITY_TYPES: Dict[str, Type[Entity]] = {
    keys.USER_TYPE: User,
    keys.COURSE_TYPE: Course,
    keys.LESSON_TYPE: Lesson,
    keys.ENROLLMENT_TYPE: Enrollment,
    keys.PROGRESS_TYPE: LessonProgress,
    keys.TRANSACTION_TYPE: Transaction,
    keys.CATEGORY_TYPE: Category,
}
_TAGS: Dict[Type[Entity], str] = {cls: tag for tag, cls in ENTITY_TYPES.items()}

# Attributes that must hold a unique value across all items of the type.
UNIQUE_ATTRIBUTES: Dict[str, Tuple[str, ...]] = {
    keys.USER_TYPE: ("email",),
    keys.LESSON_TYPE: ("lessonId",),
}
# Unique attributes compared without regard to case.
CASE_INSENSITIVE_ATTRIBUTES = frozenset({"email"})

# Types whose key may only be written once through a plain put.
CREATE_ONLY_TYPES = frozenset({keys.ENROLLMENT_TYPE})

# Types whose key is a slot that a single owner may occupy (lesson order).
SLOT_OWNER_ATTRIBUTE: Dict[str, str] = {
    keys.LESSON_TYPE: "lessonId",
}

_KEY_ATTRIBUTES = (PK, SK, GSI1PK, GSI1SK)
_RESERVED = _KEY_ATTRIBUTES + (ENTITY_TYPE, SCHEMA_VERSION)


def type_tag(entity: Entity) -> str:
    try:
        return _TAGS[type(entity)]
    except KeyError:
        raise UnknownEntityType(f"{type(entity).__name__} is not a persisted entity type")


def keys_for(entity: Entity) -> keys.ItemKeys:
    identity = {name: getattr(entity, name) for name in type(entity).model_fields}
    return keys.build_keys(type_tag(entity), **identity)


def encode(entity: Entity) -> dict:
    """Serialize ``entity`` into the attribute bag stored at its key."""
    tag = type_tag(entity)
    item_keys = keys_for(entity)
    bag = entity.model_dump(mode="json", by_alias=True)
    clashing = sorted(name for name in _RESERVED if name in bag)
    if clashing:
        raise MalformedItem(
            f"{tag} carries attributes named like reserved item keys: {', '.join(clashing)}"
        )
    bag[PK] = item_keys.pk
    bag[SK] = item_keys.sk
    if item_keys.gsi1pk is not None:
        bag[GSI1PK] = item_keys.gsi1pk
        bag[GSI1SK] = item_keys.gsi1sk
    bag[ENTITY_TYPE] = tag
    bag[SCHEMA_VERSION] = CURRENT_SCHEMA_VERSION
    return bag


def decode(bag: dict) -> Entity:
    """Materialize the typed entity stored in ``bag``.

    Raises:
        UnknownEntityType: the type tag is missing or unknown
        MalformedItem: a required field is missing or has the wrong type
    """
    tag = bag.get(ENTITY_TYPE)
    location = f"{bag.get(PK)}/{bag.get(SK)}"
    if not tag:
        logger.error("Item %s has no entity type tag", location)
        raise UnknownEntityType(f"Item {location} has no entity type tag")
    model = ENTITY_TYPES.get(tag)
    if model is None:
        logger.error("Item %s has unknown entity type %r", location, tag)
        raise UnknownEntityType(f"Unknown entity type {tag!r} at {location}")

    version = bag.get(SCHEMA_VERSION, CURRENT_SCHEMA_VERSION)
    if isinstance(version, bool) or not isinstance(version, int) or version > CURRENT_SCHEMA_VERSION:
        logger.error("Item %s has unsupported schema version %r", location, version)
        raise MalformedItem(f"Unsupported schema version {version!r} at {location}")
    for required in (CREATED_AT, UPDATED_AT):
        if required not in bag:
            logger.error("Item %s is missing %s", location, required)
            raise MalformedItem(f"{tag} item at {location} is missing {required}")

    payload = {k: v for k, v in bag.items() if k not in _RESERVED}
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        logger.error("Item %s failed to decode as %s: %s", location, tag, fields)
        raise MalformedItem(f"{tag} item at {location} has invalid fields: {fields}") from exc


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Timestamp in the same ISO-8601 form the models serialize to."""
    moment = moment or utc_now()
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def unique_values(bag: dict) -> List[Tuple[str, str]]:
    """``(attribute, normalized value)`` pairs that must be unique for this item."""
    values = []
    for attribute in UNIQUE_ATTRIBUTES.get(bag.get(ENTITY_TYPE), ()):
        value = bag.get(attribute)
        if value is None:
            continue
        value = str(value).strip()
        if attribute in CASE_INSENSITIVE_ATTRIBUTES:
            value = value.lower()
        values.append((attribute, value))
    return values


def unique_guard_item(bag: dict, attribute: str, value: str, now: str) -> dict:
    """Guard item reserving ``value`` for the item stored in ``bag``."""
    key = keys.unique_guard_key(bag[ENTITY_TYPE], attribute, value)
    return {
        PK: key.pk,
        SK: key.sk,
        ENTITY_TYPE: keys.UNIQUE_GUARD_TYPE,
        SCHEMA_VERSION: CURRENT_SCHEMA_VERSION,
        "ownerPK": bag[PK],
        "ownerSK": bag[SK],
        CREATED_AT: now,
        UPDATED_AT: now,
    }


def revalidate(bag: dict) -> Entity:
    """Validate a bag about to be written; bad values are a rejected write."""
    model = ENTITY_TYPES.get(bag.get(ENTITY_TYPE))
    if model is None:
        raise UnknownEntityType(f"Unknown entity type {bag.get(ENTITY_TYPE)!r}")
    payload = {k: v for k, v in bag.items() if k not in _RESERVED}
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise ConstraintViolation(f"Write leaves {bag.get(ENTITY_TYPE)} with invalid fields: {fields}") from exc
