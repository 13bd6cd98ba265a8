"""Write operations and per-item preconditions for the executor.

A ``Condition`` is evaluated against the item currently stored at the
operation's key (``None`` when there is none) inside the write transaction.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from app.db.keys import ItemKey
from app.models.entities import Entity


@dataclass(frozen=True)
class Condition:
    description: str
    check: Callable[[Optional[dict], Optional[int]], bool]

    def evaluate(self, item: Optional[dict], version: Optional[int]) -> bool:
        return self.check(item, version)

    def __and__(self, other: "Condition") -> "Condition":
        return Condition(
            f"({self.description} and {other.description})",
            lambda item, version: self.evaluate(item, version) and other.evaluate(item, version),
        )

    def __or__(self, other: "Condition") -> "Condition":
        return Condition(
            f"({self.description} or {other.description})",
            lambda item, version: self.evaluate(item, version) or other.evaluate(item, version),
        )


def item_exists() -> Condition:
    return Condition("item exists", lambda item, version: item is not None)


def item_not_exists() -> Condition:
    return Condition("item does not exist", lambda item, version: item is None)


def attribute_equals(name: str, value: Any) -> Condition:
    """Attribute ``name`` (camelCase, as stored) equals ``value``.

    Values are compared in their stored form, so decimals are compared as the
    strings the codec writes.
    """
    stored = _stored_form(value)
    return Condition(
        f"{name} == {stored!r}",
        lambda item, version: item is not None and item.get(name) == stored,
    )


def attribute_in(name: str, values) -> Condition:
    stored = [_stored_form(v) for v in values]
    return Condition(
        f"{name} in {stored!r}",
        lambda item, version: item is not None and item.get(name) in stored,
    )


def version_equals(expected: int) -> Condition:
    """Item still has the version that was read (optimistic check)."""
    return Condition(
        f"version == {expected}",
        lambda item, version: item is not None and version == expected,
    )


def _stored_form(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class Put:
    """Write ``entity`` at its key, replacing any existing item."""
    entity: Entity
    condition: Optional[Condition] = None


@dataclass
class Update:
    """Modify attributes of an existing item.

    ``set`` replaces attribute values, ``increment`` adds to numeric ones.
    Attribute names are the stored (camelCase) names.
    """
    key: ItemKey
    set: Dict[str, Any] = field(default_factory=dict)
    increment: Dict[str, Union[int, float]] = field(default_factory=dict)
    condition: Optional[Condition] = None


@dataclass
class Delete:
    """Remove the item at ``key`` (a missing item is not an error)."""
    key: ItemKey
    condition: Optional[Condition] = None


@dataclass
class ConditionCheck:
    """Assert ``condition`` on an item without writing it."""
    key: ItemKey
    condition: Condition


WriteOperation = Union[Put, Update, Delete, ConditionCheck]
