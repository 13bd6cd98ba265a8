"""Access-pattern executor for the single ``items`` table.

This is the only component that talks to the store. It supports a fixed set
of access patterns:

* point lookup by primary key
* prefix scan on the sort key within one partition
* prefix scan on the secondary index
* single-item puts/updates/deletes and all-or-nothing transactional writes

Transient store failures are retried with exponential backoff; everything
else (missing items, failed preconditions, invalid data) is raised to the
caller as-is.
"""
from __future__ import annotations
import asyncio
import base64
import binascii
import json
import logging
import random
from dataclasses import dataclass
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from sqlalchemy import and_, delete, insert, or_, select, text, update
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db import codec
from app.db.config import StoreConfig, create_session_factory, create_store_engine
from app.db.errors import (
    ConstraintViolation,
    InvalidIdentity,
    NotFound,
    StoreUnavailable,
    TransactionConflict,
)
from app.db.keys import ItemKey, unique_guard_key
from app.db.operations import (
    Condition,
    ConditionCheck,
    Delete,
    Put,
    Update,
    WriteOperation,
    attribute_equals,
    item_not_exists,
)
from app.models.entities import Entity, utc_now
from app.models.items import (
    CREATED_AT,
    ENTITY_TYPE,
    GSI1SK,
    PK,
    SK,
    UPDATED_AT,
    ItemRecord,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONDITION_FAILED = "ConditionalCheckFailed"
ITEM_NOT_FOUND = "ItemNotFound"
DUPLICATE_VALUE = "DuplicateUniqueValue"
VERSION_MISMATCH = "VersionMismatch"
DUPLICATE_ITEM = "DuplicateItem"


@dataclass
class Page:
    """One page of a scan plus the token to resume after it."""
    items: List[Entity]
    next_token: Optional[str] = None


@dataclass
class _Prepared:
    op: WriteOperation
    key: ItemKey
    bag: Optional[dict] = None  # encoded item for Put


def is_transient(exc: BaseException) -> bool:
    """Whether ``exc`` is an infrastructure hiccup worth retrying."""
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def encode_token(position: dict) -> str:
    raw = json.dumps(position, separators=(",", ":"), sort_keys=True).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_token(token: str) -> dict:
    try:
        padded = token + "=" * (-len(token) % 4)
        position = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
        raise InvalidIdentity("Malformed continuation token") from exc
    if not isinstance(position, dict):
        raise InvalidIdentity("Malformed continuation token")
    return position


class AccessPatternExecutor:
    """Executes store operations against the single table.

    Holds only its configuration and the shared session factory, so one
    instance serves any number of concurrent requests.
    """

    def __init__(
        self,
        config: StoreConfig,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.config = config
        if session_factory is None:
            session_factory = create_session_factory(create_store_engine(config))
        self._session_factory = session_factory

    # Infrastructure ---------------------------------------------------------
    def _backoff(self, attempt: int) -> float:
        delay = min(self.config.backoff_cap, self.config.base_backoff * (2 ** (attempt - 1)))
        return max(0.0, delay * (0.8 + random.random() * 0.4))

    async def _with_retry(self, name: str, work: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await work()
            except SQLAlchemyError as exc:
                if not is_transient(exc):
                    raise
                if attempt >= self.config.max_attempts:
                    logger.error("%s failed after %s attempts: %s", name, attempt, exc)
                    raise StoreUnavailable(f"{name} failed after {attempt} attempts") from exc
                delay = self._backoff(attempt)
                logger.warning("retry(%s) %s: %s (sleep=%.2fs)", attempt, name, exc, delay)
                await asyncio.sleep(delay)
                attempt += 1

    async def _run(
        self,
        name: str,
        work: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        if timeout is None:
            timeout = self.config.default_timeout
        if timeout is None:
            return await self._with_retry(name, work)
        return await asyncio.wait_for(self._with_retry(name, work), timeout)

    async def ping(self, timeout: Optional[float] = None) -> bool:
        async def work():
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True

        return await self._run("ping", work, timeout)

    # Reads ------------------------------------------------------------------
    async def get_item(self, pk: str, sk: str, timeout: Optional[float] = None) -> Optional[dict]:
        """Raw attribute bag at ``(pk, sk)``, or None."""
        async def work():
            async with self._session_factory() as session:
                row = await session.get(ItemRecord, (pk, sk))
                return row.to_item() if row is not None else None

        return await self._run("get_item", work, timeout)

    async def get_by_key(self, pk: str, sk: str, timeout: Optional[float] = None) -> Entity:
        item = await self.get_item(pk, sk, timeout=timeout)
        if item is None:
            raise NotFound(f"No item at {pk}/{sk}")
        return codec.decode(item)

    async def get_versioned(self, key: ItemKey, timeout: Optional[float] = None) -> Tuple[Entity, int]:
        """Entity at ``key`` together with its current item version."""
        async def work():
            async with self._session_factory() as session:
                row = await session.get(ItemRecord, (key.pk, key.sk))
                return (row.to_item(), row.version) if row is not None else None

        found = await self._run("get_versioned", work, timeout)
        if found is None:
            raise NotFound(f"No item at {key.pk}/{key.sk}")
        item, version = found
        return codec.decode(item), version

    async def scan_prefix(
        self,
        partition: str,
        sort_prefix: str = "",
        limit: Optional[int] = None,
        start_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Page:
        """Items in ``partition`` whose sort key starts with ``sort_prefix``.

        Results are ascending by sort key. ``next_token`` is set when more
        items may follow; pass it back as ``start_token`` to continue.
        """
        limit = limit or self.config.page_size
        after = None
        if start_token:
            position = decode_token(start_token)
            if position.get("pk") != partition or "sk" not in position:
                raise InvalidIdentity("Continuation token does not belong to this scan")
            after = position["sk"]

        async def work():
            stmt = select(ItemRecord).where(ItemRecord.pk == partition)
            if sort_prefix:
                stmt = stmt.where(ItemRecord.sk.startswith(sort_prefix, autoescape=True))
            if after is not None:
                stmt = stmt.where(ItemRecord.sk > after)
            stmt = stmt.order_by(ItemRecord.sk).limit(limit + 1)
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [row.to_item() for row in result.scalars().all()]

        items = await self._run("scan_prefix", work, timeout)
        next_token = None
        if len(items) > limit:
            items = items[:limit]
            next_token = encode_token({"pk": partition, "sk": items[-1][SK]})
        return Page([codec.decode(item) for item in items], next_token)

    async def scan_secondary_index(
        self,
        partition: str,
        sort_prefix: str = "",
        limit: Optional[int] = None,
        start_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Page:
        """Same as ``scan_prefix`` but over the secondary index keys."""
        limit = limit or self.config.page_size
        after = None
        if start_token:
            position = decode_token(start_token)
            if position.get("gsi1pk") != partition or not {"gsi1sk", "pk", "sk"} <= position.keys():
                raise InvalidIdentity("Continuation token does not belong to this scan")
            after = position

        async def work():
            stmt = select(ItemRecord).where(ItemRecord.gsi1pk == partition)
            if sort_prefix:
                stmt = stmt.where(ItemRecord.gsi1sk.startswith(sort_prefix, autoescape=True))
            if after is not None:
                stmt = stmt.where(
                    or_(
                        ItemRecord.gsi1sk > after["gsi1sk"],
                        and_(ItemRecord.gsi1sk == after["gsi1sk"], ItemRecord.pk > after["pk"]),
                        and_(
                            ItemRecord.gsi1sk == after["gsi1sk"],
                            ItemRecord.pk == after["pk"],
                            ItemRecord.sk > after["sk"],
                        ),
                    )
                )
            stmt = stmt.order_by(ItemRecord.gsi1sk, ItemRecord.pk, ItemRecord.sk).limit(limit + 1)
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [row.to_item() for row in result.scalars().all()]

        items = await self._run("scan_secondary_index", work, timeout)
        next_token = None
        if len(items) > limit:
            items = items[:limit]
            last = items[-1]
            next_token = encode_token(
                {"gsi1pk": partition, "gsi1sk": last[GSI1SK], "pk": last[PK], "sk": last[SK]}
            )
        return Page([codec.decode(item) for item in items], next_token)

    async def iter_prefix(
        self,
        partition: str,
        sort_prefix: str = "",
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[Entity]:
        """Lazily walk every page of ``scan_prefix``; ``timeout`` bounds each page."""
        token = None
        while True:
            page = await self.scan_prefix(
                partition, sort_prefix, limit=page_size, start_token=token, timeout=timeout
            )
            for entity in page.items:
                yield entity
            if page.next_token is None:
                return
            token = page.next_token

    async def iter_secondary_index(
        self,
        partition: str,
        sort_prefix: str = "",
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[Entity]:
        """Lazily walk every page of ``scan_secondary_index``."""
        token = None
        while True:
            page = await self.scan_secondary_index(
                partition, sort_prefix, limit=page_size, start_token=token, timeout=timeout
            )
            for entity in page.items:
                yield entity
            if page.next_token is None:
                return
            token = page.next_token

    # Writes -----------------------------------------------------------------
    async def put_item(
        self,
        entity: Entity,
        condition: Optional[Condition] = None,
        timeout: Optional[float] = None,
    ) -> Entity:
        """Upsert ``entity``.

        Raises:
            ConstraintViolation: a uniqueness rule or ``condition`` rejected it
        """
        try:
            [stored] = await self.transact_write([Put(entity, condition)], timeout=timeout)
        except TransactionConflict as exc:
            raise ConstraintViolation(str(exc)) from exc
        return stored

    async def update_item(
        self,
        key: ItemKey,
        set: Optional[Dict] = None,
        increment: Optional[Dict] = None,
        condition: Optional[Condition] = None,
        timeout: Optional[float] = None,
    ) -> Entity:
        """Update attributes of the item at ``key`` and return the result.

        Raises:
            NotFound: nothing is stored at ``key``
            ConstraintViolation: ``condition`` failed or the result is invalid
        """
        op = Update(key, set=dict(set or {}), increment=dict(increment or {}), condition=condition)
        try:
            [stored] = await self.transact_write([op], timeout=timeout)
        except TransactionConflict as exc:
            if exc.reasons and exc.reasons[0] == ITEM_NOT_FOUND:
                raise NotFound(f"No item at {key.pk}/{key.sk}") from exc
            raise ConstraintViolation(str(exc)) from exc
        return stored

    async def delete_item(
        self,
        key: ItemKey,
        condition: Optional[Condition] = None,
        timeout: Optional[float] = None,
    ) -> None:
        try:
            await self.transact_write([Delete(key, condition)], timeout=timeout)
        except TransactionConflict as exc:
            raise ConstraintViolation(str(exc)) from exc

    async def transact_write(
        self,
        operations: Sequence[WriteOperation],
        timeout: Optional[float] = None,
    ) -> List[Optional[Entity]]:
        """Apply ``operations`` atomically.

        Every precondition is checked inside one store transaction before
        anything is written; if one fails nothing is written and
        ``TransactionConflict`` reports a reason per operation.

        Returns the stored entity for each Put/Update and None for
        Delete/ConditionCheck, in submission order.
        """
        prepared = self._prepare(operations)

        async def work():
            now = codec.format_timestamp(utc_now())
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        return await self._apply(session, prepared, now)
                except IntegrityError as exc:
                    logger.info("Transaction lost an insert race: %s", exc.orig)
                    raise TransactionConflict(
                        "Transaction cancelled: an item was created concurrently",
                        [DUPLICATE_ITEM] * len(prepared),
                    ) from exc

        bags = await self._run("transact_write", work, timeout)
        return [codec.decode(bag) if bag is not None else None for bag in bags]

    def _prepare(self, operations: Sequence[WriteOperation]) -> List[_Prepared]:
        if not operations:
            raise InvalidIdentity("A transaction needs at least one operation")
        if len(operations) > self.config.max_transaction_items:
            raise InvalidIdentity(
                f"A transaction may hold at most {self.config.max_transaction_items} operations"
            )
        prepared: List[_Prepared] = []
        seen = set()
        for op in operations:
            if isinstance(op, Put):
                bag = codec.encode(op.entity)
                codec.revalidate(bag)
                item = _Prepared(op, ItemKey(bag[PK], bag[SK]), bag)
            elif isinstance(op, (Update, Delete, ConditionCheck)):
                item = _Prepared(op, op.key)
            else:
                raise InvalidIdentity(f"Unsupported operation {type(op).__name__}")
            if item.key in seen:
                raise InvalidIdentity(
                    f"More than one operation targets {item.key.pk}/{item.key.sk}"
                )
            seen.add(item.key)
            prepared.append(item)
        return prepared

    async def _load(self, session: AsyncSession, key: ItemKey) -> Optional[ItemRecord]:
        stmt = (
            select(ItemRecord)
            .where(ItemRecord.pk == key.pk, ItemRecord.sk == key.sk)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _apply(self, session: AsyncSession, prepared: List[_Prepared], now: str) -> List[Optional[dict]]:
        current: List[Optional[ItemRecord]] = []
        bags: List[Optional[dict]] = []
        reasons: List[Optional[str]] = []
        problems: List[str] = []
        guard_changes: List[Tuple[List[dict], List[ItemKey]]] = []
        released = frozenset(entry.key for entry in prepared if isinstance(entry.op, Delete))

        # Phase 1: read every target and evaluate preconditions.
        for entry in prepared:
            row = await self._load(session, entry.key)
            current.append(row)
            existing = row.to_item() if row is not None else None
            version = row.version if row is not None else None
            bag = dict(entry.bag) if entry.bag is not None else None
            reason = None
            additions: List[dict] = []
            removals: List[ItemKey] = []

            if isinstance(entry.op, Update) and existing is None:
                reason = ITEM_NOT_FOUND
                problems.append(f"{entry.key.pk}/{entry.key.sk}: item does not exist")

            conditions = [entry.op.condition] if entry.op.condition is not None else []
            if isinstance(entry.op, Put):
                conditions.extend(self._implicit_put_conditions(bag))
            for condition in conditions if reason is None else ():
                if not condition.evaluate(existing, version):
                    reason = CONDITION_FAILED
                    problems.append(f"{entry.key.pk}/{entry.key.sk}: {condition.description}")
                    break

            if reason is None and isinstance(entry.op, Update):
                bag = self._updated_bag(existing, entry.op)

            if reason is None and isinstance(entry.op, (Put, Update)):
                if existing is not None:
                    bag[CREATED_AT] = existing[CREATED_AT]
                bag[UPDATED_AT] = now
                additions, removals, clash = await self._guard_changes(
                    session, existing, bag, now, released
                )
                if clash:
                    reason = DUPLICATE_VALUE
                    problems.append(clash)
            elif reason is None and isinstance(entry.op, Delete) and existing is not None:
                removals = [
                    unique_guard_key(existing[ENTITY_TYPE], attribute, value)
                    for attribute, value in codec.unique_values(existing)
                ]

            reasons.append(reason)
            bags.append(bag)
            guard_changes.append((additions, removals))

        if any(reason is not None for reason in reasons):
            logger.info("Transaction cancelled: %s", "; ".join(problems))
            raise TransactionConflict("Transaction cancelled: " + "; ".join(problems), reasons)

        # Phase 2: write. Guards released by any operation go before new ones.
        for _, removals in guard_changes:
            for guard_key in removals:
                await session.execute(
                    delete(ItemRecord).where(ItemRecord.pk == guard_key.pk, ItemRecord.sk == guard_key.sk)
                )
        for additions, _ in guard_changes:
            for guard in additions:
                await session.execute(insert(ItemRecord).values(**ItemRecord.column_values(guard), version=1))

        results: List[Optional[dict]] = []
        for index, (entry, row, bag) in enumerate(zip(prepared, current, bags)):
            if isinstance(entry.op, (Put, Update)):
                values = ItemRecord.column_values(bag)
                if row is None:
                    await session.execute(insert(ItemRecord).values(**values, version=1))
                else:
                    result = await session.execute(
                        update(ItemRecord)
                        .where(
                            ItemRecord.pk == entry.key.pk,
                            ItemRecord.sk == entry.key.sk,
                            ItemRecord.version == row.version,
                        )
                        .values(**values, version=row.version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        reasons = [None] * len(prepared)
                        reasons[index] = VERSION_MISMATCH
                        raise TransactionConflict(
                            f"Transaction cancelled: {entry.key.pk}/{entry.key.sk} changed concurrently",
                            reasons,
                        )
                results.append(bag)
            elif isinstance(entry.op, Delete):
                if row is not None:
                    await session.execute(
                        delete(ItemRecord)
                        .where(ItemRecord.pk == entry.key.pk, ItemRecord.sk == entry.key.sk)
                        .execution_options(synchronize_session=False)
                    )
                results.append(None)
            else:
                results.append(None)
        return results

    @staticmethod
    def _implicit_put_conditions(bag: dict) -> List[Condition]:
        tag = bag[ENTITY_TYPE]
        if tag in codec.CREATE_ONLY_TYPES:
            return [
                Condition(
                    f"{tag} does not exist yet",
                    item_not_exists().check,
                )
            ]
        owner = codec.SLOT_OWNER_ATTRIBUTE.get(tag)
        if owner is not None:
            return [
                Condition(
                    f"{tag} slot is free or held by {owner}={bag.get(owner)!r}",
                    (item_not_exists() | attribute_equals(owner, bag.get(owner))).check,
                )
            ]
        return []

    @staticmethod
    def _updated_bag(existing: dict, op: Update) -> dict:
        bag = dict(existing)
        for name, value in op.set.items():
            if name in (PK, SK, ENTITY_TYPE, CREATED_AT, UPDATED_AT):
                raise InvalidIdentity(f"{name} cannot be updated")
            bag[name] = value
        for name, amount in op.increment.items():
            base = bag.get(name, 0)
            if isinstance(base, bool) or not isinstance(base, (int, float)):
                raise InvalidIdentity(f"{name} is not numeric and cannot be incremented")
            bag[name] = base + amount
        entity = codec.revalidate(bag)
        fresh = codec.encode(entity)
        if (fresh[PK], fresh[SK]) != (existing[PK], existing[SK]):
            raise InvalidIdentity("An update cannot change the identity of an item")
        return fresh

    async def _guard_changes(
        self,
        session: AsyncSession,
        existing: Optional[dict],
        bag: dict,
        now: str,
        released: frozenset = frozenset(),
    ) -> Tuple[List[dict], List[ItemKey], Optional[str]]:
        """Guard items to add/remove for unique attributes, or a clash message.

        A guard whose owner is deleted by the same transaction (``released``)
        passes to ``bag``.
        """
        old_values = dict(codec.unique_values(existing)) if existing is not None else {}
        additions: List[dict] = []
        removals: List[ItemKey] = []
        for attribute, value in codec.unique_values(bag):
            if old_values.get(attribute) == value:
                continue
            guard_key = unique_guard_key(bag[ENTITY_TYPE], attribute, value)
            guard = await self._load(session, guard_key)
            if guard is not None:
                owner = guard.to_item()
                owner_key = ItemKey(owner.get("ownerPK"), owner.get("ownerSK"))
                if owner_key == ItemKey(bag[PK], bag[SK]):
                    continue
                if owner_key not in released:
                    return [], [], f"{bag[ENTITY_TYPE]}.{attribute} {value!r} is already taken"
            additions.append(codec.unique_guard_item(bag, attribute, value, now))
            if attribute in old_values:
                removals.append(unique_guard_key(bag[ENTITY_TYPE], attribute, old_values[attribute]))
        return additions, removals, None
