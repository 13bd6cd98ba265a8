"""Enrollment and purchase flows.

Every flow here is one transactional write so that the Transaction, the
Enrollment and the course's enrollment counter never disagree:

* ``enroll`` - completed Transaction + Enrollment + counter in one step
* ``begin_purchase`` / ``complete_purchase`` / ``fail_purchase`` - the same,
  split around an external payment confirmation
* ``refund`` - completed -> refunded, Enrollment removed, counter decremented

When a purchase cannot be completed for a deterministic reason (already
enrolled, course gone) the pending Transaction is compensated by marking it
``failed``. When the store itself is unavailable the Transaction is left
``pending`` so reconciliation can pick it up later.

Every public flow takes an optional ``timeout`` (seconds) used as the deadline
of each store call it makes.
"""
from __future__ import annotations
import logging
import uuid
from typing import Optional, Tuple

from app.db import keys
from app.db.errors import (
    ConstraintViolation,
    NotFound,
    StoreUnavailable,
    TransactionConflict,
)
from app.db.executor import AccessPatternExecutor
from app.db.operations import (
    ConditionCheck,
    Delete,
    Put,
    Update,
    attribute_equals,
    item_exists,
    item_not_exists,
)
from app.models.entities import Course, Enrollment, Transaction, User
from app.repositories.lms_repo import LmsRepository

logger = logging.getLogger(__name__)


class EnrollmentService:
    def __init__(
        self,
        executor: AccessPatternExecutor,
        conflict_retries: Optional[int] = None,
    ):
        self.executor = executor
        self.repository = LmsRepository(executor)
        if conflict_retries is None:
            conflict_retries = executor.config.conflict_retries
        self.conflict_retries = conflict_retries

    async def _is_enrolled(self, user_id: str, course_id: str, timeout: Optional[float] = None) -> bool:
        key = keys.enrollment_key(user_id, course_id)
        return await self.executor.get_item(key.pk, key.sk, timeout=timeout) is not None

    async def _load_purchase_parties(
        self, user_id: str, course_id: str, timeout: Optional[float] = None
    ) -> Tuple[User, Course]:
        user = await self.repository.get_user_profile(user_id, timeout=timeout)
        if not user.is_active:
            raise ConstraintViolation(f"user {user_id!r} is inactive")
        course = await self.repository.get_course(course_id, timeout=timeout)
        if not course.is_published:
            raise ConstraintViolation(f"course {course_id!r} is not open for enrollment")
        return user, course

    # ENROLL -----------------------------------------------------------------
    async def enroll(
        self,
        user_id: str,
        course_id: str,
        transaction_id: Optional[str] = None,
        currency: str = "USD",
        timeout: Optional[float] = None,
    ) -> Tuple[Enrollment, Transaction]:
        """Charge the current course price and enroll the user atomically.

        Raises:
            NotFound: the user or course does not exist
            ConstraintViolation: already enrolled, user inactive, course unpublished
            TransactionConflict: contention persisted through every retry
        """
        transaction_id = transaction_id or uuid.uuid4().hex
        attempt = 0
        while True:
            try:
                return await self._enroll_once(user_id, course_id, transaction_id, currency, timeout)
            except TransactionConflict as exc:
                attempt += 1
                if attempt > self.conflict_retries:
                    logger.warning(
                        "Enrollment of %s in %s still conflicting after %s attempts",
                        user_id, course_id, attempt,
                    )
                    raise
                logger.info("Enrollment of %s in %s conflicted (%s), retrying", user_id, course_id, exc)

    async def _enroll_once(
        self,
        user_id: str,
        course_id: str,
        transaction_id: str,
        currency: str,
        timeout: Optional[float] = None,
    ) -> Tuple[Enrollment, Transaction]:
        if await self._is_enrolled(user_id, course_id, timeout):
            raise ConstraintViolation(f"user {user_id!r} is already enrolled in {course_id!r}")
        _, course = await self._load_purchase_parties(user_id, course_id, timeout)

        transaction = Transaction(
            transaction_id=transaction_id,
            user_id=user_id,
            course_id=course_id,
            amount=course.price,
            currency=currency,
            status="completed",
        )
        enrollment = Enrollment(user_id=user_id, course_id=course_id, transaction_id=transaction_id)
        ops = [
            Put(transaction, item_not_exists()),
            Put(enrollment, item_not_exists()),
            Update(
                keys.course_key(course_id),
                increment={"enrollmentCount": 1},
                condition=attribute_equals("price", course.price) & attribute_equals("isPublished", True),
            ),
            ConditionCheck(keys.user_key(user_id), attribute_equals("isActive", True)),
        ]
        try:
            stored_transaction, stored_enrollment, _, _ = await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            if await self._is_enrolled(user_id, course_id, timeout):
                raise ConstraintViolation(
                    f"user {user_id!r} is already enrolled in {course_id!r}"
                ) from exc
            if exc.reasons and exc.reasons[0] is not None:
                raise ConstraintViolation(f"transaction {transaction_id!r} already exists") from exc
            raise
        logger.info(
            "Enrolled %s in %s (transaction %s, amount %s)",
            user_id, course_id, transaction_id, stored_transaction.amount,
        )
        return stored_enrollment, stored_transaction

    # PURCHASE FLOW ----------------------------------------------------------
    async def begin_purchase(
        self,
        user_id: str,
        course_id: str,
        transaction_id: Optional[str] = None,
        currency: str = "USD",
        timeout: Optional[float] = None,
    ) -> Transaction:
        """Record a pending Transaction with the course price snapshot."""
        if await self._is_enrolled(user_id, course_id, timeout):
            raise ConstraintViolation(f"user {user_id!r} is already enrolled in {course_id!r}")
        _, course = await self._load_purchase_parties(user_id, course_id, timeout)
        transaction = Transaction(
            transaction_id=transaction_id or uuid.uuid4().hex,
            user_id=user_id,
            course_id=course_id,
            amount=course.price,
            currency=currency,
            status="pending",
        )
        try:
            return await self.executor.put_item(transaction, condition=item_not_exists(), timeout=timeout)
        except ConstraintViolation as exc:
            raise ConstraintViolation(
                f"transaction {transaction.transaction_id!r} already exists"
            ) from exc

    async def complete_purchase(
        self, transaction_id: str, timeout: Optional[float] = None
    ) -> Tuple[Enrollment, Transaction]:
        """Mark a pending Transaction completed and create its Enrollment."""
        attempt = 0
        while True:
            transaction = await self.repository.get_transaction(transaction_id, timeout=timeout)
            if transaction.status != "pending":
                raise ConstraintViolation(
                    f"transaction {transaction_id!r} is {transaction.status}, not pending"
                )
            enrollment = Enrollment(
                user_id=transaction.user_id,
                course_id=transaction.course_id,
                transaction_id=transaction_id,
            )
            ops = [
                Update(
                    keys.transaction_key(transaction_id),
                    set={"status": "completed"},
                    condition=attribute_equals("status", "pending"),
                ),
                Put(enrollment, item_not_exists()),
                Update(
                    keys.course_key(transaction.course_id),
                    increment={"enrollmentCount": 1},
                    condition=item_exists(),
                ),
            ]
            try:
                stored_transaction, stored_enrollment, _ = await self.executor.transact_write(ops, timeout=timeout)
            except StoreUnavailable:
                logger.error(
                    "Store unavailable while completing transaction %s; left pending for reconciliation",
                    transaction_id,
                )
                raise
            except TransactionConflict as exc:
                failed = exc.failed_indexes()
                if failed and failed[0] in (1, 2):
                    await self._compensate(transaction_id, timeout)
                    reason = "already enrolled" if failed[0] == 1 else "course no longer exists"
                    raise ConstraintViolation(
                        f"transaction {transaction_id!r} could not be completed: {reason}"
                    ) from exc
                attempt += 1
                if attempt > self.conflict_retries:
                    raise
                logger.info("Completing transaction %s conflicted, retrying", transaction_id)
                continue
            logger.info("Completed transaction %s", transaction_id)
            return stored_enrollment, stored_transaction

    async def fail_purchase(self, transaction_id: str, timeout: Optional[float] = None) -> Transaction:
        """Mark a pending Transaction failed (payment declined or abandoned)."""
        try:
            return await self.executor.update_item(
                keys.transaction_key(transaction_id),
                set={"status": "failed"},
                condition=attribute_equals("status", "pending"),
                timeout=timeout,
            )
        except ConstraintViolation as exc:
            raise ConstraintViolation(f"transaction {transaction_id!r} is not pending") from exc

    async def _compensate(self, transaction_id: str, timeout: Optional[float] = None) -> None:
        try:
            await self.fail_purchase(transaction_id, timeout=timeout)
            logger.warning("Transaction %s compensated: marked failed", transaction_id)
        except (ConstraintViolation, NotFound):
            logger.warning("Transaction %s was no longer pending; nothing to compensate", transaction_id)

    # REFUND -----------------------------------------------------------------
    async def refund(self, transaction_id: str, timeout: Optional[float] = None) -> Transaction:
        """Refund a completed purchase and withdraw the enrollment it created."""
        transaction = await self.repository.get_transaction(transaction_id, timeout=timeout)
        if transaction.status != "completed":
            raise ConstraintViolation(
                f"transaction {transaction_id!r} is {transaction.status}, not completed"
            )
        ops = [
            Update(
                keys.transaction_key(transaction_id),
                set={"status": "refunded"},
                condition=attribute_equals("status", "completed"),
            ),
            Delete(
                keys.enrollment_key(transaction.user_id, transaction.course_id),
                attribute_equals("transactionId", transaction_id),
            ),
            Update(
                keys.course_key(transaction.course_id),
                increment={"enrollmentCount": -1},
                condition=item_exists(),
            ),
        ]
        try:
            stored, _, _ = await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            failed = exc.failed_indexes()
            if failed and failed[0] == 1:
                raise ConstraintViolation(
                    f"enrollment for transaction {transaction_id!r} no longer exists"
                ) from exc
            if failed and failed[0] == 2:
                raise ConstraintViolation(f"course {transaction.course_id!r} no longer exists") from exc
            raise
        logger.info("Refunded transaction %s", transaction_id)
        return stored
