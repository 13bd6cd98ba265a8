"""Repository layer exposing the LMS access-pattern catalog.

Routers and services call these methods instead of building physical keys
themselves. Each method maps one logical operation onto the executor's fixed
access patterns (point lookup, sort-key prefix scan, secondary-index scan,
transactional write) and turns failed preconditions into the matching domain
error.

Every method takes an optional ``timeout`` (seconds) that is handed to the
executor as the deadline of each store call it makes.
"""
from __future__ import annotations
import logging
from typing import Dict, List, Optional, Sequence

from pydantic.alias_generators import to_camel

from app.db import keys
from app.db.errors import ConstraintViolation, NotFound, TransactionConflict
from app.db.executor import DUPLICATE_VALUE, ITEM_NOT_FOUND, AccessPatternExecutor, Page
from app.db.operations import (
    ConditionCheck,
    Delete,
    Put,
    Update,
    attribute_equals,
    attribute_in,
    item_exists,
    item_not_exists,
    version_equals,
)
from app.models.entities import (
    Category,
    Course,
    Enrollment,
    Lesson,
    LessonProgress,
    Transaction,
    User,
)

logger = logging.getLogger(__name__)

INSTRUCTOR_ROLES = ("instructor", "admin")


def stored_attributes(changes: Dict) -> Dict:
    """Map snake_case field changes onto stored (camelCase) attribute names."""
    return {to_camel(name): value for name, value in changes.items()}


def _failed_at(exc: TransactionConflict) -> Optional[int]:
    failed = exc.failed_indexes()
    return failed[0] if failed else None


def _claim_category(category_id: str, version: Optional[int] = None) -> Update:
    """Bump a category's version so a concurrent delete of it cannot succeed."""
    condition = item_exists() if version is None else version_equals(version)
    return Update(keys.category_key(category_id), condition=condition)


class LmsRepository:
    def __init__(self, executor: AccessPatternExecutor):
        self.executor = executor

    async def _collect(self, entities) -> List:
        return [entity async for entity in entities]

    # USERS ------------------------------------------------------------------
    async def create_user(self, user: User, timeout: Optional[float] = None) -> User:
        try:
            [stored] = await self.executor.transact_write([Put(user, item_not_exists())], timeout=timeout)
        except TransactionConflict as exc:
            if exc.reasons and exc.reasons[0] == DUPLICATE_VALUE:
                raise ConstraintViolation("email already registered") from exc
            raise ConstraintViolation("userId already exists") from exc
        return stored

    async def get_user_profile(self, user_id: str, timeout: Optional[float] = None) -> User:
        return await self.executor.get_by_key(*_pair(keys.user_key(user_id)), timeout=timeout)

    async def update_user(self, user_id: str, timeout: Optional[float] = None, **changes) -> User:
        op = Update(keys.user_key(user_id), set=stored_attributes(changes), condition=item_exists())
        try:
            [stored] = await self.executor.transact_write([op], timeout=timeout)
        except TransactionConflict as exc:
            if exc.reasons and exc.reasons[0] == DUPLICATE_VALUE:
                raise ConstraintViolation("email already registered") from exc
            raise NotFound(f"user {user_id!r} not found") from exc
        return stored

    async def deactivate_user(self, user_id: str, timeout: Optional[float] = None) -> User:
        """Soft delete: the user item stays, flagged inactive."""
        return await self.executor.update_item(
            keys.user_key(user_id), set={"isActive": False}, timeout=timeout
        )

    # CATEGORIES -------------------------------------------------------------
    async def create_category(self, category: Category, timeout: Optional[float] = None) -> Category:
        ops = [Put(category, item_not_exists())]
        if category.parent_category_id is not None:
            ops.append(_claim_category(category.parent_category_id))
        try:
            [stored, *_] = await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            if _failed_at(exc) == 1:
                raise ConstraintViolation(
                    f"parent category {category.parent_category_id!r} does not exist"
                ) from exc
            raise ConstraintViolation("categoryId already exists") from exc
        return stored

    async def get_category(self, category_id: str, timeout: Optional[float] = None) -> Category:
        return await self.executor.get_by_key(*_pair(keys.category_key(category_id)), timeout=timeout)

    async def list_subcategories(
        self, parent_category_id: Optional[str], timeout: Optional[float] = None
    ) -> List[Category]:
        """Direct children of a category (roots when ``parent_category_id`` is None)."""
        return await self._collect(
            self.executor.iter_secondary_index(
                keys.category_partition(parent_category_id), keys.CATEGORY, timeout=timeout
            )
        )

    async def move_category(
        self, category_id: str, new_parent_id: Optional[str], timeout: Optional[float] = None
    ) -> Category:
        """Re-parent a category, refusing any move that would create a cycle.

        The ancestor chain of the new parent is read first and every ancestor
        is then pinned to the version that was read, so a concurrent move that
        would close a loop makes this write fail instead. The new parent's
        version is also bumped, which makes a concurrent delete of it fail.
        """
        await self.get_category(category_id, timeout=timeout)
        ops = [
            Update(
                keys.category_key(category_id),
                set={"parentCategoryId": new_parent_id},
                condition=item_exists(),
            )
        ]
        seen = set()
        ancestor_id = new_parent_id
        while ancestor_id is not None:
            if ancestor_id == category_id:
                raise ConstraintViolation("moving the category there would create a cycle")
            if ancestor_id in seen:
                raise ConstraintViolation(f"category tree already loops at {ancestor_id!r}")
            seen.add(ancestor_id)
            try:
                ancestor, version = await self.executor.get_versioned(
                    keys.category_key(ancestor_id), timeout=timeout
                )
            except NotFound as exc:
                raise ConstraintViolation(f"parent category {ancestor_id!r} does not exist") from exc
            if ancestor_id == new_parent_id:
                ops.append(_claim_category(ancestor_id, version))
            else:
                ops.append(ConditionCheck(keys.category_key(ancestor_id), version_equals(version)))
            ancestor_id = ancestor.parent_category_id
        if len(ops) > self.executor.config.max_transaction_items:
            raise ConstraintViolation("category tree is too deep to move atomically")
        try:
            [stored, *_] = await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            if exc.reasons and exc.reasons[0] == ITEM_NOT_FOUND:
                raise NotFound(f"category {category_id!r} not found") from exc
            raise
        return stored

    async def delete_category(
        self, category_id: str, cascade: bool = False, timeout: Optional[float] = None
    ) -> List[str]:
        """Delete a category, and its whole subtree when ``cascade`` is set.

        Returns the ids that were deleted. Categories that still list courses
        are never deleted. Each category's version is read before its
        children and courses are listed, and every delete is conditioned on
        that version; creating a course or a subcategory bumps it, so one
        that lands after the listing cancels the delete.
        """
        _, version = await self.executor.get_versioned(keys.category_key(category_id), timeout=timeout)
        doomed: Dict[str, int] = {category_id: version}
        pending = [category_id]
        while pending:
            children = await self.list_subcategories(pending.pop(), timeout=timeout)
            if children and not cascade:
                raise ConstraintViolation(
                    f"category {category_id!r} has subcategories; use cascade to delete them"
                )
            for child in children:
                _, child_version = await self.executor.get_versioned(
                    keys.category_key(child.category_id), timeout=timeout
                )
                doomed[child.category_id] = child_version
                pending.append(child.category_id)

        for doomed_id in doomed:
            page = await self.executor.scan_secondary_index(
                keys.category_partition(doomed_id), keys.COURSE, limit=1, timeout=timeout
            )
            if page.items:
                raise ConstraintViolation(f"category {doomed_id!r} still has courses")
        if len(doomed) > self.executor.config.max_transaction_items:
            raise ConstraintViolation("category subtree is too large to delete atomically")

        ops = [Delete(keys.category_key(cid), version_equals(v)) for cid, v in doomed.items()]
        try:
            await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict:
            logger.info("Categories %s changed while being deleted", list(doomed))
            raise
        logger.info("Deleted categories %s", list(doomed))
        return list(doomed)

    # COURSES ----------------------------------------------------------------
    async def create_course(self, course: Course, timeout: Optional[float] = None) -> Course:
        ops = [
            Put(course, item_not_exists()),
            ConditionCheck(
                keys.user_key(course.instructor_id),
                attribute_in("role", INSTRUCTOR_ROLES) & attribute_equals("isActive", True),
            ),
            _claim_category(course.category_id),
        ]
        try:
            [stored, *_] = await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            failed = _failed_at(exc)
            if failed == 1:
                raise ConstraintViolation(
                    f"instructor {course.instructor_id!r} does not exist or cannot teach"
                ) from exc
            if failed == 2:
                raise ConstraintViolation(f"category {course.category_id!r} does not exist") from exc
            raise ConstraintViolation("courseId already exists") from exc
        return stored

    async def get_course(self, course_id: str, timeout: Optional[float] = None) -> Course:
        return await self.executor.get_by_key(*_pair(keys.course_key(course_id)), timeout=timeout)

    async def update_course(self, course_id: str, timeout: Optional[float] = None, **changes) -> Course:
        ops = [Update(keys.course_key(course_id), set=stored_attributes(changes), condition=item_exists())]
        if changes.get("category_id") is not None:
            ops.append(_claim_category(changes["category_id"]))
        try:
            [stored, *_] = await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            if _failed_at(exc) == 1:
                raise ConstraintViolation(f"category {changes['category_id']!r} does not exist") from exc
            raise NotFound(f"course {course_id!r} not found") from exc
        return stored

    async def publish_course(
        self, course_id: str, published: bool = True, timeout: Optional[float] = None
    ) -> Course:
        return await self.executor.update_item(
            keys.course_key(course_id), set={"isPublished": published}, timeout=timeout
        )

    async def delete_course(self, course_id: str, timeout: Optional[float] = None) -> None:
        """Hard delete a course together with all of its lessons."""
        lessons = await self.list_course_lessons(course_id, timeout=timeout)
        ops = [Delete(keys.course_key(course_id), item_exists())]
        ops.extend(
            Delete(keys.lesson_key(course_id, lesson.order_index), attribute_equals("lessonId", lesson.lesson_id))
            for lesson in lessons
        )
        try:
            await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            if _failed_at(exc) == 0:
                raise NotFound(f"course {course_id!r} not found") from exc
            raise

    async def list_courses_by_category(self, category_id: str, timeout: Optional[float] = None) -> List[Course]:
        return await self._collect(
            self.executor.iter_secondary_index(
                keys.category_partition(category_id), keys.COURSE, timeout=timeout
            )
        )

    async def page_courses_by_category(
        self,
        category_id: str,
        limit: Optional[int] = None,
        start_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Page:
        return await self.executor.scan_secondary_index(
            keys.category_partition(category_id),
            keys.COURSE,
            limit=limit,
            start_token=start_token,
            timeout=timeout,
        )

    # LESSONS ----------------------------------------------------------------
    # A lessonId is unique across all courses; its guard item moves with the
    # lesson when the lesson changes slot.
    async def add_lesson(self, lesson: Lesson, timeout: Optional[float] = None) -> Lesson:
        ops = [
            Put(lesson, item_not_exists()),
            ConditionCheck(keys.course_key(lesson.course_id), item_exists()),
        ]
        try:
            [stored, _] = await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            if _failed_at(exc) == 1:
                raise ConstraintViolation(f"course {lesson.course_id!r} does not exist") from exc
            if exc.reasons and exc.reasons[0] == DUPLICATE_VALUE:
                raise ConstraintViolation(f"lessonId {lesson.lesson_id!r} already exists") from exc
            raise ConstraintViolation(
                f"orderIndex {lesson.order_index} is already used in course {lesson.course_id!r}"
            ) from exc
        return stored

    async def get_lesson(
        self, lesson_id: str, course_id: Optional[str] = None, timeout: Optional[float] = None
    ) -> Lesson:
        """Lesson by id; with ``course_id`` it must also belong to that course."""
        page = await self.executor.scan_secondary_index(
            keys.lesson_partition(lesson_id), keys.LESSON, limit=1, timeout=timeout
        )
        if not page.items or (course_id is not None and page.items[0].course_id != course_id):
            where = f" in course {course_id!r}" if course_id is not None else ""
            raise NotFound(f"lesson {lesson_id!r} not found{where}")
        return page.items[0]

    async def list_course_lessons(self, course_id: str, timeout: Optional[float] = None) -> List[Lesson]:
        """Lessons of a course in ascending ``order_index``."""
        return await self._collect(
            self.executor.iter_prefix(keys.course_partition(course_id), keys.LESSON, timeout=timeout)
        )

    async def update_lesson(
        self,
        lesson_id: str,
        course_id: Optional[str] = None,
        timeout: Optional[float] = None,
        **changes,
    ) -> Lesson:
        lesson = await self.get_lesson(lesson_id, course_id, timeout=timeout)
        return await self.executor.update_item(
            keys.lesson_key(lesson.course_id, lesson.order_index),
            set=stored_attributes(changes),
            condition=attribute_equals("lessonId", lesson_id),
            timeout=timeout,
        )

    async def move_lesson(
        self,
        lesson_id: str,
        new_order_index: int,
        course_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Lesson:
        lesson = await self.get_lesson(lesson_id, course_id, timeout=timeout)
        if lesson.order_index == new_order_index:
            return lesson
        moved = lesson.model_copy(update={"order_index": new_order_index})
        ops = [
            Delete(
                keys.lesson_key(lesson.course_id, lesson.order_index),
                attribute_equals("lessonId", lesson_id),
            ),
            Put(moved, item_not_exists()),
        ]
        try:
            [_, stored] = await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            if _failed_at(exc) == 1:
                raise ConstraintViolation(
                    f"orderIndex {new_order_index} is already used in course {lesson.course_id!r}"
                ) from exc
            raise
        return stored

    async def delete_lesson(
        self, lesson_id: str, course_id: Optional[str] = None, timeout: Optional[float] = None
    ) -> None:
        lesson = await self.get_lesson(lesson_id, course_id, timeout=timeout)
        try:
            await self.executor.delete_item(
                keys.lesson_key(lesson.course_id, lesson.order_index),
                condition=attribute_equals("lessonId", lesson_id),
                timeout=timeout,
            )
        except ConstraintViolation as exc:
            raise NotFound(f"lesson {lesson_id!r} not found") from exc

    # ENROLLMENTS ------------------------------------------------------------
    async def get_enrollment(self, user_id: str, course_id: str, timeout: Optional[float] = None) -> Enrollment:
        return await self.executor.get_by_key(
            *_pair(keys.enrollment_key(user_id, course_id)), timeout=timeout
        )

    async def list_user_enrollments(self, user_id: str, timeout: Optional[float] = None) -> List[Enrollment]:
        return await self._collect(
            self.executor.iter_prefix(keys.user_partition(user_id), keys.ENROLLMENT, timeout=timeout)
        )

    async def list_course_enrollments(self, course_id: str, timeout: Optional[float] = None) -> List[Enrollment]:
        return await self._collect(
            self.executor.iter_secondary_index(
                keys.course_partition(course_id), keys.ENROLLMENT, timeout=timeout
            )
        )

    # LESSON PROGRESS --------------------------------------------------------
    async def record_lesson_progress(
        self,
        user_id: str,
        lesson_id: str,
        time_spent: int = 0,
        is_completed: bool = False,
        timeout: Optional[float] = None,
    ) -> LessonProgress:
        """Add ``time_spent`` seconds to a lesson and optionally complete it.

        The learner must be enrolled in the lesson's course. Afterwards the
        enrollment's percentage and completion flag are recomputed.
        """
        if time_spent < 0:
            raise ConstraintViolation("timeSpent cannot be reduced")
        lesson = await self.get_lesson(lesson_id, timeout=timeout)
        key = keys.progress_key(user_id, lesson_id)
        try:
            previous, version = await self.executor.get_versioned(key, timeout=timeout)
            progress = previous.model_copy(
                update={
                    "time_spent": previous.time_spent + time_spent,
                    "is_completed": previous.is_completed or is_completed,
                }
            )
            guard = version_equals(version)
        except NotFound:
            progress = LessonProgress(
                user_id=user_id,
                lesson_id=lesson_id,
                course_id=lesson.course_id,
                time_spent=time_spent,
                is_completed=is_completed,
            )
            guard = item_not_exists()

        ops = [
            Put(progress, guard),
            ConditionCheck(keys.enrollment_key(user_id, lesson.course_id), item_exists()),
        ]
        try:
            [stored, _] = await self.executor.transact_write(ops, timeout=timeout)
        except TransactionConflict as exc:
            if _failed_at(exc) == 1:
                raise ConstraintViolation(
                    f"user {user_id!r} is not enrolled in course {lesson.course_id!r}"
                ) from exc
            raise
        await self.refresh_enrollment_progress(user_id, lesson.course_id, timeout=timeout)
        return stored

    async def refresh_enrollment_progress(
        self, user_id: str, course_id: str, timeout: Optional[float] = None
    ) -> Enrollment:
        lesson_ids = {
            lesson.lesson_id for lesson in await self.list_course_lessons(course_id, timeout=timeout)
        }
        completed = {
            progress.lesson_id
            for progress in await self.list_user_lesson_progress(user_id, course_id, timeout=timeout)
            if progress.is_completed and progress.lesson_id in lesson_ids
        }
        percentage = round(100.0 * len(completed) / len(lesson_ids), 2) if lesson_ids else 0.0
        return await self.executor.update_item(
            keys.enrollment_key(user_id, course_id),
            set={"progressPercentage": percentage, "isCompleted": bool(lesson_ids) and percentage >= 100},
            timeout=timeout,
        )

    async def list_user_lesson_progress(
        self, user_id: str, course_id: Optional[str] = None, timeout: Optional[float] = None
    ) -> List[LessonProgress]:
        progress = await self._collect(
            self.executor.iter_prefix(keys.user_partition(user_id), keys.PROGRESS, timeout=timeout)
        )
        if course_id is None:
            return progress
        return [p for p in progress if p.course_id == course_id]

    # TRANSACTIONS -----------------------------------------------------------
    async def get_transaction(self, transaction_id: str, timeout: Optional[float] = None) -> Transaction:
        return await self.executor.get_by_key(
            *_pair(keys.transaction_key(transaction_id)), timeout=timeout
        )

    async def list_user_transactions(self, user_id: str, timeout: Optional[float] = None) -> List[Transaction]:
        return await self._collect(
            self.executor.iter_secondary_index(
                keys.user_partition(user_id), keys.TRANSACTION, timeout=timeout
            )
        )


def _pair(key: keys.ItemKey) -> Sequence[str]:
    return key.pk, key.sk
