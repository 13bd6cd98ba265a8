"""
Demo Data Seeding Script

Creates a small demo catalog in the item store for development: an admin,
an instructor and a student, a category tree, one published course with
lessons, and a paid enrollment for the student.
"""
import asyncio
from decimal import Decimal

from app.db.config import StoreConfig, create_session_factory, create_store_engine, init_store
from app.db.errors import ConstraintViolation
from app.db.executor import AccessPatternExecutor
from app.models.entities import Category, Course, Lesson, User
from app.repositories.lms_repo import LmsRepository
from app.services.enrollment_service import EnrollmentService


SEED_USERS = [
    {"user_id": "demo_admin", "email": "admin@example.com", "role": "admin", "full_name": "Demo Admin"},
    {"user_id": "demo_instructor", "email": "instructor@example.com", "role": "instructor", "full_name": "Ada Instructor"},
    {"user_id": "demo_student", "email": "student@example.com", "role": "student", "full_name": "Sam Student"},
]

SEED_CATEGORIES = [
    {"category_id": "programming", "name": "Programming", "parent_category_id": None},
    {"category_id": "python", "name": "Python", "parent_category_id": "programming"},
]

SEED_COURSE = {
    "course_id": "demo_course",
    "instructor_id": "demo_instructor",
    "category_id": "python",
    "title": "Python for Beginners",
    "description": "Variables, control flow and functions",
    "price": Decimal("49.99"),
}

SEED_LESSONS = [
    {"lesson_id": "demo_lesson_intro", "order_index": 0, "title": "Welcome", "duration": 300},
    {"lesson_id": "demo_lesson_vars", "order_index": 1, "title": "Variables", "duration": 900},
    {"lesson_id": "demo_lesson_flow", "order_index": 2, "title": "Control Flow", "duration": 1200},
]


async def _create(label, coro):
    try:
        await coro
        print(f"Created {label}")
    except ConstraintViolation:
        print(f"{label} already exists, skipping")


async def seed_demo_data():
    """Seed the store with the demo catalog; safe to run repeatedly."""
    config = StoreConfig.from_env()
    engine = create_store_engine(config)
    await init_store(engine)
    executor = AccessPatternExecutor(config, create_session_factory(engine))
    repo = LmsRepository(executor)
    service = EnrollmentService(executor)

    try:
        for data in SEED_USERS:
            user = User(hashed_password="!demo-not-a-real-hash", **data)
            await _create(f"user {user.user_id}", repo.create_user(user))

        for data in SEED_CATEGORIES:
            await _create(f"category {data['category_id']}", repo.create_category(Category(**data)))

        await _create(f"course {SEED_COURSE['course_id']}", repo.create_course(Course(**SEED_COURSE)))
        for data in SEED_LESSONS:
            lesson = Lesson(course_id=SEED_COURSE["course_id"], **data)
            await _create(f"lesson {lesson.lesson_id}", repo.add_lesson(lesson))
        await repo.publish_course(SEED_COURSE["course_id"])

        await _create(
            "enrollment demo_student/demo_course",
            service.enroll("demo_student", SEED_COURSE["course_id"], transaction_id="demo_txn"),
        )
        lessons = await repo.list_course_lessons(SEED_COURSE["course_id"])
        print(f"Successfully seeded demo catalog ({len(lessons)} lessons in {SEED_COURSE['course_id']})")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed_demo_data())
