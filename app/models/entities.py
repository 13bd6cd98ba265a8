"""
Pydantic Models for LMS Domain Entities

These models describe the typed entities persisted in the single ``items``
table. Field names are snake_case in Python and camelCase in the stored
attribute bag (``userId``, ``isActive`` ...). Unknown attributes found on a
stored item are kept on the model as extras so that re-encoding never drops
data written by a newer producer.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

UserRole = Literal["student", "instructor", "admin"]
TransactionStatus = Literal["pending", "completed", "failed", "refunded"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Entity(BaseModel):
    """Base for every persisted entity (timestamps + camelCase aliases)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        validate_assignment=True,
    )

    created_at: datetime = Field(default_factory=utc_now, description="Set once on creation")
    updated_at: datetime = Field(default_factory=utc_now, description="Refreshed on every write")


class User(Entity):
    """Platform account (soft-deleted through ``is_active``)"""
    user_id: str = Field(..., min_length=1, description="User identifier")
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", description="Unique login email")
    role: UserRole = Field(default="student", description="Account role")
    hashed_password: str = Field(..., min_length=1, description="Password hash, never the raw password")
    full_name: Optional[str] = Field(None, max_length=200, description="Display name")
    is_active: bool = Field(default=True, description="False once the user is soft-deleted")


class Category(Entity):
    """Course category; categories form a tree through ``parent_category_id``"""
    category_id: str = Field(..., min_length=1, description="Category identifier")
    name: str = Field(..., min_length=1, max_length=200, description="Category name")
    parent_category_id: Optional[str] = Field(None, description="Parent category, None for roots")

    @model_validator(mode="after")
    def validate_parent(self):
        if self.parent_category_id is not None and self.parent_category_id == self.category_id:
            raise ValueError("A category cannot be its own parent")
        return self


class Course(Entity):
    """Course offered by an instructor"""
    course_id: str = Field(..., min_length=1, description="Course identifier")
    instructor_id: str = Field(..., min_length=1, description="Owning instructor (User)")
    category_id: str = Field(..., min_length=1, description="Category the course is listed under")
    title: str = Field(..., min_length=1, max_length=200, description="Course title")
    description: Optional[str] = Field(None, max_length=2000, description="Course description")
    price: Decimal = Field(default=Decimal("0"), ge=0, description="Current list price")
    is_published: bool = Field(default=False, description="Whether students may enroll")
    enrollment_count: int = Field(default=0, ge=0, description="Number of active enrollments")


class Lesson(Entity):
    """Lesson within a course, ordered by ``order_index``"""
    lesson_id: str = Field(..., min_length=1, description="Lesson identifier")
    course_id: str = Field(..., min_length=1, description="Parent course")
    order_index: int = Field(..., ge=0, lt=10**10, description="Position inside the course")
    title: str = Field(..., min_length=1, max_length=200, description="Lesson title")
    duration: int = Field(default=0, ge=0, description="Duration in seconds")


class Enrollment(Entity):
    """A user's enrollment in a course (one per user/course pair)"""
    user_id: str = Field(..., min_length=1, description="Enrolled user")
    course_id: str = Field(..., min_length=1, description="Course enrolled in")
    progress_percentage: float = Field(default=0.0, ge=0, le=100, description="Completion percentage")
    is_completed: bool = Field(default=False, description="True once every lesson is completed")
    transaction_id: Optional[str] = Field(None, description="Purchase that created the enrollment")


class LessonProgress(Entity):
    """A user's progress on a single lesson"""
    user_id: str = Field(..., min_length=1, description="Learner")
    lesson_id: str = Field(..., min_length=1, description="Lesson")
    course_id: str = Field(..., min_length=1, description="Course the lesson belongs to")
    time_spent: int = Field(default=0, ge=0, description="Seconds spent on the lesson")
    is_completed: bool = Field(default=False, description="Whether the lesson is completed")


class Transaction(Entity):
    """Course purchase; ``amount`` is a snapshot of the course price"""
    transaction_id: str = Field(..., min_length=1, description="Transaction identifier")
    user_id: str = Field(..., min_length=1, description="Purchasing user")
    course_id: str = Field(..., min_length=1, description="Purchased course")
    amount: Decimal = Field(..., ge=0, description="Price paid at time of purchase")
    currency: str = Field(default="USD", min_length=3, max_length=3, description="ISO currency code")
    status: TransactionStatus = Field(default="pending", description="Payment status")
