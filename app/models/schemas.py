"""
Request/response DTOs for the HTTP surface

Entities are returned as-is (camelCase via their aliases) except where a
field must not leave the service, such as the user's password hash.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.entities import Course, UserRole, utc_now


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Application version")
    environment: str = Field(..., description="Current environment")
    timestamp: datetime = Field(default_factory=utc_now, description="Check timestamp")
    uptime: Optional[float] = Field(None, description="Uptime in seconds")


class UserCreate(CamelModel):
    user_id: Optional[str] = Field(None, min_length=1, max_length=64)
    email: str = Field(..., max_length=254)
    role: UserRole = "student"
    hashed_password: str = Field(..., min_length=1)
    full_name: Optional[str] = Field(None, max_length=200)


class UserUpdate(CamelModel):
    email: Optional[str] = Field(None, max_length=254)
    role: Optional[UserRole] = None
    full_name: Optional[str] = Field(None, max_length=200)


class UserOut(CamelModel):
    user_id: str
    email: str
    role: UserRole
    full_name: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class CategoryCreate(CamelModel):
    category_id: Optional[str] = Field(None, min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    parent_category_id: Optional[str] = None


class CategoryMove(CamelModel):
    parent_category_id: Optional[str] = None


class CourseCreate(CamelModel):
    course_id: Optional[str] = Field(None, min_length=1, max_length=64)
    instructor_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    price: Decimal = Field(default=Decimal("0"), ge=0)


class CourseUpdate(CamelModel):
    category_id: Optional[str] = Field(None, min_length=1)
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    price: Optional[Decimal] = Field(None, ge=0)


class CoursePage(CamelModel):
    items: List[Course]
    next_token: Optional[str] = None


class LessonCreate(CamelModel):
    lesson_id: Optional[str] = Field(None, min_length=1, max_length=64)
    order_index: int = Field(..., ge=0)
    title: str = Field(..., min_length=1, max_length=200)
    duration: int = Field(default=0, ge=0)


class LessonMove(CamelModel):
    order_index: int = Field(..., ge=0)


class ProgressReport(CamelModel):
    lesson_id: str = Field(..., min_length=1)
    time_spent: int = Field(default=0, ge=0)
    is_completed: bool = False


class EnrollRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    course_id: str = Field(..., min_length=1)
    transaction_id: Optional[str] = Field(None, min_length=1, max_length=64)
    currency: str = Field(default="USD", min_length=3, max_length=3)


def dump_entity(entity: BaseModel) -> dict:
    """JSON-ready camelCase payload for an entity."""
    return entity.model_dump(mode="json", by_alias=True)
