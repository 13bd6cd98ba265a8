"""Courses router providing course and lesson endpoints.

Thin translation layer over ``LmsRepository``; error kinds raised by the
repository are mapped to HTTP statuses by the handlers in ``app.main``.
"""
from __future__ import annotations
import uuid
from typing import List

from fastapi import APIRouter, Depends, status

from app.dependencies import get_repository
from app.models.entities import Course, Lesson
from app.models.schemas import (
    CourseCreate,
    CourseUpdate,
    LessonCreate,
    LessonMove,
    dump_entity,
)
from app.repositories.lms_repo import LmsRepository

router = APIRouter(prefix="/courses", tags=["Courses"])


# Routes -------------------------------------------------------------------


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_course(payload: CourseCreate, repo: LmsRepository = Depends(get_repository)):
    course = Course(
        course_id=payload.course_id or uuid.uuid4().hex,
        instructor_id=payload.instructor_id,
        category_id=payload.category_id,
        title=payload.title,
        description=payload.description,
        price=payload.price,
    )
    return dump_entity(await repo.create_course(course))


@router.get("/{course_id}")
async def get_course(course_id: str, repo: LmsRepository = Depends(get_repository)):
    return dump_entity(await repo.get_course(course_id))


@router.patch("/{course_id}")
async def update_course(
    course_id: str,
    payload: CourseUpdate,
    repo: LmsRepository = Depends(get_repository),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return dump_entity(await repo.get_course(course_id))
    return dump_entity(await repo.update_course(course_id, **changes))


@router.post("/{course_id}/publish")
async def publish_course(course_id: str, repo: LmsRepository = Depends(get_repository)):
    return dump_entity(await repo.publish_course(course_id))


@router.delete("/{course_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_course(course_id: str, repo: LmsRepository = Depends(get_repository)):
    await repo.delete_course(course_id)
    return None


@router.get("/{course_id}/enrollments")
async def list_course_enrollments(course_id: str, repo: LmsRepository = Depends(get_repository)) -> List[dict]:
    return [dump_entity(e) for e in await repo.list_course_enrollments(course_id)]


# Lessons ------------------------------------------------------------------


@router.get("/{course_id}/lessons")
async def list_course_lessons(course_id: str, repo: LmsRepository = Depends(get_repository)) -> List[dict]:
    return [dump_entity(lesson) for lesson in await repo.list_course_lessons(course_id)]


@router.post("/{course_id}/lessons", status_code=status.HTTP_201_CREATED)
async def add_lesson(
    course_id: str,
    payload: LessonCreate,
    repo: LmsRepository = Depends(get_repository),
):
    lesson = Lesson(
        lesson_id=payload.lesson_id or uuid.uuid4().hex,
        course_id=course_id,
        order_index=payload.order_index,
        title=payload.title,
        duration=payload.duration,
    )
    return dump_entity(await repo.add_lesson(lesson))


@router.put("/{course_id}/lessons/{lesson_id}/position")
async def move_lesson(
    course_id: str,
    lesson_id: str,
    payload: LessonMove,
    repo: LmsRepository = Depends(get_repository),
):
    return dump_entity(await repo.move_lesson(lesson_id, payload.order_index, course_id=course_id))


@router.delete("/{course_id}/lessons/{lesson_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_lesson(
    course_id: str,
    lesson_id: str,
    repo: LmsRepository = Depends(get_repository),
):
    await repo.delete_lesson(lesson_id, course_id=course_id)
    return None
