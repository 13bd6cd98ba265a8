"""FastAPI dependencies resolving the shared executor and its consumers."""
from __future__ import annotations
from fastapi import Depends, Request

from app.db.executor import AccessPatternExecutor
from app.repositories.lms_repo import LmsRepository
from app.services.enrollment_service import EnrollmentService


def get_executor(request: Request) -> AccessPatternExecutor:
    """The executor created at startup (overridden in tests)."""
    return request.app.state.executor


async def get_repository(
    executor: AccessPatternExecutor = Depends(get_executor),
) -> LmsRepository:
    return LmsRepository(executor)


async def get_enrollment_service(
    executor: AccessPatternExecutor = Depends(get_executor),
) -> EnrollmentService:
    return EnrollmentService(executor)
