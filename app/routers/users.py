"""Users router: profiles, soft delete and per-user listings."""
from __future__ import annotations
import uuid
from typing import List

from fastapi import APIRouter, Depends, status

from app.dependencies import get_repository
from app.models.entities import User
from app.models.schemas import (
    ProgressReport,
    UserCreate,
    UserOut,
    UserUpdate,
    dump_entity as _out,
)
from app.repositories.lms_repo import LmsRepository

router = APIRouter(prefix="/users", tags=["Users"])


@router.post("", response_model=UserOut, status_code=status.HTTP_201_CREATED)
async def create_user(payload: UserCreate, repo: LmsRepository = Depends(get_repository)):
    user = User(
        user_id=payload.user_id or uuid.uuid4().hex,
        email=payload.email,
        role=payload.role,
        hashed_password=payload.hashed_password,
        full_name=payload.full_name,
    )
    return _out(await repo.create_user(user))


@router.get("/{user_id}", response_model=UserOut)
async def get_user_profile(user_id: str, repo: LmsRepository = Depends(get_repository)):
    return _out(await repo.get_user_profile(user_id))


@router.patch("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: str,
    payload: UserUpdate,
    repo: LmsRepository = Depends(get_repository),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return _out(await repo.get_user_profile(user_id))
    return _out(await repo.update_user(user_id, **changes))


@router.delete("/{user_id}", response_model=UserOut)
async def deactivate_user(user_id: str, repo: LmsRepository = Depends(get_repository)):
    return _out(await repo.deactivate_user(user_id))


@router.get("/{user_id}/enrollments")
async def list_user_enrollments(user_id: str, repo: LmsRepository = Depends(get_repository)) -> List[dict]:
    return [_out(e) for e in await repo.list_user_enrollments(user_id)]


@router.get("/{user_id}/transactions")
async def list_user_transactions(user_id: str, repo: LmsRepository = Depends(get_repository)) -> List[dict]:
    return [_out(t) for t in await repo.list_user_transactions(user_id)]


@router.get("/{user_id}/progress")
async def list_user_progress(user_id: str, repo: LmsRepository = Depends(get_repository)) -> List[dict]:
    return [_out(p) for p in await repo.list_user_lesson_progress(user_id)]


@router.post("/{user_id}/progress")
async def record_progress(
    user_id: str,
    payload: ProgressReport,
    repo: LmsRepository = Depends(get_repository),
):
    progress = await repo.record_lesson_progress(
        user_id,
        payload.lesson_id,
        time_spent=payload.time_spent,
        is_completed=payload.is_completed,
    )
    return _out(progress)
