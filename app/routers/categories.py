"""Categories router: category tree maintenance and course listings."""
from __future__ import annotations
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import get_repository
from app.models.entities import Category
from app.models.schemas import CategoryCreate, CategoryMove, CoursePage, dump_entity
from app.repositories.lms_repo import LmsRepository

router = APIRouter(prefix="/categories", tags=["Categories"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_category(payload: CategoryCreate, repo: LmsRepository = Depends(get_repository)):
    category = Category(
        category_id=payload.category_id or uuid.uuid4().hex,
        name=payload.name,
        parent_category_id=payload.parent_category_id,
    )
    return dump_entity(await repo.create_category(category))


@router.get("")
async def list_root_categories(repo: LmsRepository = Depends(get_repository)) -> List[dict]:
    return [dump_entity(c) for c in await repo.list_subcategories(None)]


@router.get("/{category_id}")
async def get_category(category_id: str, repo: LmsRepository = Depends(get_repository)):
    return dump_entity(await repo.get_category(category_id))


@router.get("/{category_id}/subcategories")
async def list_subcategories(category_id: str, repo: LmsRepository = Depends(get_repository)) -> List[dict]:
    return [dump_entity(c) for c in await repo.list_subcategories(category_id)]


@router.get("/{category_id}/courses", response_model=CoursePage)
async def list_courses_by_category(
    category_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    cursor: Optional[str] = Query(None),
    repo: LmsRepository = Depends(get_repository),
):
    page = await repo.page_courses_by_category(category_id, limit=limit, start_token=cursor)
    return CoursePage(items=page.items, next_token=page.next_token)


@router.put("/{category_id}/parent")
async def move_category(
    category_id: str,
    payload: CategoryMove,
    repo: LmsRepository = Depends(get_repository),
):
    return dump_entity(await repo.move_category(category_id, payload.parent_category_id))


@router.delete("/{category_id}")
async def delete_category(
    category_id: str,
    cascade: bool = Query(False, description="Also delete every subcategory"),
    repo: LmsRepository = Depends(get_repository),
):
    deleted = await repo.delete_category(category_id, cascade=cascade)
    return {"deleted": deleted}
