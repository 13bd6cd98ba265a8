"""Enrollment and purchase endpoints backed by ``EnrollmentService``."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status

from app.dependencies import get_enrollment_service, get_repository
from app.models.schemas import EnrollRequest, dump_entity
from app.repositories.lms_repo import LmsRepository
from app.services.enrollment_service import EnrollmentService

router = APIRouter(tags=["Enrollments"])


def _enrollment_payload(enrollment, transaction) -> dict:
    return {"enrollment": dump_entity(enrollment), "transaction": dump_entity(transaction)}


@router.post("/enrollments", status_code=status.HTTP_201_CREATED)
async def enroll(payload: EnrollRequest, service: EnrollmentService = Depends(get_enrollment_service)):
    enrollment, transaction = await service.enroll(
        payload.user_id,
        payload.course_id,
        transaction_id=payload.transaction_id,
        currency=payload.currency,
    )
    return _enrollment_payload(enrollment, transaction)


@router.get("/enrollments/{user_id}/{course_id}")
async def get_enrollment(user_id: str, course_id: str, repo: LmsRepository = Depends(get_repository)):
    return dump_entity(await repo.get_enrollment(user_id, course_id))


# Purchases ----------------------------------------------------------------


@router.post("/purchases", status_code=status.HTTP_201_CREATED)
async def begin_purchase(payload: EnrollRequest, service: EnrollmentService = Depends(get_enrollment_service)):
    transaction = await service.begin_purchase(
        payload.user_id,
        payload.course_id,
        transaction_id=payload.transaction_id,
        currency=payload.currency,
    )
    return dump_entity(transaction)


@router.post("/purchases/{transaction_id}/complete")
async def complete_purchase(transaction_id: str, service: EnrollmentService = Depends(get_enrollment_service)):
    enrollment, transaction = await service.complete_purchase(transaction_id)
    return _enrollment_payload(enrollment, transaction)


@router.post("/purchases/{transaction_id}/fail")
async def fail_purchase(transaction_id: str, service: EnrollmentService = Depends(get_enrollment_service)):
    return dump_entity(await service.fail_purchase(transaction_id))


@router.post("/purchases/{transaction_id}/refund")
async def refund_purchase(transaction_id: str, service: EnrollmentService = Depends(get_enrollment_service)):
    return dump_entity(await service.refund(transaction_id))


@router.get("/transactions/{transaction_id}")
async def get_transaction(transaction_id: str, repo: LmsRepository = Depends(get_repository)):
    return dump_entity(await repo.get_transaction(transaction_id))
