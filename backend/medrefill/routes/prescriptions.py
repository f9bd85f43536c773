"""
Prescription intake endpoints.

- Patients upload (by opaque image reference) and list their prescriptions
- Pharmacists review pending prescriptions and set their status
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.database import get_db
from medrefill.middleware.auth import require_any_user, require_patient, require_pharmacist_or_admin
from medrefill.models.user import User
from medrefill.schemas.prescription import (
    PrescriptionCreate,
    PrescriptionListResponse,
    PrescriptionResponse,
    PrescriptionStatusUpdate,
)
from medrefill.services import prescription_service
from medrefill.services.audit_service import client_ip

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=PrescriptionResponse, status_code=201)
async def upload_prescription(
    body: PrescriptionCreate,
    current_user: User = Depends(require_patient),
    db: AsyncSession = Depends(get_db),
):
    prescription = await prescription_service.create_prescription(
        db, current_user.email, body.image_ref, body.notes
    )
    return PrescriptionResponse.model_validate(prescription)


@router.get("/mine", response_model=PrescriptionListResponse)
async def my_prescriptions(
    current_user: User = Depends(require_patient),
    db: AsyncSession = Depends(get_db),
):
    items = await prescription_service.list_for_patient(db, current_user.id)
    return PrescriptionListResponse(
        prescriptions=[PrescriptionResponse.model_validate(p) for p in items],
        total=len(items),
    )


@router.get("", response_model=PrescriptionListResponse)
async def all_prescriptions(
    current_user: User = Depends(require_pharmacist_or_admin),
    db: AsyncSession = Depends(get_db),
):
    items = await prescription_service.list_all(db)
    return PrescriptionListResponse(
        prescriptions=[PrescriptionResponse.model_validate(p) for p in items],
        total=len(items),
    )


@router.get("/pending", response_model=PrescriptionListResponse)
async def pending_prescriptions(
    current_user: User = Depends(require_pharmacist_or_admin),
    db: AsyncSession = Depends(get_db),
):
    items = await prescription_service.list_pending(db)
    return PrescriptionListResponse(
        prescriptions=[PrescriptionResponse.model_validate(p) for p in items],
        total=len(items),
    )


@router.get("/{prescription_id}", response_model=PrescriptionResponse)
async def get_prescription(
    prescription_id: UUID,
    current_user: User = Depends(require_any_user),
    db: AsyncSession = Depends(get_db),
):
    prescription = await prescription_service.get_for_user(db, prescription_id, current_user)
    return PrescriptionResponse.model_validate(prescription)


@router.put("/{prescription_id}/status", response_model=PrescriptionResponse)
async def update_prescription_status(
    prescription_id: UUID,
    body: PrescriptionStatusUpdate,
    request: Request,
    current_user: User = Depends(require_pharmacist_or_admin),
    db: AsyncSession = Depends(get_db),
):
    prescription = await prescription_service.update_status(
        db, prescription_id, body.status, body.notes, current_user, ip_address=client_ip(request)
    )
    return PrescriptionResponse.model_validate(prescription)
