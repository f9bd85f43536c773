"""Fill history read endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.database import get_db
from medrefill.middleware.auth import require_any_user, require_pharmacist_or_admin
from medrefill.models.user import User, UserRole
from medrefill.schemas.history import FillHistoryResponse
from medrefill.services import fill_recorder
from medrefill.services.errors import PermissionDeniedError

router = APIRouter()


@router.get("/patient/{patient_id}", response_model=list[FillHistoryResponse])
async def patient_history(
    patient_id: UUID,
    current_user: User = Depends(require_any_user),
    db: AsyncSession = Depends(get_db),
):
    if current_user.role == UserRole.PATIENT.value and current_user.id != patient_id:
        raise PermissionDeniedError("Patients can only view their own fill history")
    rows = await fill_recorder.history_for_patient(db, patient_id)
    return [FillHistoryResponse.model_validate(h) for h in rows]


@router.get("/pharmacist/{pharmacist_id}", response_model=list[FillHistoryResponse])
async def pharmacist_history(
    pharmacist_id: UUID,
    current_user: User = Depends(require_pharmacist_or_admin),
    db: AsyncSession = Depends(get_db),
):
    if current_user.role == UserRole.PHARMACIST.value and current_user.id != pharmacist_id:
        raise PermissionDeniedError("Pharmacists can only view their own fill history")
    rows = await fill_recorder.history_for_pharmacist(db, pharmacist_id)
    return [FillHistoryResponse.model_validate(h) for h in rows]
