"""
Refill request endpoints.

Patient side:    submit and list refill requests
Pharmacist side: list/inspect, approve, reject, fill, dispatch
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.database import get_db
from medrefill.middleware.auth import require_patient, require_pharmacist, require_pharmacist_or_admin
from medrefill.models.user import User
from medrefill.schemas.history import FillHistoryResponse
from medrefill.schemas.inventory import InventoryResponse
from medrefill.schemas.prescription import PrescriptionResponse
from medrefill.schemas.refill import (
    DispatchResponse,
    FillRequest,
    FillResponse,
    PatientSummary,
    RefillDetailResponse,
    RefillListResponse,
    RefillRequestCreate,
    RefillResponse,
    RejectRequest,
)
from medrefill.services import refill_service
from medrefill.services.audit_service import client_ip
from medrefill.services.fill_recorder import FillItem
from medrefill.services.refill_service import DeliveryAddress

logger = logging.getLogger(__name__)

patient_router = APIRouter()
pharmacist_router = APIRouter()
fulfillment_router = APIRouter()


def _list_response(items) -> RefillListResponse:
    return RefillListResponse(
        refills=[RefillResponse.model_validate(r) for r in items],
        total=len(items),
    )


# ---------------------------------------------------------------------------
# Patient
# ---------------------------------------------------------------------------

@patient_router.post("", response_model=RefillResponse, status_code=201)
async def submit_refill_request(
    body: RefillRequestCreate,
    current_user: User = Depends(require_patient),
    db: AsyncSession = Depends(get_db),
):
    addr = body.delivery_address
    refill = await refill_service.request_refill(
        db,
        body.prescription_id,
        current_user.email,
        DeliveryAddress(
            line1=addr.line1,
            line2=addr.line2,
            city=addr.city,
            state=addr.state,
            pincode=addr.pincode,
            phone=addr.phone,
        ),
    )
    return RefillResponse.model_validate(refill)


@patient_router.get("", response_model=RefillListResponse)
async def my_refill_requests(
    current_user: User = Depends(require_patient),
    db: AsyncSession = Depends(get_db),
):
    return _list_response(await refill_service.list_for_patient(db, current_user.id))


# ---------------------------------------------------------------------------
# Pharmacist
# ---------------------------------------------------------------------------

@pharmacist_router.get("", response_model=RefillListResponse)
async def list_refill_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(require_pharmacist_or_admin),
    db: AsyncSession = Depends(get_db),
):
    return _list_response(await refill_service.list_by_status(db, status_filter))


@pharmacist_router.get("/{request_id}", response_model=RefillDetailResponse)
async def refill_request_detail(
    request_id: UUID,
    current_user: User = Depends(require_pharmacist_or_admin),
    db: AsyncSession = Depends(get_db),
):
    """Request, prescription, patient and the caller's stock for filling."""
    detail = await refill_service.get_detail(db, request_id, current_user)
    return RefillDetailResponse(
        request=RefillResponse.model_validate(detail.request),
        prescription=PrescriptionResponse.model_validate(detail.prescription),
        patient=PatientSummary.model_validate(detail.patient),
        stock=[InventoryResponse.model_validate(row) for row in detail.stock],
    )


@pharmacist_router.put("/{request_id}/approve", response_model=RefillResponse)
async def approve_refill_request(
    request_id: UUID,
    request: Request,
    current_user: User = Depends(require_pharmacist),
    db: AsyncSession = Depends(get_db),
):
    refill = await refill_service.approve(db, request_id, current_user.email, ip_address=client_ip(request))
    return RefillResponse.model_validate(refill)


@pharmacist_router.put("/{request_id}/reject", response_model=RefillResponse)
async def reject_refill_request(
    request_id: UUID,
    body: RejectRequest,
    request: Request,
    current_user: User = Depends(require_pharmacist),
    db: AsyncSession = Depends(get_db),
):
    refill = await refill_service.reject(
        db, request_id, current_user.email, body.reason, ip_address=client_ip(request)
    )
    return RefillResponse.model_validate(refill)


# ---------------------------------------------------------------------------
# Fill / dispatch
# ---------------------------------------------------------------------------

@fulfillment_router.post("/{request_id}/fill", response_model=FillResponse)
async def fill_refill_request(
    request_id: UUID,
    body: FillRequest,
    request: Request,
    current_user: User = Depends(require_pharmacist),
    db: AsyncSession = Depends(get_db),
):
    result = await refill_service.fill(
        db,
        request_id,
        current_user.email,
        [
            FillItem(
                medicine_id=item.medicine_id,
                morning=item.morning,
                afternoon=item.afternoon,
                night=item.night,
                days=item.days,
            )
            for item in body.items
        ],
        enable_reminders=body.enable_reminders,
        ip_address=client_ip(request),
    )
    return FillResponse(
        request=RefillResponse.model_validate(result.request),
        history=FillHistoryResponse.model_validate(result.history),
        low_stock=result.low_stock,
        reminder_date=result.reminder_date,
        notified=result.notified,
    )


@fulfillment_router.post("/{target_id}/dispatch", response_model=DispatchResponse)
async def dispatch_refill(
    target_id: UUID,
    request: Request,
    current_user: User = Depends(require_pharmacist_or_admin),
    db: AsyncSession = Depends(get_db),
):
    """Dispatch by refill request id or by prescription id."""
    result = await refill_service.dispatch(db, target_id, user=current_user, ip_address=client_ip(request))
    return DispatchResponse(
        request=RefillResponse.model_validate(result.request),
        already_dispatched=result.already_dispatched,
        notified=result.notified,
    )
