"""
Prescription tracking endpoints.

The subscribe endpoint is a Server-Sent Events stream.  Browsers' EventSource
cannot send an Authorization header, so it is keyed only by prescription id.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.config import get_settings
from medrefill.database import get_db
from medrefill.middleware.auth import require_any_user, require_patient_or_admin, require_pharmacist_or_admin
from medrefill.models.user import User
from medrefill.schemas.tracking import TrackingEventCreate, TrackingEventResponse, TrackingHistoryResponse
from medrefill.services import tracking_service

logger = logging.getLogger(__name__)
router = APIRouter()


def _history_response(prescription_id: UUID, events) -> TrackingHistoryResponse:
    return TrackingHistoryResponse(
        prescription_id=prescription_id,
        events=[TrackingEventResponse.model_validate(e) for e in events],
    )


@router.get("/subscribe/{prescription_id}")
async def subscribe(prescription_id: UUID):
    settings = get_settings()
    return StreamingResponse(
        tracking_service.event_stream(prescription_id, settings.LIVE_FEED_KEEPALIVE_SECONDS),
        media_type="text/event-stream",
    )


@router.get("/{prescription_id}", response_model=TrackingHistoryResponse)
async def get_tracking_history(
    prescription_id: UUID,
    current_user: User = Depends(require_any_user),
    db: AsyncSession = Depends(get_db),
):
    events = await tracking_service.history(db, prescription_id)
    return _history_response(prescription_id, events)


@router.post("/{prescription_id}", response_model=TrackingEventResponse, status_code=201)
async def add_tracking_event(
    prescription_id: UUID,
    body: TrackingEventCreate,
    current_user: User = Depends(require_pharmacist_or_admin),
    db: AsyncSession = Depends(get_db),
):
    event = await tracking_service.add_event(db, prescription_id, body.status, body.notes)
    return TrackingEventResponse.model_validate(event)


@router.post("/{prescription_id}/delivered", response_model=TrackingEventResponse, status_code=201)
async def confirm_delivery(
    prescription_id: UUID,
    current_user: User = Depends(require_patient_or_admin),
    db: AsyncSession = Depends(get_db),
):
    event = await tracking_service.mark_delivered(db, prescription_id, current_user)
    return TrackingEventResponse.model_validate(event)


@router.post("/{prescription_id}/backfill", response_model=TrackingHistoryResponse)
async def backfill_tracking(
    prescription_id: UUID,
    current_user: User = Depends(require_pharmacist_or_admin),
    db: AsyncSession = Depends(get_db),
):
    events = await tracking_service.backfill(db, prescription_id)
    return _history_response(prescription_id, events)
