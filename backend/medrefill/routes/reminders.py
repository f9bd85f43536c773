"""
Refill reminder endpoints.

Admin:   trigger a sweep manually, aggregate stats
Patient: list own reminders, opt out of / back into reminders
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.database import AsyncSessionLocal, get_db
from medrefill.middleware.auth import require_admin, require_patient
from medrefill.models.user import User
from medrefill.schemas.reminder import (
    ReminderResponse,
    ReminderRunResponse,
    ReminderSettingsResponse,
    ReminderSettingsUpdate,
    ReminderStatsResponse,
)
from medrefill.services import refill_reminder_service

logger = logging.getLogger(__name__)

admin_router = APIRouter()
patient_router = APIRouter()


@admin_router.post("/trigger", response_model=ReminderRunResponse)
async def trigger_reminder_sweep(current_user: User = Depends(require_admin)):
    logger.info("Manual reminder sweep triggered by %s", current_user.id)
    result = await refill_reminder_service.run_reminder_sweep(AsyncSessionLocal)
    if result is None:
        return ReminderRunResponse(started=False)
    return ReminderRunResponse(started=True, **result.as_dict())


@admin_router.get("/stats", response_model=ReminderStatsResponse)
async def reminder_stats(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ReminderStatsResponse(**await refill_reminder_service.get_reminder_stats(db))


@patient_router.get("", response_model=list[ReminderResponse])
async def my_reminders(
    current_user: User = Depends(require_patient),
    db: AsyncSession = Depends(get_db),
):
    rows = await refill_reminder_service.list_for_patient(db, current_user.id)
    return [ReminderResponse.model_validate(r) for r in rows]


@patient_router.put("/settings", response_model=ReminderSettingsResponse)
async def update_reminder_settings(
    body: ReminderSettingsUpdate,
    current_user: User = Depends(require_patient),
    db: AsyncSession = Depends(get_db),
):
    updated = await refill_reminder_service.update_reminder_settings(db, current_user.id, body.enabled)
    return ReminderSettingsResponse(enabled=body.enabled, updated=updated)
