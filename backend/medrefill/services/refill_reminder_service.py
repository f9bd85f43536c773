"""
Refill reminder scheduler.

A reminder is created after a qualifying fill and dated
``fill day + days_until_refill - REMINDER_LEAD_DAYS``.  Once a day the sweep
picks up every enabled, unsent reminder dated today and notifies the patient.

Each reminder is handled in its own session:
  1. claim it with ``UPDATE ... SET sent = true WHERE id = :id AND sent = false``
     and commit, so no row lock is held while the SMS gateway retries
  2. send the notification
  3. on failure, release the claim in a second transaction

A concurrent sweep that loses the claim sees ``rowcount == 0`` and skips the
reminder.  A process that dies between claim and send leaves the reminder
marked sent: patients get at most one reminder, never two.  Reruns on the
same day are therefore safe: the persisted flag is the guard, not the run
itself.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medrefill.config import get_settings
from medrefill.models.refill_reminder import RefillReminder
from medrefill.models.refill_request import RefillRequest, RefillStatus
from medrefill.models.user import User
from medrefill.services.fill_recorder import format_medicine_list, latest_for_prescription
from medrefill.services.notification_service import NotificationKind, notify, render
from medrefill.utils.clock import local_today, utc_day_bounds, utcnow

logger = logging.getLogger(__name__)

# One sweep per process at a time; the background loop adds an advisory lock
# on PostgreSQL so only one worker process runs it.
_run_lock = asyncio.Lock()


@dataclass
class ReminderRunResult:
    checked: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def reminder_date_for(fill_day: date, days_until_refill: int) -> date:
    return fill_day + timedelta(days=days_until_refill - get_settings().REMINDER_LEAD_DAYS)


def qualifies_for_reminder(max_days: int) -> bool:
    return max_days >= get_settings().REMINDER_MIN_DAYS


async def create_refill_reminder(
    db: AsyncSession,
    *,
    prescription_id: UUID,
    patient: User,
    days_until_refill: int,
    today: date | None = None,
) -> RefillReminder:
    """Create and commit one enabled, unsent reminder."""
    reminder = RefillReminder(
        prescription_id=prescription_id,
        patient_id=patient.id,
        days_until_refill=days_until_refill,
        reminder_date=reminder_date_for(today or local_today(), days_until_refill),
        is_enabled=True,
        sent=False,
        patient_phone=patient.phone,
    )
    db.add(reminder)
    await db.commit()
    logger.info(
        "Refill reminder created: prescription=%s patient=%s date=%s",
        prescription_id, patient.id, reminder.reminder_date,
    )
    return reminder


async def _has_pending_request(db: AsyncSession, prescription_id: UUID, patient_id: UUID) -> bool:
    result = await db.execute(
        select(RefillRequest.id).where(
            RefillRequest.prescription_id == prescription_id,
            RefillRequest.patient_id == patient_id,
            RefillRequest.status == RefillStatus.PENDING,
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _release_claim(db: AsyncSession, reminder_id: UUID) -> None:
    await db.execute(
        update(RefillReminder)
        .where(RefillReminder.id == reminder_id, RefillReminder.sent.is_(True))
        .values(sent=False, sent_at=None, message=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _process_one(db: AsyncSession, reminder_id: UUID) -> str:
    """Handle one reminder.  Returns "sent", "skipped" or "failed"."""
    reminder = await db.get(RefillReminder, reminder_id)
    if reminder is None or reminder.sent or not reminder.is_enabled:
        return "skipped"

    if await _has_pending_request(db, reminder.prescription_id, reminder.patient_id):
        logger.info("Reminder %s skipped: refill already requested", reminder_id)
        return "skipped"

    history = await latest_for_prescription(db, reminder.prescription_id)
    medicine_list = format_medicine_list(history.filled_medicines) if history else ""
    refill_due = reminder.reminder_date + timedelta(days=get_settings().REMINDER_LEAD_DAYS)
    payload = {
        "patient_name": reminder.patient.name if reminder.patient else "",
        "prescription_id": str(reminder.prescription_id),
        "refill_date": refill_due.isoformat(),
        "medicine_list": medicine_list,
    }
    message = render(NotificationKind.REFILL_REMINDER, payload)

    claimed = await db.execute(
        update(RefillReminder)
        .where(RefillReminder.id == reminder_id, RefillReminder.sent.is_(False))
        .values(sent=True, sent_at=utcnow(), message=message)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        await db.rollback()
        return "skipped"

    phone = reminder.patient_phone or (reminder.patient.phone if reminder.patient else None)
    prescription_id = reminder.prescription_id
    await db.commit()

    try:
        delivered = await notify(phone, NotificationKind.REFILL_REMINDER, payload)
    except Exception:
        await _release_claim(db, reminder_id)
        raise
    if not delivered:
        await _release_claim(db, reminder_id)
        logger.warning("Reminder %s not delivered; left unsent", reminder_id)
        return "failed"

    logger.info("Reminder %s sent for prescription %s", reminder_id, prescription_id)
    return "sent"


async def process_due_reminders(
    session_factory: async_sessionmaker,
    today: date | None = None,
) -> ReminderRunResult:
    today = today or local_today()
    result = ReminderRunResult()

    async with session_factory() as db:
        rows = await db.execute(
            select(RefillReminder.id).where(
                RefillReminder.reminder_date == today,
                RefillReminder.is_enabled.is_(True),
                RefillReminder.sent.is_(False),
            )
        )
        due_ids = list(rows.scalars().all())

    result.checked = len(due_ids)
    for reminder_id in due_ids:
        async with session_factory() as db:
            try:
                outcome = await _process_one(db, reminder_id)
            except Exception:
                await db.rollback()
                logger.exception("Reminder %s failed", reminder_id)
                outcome = "failed"
        setattr(result, outcome, getattr(result, outcome) + 1)

    logger.info(
        "Reminder sweep for %s: checked=%d sent=%d skipped=%d failed=%d",
        today, result.checked, result.sent, result.skipped, result.failed,
    )
    return result


async def run_reminder_sweep(
    session_factory: async_sessionmaker,
    today: date | None = None,
) -> Optional[ReminderRunResult]:
    """Run the sweep unless one is already in progress in this process."""
    if _run_lock.locked():
        logger.info("Reminder sweep already running, skipping")
        return None
    async with _run_lock:
        return await process_due_reminders(session_factory, today)


async def get_reminder_stats(db: AsyncSession, today: date | None = None) -> dict:
    today = today or local_today()
    start, end = utc_day_bounds(today)

    total = await db.scalar(select(func.count(RefillReminder.id)))
    enabled = await db.scalar(
        select(func.count(RefillReminder.id)).where(RefillReminder.is_enabled.is_(True))
    )
    due_today = await db.scalar(
        select(func.count(RefillReminder.id)).where(
            RefillReminder.reminder_date == today,
            RefillReminder.is_enabled.is_(True),
            RefillReminder.sent.is_(False),
        )
    )
    sent_today = await db.scalar(
        select(func.count(RefillReminder.id)).where(
            and_(
                RefillReminder.sent.is_(True),
                RefillReminder.sent_at >= start,
                RefillReminder.sent_at < end,
            )
        )
    )
    return {
        "total_reminders": total or 0,
        "enabled_reminders": enabled or 0,
        "due_today": due_today or 0,
        "sent_today": sent_today or 0,
    }


async def list_for_patient(db: AsyncSession, patient_id: UUID) -> list[RefillReminder]:
    result = await db.execute(
        select(RefillReminder)
        .where(RefillReminder.patient_id == patient_id)
        .order_by(RefillReminder.reminder_date.desc())
    )
    return list(result.scalars().all())


async def update_reminder_settings(db: AsyncSession, patient_id: UUID, enabled: bool) -> int:
    """Opt a patient in or out of all of their reminders."""
    result = await db.execute(
        update(RefillReminder)
        .where(RefillReminder.patient_id == patient_id)
        .values(is_enabled=enabled)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Reminders %s for patient %s (%d rows)", "enabled" if enabled else "disabled", patient_id, result.rowcount)
    return result.rowcount
