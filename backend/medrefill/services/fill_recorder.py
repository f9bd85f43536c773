"""
Fulfillment recorder: turns a pharmacist's dosage schedule into line items
and appends an immutable fill snapshot.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.models.fill_history import FilledMedicine, FillStatus, MedicineFillHistory
from medrefill.services.inventory_service import StockReservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FillItem:
    """One medicine on the pharmacist's fill form."""

    medicine_id: UUID
    morning: bool = False
    afternoon: bool = False
    night: bool = False
    days: int = 0


@dataclass(frozen=True)
class PlannedLine:
    medicine_id: UUID
    times_per_day: int
    days: int
    total_needed: int


@dataclass(frozen=True)
class FilledLine:
    medicine_id: UUID
    medicine_name: str
    times_per_day: int
    days: int
    total_needed: int
    stock_before: int
    stock_after: int


def plan_line_items(items: Iterable[FillItem]) -> list[PlannedLine]:
    """Compute quantities; items with no doses or no days are dropped."""
    planned = []
    for item in items:
        times_per_day = int(item.morning) + int(item.afternoon) + int(item.night)
        if times_per_day == 0 or item.days <= 0:
            logger.debug("Skipping line item for medicine %s: no doses scheduled", item.medicine_id)
            continue
        planned.append(
            PlannedLine(
                medicine_id=item.medicine_id,
                times_per_day=times_per_day,
                days=item.days,
                total_needed=times_per_day * item.days,
            )
        )
    return planned


def filled_line(plan: PlannedLine, medicine_name: str, reservation: StockReservation) -> FilledLine:
    return FilledLine(
        medicine_id=plan.medicine_id,
        medicine_name=medicine_name,
        times_per_day=plan.times_per_day,
        days=plan.days,
        total_needed=plan.total_needed,
        stock_before=reservation.stock_before,
        stock_after=reservation.new_balance,
    )


async def record_fill(
    db: AsyncSession,
    *,
    prescription_id: UUID,
    patient_id: UUID,
    pharmacist_id: UUID,
    refill_request_id: UUID,
    lines: list[FilledLine],
) -> MedicineFillHistory:
    """Append one history row with its line items.  Flushes, never commits."""
    history = MedicineFillHistory(
        prescription_id=prescription_id,
        patient_id=patient_id,
        pharmacist_id=pharmacist_id,
        refill_request_id=refill_request_id,
        status=FillStatus.FILLED,
        filled_medicines=[
            FilledMedicine(
                medicine_id=line.medicine_id,
                position=position,
                medicine_name=line.medicine_name,
                times_per_day=line.times_per_day,
                days=line.days,
                total_needed=line.total_needed,
                stock_before=line.stock_before,
                stock_after=line.stock_after,
            )
            for position, line in enumerate(lines)
        ],
    )
    db.add(history)
    await db.flush()
    return history


async def mark_dispatched(db: AsyncSession, prescription_id: UUID) -> int:
    """Flip every FILLED snapshot of the prescription to DISPATCHED."""
    result = await db.execute(
        update(MedicineFillHistory)
        .where(
            MedicineFillHistory.prescription_id == prescription_id,
            MedicineFillHistory.status == FillStatus.FILLED,
        )
        .values(status=FillStatus.DISPATCHED)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


def format_medicine_list(medicines) -> str:
    """Render ``- Name (xN)`` lines for notification bodies."""
    return "\n".join(f"- {m.medicine_name} (x{m.total_needed})" for m in medicines)


async def latest_for_prescription(db: AsyncSession, prescription_id: UUID) -> Optional[MedicineFillHistory]:
    result = await db.execute(
        select(MedicineFillHistory)
        .where(MedicineFillHistory.prescription_id == prescription_id)
        .order_by(MedicineFillHistory.fill_date.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def history_for_patient(db: AsyncSession, patient_id: UUID) -> list[MedicineFillHistory]:
    result = await db.execute(
        select(MedicineFillHistory)
        .where(MedicineFillHistory.patient_id == patient_id)
        .order_by(MedicineFillHistory.fill_date.desc())
    )
    return list(result.scalars().all())


async def history_for_pharmacist(db: AsyncSession, pharmacist_id: UUID) -> list[MedicineFillHistory]:
    result = await db.execute(
        select(MedicineFillHistory)
        .where(MedicineFillHistory.pharmacist_id == pharmacist_id)
        .order_by(MedicineFillHistory.fill_date.desc())
    )
    return list(result.scalars().all())
