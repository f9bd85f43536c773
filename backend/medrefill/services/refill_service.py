"""
Refill workflow: the RefillRequest state machine.

    PENDING    --approve-->  APPROVED
    PENDING    --reject-->   REJECTED
    APPROVED   --fill-->     FILLED
    FILLED     --dispatch--> DISPATCHED
    APPROVED   --dispatch--> DISPATCHED
    DISPATCHED --dispatch--> DISPATCHED   (no-op)

Every transition is an optimistic ``UPDATE ... WHERE status IN (:expected)``;
a zero row count means another handler got there first and the caller gets a
ConflictError.  Fill and dispatch commit their data changes in one
transaction; notifications and reminder creation happen afterwards and can
only log on failure.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.models.fill_history import MedicineFillHistory
from medrefill.models.inventory import Inventory
from medrefill.models.prescription import Prescription, PrescriptionStatus
from medrefill.models.refill_request import RefillRequest, RefillStatus
from medrefill.models.tracking import TrackingStatus
from medrefill.models.user import User, UserRole
from medrefill.services import tracking_service
from medrefill.services.audit_service import log_audit
from medrefill.services.errors import (
    ConflictError,
    InsufficientStock,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from medrefill.services.fill_recorder import (
    FillItem,
    filled_line,
    format_medicine_list,
    latest_for_prescription,
    mark_dispatched,
    plan_line_items,
    record_fill,
)
from medrefill.services.inventory_service import (
    StockLocks,
    get_medicine,
    get_stock_row,
    list_inventory,
    reserve_stock,
)
from medrefill.services.notification_service import NotificationKind, notify
from medrefill.services.refill_reminder_service import create_refill_reminder, qualifies_for_reminder
from medrefill.services.user_service import ensure_role, lookup_user
from medrefill.utils.clock import local_today, utcnow

logger = logging.getLogger(__name__)

_PINCODE_PATTERN = re.compile(r"^\d{6}$")
_PHONE_PATTERN = re.compile(r"^\d{10}$")

REMINDERS_DISABLED_TEXT = "Reminders disabled"


@dataclass(frozen=True)
class DeliveryAddress:
    line1: str
    city: str
    state: str
    pincode: str
    phone: str
    line2: str | None = None


@dataclass
class FillResult:
    request: RefillRequest
    history: MedicineFillHistory
    low_stock: list[str] = field(default_factory=list)
    reminder_date: Optional[date] = None
    notified: bool = False


@dataclass
class DispatchResult:
    request: RefillRequest
    already_dispatched: bool = False
    notified: bool = False


@dataclass
class RefillDetail:
    request: RefillRequest
    prescription: Prescription
    patient: User
    stock: list[Inventory]


def validate_address(address: DeliveryAddress) -> DeliveryAddress:
    """Trim and check every field; raises ValidationError on the first bad one."""
    def clean(value):
        return (value or "").strip()

    line1, city, state = clean(address.line1), clean(address.city), clean(address.state)
    pincode, phone = clean(address.pincode), clean(address.phone)
    if not line1:
        raise ValidationError("Address line 1 is required")
    if not city:
        raise ValidationError("City is required")
    if not state:
        raise ValidationError("State is required")
    if not _PINCODE_PATTERN.match(pincode):
        raise ValidationError("Pincode must be exactly 6 digits")
    if not _PHONE_PATTERN.match(phone):
        raise ValidationError("Phone number must be exactly 10 digits")
    return DeliveryAddress(
        line1=line1,
        line2=clean(address.line2) or None,
        city=city,
        state=state,
        pincode=pincode,
        phone=phone,
    )


async def _transition(
    db: AsyncSession,
    request_id: UUID,
    expected: Iterable[RefillStatus],
    new_status: RefillStatus,
    **values,
) -> bool:
    result = await db.execute(
        update(RefillRequest)
        .where(RefillRequest.id == request_id, RefillRequest.status.in_(list(expected)))
        .values(status=new_status, **values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


async def get_request(db: AsyncSession, request_id: UUID) -> RefillRequest:
    refill = await db.get(RefillRequest, request_id)
    if refill is None:
        raise NotFoundError(f"Refill request not found with ID: {request_id}")
    return refill


# ---------------------------------------------------------------------------
# Patient: request
# ---------------------------------------------------------------------------

async def request_refill(
    db: AsyncSession,
    prescription_id: UUID,
    patient_email: str,
    address: DeliveryAddress,
) -> RefillRequest:
    address = validate_address(address)
    patient = await lookup_user(db, patient_email)
    ensure_role(patient, UserRole.PATIENT, action="request refills")

    prescription = await db.get(Prescription, prescription_id)
    if prescription is None:
        raise NotFoundError(f"Prescription not found with ID: {prescription_id}")
    if prescription.patient_id != patient.id:
        raise PermissionDeniedError("Prescription does not belong to this patient")
    if prescription.status != PrescriptionStatus.APPROVED:
        raise ConflictError("Prescription must be approved before requesting a refill")

    existing = await db.execute(
        select(RefillRequest.id).where(RefillRequest.prescription_id == prescription_id)
    )
    if existing.scalar_one_or_none() is not None:
        raise ConflictError("A refill request already exists for this prescription")

    refill = RefillRequest(
        prescription_id=prescription_id,
        patient_id=patient.id,
        status=RefillStatus.PENDING,
        delivery_line1=address.line1,
        delivery_line2=address.line2,
        delivery_city=address.city,
        delivery_state=address.state,
        delivery_pincode=address.pincode,
        delivery_phone=address.phone,
    )
    db.add(refill)
    try:
        await db.flush()
    except IntegrityError:
        # Lost the race against a concurrent request for the same prescription
        await db.rollback()
        raise ConflictError("A refill request already exists for this prescription")

    await tracking_service.record(db, prescription_id, TrackingStatus.REFILL_REQUESTED, "Refill requested by patient")
    await db.commit()
    logger.info("Refill request %s created for prescription %s", refill.id, prescription_id)
    return refill


# ---------------------------------------------------------------------------
# Pharmacist: approve / reject
# ---------------------------------------------------------------------------

async def approve(
    db: AsyncSession,
    request_id: UUID,
    pharmacist_email: str,
    ip_address: str | None = None,
) -> RefillRequest:
    pharmacist = await lookup_user(db, pharmacist_email)
    ensure_role(pharmacist, UserRole.PHARMACIST, action="approve refill requests")
    refill = await get_request(db, request_id)

    if refill.status != RefillStatus.PENDING:
        raise ConflictError(f"Refill request is {refill.status.value}, only PENDING requests can be approved")
    if not await _transition(
        db, refill.id, [RefillStatus.PENDING], RefillStatus.APPROVED,
        pharmacist_id=pharmacist.id, actioned_at=utcnow(),
    ):
        raise ConflictError("Refill request was modified concurrently")

    await tracking_service.record(db, refill.prescription_id, TrackingStatus.REFILL_APPROVED, "Refill approved by pharmacist")
    log_audit(
        db,
        action="refill.approve",
        entity_type="refill_request",
        entity_id=refill.id,
        user=pharmacist,
        old_value={"status": RefillStatus.PENDING.value},
        new_value={"status": RefillStatus.APPROVED.value},
        ip_address=ip_address,
    )
    await db.commit()
    await db.refresh(refill)
    logger.info("Refill request %s approved by %s", refill.id, pharmacist.id)
    return refill


async def reject(
    db: AsyncSession,
    request_id: UUID,
    pharmacist_email: str,
    reason: str,
    ip_address: str | None = None,
) -> RefillRequest:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason for rejection is required")

    pharmacist = await lookup_user(db, pharmacist_email)
    ensure_role(pharmacist, UserRole.PHARMACIST, action="reject refill requests")
    refill = await get_request(db, request_id)

    if refill.status != RefillStatus.PENDING:
        raise ConflictError(f"Refill request is {refill.status.value}, only PENDING requests can be rejected")
    if not await _transition(
        db, refill.id, [RefillStatus.PENDING], RefillStatus.REJECTED,
        pharmacist_id=pharmacist.id, actioned_at=utcnow(), reason_for_rejection=reason,
    ):
        raise ConflictError("Refill request was modified concurrently")

    log_audit(
        db,
        action="refill.reject",
        entity_type="refill_request",
        entity_id=refill.id,
        user=pharmacist,
        old_value={"status": RefillStatus.PENDING.value},
        new_value={"status": RefillStatus.REJECTED.value, "reason": reason},
        ip_address=ip_address,
    )
    await db.commit()
    await db.refresh(refill)
    logger.info("Refill request %s rejected by %s", refill.id, pharmacist.id)

    try:
        await notify(
            refill.patient.phone if refill.patient else None,
            NotificationKind.REJECTION,
            {
                "patient_name": refill.patient.name if refill.patient else "",
                "prescription_id": str(refill.prescription_id),
                "reason": reason,
            },
        )
    except Exception:
        logger.exception("Rejection notification failed for refill %s", refill.id)
    return refill


# ---------------------------------------------------------------------------
# Pharmacist: fill
# ---------------------------------------------------------------------------

async def fill(
    db: AsyncSession,
    request_id: UUID,
    pharmacist_email: str,
    items: Iterable[FillItem],
    enable_reminders: bool = True,
    today: date | None = None,
    ip_address: str | None = None,
) -> FillResult:
    """Dispense an APPROVED request against the pharmacist's stock.

    All line items are validated before any stock moves.  Stock deduction,
    the fill snapshot, the status change and the FILLING/FILLED tracking
    events commit together or not at all.
    """
    today = today or local_today()
    pharmacist = await lookup_user(db, pharmacist_email)
    ensure_role(pharmacist, UserRole.PHARMACIST, action="fill refill requests")
    refill = await get_request(db, request_id)

    if refill.status != RefillStatus.APPROVED:
        raise ConflictError(f"Refill request is {refill.status.value}, only APPROVED requests can be filled")

    plan = plan_line_items(items)
    if not plan:
        raise ValidationError("At least one medicine with a dosage schedule is required")
    medicine_ids = [p.medicine_id for p in plan]
    if len(set(medicine_ids)) != len(medicine_ids):
        raise ValidationError("Each medicine may appear only once in a fill")

    keys = [(medicine_id, pharmacist.id) for medicine_id in medicine_ids]
    async with StockLocks.get_instance().hold(keys):
        try:
            names: dict[UUID, str] = {}
            for line in plan:
                medicine = await get_medicine(db, line.medicine_id)
                row = await get_stock_row(db, line.medicine_id, pharmacist.id, for_update=True)
                if row.stock_quantity < line.total_needed:
                    raise InsufficientStock(
                        line.medicine_id, medicine.name,
                        available=row.stock_quantity, needed=line.total_needed,
                    )
                names[line.medicine_id] = medicine.name

            if not await _transition(
                db, refill.id, [RefillStatus.APPROVED], RefillStatus.FILLED,
                pharmacist_id=pharmacist.id, actioned_at=utcnow(),
            ):
                raise ConflictError("Refill request was modified concurrently")

            await tracking_service.record(db, refill.prescription_id, TrackingStatus.FILLING, "Pharmacist is filling the prescription")

            lines = []
            low_stock = []
            for line in plan:
                reservation = await reserve_stock(db, line.medicine_id, pharmacist.id, line.total_needed)
                lines.append(filled_line(line, names[line.medicine_id], reservation))
                if reservation.is_low_stock:
                    low_stock.append(names[line.medicine_id])

            history = await record_fill(
                db,
                prescription_id=refill.prescription_id,
                patient_id=refill.patient_id,
                pharmacist_id=pharmacist.id,
                refill_request_id=refill.id,
                lines=lines,
            )
            await tracking_service.record(db, refill.prescription_id, TrackingStatus.FILLED, "Medicines filled")
            log_audit(
                db,
                action="refill.fill",
                entity_type="refill_request",
                entity_id=refill.id,
                user=pharmacist,
                old_value={"status": RefillStatus.APPROVED.value},
                new_value={
                    "status": RefillStatus.FILLED.value,
                    "medicines": [{"name": l.medicine_name, "quantity": l.total_needed} for l in lines],
                },
                ip_address=ip_address,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    await db.refresh(refill)
    logger.info("Refill request %s filled by %s (%d medicines)", refill.id, pharmacist.id, len(lines))
    result = FillResult(request=refill, history=history, low_stock=low_stock)

    max_days = max(line.days for line in plan)
    if enable_reminders and qualifies_for_reminder(max_days):
        try:
            reminder = await create_refill_reminder(
                db,
                prescription_id=refill.prescription_id,
                patient=refill.patient,
                days_until_refill=max_days,
                today=today,
            )
            result.reminder_date = reminder.reminder_date
        except Exception:
            logger.exception("Could not create refill reminder for refill %s", refill.id)
            await db.rollback()
            # rollback expires loaded instances; reload what the response needs
            await db.refresh(refill)
            await db.refresh(history)

    try:
        result.notified = await notify(
            refill.patient.phone if refill.patient else None,
            NotificationKind.MEDICINE_FILLED,
            {
                "patient_name": refill.patient.name if refill.patient else "",
                "prescription_id": str(refill.prescription_id),
                "fill_date": today.isoformat(),
                "medicine_list": format_medicine_list(history.filled_medicines),
                "refill_date": result.reminder_date.isoformat() if result.reminder_date else REMINDERS_DISABLED_TEXT,
            },
        )
    except Exception:
        logger.exception("Fill notification failed for refill %s", refill.id)
    return result


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

_DISPATCHABLE = (RefillStatus.FILLED, RefillStatus.APPROVED)


async def _resolve_dispatch_target(db: AsyncSession, target_id: UUID) -> RefillRequest:
    """``target_id`` is a refill request id or, failing that, a prescription id."""
    refill = await db.get(RefillRequest, target_id)
    if refill is not None:
        return refill

    result = await db.execute(
        select(RefillRequest)
        .where(
            RefillRequest.prescription_id == target_id,
            RefillRequest.status.in_([*_DISPATCHABLE, RefillStatus.DISPATCHED]),
        )
        .order_by(RefillRequest.requested_at.desc())
        .limit(1)
    )
    refill = result.scalar_one_or_none()
    if refill is None:
        raise NotFoundError(f"No refill request ready for dispatch with ID: {target_id}")
    return refill


async def _latest_request_for(db: AsyncSession, prescription_id: UUID) -> Optional[RefillRequest]:
    result = await db.execute(
        select(RefillRequest)
        .where(RefillRequest.prescription_id == prescription_id)
        .order_by(RefillRequest.requested_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def dispatch(
    db: AsyncSession,
    target_id: UUID,
    user: User | None = None,
    ip_address: str | None = None,
    today: date | None = None,
) -> DispatchResult:
    refill = await _resolve_dispatch_target(db, target_id)

    if refill.status == RefillStatus.DISPATCHED:
        logger.info("Refill request %s already dispatched", refill.id)
        return DispatchResult(request=refill, already_dispatched=True)
    if refill.status not in _DISPATCHABLE:
        raise ConflictError(f"Refill request is {refill.status.value} and cannot be dispatched")

    previous = RefillStatus(refill.status)
    try:
        if not await _transition(db, refill.id, _DISPATCHABLE, RefillStatus.DISPATCHED, actioned_at=utcnow()):
            await db.rollback()
            await db.refresh(refill)
            if refill.status == RefillStatus.DISPATCHED:
                return DispatchResult(request=refill, already_dispatched=True)
            raise ConflictError("Refill request was modified concurrently")

        await mark_dispatched(db, refill.prescription_id)
        await tracking_service.record(db, refill.prescription_id, TrackingStatus.DISPATCHED, "Medicines dispatched")
        log_audit(
            db,
            action="refill.dispatch",
            entity_type="refill_request",
            entity_id=refill.id,
            user=user,
            old_value={"status": previous.value},
            new_value={"status": RefillStatus.DISPATCHED.value},
            ip_address=ip_address,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(refill)
    logger.info("Refill request %s dispatched", refill.id)
    result = DispatchResult(request=refill)

    try:
        history = await latest_for_prescription(db, refill.prescription_id)
        latest = await _latest_request_for(db, refill.prescription_id) or refill
        result.notified = await notify(
            refill.patient.phone if refill.patient else None,
            NotificationKind.MEDICINE_DISPATCHED,
            {
                "patient_name": refill.patient.name if refill.patient else "",
                "prescription_id": str(refill.prescription_id),
                "dispatch_date": (today or local_today()).isoformat(),
                "medicine_list": format_medicine_list(history.filled_medicines) if history else "",
                "delivery_address": latest.format_delivery_address(),
            },
        )
    except Exception:
        logger.exception("Dispatch notification failed for refill %s", refill.id)
    return result


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def parse_status(value: str) -> RefillStatus:
    try:
        return RefillStatus(value.strip().upper())
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid refill status: {value}")


async def list_for_patient(db: AsyncSession, patient_id: UUID) -> list[RefillRequest]:
    result = await db.execute(
        select(RefillRequest)
        .where(RefillRequest.patient_id == patient_id)
        .order_by(RefillRequest.requested_at.desc())
    )
    return list(result.scalars().all())


async def list_by_status(db: AsyncSession, status: str | None = None) -> list[RefillRequest]:
    """Pending requests are listed oldest first (work queue), others newest first."""
    stmt = select(RefillRequest)
    if status:
        parsed = parse_status(status)
        stmt = stmt.where(RefillRequest.status == parsed)
        if parsed == RefillStatus.PENDING:
            stmt = stmt.order_by(RefillRequest.requested_at)
        else:
            stmt = stmt.order_by(RefillRequest.requested_at.desc())
    else:
        stmt = stmt.order_by(RefillRequest.requested_at.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_pending(db: AsyncSession) -> list[RefillRequest]:
    return await list_by_status(db, RefillStatus.PENDING.value)


async def get_detail(db: AsyncSession, request_id: UUID, pharmacist: User) -> RefillDetail:
    refill = await get_request(db, request_id)
    return RefillDetail(
        request=refill,
        prescription=refill.prescription,
        patient=refill.patient,
        stock=await list_inventory(db, pharmacist.id),
    )
