"""Prescription intake and pharmacist review."""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.models.prescription import Prescription, PrescriptionStatus
from medrefill.models.tracking import TrackingStatus
from medrefill.models.user import User, UserRole
from medrefill.services import tracking_service
from medrefill.services.audit_service import log_audit
from medrefill.services.errors import NotFoundError, PermissionDeniedError, ValidationError
from medrefill.services.user_service import ensure_role, lookup_user

logger = logging.getLogger(__name__)


def parse_status(value: str) -> PrescriptionStatus:
    try:
        return PrescriptionStatus(value.strip().upper())
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid prescription status: {value}")


async def create_prescription(
    db: AsyncSession,
    patient_email: str,
    image_ref: str,
    notes: str | None = None,
) -> Prescription:
    patient = await lookup_user(db, patient_email)
    ensure_role(patient, UserRole.PATIENT, action="upload prescriptions")

    image_ref = (image_ref or "").strip()
    if not image_ref:
        raise ValidationError("Prescription image reference is required")

    prescription = Prescription(
        patient_id=patient.id,
        image_ref=image_ref,
        status=PrescriptionStatus.PENDING,
        notes=notes,
    )
    db.add(prescription)
    await db.flush()
    await tracking_service.record(db, prescription.id, TrackingStatus.UPLOADED, "Prescription uploaded")
    await db.commit()
    logger.info("Prescription %s uploaded by patient %s", prescription.id, patient.id)
    return prescription


async def get_prescription(db: AsyncSession, prescription_id: UUID) -> Prescription:
    prescription = await db.get(Prescription, prescription_id)
    if prescription is None:
        raise NotFoundError(f"Prescription not found with ID: {prescription_id}")
    return prescription


async def get_for_user(db: AsyncSession, prescription_id: UUID, user: User) -> Prescription:
    """Patients may only read their own prescriptions."""
    prescription = await get_prescription(db, prescription_id)
    if UserRole(user.role) == UserRole.PATIENT and prescription.patient_id != user.id:
        raise PermissionDeniedError("Prescription does not belong to this patient")
    return prescription


async def update_status(
    db: AsyncSession,
    prescription_id: UUID,
    status: str,
    notes: str | None,
    reviewer: User,
    ip_address: str | None = None,
) -> Prescription:
    new_status = parse_status(status)
    prescription = await get_prescription(db, prescription_id)
    old_status = PrescriptionStatus(prescription.status)

    prescription.status = new_status
    if notes is not None:
        prescription.notes = notes

    if new_status == PrescriptionStatus.APPROVED and old_status != PrescriptionStatus.APPROVED:
        await tracking_service.record(db, prescription.id, TrackingStatus.APPROVED, "Prescription approved")

    log_audit(
        db,
        action="prescription.review",
        entity_type="prescription",
        entity_id=prescription.id,
        user=reviewer,
        old_value={"status": old_status.value},
        new_value={"status": new_status.value, "notes": notes},
        ip_address=ip_address,
    )
    await db.commit()
    logger.info("Prescription %s: %s -> %s by %s", prescription.id, old_status.value, new_status.value, reviewer.id)
    return prescription


async def list_for_patient(db: AsyncSession, patient_id: UUID) -> list[Prescription]:
    result = await db.execute(
        select(Prescription)
        .where(Prescription.patient_id == patient_id)
        .order_by(Prescription.created_at.desc())
    )
    return list(result.scalars().all())


async def list_pending(db: AsyncSession) -> list[Prescription]:
    result = await db.execute(
        select(Prescription)
        .where(Prescription.status == PrescriptionStatus.PENDING)
        .order_by(Prescription.created_at)
    )
    return list(result.scalars().all())


async def list_all(db: AsyncSession) -> list[Prescription]:
    result = await db.execute(select(Prescription).order_by(Prescription.created_at.desc()))
    return list(result.scalars().all())
