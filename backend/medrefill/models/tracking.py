"""Append-only prescription timeline."""
import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, Text, Uuid

from medrefill.database import Base
from medrefill.utils.clock import utcnow


class TrackingStatus(str, enum.Enum):
    UPLOADED = "UPLOADED"
    APPROVED = "APPROVED"
    REFILL_REQUESTED = "REFILL_REQUESTED"
    REFILL_APPROVED = "REFILL_APPROVED"
    FILLING = "FILLING"
    FILLED = "FILLED"
    DISPATCHED = "DISPATCHED"
    DELIVERED = "DELIVERED"


class PrescriptionTracking(Base):
    __tablename__ = "prescription_tracking"
    __table_args__ = (
        Index("ix_prescription_tracking_prescription_created", "prescription_id", "created_at"),
    )

    # Integer id doubles as an append sequence for events sharing a timestamp
    id = Column(Integer, primary_key=True, autoincrement=True)
    prescription_id = Column(Uuid(as_uuid=True), ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False)
    status = Column(Enum(TrackingStatus, native_enum=False, length=30), nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<PrescriptionTracking(id={self.id}, prescription_id={self.prescription_id}, status='{self.status}')>"
