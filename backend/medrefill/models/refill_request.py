"""Prescription refill request model."""
import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from medrefill.database import Base
from medrefill.utils.clock import utcnow


class RefillStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FILLED = "FILLED"
    DISPATCHED = "DISPATCHED"


class RefillRequest(Base):
    __tablename__ = "refill_requests"
    __table_args__ = (
        # One refill per prescription, ever; guards the check-then-insert race
        UniqueConstraint("prescription_id", name="uq_refill_requests_prescription"),
        Index("ix_refill_requests_status_requested", "status", "requested_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    prescription_id = Column(Uuid(as_uuid=True), ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    pharmacist_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)

    status = Column(
        Enum(RefillStatus, native_enum=False, length=20),
        nullable=False,
        default=RefillStatus.PENDING,
    )
    requested_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    actioned_at = Column(DateTime(timezone=True), nullable=True)
    reason_for_rejection = Column(Text, nullable=True)

    # Delivery address snapshot, captured at request time
    delivery_line1 = Column(String(255), nullable=False)
    delivery_line2 = Column(String(255), nullable=True)
    delivery_city = Column(String(100), nullable=False)
    delivery_state = Column(String(100), nullable=False)
    delivery_pincode = Column(String(6), nullable=False)
    delivery_phone = Column(String(10), nullable=False)

    prescription = relationship("Prescription", lazy="selectin")
    patient = relationship("User", foreign_keys=[patient_id], lazy="selectin")
    pharmacist = relationship("User", foreign_keys=[pharmacist_id], lazy="selectin")

    def format_delivery_address(self) -> str:
        lines = [self.delivery_line1]
        if self.delivery_line2:
            lines.append(self.delivery_line2)
        lines.append(f"{self.delivery_city}, {self.delivery_state}")
        lines.append(f"Pincode: {self.delivery_pincode}")
        if self.delivery_phone:
            lines.append(f"Phone: {self.delivery_phone}")
        return "\n".join(lines)

    def __repr__(self):
        return f"<RefillRequest(id={self.id}, prescription_id={self.prescription_id}, status='{self.status}')>"
