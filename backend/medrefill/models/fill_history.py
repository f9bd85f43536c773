"""Immutable snapshots of what was dispensed against a refill request."""
import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import relationship

from medrefill.database import Base
from medrefill.utils.clock import utcnow


class FillStatus(str, enum.Enum):
    FILLED = "FILLED"
    DISPATCHED = "DISPATCHED"


class MedicineFillHistory(Base):
    __tablename__ = "medicine_fill_history"
    __table_args__ = (
        Index("ix_fill_history_prescription_date", "prescription_id", "fill_date"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    prescription_id = Column(Uuid(as_uuid=True), ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    pharmacist_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    refill_request_id = Column(Uuid(as_uuid=True), ForeignKey("refill_requests.id", ondelete="SET NULL"), nullable=True)

    # Only field allowed to change after creation (FILLED -> DISPATCHED)
    status = Column(
        Enum(FillStatus, native_enum=False, length=20),
        nullable=False,
        default=FillStatus.FILLED,
    )
    fill_date = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    filled_medicines = relationship(
        "FilledMedicine",
        back_populates="history",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="FilledMedicine.position",
    )
    patient = relationship("User", foreign_keys=[patient_id], lazy="selectin")
    pharmacist = relationship("User", foreign_keys=[pharmacist_id], lazy="selectin")

    def __repr__(self):
        return f"<MedicineFillHistory(id={self.id}, prescription_id={self.prescription_id}, status='{self.status}')>"


class FilledMedicine(Base):
    __tablename__ = "filled_medicines"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    history_id = Column(Uuid(as_uuid=True), ForeignKey("medicine_fill_history.id", ondelete="CASCADE"), nullable=False, index=True)
    medicine_id = Column(Uuid(as_uuid=True), ForeignKey("medicines.id", ondelete="SET NULL"), nullable=True)
    position = Column(Integer, nullable=False, default=0)

    # Snapshot, independent of later catalogue edits
    medicine_name = Column(String(255), nullable=False)
    times_per_day = Column(Integer, nullable=False)
    days = Column(Integer, nullable=False)
    total_needed = Column(Integer, nullable=False)
    stock_before = Column(Integer, nullable=False)
    stock_after = Column(Integer, nullable=False)

    history = relationship("MedicineFillHistory", back_populates="filled_medicines")

    def __repr__(self):
        return f"<FilledMedicine(medicine='{self.medicine_name}', total_needed={self.total_needed})>"
