import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from medrefill.database import Base
from medrefill.utils.clock import utcnow


class PrescriptionStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REQUIRES_CLARIFICATION = "REQUIRES_CLARIFICATION"


class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Opaque reference resolved by the file storage collaborator
    image_ref = Column(String(500), nullable=False)

    status = Column(
        Enum(PrescriptionStatus, native_enum=False, length=30),
        nullable=False,
        default=PrescriptionStatus.PENDING,
    )
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    patient = relationship("User", lazy="selectin")

    def __repr__(self):
        return f"<Prescription(id={self.id}, status='{self.status}')>"
