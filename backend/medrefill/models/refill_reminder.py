"""
RefillReminder model for the daily refill reminder sweep.

One row per qualifying fill.  ``sent`` is the idempotency guard: the sweep
only picks up enabled, unsent reminders dated today and flips ``sent`` in the
same transaction that records the successful notification.
"""

import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship

from medrefill.database import Base
from medrefill.utils.clock import utcnow


class RefillReminder(Base):
    __tablename__ = "refill_reminders"
    __table_args__ = (
        Index("ix_refill_reminders_due", "reminder_date", "is_enabled", "sent"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    prescription_id = Column(Uuid(as_uuid=True), ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    days_until_refill = Column(Integer, nullable=False)
    reminder_date = Column(Date, nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)

    sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    # Cached at creation so the sweep does not depend on profile edits
    patient_phone = Column(String(20), nullable=True)
    message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    prescription = relationship("Prescription", lazy="selectin")
    patient = relationship("User", lazy="selectin")

    def __repr__(self):
        return (
            f"<RefillReminder(id={self.id}, reminder_date={self.reminder_date}, "
            f"enabled={self.is_enabled}, sent={self.sent})>"
        )
