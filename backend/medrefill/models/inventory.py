"""Medicine catalogue and per-pharmacist stock rows."""
import uuid

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from medrefill.database import Base
from medrefill.utils.clock import utcnow


class Medicine(Base):
    __tablename__ = "medicines"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, unique=True)
    manufacturer = Column(String(255), nullable=True)
    dosage_form = Column(String(100), nullable=True)
    strength = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Medicine(id={self.id}, name='{self.name}')>"


class Inventory(Base):
    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("medicine_id", "pharmacist_id", name="uq_inventory_medicine_pharmacist"),
        CheckConstraint("stock_quantity >= 0", name="ck_inventory_stock_non_negative"),
        CheckConstraint("low_stock_threshold >= 0", name="ck_inventory_threshold_non_negative"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    medicine_id = Column(Uuid(as_uuid=True), ForeignKey("medicines.id", ondelete="CASCADE"), nullable=False)
    pharmacist_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=10)
    expiry_date = Column(Date, nullable=True)
    last_updated = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    medicine = relationship("Medicine", lazy="selectin")

    @property
    def is_low_stock(self) -> bool:
        return self.stock_quantity <= self.low_stock_threshold

    def __repr__(self):
        return (
            f"<Inventory(medicine_id={self.medicine_id}, pharmacist_id={self.pharmacist_id}, "
            f"stock={self.stock_quantity})>"
        )
