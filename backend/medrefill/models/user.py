import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Uuid
from sqlalchemy.sql import func

from medrefill.database import Base
from medrefill.utils.clock import utcnow


class UserRole(str, enum.Enum):
    PATIENT = "patient"
    PHARMACIST = "pharmacist"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    role = Column(String(20), nullable=False)  # patient, pharmacist, admin
    profile = Column(JSON, nullable=True)  # date_of_birth (patient), license_number (pharmacist)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"
