from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from medrefill.models.prescription import PrescriptionStatus


class PrescriptionCreate(BaseModel):
    image_ref: str = Field(..., min_length=1, max_length=500)
    notes: str | None = Field(None, max_length=2000)


class PrescriptionStatusUpdate(BaseModel):
    # Free-form so that an unknown status yields the domain validation message
    status: str = Field(..., min_length=1, max_length=30)
    notes: str | None = Field(None, max_length=2000)


class PrescriptionResponse(BaseModel):
    id: UUID
    patient_id: UUID
    image_ref: str
    status: PrescriptionStatus
    notes: str | None = None
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class PrescriptionListResponse(BaseModel):
    prescriptions: list[PrescriptionResponse]
    total: int
