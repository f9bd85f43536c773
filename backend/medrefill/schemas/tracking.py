from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from medrefill.models.tracking import TrackingStatus


class TrackingEventCreate(BaseModel):
    status: str = Field(..., min_length=1, max_length=30)
    notes: str | None = Field(None, max_length=2000)


class TrackingEventResponse(BaseModel):
    # None for synthesized events that were never written to the ledger
    id: int | None = None
    prescription_id: UUID
    status: TrackingStatus
    notes: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class TrackingHistoryResponse(BaseModel):
    prescription_id: UUID
    events: list[TrackingEventResponse]
