from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from medrefill.models.fill_history import FillStatus


class FilledMedicineResponse(BaseModel):
    medicine_id: UUID | None = None
    medicine_name: str
    times_per_day: int
    days: int
    total_needed: int
    stock_before: int
    stock_after: int

    model_config = {"from_attributes": True}


class FillHistoryResponse(BaseModel):
    id: UUID
    prescription_id: UUID
    patient_id: UUID
    pharmacist_id: UUID | None = None
    refill_request_id: UUID | None = None
    status: FillStatus
    fill_date: datetime
    filled_medicines: list[FilledMedicineResponse]

    model_config = {"from_attributes": True}
