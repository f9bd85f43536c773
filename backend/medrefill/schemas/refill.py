from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field

from medrefill.models.refill_request import RefillStatus
from medrefill.schemas.history import FillHistoryResponse
from medrefill.schemas.inventory import InventoryResponse
from medrefill.schemas.prescription import PrescriptionResponse


class DeliveryAddressIn(BaseModel):
    # Format rules (6-digit pincode, 10-digit phone) are enforced by the workflow
    line1: str = Field(..., max_length=255)
    line2: str | None = Field(None, max_length=255)
    city: str = Field(..., max_length=100)
    state: str = Field(..., max_length=100)
    pincode: str = Field(..., max_length=20)
    phone: str = Field(..., max_length=20)


class RefillRequestCreate(BaseModel):
    prescription_id: UUID
    delivery_address: DeliveryAddressIn


class RejectRequest(BaseModel):
    reason: str = Field(..., max_length=2000)


class FillItemIn(BaseModel):
    medicine_id: UUID
    morning: bool = False
    afternoon: bool = False
    night: bool = False
    days: int = Field(0, ge=0, le=365)


class FillRequest(BaseModel):
    items: list[FillItemIn] = Field(..., min_length=1)
    enable_reminders: bool = True


class RefillResponse(BaseModel):
    id: UUID
    prescription_id: UUID
    patient_id: UUID
    pharmacist_id: UUID | None = None
    status: RefillStatus
    requested_at: datetime
    actioned_at: datetime | None = None
    reason_for_rejection: str | None = None
    delivery_line1: str
    delivery_line2: str | None = None
    delivery_city: str
    delivery_state: str
    delivery_pincode: str
    delivery_phone: str

    model_config = {"from_attributes": True}


class RefillListResponse(BaseModel):
    refills: list[RefillResponse]
    total: int


class PatientSummary(BaseModel):
    id: UUID
    name: str
    email: str
    phone: str | None = None

    model_config = {"from_attributes": True}


class RefillDetailResponse(BaseModel):
    request: RefillResponse
    prescription: PrescriptionResponse
    patient: PatientSummary
    stock: list[InventoryResponse]


class FillResponse(BaseModel):
    request: RefillResponse
    history: FillHistoryResponse
    low_stock: list[str]
    reminder_date: date | None = None
    notified: bool


class DispatchResponse(BaseModel):
    request: RefillResponse
    already_dispatched: bool
    notified: bool
