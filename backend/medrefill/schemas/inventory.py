from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field


class MedicineCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    manufacturer: str | None = Field(None, max_length=255)
    dosage_form: str | None = Field(None, max_length=100)
    strength: str | None = Field(None, max_length=100)


class MedicineResponse(BaseModel):
    id: UUID
    name: str
    manufacturer: str | None = None
    dosage_form: str | None = None
    strength: str | None = None

    model_config = {"from_attributes": True}


class InventoryCreate(BaseModel):
    medicine_id: UUID
    stock_quantity: int = Field(..., ge=0)
    low_stock_threshold: int = Field(10, ge=0)
    expiry_date: date | None = None


class InventoryUpdate(BaseModel):
    stock_quantity: int = Field(..., ge=0)
    low_stock_threshold: int = Field(..., ge=0)
    expiry_date: date | None = None


class InventoryResponse(BaseModel):
    id: UUID
    medicine_id: UUID
    pharmacist_id: UUID
    medicine: MedicineResponse | None = None
    stock_quantity: int
    low_stock_threshold: int
    is_low_stock: bool
    expiry_date: date | None = None
    last_updated: datetime

    model_config = {"from_attributes": True}


class InventoryListResponse(BaseModel):
    items: list[InventoryResponse]
    total: int
