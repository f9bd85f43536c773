"""Pharmacist stock management and the medicine catalogue."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.database import get_db
from medrefill.middleware.auth import require_admin, require_any_user, require_pharmacist
from medrefill.models.user import User
from medrefill.schemas.inventory import (
    InventoryCreate,
    InventoryListResponse,
    InventoryResponse,
    InventoryUpdate,
    MedicineCreate,
    MedicineResponse,
)
from medrefill.services import inventory_service
from medrefill.services.audit_service import client_ip

logger = logging.getLogger(__name__)

router = APIRouter()
medicines_router = APIRouter()


def _list(rows) -> InventoryListResponse:
    return InventoryListResponse(
        items=[InventoryResponse.model_validate(r) for r in rows],
        total=len(rows),
    )


@router.get("", response_model=InventoryListResponse)
async def my_inventory(
    current_user: User = Depends(require_pharmacist),
    db: AsyncSession = Depends(get_db),
):
    return _list(await inventory_service.list_inventory(db, current_user.id))


@router.get("/low-stock", response_model=InventoryListResponse)
async def low_stock(
    current_user: User = Depends(require_pharmacist),
    db: AsyncSession = Depends(get_db),
):
    return _list(await inventory_service.list_low_stock(db, current_user.id))


@router.get("/expiring", response_model=InventoryListResponse)
async def expiring_soon(
    current_user: User = Depends(require_pharmacist),
    db: AsyncSession = Depends(get_db),
):
    return _list(await inventory_service.list_expiring(db, current_user.id))


@router.post("", response_model=InventoryResponse, status_code=201)
async def add_inventory(
    body: InventoryCreate,
    request: Request,
    current_user: User = Depends(require_pharmacist),
    db: AsyncSession = Depends(get_db),
):
    row = await inventory_service.add_inventory(
        db,
        medicine_id=body.medicine_id,
        pharmacist_id=current_user.id,
        stock_quantity=body.stock_quantity,
        low_stock_threshold=body.low_stock_threshold,
        expiry_date=body.expiry_date,
        actor=current_user,
        ip_address=client_ip(request),
    )
    return InventoryResponse.model_validate(row)


@router.put("/{inventory_id}", response_model=InventoryResponse)
async def update_inventory(
    inventory_id: UUID,
    body: InventoryUpdate,
    request: Request,
    current_user: User = Depends(require_pharmacist),
    db: AsyncSession = Depends(get_db),
):
    row = await inventory_service.update_inventory(
        db,
        inventory_id=inventory_id,
        pharmacist_id=current_user.id,
        stock_quantity=body.stock_quantity,
        low_stock_threshold=body.low_stock_threshold,
        expiry_date=body.expiry_date,
        actor=current_user,
        ip_address=client_ip(request),
    )
    return InventoryResponse.model_validate(row)


@router.delete("/{inventory_id}", status_code=204)
async def delete_inventory(
    inventory_id: UUID,
    request: Request,
    current_user: User = Depends(require_pharmacist),
    db: AsyncSession = Depends(get_db),
):
    await inventory_service.delete_inventory(
        db,
        inventory_id=inventory_id,
        pharmacist_id=current_user.id,
        actor=current_user,
        ip_address=client_ip(request),
    )
    return Response(status_code=204)


@medicines_router.get("", response_model=list[MedicineResponse])
async def list_medicines(
    current_user: User = Depends(require_any_user),
    db: AsyncSession = Depends(get_db),
):
    return [MedicineResponse.model_validate(m) for m in await inventory_service.list_medicines(db)]


@medicines_router.post("", response_model=MedicineResponse, status_code=201)
async def create_medicine(
    body: MedicineCreate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    medicine = await inventory_service.create_medicine(
        db,
        name=body.name,
        manufacturer=body.manufacturer,
        dosage_form=body.dosage_form,
        strength=body.strength,
    )
    return MedicineResponse.model_validate(medicine)
