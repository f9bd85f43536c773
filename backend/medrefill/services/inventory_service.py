"""
Inventory ledger: one stock row per (medicine, pharmacist).

Stock only ever leaves the ledger through ``reserve_stock``, a single
conditional ``UPDATE ... WHERE stock_quantity >= :amount``.  The check and the
decrement are one statement, so two fills racing on the same row can never
both succeed against the same balance, and ``stock_quantity`` never goes
negative (also enforced by a CHECK constraint).

Fills additionally hold ``StockLocks`` for every row they touch, acquired in
sorted key order, so validation and deduction see the same balances within a
process.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, timedelta
from typing import AsyncIterator, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.database import is_postgres
from medrefill.models.inventory import Inventory, Medicine
from medrefill.models.user import User
from medrefill.services.audit_service import log_audit
from medrefill.services.errors import (
    ConflictError,
    InsufficientStock,
    NotFoundError,
    ValidationError,
)
from medrefill.utils.clock import local_today, utcnow

logger = logging.getLogger(__name__)

StockKey = tuple[UUID, UUID]  # (medicine_id, pharmacist_id)

EXPIRY_WINDOW_DAYS = 30


@dataclass(frozen=True)
class StockReservation:
    medicine_id: UUID
    pharmacist_id: UUID
    amount: int
    stock_before: int
    new_balance: int
    is_low_stock: bool


class StockLocks:
    """Process-wide registry of per-row locks.

    Singleton so every request handler shares one registry.
    """

    _instance: Optional["StockLocks"] = None

    def __init__(self):
        self._locks: dict[StockKey, asyncio.Lock] = {}
        self._guard = threading.Lock()

    @classmethod
    def get_instance(cls) -> "StockLocks":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset singleton (testing only)."""
        cls._instance = None

    def _lock_for(self, key: StockKey) -> asyncio.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    @asynccontextmanager
    async def hold(self, keys: Iterable[StockKey]) -> AsyncIterator[None]:
        """Acquire the locks for ``keys`` in a deterministic order.

        Sorting by (medicine_id, pharmacist_id) means two fills that share
        rows always request them in the same order and cannot deadlock.
        """
        ordered = sorted(set(keys), key=lambda k: (str(k[0]), str(k[1])))
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


# ---------------------------------------------------------------------------
# Atomic check-and-decrement
# ---------------------------------------------------------------------------

async def get_stock_row(
    db: AsyncSession,
    medicine_id: UUID,
    pharmacist_id: UUID,
    *,
    for_update: bool = False,
) -> Inventory:
    stmt = select(Inventory).where(
        Inventory.medicine_id == medicine_id,
        Inventory.pharmacist_id == pharmacist_id,
    )
    if for_update and is_postgres(db):
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFoundError(f"Inventory not found for medicineId={medicine_id}")
    return row


async def reserve_stock(
    db: AsyncSession,
    medicine_id: UUID,
    pharmacist_id: UUID,
    amount: int,
) -> StockReservation:
    """Decrement one row by ``amount`` if and only if enough stock remains.

    Does not commit; the caller owns the transaction and rolls it back if
    any later line item fails.
    """
    if amount <= 0:
        raise ValidationError(f"Reservation amount must be positive, got {amount}")

    stmt = (
        update(Inventory)
        .where(
            Inventory.medicine_id == medicine_id,
            Inventory.pharmacist_id == pharmacist_id,
            Inventory.stock_quantity >= amount,
        )
        .values(stock_quantity=Inventory.stock_quantity - amount, last_updated=utcnow())
        .returning(Inventory.stock_quantity, Inventory.low_stock_threshold)
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    row = result.first()

    if row is None:
        # Nothing matched: either the row is missing or the balance is short
        current = await get_stock_row(db, medicine_id, pharmacist_id)
        medicine = await db.get(Medicine, medicine_id)
        raise InsufficientStock(
            medicine_id,
            medicine.name if medicine else None,
            available=current.stock_quantity,
            needed=amount,
        )

    new_balance, threshold = row
    reservation = StockReservation(
        medicine_id=medicine_id,
        pharmacist_id=pharmacist_id,
        amount=amount,
        stock_before=new_balance + amount,
        new_balance=new_balance,
        is_low_stock=new_balance <= threshold,
    )
    if reservation.is_low_stock:
        logger.warning(
            "low_stock: medicine=%s pharmacist=%s balance=%d threshold=%d",
            medicine_id, pharmacist_id, new_balance, threshold,
        )
    return reservation


# ---------------------------------------------------------------------------
# Medicine catalogue
# ---------------------------------------------------------------------------

async def get_medicine(db: AsyncSession, medicine_id: UUID) -> Medicine:
    medicine = await db.get(Medicine, medicine_id)
    if medicine is None:
        raise NotFoundError(f"Medicine not found: {medicine_id}")
    return medicine


async def list_medicines(db: AsyncSession) -> list[Medicine]:
    result = await db.execute(select(Medicine).order_by(Medicine.name))
    return list(result.scalars().all())


async def create_medicine(
    db: AsyncSession,
    *,
    name: str,
    manufacturer: str | None = None,
    dosage_form: str | None = None,
    strength: str | None = None,
) -> Medicine:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Medicine name is required")

    existing = await db.execute(select(Medicine).where(Medicine.name == name))
    if existing.scalar_one_or_none():
        raise ConflictError(f"Medicine already exists: {name}")

    medicine = Medicine(name=name, manufacturer=manufacturer, dosage_form=dosage_form, strength=strength)
    db.add(medicine)
    await db.commit()
    logger.info("Medicine created: %s (%s)", medicine.name, medicine.id)
    return medicine


# ---------------------------------------------------------------------------
# Pharmacist stock management
# ---------------------------------------------------------------------------

async def list_inventory(db: AsyncSession, pharmacist_id: UUID) -> list[Inventory]:
    result = await db.execute(
        select(Inventory)
        .join(Medicine, Inventory.medicine_id == Medicine.id)
        .where(Inventory.pharmacist_id == pharmacist_id)
        .order_by(Medicine.name)
    )
    return list(result.scalars().all())


async def list_low_stock(db: AsyncSession, pharmacist_id: UUID) -> list[Inventory]:
    result = await db.execute(
        select(Inventory)
        .where(
            Inventory.pharmacist_id == pharmacist_id,
            Inventory.stock_quantity <= Inventory.low_stock_threshold,
        )
        .order_by(Inventory.stock_quantity)
    )
    return list(result.scalars().all())


async def list_expiring(
    db: AsyncSession,
    pharmacist_id: UUID,
    today: date | None = None,
    within_days: int = EXPIRY_WINDOW_DAYS,
) -> list[Inventory]:
    cutoff = (today or local_today()) + timedelta(days=within_days)
    result = await db.execute(
        select(Inventory)
        .where(
            Inventory.pharmacist_id == pharmacist_id,
            Inventory.expiry_date.is_not(None),
            Inventory.expiry_date <= cutoff,
        )
        .order_by(Inventory.expiry_date)
    )
    return list(result.scalars().all())


def _validate_levels(stock_quantity: int, low_stock_threshold: int) -> None:
    if stock_quantity < 0:
        raise ValidationError("Stock quantity cannot be negative")
    if low_stock_threshold < 0:
        raise ValidationError("Low stock threshold cannot be negative")


async def add_inventory(
    db: AsyncSession,
    *,
    medicine_id: UUID,
    pharmacist_id: UUID,
    stock_quantity: int,
    low_stock_threshold: int,
    expiry_date: date | None = None,
    actor: User | None = None,
    ip_address: str | None = None,
) -> Inventory:
    _validate_levels(stock_quantity, low_stock_threshold)
    await get_medicine(db, medicine_id)

    existing = await db.execute(
        select(Inventory.id).where(
            Inventory.medicine_id == medicine_id,
            Inventory.pharmacist_id == pharmacist_id,
        )
    )
    if existing.scalar_one_or_none():
        raise ConflictError("Medicine is already in the pharmacist's inventory")

    row = Inventory(
        medicine_id=medicine_id,
        pharmacist_id=pharmacist_id,
        stock_quantity=stock_quantity,
        low_stock_threshold=low_stock_threshold,
        expiry_date=expiry_date,
    )
    db.add(row)
    try:
        await db.flush()
        log_audit(
            db,
            action="inventory.add",
            entity_type="inventory",
            entity_id=row.id,
            user=actor,
            new_value={"medicine_id": medicine_id, "stock_quantity": stock_quantity},
            ip_address=ip_address,
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Medicine is already in the pharmacist's inventory")
    await db.refresh(row, attribute_names=["medicine"])
    logger.info("Inventory row added: medicine=%s pharmacist=%s stock=%d", medicine_id, pharmacist_id, stock_quantity)
    return row


async def _get_owned_row(db: AsyncSession, inventory_id: UUID, pharmacist_id: UUID) -> Inventory:
    row = await db.get(Inventory, inventory_id)
    if row is None or row.pharmacist_id != pharmacist_id:
        raise NotFoundError(f"Inventory not found with ID: {inventory_id}")
    return row


async def update_inventory(
    db: AsyncSession,
    *,
    inventory_id: UUID,
    pharmacist_id: UUID,
    stock_quantity: int,
    low_stock_threshold: int,
    expiry_date: date | None = None,
    actor: User | None = None,
    ip_address: str | None = None,
) -> Inventory:
    """Restock or correct a row.  Holds the row lock so a manual correction
    cannot interleave with a fill's validate/apply sequence.
    """
    _validate_levels(stock_quantity, low_stock_threshold)
    row = await _get_owned_row(db, inventory_id, pharmacist_id)

    async with StockLocks.get_instance().hold([(row.medicine_id, row.pharmacist_id)]):
        await db.refresh(row)
        old = {"stock_quantity": row.stock_quantity, "low_stock_threshold": row.low_stock_threshold}
        row.stock_quantity = stock_quantity
        row.low_stock_threshold = low_stock_threshold
        row.expiry_date = expiry_date
        log_audit(
            db,
            action="inventory.update",
            entity_type="inventory",
            entity_id=row.id,
            user=actor,
            old_value=old,
            new_value={"stock_quantity": stock_quantity, "low_stock_threshold": low_stock_threshold},
            ip_address=ip_address,
        )
        await db.commit()

    logger.info("Inventory row %s updated: stock=%d threshold=%d", inventory_id, stock_quantity, low_stock_threshold)
    return row


async def delete_inventory(
    db: AsyncSession,
    *,
    inventory_id: UUID,
    pharmacist_id: UUID,
    actor: User | None = None,
    ip_address: str | None = None,
) -> None:
    row = await _get_owned_row(db, inventory_id, pharmacist_id)
    async with StockLocks.get_instance().hold([(row.medicine_id, row.pharmacist_id)]):
        await db.delete(row)
        log_audit(
            db,
            action="inventory.delete",
            entity_type="inventory",
            entity_id=inventory_id,
            user=actor,
            old_value={"medicine_id": row.medicine_id, "stock_quantity": row.stock_quantity},
            ip_address=ip_address,
        )
        await db.commit()
    logger.info("Inventory row %s deleted", inventory_id)
