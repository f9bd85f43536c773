"""
Shared fixtures for the medrefill test-suite.

Every test gets a fresh in-memory SQLite database (aiosqlite, single shared
connection) with the full schema, plus a small world:

  - a patient, a pharmacist and an admin
  - an APPROVED prescription belonging to the patient (UPLOADED + APPROVED
    tracked, like the real intake flow)
  - one medicine ("Paracetamol 500mg") stocked at 50 by the pharmacist
"""

import os

# Must be set before medrefill is imported: the engine is built at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["APP_ENV"] = "test"
os.environ["NOTIFY_BACKEND"] = "log"
os.environ["REMINDER_LOOP_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["APP_TIMEZONE"] = "Asia/Kolkata"

import pytest  # noqa: E402

from medrefill.config import clear_settings_cache  # noqa: E402

clear_settings_cache()

from medrefill.database import AsyncSessionLocal, Base, engine  # noqa: E402
from medrefill.models import (  # noqa: E402
    Inventory,
    Medicine,
    Prescription,
    PrescriptionStatus,
    PrescriptionTracking,
    TrackingStatus,
    User,
    UserRole,
)
from medrefill.services.auth_service import create_access_token  # noqa: E402
from medrefill.services.inventory_service import StockLocks  # noqa: E402
from medrefill.services.refill_service import DeliveryAddress  # noqa: E402
from medrefill.services.tracking_service import LiveFeed  # noqa: E402


PUNE_ADDRESS = DeliveryAddress(
    line1="12 Oak St",
    city="Pune",
    state="MH",
    pincode="411001",
    phone="9876543210",
)


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Reset LiveFeed and StockLocks so state never leaks between tests."""
    LiveFeed.reset()
    StockLocks.reset()
    yield
    LiveFeed.reset()
    StockLocks.reset()


@pytest.fixture(autouse=True)
async def _schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Disposing the static pool closes the in-memory database
    await engine.dispose()


@pytest.fixture()
async def db():
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture()
def session_factory():
    return AsyncSessionLocal


async def _add_user(db, email, name, role, phone=None, profile=None) -> User:
    user = User(email=email, name=name, role=role.value, phone=phone, profile=profile)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture()
async def patient(db):
    return await _add_user(
        db, "asha@example.com", "Asha Patil", UserRole.PATIENT,
        phone="9876543210", profile={"date_of_birth": "1990-04-01"},
    )


@pytest.fixture()
async def other_patient(db):
    return await _add_user(db, "ravi@example.com", "Ravi Kumar", UserRole.PATIENT, phone="9123456780")


@pytest.fixture()
async def pharmacist(db):
    return await _add_user(
        db, "pharma@example.com", "Meera Joshi", UserRole.PHARMACIST,
        phone="9000000001", profile={"license_number": "MH-PH-1234"},
    )


@pytest.fixture()
async def admin(db):
    return await _add_user(db, "admin@example.com", "Site Admin", UserRole.ADMIN)


async def make_approved_prescription(db, patient: User) -> Prescription:
    prescription = Prescription(
        patient_id=patient.id,
        image_ref="uploads/rx-001.jpg",
        status=PrescriptionStatus.APPROVED,
    )
    db.add(prescription)
    await db.flush()
    db.add_all([
        PrescriptionTracking(prescription_id=prescription.id, status=TrackingStatus.UPLOADED),
        PrescriptionTracking(prescription_id=prescription.id, status=TrackingStatus.APPROVED),
    ])
    await db.commit()
    return prescription


@pytest.fixture()
async def prescription(db, patient):
    return await make_approved_prescription(db, patient)


@pytest.fixture()
async def medicine(db):
    med = Medicine(name="Paracetamol 500mg", manufacturer="Acme Pharma", dosage_form="tablet", strength="500mg")
    db.add(med)
    await db.commit()
    return med


async def stock(db, medicine: Medicine, pharmacist: User, quantity: int, threshold: int = 10) -> Inventory:
    row = Inventory(
        medicine_id=medicine.id,
        pharmacist_id=pharmacist.id,
        stock_quantity=quantity,
        low_stock_threshold=threshold,
    )
    db.add(row)
    await db.commit()
    return row


@pytest.fixture()
async def inventory(db, medicine, pharmacist):
    return await stock(db, medicine, pharmacist, 50)


async def current_stock(session_factory, medicine_id, pharmacist_id) -> int:
    """Read the balance through a fresh session, bypassing any identity map."""
    from sqlalchemy import select

    async with session_factory() as s:
        result = await s.execute(
            select(Inventory.stock_quantity).where(
                Inventory.medicine_id == medicine_id,
                Inventory.pharmacist_id == pharmacist_id,
            )
        )
        return result.scalar_one()


def auth_header(user: User) -> dict:
    token = create_access_token(user.id, user.email, user.role)
    return {"Authorization": f"Bearer {token}"}
