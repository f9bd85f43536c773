from medrefill.models.user import User, UserRole
from medrefill.models.prescription import Prescription, PrescriptionStatus
from medrefill.models.refill_request import RefillRequest, RefillStatus
from medrefill.models.inventory import Medicine, Inventory
from medrefill.models.fill_history import MedicineFillHistory, FilledMedicine, FillStatus
from medrefill.models.tracking import PrescriptionTracking, TrackingStatus
from medrefill.models.refill_reminder import RefillReminder
from medrefill.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserRole",
    "Prescription",
    "PrescriptionStatus",
    "RefillRequest",
    "RefillStatus",
    "Medicine",
    "Inventory",
    "MedicineFillHistory",
    "FilledMedicine",
    "FillStatus",
    "PrescriptionTracking",
    "TrackingStatus",
    "RefillReminder",
    "AuditLog",
]
