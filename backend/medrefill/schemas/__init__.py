from medrefill.schemas.prescription import (
    PrescriptionCreate, PrescriptionStatusUpdate, PrescriptionResponse, PrescriptionListResponse,
)
from medrefill.schemas.inventory import (
    MedicineCreate, MedicineResponse, InventoryCreate, InventoryUpdate,
    InventoryResponse, InventoryListResponse,
)
from medrefill.schemas.history import FilledMedicineResponse, FillHistoryResponse
from medrefill.schemas.refill import (
    DeliveryAddressIn, RefillRequestCreate, RejectRequest, FillItemIn, FillRequest,
    RefillResponse, RefillListResponse, RefillDetailResponse, FillResponse, DispatchResponse,
)
from medrefill.schemas.tracking import TrackingEventCreate, TrackingEventResponse, TrackingHistoryResponse
from medrefill.schemas.reminder import (
    ReminderResponse, ReminderSettingsUpdate, ReminderSettingsResponse,
    ReminderRunResponse, ReminderStatsResponse,
)
