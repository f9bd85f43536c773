from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel


class ReminderResponse(BaseModel):
    id: UUID
    prescription_id: UUID
    days_until_refill: int
    reminder_date: date
    is_enabled: bool
    sent: bool
    sent_at: datetime | None = None

    model_config = {"from_attributes": True}


class ReminderSettingsUpdate(BaseModel):
    enabled: bool


class ReminderSettingsResponse(BaseModel):
    enabled: bool
    updated: int


class ReminderRunResponse(BaseModel):
    started: bool
    checked: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


class ReminderStatsResponse(BaseModel):
    total_reminders: int
    enabled_reminders: int
    due_today: int
    sent_today: int
