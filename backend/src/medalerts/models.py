from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

NotificationKind = Literal["dose_reminder", "low_stock"]
ChannelName = Literal["message", "in_app"]
RunState = Literal["paging", "evaluating_page", "done", "aborted"]
AbortReason = Literal["time_budget", "send_budget"]
MedicationRunStatus = Literal["processed", "unchanged", "skipped", "dry_run"]


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MedicationRecord(BaseModel):
    id: str
    user_id: str
    name: str
    dosage: str = ""
    unit: str = "mg"
    dose_amount: int = Field(default=1, ge=1)
    stock: int = Field(default=0, ge=0)
    low_threshold: int = Field(default=0, ge=0)
    # Raw column value: bare "HH:MM" strings or {"time", "pills"} mappings.
    schedule_times: list[Any] = Field(default_factory=list)
    alerts_enabled: bool = True
    auto_deduct: bool = False
    notes: str = ""
    last_taken: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_alert_key: str | None = None
    last_message_alert_key: str | None = None
    last_auto_dose_key: str | None = None
    last_low_stock_alert_date: str | None = None

    @field_validator("schedule_times", mode="before")
    @classmethod
    def _default_schedule(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            return []
        return list(value)

    @field_validator("dose_amount", mode="before")
    @classmethod
    def _default_dose(cls, value: Any) -> Any:
        # A stored 0 or null dose falls back to a single pill.
        if value in (None, 0, "0", ""):
            return 1
        return value

    @field_validator("unit", "notes", "dosage", mode="before")
    @classmethod
    def _blank_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("last_taken", "created_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _coerce_utc(value)


class UserProfile(BaseModel):
    id: str
    full_name: str | None = None
    phone_numbers: list[str] = Field(default_factory=list)
    message_channel_enabled: bool | None = True
    in_app_enabled: bool = True
    timezone: str | None = None

    @field_validator("phone_numbers", mode="before")
    @classmethod
    def _default_numbers(cls, value: Any) -> Any:
        if value is None:
            return []
        return value

    def usable_addresses(self) -> list[str]:
        return [value.strip() for value in self.phone_numbers if value and value.strip()]

    def message_channel_active(self) -> bool:
        # Only an explicit False disables the channel; null is treated as enabled.
        return self.message_channel_enabled is not False


class AlertRunRequest(BaseModel):
    dry_run: bool = False
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _coerce_utc(value)


class MedicationRunResult(BaseModel):
    medication_id: str
    user_id: str
    status: MedicationRunStatus
    reason: str
    occurrence_keys: list[str] = Field(default_factory=list)
    notification_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    auto_deducted: bool = False
    changed_fields: list[str] = Field(default_factory=list)


class AlertRunResponse(BaseModel):
    run_at: datetime
    dry_run: bool
    state: RunState
    abort_reason: AbortReason | None = None
    pages_fetched: int
    evaluated_count: int
    skipped_count: int
    updated_count: int
    sent_count: int
    failed_count: int
    results: list[MedicationRunResult]


class InAppAlertsRequest(BaseModel):
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _coerce_utc(value)


class DueAlertItem(BaseModel):
    medication_id: str
    name: str
    time: str
    dose_amount: int
    unit: str
    occurrence_key: str
    message: str


class LowStockItem(BaseModel):
    medication_id: str
    name: str
    stock: int
    low_threshold: int
    unit: str


class InAppAlertsResponse(BaseModel):
    user_id: str
    evaluated_at: datetime
    local_date: date
    enabled: bool
    alerts: list[DueAlertItem]
    low_stock: list[LowStockItem]


class LowStockResponse(BaseModel):
    user_id: str
    items: list[LowStockItem]


class NextDoseResponse(BaseModel):
    medication_id: str
    timezone: str
    next_dose_at: datetime | None = None


class DoseRegistrationRequest(BaseModel):
    amount: int | None = Field(default=None, ge=1)
    taken_at: datetime | None = None

    @field_validator("taken_at")
    @classmethod
    def _normalize_taken_at(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _coerce_utc(value)


class DoseRegistrationResponse(BaseModel):
    medication_id: str
    stock: int
    last_taken: datetime
    low_stock: bool
