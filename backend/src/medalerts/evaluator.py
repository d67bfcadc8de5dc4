from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .models import ChannelName, MedicationRecord, NotificationKind
from .schedule import WINDOW_MINUTES, DueTime, LocalClock, find_due_times


@dataclass(frozen=True)
class ChannelPolicy:
    name: ChannelName
    reminder_key_field: str
    low_stock_date_field: str | None
    applies_auto_deduct: bool


MESSAGE_CHANNEL = ChannelPolicy(
    name="message",
    reminder_key_field="last_message_alert_key",
    low_stock_date_field="last_low_stock_alert_date",
    applies_auto_deduct=True,
)
IN_APP_CHANNEL = ChannelPolicy(
    name="in_app",
    reminder_key_field="last_alert_key",
    low_stock_date_field=None,
    applies_auto_deduct=False,
)


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    medication_id: str
    body: str
    addresses: tuple[str, ...]
    dedup_field: str
    dedup_key: str
    variables: dict[str, str] = field(default_factory=dict)
    time: str | None = None
    dose_amount: int | None = None


@dataclass
class EvaluationResult:
    medication_id: str
    changes: dict[str, object]
    notifications: list[Notification]
    auto_deducted: bool
    due_times: list[DueTime]

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def build_dose_message(medication: MedicationRecord, *, dose_amount: int, time_value: str) -> str:
    return f"Time to take {medication.name}. Dose: {dose_amount} {medication.unit} at {time_value}."


def build_low_stock_message(medication: MedicationRecord, *, stock: int) -> str:
    return f"Low stock: {medication.name}. {stock} units left. Please restock soon."


def _is_newer(key: str, stored: str | None) -> bool:
    # Occurrence keys sort chronologically as plain strings.
    return stored is None or key > stored


def evaluate_medication(
    medication: MedicationRecord,
    *,
    now: datetime,
    clock: LocalClock,
    policy: ChannelPolicy = MESSAGE_CHANNEL,
    addresses: tuple[str, ...] = (),
    display_name: str | None = None,
    window_minutes: int = WINDOW_MINUTES,
) -> EvaluationResult:
    """Turn the due schedule entries of one medication into notifications.

    ``changes`` holds only the columns whose value differs from the record.
    Evaluating again with the same clock and the updated record is a no-op.
    """
    due_times = find_due_times(medication, clock, window_minutes=window_minutes)
    greeting_name = (display_name or "").strip() or "there"

    stored_reminder_key = getattr(medication, policy.reminder_key_field)
    reminder_key = stored_reminder_key
    auto_dose_key = medication.last_auto_dose_key
    stock = medication.stock
    last_taken = medication.last_taken
    notifications: list[Notification] = []

    for due in due_times:
        if _is_newer(due.occurrence_key, reminder_key):
            notifications.append(
                Notification(
                    kind="dose_reminder",
                    medication_id=medication.id,
                    body=build_dose_message(medication, dose_amount=due.pills, time_value=due.time),
                    addresses=addresses,
                    dedup_field=policy.reminder_key_field,
                    dedup_key=due.occurrence_key,
                    variables={
                        "1": greeting_name,
                        "2": medication.name,
                        "3": str(due.pills),
                        "4": due.time,
                    },
                    time=due.time,
                    dose_amount=due.pills,
                )
            )
            reminder_key = due.occurrence_key

        if policy.applies_auto_deduct and medication.auto_deduct and _is_newer(due.occurrence_key, auto_dose_key):
            stock = max(0, stock - due.pills)
            last_taken = now
            auto_dose_key = due.occurrence_key

    changes: dict[str, object] = {}
    if reminder_key != stored_reminder_key:
        changes[policy.reminder_key_field] = reminder_key
    auto_deducted = auto_dose_key != medication.last_auto_dose_key
    if auto_deducted:
        changes["last_auto_dose_key"] = auto_dose_key
        changes["stock"] = stock
        changes["last_taken"] = last_taken

    if policy.low_stock_date_field is not None:
        last_low_stock_date = getattr(medication, policy.low_stock_date_field)
        if stock <= medication.low_threshold and last_low_stock_date != clock.date_string:
            notifications.append(
                Notification(
                    kind="low_stock",
                    medication_id=medication.id,
                    body=build_low_stock_message(medication, stock=stock),
                    addresses=addresses,
                    dedup_field=policy.low_stock_date_field,
                    dedup_key=clock.date_string,
                    variables={
                        "1": greeting_name,
                        "2": medication.name,
                        "3": str(stock),
                    },
                )
            )
            changes[policy.low_stock_date_field] = clock.date_string

    return EvaluationResult(
        medication_id=medication.id,
        changes=changes,
        notifications=notifications,
        auto_deducted=auto_deducted,
        due_times=due_times,
    )


def register_dose(
    medication: MedicationRecord,
    *,
    taken_at: datetime,
    amount: int | None = None,
) -> dict[str, object]:
    """Changes for a manually registered dose; stock is clamped at zero."""
    deducted = amount if amount is not None else medication.dose_amount
    return {
        "stock": max(0, medication.stock - deducted),
        "last_taken": taken_at,
    }


def is_low_stock(medication: MedicationRecord) -> bool:
    return medication.stock <= medication.low_threshold
