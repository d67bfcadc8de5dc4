from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request

from .batch_runner import build_batch_runner
from .config import get_settings
from .evaluator import IN_APP_CHANNEL, evaluate_medication, is_low_stock, register_dose
from .messaging import MessageSender, create_message_sender
from .models import (
    AlertRunRequest,
    AlertRunResponse,
    DoseRegistrationRequest,
    DoseRegistrationResponse,
    DueAlertItem,
    InAppAlertsRequest,
    InAppAlertsResponse,
    LowStockItem,
    LowStockResponse,
    MedicationRecord,
    NextDoseResponse,
)
from .record_store import (
    MedicationNotFoundError,
    ProfileNotFoundError,
    RecordStore,
    RecordStoreError,
    create_record_store,
)
from .schedule import local_clock, next_dose_at, resolve_timezone

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/alerts", tags=["alerts"])

# Constructed on first request from _settings; tests assign these directly.
record_store: RecordStore | None = None
message_sender: MessageSender | None = None


def _store() -> RecordStore:
    global record_store
    if record_store is None:
        record_store = create_record_store(_settings)
    return record_store


def _sender() -> MessageSender:
    global message_sender
    if message_sender is None:
        message_sender = create_message_sender(_settings)
    return message_sender


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _require_trigger_token(request: Request) -> None:
    expected = _settings.alert_trigger_token.strip()
    if not expected:
        return
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token or not hmac.compare_digest(token, expected):
        raise HTTPException(401, "valid trigger token required")


def _low_stock_item(medication: MedicationRecord) -> LowStockItem:
    return LowStockItem(
        medication_id=medication.id,
        name=medication.name,
        stock=medication.stock,
        low_threshold=medication.low_threshold,
        unit=medication.unit,
    )


@router.post("/run", response_model=AlertRunResponse)
def run_alerts(request: Request, payload: AlertRunRequest | None = None) -> AlertRunResponse:
    _require_trigger_token(request)
    request_payload = payload or AlertRunRequest()
    runner = build_batch_runner(_settings, store=_store(), sender=_sender())
    try:
        return runner.run(now=request_payload.now_override, dry_run=request_payload.dry_run)
    except RecordStoreError as exc:
        logger.error("alert run aborted by storage failure: %s", exc)
        raise HTTPException(502, "record store unavailable") from exc


@router.post("/users/{user_id}/in-app", response_model=InAppAlertsResponse)
def evaluate_in_app_alerts(user_id: str, payload: InAppAlertsRequest | None = None) -> InAppAlertsResponse:
    store = _store()
    now = (payload.now_override if payload else None) or _now_utc()
    try:
        profile = store.get_profile(user_id)
        medications = store.list_user_medications(user_id)
    except ProfileNotFoundError as exc:
        raise HTTPException(404, "profile not found") from exc
    except RecordStoreError as exc:
        raise HTTPException(502, "record store unavailable") from exc

    clock = local_clock(now, profile.timezone)
    if not profile.in_app_enabled:
        return InAppAlertsResponse(
            user_id=user_id,
            evaluated_at=now,
            local_date=clock.local_date,
            enabled=False,
            alerts=[],
            low_stock=[],
        )

    alerts: list[DueAlertItem] = []
    for medication in medications:
        evaluation = evaluate_medication(
            medication,
            now=now,
            clock=clock,
            policy=IN_APP_CHANNEL,
            window_minutes=_settings.alert_window_minutes,
        )
        for notification in evaluation.notifications:
            alerts.append(
                DueAlertItem(
                    medication_id=medication.id,
                    name=medication.name,
                    time=notification.time or "",
                    dose_amount=notification.dose_amount or medication.dose_amount,
                    unit=medication.unit,
                    occurrence_key=notification.dedup_key,
                    message=notification.body,
                )
            )
        if evaluation.changed:
            try:
                store.update_medication(medication.id, evaluation.changes)
            except MedicationNotFoundError:
                logger.warning("medication %s disappeared during in-app evaluation", medication.id)
            except RecordStoreError as exc:
                raise HTTPException(502, "record store unavailable") from exc

    return InAppAlertsResponse(
        user_id=user_id,
        evaluated_at=now,
        local_date=clock.local_date,
        enabled=True,
        alerts=alerts,
        low_stock=[_low_stock_item(value) for value in medications if is_low_stock(value)],
    )


@router.get("/users/{user_id}/low-stock", response_model=LowStockResponse)
def list_low_stock(user_id: str) -> LowStockResponse:
    try:
        medications = _store().list_user_medications(user_id)
    except RecordStoreError as exc:
        raise HTTPException(502, "record store unavailable") from exc
    return LowStockResponse(
        user_id=user_id,
        items=[_low_stock_item(value) for value in medications if is_low_stock(value)],
    )


@router.get("/medications/{medication_id}/next-dose", response_model=NextDoseResponse)
def get_next_dose(medication_id: str) -> NextDoseResponse:
    store = _store()
    try:
        medication = store.get_medication(medication_id)
    except MedicationNotFoundError as exc:
        raise HTTPException(404, "medication not found") from exc
    except RecordStoreError as exc:
        raise HTTPException(502, "record store unavailable") from exc
    try:
        zone_name = store.get_profile(medication.user_id).timezone
    except ProfileNotFoundError:
        zone_name = None
    except RecordStoreError as exc:
        raise HTTPException(502, "record store unavailable") from exc

    resolved_name, _ = resolve_timezone(zone_name)
    return NextDoseResponse(
        medication_id=medication.id,
        timezone=resolved_name,
        next_dose_at=next_dose_at(medication, _now_utc(), resolved_name),
    )


@router.post("/medications/{medication_id}/doses", response_model=DoseRegistrationResponse)
def register_medication_dose(
    medication_id: str,
    payload: DoseRegistrationRequest | None = None,
) -> DoseRegistrationResponse:
    request_payload = payload or DoseRegistrationRequest()
    store = _store()
    taken_at = request_payload.taken_at or _now_utc()
    try:
        medication = store.get_medication(medication_id)
        changes = register_dose(medication, taken_at=taken_at, amount=request_payload.amount)
        store.update_medication(medication_id, changes)
    except MedicationNotFoundError as exc:
        raise HTTPException(404, "medication not found") from exc
    except RecordStoreError as exc:
        raise HTTPException(502, "record store unavailable") from exc

    updated = medication.model_copy(update=changes)
    return DoseRegistrationResponse(
        medication_id=medication_id,
        stock=updated.stock,
        last_taken=taken_at,
        low_stock=is_low_stock(updated),
    )
