from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import date, datetime, timezone
from threading import Lock
from typing import Any, Mapping, Protocol, Sequence

from pydantic import ValidationError
from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, create_engine, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .config import Settings, sqlalchemy_database_url
from .models import MedicationRecord, UserProfile

logger = logging.getLogger(__name__)

MEDICATION_COLUMNS = (
    "id",
    "user_id",
    "name",
    "dosage",
    "unit",
    "dose_amount",
    "stock",
    "low_threshold",
    "schedule_times",
    "alerts_enabled",
    "auto_deduct",
    "notes",
    "last_taken",
    "created_at",
    "last_alert_key",
    "last_message_alert_key",
    "last_auto_dose_key",
    "last_low_stock_alert_date",
)
PROFILE_COLUMNS = (
    "id",
    "full_name",
    "phone_numbers",
    "message_channel_enabled",
    "in_app_enabled",
    "timezone",
)
UPDATABLE_MEDICATION_FIELDS = frozenset(
    {
        "stock",
        "last_taken",
        "last_alert_key",
        "last_message_alert_key",
        "last_auto_dose_key",
        "last_low_stock_alert_date",
    }
)


class RecordStoreError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


class MedicationNotFoundError(KeyError):
    """Raised when an operation references a medication id that does not exist."""


class ProfileNotFoundError(KeyError):
    """Raised when an operation references a profile id that does not exist."""


@dataclass(frozen=True)
class MedicationPage:
    records: list[MedicationRecord]
    # Rows returned by the store, including rows that failed validation.
    row_count: int


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _validate_changes(changes: Mapping[str, object]) -> dict[str, object]:
    unknown = set(changes) - UPDATABLE_MEDICATION_FIELDS
    if unknown:
        raise ValueError(f"fields are not updatable: {', '.join(sorted(unknown))}")
    return dict(changes)


def _parse_medications(rows: Sequence[Mapping[str, Any]]) -> list[MedicationRecord]:
    parsed: list[MedicationRecord] = []
    for row in rows:
        try:
            parsed.append(MedicationRecord.model_validate(dict(row)))
        except ValidationError as exc:
            logger.warning("skipping malformed medication row %s: %s", row.get("id"), exc.errors()[:1])
    return parsed


def _parse_profiles(rows: Sequence[Mapping[str, Any]]) -> dict[str, UserProfile]:
    profiles: dict[str, UserProfile] = {}
    for row in rows:
        try:
            profile = UserProfile.model_validate(dict(row))
        except ValidationError as exc:
            logger.warning("skipping malformed profile row %s: %s", row.get("id"), exc.errors()[:1])
            continue
        profiles[profile.id] = profile
    return profiles


class RecordStore(Protocol):
    def fetch_medication_page(self, *, offset: int, limit: int) -> MedicationPage: ...

    def fetch_profiles(self, user_ids: Sequence[str]) -> dict[str, UserProfile]: ...

    def update_medication(self, medication_id: str, changes: Mapping[str, object]) -> None: ...

    def get_medication(self, medication_id: str) -> MedicationRecord: ...

    def get_profile(self, user_id: str) -> UserProfile: ...

    def list_user_medications(self, user_id: str) -> list[MedicationRecord]: ...


class InMemoryRecordStore:
    """Deterministic in-memory store ordered by creation time."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._medications: dict[str, MedicationRecord] = {}
        self._profiles: dict[str, UserProfile] = {}

    def reset(self) -> None:
        with self._lock:
            self._medications.clear()
            self._profiles.clear()

    def upsert_medication(self, record: MedicationRecord) -> None:
        with self._lock:
            self._medications[record.id] = record

    def upsert_profile(self, profile: UserProfile) -> None:
        with self._lock:
            self._profiles[profile.id] = profile

    def _ordered(self) -> list[MedicationRecord]:
        return sorted(self._medications.values(), key=lambda value: (value.created_at, value.id))

    def fetch_medication_page(self, *, offset: int, limit: int) -> MedicationPage:
        with self._lock:
            enabled = [value for value in self._ordered() if value.alerts_enabled]
            records = [value.model_copy(deep=True) for value in enabled[offset : offset + limit]]
        return MedicationPage(records=records, row_count=len(records))

    def fetch_profiles(self, user_ids: Sequence[str]) -> dict[str, UserProfile]:
        with self._lock:
            return {
                user_id: self._profiles[user_id].model_copy(deep=True)
                for user_id in user_ids
                if user_id in self._profiles
            }

    def update_medication(self, medication_id: str, changes: Mapping[str, object]) -> None:
        validated = _validate_changes(changes)
        with self._lock:
            record = self._medications.get(medication_id)
            if record is None:
                raise MedicationNotFoundError(medication_id)
            self._medications[medication_id] = record.model_copy(update=validated)

    def get_medication(self, medication_id: str) -> MedicationRecord:
        with self._lock:
            record = self._medications.get(medication_id)
            if record is None:
                raise MedicationNotFoundError(medication_id)
            return record.model_copy(deep=True)

    def get_profile(self, user_id: str) -> UserProfile:
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                raise ProfileNotFoundError(user_id)
            return profile.model_copy(deep=True)

    def list_user_medications(self, user_id: str) -> list[MedicationRecord]:
        with self._lock:
            return [value.model_copy(deep=True) for value in self._ordered() if value.user_id == user_id]


class RecordStoreBase(DeclarativeBase):
    pass


class _ProfileRow(RecordStoreBase):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    full_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone_numbers: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    message_channel_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True, default=True)
    in_app_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)


class _MedicationRow(RecordStoreBase):
    __tablename__ = "meds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    dosage: Mapped[str | None] = mapped_column(String(128), nullable=True)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    dose_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    low_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    schedule_times: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    alerts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    auto_deduct: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_taken: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_alert_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_message_alert_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_auto_dose_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_low_stock_alert_date: Mapped[str | None] = mapped_column(String(10), nullable=True)


def _medication_row_to_dict(row: _MedicationRow) -> dict[str, Any]:
    values = {name: getattr(row, name) for name in MEDICATION_COLUMNS}
    values["last_taken"] = _coerce_utc(row.last_taken)
    values["created_at"] = _coerce_utc(row.created_at)
    return values


def _profile_row_to_dict(row: _ProfileRow) -> dict[str, Any]:
    return {name: getattr(row, name) for name in PROFILE_COLUMNS}


class SqlAlchemyRecordStore:
    def __init__(self, database_url: str) -> None:
        database_url = sqlalchemy_database_url(database_url)
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RECORD_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            RecordStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_MedicationRow).delete()
                session.query(_ProfileRow).delete()

    def upsert_medication(self, record: MedicationRecord) -> None:
        values = record.model_dump()
        with self._session() as session:
            with session.begin():
                session.merge(_MedicationRow(**values))

    def upsert_profile(self, profile: UserProfile) -> None:
        values = profile.model_dump()
        with self._session() as session:
            with session.begin():
                session.merge(_ProfileRow(**values))

    def fetch_medication_page(self, *, offset: int, limit: int) -> MedicationPage:
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_MedicationRow)
                    .where(_MedicationRow.alerts_enabled.is_(True))
                    .order_by(_MedicationRow.created_at.asc(), _MedicationRow.id.asc())
                    .offset(offset)
                    .limit(limit)
                ).scalars().all()
                raw = [_medication_row_to_dict(row) for row in rows]
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"medication page fetch failed: {exc}") from exc
        parsed = _parse_medications(raw)
        return MedicationPage(records=parsed, row_count=len(raw))

    def fetch_profiles(self, user_ids: Sequence[str]) -> dict[str, UserProfile]:
        if not user_ids:
            return {}
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_ProfileRow).where(_ProfileRow.id.in_(list(user_ids)))
                ).scalars().all()
                raw = [_profile_row_to_dict(row) for row in rows]
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"profile fetch failed: {exc}") from exc
        return _parse_profiles(raw)

    def update_medication(self, medication_id: str, changes: Mapping[str, object]) -> None:
        validated = _validate_changes(changes)
        if not validated:
            return
        try:
            with self._session() as session:
                with session.begin():
                    result = session.execute(
                        update(_MedicationRow)
                        .where(_MedicationRow.id == medication_id)
                        .values(**validated)
                    )
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"medication update failed for {medication_id}: {exc}") from exc
        if result.rowcount == 0:
            raise MedicationNotFoundError(medication_id)

    def get_medication(self, medication_id: str) -> MedicationRecord:
        try:
            with self._session() as session:
                row = session.get(_MedicationRow, medication_id)
                raw = _medication_row_to_dict(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"medication fetch failed for {medication_id}: {exc}") from exc
        if raw is None:
            raise MedicationNotFoundError(medication_id)
        return MedicationRecord.model_validate(raw)

    def get_profile(self, user_id: str) -> UserProfile:
        try:
            with self._session() as session:
                row = session.get(_ProfileRow, user_id)
                raw = _profile_row_to_dict(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"profile fetch failed for {user_id}: {exc}") from exc
        if raw is None:
            raise ProfileNotFoundError(user_id)
        return UserProfile.model_validate(raw)

    def list_user_medications(self, user_id: str) -> list[MedicationRecord]:
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_MedicationRow)
                    .where(_MedicationRow.user_id == user_id)
                    .order_by(_MedicationRow.created_at.asc(), _MedicationRow.id.asc())
                ).scalars().all()
                raw = [_medication_row_to_dict(row) for row in rows]
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"medication list failed for {user_id}: {exc}") from exc
        return _parse_medications(raw)


def _json_default(value: object) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    raise TypeError(f"unsupported type {type(value).__name__}")


def _in_filter(values: Sequence[str]) -> str:
    quoted = ",".join('"' + value.replace('"', '\\"') + '"' for value in values)
    return f"in.({quoted})"


class RestRecordStore:
    """PostgREST-backed store (Supabase ``/rest/v1``) using a service key."""

    def __init__(self, *, base_url: str, service_key: str, timeout_seconds: int = 10) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = service_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("service_key must not be empty")
        self._base_url = stripped_url
        self._service_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def fetch_medication_page(self, *, offset: int, limit: int) -> MedicationPage:
        rows = self._get(
            "meds",
            {
                "select": ",".join(MEDICATION_COLUMNS),
                "alerts_enabled": "eq.true",
                "order": "created_at.asc,id.asc",
                "offset": str(offset),
                "limit": str(limit),
            },
        )
        parsed = _parse_medications(rows)
        return MedicationPage(records=parsed, row_count=len(rows))

    def fetch_profiles(self, user_ids: Sequence[str]) -> dict[str, UserProfile]:
        if not user_ids:
            return {}
        rows = self._get(
            "profiles",
            {"select": ",".join(PROFILE_COLUMNS), "id": _in_filter(list(user_ids))},
        )
        return _parse_profiles(rows)

    def update_medication(self, medication_id: str, changes: Mapping[str, object]) -> None:
        validated = _validate_changes(changes)
        if not validated:
            return
        updated = self._request(
            "PATCH",
            "meds",
            {"id": f"eq.{medication_id}", "select": "id"},
            body=validated,
            extra_headers={"Prefer": "return=representation"},
        )
        if isinstance(updated, list) and not updated:
            raise MedicationNotFoundError(medication_id)

    def get_medication(self, medication_id: str) -> MedicationRecord:
        rows = self._get(
            "meds",
            {"select": ",".join(MEDICATION_COLUMNS), "id": f"eq.{medication_id}", "limit": "1"},
        )
        if not rows:
            raise MedicationNotFoundError(medication_id)
        return MedicationRecord.model_validate(rows[0])

    def get_profile(self, user_id: str) -> UserProfile:
        rows = self._get(
            "profiles",
            {"select": ",".join(PROFILE_COLUMNS), "id": f"eq.{user_id}", "limit": "1"},
        )
        if not rows:
            raise ProfileNotFoundError(user_id)
        return UserProfile.model_validate(rows[0])

    def list_user_medications(self, user_id: str) -> list[MedicationRecord]:
        rows = self._get(
            "meds",
            {
                "select": ",".join(MEDICATION_COLUMNS),
                "user_id": f"eq.{user_id}",
                "order": "created_at.asc,id.asc",
            },
        )
        return _parse_medications(rows)

    def _get(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        payload = self._request("GET", table, params)
        if not isinstance(payload, list):
            raise RecordStoreError(f"unexpected response shape from {table}")
        return [row for row in payload if isinstance(row, dict)]

    def _request(
        self,
        method: str,
        table: str,
        params: dict[str, str],
        *,
        body: dict[str, object] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> Any:
        url = f"{self._base_url}/rest/v1/{table}?{urllib.parse.urlencode(params)}"
        headers = {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
            "Accept": "application/json",
        }
        data = None
        if body is not None:
            data = json.dumps(body, default=_json_default).encode("utf-8")
            headers["Content-Type"] = "application/json"
        headers.update(extra_headers or {})
        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise RecordStoreError(f"{method} {table} failed: HTTP {exc.code} {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise RecordStoreError(f"{method} {table} failed: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise RecordStoreError(f"{method} {table} timed out: {exc}") from exc
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RecordStoreError(f"{method} {table} returned invalid JSON") from exc


def create_record_store(settings: Settings) -> RecordStore:
    normalized = settings.record_store_backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyRecordStore(settings.database_url)
    if normalized == "rest":
        return RestRecordStore(
            base_url=settings.record_store_rest_url,
            service_key=settings.record_store_service_key,
            timeout_seconds=settings.record_store_timeout_seconds,
        )
    if normalized == "inmemory":
        return InMemoryRecordStore()
    raise RuntimeError(f"unsupported RECORD_STORE_BACKEND: {settings.record_store_backend}")
