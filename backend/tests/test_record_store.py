from __future__ import annotations

import json
import urllib.error
import urllib.parse
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from medalerts.config import Settings
from medalerts.models import MedicationRecord, UserProfile
from medalerts.record_store import (
    InMemoryRecordStore,
    MedicationNotFoundError,
    ProfileNotFoundError,
    RecordStoreError,
    RestRecordStore,
    SqlAlchemyRecordStore,
    create_record_store,
)

BASE_CREATED_AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _make_medication(index: int, **overrides: object) -> MedicationRecord:
    values: dict[str, object] = {
        "id": f"med-{index:03d}",
        "user_id": "user-001",
        "name": f"Medication {index}",
        "stock": 10,
        "low_threshold": 2,
        "schedule_times": ["08:00", {"time": "20:00", "pills": 2}],
        "created_at": BASE_CREATED_AT + timedelta(minutes=index),
    }
    values.update(overrides)
    return MedicationRecord.model_validate(values)


def _make_profile(user_id: str = "user-001") -> UserProfile:
    return UserProfile(
        id=user_id,
        full_name="Ana Souza",
        phone_numbers=["+5511999990001"],
        timezone="America/Sao_Paulo",
    )


def _sqlite_store(tmp_path: Path) -> SqlAlchemyRecordStore:
    return SqlAlchemyRecordStore(f"sqlite:///{tmp_path / 'medalerts.db'}")


def _mock_response(body: object) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _rest_store() -> RestRecordStore:
    return RestRecordStore(base_url="https://project.supabase.test/", service_key="service-key-001")


def _query(request_arg: MagicMock) -> dict[str, str]:
    return dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(request_arg.full_url).query))


def test_in_memory_pages_enabled_medications_in_creation_order() -> None:
    store = InMemoryRecordStore()
    store.upsert_medication(_make_medication(3))
    store.upsert_medication(_make_medication(1))
    store.upsert_medication(_make_medication(2, alerts_enabled=False))
    store.upsert_medication(_make_medication(4))

    first = store.fetch_medication_page(offset=0, limit=2)
    second = store.fetch_medication_page(offset=2, limit=2)

    assert [value.id for value in first.records] == ["med-001", "med-003"]
    assert [value.id for value in second.records] == ["med-004"]
    assert second.row_count == 1


def test_in_memory_returns_copies() -> None:
    store = InMemoryRecordStore()
    store.upsert_medication(_make_medication(1))

    fetched = store.get_medication("med-001")
    fetched.schedule_times.append("12:00")

    assert store.get_medication("med-001").schedule_times == ["08:00", {"time": "20:00", "pills": 2}]


def test_in_memory_update_rejects_unknown_fields_and_missing_ids() -> None:
    store = InMemoryRecordStore()
    store.upsert_medication(_make_medication(1))

    with pytest.raises(ValueError, match="not updatable"):
        store.update_medication("med-001", {"name": "Renamed"})
    with pytest.raises(MedicationNotFoundError):
        store.update_medication("med-404", {"stock": 1})
    with pytest.raises(ProfileNotFoundError):
        store.get_profile("user-404")


def test_sqlite_store_round_trips_records_and_updates(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.upsert_profile(_make_profile())
    store.upsert_medication(_make_medication(2))
    store.upsert_medication(_make_medication(1))
    taken_at = datetime(2026, 3, 10, 8, 3, tzinfo=timezone.utc)

    store.update_medication(
        "med-001",
        {"stock": 9, "last_taken": taken_at, "last_message_alert_key": "2026-03-10-08:00"},
    )

    page = store.fetch_medication_page(offset=0, limit=10)
    updated = store.get_medication("med-001")
    assert [value.id for value in page.records] == ["med-001", "med-002"]
    assert updated.stock == 9
    assert updated.last_taken == taken_at
    assert updated.created_at == BASE_CREATED_AT + timedelta(minutes=1)
    assert updated.last_message_alert_key == "2026-03-10-08:00"
    assert updated.schedule_times == ["08:00", {"time": "20:00", "pills": 2}]
    assert store.fetch_profiles(["user-001", "user-404"])["user-001"].timezone == "America/Sao_Paulo"
    assert [value.id for value in store.list_user_medications("user-001")] == ["med-001", "med-002"]


def test_sqlite_store_skips_disabled_medications(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.upsert_medication(_make_medication(1, alerts_enabled=False))
    store.upsert_medication(_make_medication(2))

    page = store.fetch_medication_page(offset=0, limit=10)

    assert [value.id for value in page.records] == ["med-002"]


def test_sqlite_store_missing_records(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)

    with pytest.raises(MedicationNotFoundError):
        store.update_medication("med-404", {"stock": 1})
    with pytest.raises(MedicationNotFoundError):
        store.get_medication("med-404")
    with pytest.raises(ProfileNotFoundError):
        store.get_profile("user-404")
    assert store.fetch_profiles([]) == {}


@patch("medalerts.record_store.urllib.request.urlopen")
def test_rest_store_fetches_pages_with_postgrest_filters(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(
        [
            _make_medication(1).model_dump(mode="json"),
            {"id": "med-bad", "user_id": "user-001", "name": "Broken", "stock": -3},
        ]
    )

    page = _rest_store().fetch_medication_page(offset=200, limit=200)

    assert [value.id for value in page.records] == ["med-001"]
    assert page.row_count == 2
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url.startswith("https://project.supabase.test/rest/v1/meds?")
    assert request_arg.get_header("Authorization") == "Bearer service-key-001"
    assert request_arg.get_header("Apikey") == "service-key-001"
    query = _query(request_arg)
    assert query["alerts_enabled"] == "eq.true"
    assert query["order"] == "created_at.asc,id.asc"
    assert query["offset"] == "200"
    assert query["limit"] == "200"


@patch("medalerts.record_store.urllib.request.urlopen")
def test_rest_store_fetches_profiles_with_in_filter(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response([_make_profile().model_dump(mode="json")])

    profiles = _rest_store().fetch_profiles(["user-001", "user-002"])

    assert list(profiles) == ["user-001"]
    query = _query(mock_urlopen.call_args[0][0])
    assert query["id"] == 'in.("user-001","user-002")'


@patch("medalerts.record_store.urllib.request.urlopen")
def test_rest_store_patches_changes(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response([{"id": "med-001"}])
    taken_at = datetime(2026, 3, 10, 8, 3, tzinfo=timezone.utc)

    _rest_store().update_medication("med-001", {"stock": 4, "last_taken": taken_at})

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.get_method() == "PATCH"
    assert request_arg.get_header("Prefer") == "return=representation"
    assert _query(request_arg)["id"] == "eq.med-001"
    assert json.loads(request_arg.data.decode("utf-8")) == {
        "stock": 4,
        "last_taken": "2026-03-10T08:03:00+00:00",
    }


@patch("medalerts.record_store.urllib.request.urlopen")
def test_rest_store_patch_on_missing_row_raises_not_found(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response([])

    with pytest.raises(MedicationNotFoundError):
        _rest_store().update_medication("med-404", {"stock": 4})


@patch("medalerts.record_store.urllib.request.urlopen")
def test_rest_store_wraps_transport_errors(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://project.supabase.test/rest/v1/meds",
        code=503,
        msg="Service Unavailable",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )

    with pytest.raises(RecordStoreError, match="503"):
        _rest_store().fetch_medication_page(offset=0, limit=10)

    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")
    with pytest.raises(RecordStoreError, match="Connection refused"):
        _rest_store().get_profile("user-001")


def test_rest_store_requires_credentials() -> None:
    with pytest.raises(ValueError, match="service_key must not be empty"):
        RestRecordStore(base_url="https://project.supabase.test", service_key="")


def test_create_record_store_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_record_store(Settings()), InMemoryRecordStore)
    assert isinstance(
        create_record_store(
            Settings(record_store_backend="postgres", database_url=f"sqlite:///{tmp_path / 'select.db'}")
        ),
        SqlAlchemyRecordStore,
    )
    assert isinstance(
        create_record_store(
            Settings(
                record_store_backend="rest",
                record_store_rest_url="https://project.supabase.test",
                record_store_service_key="service-key-001",
            )
        ),
        RestRecordStore,
    )
