from __future__ import annotations

from datetime import datetime, timezone

from medalerts.evaluator import (
    IN_APP_CHANNEL,
    MESSAGE_CHANNEL,
    EvaluationResult,
    evaluate_medication,
    is_low_stock,
    register_dose,
)
from medalerts.models import MedicationRecord
from medalerts.schedule import local_clock

ADDRESSES = ("+5511999990001",)


def _make_medication(**overrides: object) -> MedicationRecord:
    values: dict[str, object] = {
        "id": "med-001",
        "user_id": "user-001",
        "name": "Losartan",
        "unit": "mg",
        "dose_amount": 1,
        "stock": 5,
        "low_threshold": 5,
        "schedule_times": ["08:00"],
        "auto_deduct": False,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return MedicationRecord.model_validate(values)


def _evaluate(
    medication: MedicationRecord,
    now: datetime,
    *,
    zone: str | None = "UTC",
    **kwargs: object,
) -> EvaluationResult:
    return evaluate_medication(
        medication,
        now=now,
        clock=local_clock(now, zone),
        addresses=ADDRESSES,
        **kwargs,  # type: ignore[arg-type]
    )


def _apply(medication: MedicationRecord, result: EvaluationResult) -> MedicationRecord:
    return medication.model_copy(update=result.changes)


def test_due_dose_at_threshold_emits_reminder_and_low_stock() -> None:
    medication = _make_medication()
    now = datetime(2026, 3, 10, 8, 3, tzinfo=timezone.utc)

    result = _evaluate(medication, now)

    assert [value.kind for value in result.notifications] == ["dose_reminder", "low_stock"]
    reminder, low_stock = result.notifications
    assert reminder.dedup_field == "last_message_alert_key"
    assert reminder.dedup_key == "2026-03-10-08:00"
    assert reminder.body == "Time to take Losartan. Dose: 1 mg at 08:00."
    assert reminder.addresses == ADDRESSES
    assert low_stock.dedup_field == "last_low_stock_alert_date"
    assert low_stock.dedup_key == "2026-03-10"
    assert low_stock.body == "Low stock: Losartan. 5 units left. Please restock soon."
    assert result.changes == {
        "last_message_alert_key": "2026-03-10-08:00",
        "last_low_stock_alert_date": "2026-03-10",
    }
    assert result.auto_deducted is False
    assert "stock" not in result.changes


def test_auto_deduct_applies_once_per_occurrence() -> None:
    medication = _make_medication(stock=10, low_threshold=2, auto_deduct=True)
    first_now = datetime(2026, 3, 10, 8, 3, tzinfo=timezone.utc)

    first = _evaluate(medication, first_now)
    updated = _apply(medication, first)

    assert first.auto_deducted is True
    assert updated.stock == 9
    assert updated.last_taken == first_now
    assert updated.last_auto_dose_key == "2026-03-10-08:00"
    assert [value.kind for value in first.notifications] == ["dose_reminder"]

    second = _evaluate(updated, datetime(2026, 3, 10, 8, 7, tzinfo=timezone.utc))

    assert second.notifications == []
    assert second.changes == {}
    assert second.auto_deducted is False


def test_auto_deduct_at_threshold_uses_post_deduction_stock() -> None:
    medication = _make_medication(stock=5, low_threshold=5, auto_deduct=True)

    result = _evaluate(medication, datetime(2026, 3, 10, 8, 3, tzinfo=timezone.utc))

    assert result.changes["stock"] == 4
    assert result.notifications[-1].body == "Low stock: Losartan. 4 units left. Please restock soon."


def test_outside_window_produces_no_reminder() -> None:
    medication = _make_medication(stock=30)

    result = _evaluate(medication, datetime(2026, 3, 10, 8, 15, tzinfo=timezone.utc))

    assert result.notifications == []
    assert result.changed is False


def test_reevaluation_with_applied_changes_is_a_no_op() -> None:
    medication = _make_medication(auto_deduct=True, stock=3, low_threshold=5)
    now = datetime(2026, 3, 10, 8, 3, tzinfo=timezone.utc)

    first = _evaluate(medication, now)
    second = _evaluate(_apply(medication, first), now)

    assert len(first.notifications) == 2
    assert second.notifications == []
    assert second.changes == {}


def test_distinct_due_times_in_one_pass_each_fire() -> None:
    medication = _make_medication(
        stock=30,
        schedule_times=[{"time": "08:00", "pills": 2}, "08:05"],
        dose_amount=1,
        auto_deduct=True,
    )

    result = _evaluate(medication, datetime(2026, 3, 10, 8, 6, tzinfo=timezone.utc))

    assert [value.dedup_key for value in result.notifications] == [
        "2026-03-10-08:00",
        "2026-03-10-08:05",
    ]
    assert [value.dose_amount for value in result.notifications] == [2, 1]
    assert result.changes["last_message_alert_key"] == "2026-03-10-08:05"
    assert result.changes["stock"] == 27

    repeat = _evaluate(_apply(medication, result), datetime(2026, 3, 10, 8, 8, tzinfo=timezone.utc))

    assert repeat.notifications == []
    assert repeat.changes == {}


def test_earlier_due_time_is_not_resent_after_a_later_one() -> None:
    medication = _make_medication(schedule_times=["08:05", "08:00"], stock=30)

    first = _evaluate(medication, datetime(2026, 3, 10, 8, 6, tzinfo=timezone.utc))
    later = _evaluate(_apply(medication, first), datetime(2026, 3, 10, 8, 9, tzinfo=timezone.utc))

    assert [value.dedup_key for value in first.notifications] == [
        "2026-03-10-08:00",
        "2026-03-10-08:05",
    ]
    assert later.notifications == []


def test_in_app_policy_does_not_repeat_within_a_window() -> None:
    medication = _make_medication(schedule_times=["08:00", "08:05"], stock=30)

    first = _evaluate(medication, datetime(2026, 3, 10, 8, 6, tzinfo=timezone.utc), policy=IN_APP_CHANNEL)
    repeat = _evaluate(
        _apply(medication, first),
        datetime(2026, 3, 10, 8, 7, tzinfo=timezone.utc),
        policy=IN_APP_CHANNEL,
    )

    assert first.changes == {"last_alert_key": "2026-03-10-08:05"}
    assert repeat.notifications == []


def test_stock_deduction_clamps_at_zero() -> None:
    medication = _make_medication(stock=1, dose_amount=3, auto_deduct=True, low_threshold=0)

    result = _evaluate(medication, datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))

    assert result.changes["stock"] == 0


def test_low_stock_fires_once_per_local_day() -> None:
    medication = _make_medication(schedule_times=["20:00"], stock=2, low_threshold=5)

    morning = _evaluate(medication, datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))
    later = _evaluate(_apply(medication, morning), datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc))
    next_day = _evaluate(_apply(medication, morning), datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc))

    assert [value.kind for value in morning.notifications] == ["low_stock"]
    assert later.notifications == []
    assert [value.dedup_key for value in next_day.notifications] == ["2026-03-11"]


def test_local_date_drives_occurrence_key() -> None:
    medication = _make_medication(schedule_times=["22:30"], stock=30)
    now = datetime(2026, 3, 11, 1, 32, tzinfo=timezone.utc)

    result = _evaluate(medication, now, zone="America/Sao_Paulo")

    assert [value.dedup_key for value in result.notifications] == ["2026-03-10-22:30"]


def test_reminder_and_auto_dose_keys_are_independent() -> None:
    medication = _make_medication(
        stock=30,
        auto_deduct=True,
        last_message_alert_key="2026-03-10-08:00",
    )

    result = _evaluate(medication, datetime(2026, 3, 10, 8, 2, tzinfo=timezone.utc))

    assert result.notifications == []
    assert result.auto_deducted is True
    assert result.changes["stock"] == 29
    assert "last_message_alert_key" not in result.changes


def test_malformed_entries_do_not_block_valid_ones() -> None:
    medication = _make_medication(stock=30, schedule_times=[{"pills": 2}, "nope", "08:00"])

    result = _evaluate(medication, datetime(2026, 3, 10, 8, 1, tzinfo=timezone.utc))

    assert [value.dedup_key for value in result.notifications] == ["2026-03-10-08:00"]


def test_template_variables_use_display_name() -> None:
    medication = _make_medication(stock=30)
    now = datetime(2026, 3, 10, 8, 1, tzinfo=timezone.utc)

    named = _evaluate(medication, now, display_name="Ana")
    anonymous = _evaluate(medication, now)

    assert named.notifications[0].variables == {"1": "Ana", "2": "Losartan", "3": "1", "4": "08:00"}
    assert anonymous.notifications[0].variables["1"] == "there"


def test_in_app_policy_tracks_its_own_key_without_side_effects() -> None:
    medication = _make_medication(
        stock=2,
        low_threshold=5,
        auto_deduct=True,
        last_message_alert_key="2026-03-10-08:00",
    )

    result = _evaluate(medication, datetime(2026, 3, 10, 8, 1, tzinfo=timezone.utc), policy=IN_APP_CHANNEL)

    assert [value.kind for value in result.notifications] == ["dose_reminder"]
    assert result.changes == {"last_alert_key": "2026-03-10-08:00"}
    assert result.auto_deducted is False


def test_message_channel_ignores_in_app_key() -> None:
    medication = _make_medication(stock=30, last_alert_key="2026-03-10-08:00")

    result = _evaluate(medication, datetime(2026, 3, 10, 8, 1, tzinfo=timezone.utc), policy=MESSAGE_CHANNEL)

    assert result.changes == {"last_message_alert_key": "2026-03-10-08:00"}


def test_register_dose_clamps_and_sets_last_taken() -> None:
    medication = _make_medication(stock=2, dose_amount=1)
    taken_at = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)

    assert register_dose(medication, taken_at=taken_at) == {"stock": 1, "last_taken": taken_at}
    assert register_dose(medication, taken_at=taken_at, amount=5) == {"stock": 0, "last_taken": taken_at}


def test_is_low_stock_includes_threshold() -> None:
    assert is_low_stock(_make_medication(stock=5, low_threshold=5)) is True
    assert is_low_stock(_make_medication(stock=6, low_threshold=5)) is False


def test_zero_dose_amount_falls_back_to_one_pill() -> None:
    medication = _make_medication(dose_amount=0, stock=30, auto_deduct=True)

    result = _evaluate(medication, datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))

    assert medication.dose_amount == 1
    assert result.changes["stock"] == 29
