"""Time window matching for medication schedules.

A scheduled time is due when the user's local wall clock sits between the
scheduled minute and ``window_minutes`` after it, inclusive on both ends.
Matching is forward-only: a missed window is never backfilled.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import MedicationRecord

logger = logging.getLogger(__name__)

WINDOW_MINUTES = 10

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


@dataclass(frozen=True)
class LocalClock:
    timezone_name: str
    local_date: date
    minute_of_day: int

    @property
    def date_string(self) -> str:
        return self.local_date.isoformat()


@dataclass(frozen=True)
class NormalizedEntry:
    time: str
    minute_of_day: int
    pills: int


@dataclass(frozen=True)
class DueTime:
    time: str
    pills: int
    occurrence_key: str
    minutes_late: int


def resolve_timezone(zone_name: str | None) -> tuple[str, timezone | ZoneInfo]:
    if not zone_name or not zone_name.strip():
        return "UTC", timezone.utc
    normalized = zone_name.strip()
    try:
        return normalized, ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone %r, falling back to UTC", zone_name)
        return "UTC", timezone.utc


def local_clock(now: datetime, zone_name: str | None) -> LocalClock:
    name, tz = resolve_timezone(zone_name)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    return LocalClock(
        timezone_name=name,
        local_date=local.date(),
        minute_of_day=local.hour * 60 + local.minute,
    )


def parse_time_of_day(value: Any) -> tuple[str, int] | None:
    """Return the canonical ``HH:MM`` form and its minute of day, or None."""
    if not isinstance(value, str):
        return None
    match = _TIME_RE.match(value.strip())
    if match is None:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return f"{hours:02d}:{minutes:02d}", hours * 60 + minutes


def _coerce_pills(value: Any, fallback: int) -> int:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        pills = int(value)
    except (TypeError, ValueError):
        return fallback
    return pills if pills >= 1 else fallback


def normalize_schedule(raw: Iterable[Any] | None, default_dose: int) -> list[NormalizedEntry]:
    if not raw:
        return []
    entries: list[NormalizedEntry] = []
    for item in raw:
        if isinstance(item, str):
            time_value: Any = item
            pills = default_dose
        elif isinstance(item, dict):
            time_value = item.get("time")
            pills = _coerce_pills(item.get("pills"), default_dose)
        else:
            logger.debug("skipping schedule entry of type %s", type(item).__name__)
            continue
        parsed = parse_time_of_day(time_value)
        if parsed is None:
            logger.debug("skipping schedule entry with unparseable time %r", time_value)
            continue
        canonical, minute_of_day = parsed
        entries.append(NormalizedEntry(time=canonical, minute_of_day=minute_of_day, pills=pills))
    return entries


def build_occurrence_key(local_date: date, time_value: str) -> str:
    return f"{local_date.isoformat()}-{time_value}"


def find_due_times(
    medication: MedicationRecord,
    clock: LocalClock,
    *,
    window_minutes: int = WINDOW_MINUTES,
) -> list[DueTime]:
    if not medication.alerts_enabled:
        return []
    entries = normalize_schedule(medication.schedule_times, medication.dose_amount)
    due: list[DueTime] = []
    for entry in entries:
        diff = clock.minute_of_day - entry.minute_of_day
        if diff < 0 or diff > window_minutes:
            continue
        due.append(
            DueTime(
                time=entry.time,
                pills=entry.pills,
                occurrence_key=build_occurrence_key(clock.local_date, entry.time),
                minutes_late=diff,
            )
        )
    return sorted(due, key=lambda value: value.occurrence_key)


def next_dose_at(medication: MedicationRecord, now: datetime, zone_name: str | None) -> datetime | None:
    entries = normalize_schedule(medication.schedule_times, medication.dose_amount)
    if not entries:
        return None
    _, tz = resolve_timezone(zone_name)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(tz).replace(second=0, microsecond=0)
    minutes = sorted({entry.minute_of_day for entry in entries})
    today = local_now.date()
    current = local_now.hour * 60 + local_now.minute
    for minute_of_day in minutes:
        if minute_of_day >= current:
            return datetime.combine(today, time(minute_of_day // 60, minute_of_day % 60), tzinfo=tz)
    tomorrow = today + timedelta(days=1)
    first = minutes[0]
    return datetime.combine(tomorrow, time(first // 60, first % 60), tzinfo=tz)
