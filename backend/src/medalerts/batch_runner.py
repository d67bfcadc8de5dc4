"""Unattended alert run across all alerts-enabled medications.

One invocation pages through medications, joins each page to its owners'
profiles, evaluates and dispatches per medication, and writes dedup changes
back immediately. The run stops early when the wall-clock budget or the
send budget is exhausted; anything not yet evaluated keeps its stored state
and is picked up by the next invocation. Overlapping invocations are not
coordinated here; the external scheduler is expected to run one at a time.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Sequence

from .config import Settings
from .dispatcher import DeliveryDispatcher, DeliveryOutcome, SendBudget
from .evaluator import MESSAGE_CHANNEL, EvaluationResult, evaluate_medication
from .messaging import MessageSender
from .models import (
    AbortReason,
    AlertRunResponse,
    MedicationRecord,
    MedicationRunResult,
    RunState,
    UserProfile,
)
from .record_store import MedicationNotFoundError, MedicationPage, RecordStore
from .schedule import WINDOW_MINUTES, local_clock, normalize_schedule

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BatchLimits:
    window_minutes: int = WINDOW_MINUTES
    page_size: int = 200
    max_sends_per_run: int = 50
    max_duration_seconds: float = 20.0
    profile_chunk_size: int = 100
    dispatch_max_workers: int = 4

    @classmethod
    def from_settings(cls, settings: Settings) -> BatchLimits:
        return cls(
            window_minutes=settings.alert_window_minutes,
            page_size=settings.alert_page_size,
            max_sends_per_run=settings.alert_max_sends_per_run,
            max_duration_seconds=settings.alert_max_duration_seconds,
            profile_chunk_size=settings.alert_profile_chunk_size,
            dispatch_max_workers=settings.alert_dispatch_max_workers,
        )


class RunDeadline:
    def __init__(self, max_duration_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + max_duration_seconds

    def expired(self) -> bool:
        return self._clock() >= self._expires_at


def settle_changes(evaluation: EvaluationResult, outcomes: Sequence[DeliveryOutcome]) -> dict[str, object]:
    """Keep dedup advances only for notifications that reached an address.

    Auto-deduction changes are kept as evaluated. A notification that failed
    on every address leaves its field untouched so the next run retries it.
    """
    changes = dict(evaluation.changes)
    delivered: dict[str, str] = {}
    for outcome in outcomes:
        if outcome.delivered:
            delivered[outcome.notification.dedup_field] = outcome.notification.dedup_key
    for field_name in {value.dedup_field for value in evaluation.notifications}:
        if field_name in delivered:
            changes[field_name] = delivered[field_name]
        else:
            changes.pop(field_name, None)
    return changes


class BatchRunner:
    def __init__(
        self,
        *,
        store: RecordStore,
        sender: MessageSender,
        limits: BatchLimits | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._sender = sender
        self._limits = limits or BatchLimits()
        self._monotonic = monotonic

    @property
    def limits(self) -> BatchLimits:
        return self._limits

    def run(self, *, now: datetime | None = None, dry_run: bool = False) -> AlertRunResponse:
        run_at = now or _now_utc()
        limits = self._limits
        deadline = RunDeadline(limits.max_duration_seconds, clock=self._monotonic)
        dispatcher = DeliveryDispatcher(
            self._sender,
            budget=SendBudget(limits.max_sends_per_run),
            max_workers=limits.dispatch_max_workers,
        )

        state: RunState = "paging"
        abort_reason: AbortReason | None = None
        offset = 0
        pages_fetched = 0
        page = MedicationPage(records=[], row_count=0)
        results: list[MedicationRunResult] = []

        while state not in {"done", "aborted"}:
            if state == "paging":
                abort_reason = self._exhausted_budget(deadline, dispatcher.budget)
                if abort_reason is not None:
                    state = "aborted"
                    break
                page = self._store.fetch_medication_page(offset=offset, limit=limits.page_size)
                pages_fetched += 1
                state = "evaluating_page" if page.row_count else "done"
                continue

            profiles = self._load_profiles(page.records)
            for medication in page.records:
                abort_reason = self._exhausted_budget(deadline, dispatcher.budget)
                if abort_reason is not None:
                    state = "aborted"
                    break
                result = self._process_medication(
                    medication,
                    profiles.get(medication.user_id),
                    run_at=run_at,
                    dispatcher=dispatcher,
                    dry_run=dry_run,
                )
                if result is None:
                    abort_reason = "send_budget"
                    state = "aborted"
                    break
                results.append(result)
            if state == "aborted":
                break
            if page.row_count < limits.page_size:
                state = "done"
            else:
                offset += limits.page_size
                state = "paging"

        response = AlertRunResponse(
            run_at=run_at,
            dry_run=dry_run,
            state=state,
            abort_reason=abort_reason,
            pages_fetched=pages_fetched,
            evaluated_count=sum(1 for value in results if value.status != "skipped"),
            skipped_count=sum(1 for value in results if value.status == "skipped"),
            updated_count=sum(1 for value in results if value.status == "processed" and value.changed_fields),
            sent_count=sum(value.sent_count for value in results),
            failed_count=sum(value.failed_count for value in results),
            results=results,
        )
        logger.info(
            "alert run finished state=%s abort_reason=%s pages=%d evaluated=%d updated=%d sent=%d failed=%d dry_run=%s",
            response.state,
            response.abort_reason,
            response.pages_fetched,
            response.evaluated_count,
            response.updated_count,
            response.sent_count,
            response.failed_count,
            dry_run,
        )
        return response

    def _exhausted_budget(self, deadline: RunDeadline, budget: SendBudget) -> AbortReason | None:
        if deadline.expired():
            return "time_budget"
        if budget.exhausted:
            return "send_budget"
        return None

    def _load_profiles(self, records: Sequence[MedicationRecord]) -> dict[str, UserProfile]:
        user_ids = list(dict.fromkeys(value.user_id for value in records if value.user_id))
        chunk_size = max(1, self._limits.profile_chunk_size)
        profiles: dict[str, UserProfile] = {}
        for start in range(0, len(user_ids), chunk_size):
            profiles.update(self._store.fetch_profiles(user_ids[start : start + chunk_size]))
        return profiles

    def _process_medication(
        self,
        medication: MedicationRecord,
        profile: UserProfile | None,
        *,
        run_at: datetime,
        dispatcher: DeliveryDispatcher,
        dry_run: bool,
    ) -> MedicationRunResult | None:
        """Evaluate, deliver and persist one medication.

        Returns None, leaving the medication untouched, when the send budget
        cannot cover every address of every notification it needs.
        """
        def skipped(reason: str) -> MedicationRunResult:
            logger.debug("skipping medication %s: %s", medication.id, reason)
            return MedicationRunResult(
                medication_id=medication.id,
                user_id=medication.user_id,
                status="skipped",
                reason=reason,
            )

        if profile is None:
            return skipped("profile_missing")
        if not profile.message_channel_active():
            return skipped("channel_disabled")
        addresses = profile.usable_addresses()
        if not addresses:
            return skipped("no_addresses")
        if not normalize_schedule(medication.schedule_times, medication.dose_amount):
            return skipped("empty_schedule")

        clock = local_clock(run_at, profile.timezone)
        evaluation = evaluate_medication(
            medication,
            now=run_at,
            clock=clock,
            policy=MESSAGE_CHANNEL,
            addresses=tuple(addresses),
            display_name=profile.full_name,
            window_minutes=self._limits.window_minutes,
        )
        occurrence_keys = [value.occurrence_key for value in evaluation.due_times]
        if not evaluation.changed:
            return MedicationRunResult(
                medication_id=medication.id,
                user_id=medication.user_id,
                status="unchanged",
                reason="nothing_due",
                occurrence_keys=occurrence_keys,
            )

        if dry_run:
            return MedicationRunResult(
                medication_id=medication.id,
                user_id=medication.user_id,
                status="dry_run",
                reason="eligible_dry_run",
                occurrence_keys=occurrence_keys,
                notification_count=len(evaluation.notifications),
                auto_deducted=evaluation.auto_deducted,
                changed_fields=sorted(evaluation.changes),
            )

        outcomes = dispatcher.dispatch_all(evaluation.notifications)
        if outcomes is None:
            logger.info(
                "send budget too small for medication %s (%d remaining); deferring to the next run",
                medication.id,
                dispatcher.budget.remaining,
            )
            return None
        sent_count = sum(value.sent for value in outcomes)
        failed_count = sum(value.failed for value in outcomes)
        changes = settle_changes(evaluation, outcomes)

        if changes:
            try:
                self._store.update_medication(medication.id, changes)
            except MedicationNotFoundError:
                logger.warning("medication %s disappeared before its update was written", medication.id)
                return MedicationRunResult(
                    medication_id=medication.id,
                    user_id=medication.user_id,
                    status="skipped",
                    reason="medication_missing",
                    occurrence_keys=occurrence_keys,
                    notification_count=len(outcomes),
                    sent_count=sent_count,
                    failed_count=failed_count,
                )

        return MedicationRunResult(
            medication_id=medication.id,
            user_id=medication.user_id,
            status="processed" if changes else "unchanged",
            reason="updated" if changes else "delivery_failed",
            occurrence_keys=occurrence_keys,
            notification_count=len(outcomes),
            sent_count=sent_count,
            failed_count=failed_count,
            auto_deducted="last_auto_dose_key" in changes,
            changed_fields=sorted(changes),
        )


def build_batch_runner(settings: Settings, *, store: RecordStore, sender: MessageSender) -> BatchRunner:
    return BatchRunner(store=store, sender=sender, limits=BatchLimits.from_settings(settings))
