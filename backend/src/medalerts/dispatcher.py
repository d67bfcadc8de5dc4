from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Sequence

from .evaluator import Notification
from .messaging import MessageSender, OutboundMessage, SendResult, mask_address

logger = logging.getLogger(__name__)


class SendBudget:
    """Caps the number of attempted sends for one invocation."""

    def __init__(self, max_sends: int) -> None:
        self._lock = Lock()
        self._max_sends = max(0, max_sends)
        self._used = 0

    @property
    def used(self) -> int:
        return self._used

    @property
    def remaining(self) -> int:
        return self._max_sends - self._used

    @property
    def exhausted(self) -> bool:
        return self._used >= self._max_sends

    def claim(self, requested: int) -> bool:
        """Reserve all of ``requested`` or nothing.

        An untouched budget grants any claim, even one larger than the cap.
        """
        with self._lock:
            if requested > self._max_sends - self._used and self._used > 0:
                return False
            self._used += requested
            return True


@dataclass(frozen=True)
class AddressResult:
    masked_address: str
    status: str
    error_code: str | None = None
    provider_message_id: str | None = None


@dataclass(frozen=True)
class DeliveryOutcome:
    notification: Notification
    attempted: int
    sent: int
    failed: int
    results: tuple[AddressResult, ...]

    @property
    def delivered(self) -> bool:
        return self.sent > 0


class DeliveryDispatcher:
    def __init__(self, sender: MessageSender, *, budget: SendBudget, max_workers: int = 4) -> None:
        self._sender = sender
        self._budget = budget
        self._max_workers = max(1, max_workers)

    @property
    def budget(self) -> SendBudget:
        return self._budget

    def dispatch_all(self, notifications: Sequence[Notification]) -> list[DeliveryOutcome] | None:
        """Deliver every notification to every address, or none at all.

        Returns None without sending when the remaining budget cannot cover
        all of the addresses across ``notifications``.
        """
        required = sum(len(value.addresses) for value in notifications)
        if not self._budget.claim(required):
            return None
        return [self._deliver(value) for value in notifications]

    def _deliver(self, notification: Notification) -> DeliveryOutcome:
        targets = list(notification.addresses)
        if len(targets) > 1:
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(targets))) as pool:
                results = list(pool.map(lambda address: self._send_one(notification, address), targets))
        else:
            results = [self._send_one(notification, address) for address in targets]

        sent = sum(1 for value in results if value.status == "sent")
        return DeliveryOutcome(
            notification=notification,
            attempted=len(results),
            sent=sent,
            failed=len(results) - sent,
            results=tuple(results),
        )

    def _send_one(self, notification: Notification, address: str) -> AddressResult:
        masked = mask_address(address)
        message = OutboundMessage(
            address=address,
            body=notification.body,
            kind=notification.kind,
            variables=notification.variables,
        )
        try:
            result = self._sender.send_message(message)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "send raised for %s on medication %s to %s: %s",
                notification.kind,
                notification.medication_id,
                masked,
                exc,
            )
            result = SendResult(
                status="failed",
                attempted_at=datetime.now(timezone.utc),
                error_code="sender_exception",
                error_message=str(exc),
            )
        if result.status != "sent":
            logger.warning(
                "delivery failed for %s on medication %s to %s: %s",
                notification.kind,
                notification.medication_id,
                masked,
                result.error_code,
            )
        return AddressResult(
            masked_address=masked,
            status=result.status,
            error_code=result.error_code,
            provider_message_id=result.provider_message_id,
        )
