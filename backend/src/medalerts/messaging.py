from __future__ import annotations

import base64
import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Protocol

from .config import Settings
from .models import NotificationKind

SendStatus = Literal["sent", "failed"]

WHATSAPP_PREFIX = "whatsapp:"


@dataclass(frozen=True)
class OutboundMessage:
    address: str
    body: str
    kind: NotificationKind
    variables: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class MessageSender(Protocol):
    def send_message(self, message: OutboundMessage) -> SendResult: ...


class StubMessageSender:
    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self.sent: list[OutboundMessage] = []

    def send_message(self, message: OutboundMessage) -> SendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="messaging_disabled",
                error_message="Outbound messaging is disabled",
            )

        if "fail" in message.address.lower():
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for address",
            )

        self.sent.append(message)
        message_id = f"stub-{len(self.sent):06d}"
        return SendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _TwilioSendError(Exception):
    """Internal error raised when a Twilio HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def normalize_whatsapp_address(value: str) -> str:
    stripped = value.strip()
    return stripped if stripped.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{stripped}"


class HttpTwilioSender:
    """Sends WhatsApp messages through the Twilio Messages API.

    When a content template SID is configured for the notification kind the
    message is sent as a template with its positional variables, otherwise as
    a plain body.
    """

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        template_sids: dict[str, str] | None = None,
        base_url: str = "https://api.twilio.com",
        timeout_seconds: int = 5,
    ) -> None:
        stripped_sid = account_sid.strip()
        stripped_token = auth_token.strip()
        stripped_from = from_number.strip()
        if not stripped_sid:
            raise ValueError("account_sid must not be empty")
        if not stripped_token:
            raise ValueError("auth_token must not be empty")
        if not stripped_from:
            raise ValueError("from_number must not be empty")
        self._account_sid = stripped_sid
        self._auth_token = stripped_token
        self._from_number = normalize_whatsapp_address(stripped_from)
        self._template_sids = {key: value.strip() for key, value in (template_sids or {}).items() if value.strip()}
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_seconds = timeout_seconds

    def send_message(self, message: OutboundMessage) -> SendResult:
        attempted_at = datetime.now(timezone.utc)

        form = {
            "From": self._from_number,
            "To": normalize_whatsapp_address(message.address),
        }
        template_sid = self._template_sids.get(message.kind)
        if template_sid:
            form["ContentSid"] = template_sid
            form["ContentVariables"] = json.dumps(message.variables, sort_keys=True)
        else:
            form["Body"] = message.body

        try:
            response_data = self._post(form)
        except _TwilioSendError as exc:
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_address(message.address)})",
            )
        message_sid = response_data.get("sid")
        return SendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_sid if isinstance(message_sid, str) else None,
        )

    def _post(self, form: dict[str, str]) -> dict[str, object]:
        """Send a POST request to the Twilio messages endpoint."""
        url = f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        credentials = base64.b64encode(f"{self._account_sid}:{self._auth_token}".encode("utf-8")).decode("ascii")
        request = urllib.request.Request(
            url,
            data=urllib.parse.urlencode(form).encode("utf-8"),
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise _TwilioSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _TwilioSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _TwilioSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


def create_message_sender(settings: Settings) -> MessageSender:
    sender_type = settings.messaging_sender_type.strip().lower()
    if sender_type == "twilio":
        return HttpTwilioSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_whatsapp_from,
            template_sids={
                "dose_reminder": settings.twilio_template_dose_sid,
                "low_stock": settings.twilio_template_low_stock_sid,
            },
            base_url=settings.twilio_api_base_url,
            timeout_seconds=settings.messaging_timeout_seconds,
        )
    return StubMessageSender(enabled=settings.messaging_enabled)


def mask_address(address: str) -> str:
    normalized = address.strip().removeprefix(WHATSAPP_PREFIX)
    if not normalized:
        return "***"

    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
