from __future__ import annotations

import os
from dataclasses import dataclass


class ConfigurationError(RuntimeError):
    """Raised when required credentials or endpoints are missing at startup."""


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 1) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    return normalized.lower() in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Medication Alerts"
    api_prefix: str = "/api/v1"
    config_guard_mode: str = "enforce"
    alert_trigger_token: str = ""
    # Record store.
    record_store_backend: str = "inmemory"
    database_url: str = ""
    record_store_rest_url: str = ""
    record_store_service_key: str = ""
    record_store_timeout_seconds: int = 10
    # Outbound messaging.
    messaging_enabled: bool = False
    messaging_sender_type: str = "stub"
    messaging_timeout_seconds: int = 5
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_from: str = ""
    twilio_template_dose_sid: str = ""
    twilio_template_low_stock_sid: str = ""
    twilio_api_base_url: str = "https://api.twilio.com"
    # Invocation budget.
    alert_window_minutes: int = 10
    alert_page_size: int = 200
    alert_max_sends_per_run: int = 50
    alert_max_duration_seconds: float = 20.0
    alert_profile_chunk_size: int = 100
    alert_dispatch_max_workers: int = 4


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("MEDALERTS_APP_NAME", "Medication Alerts"),
        api_prefix=os.getenv("MEDALERTS_API_PREFIX", "/api/v1"),
        config_guard_mode=_normalize_mode(
            os.getenv("CONFIG_GUARD_MODE"),
            default="enforce",
            allowed={"off", "warn", "enforce"},
        ),
        alert_trigger_token=os.getenv("ALERT_TRIGGER_TOKEN", ""),
        record_store_backend=os.getenv("RECORD_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        record_store_rest_url=os.getenv("RECORD_STORE_REST_URL", os.getenv("SUPABASE_URL", "")),
        record_store_service_key=os.getenv("RECORD_STORE_SERVICE_KEY", os.getenv("SERVICE_ROLE_KEY", "")),
        record_store_timeout_seconds=_as_int(os.getenv("RECORD_STORE_TIMEOUT_SECONDS"), 10),
        messaging_enabled=_as_bool(os.getenv("MESSAGING_ENABLED"), False),
        messaging_sender_type=os.getenv("MESSAGING_SENDER_TYPE", "stub"),
        messaging_timeout_seconds=_as_int(os.getenv("MESSAGING_TIMEOUT_SECONDS"), 5),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_whatsapp_from=os.getenv("TWILIO_WHATSAPP_FROM", ""),
        twilio_template_dose_sid=os.getenv("TWILIO_TEMPLATE_ALERT_DOSE_SID", ""),
        twilio_template_low_stock_sid=os.getenv("TWILIO_TEMPLATE_LOW_STOCK_SID", ""),
        twilio_api_base_url=os.getenv("TWILIO_API_BASE_URL", "https://api.twilio.com"),
        alert_window_minutes=_as_int(os.getenv("ALERT_WINDOW_MINUTES"), 10, minimum=0),
        alert_page_size=_as_int(os.getenv("ALERT_PAGE_SIZE"), 200),
        alert_max_sends_per_run=_as_int(os.getenv("ALERT_MAX_SENDS_PER_RUN"), 50),
        alert_max_duration_seconds=_as_float(os.getenv("ALERT_MAX_DURATION_SECONDS"), 20.0),
        alert_profile_chunk_size=_as_int(os.getenv("ALERT_PROFILE_CHUNK_SIZE"), 100),
        alert_dispatch_max_workers=_as_int(os.getenv("ALERT_DISPATCH_MAX_WORKERS"), 4),
    )


def sqlalchemy_database_url(url: str) -> str:
    """Rewrite the ``postgres://`` scheme some hosts issue to the one SQLAlchemy accepts."""
    value = url.strip()
    if value.startswith("postgres://"):
        return "postgresql://" + value[len("postgres://") :]
    return value


def configuration_issues(settings: Settings, *, persistent_store: bool = False) -> tuple[str, ...]:
    """List human-readable configuration problems; empty when usable.

    ``persistent_store`` rejects the in-memory backend, which starts empty
    on every process and so never holds medications for an unattended run.
    """
    issues: list[str] = []
    backend = settings.record_store_backend.strip().lower()
    if backend not in {"inmemory", "postgres", "rest"}:
        issues.append(f"RECORD_STORE_BACKEND={settings.record_store_backend!r} is not supported")
    if persistent_store and backend == "inmemory":
        issues.append("RECORD_STORE_BACKEND=inmemory holds no medications; use postgres or rest for scheduled runs")
    if backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when RECORD_STORE_BACKEND=postgres")
    if backend == "rest":
        if not settings.record_store_rest_url.strip():
            issues.append("RECORD_STORE_REST_URL is required when RECORD_STORE_BACKEND=rest")
        if _is_placeholder(settings.record_store_service_key):
            issues.append("RECORD_STORE_SERVICE_KEY is empty or uses a placeholder value")

    sender_type = settings.messaging_sender_type.strip().lower()
    if sender_type not in {"stub", "twilio"}:
        issues.append(f"MESSAGING_SENDER_TYPE={settings.messaging_sender_type!r} is not supported")
    if sender_type == "twilio":
        if not settings.twilio_account_sid.strip():
            issues.append("TWILIO_ACCOUNT_SID is required when MESSAGING_SENDER_TYPE=twilio")
        if _is_placeholder(settings.twilio_auth_token):
            issues.append("TWILIO_AUTH_TOKEN is empty or uses a placeholder value")
        if not settings.twilio_whatsapp_from.strip():
            issues.append("TWILIO_WHATSAPP_FROM is required when MESSAGING_SENDER_TYPE=twilio")
    return tuple(issues)


def require_valid_configuration(settings: Settings, *, persistent_store: bool = False) -> None:
    issues = configuration_issues(settings, persistent_store=persistent_store)
    if issues:
        raise ConfigurationError("invalid configuration: " + "; ".join(issues))
