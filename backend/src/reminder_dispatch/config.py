from __future__ import annotations

import json
import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class ConfigurationError(RuntimeError):
    """Raised when required credentials or settings are missing at startup."""


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_csv_ints(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if value is None:
        return default
    parsed: list[int] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            parsed.append(int(item))
        except ValueError:
            return default
    return tuple(parsed) or default


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
    app_name: str = "Countdown Reminder Dispatch"
    api_prefix: str = "/api"
    cron_api_key: str = ""
    data_store_backend: str = "inmemory"
    firebase_database_url: str = ""
    firebase_service_account: str = ""
    google_application_credentials: str = ""
    push_transport: str = "stub"
    vapid_subject: str = ""
    vapid_public_key: str = ""
    vapid_private_key: str = ""
    push_app_url: str = "http://localhost/"
    push_target_user: str = ""
    push_timeout_seconds: int = 10
    push_ttl_seconds: int = 86400
    late_cap_seconds: int = 86400
    lookahead_days: int = 7
    claim_stale_seconds: int = 300
    max_retries: int = 3
    retry_base_ms: int = 500
    retry_cap_ms: int = 5000
    default_timezone: str = "Asia/Jerusalem"
    # ISO weekday numbers, Monday=1.
    weekend_days: tuple[int, ...] = (6, 7)
    run_history_backend: str = "inmemory"
    database_url: str = ""

    def service_account_info(self) -> dict | None:
        raw = self.firebase_service_account.strip()
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise ConfigurationError("FIREBASE_SERVICE_ACCOUNT is not valid JSON") from exc
        if not isinstance(parsed, dict):
            raise ConfigurationError("FIREBASE_SERVICE_ACCOUNT must be a JSON object")
        return parsed


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDER_APP_NAME", "Countdown Reminder Dispatch"),
        api_prefix=os.getenv("REMINDER_API_PREFIX", "/api"),
        cron_api_key=os.getenv("CRON_API_KEY", ""),
        data_store_backend=_normalize_mode(
            os.getenv("DATA_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "firebase"},
        ),
        firebase_database_url=os.getenv("FIREBASE_DATABASE_URL", ""),
        firebase_service_account=os.getenv("FIREBASE_SERVICE_ACCOUNT", ""),
        google_application_credentials=os.getenv("GOOGLE_APPLICATION_CREDENTIALS", ""),
        push_transport=_normalize_mode(
            os.getenv("PUSH_TRANSPORT"),
            default="stub",
            allowed={"stub", "live"},
        ),
        vapid_subject=os.getenv("VAPID_SUBJECT", ""),
        vapid_public_key=os.getenv("VAPID_PUBLIC_KEY", ""),
        vapid_private_key=os.getenv("VAPID_PRIVATE_KEY", ""),
        push_app_url=os.getenv("PUSH_APP_URL", os.getenv("APP_URL", "http://localhost/")),
        push_target_user=os.getenv("PUSH_TARGET_USER", ""),
        push_timeout_seconds=_as_int(os.getenv("PUSH_TIMEOUT_SECONDS"), 10),
        push_ttl_seconds=_as_int(os.getenv("PUSH_TTL_SECONDS"), 86400),
        late_cap_seconds=_as_int(os.getenv("REMINDER_LATE_CAP_SECONDS"), 86400),
        lookahead_days=_as_int(os.getenv("REMINDER_LOOKAHEAD_DAYS"), 7),
        claim_stale_seconds=_as_int(os.getenv("REMINDER_CLAIM_STALE_SECONDS"), 300),
        max_retries=_as_int(os.getenv("REMINDER_MAX_RETRIES"), 3),
        retry_base_ms=_as_int(os.getenv("REMINDER_RETRY_BASE_MS"), 500),
        retry_cap_ms=_as_int(os.getenv("REMINDER_RETRY_CAP_MS"), 5000),
        default_timezone=os.getenv("REMINDER_DEFAULT_TIMEZONE", "Asia/Jerusalem"),
        weekend_days=_as_csv_ints(os.getenv("REMINDER_WEEKEND_DAYS"), (6, 7)),
        run_history_backend=_normalize_mode(
            os.getenv("RUN_HISTORY_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.data_store_backend == "firebase":
        if not settings.firebase_database_url.strip():
            issues.append("FIREBASE_DATABASE_URL is required when DATA_STORE_BACKEND=firebase")
        if not settings.firebase_service_account.strip() and not settings.google_application_credentials.strip():
            issues.append(
                "FIREBASE_SERVICE_ACCOUNT or GOOGLE_APPLICATION_CREDENTIALS is required "
                "when DATA_STORE_BACKEND=firebase"
            )
        else:
            try:
                settings.service_account_info()
            except ConfigurationError as exc:
                issues.append(str(exc))
    if settings.push_transport == "live":
        if settings.data_store_backend != "firebase":
            issues.append("PUSH_TRANSPORT=live requires DATA_STORE_BACKEND=firebase")
        for name, value in (
            ("VAPID_SUBJECT", settings.vapid_subject),
            ("VAPID_PUBLIC_KEY", settings.vapid_public_key),
            ("VAPID_PRIVATE_KEY", settings.vapid_private_key),
        ):
            if _is_placeholder(value):
                issues.append(f"{name} is required when PUSH_TRANSPORT=live")
    if settings.run_history_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when RUN_HISTORY_BACKEND=postgres")
    try:
        ZoneInfo(settings.default_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        issues.append(f"REMINDER_DEFAULT_TIMEZONE is not a valid timezone: {settings.default_timezone}")
    if any(day < 1 or day > 7 for day in settings.weekend_days):
        issues.append("REMINDER_WEEKEND_DAYS must contain ISO weekday numbers between 1 and 7")
    if settings.max_retries < 1:
        issues.append("REMINDER_MAX_RETRIES must be at least 1")
    return tuple(issues)
