from __future__ import annotations

import logging
import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int | None = None) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    if minimum is not None and parsed < minimum:
        return default
    return parsed


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Todoria Notifications"
    api_prefix: str = "/api"
    environment: str = "development"
    log_level: str = "INFO"
    database_url: str = ""
    store_backend: str = "inmemory"
    reminder_lookahead_days: int = 2
    email_queue_batch_size: int = 10
    email_queue_max_attempts: int = 3
    email_queue_schedule: str = "*/30 * * * * *"
    reminder_schedule: str = "0 9 * * *"
    reminder_timezone: str = "UTC"
    email_queue_enabled: bool = True
    reminder_enabled: bool = True
    reminder_dry_run: bool = False
    reminder_run_on_start: bool = False
    reminder_delivery_mode: str = "direct"
    cron_secret: str = ""
    admin_api_token: str = ""
    scheduler_autostart: bool = False
    runtime_secret_guard_mode: str = "warn"
    email_transport: str = "stub"
    email_host: str = "smtp.gmail.com"
    email_port: int = 587
    email_user: str = ""
    email_password: str = ""
    email_secure: bool = False
    email_from: str = ""
    email_from_name: str = "Todoria"
    email_timeout_seconds: int = 20
    client_url: str = "https://www.todoria.com"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("NOTIFICATIONS_APP_NAME", "Todoria Notifications"),
        api_prefix=os.getenv("NOTIFICATIONS_API_PREFIX", "/api"),
        environment=os.getenv("APP_ENV", "development").strip().lower() or "development",
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        database_url=os.getenv("DATABASE_URL", ""),
        store_backend=_normalize_mode(
            os.getenv("NOTIFICATIONS_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "sql"},
        ),
        reminder_lookahead_days=_as_int(os.getenv("REMINDER_LOOKAHEAD_DAYS"), 2, minimum=0),
        email_queue_batch_size=_as_int(os.getenv("EMAIL_QUEUE_BATCH_SIZE"), 10, minimum=1),
        email_queue_max_attempts=_as_int(os.getenv("EMAIL_QUEUE_MAX_ATTEMPTS"), 3, minimum=1),
        email_queue_schedule=os.getenv("EMAIL_QUEUE_SCHEDULE", "*/30 * * * * *"),
        reminder_schedule=os.getenv("REMINDER_CRON_SCHEDULE", "0 9 * * *"),
        reminder_timezone=os.getenv("REMINDER_TIMEZONE", "UTC").strip() or "UTC",
        email_queue_enabled=_as_bool(os.getenv("EMAIL_QUEUE_ENABLED"), True),
        reminder_enabled=_as_bool(os.getenv("REMINDER_JOB_ENABLED"), True),
        reminder_dry_run=_as_bool(os.getenv("REMINDER_DRY_RUN"), False),
        reminder_run_on_start=_as_bool(os.getenv("REMINDER_RUN_ON_START"), False),
        reminder_delivery_mode=_normalize_mode(
            os.getenv("REMINDER_DELIVERY_MODE"),
            default="direct",
            allowed={"direct", "queue"},
        ),
        cron_secret=os.getenv("CRON_SECRET", "").strip(),
        admin_api_token=os.getenv("ADMIN_API_TOKEN", "").strip(),
        scheduler_autostart=_as_bool(os.getenv("SCHEDULER_AUTOSTART"), False),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        email_transport=_normalize_mode(
            os.getenv("EMAIL_TRANSPORT"),
            default="stub",
            allowed={"stub", "smtp"},
        ),
        email_host=os.getenv("EMAIL_HOST", "smtp.gmail.com"),
        email_port=_as_int(os.getenv("EMAIL_PORT"), 587, minimum=1),
        email_user=os.getenv("EMAIL_USER", ""),
        email_password=os.getenv("EMAIL_PASSWORD", ""),
        email_secure=_as_bool(os.getenv("EMAIL_SECURE"), False),
        email_from=os.getenv("EMAIL_FROM", ""),
        email_from_name=os.getenv("EMAIL_FROM_NAME", "Todoria"),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 20, minimum=1),
        client_url=os.getenv("CLIENT_URL", "https://www.todoria.com"),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.is_production and not settings.cron_secret:
        issues.append("CRON_SECRET is required in production; the reminder trigger endpoint will refuse to run")
    if settings.is_production and not settings.admin_api_token:
        issues.append("ADMIN_API_TOKEN is empty; status and health endpoints will reject every caller")
    if settings.store_backend == "sql" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when NOTIFICATIONS_STORE_BACKEND=sql")
    if settings.email_transport == "smtp" and not (settings.email_user and settings.email_password):
        issues.append("EMAIL_USER and EMAIL_PASSWORD are required when EMAIL_TRANSPORT=smtp")
    return tuple(issues)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
