from __future__ import annotations

import os

import pytest

from todoria_notifications.config import Settings, get_settings, runtime_secret_issues
from todoria_notifications.main import create_app
from todoria_notifications.runtime import build_runtime

_ENV_KEYS = (
    "APP_ENV",
    "CRON_SECRET",
    "ADMIN_API_TOKEN",
    "DATABASE_URL",
    "NOTIFICATIONS_STORE_BACKEND",
    "REMINDER_LOOKAHEAD_DAYS",
    "REMINDER_DELIVERY_MODE",
    "REMINDER_DRY_RUN",
    "EMAIL_QUEUE_BATCH_SIZE",
    "EMAIL_QUEUE_ENABLED",
    "EMAIL_TRANSPORT",
    "EMAIL_PORT",
    "RUNTIME_SECRET_GUARD_MODE",
)


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _clean_env(**overrides: str) -> dict[str, str | None]:
    values: dict[str, str | None] = {key: None for key in _ENV_KEYS}
    values.update(overrides)
    return _set_env(values)


def test_get_settings_defaults() -> None:
    previous = _clean_env()
    try:
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.store_backend == "inmemory"
        assert settings.reminder_lookahead_days == 2
        assert settings.email_queue_batch_size == 10
        assert settings.email_queue_schedule == "*/30 * * * * *"
        assert settings.reminder_schedule == "0 9 * * *"
        assert settings.reminder_delivery_mode == "direct"
        assert settings.email_transport == "stub"
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.is_production is False
    finally:
        _restore_env(previous)


def test_get_settings_coerces_and_falls_back_on_bad_values() -> None:
    previous = _clean_env(
        APP_ENV=" Production ",
        REMINDER_LOOKAHEAD_DAYS="-3",
        EMAIL_QUEUE_BATCH_SIZE="abc",
        EMAIL_QUEUE_ENABLED="off",
        REMINDER_DRY_RUN="yes",
        REMINDER_DELIVERY_MODE="QUEUE",
        NOTIFICATIONS_STORE_BACKEND="redis",
        EMAIL_PORT="465",
    )
    try:
        settings = get_settings()
        assert settings.is_production is True
        assert settings.reminder_lookahead_days == 2
        assert settings.email_queue_batch_size == 10
        assert settings.email_queue_enabled is False
        assert settings.reminder_dry_run is True
        assert settings.reminder_delivery_mode == "queue"
        assert settings.store_backend == "inmemory"
        assert settings.email_port == 465
    finally:
        _restore_env(previous)


def test_runtime_secret_issues_in_production() -> None:
    issues = runtime_secret_issues(Settings(environment="production"))

    assert any("CRON_SECRET" in issue for issue in issues)
    assert any("ADMIN_API_TOKEN" in issue for issue in issues)
    assert runtime_secret_issues(
        Settings(environment="production", cron_secret="c", admin_api_token="a")
    ) == ()


def test_runtime_secret_issues_for_sql_and_smtp() -> None:
    issues = runtime_secret_issues(Settings(store_backend="sql", email_transport="smtp"))

    assert any("DATABASE_URL" in issue for issue in issues)
    assert any("EMAIL_USER" in issue for issue in issues)
    assert runtime_secret_issues(Settings()) == ()


def test_enforce_guard_blocks_startup_with_missing_secrets() -> None:
    settings = Settings(environment="production", runtime_secret_guard_mode="enforce")

    with pytest.raises(RuntimeError) as exc_info:
        create_app(runtime=build_runtime(settings))

    assert "runtime secret guard blocked startup" in str(exc_info.value)
    assert "CRON_SECRET" in str(exc_info.value)


def test_warn_guard_starts_and_logs(caplog: pytest.LogCaptureFixture) -> None:
    settings = Settings(environment="production", runtime_secret_guard_mode="warn")

    app = create_app(runtime=build_runtime(settings))

    assert app.title == "Todoria Notifications"
    assert "runtime secret guard warning" in caplog.text


def test_create_app_reads_environment() -> None:
    previous = _clean_env(
        APP_ENV="production",
        CRON_SECRET="prod-cron-secret-001",
        ADMIN_API_TOKEN="prod-admin-token-001",
        RUNTIME_SECRET_GUARD_MODE="enforce",
    )
    try:
        app = create_app()
        assert app.state.runtime.settings.cron_secret == "prod-cron-secret-001"
    finally:
        _restore_env(previous)
