from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import Engine

from .config import Settings
from .db import create_database_engine
from .email_queue import EmailQueueRepository, create_email_queue_repository
from .locks import NamedLockManager, create_lock_manager
from .notifications import NotificationQueue
from .queue_processor import EmailQueueProcessor
from .reminder_store import ReminderStore, create_reminder_store
from .reminders import ReminderService
from .scheduler import NotificationScheduler
from .templates import EmailTemplateRenderer
from .transport import EmailTransport, create_email_transport

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NotificationRuntime:
    """Process-wide services, built once at startup and closed at shutdown."""

    settings: Settings
    engine: Engine | None
    email_queue: EmailQueueRepository
    reminder_store: ReminderStore
    locks: NamedLockManager
    renderer: EmailTemplateRenderer
    transport: EmailTransport
    notifications: NotificationQueue
    processor: EmailQueueProcessor
    reminders: ReminderService
    scheduler: NotificationScheduler
    clock: Callable[[], datetime] = _now_utc

    def close(self) -> None:
        self.scheduler.stop()
        self.renderer.clear()
        if self.engine is not None:
            self.engine.dispose()


def build_runtime(
    settings: Settings,
    *,
    engine: Engine | None = None,
    email_queue: EmailQueueRepository | None = None,
    reminder_store: ReminderStore | None = None,
    locks: NamedLockManager | None = None,
    transport: EmailTransport | None = None,
    clock: Callable[[], datetime] = _now_utc,
) -> NotificationRuntime:
    if engine is None and settings.store_backend == "sql":
        engine = create_database_engine(settings.database_url)

    email_queue = email_queue or create_email_queue_repository(backend=settings.store_backend, engine=engine)
    reminder_store = reminder_store or create_reminder_store(backend=settings.store_backend, engine=engine)
    locks = locks or create_lock_manager(backend=settings.store_backend, engine=engine)
    transport = transport or create_email_transport(settings)
    renderer = EmailTemplateRenderer()

    notifications = NotificationQueue(
        email_queue,
        client_url=settings.client_url,
        max_attempts=settings.email_queue_max_attempts,
        clock=clock,
    )
    processor = EmailQueueProcessor(
        repository=email_queue,
        transport=transport,
        renderer=renderer,
        locks=locks,
        batch_size=settings.email_queue_batch_size,
        clock=clock,
    )
    reminders = ReminderService(
        store=reminder_store,
        transport=transport,
        renderer=renderer,
        locks=locks,
        notifications=notifications,
        lookahead_days=settings.reminder_lookahead_days,
        delivery_mode=settings.reminder_delivery_mode,
        timezone_name=settings.reminder_timezone,
        clock=clock,
    )
    scheduler = NotificationScheduler(
        processor=processor,
        reminders=reminders,
        queue_schedule=settings.email_queue_schedule,
        reminder_schedule=settings.reminder_schedule,
        timezone_name=settings.reminder_timezone,
        email_queue_enabled=settings.email_queue_enabled,
        reminder_enabled=settings.reminder_enabled,
        reminder_dry_run=settings.reminder_dry_run,
        reminder_run_on_start=settings.reminder_run_on_start,
    )
    logger.info(
        "notification runtime ready: store=%s transport=%s delivery=%s",
        settings.store_backend,
        settings.email_transport,
        settings.reminder_delivery_mode,
    )
    return NotificationRuntime(
        settings=settings,
        engine=engine,
        email_queue=email_queue,
        reminder_store=reminder_store,
        locks=locks,
        renderer=renderer,
        transport=transport,
        notifications=notifications,
        processor=processor,
        reminders=reminders,
        scheduler=scheduler,
        clock=clock,
    )
