from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .locks import REMINDER_LOCK, LockToken, NamedLockManager
from .notifications import (
    DEFAULT_USER_NAME,
    NotificationQueue,
    NotificationSpec,
    multiple_tasks_reminder_spec,
    task_reminder_spec,
)
from .reminder_store import ReminderCandidateTask, ReminderStore
from .templates import EmailTemplateRenderer, format_due_date
from .transport import EmailMessage, EmailTransport

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD_DAYS = 2
NO_CANDIDATES_MESSAGE = "No tasks need reminders in the configured window."
VERIFICATION_FAILED_MESSAGE = "Email configuration failed verification."
LOCK_HELD_MESSAGE = "Another reminder run holds the lock"
LOG_FAILED_MESSAGE = "Reminder sent but the reminder log could not be written"

DeliveryMode = Literal["direct", "queue"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_lookahead_days(value: Any, default: int = DEFAULT_LOOKAHEAD_DAYS) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= 0 else default


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown reminder timezone %r; falling back to UTC", name)
        return ZoneInfo("UTC")


def group_tasks_by_assignee(tasks: list[ReminderCandidateTask]) -> dict[str, list[ReminderCandidateTask]]:
    groups: dict[str, list[ReminderCandidateTask]] = {}
    for task in tasks:
        groups.setdefault(task.assignee_email, []).append(task)
    return groups


@dataclass(frozen=True)
class ReminderRecipientResult:
    email: str
    count: int
    success: bool
    error: str | None = None
    dry_run: bool = False
    queued_email_id: int | None = None


@dataclass(frozen=True)
class ReminderRunSummary:
    sent: int = 0
    failed: int = 0
    total_tasks: int = 0
    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS
    results: list[ReminderRecipientResult] = field(default_factory=list)
    message: str | None = None
    skipped: bool = False
    dry_run: bool = False


class ReminderService:
    """Finds tasks due soon and notifies each assignee at most once per day."""

    def __init__(
        self,
        *,
        store: ReminderStore,
        transport: EmailTransport,
        renderer: EmailTemplateRenderer,
        locks: NamedLockManager,
        notifications: NotificationQueue | None = None,
        lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
        delivery_mode: DeliveryMode = "direct",
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if delivery_mode == "queue" and notifications is None:
            raise ValueError("queue delivery requires a NotificationQueue")
        self._store = store
        self._transport = transport
        self._renderer = renderer
        self._locks = locks
        self._notifications = notifications
        self._default_lookahead = normalize_lookahead_days(lookahead_days)
        self._delivery_mode = delivery_mode
        self._tz = resolve_timezone(timezone_name)
        self._clock = clock

    @property
    def delivery_mode(self) -> DeliveryMode:
        return self._delivery_mode

    def today(self) -> date:
        return self._clock().astimezone(self._tz).date()

    def find_tasks_needing_reminders(self, lookahead_days: Any = None) -> list[ReminderCandidateTask]:
        lookahead = normalize_lookahead_days(lookahead_days, self._default_lookahead)
        return self._store.find_tasks_needing_reminders(today=self.today(), lookahead_days=lookahead)

    def send_reminder_emails(self, lookahead_days: Any = None, *, dry_run: bool = False) -> ReminderRunSummary:
        lookahead = normalize_lookahead_days(lookahead_days, self._default_lookahead)

        token: LockToken | None = None
        if not dry_run:
            token = self._locks.try_acquire(REMINDER_LOCK)
            if token is None:
                logger.info("reminder lock held elsewhere; skipping this run")
                return ReminderRunSummary(lookahead_days=lookahead, skipped=True, message=LOCK_HELD_MESSAGE)

        try:
            return self._run(lookahead, dry_run=dry_run)
        finally:
            if token is not None:
                try:
                    self._locks.release(token)
                except Exception:
                    logger.warning("failed to release %s lock", token.name, exc_info=True)

    def _run(self, lookahead: int, *, dry_run: bool) -> ReminderRunSummary:
        today = self.today()
        tasks = self._store.find_tasks_needing_reminders(today=today, lookahead_days=lookahead)
        if not tasks:
            return ReminderRunSummary(lookahead_days=lookahead, message=NO_CANDIDATES_MESSAGE, dry_run=dry_run)

        if not dry_run and self._delivery_mode == "direct" and not self._transport_ready():
            return ReminderRunSummary(
                failed=len(tasks),
                total_tasks=len(tasks),
                lookahead_days=lookahead,
                message=VERIFICATION_FAILED_MESSAGE,
            )

        results: list[ReminderRecipientResult] = []
        sent = failed = 0
        for email, user_tasks in group_tasks_by_assignee(tasks).items():
            if dry_run:
                results.append(ReminderRecipientResult(email=email, count=len(user_tasks), success=True, dry_run=True))
                continue

            result = self._notify(email, user_tasks)
            results.append(result)
            if not result.success:
                failed += 1
                continue
            try:
                self._log_delivered(user_tasks, today)
            except Exception as exc:
                logger.exception("reminder log write failed for %s", email)
                results[-1] = replace(result, success=False, error=f"{LOG_FAILED_MESSAGE}: {exc}")
                failed += 1
                continue
            sent += 1

        return ReminderRunSummary(
            sent=sent,
            failed=failed,
            total_tasks=len(tasks),
            lookahead_days=lookahead,
            results=results,
            dry_run=dry_run,
        )

    def _log_delivered(self, user_tasks: list[ReminderCandidateTask], today: date) -> None:
        # Several user rows can share one address; each task is logged under its own assignee.
        task_ids_by_user: dict[int, list[int]] = {}
        for task in user_tasks:
            task_ids_by_user.setdefault(task.assignee_id, []).append(task.id)
        for user_id, task_ids in task_ids_by_user.items():
            self._store.log_reminders(task_ids=task_ids, user_id=user_id, reminded_on=today)

    def _transport_ready(self) -> bool:
        try:
            return bool(self._transport.verify())
        except Exception:
            logger.exception("email transport verification failed")
            return False

    def _notify(self, email: str, user_tasks: list[ReminderCandidateTask]) -> ReminderRecipientResult:
        spec = build_reminder_spec(user_tasks)
        try:
            if self._delivery_mode == "queue":
                ref = self._notifications.queue_spec(email, spec)
                return ReminderRecipientResult(
                    email=email,
                    count=len(user_tasks),
                    success=True,
                    queued_email_id=ref.id,
                )
            rendered = self._renderer.render(spec.template, spec.data)
            outcome = self._transport.send(
                EmailMessage(to=email, subject=spec.subject, html=rendered.html, text=rendered.text)
            )
        except Exception as exc:
            logger.warning("reminder delivery to %s failed: %s", email, exc)
            return ReminderRecipientResult(email=email, count=len(user_tasks), success=False, error=str(exc))
        return ReminderRecipientResult(
            email=email,
            count=len(user_tasks),
            success=outcome.success,
            error=None if outcome.success else (outcome.error or "Unknown send error"),
        )


def build_reminder_spec(user_tasks: list[ReminderCandidateTask]) -> NotificationSpec:
    user_name = user_tasks[0].assignee_name or DEFAULT_USER_NAME
    if len(user_tasks) == 1:
        task = user_tasks[0]
        return task_reminder_spec(
            user_name=user_name,
            task_name=task.title,
            due_date=format_due_date(task.due_date),
            task_description=task.description,
            priority=task.priority,
        )
    return multiple_tasks_reminder_spec(
        user_name=user_name,
        tasks=[task.to_template_task() for task in user_tasks],
    )
