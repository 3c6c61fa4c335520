from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Mapping, Sequence

from .email_queue import DEFAULT_MAX_ATTEMPTS, EmailQueueRepository
from .templates import TemplateName, build_task_rows, format_due_date, get_priority_color

logger = logging.getLogger(__name__)

DEFAULT_USER_NAME = "there"
DEFAULT_ACTOR_NAME = "A team member"
DEFAULT_PRIORITY = "medium"


@dataclass(frozen=True)
class QueuedEmailRef:
    id: int


@dataclass(frozen=True)
class NotificationSpec:
    """Subject, template and data for one notification type."""

    subject: str
    template: TemplateName
    data: dict[str, Any] = field(default_factory=dict)


def _display_date(value: date | datetime | str | None) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return format_due_date(value)


def task_reminder_spec(
    *,
    user_name: str | None,
    task_name: str,
    due_date: date | datetime | str | None,
    task_description: str | None = None,
    priority: str | None = None,
) -> NotificationSpec:
    return NotificationSpec(
        subject=f'⏰ Reminder: "{task_name}" is due soon',
        template=TemplateName.TASK_REMINDER,
        data={
            "userName": user_name or DEFAULT_USER_NAME,
            "taskName": task_name,
            "taskDescription": task_description,
            "dueDate": _display_date(due_date),
            "priority": priority or DEFAULT_PRIORITY,
            "priorityColor": get_priority_color(priority),
        },
    )


def multiple_tasks_reminder_spec(
    *,
    user_name: str | None,
    tasks: Sequence[Mapping[str, Any]],
    task_rows: str | None = None,
) -> NotificationSpec:
    task_count = len(tasks)
    plural = task_count > 1
    return NotificationSpec(
        subject=f"⏰ Reminder: You have {task_count} task{'s' if plural else ''} due soon",
        template=TemplateName.MULTIPLE_TASKS_REMINDER,
        data={
            "userName": user_name or DEFAULT_USER_NAME,
            "taskCount": task_count,
            "taskPlural": "s" if plural else "",
            "taskVerb": "are" if plural else "is",
            "taskRows": task_rows if task_rows is not None else build_task_rows(list(tasks)),
        },
    )


def task_url(client_url: str, task_id: int | str) -> str:
    return f"{client_url.rstrip('/')}/tasks?taskId={task_id}"


class NotificationQueue:
    """Enqueue API used by the rest of the application to schedule emails."""

    def __init__(
        self,
        repository: EmailQueueRepository,
        *,
        client_url: str = "https://www.todoria.com",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._client_url = client_url
        self._max_attempts = max_attempts
        self._clock = clock

    def queue_email(
        self,
        *,
        to: str,
        subject: str,
        template: TemplateName | str,
        template_data: Mapping[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> QueuedEmailRef:
        template_name = template.value if isinstance(template, TemplateName) else template
        email_id = self._repository.enqueue(
            recipient=to,
            subject=subject,
            template_name=template_name,
            template_data=template_data or {},
            max_attempts=max_attempts or self._max_attempts,
            now=self._clock() if self._clock is not None else None,
        )
        logger.debug("queued email %s (%s)", email_id, template_name)
        return QueuedEmailRef(id=email_id)

    def queue_spec(self, to: str, spec: NotificationSpec) -> QueuedEmailRef:
        return self.queue_email(to=to, subject=spec.subject, template=spec.template, template_data=spec.data)

    def queue_task_reminder(
        self,
        *,
        to: str,
        user_name: str | None,
        task_name: str,
        due_date: date | datetime | str | None,
        task_description: str | None = None,
        priority: str | None = None,
    ) -> QueuedEmailRef:
        spec = task_reminder_spec(
            user_name=user_name,
            task_name=task_name,
            due_date=due_date,
            task_description=task_description,
            priority=priority,
        )
        return self.queue_spec(to, spec)

    def queue_multiple_tasks_reminder(
        self,
        *,
        to: str,
        user_name: str | None,
        tasks: Sequence[Mapping[str, Any]],
        task_rows: str | None = None,
    ) -> QueuedEmailRef:
        return self.queue_spec(to, multiple_tasks_reminder_spec(user_name=user_name, tasks=tasks, task_rows=task_rows))

    def queue_task_assignment_notification(
        self,
        *,
        to: str,
        user_name: str | None,
        task_id: int | str,
        task_title: str,
        task_description: str | None = None,
        assigned_by_name: str | None = None,
        due_date: date | datetime | str | None = None,
        priority: str | None = None,
    ) -> QueuedEmailRef:
        spec = NotificationSpec(
            subject=f'New Task Assigned: "{task_title}"',
            template=TemplateName.TASK_ASSIGNMENT,
            data={
                "userName": user_name or DEFAULT_USER_NAME,
                "taskTitle": task_title,
                "taskDescription": task_description,
                "assignedByName": assigned_by_name or DEFAULT_ACTOR_NAME,
                "dueDate": _display_date(due_date),
                "priority": priority or DEFAULT_PRIORITY,
                "priorityColor": get_priority_color(priority),
                "taskUrl": task_url(self._client_url, task_id),
            },
        )
        return self.queue_spec(to, spec)

    def queue_workspace_invite(
        self,
        *,
        to: str,
        inviter_name: str | None,
        workspace_name: str,
        invite_url: str,
    ) -> QueuedEmailRef:
        spec = NotificationSpec(
            subject=f"You're invited to join {workspace_name} on Todoria",
            template=TemplateName.WORKSPACE_INVITE,
            data={
                "inviterName": inviter_name or DEFAULT_ACTOR_NAME,
                "workspaceName": workspace_name,
                "inviteUrl": invite_url,
            },
        )
        return self.queue_spec(to, spec)

    def queue_welcome_email(self, *, to: str, user_name: str | None) -> QueuedEmailRef:
        spec = NotificationSpec(
            subject="Welcome to Todoria!",
            template=TemplateName.WELCOME,
            data={"userName": user_name or DEFAULT_USER_NAME},
        )
        return self.queue_spec(to, spec)

    def queue_verification_email(self, *, to: str, user_name: str | None, verification_url: str) -> QueuedEmailRef:
        spec = NotificationSpec(
            subject="Verify Your Email — Todoria",
            template=TemplateName.EMAIL_VERIFICATION,
            data={"userName": user_name or DEFAULT_USER_NAME, "verificationUrl": verification_url},
        )
        return self.queue_spec(to, spec)

    def queue_password_reset_email(self, *, to: str, user_name: str | None, reset_url: str) -> QueuedEmailRef:
        spec = NotificationSpec(
            subject="Reset Your Password — Todoria",
            template=TemplateName.PASSWORD_RESET,
            data={"userName": user_name or DEFAULT_USER_NAME, "resetUrl": reset_url},
        )
        return self.queue_spec(to, spec)

    def queue_trial_ending_email(
        self,
        *,
        to: str,
        user_name: str | None,
        trial_end_date: date | datetime | str | None,
        billing_url: str | None = None,
    ) -> QueuedEmailRef:
        spec = NotificationSpec(
            subject="Your Todoria Pro trial ends soon",
            template=TemplateName.TRIAL_ENDING,
            data={
                "userName": user_name or DEFAULT_USER_NAME,
                "trialEndDate": _display_date(trial_end_date),
                "billingUrl": billing_url,
            },
        )
        return self.queue_spec(to, spec)
