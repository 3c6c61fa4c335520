from __future__ import annotations

import html
import json
import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from threading import Lock
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

_CONDITIONAL_RE = re.compile(r"{{#if\s+(\w+)}}([\s\S]*?){{/if}}")
_PLACEHOLDER_RE = re.compile(r"{{(\w+)}}")
_CONDITIONAL_KEY_RE = re.compile(r"{{#if\s+(\w+)}}")
_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")

# Keys whose values are pre-built HTML fragments or URLs and are inserted verbatim.
HTML_SAFE_KEYS = frozenset({"taskRows", "taskUrl", "inviteUrl", "priorityColor"})

PRIORITY_COLORS = {"high": "#ef4444", "medium": "#f59e0b", "low": "#22c55e"}


class TemplateName(str, Enum):
    TASK_REMINDER = "taskReminder.html"
    MULTIPLE_TASKS_REMINDER = "multipleTasksReminder.html"
    TASK_ASSIGNMENT = "taskAssignment.html"
    WORKSPACE_INVITE = "workspaceInvite.html"
    WELCOME = "welcome.html"
    EMAIL_VERIFICATION = "emailVerification.html"
    PASSWORD_RESET = "passwordReset.html"
    TRIAL_ENDING = "trialEnding.html"


class TemplateRenderError(ValueError):
    """Raised when a template is unknown or its data does not match the template schema."""


class TemplateData(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TaskReminderData(TemplateData):
    user_name: str | None = None
    task_name: str | None = None
    task_description: str | None = None
    due_date: str | None = None
    priority: str | None = None
    priority_color: str | None = None


class MultipleTasksReminderData(TemplateData):
    user_name: str | None = None
    task_count: int = 0
    task_plural: str | None = None
    task_verb: str | None = None
    task_rows: str | None = None


class TaskAssignmentData(TemplateData):
    user_name: str | None = None
    task_title: str | None = None
    task_description: str | None = None
    assigned_by_name: str | None = None
    due_date: str | None = None
    priority: str | None = None
    priority_color: str | None = None
    task_url: str | None = None


class WorkspaceInviteData(TemplateData):
    inviter_name: str | None = None
    workspace_name: str | None = None
    invite_url: str


class WelcomeData(TemplateData):
    user_name: str | None = None


class EmailVerificationData(TemplateData):
    user_name: str | None = None
    verification_url: str


class PasswordResetData(TemplateData):
    user_name: str | None = None
    reset_url: str


class TrialEndingData(TemplateData):
    user_name: str | None = None
    trial_end_date: str | None = None
    billing_url: str | None = None


_LAYOUT_OPEN = (
    '<!DOCTYPE html>\n<html lang="en">\n<head><meta charset="utf-8"><title>Todoria</title></head>\n'
    '<body style="margin: 0; padding: 0; background-color: #f4f4f5; font-family: Arial, sans-serif;">\n'
    '<table role="presentation" width="100%" cellspacing="0" cellpadding="0">\n'
    '<tr><td align="center" style="padding: 32px 16px;">\n'
    '<table role="presentation" width="600" cellspacing="0" cellpadding="0" '
    'style="background-color: #ffffff; border-radius: 12px;">\n'
)
_LAYOUT_CLOSE = (
    '<tr><td style="padding: 24px 32px; color: #888888; font-size: 12px;">'
    "You are receiving this email because you have an account on Todoria.</td></tr>\n"
    "</table>\n</td></tr>\n</table>\n</body>\n</html>\n"
)


def _page(body: str) -> str:
    return _LAYOUT_OPEN + body + _LAYOUT_CLOSE


_TEMPLATE_SOURCES: dict[TemplateName, str] = {
    TemplateName.TASK_REMINDER: _page(
        '<tr><td style="padding: 32px;">\n'
        '<h1 style="margin: 0 0 16px 0; color: #1a1a1a; font-size: 22px;">Hi {{userName}},</h1>\n'
        '<p style="margin: 0 0 16px 0; color: #444444;">This is a reminder that a task is due soon.</p>\n'
        '<h2 style="margin: 0 0 8px 0; color: #1a1a1a; font-size: 18px;">{{taskName}}</h2>\n'
        '{{#if taskDescription}}<p style="margin: 0 0 8px 0; color: #666666;">{{taskDescription}}</p>{{/if}}\n'
        '<p style="margin: 0 0 8px 0; color: #444444;">Due: {{dueDate}}</p>\n'
        '<span style="display: inline-block; padding: 4px 10px; background-color: {{priorityColor}}; '
        'color: #ffffff; font-size: 11px; border-radius: 10px;">{{priority}}</span>\n'
        "</td></tr>\n"
    ),
    TemplateName.MULTIPLE_TASKS_REMINDER: _page(
        '<tr><td style="padding: 32px;">\n'
        '<h1 style="margin: 0 0 16px 0; color: #1a1a1a; font-size: 22px;">Hi {{userName}},</h1>\n'
        '<p style="margin: 0 0 16px 0; color: #444444;">You have {{taskCount}} task{{taskPlural}} '
        "that {{taskVerb}} due soon.</p>\n"
        '<table role="presentation" width="100%" cellspacing="0" cellpadding="0">\n'
        "{{taskRows}}\n"
        "</table>\n"
        "</td></tr>\n"
    ),
    TemplateName.TASK_ASSIGNMENT: _page(
        '<tr><td style="padding: 32px;">\n'
        '<h1 style="margin: 0 0 16px 0; color: #1a1a1a; font-size: 22px;">Hi {{userName}},</h1>\n'
        '<p style="margin: 0 0 16px 0; color: #444444;">{{assignedByName}} assigned you a new task.</p>\n'
        '<h2 style="margin: 0 0 8px 0; color: #1a1a1a; font-size: 18px;">{{taskTitle}}</h2>\n'
        '{{#if taskDescription}}<p style="margin: 0 0 8px 0; color: #666666;">{{taskDescription}}</p>{{/if}}\n'
        '{{#if dueDate}}<p style="margin: 0 0 8px 0; color: #444444;">Due: {{dueDate}}</p>{{/if}}\n'
        '<span style="display: inline-block; padding: 4px 10px; background-color: {{priorityColor}}; '
        'color: #ffffff; font-size: 11px; border-radius: 10px;">{{priority}}</span>\n'
        '<p style="margin: 24px 0 0 0;"><a href="{{taskUrl}}" style="color: #2563eb;">View task</a></p>\n'
        "</td></tr>\n"
    ),
    TemplateName.WORKSPACE_INVITE: _page(
        '<tr><td style="padding: 32px;">\n'
        '<h1 style="margin: 0 0 16px 0; color: #1a1a1a; font-size: 22px;">You have been invited</h1>\n'
        '<p style="margin: 0 0 16px 0; color: #444444;">{{inviterName}} invited you to join '
        "<strong>{{workspaceName}}</strong> on Todoria.</p>\n"
        '<p style="margin: 24px 0 0 0;"><a href="{{inviteUrl}}" style="color: #2563eb;">Accept invitation</a></p>\n'
        "</td></tr>\n"
    ),
    TemplateName.WELCOME: _page(
        '<tr><td style="padding: 32px;">\n'
        '<h1 style="margin: 0 0 16px 0; color: #1a1a1a; font-size: 22px;">Welcome to Todoria, {{userName}}!</h1>\n'
        '<p style="margin: 0; color: #444444;">Create your first board and invite your team to get started.</p>\n'
        "</td></tr>\n"
    ),
    TemplateName.EMAIL_VERIFICATION: _page(
        '<tr><td style="padding: 32px;">\n'
        '<h1 style="margin: 0 0 16px 0; color: #1a1a1a; font-size: 22px;">Hi {{userName}},</h1>\n'
        '<p style="margin: 0 0 16px 0; color: #444444;">Please confirm your email address.</p>\n'
        '<p style="margin: 0;"><a href="{{verificationUrl}}" style="color: #2563eb;">Verify email</a></p>\n'
        '<p style="margin: 16px 0 0 0; color: #888888; font-size: 12px;">{{verificationUrl}}</p>\n'
        "</td></tr>\n"
    ),
    TemplateName.PASSWORD_RESET: _page(
        '<tr><td style="padding: 32px;">\n'
        '<h1 style="margin: 0 0 16px 0; color: #1a1a1a; font-size: 22px;">Hi {{userName}},</h1>\n'
        '<p style="margin: 0 0 16px 0; color: #444444;">We received a request to reset your password.</p>\n'
        '<p style="margin: 0;"><a href="{{resetUrl}}" style="color: #2563eb;">Reset password</a></p>\n'
        '<p style="margin: 16px 0 0 0; color: #888888; font-size: 12px;">{{resetUrl}}</p>\n'
        "</td></tr>\n"
    ),
    TemplateName.TRIAL_ENDING: _page(
        '<tr><td style="padding: 32px;">\n'
        '<h1 style="margin: 0 0 16px 0; color: #1a1a1a; font-size: 22px;">Hi {{userName}},</h1>\n'
        '<p style="margin: 0 0 16px 0; color: #444444;">Your Todoria Pro trial ends on {{trialEndDate}}.</p>\n'
        '{{#if billingUrl}}<p style="margin: 0;"><a href="{{billingUrl}}" style="color: #2563eb;">'
        "Choose a plan</a></p>{{/if}}\n"
        "</td></tr>\n"
    ),
}

_TEMPLATE_SCHEMAS: dict[TemplateName, type[TemplateData]] = {
    TemplateName.TASK_REMINDER: TaskReminderData,
    TemplateName.MULTIPLE_TASKS_REMINDER: MultipleTasksReminderData,
    TemplateName.TASK_ASSIGNMENT: TaskAssignmentData,
    TemplateName.WORKSPACE_INVITE: WorkspaceInviteData,
    TemplateName.WELCOME: WelcomeData,
    TemplateName.EMAIL_VERIFICATION: EmailVerificationData,
    TemplateName.PASSWORD_RESET: PasswordResetData,
    TemplateName.TRIAL_ENDING: TrialEndingData,
}


@dataclass(frozen=True)
class RenderedEmail:
    html: str
    text: str


@dataclass(frozen=True)
class CompiledTemplate:
    name: TemplateName
    source: str
    schema: type[TemplateData]
    fields: frozenset[str]


def _schema_keys(schema: type[TemplateData]) -> frozenset[str]:
    return frozenset(field.alias or name for name, field in schema.model_fields.items())


def compile_template(name: TemplateName) -> CompiledTemplate:
    source = _TEMPLATE_SOURCES[name]
    schema = _TEMPLATE_SCHEMAS[name]
    keys = _schema_keys(schema)
    referenced = set(_PLACEHOLDER_RE.findall(source)) | set(_CONDITIONAL_KEY_RE.findall(source))
    unknown = sorted(referenced - keys)
    if unknown:
        raise TemplateRenderError(f"template {name.value} references undeclared fields: {', '.join(unknown)}")
    return CompiledTemplate(name=name, source=source, schema=schema, fields=keys)


def escape_html(value: str) -> str:
    return html.escape(value, quote=True).replace("&#x27;", "&#39;")


def strip_html(markup: str) -> str:
    return _WHITESPACE_RE.sub(" ", _TAG_RE.sub(" ", markup)).strip()


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_template_name(template_name: TemplateName | str) -> TemplateName:
    if isinstance(template_name, TemplateName):
        return template_name
    try:
        return TemplateName(template_name)
    except ValueError as exc:
        raise TemplateRenderError(f"unknown email template: {template_name}") from exc


class EmailTemplateRenderer:
    """Renders the fixed set of email templates. Compiled templates are cached per instance."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._cache: dict[TemplateName, CompiledTemplate] = {}

    def load(self, template_name: TemplateName | str) -> CompiledTemplate:
        name = resolve_template_name(template_name)
        compiled = self._cache.get(name)
        if compiled is not None:
            return compiled
        compiled = compile_template(name)
        with self._lock:
            self._cache.setdefault(name, compiled)
        return compiled

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def render(self, template_name: TemplateName | str, data: Mapping[str, Any] | str | None) -> RenderedEmail:
        compiled = self.load(template_name)
        values = self._validated_values(compiled, data)

        def _conditional(match: re.Match[str]) -> str:
            return match.group(2) if values.get(match.group(1)) else ""

        def _substitute(match: re.Match[str]) -> str:
            key = match.group(1)
            value = values.get(key)
            if value is None:
                return ""
            if key in HTML_SAFE_KEYS:
                return _stringify(value)
            return escape_html(_stringify(value))

        markup = _CONDITIONAL_RE.sub(_conditional, compiled.source)
        markup = _PLACEHOLDER_RE.sub(_substitute, markup)
        return RenderedEmail(html=markup, text=strip_html(markup))

    def _validated_values(self, compiled: CompiledTemplate, data: Mapping[str, Any] | str | None) -> dict[str, Any]:
        if data is None:
            payload: Any = {}
        elif isinstance(data, str):
            try:
                payload = json.loads(data) if data.strip() else {}
            except json.JSONDecodeError as exc:
                raise TemplateRenderError(f"template data for {compiled.name.value} is not valid JSON") from exc
        else:
            payload = dict(data)
        if not isinstance(payload, dict):
            raise TemplateRenderError(f"template data for {compiled.name.value} must be an object")
        try:
            model = compiled.schema.model_validate(payload)
        except ValidationError as exc:
            raise TemplateRenderError(f"invalid data for template {compiled.name.value}: {exc}") from exc
        return model.model_dump(by_alias=True)


def get_priority_color(priority: str | None) -> str:
    return PRIORITY_COLORS.get((priority or "").lower(), PRIORITY_COLORS["medium"])


def format_due_date(value: date | datetime | str | None) -> str:
    if value is None or value == "":
        return "No date set"
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return f"{value:%A, %B} {value.day}, {value.year}"


def build_task_rows(tasks: list[Mapping[str, Any]]) -> str:
    if not tasks:
        return '<tr><td style="padding: 16px; color: #666666;">No tasks found.</td></tr>'

    rows: list[str] = []
    for task in tasks:
        priority = str(task.get("priority") or "medium")
        title = str(task.get("name") or task.get("title") or "")
        due_date = format_due_date(task.get("due_date") or task.get("dueDate"))
        rows.append(
            '<tr><td style="padding: 16px; border-bottom: 1px solid #eeeeee;">'
            '<table role="presentation" width="100%" cellspacing="0" cellpadding="0"><tr><td>'
            f'<p style="margin: 0 0 4px 0; color: #1a1a1a; font-size: 15px;">{escape_html(title)}</p>'
            f'<p style="margin: 0; color: #888888; font-size: 13px;">Due: {escape_html(due_date)}</p>'
            '</td><td align="right" valign="top">'
            '<span style="display: inline-block; padding: 4px 10px; '
            f'background-color: {get_priority_color(priority)}; color: #ffffff; font-size: 11px; '
            f'border-radius: 10px;">{escape_html(priority)}</span>'
            "</td></tr></table></td></tr>"
        )
    return "\n".join(rows)
