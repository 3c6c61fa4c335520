from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .models import (
    EmailQueueHealthResponse,
    EmailQueueProcessResponse,
    ReminderRunSummaryModel,
    ReminderStatusResponse,
    ReminderTriggerResponse,
    SchedulerStatusResponse,
)
from .runtime import NotificationRuntime
from .scheduler import get_email_queue_health

logger = logging.getLogger(__name__)

router = APIRouter()


def get_runtime(request: Request) -> NotificationRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(503, "notification runtime is not initialized")
    return runtime


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return ""
    return header.removeprefix("Bearer ").strip()


def _matches(token: str, secret: str) -> bool:
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def _require_cron_secret(request: Request, runtime: NotificationRuntime = Depends(get_runtime)) -> None:
    secret = runtime.settings.cron_secret
    if not secret:
        if runtime.settings.is_production:
            logger.error("reminder trigger refused: CRON_SECRET is not configured in production")
            raise HTTPException(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                {"status": "error", "message": "CRON_SECRET is not configured"},
            )
        return
    if not _matches(_bearer_token(request), secret):
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            {"status": "error", "message": "Unauthorized - Invalid cron secret"},
        )


def _require_admin(request: Request, runtime: NotificationRuntime = Depends(get_runtime)) -> None:
    expected = runtime.settings.admin_api_token
    if not expected:
        if runtime.settings.is_production:
            raise HTTPException(401, "admin token required")
        return
    token = _bearer_token(request)
    if not token:
        raise HTTPException(401, "admin token required")
    if not _matches(token, expected):
        raise HTTPException(401, "invalid admin token")


@router.post(
    "/reminders/trigger",
    response_model=ReminderTriggerResponse,
    dependencies=[Depends(_require_cron_secret)],
    tags=["reminders"],
)
def trigger_reminders(runtime: NotificationRuntime = Depends(get_runtime)):
    try:
        summary = runtime.reminders.send_reminder_emails(dry_run=runtime.settings.reminder_dry_run)
    except Exception as exc:
        logger.exception("triggered reminder run failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "message": "Reminder job failed", "error": str(exc)},
        )
    return ReminderTriggerResponse(summary=ReminderRunSummaryModel.from_summary(summary))


@router.get(
    "/reminders/status",
    response_model=ReminderStatusResponse,
    dependencies=[Depends(_require_admin)],
    tags=["reminders"],
)
def reminder_status(runtime: NotificationRuntime = Depends(get_runtime)) -> ReminderStatusResponse:
    settings = runtime.settings
    return ReminderStatusResponse(
        enabled=settings.reminder_enabled,
        environment=settings.environment,
        delivery_mode=runtime.reminders.delivery_mode,
        schedule=settings.reminder_schedule,
    )


@router.get(
    "/email-queue/health",
    response_model=EmailQueueHealthResponse,
    dependencies=[Depends(_require_admin)],
    tags=["email-queue"],
)
def email_queue_health(runtime: NotificationRuntime = Depends(get_runtime)) -> EmailQueueHealthResponse:
    health = get_email_queue_health(
        runtime.email_queue,
        enabled=runtime.settings.email_queue_enabled,
        now=runtime.clock(),
    )
    return EmailQueueHealthResponse.model_validate(health)


@router.post(
    "/email-queue/process",
    response_model=EmailQueueProcessResponse,
    dependencies=[Depends(_require_admin)],
    tags=["email-queue"],
)
def process_email_queue(runtime: NotificationRuntime = Depends(get_runtime)) -> EmailQueueProcessResponse:
    result = runtime.processor.process_batch()
    return EmailQueueProcessResponse.from_result(result)


@router.get(
    "/scheduler/status",
    response_model=SchedulerStatusResponse,
    dependencies=[Depends(_require_admin)],
    tags=["scheduler"],
)
def scheduler_status(runtime: NotificationRuntime = Depends(get_runtime)) -> SchedulerStatusResponse:
    return SchedulerStatusResponse.model_validate(
        {"running": runtime.scheduler.running, "jobs": runtime.scheduler.health()}
    )
