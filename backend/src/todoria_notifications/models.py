from __future__ import annotations

from dataclasses import asdict
from typing import Literal

from pydantic import BaseModel, Field

from .queue_processor import QueueProcessResult
from .reminders import ReminderRunSummary

HealthStatus = Literal["OK", "ERROR"]


class ReminderRecipientResultModel(BaseModel):
    email: str
    count: int
    success: bool
    error: str | None = None
    dry_run: bool = False
    queued_email_id: int | None = None


class ReminderRunSummaryModel(BaseModel):
    sent: int = 0
    failed: int = 0
    total_tasks: int = 0
    lookahead_days: int = 2
    results: list[ReminderRecipientResultModel] = Field(default_factory=list)
    message: str | None = None
    skipped: bool = False
    dry_run: bool = False

    @classmethod
    def from_summary(cls, summary: ReminderRunSummary) -> "ReminderRunSummaryModel":
        return cls.model_validate(asdict(summary))


class ReminderTriggerResponse(BaseModel):
    status: Literal["OK"] = "OK"
    message: str = "Reminder job completed"
    summary: ReminderRunSummaryModel


class ReminderStatusResponse(BaseModel):
    status: Literal["OK"] = "OK"
    enabled: bool
    environment: str
    delivery_mode: str
    schedule: str


class QueueStatsModel(BaseModel):
    pending: int = 0
    sent: int = 0
    failed: int = 0
    retrying: int = 0


class EmailQueueHealthResponse(BaseModel):
    status: HealthStatus
    enabled: bool
    stats: QueueStatsModel | None = None
    error: str | None = None


class EmailQueueProcessResponse(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    skipped: bool = False
    reason: str | None = None

    @classmethod
    def from_result(cls, result: QueueProcessResult) -> "EmailQueueProcessResponse":
        return cls.model_validate(asdict(result))


class SchedulerJobStatus(BaseModel):
    enabled: bool
    running: bool
    schedule: str
    error: str | None = None
    last_run_at: str | None = None


class SchedulerStatusResponse(BaseModel):
    running: bool
    jobs: dict[str, SchedulerJobStatus]
