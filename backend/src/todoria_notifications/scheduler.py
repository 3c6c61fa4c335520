from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from .email_queue import EmailQueueRepository
from .queue_processor import EmailQueueProcessor, QueueProcessResult
from .reminders import ReminderRunSummary, ReminderService
from .schedules import Schedule, parse_schedule

logger = logging.getLogger(__name__)

EMAIL_QUEUE_JOB = "email_queue"
REMINDER_JOB = "reminders"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def run_email_queue_job(processor: EmailQueueProcessor, *, context: str = "manual") -> QueueProcessResult | None:
    """One processor pass. Errors are logged and reported as ``None``."""
    try:
        return processor.process_batch()
    except Exception:
        logger.exception("email queue %s run failed", context)
        return None


def log_reminder_summary(summary: ReminderRunSummary, *, context: str) -> None:
    mode = " (dry run)" if summary.dry_run else ""
    if summary.skipped:
        logger.info("reminders %s run skipped: %s", context, summary.message)
        return
    logger.info(
        "reminders %s summary: recipients sent=%s failed=%s total_tasks=%s lookahead=%s day(s)%s",
        context,
        summary.sent,
        summary.failed,
        summary.total_tasks,
        summary.lookahead_days,
        mode,
    )
    if summary.message:
        logger.info("reminders %s: %s", context, summary.message)
    for result in summary.results:
        if result.success:
            logger.info("reminders %s -> %s: %s task(s)%s", context, result.email, result.count, mode)
        else:
            logger.warning(
                "reminders %s -> %s: %s task(s) failed: %s", context, result.email, result.count, result.error
            )


def run_reminder_job(
    service: ReminderService,
    *,
    context: str = "manual",
    dry_run: bool = False,
) -> ReminderRunSummary | None:
    started = time.monotonic()
    logger.info("reminders %s run started%s", context, " (dry run)" if dry_run else "")
    try:
        summary = service.send_reminder_emails(dry_run=dry_run)
    except Exception:
        logger.exception("reminders %s run failed", context)
        return None
    finally:
        logger.info("reminders %s run finished in %.0fms", context, (time.monotonic() - started) * 1000)
    log_reminder_summary(summary, context=context)
    return summary


def get_email_queue_health(
    repository: EmailQueueRepository,
    *,
    enabled: bool,
    now: datetime | None = None,
) -> dict[str, Any]:
    try:
        stats = repository.stats(now=now)
    except Exception as exc:
        logger.warning("email queue stats unavailable: %s", exc)
        return {"status": "ERROR", "enabled": enabled, "error": str(exc)}
    return {"status": "OK", "enabled": enabled, "stats": asdict(stats)}


@dataclass
class _Job:
    name: str
    expression: str
    enabled: bool
    callback: Callable[[], Any]
    schedule: Schedule | None = None
    error: str | None = None
    thread: threading.Thread | None = None
    last_run_at: datetime | None = None


class NotificationScheduler:
    """Runs the queue processor and reminder generator on their schedules in daemon threads."""

    def __init__(
        self,
        *,
        processor: EmailQueueProcessor,
        reminders: ReminderService,
        queue_schedule: str,
        reminder_schedule: str,
        timezone_name: str = "UTC",
        email_queue_enabled: bool = True,
        reminder_enabled: bool = True,
        reminder_dry_run: bool = False,
        reminder_run_on_start: bool = False,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._processor = processor
        self._reminders = reminders
        self._timezone_name = timezone_name
        self._reminder_dry_run = reminder_dry_run
        self._reminder_run_on_start = reminder_run_on_start
        self._clock = clock
        self._stop = threading.Event()
        self._started = False
        self._jobs: dict[str, _Job] = {
            EMAIL_QUEUE_JOB: _Job(
                name=EMAIL_QUEUE_JOB,
                expression=queue_schedule,
                enabled=email_queue_enabled,
                callback=lambda: run_email_queue_job(self._processor, context="scheduled"),
            ),
            REMINDER_JOB: _Job(
                name=REMINDER_JOB,
                expression=reminder_schedule,
                enabled=reminder_enabled,
                callback=lambda: run_reminder_job(
                    self._reminders, context="scheduled", dry_run=self._reminder_dry_run
                ),
            ),
        }

    @property
    def running(self) -> bool:
        return self._started and not self._stop.is_set()

    def start(self) -> dict[str, dict[str, Any]]:
        if self._started:
            return self.health()
        self._stop.clear()
        for job in self._jobs.values():
            self._start_job(job)
        self._started = True

        if self._reminder_run_on_start and self._jobs[REMINDER_JOB].thread is not None:
            threading.Thread(
                target=run_reminder_job,
                args=(self._reminders,),
                kwargs={"context": "startup", "dry_run": self._reminder_dry_run},
                name="reminders-startup",
                daemon=True,
            ).start()
        return self.health()

    def _start_job(self, job: _Job) -> None:
        if not job.enabled:
            logger.info("%s scheduler disabled by configuration", job.name)
            return
        timezone_name = self._timezone_name if job.name == REMINDER_JOB else "UTC"
        parsed = parse_schedule(job.expression, timezone_name=timezone_name)
        if not parsed.ok:
            job.error = str(parsed.error)
            logger.error("%s scheduler not started: %s", job.name, job.error)
            return
        job.schedule = parsed.schedule
        job.error = None
        logger.info("scheduling %s job: %s", job.name, job.schedule.describe())
        job.thread = threading.Thread(target=self._loop, args=(job,), name=f"{job.name}-scheduler", daemon=True)
        job.thread.start()

    def _loop(self, job: _Job) -> None:
        while not self._stop.is_set():
            now = self._clock()
            fire_at = job.schedule.next_fire_after(now)
            if self._stop.wait(max(0.0, (fire_at - now).total_seconds())):
                break
            job.last_run_at = self._clock()
            try:
                job.callback()
            except Exception:
                logger.exception("%s job raised", job.name)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for job in self._jobs.values():
            if job.thread is not None:
                job.thread.join(timeout)
                job.thread = None
        self._started = False

    def health(self) -> dict[str, dict[str, Any]]:
        return {
            name: {
                "enabled": job.enabled,
                "running": job.thread is not None and job.thread.is_alive(),
                "schedule": job.expression,
                "error": job.error,
                "last_run_at": job.last_run_at.isoformat() if job.last_run_at else None,
            }
            for name, job in self._jobs.items()
        }
