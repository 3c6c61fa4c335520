from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Sequence

from .config import configure_logging, get_settings
from .runtime import NotificationRuntime, build_runtime
from .scheduler import run_email_queue_job, run_reminder_job

logger = logging.getLogger(__name__)

RUN_ONCE_TARGETS = ("reminders", "queue")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the email queue processor and reminder scheduler.")
    parser.add_argument(
        "--run-once",
        "--now",
        dest="run_once",
        nargs="?",
        const="reminders",
        choices=RUN_ONCE_TARGETS,
        default=None,
        help="run a single pass of one job and exit (default: reminders)",
    )
    parser.add_argument("--dry-run", action="store_true", help="log reminder candidates without sending")
    return parser.parse_args(argv)


def run_once(runtime: NotificationRuntime, target: str, *, dry_run: bool) -> int:
    if target == "queue":
        result = run_email_queue_job(runtime.processor, context="manual")
        return 0 if result is not None else 1
    summary = run_reminder_job(runtime.reminders, context="manual", dry_run=dry_run)
    return 0 if summary is not None else 1


def serve(runtime: NotificationRuntime, stop_event: threading.Event | None = None) -> int:
    stop_event = stop_event or threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("received signal %s; stopping scheduler", signum)
        stop_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    jobs = runtime.scheduler.start()
    if not any(job["running"] for job in jobs.values()):
        logger.error("no scheduler jobs are running; check EMAIL_QUEUE_* and REMINDER_* settings")
        return 1

    logger.info("notification worker started")
    while not stop_event.wait(60):
        pass
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    runtime = build_runtime(settings)
    try:
        if args.run_once:
            return run_once(runtime, args.run_once, dry_run=args.dry_run or settings.reminder_dry_run)
        return serve(runtime)
    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
