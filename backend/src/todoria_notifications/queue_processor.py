from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .email_queue import EmailQueueRepository, QueuedEmailRecord
from .locks import EMAIL_QUEUE_LOCK, LockToken, NamedLockManager
from .templates import EmailTemplateRenderer
from .transport import EmailMessage, EmailTransport

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QueueProcessResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    skipped: bool = False
    reason: str | None = None


class EmailQueueProcessor:
    """Drains one batch of due emails per call under the queue-processing lock."""

    def __init__(
        self,
        *,
        repository: EmailQueueRepository,
        transport: EmailTransport,
        renderer: EmailTemplateRenderer,
        locks: NamedLockManager,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._renderer = renderer
        self._locks = locks
        self._batch_size = max(1, batch_size)
        self._clock = clock

    def process_batch(self) -> QueueProcessResult:
        token = self._locks.try_acquire(EMAIL_QUEUE_LOCK)
        if token is None:
            logger.debug("email queue lock held elsewhere; skipping this run")
            return QueueProcessResult(skipped=True, reason="Another processor holds the lock")

        try:
            return self._drain()
        finally:
            self._release(token)

    def _release(self, token: LockToken) -> None:
        try:
            self._locks.release(token)
        except Exception:
            # The lock is dropped with its connection if the explicit release fails.
            logger.warning("failed to release %s lock", token.name, exc_info=True)

    def _drain(self) -> QueueProcessResult:
        sent = failed = retried = 0
        with self._repository.transaction() as transaction:
            emails = transaction.fetch_due_batch(self._batch_size, now=self._clock())
            for email in emails:
                error = self._deliver(email)
                now = self._clock()
                if error is None:
                    transaction.record_success(email.id, now=now)
                    sent += 1
                    continue
                updated = transaction.record_failure(email.id, error, now=now)
                if updated.status == "failed":
                    failed += 1
                else:
                    retried += 1

        result = QueueProcessResult(processed=len(emails), sent=sent, failed=failed, retried=retried)
        if result.processed:
            logger.info(
                "email queue batch processed=%s sent=%s failed=%s retried=%s",
                result.processed,
                result.sent,
                result.failed,
                result.retried,
            )
        return result

    def _deliver(self, email: QueuedEmailRecord) -> str | None:
        """Render and send one row. Returns the failure message, or None on success."""
        try:
            rendered = self._renderer.render(email.template_name, email.template_data)
            result = self._transport.send(
                EmailMessage(to=email.recipient, subject=email.subject, html=rendered.html, text=rendered.text)
            )
        except Exception as exc:
            logger.warning("email %s attempt failed: %s", email.id, exc)
            return str(exc) or exc.__class__.__name__
        if result.success:
            return None
        return result.error or "Unknown send error"
