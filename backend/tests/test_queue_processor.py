from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from todoria_notifications.email_queue import InMemoryEmailQueueRepository
from todoria_notifications.locks import EMAIL_QUEUE_LOCK, InMemoryLockManager
from todoria_notifications.queue_processor import EmailQueueProcessor
from todoria_notifications.templates import EmailTemplateRenderer
from todoria_notifications.transport import EmailMessage, SendResult, StubEmailTransport

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class _FailingTransport:
    def __init__(self) -> None:
        self.calls = 0

    def verify(self) -> bool:
        return True

    def send(self, message: EmailMessage) -> SendResult:
        self.calls += 1
        return SendResult(success=False, error="provider unavailable")


class _RaisingTransport:
    def verify(self) -> bool:
        return True

    def send(self, message: EmailMessage) -> SendResult:
        raise TimeoutError("smtp timed out")


class _BlockingTransport:
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def verify(self) -> bool:
        return True

    def send(self, message: EmailMessage) -> SendResult:
        self.entered.set()
        self.release.wait(5)
        return SendResult(success=True, message_id="blocked-1")


class _ExplodingRepository(InMemoryEmailQueueRepository):
    def transaction(self):
        raise ConnectionError("database unavailable")


def _processor(repository, transport, *, clock, locks=None, batch_size: int = 10) -> EmailQueueProcessor:
    return EmailQueueProcessor(
        repository=repository,
        transport=transport,
        renderer=EmailTemplateRenderer(),
        locks=locks or InMemoryLockManager(),
        batch_size=batch_size,
        clock=clock,
    )


def _enqueue_welcome(repository, *, recipient: str = "ana@example.com", now: datetime = T0) -> int:
    return repository.enqueue(
        recipient=recipient,
        subject="Welcome to Todoria!",
        template_name="welcome.html",
        template_data={"userName": "Ana"},
        max_attempts=3,
        now=now,
    )


def test_successful_send_marks_row_sent() -> None:
    repository = InMemoryEmailQueueRepository()
    transport = StubEmailTransport()
    clock = _Clock(T0 + timedelta(seconds=1))
    email_id = _enqueue_welcome(repository)

    result = _processor(repository, transport, clock=clock).process_batch()

    assert (result.processed, result.sent, result.failed, result.retried) == (1, 1, 0, 0)
    assert result.skipped is False
    record = repository.get(email_id)
    assert record.status == "sent"
    assert record.sent_at == clock.now
    assert record.attempts == 1
    assert len(transport.outbox) == 1
    message = transport.outbox[0]
    assert message.to == "ana@example.com"
    assert message.subject == "Welcome to Todoria!"
    assert "Welcome to Todoria, Ana!" in message.html
    assert "Welcome to Todoria, Ana!" in message.text


def test_always_failing_transport_exhausts_attempts() -> None:
    repository = InMemoryEmailQueueRepository()
    transport = _FailingTransport()
    clock = _Clock(T0 + timedelta(seconds=1))
    email_id = _enqueue_welcome(repository)
    processor = _processor(repository, transport, clock=clock)

    first = processor.process_batch()
    clock.advance(3)
    second = processor.process_batch()
    clock.advance(5)
    third = processor.process_batch()

    assert (first.retried, second.retried, third.failed) == (1, 1, 1)
    record = repository.get(email_id)
    assert record.status == "failed"
    assert record.attempts == 3
    assert record.last_error == "provider unavailable"
    assert transport.calls == 3


def test_attempts_increase_by_one_and_terminal_rows_stay_put() -> None:
    repository = InMemoryEmailQueueRepository()
    clock = _Clock(T0 + timedelta(seconds=1))
    email_id = _enqueue_welcome(repository)
    processor = _processor(repository, _FailingTransport(), clock=clock)

    observed = []
    for _ in range(6):
        processor.process_batch()
        observed.append(repository.get(email_id).attempts)
        clock.advance(60)

    assert observed == [1, 2, 3, 3, 3, 3]
    assert repository.get(email_id).status == "failed"


def test_row_in_backoff_is_not_retried_early() -> None:
    repository = InMemoryEmailQueueRepository()
    transport = _FailingTransport()
    clock = _Clock(T0 + timedelta(seconds=1))
    _enqueue_welcome(repository)
    processor = _processor(repository, transport, clock=clock)

    processor.process_batch()
    clock.advance(1)
    early = processor.process_batch()

    assert early.processed == 0
    assert transport.calls == 1


def test_render_failure_consumes_an_attempt_without_aborting_batch() -> None:
    repository = InMemoryEmailQueueRepository()
    transport = StubEmailTransport()
    clock = _Clock(T0 + timedelta(seconds=1))
    broken = repository.enqueue(
        recipient="ana@example.com",
        subject="Verify",
        template_name="emailVerification.html",
        template_data={"userName": "Ana"},
        now=T0,
    )
    unknown = repository.enqueue(
        recipient="bo@example.com",
        subject="Mystery",
        template_name="doesNotExist.html",
        template_data={},
        now=T0,
    )
    healthy = _enqueue_welcome(repository, recipient="cy@example.com", now=T0 + timedelta(milliseconds=1))

    result = _processor(repository, transport, clock=clock).process_batch()

    assert result.processed == 3
    assert result.sent == 1
    assert result.retried == 2
    assert repository.get(broken).attempts == 1
    assert "emailVerification.html" in repository.get(broken).last_error
    assert "doesNotExist.html" in repository.get(unknown).last_error
    assert repository.get(healthy).status == "sent"


def test_transport_exception_is_recorded_as_failure() -> None:
    repository = InMemoryEmailQueueRepository()
    email_id = _enqueue_welcome(repository)

    result = _processor(repository, _RaisingTransport(), clock=_Clock(T0 + timedelta(seconds=1))).process_batch()

    assert result.retried == 1
    assert repository.get(email_id).last_error == "smtp timed out"


def test_batch_size_limits_rows_per_run() -> None:
    repository = InMemoryEmailQueueRepository()
    for index in range(5):
        _enqueue_welcome(repository, recipient=f"user{index}@example.com", now=T0 + timedelta(seconds=index))

    result = _processor(
        repository,
        StubEmailTransport(),
        clock=_Clock(T0 + timedelta(minutes=1)),
        batch_size=2,
    ).process_batch()

    assert result.processed == 2
    assert [record.status for record in repository.list_emails()] == ["sent", "sent", "pending", "pending", "pending"]


def test_skips_when_lock_is_held_elsewhere() -> None:
    repository = InMemoryEmailQueueRepository()
    locks = InMemoryLockManager()
    _enqueue_welcome(repository)
    token = locks.try_acquire(EMAIL_QUEUE_LOCK)

    result = _processor(repository, StubEmailTransport(), clock=_Clock(T0), locks=locks).process_batch()

    assert result.skipped is True
    assert result.processed == 0
    assert result.reason == "Another processor holds the lock"
    locks.release(token)


def test_concurrent_runs_only_one_proceeds() -> None:
    repository = InMemoryEmailQueueRepository()
    locks = InMemoryLockManager()
    transport = _BlockingTransport()
    clock = _Clock(T0 + timedelta(seconds=1))
    email_id = _enqueue_welcome(repository)
    processor_a = _processor(repository, transport, clock=clock, locks=locks)
    processor_b = _processor(repository, transport, clock=clock, locks=locks)

    results = {}
    worker = threading.Thread(target=lambda: results.setdefault("a", processor_a.process_batch()))
    worker.start()
    assert transport.entered.wait(5)

    results["b"] = processor_b.process_batch()
    transport.release.set()
    worker.join(5)

    assert results["b"].skipped is True
    assert results["a"].sent == 1
    assert repository.get(email_id).attempts == 1
    assert not locks.is_held(EMAIL_QUEUE_LOCK)


def test_lock_released_and_error_propagated_when_store_fails() -> None:
    locks = InMemoryLockManager()
    processor = _processor(_ExplodingRepository(), StubEmailTransport(), clock=_Clock(T0), locks=locks)

    with pytest.raises(ConnectionError):
        processor.process_batch()

    assert not locks.is_held(EMAIL_QUEUE_LOCK)
