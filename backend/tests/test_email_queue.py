from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from todoria_notifications.db import create_database_engine
from todoria_notifications.email_queue import (
    InMemoryEmailQueueRepository,
    QueuedEmailNotFoundError,
    SqlAlchemyEmailQueueRepository,
    backoff_seconds,
    create_email_queue_repository,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _sqlite_repository(tmp_path: Path) -> SqlAlchemyEmailQueueRepository:
    engine = create_database_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    return SqlAlchemyEmailQueueRepository(engine)


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "inmemory":
        return InMemoryEmailQueueRepository()
    return _sqlite_repository(tmp_path)


def _enqueue(repository, *, recipient: str = "ana@example.com", now: datetime = T0, max_attempts: int = 3) -> int:
    return repository.enqueue(
        recipient=recipient,
        subject="Welcome to Todoria!",
        template_name="welcome.html",
        template_data={"userName": "Ana"},
        max_attempts=max_attempts,
        now=now,
    )


def test_enqueue_creates_pending_row(repository) -> None:
    email_id = _enqueue(repository)

    record = repository.get(email_id)
    assert record.status == "pending"
    assert record.attempts == 0
    assert record.max_attempts == 3
    assert record.recipient == "ana@example.com"
    assert record.template_data == {"userName": "Ana"}
    assert record.created_at == T0
    assert record.sent_at is None
    assert record.last_attempted_at is None


def test_enqueue_decodes_json_string_payload(repository) -> None:
    email_id = repository.enqueue(
        recipient="ana@example.com",
        subject="Hello",
        template_name="welcome.html",
        template_data='{"userName": "Ana"}',
        now=T0,
    )

    assert repository.get(email_id).template_data == {"userName": "Ana"}


def test_enqueue_rejects_invalid_arguments(repository) -> None:
    with pytest.raises(ValueError):
        repository.enqueue(recipient=" ", subject="s", template_name="welcome.html", template_data={})
    with pytest.raises(ValueError):
        repository.enqueue(
            recipient="ana@example.com",
            subject="s",
            template_name="welcome.html",
            template_data={},
            max_attempts=0,
        )


def test_fetch_due_batch_orders_oldest_first_and_respects_limit(repository) -> None:
    third = _enqueue(repository, recipient="c@example.com", now=T0 + timedelta(seconds=2))
    first = _enqueue(repository, recipient="a@example.com", now=T0)
    second = _enqueue(repository, recipient="b@example.com", now=T0 + timedelta(seconds=1))

    with repository.transaction() as transaction:
        batch = transaction.fetch_due_batch(2, now=T0 + timedelta(minutes=1))

    assert [item.id for item in batch] == [first, second]
    assert third not in {item.id for item in batch}


def test_record_success_marks_row_sent(repository) -> None:
    email_id = _enqueue(repository)
    sent_at = T0 + timedelta(seconds=5)

    with repository.transaction() as transaction:
        transaction.fetch_due_batch(10, now=sent_at)
        transaction.record_success(email_id, now=sent_at)

    record = repository.get(email_id)
    assert record.status == "sent"
    assert record.sent_at == sent_at
    assert record.last_attempted_at == sent_at
    assert record.attempts == 1


def test_record_failure_increments_attempts_until_failed(repository) -> None:
    email_id = _enqueue(repository, max_attempts=2)

    with repository.transaction() as transaction:
        first = transaction.record_failure(email_id, "smtp down", now=T0)
    assert first.status == "pending"
    assert first.attempts == 1
    assert first.last_error == "smtp down"
    assert first.next_attempt_at == T0 + timedelta(seconds=2)

    with repository.transaction() as transaction:
        second = transaction.record_failure(email_id, "still down", now=T0 + timedelta(seconds=10))
    assert second.status == "failed"
    assert second.attempts == 2

    with repository.transaction() as transaction:
        third = transaction.record_failure(email_id, "ignored", now=T0 + timedelta(seconds=60))
        after_success = transaction.record_success(email_id, now=T0 + timedelta(seconds=61))

    assert third.attempts == 2
    assert after_success.status == "failed"
    record = repository.get(email_id)
    assert record.status == "failed"
    assert record.attempts == 2
    assert record.last_error == "still down"


def test_sent_rows_are_terminal(repository) -> None:
    email_id = _enqueue(repository)
    with repository.transaction() as transaction:
        transaction.record_success(email_id, now=T0)
    with repository.transaction() as transaction:
        transaction.record_failure(email_id, "late failure", now=T0 + timedelta(seconds=1))

    record = repository.get(email_id)
    assert record.status == "sent"
    assert record.attempts == 1
    assert record.last_error is None


def test_backoff_delays_retry_until_window_elapses(repository) -> None:
    email_id = _enqueue(repository)
    with repository.transaction() as transaction:
        transaction.record_failure(email_id, "boom", now=T0)
    with repository.transaction() as transaction:
        transaction.record_failure(email_id, "boom", now=T0 + timedelta(seconds=3))

    # attempts == 2, so the row waits 2**2 seconds after the last attempt.
    last_attempt = T0 + timedelta(seconds=3)
    with repository.transaction() as transaction:
        assert transaction.fetch_due_batch(10, now=last_attempt + timedelta(seconds=3)) == []
    with repository.transaction() as transaction:
        assert transaction.fetch_due_batch(10, now=last_attempt + timedelta(seconds=4)) == []
    with repository.transaction() as transaction:
        due = transaction.fetch_due_batch(10, now=last_attempt + timedelta(seconds=5))
    assert [item.id for item in due] == [email_id]


def test_backoff_is_exponential() -> None:
    assert [backoff_seconds(n) for n in range(4)] == [1, 2, 4, 8]


def test_transaction_rolls_back_on_error(repository) -> None:
    email_id = _enqueue(repository)

    with pytest.raises(RuntimeError):
        with repository.transaction() as transaction:
            transaction.fetch_due_batch(10, now=T0)
            transaction.record_success(email_id, now=T0)
            raise RuntimeError("crash before commit")

    record = repository.get(email_id)
    assert record.status == "pending"
    assert record.attempts == 0


def test_get_unknown_email_raises(repository) -> None:
    with pytest.raises(QueuedEmailNotFoundError):
        repository.get(999)


def test_stats_counts_rows_in_window(repository) -> None:
    old = _enqueue(repository, now=T0 - timedelta(hours=30))
    pending = _enqueue(repository, now=T0)
    retrying = _enqueue(repository, now=T0)
    sent = _enqueue(repository, now=T0)
    failed = _enqueue(repository, now=T0, max_attempts=1)

    with repository.transaction() as transaction:
        transaction.record_failure(retrying, "boom", now=T0)
        transaction.record_success(sent, now=T0)
        transaction.record_failure(failed, "boom", now=T0)
        transaction.record_failure(old, "boom", now=T0)

    stats = repository.stats(now=T0 + timedelta(hours=1))

    assert stats.pending == 2
    assert stats.retrying == 1
    assert stats.sent == 1
    assert stats.failed == 1
    assert repository.get(pending).status == "pending"


def test_in_memory_fetch_skips_rows_claimed_by_open_transaction() -> None:
    repository = InMemoryEmailQueueRepository()
    first = _enqueue(repository)
    second = _enqueue(repository, now=T0 + timedelta(seconds=1))

    with repository.transaction() as outer:
        claimed = outer.fetch_due_batch(1, now=T0 + timedelta(minutes=1))
        with repository.transaction() as inner:
            other = inner.fetch_due_batch(10, now=T0 + timedelta(minutes=1))

    assert [item.id for item in claimed] == [first]
    assert [item.id for item in other] == [second]


def test_error_message_is_truncated() -> None:
    repository = InMemoryEmailQueueRepository()
    email_id = _enqueue(repository)

    with repository.transaction() as transaction:
        record = transaction.record_failure(email_id, "x" * 5000, now=T0)

    assert len(record.last_error) == 2000


def test_create_email_queue_repository_requires_engine_for_sql() -> None:
    with pytest.raises(RuntimeError):
        create_email_queue_repository(backend="sql", engine=None)
    with pytest.raises(RuntimeError):
        create_email_queue_repository(backend="redis", engine=None)
    assert isinstance(create_email_queue_repository(backend="inmemory", engine=None), InMemoryEmailQueueRepository)
