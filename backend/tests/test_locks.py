from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from todoria_notifications.db import create_database_engine
from todoria_notifications.locks import (
    EMAIL_QUEUE_LOCK,
    REMINDER_LOCK,
    InMemoryLockManager,
    PostgresAdvisoryLockManager,
    advisory_lock_key,
    create_lock_manager,
)


def test_in_memory_lock_is_exclusive_per_name() -> None:
    locks = InMemoryLockManager()

    token = locks.try_acquire(EMAIL_QUEUE_LOCK)
    assert token is not None
    assert locks.try_acquire(EMAIL_QUEUE_LOCK) is None
    assert locks.try_acquire(REMINDER_LOCK) is not None

    locks.release(token)
    assert not locks.is_held(EMAIL_QUEUE_LOCK)
    assert locks.try_acquire(EMAIL_QUEUE_LOCK) is not None


def test_advisory_lock_key_is_stable_signed_64_bit() -> None:
    key = advisory_lock_key(EMAIL_QUEUE_LOCK)

    assert key == advisory_lock_key(EMAIL_QUEUE_LOCK)
    assert key != advisory_lock_key(REMINDER_LOCK)
    assert -(2**63) <= key < 2**63


def _engine_with_connection(acquired: bool) -> tuple[MagicMock, MagicMock]:
    connection = MagicMock()
    connection.execute.return_value.scalar.return_value = acquired
    engine = MagicMock()
    engine.connect.return_value = connection
    return engine, connection


def test_advisory_lock_keeps_connection_until_release() -> None:
    engine, connection = _engine_with_connection(True)
    locks = PostgresAdvisoryLockManager(engine)

    token = locks.try_acquire(REMINDER_LOCK)

    assert token is not None
    assert token.handle is connection
    connection.close.assert_not_called()

    locks.release(token)
    assert "pg_advisory_unlock" in str(connection.execute.call_args[0][0])
    connection.close.assert_called_once()


def test_advisory_lock_not_acquired_closes_connection() -> None:
    engine, connection = _engine_with_connection(False)

    assert PostgresAdvisoryLockManager(engine).try_acquire(REMINDER_LOCK) is None
    connection.close.assert_called_once()


def test_advisory_unlock_failure_invalidates_connection() -> None:
    engine, connection = _engine_with_connection(True)
    locks = PostgresAdvisoryLockManager(engine)
    token = locks.try_acquire(REMINDER_LOCK)
    connection.execute.side_effect = RuntimeError("connection reset")

    locks.release(token)

    connection.invalidate.assert_called_once()
    connection.close.assert_called_once()


def test_advisory_lock_query_error_propagates() -> None:
    engine, connection = _engine_with_connection(True)
    connection.execute.side_effect = RuntimeError("server gone")

    with pytest.raises(RuntimeError):
        PostgresAdvisoryLockManager(engine).try_acquire(REMINDER_LOCK)
    connection.invalidate.assert_called_once()


def test_create_lock_manager_falls_back_to_in_memory_off_postgres() -> None:
    engine = create_database_engine("sqlite://")

    assert isinstance(create_lock_manager(backend="sql", engine=engine), InMemoryLockManager)
    assert isinstance(create_lock_manager(backend="inmemory", engine=None), InMemoryLockManager)
