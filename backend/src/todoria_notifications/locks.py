from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from sqlalchemy import Engine, text

logger = logging.getLogger(__name__)

EMAIL_QUEUE_LOCK = "email-queue-processing"
REMINDER_LOCK = "reminder-generation"


@dataclass(frozen=True)
class LockToken:
    name: str
    key: int
    handle: object | None = None


def advisory_lock_key(name: str) -> int:
    """Map a lock name onto the signed 64-bit key space used by advisory locks."""
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class NamedLockManager(Protocol):
    def try_acquire(self, name: str) -> LockToken | None: ...

    def release(self, token: LockToken) -> None: ...


class InMemoryLockManager:
    """Process-local named locks. Only correct when a single process runs the jobs."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._held: set[str] = set()

    def try_acquire(self, name: str) -> LockToken | None:
        with self._guard:
            if name in self._held:
                return None
            self._held.add(name)
        return LockToken(name=name, key=advisory_lock_key(name))

    def release(self, token: LockToken) -> None:
        with self._guard:
            self._held.discard(token.name)

    def is_held(self, name: str) -> bool:
        with self._guard:
            return name in self._held


class PostgresAdvisoryLockManager:
    """Session-level ``pg_try_advisory_lock`` held on a dedicated connection.

    The lock lives as long as the connection. If the process dies mid-run the
    server drops the connection and the lock with it.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def try_acquire(self, name: str) -> LockToken | None:
        key = advisory_lock_key(name)
        connection = self._engine.connect()
        try:
            acquired = connection.execute(
                text("SELECT pg_try_advisory_lock(:key)"),
                {"key": key},
            ).scalar()
            connection.commit()
        except Exception:
            connection.invalidate()
            connection.close()
            raise
        if not acquired:
            connection.close()
            return None
        return LockToken(name=name, key=key, handle=connection)

    def release(self, token: LockToken) -> None:
        connection = token.handle
        if connection is None:
            return
        try:
            connection.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": token.key})
            connection.commit()
        except Exception:
            # Dropping the physical connection releases the session lock.
            logger.warning("advisory unlock failed for %s; invalidating connection", token.name, exc_info=True)
            connection.invalidate()
        finally:
            connection.close()


def create_lock_manager(*, backend: str, engine: Engine | None) -> NamedLockManager:
    if backend == "sql" and engine is not None and engine.dialect.name == "postgresql":
        return PostgresAdvisoryLockManager(engine)
    return InMemoryLockManager()
