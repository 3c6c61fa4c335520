from __future__ import annotations

import copy
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, ContextManager, Iterator, Literal, Mapping, Protocol

from sqlalchemy import JSON, CheckConstraint, DateTime, Engine, Index, Integer, String, Text, case, func, or_, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker

from .db import NotificationsBase

logger = logging.getLogger(__name__)

EmailStatus = Literal["pending", "sent", "failed"]

DEFAULT_MAX_ATTEMPTS = 3
MAX_ERROR_LENGTH = 2000


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def backoff_seconds(attempts: int) -> int:
    return 2 ** max(0, attempts)


def normalize_template_data(value: Mapping[str, Any] | str | None) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        decoded = json.loads(value) if value.strip() else {}
        if not isinstance(decoded, dict):
            raise ValueError("template_data must decode to a JSON object")
        return decoded
    return json.loads(json.dumps(dict(value), default=str))


class QueuedEmailNotFoundError(KeyError):
    """Raised when an operation references a queued email id that does not exist."""


@dataclass(frozen=True)
class QueuedEmailRecord:
    id: int
    recipient: str
    subject: str
    template_name: str
    template_data: dict[str, Any]
    status: EmailStatus
    attempts: int
    max_attempts: int
    last_error: str | None
    last_attempted_at: datetime | None
    sent_at: datetime | None
    created_at: datetime
    next_attempt_at: datetime | None = None


@dataclass(frozen=True)
class QueueStats:
    pending: int = 0
    sent: int = 0
    failed: int = 0
    retrying: int = 0


@dataclass
class _EmailState:
    id: int
    recipient: str
    subject: str
    template_name: str
    template_data: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None
    last_attempted_at: datetime | None
    sent_at: datetime | None
    created_at: datetime
    next_attempt_at: datetime | None = None


_RECORD_FIELDS = tuple(field.name for field in fields(QueuedEmailRecord))


def _to_record(state: Any) -> QueuedEmailRecord:
    values = {name: getattr(state, name) for name in _RECORD_FIELDS}
    for name in ("last_attempted_at", "sent_at", "created_at", "next_attempt_at"):
        values[name] = _coerce_utc(values[name])
    values["template_data"] = copy.deepcopy(values["template_data"] or {})
    return QueuedEmailRecord(**values)


def _is_due(state: Any, now: datetime) -> bool:
    if state.status != "pending" or state.attempts >= state.max_attempts:
        return False
    if state.last_attempted_at is None:
        return True
    next_attempt_at = _coerce_utc(state.next_attempt_at)
    return next_attempt_at is not None and next_attempt_at < now


def _apply_success(state: Any, now: datetime) -> bool:
    if state.status != "pending":
        logger.warning("ignoring success for email %s in terminal status %s", state.id, state.status)
        return False
    state.status = "sent"
    state.sent_at = now
    state.attempts = state.attempts + 1
    state.last_attempted_at = now
    state.next_attempt_at = None
    return True


def _apply_failure(state: Any, error_message: str, now: datetime) -> bool:
    if state.status != "pending":
        logger.warning("ignoring failure for email %s in terminal status %s", state.id, state.status)
        return False
    attempts = min(state.attempts + 1, state.max_attempts)
    state.attempts = attempts
    state.last_error = (error_message or "Unknown send error")[:MAX_ERROR_LENGTH]
    state.last_attempted_at = now
    if attempts >= state.max_attempts:
        state.status = "failed"
        state.next_attempt_at = None
    else:
        state.status = "pending"
        state.next_attempt_at = now + timedelta(seconds=backoff_seconds(attempts))
    return True


def _validate_enqueue(recipient: str, subject: str, template_name: str, max_attempts: int) -> None:
    if not recipient.strip():
        raise ValueError("recipient is required")
    if not subject.strip():
        raise ValueError("subject is required")
    if not template_name.strip():
        raise ValueError("template_name is required")
    if max_attempts < 1:
        raise ValueError("max_attempts must be a positive integer")


class EmailQueueTransaction(Protocol):
    def fetch_due_batch(self, limit: int, *, now: datetime) -> list[QueuedEmailRecord]: ...

    def record_success(self, email_id: int, *, now: datetime) -> QueuedEmailRecord: ...

    def record_failure(self, email_id: int, error_message: str, *, now: datetime) -> QueuedEmailRecord: ...


class EmailQueueRepository(Protocol):
    def reset(self) -> None: ...

    def enqueue(
        self,
        *,
        recipient: str,
        subject: str,
        template_name: str,
        template_data: Mapping[str, Any] | str | None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: datetime | None = None,
    ) -> int: ...

    def transaction(self) -> ContextManager[EmailQueueTransaction]: ...

    def get(self, email_id: int) -> QueuedEmailRecord: ...

    def stats(self, *, window_hours: int = 24, now: datetime | None = None) -> QueueStats: ...


class _InMemoryEmailQueueTransaction:
    def __init__(self, repository: InMemoryEmailQueueRepository) -> None:
        self._repository = repository
        self._claimed: set[int] = set()
        self._staged: dict[int, _EmailState] = {}

    def fetch_due_batch(self, limit: int, *, now: datetime) -> list[QueuedEmailRecord]:
        now = _coerce_utc(now)
        repository = self._repository
        with repository._lock:
            due = [
                state
                for state in repository._emails.values()
                if state.id not in repository._locked_ids and _is_due(state, now)
            ]
            due.sort(key=lambda state: (state.created_at, state.id))
            picked = due[: max(0, limit)]
            for state in picked:
                repository._locked_ids.add(state.id)
                self._claimed.add(state.id)
            return [_to_record(state) for state in picked]

    def _working_copy(self, email_id: int) -> _EmailState:
        staged = self._staged.get(email_id)
        if staged is not None:
            return staged
        with self._repository._lock:
            current = self._repository._emails.get(email_id)
            if current is None:
                raise QueuedEmailNotFoundError(email_id)
            staged = copy.deepcopy(current)
        self._staged[email_id] = staged
        return staged

    def record_success(self, email_id: int, *, now: datetime) -> QueuedEmailRecord:
        state = self._working_copy(email_id)
        _apply_success(state, _coerce_utc(now))
        return _to_record(state)

    def record_failure(self, email_id: int, error_message: str, *, now: datetime) -> QueuedEmailRecord:
        state = self._working_copy(email_id)
        _apply_failure(state, error_message, _coerce_utc(now))
        return _to_record(state)

    def commit(self) -> None:
        with self._repository._lock:
            self._repository._emails.update(self._staged)
            self._repository._locked_ids.difference_update(self._claimed)
        self._staged.clear()
        self._claimed.clear()

    def rollback(self) -> None:
        with self._repository._lock:
            self._repository._locked_ids.difference_update(self._claimed)
        self._staged.clear()
        self._claimed.clear()


class InMemoryEmailQueueRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = 1
        self._emails: dict[int, _EmailState] = {}
        self._locked_ids: set[int] = set()

    def reset(self) -> None:
        with self._lock:
            self._counter = 1
            self._emails.clear()
            self._locked_ids.clear()

    def enqueue(
        self,
        *,
        recipient: str,
        subject: str,
        template_name: str,
        template_data: Mapping[str, Any] | str | None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: datetime | None = None,
    ) -> int:
        _validate_enqueue(recipient, subject, template_name, max_attempts)
        data = normalize_template_data(template_data)
        created_at = _coerce_utc(now) or _now_utc()
        with self._lock:
            email_id = self._counter
            self._counter += 1
            self._emails[email_id] = _EmailState(
                id=email_id,
                recipient=recipient.strip(),
                subject=subject,
                template_name=template_name,
                template_data=data,
                status="pending",
                attempts=0,
                max_attempts=max_attempts,
                last_error=None,
                last_attempted_at=None,
                sent_at=None,
                created_at=created_at,
            )
        return email_id

    @contextmanager
    def transaction(self) -> Iterator[_InMemoryEmailQueueTransaction]:
        transaction = _InMemoryEmailQueueTransaction(self)
        try:
            yield transaction
        except BaseException:
            transaction.rollback()
            raise
        transaction.commit()

    def get(self, email_id: int) -> QueuedEmailRecord:
        with self._lock:
            state = self._emails.get(email_id)
            if state is None:
                raise QueuedEmailNotFoundError(email_id)
            return _to_record(state)

    def list_emails(self) -> list[QueuedEmailRecord]:
        with self._lock:
            return [_to_record(state) for state in sorted(self._emails.values(), key=lambda item: item.id)]

    def stats(self, *, window_hours: int = 24, now: datetime | None = None) -> QueueStats:
        cutoff = (_coerce_utc(now) or _now_utc()) - timedelta(hours=window_hours)
        pending = sent = failed = retrying = 0
        with self._lock:
            for state in self._emails.values():
                if state.created_at <= cutoff:
                    continue
                if state.status == "pending":
                    pending += 1
                    if state.attempts > 0:
                        retrying += 1
                elif state.status == "sent":
                    sent += 1
                elif state.status == "failed":
                    failed += 1
        return QueueStats(pending=pending, sent=sent, failed=failed, retrying=retrying)


class _QueuedEmailRow(NotificationsBase):
    __tablename__ = "email_queue"
    __table_args__ = (
        CheckConstraint("status IN ('pending', 'sent', 'failed')", name="ck_email_queue_status"),
        CheckConstraint("attempts >= 0", name="ck_email_queue_attempts_non_negative"),
        CheckConstraint("max_attempts > 0", name="ck_email_queue_max_attempts_positive"),
        Index("idx_email_queue_pending", "status", "created_at"),
        Index("idx_email_queue_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient: Mapped[str] = mapped_column("to_email", String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    template_name: Mapped[str] = mapped_column("template", String(100), nullable=False)
    template_data: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SqlEmailQueueTransaction:
    def __init__(self, session: Session) -> None:
        self._session = session

    def fetch_due_batch(self, limit: int, *, now: datetime) -> list[QueuedEmailRecord]:
        now = _coerce_utc(now)
        query = (
            select(_QueuedEmailRow)
            .where(_QueuedEmailRow.status == "pending")
            .where(_QueuedEmailRow.attempts < _QueuedEmailRow.max_attempts)
            .where(
                or_(
                    _QueuedEmailRow.last_attempted_at.is_(None),
                    _QueuedEmailRow.next_attempt_at < now,
                )
            )
            .order_by(_QueuedEmailRow.created_at.asc(), _QueuedEmailRow.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        rows = self._session.execute(query).scalars().all()
        return [_to_record(row) for row in rows]

    def _row(self, email_id: int) -> _QueuedEmailRow:
        row = self._session.get(_QueuedEmailRow, email_id)
        if row is None:
            raise QueuedEmailNotFoundError(email_id)
        return row

    def record_success(self, email_id: int, *, now: datetime) -> QueuedEmailRecord:
        row = self._row(email_id)
        if _apply_success(row, _coerce_utc(now)):
            self._session.flush()
        return _to_record(row)

    def record_failure(self, email_id: int, error_message: str, *, now: datetime) -> QueuedEmailRecord:
        row = self._row(email_id)
        if _apply_failure(row, error_message, _coerce_utc(now)):
            self._session.flush()
        return _to_record(row)


class SqlAlchemyEmailQueueRepository:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if engine.dialect.name == "sqlite":
            NotificationsBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_QueuedEmailRow).delete()

    def enqueue(
        self,
        *,
        recipient: str,
        subject: str,
        template_name: str,
        template_data: Mapping[str, Any] | str | None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: datetime | None = None,
    ) -> int:
        _validate_enqueue(recipient, subject, template_name, max_attempts)
        row = _QueuedEmailRow(
            recipient=recipient.strip(),
            subject=subject,
            template_name=template_name,
            template_data=normalize_template_data(template_data),
            attempts=0,
            max_attempts=max_attempts,
            status="pending",
            created_at=_coerce_utc(now) or _now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
                session.flush()
                return row.id

    @contextmanager
    def transaction(self) -> Iterator[_SqlEmailQueueTransaction]:
        with self._session() as session:
            with session.begin():
                yield _SqlEmailQueueTransaction(session)

    def get(self, email_id: int) -> QueuedEmailRecord:
        with self._session() as session:
            row = session.get(_QueuedEmailRow, email_id)
            if row is None:
                raise QueuedEmailNotFoundError(email_id)
            return _to_record(row)

    def stats(self, *, window_hours: int = 24, now: datetime | None = None) -> QueueStats:
        cutoff = (_coerce_utc(now) or _now_utc()) - timedelta(hours=window_hours)
        query = select(
            func.count(case((_QueuedEmailRow.status == "pending", 1))),
            func.count(case((_QueuedEmailRow.status == "sent", 1))),
            func.count(case((_QueuedEmailRow.status == "failed", 1))),
            func.count(case(((_QueuedEmailRow.status == "pending") & (_QueuedEmailRow.attempts > 0), 1))),
        ).where(_QueuedEmailRow.created_at > cutoff)
        with self._session() as session:
            pending, sent, failed, retrying = session.execute(query).one()
        return QueueStats(
            pending=int(pending or 0),
            sent=int(sent or 0),
            failed=int(failed or 0),
            retrying=int(retrying or 0),
        )


def create_email_queue_repository(*, backend: str, engine: Engine | None) -> EmailQueueRepository:
    normalized = backend.strip().lower()
    if normalized == "sql":
        if engine is None:
            raise RuntimeError("a database engine is required for NOTIFICATIONS_STORE_BACKEND=sql")
        return SqlAlchemyEmailQueueRepository(engine)
    if normalized == "inmemory":
        return InMemoryEmailQueueRepository()
    raise RuntimeError(f"unsupported NOTIFICATIONS_STORE_BACKEND: {backend}")
