from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import Any, Iterable, Protocol

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Engine,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    exists,
    or_,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker

from .db import NotificationsBase, TaskboardBase

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = "medium"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReminderCandidateTask:
    id: int
    title: str
    description: str | None
    due_date: date
    priority: str
    status: str | None
    assignee_id: int
    assignee_email: str
    assignee_name: str | None

    def to_template_task(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.title,
            "title": self.title,
            "description": self.description,
            "due_date": self.due_date,
            "priority": self.priority,
        }


class ReminderStore(Protocol):
    def find_tasks_needing_reminders(self, *, today: date, lookahead_days: int) -> list[ReminderCandidateTask]: ...

    def log_reminders(self, *, task_ids: Iterable[int], user_id: int, reminded_on: date) -> int: ...

    def has_reminder(self, *, task_id: int, user_id: int, reminded_on: date) -> bool: ...


@dataclass
class _UserState:
    id: int
    email: str | None
    name: str | None
    email_notifications_enabled: bool | None


@dataclass
class _TaskState:
    id: int
    title: str
    description: str | None
    due_date: date | None
    priority: str | None
    status: str | None
    assignee_id: int | None
    completed_at: datetime | None


def _is_candidate(task: _TaskState, user: _UserState | None, *, start: date, end: date) -> bool:
    if task.status == "completed" or task.completed_at is not None:
        return False
    if task.due_date is None or not start <= task.due_date <= end:
        return False
    if user is None or not user.email:
        return False
    return user.email_notifications_enabled is not False


class InMemoryReminderStore:
    """Task/user fixtures plus a dedup log, for tests and local runs."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._user_counter = 1
        self._task_counter = 1
        self._users: dict[int, _UserState] = {}
        self._tasks: dict[int, _TaskState] = {}
        self._log: set[tuple[int, int, date]] = set()

    def reset(self) -> None:
        with self._lock:
            self._user_counter = 1
            self._task_counter = 1
            self._users.clear()
            self._tasks.clear()
            self._log.clear()

    def add_user(
        self,
        *,
        email: str | None,
        name: str | None = None,
        email_notifications_enabled: bool | None = True,
    ) -> int:
        with self._lock:
            user_id = self._user_counter
            self._user_counter += 1
            self._users[user_id] = _UserState(
                id=user_id,
                email=email,
                name=name,
                email_notifications_enabled=email_notifications_enabled,
            )
        return user_id

    def add_task(
        self,
        *,
        title: str,
        due_date: date | None,
        assignee_id: int | None,
        description: str | None = None,
        priority: str | None = DEFAULT_PRIORITY,
        status: str | None = "todo",
        completed_at: datetime | None = None,
    ) -> int:
        with self._lock:
            task_id = self._task_counter
            self._task_counter += 1
            self._tasks[task_id] = _TaskState(
                id=task_id,
                title=title,
                description=description,
                due_date=due_date,
                priority=priority,
                status=status,
                assignee_id=assignee_id,
                completed_at=completed_at,
            )
        return task_id

    def find_tasks_needing_reminders(self, *, today: date, lookahead_days: int) -> list[ReminderCandidateTask]:
        end = today + timedelta(days=lookahead_days)
        candidates: list[ReminderCandidateTask] = []
        with self._lock:
            for task in self._tasks.values():
                user = self._users.get(task.assignee_id) if task.assignee_id is not None else None
                if not _is_candidate(task, user, start=today, end=end):
                    continue
                if (task.id, user.id, today) in self._log:
                    continue
                candidates.append(
                    ReminderCandidateTask(
                        id=task.id,
                        title=task.title,
                        description=task.description,
                        due_date=task.due_date,
                        priority=task.priority or DEFAULT_PRIORITY,
                        status=task.status,
                        assignee_id=user.id,
                        assignee_email=user.email,
                        assignee_name=user.name,
                    )
                )
        candidates.sort(key=lambda item: (item.due_date, item.id))
        return candidates

    def log_reminders(self, *, task_ids: Iterable[int], user_id: int, reminded_on: date) -> int:
        inserted = 0
        with self._lock:
            for task_id in task_ids:
                key = (task_id, user_id, reminded_on)
                if key in self._log:
                    continue
                self._log.add(key)
                inserted += 1
        return inserted

    def has_reminder(self, *, task_id: int, user_id: int, reminded_on: date) -> bool:
        with self._lock:
            return (task_id, user_id, reminded_on) in self._log

    def log_size(self) -> int:
        with self._lock:
            return len(self._log)


class _UserRow(TaskboardBase):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email_notifications_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True, default=True)


class _TaskRow(TaskboardBase):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str | None] = mapped_column(String(10), nullable=True, default=DEFAULT_PRIORITY)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True, default="todo")
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assignee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class _ReminderLogRow(NotificationsBase):
    """Dedup log. Foreign keys to tasks/users are declared in the migration."""

    __tablename__ = "reminder_log"
    __table_args__ = (
        UniqueConstraint("task_id", "user_id", "reminded_on", name="unique_reminder_per_task_user_day"),
        Index("idx_reminder_log_date", "reminded_on"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reminded_on: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)


class SqlAlchemyReminderStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if engine.dialect.name == "sqlite":
            TaskboardBase.metadata.create_all(self._engine)
            NotificationsBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    def find_tasks_needing_reminders(self, *, today: date, lookahead_days: int) -> list[ReminderCandidateTask]:
        end = today + timedelta(days=lookahead_days)
        already_logged = exists().where(
            and_(
                _ReminderLogRow.task_id == _TaskRow.id,
                _ReminderLogRow.user_id == _TaskRow.assignee_id,
                _ReminderLogRow.reminded_on == today,
            )
        )
        query = (
            select(_TaskRow, _UserRow)
            .join(_UserRow, _UserRow.id == _TaskRow.assignee_id)
            .where(or_(_TaskRow.status.is_(None), _TaskRow.status != "completed"))
            .where(_TaskRow.completed_at.is_(None))
            .where(_TaskRow.due_date.is_not(None))
            .where(_TaskRow.due_date.between(today, end))
            .where(_UserRow.email.is_not(None))
            .where(_UserRow.email != "")
            .where(
                or_(
                    _UserRow.email_notifications_enabled.is_(None),
                    _UserRow.email_notifications_enabled.is_(True),
                )
            )
            .where(~already_logged)
            .order_by(_TaskRow.due_date.asc(), _TaskRow.id.asc())
        )
        with self._session() as session:
            rows = session.execute(query).all()
        return [
            ReminderCandidateTask(
                id=task.id,
                title=task.title,
                description=task.description,
                due_date=task.due_date,
                priority=task.priority or DEFAULT_PRIORITY,
                status=task.status,
                assignee_id=user.id,
                assignee_email=user.email,
                assignee_name=user.name,
            )
            for task, user in rows
        ]

    def _insert_ignore(self, session: Session, values: list[dict[str, Any]]) -> int:
        dialect = self._engine.dialect.name
        if dialect in {"postgresql", "sqlite"}:
            insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            statement = insert(_ReminderLogRow).values(values).on_conflict_do_nothing(
                index_elements=["task_id", "user_id", "reminded_on"]
            )
            return session.execute(statement).rowcount or 0

        inserted = 0
        for item in values:
            found = session.execute(
                select(_ReminderLogRow.id).where(
                    _ReminderLogRow.task_id == item["task_id"],
                    _ReminderLogRow.user_id == item["user_id"],
                    _ReminderLogRow.reminded_on == item["reminded_on"],
                )
            ).first()
            if found is None:
                session.add(_ReminderLogRow(**item))
                inserted += 1
        return inserted

    def log_reminders(self, *, task_ids: Iterable[int], user_id: int, reminded_on: date) -> int:
        created_at = _now_utc()
        values = [
            {"task_id": task_id, "user_id": user_id, "reminded_on": reminded_on, "created_at": created_at}
            for task_id in dict.fromkeys(task_ids)
        ]
        if not values:
            return 0
        with self._session() as session:
            with session.begin():
                return self._insert_ignore(session, values)

    def has_reminder(self, *, task_id: int, user_id: int, reminded_on: date) -> bool:
        query = select(_ReminderLogRow.id).where(
            _ReminderLogRow.task_id == task_id,
            _ReminderLogRow.user_id == user_id,
            _ReminderLogRow.reminded_on == reminded_on,
        )
        with self._session() as session:
            return session.execute(query).first() is not None


def create_reminder_store(*, backend: str, engine: Engine | None) -> ReminderStore:
    normalized = backend.strip().lower()
    if normalized == "sql":
        if engine is None:
            raise RuntimeError("a database engine is required for NOTIFICATIONS_STORE_BACKEND=sql")
        return SqlAlchemyReminderStore(engine)
    if normalized == "inmemory":
        return InMemoryReminderStore()
    raise RuntimeError(f"unsupported NOTIFICATIONS_STORE_BACKEND: {backend}")
