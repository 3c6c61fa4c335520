from __future__ import annotations

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


def create_database_engine(database_url: str) -> Engine:
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for NOTIFICATIONS_STORE_BACKEND=sql")
    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url.rstrip("/") == "sqlite:"):
        # One shared connection so every session sees the same in-memory database.
        return create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, future=True, connect_args={"check_same_thread": False})
    return create_engine(database_url, future=True, pool_pre_ping=True)


class NotificationsBase(DeclarativeBase):
    """Tables owned by the notification engine and managed by Alembic."""


class TaskboardBase(DeclarativeBase):
    """Read-only mapping of the product's tasks/users tables."""
