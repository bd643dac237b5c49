"""Database layer for Pipewright.

This module handles database connections, session management, and provides
the SQLAlchemy async engine configuration for PostgreSQL (asyncpg) and
SQLite (aiosqlite).

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    with_store_retry: Retry a unit of persistence work on transient errors.
    Base: SQLAlchemy declarative base for all models.
"""

from pipewright.database.connection import get_engine, get_session_factory
from pipewright.database.models import (
    Base,
    BuildEvent,
    BuildEventType,
    Project,
    ProjectStatus,
    QueuedTask,
    QueueStatus,
    RealtimeEvent,
    TaskType,
    TimestampMixin,
)
from pipewright.database.retry import with_store_retry

__all__ = [
    "get_engine",
    "get_session_factory",
    "with_store_retry",
    "Base",
    "TimestampMixin",
    "Project",
    "ProjectStatus",
    "QueuedTask",
    "QueueStatus",
    "TaskType",
    "BuildEvent",
    "BuildEventType",
    "RealtimeEvent",
]
