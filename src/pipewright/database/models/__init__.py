"""SQLAlchemy ORM models for Pipewright.

This module defines the database schema: projects, the processing queue, the
build event ledger and the realtime subscription table.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from pipewright.database.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from pipewright.database.models.build_event import BuildEvent, BuildEventType
from pipewright.database.models.project import Project, ProjectStatus
from pipewright.database.models.queued_task import QueuedTask, QueueStatus, TaskType
from pipewright.database.models.realtime_event import RealtimeEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "Project",
    "ProjectStatus",
    "QueuedTask",
    "QueueStatus",
    "TaskType",
    "BuildEvent",
    "BuildEventType",
    "RealtimeEvent",
]
