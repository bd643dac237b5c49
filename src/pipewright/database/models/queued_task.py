"""Processing queue model for Pipewright.

Defines the processing_queue table backing the durable task queue, with the
TaskType and QueueStatus enums. A task is claimed by exactly one queue cycle
through the conditional update ``pending -> processing``.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Enum, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from pipewright.database.models.base import Base, JSONType, TimestampMixin, UTCDateTime


class TaskType(enum.Enum):
    """Kinds of work the queue can execute."""

    analyze_conversation = "analyze_conversation"
    generate_plan = "generate_plan"
    trigger_build = "trigger_build"
    process_webhook = "process_webhook"
    send_notification = "send_notification"


class QueueStatus(enum.Enum):
    """Queue entry lifecycle.

    States:
        pending: Waiting to be claimed (possibly deferred by next_retry_at).
        processing: Claimed by a cycle; started_at is set.
        completed: Executor succeeded (terminal).
        failed: Permanent error or retries exhausted (terminal).
    """

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class QueuedTask(TimestampMixin, Base):
    """A unit of pipeline work in the processing queue.

    Attributes:
        id: Integer primary key (from TimestampMixin).
        task_type: Executor that handles this task.
        payload: Executor input document.
        status: Queue lifecycle state.
        priority: Higher values run first.
        retry_count: Retries performed so far.
        max_retries: Retry budget for this task.
        next_retry_at: Earliest time the task may be selected again.
        error_message: Last failure message.
        error_kind: Machine-readable category of the last failure.
        started_at: Set when the task is claimed.
        completed_at: Set when the task reaches a terminal state.
    """

    __tablename__ = "processing_queue"
    __table_args__ = (
        Index(
            "ix_processing_queue_status_priority_created",
            "status",
            "priority",
            "created_at",
        ),
    )

    task_type: Mapped[TaskType] = mapped_column(
        Enum(TaskType, native_enum=False, length=32),
        nullable=False,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus, native_enum=False, length=16),
        default=QueueStatus.pending,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
