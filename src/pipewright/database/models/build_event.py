"""Build event ledger model for Pipewright.

Defines the append-only build_events table. Rows are never updated or
deleted; display ordering uses ``timestamp`` while state decisions respect
``sequence_number`` when the build service provides one.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Enum, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from pipewright.database.models.base import (
    Base,
    JSONType,
    PrimaryKeyType,
    UTCDateTime,
    utcnow,
)


class BuildEventType(enum.Enum):
    """Kinds of notifications recorded in the ledger."""

    build_started = "build_started"
    build_progress = "build_progress"
    build_completed = "build_completed"
    build_failed = "build_failed"
    build_cancelled = "build_cancelled"
    file_generated = "file_generated"
    log_entry = "log_entry"


class BuildEvent(Base):
    """An immutable ledger entry describing something that happened to a build.

    Attributes:
        id: Integer primary key; also the recording order.
        project_id: Project the event belongs to.
        build_ref: Build identifier the event was reported for.
        event_type: Normalized event kind.
        event_data: Event payload document.
        message: Optional human-readable message.
        timestamp: Time the event happened (from the payload when present).
        received_at: Time the event was recorded.
        sequence_number: Monotonic sequence issued by the build service.
        payload_digest: SHA-256 hex digest of the raw notification body.
        webhook_id: Delivery identifier sent with the notification.
    """

    __tablename__ = "build_events"
    __table_args__ = (
        Index("ix_build_events_project_timestamp", "project_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(PrimaryKeyType, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)
    build_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_type: Mapped[BuildEventType] = mapped_column(
        Enum(BuildEventType, native_enum=False, length=32),
        nullable=False,
    )
    event_data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    sequence_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload_digest: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_id: Mapped[str | None] = mapped_column(Text, nullable=True)
