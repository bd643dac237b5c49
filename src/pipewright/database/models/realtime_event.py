"""Subscription table model for Pipewright.

Rows in realtime_events are written by the broadcast fan-out so that clients
subscribed to database changes receive pipeline updates.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import ForeignKey, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from pipewright.database.models.base import (
    Base,
    JSONType,
    PrimaryKeyType,
    UTCDateTime,
    utcnow,
)


class RealtimeEvent(Base):
    """A broadcast event persisted for database-change subscribers."""

    __tablename__ = "realtime_events"
    __table_args__ = (
        Index("ix_realtime_events_project_timestamp", "project_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(PrimaryKeyType, primary_key=True, autoincrement=True)
    project_id: Mapped[int | None] = mapped_column(
        ForeignKey("projects.id"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    channel: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
