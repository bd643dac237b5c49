"""Subscription table query functions for Pipewright."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pipewright.database.models.realtime_event import RealtimeEvent


async def insert_realtime_event(
    session: AsyncSession,
    event_type: str,
    channel: str,
    data: dict[str, Any],
    project_id: int | None = None,
    message: str | None = None,
    timestamp: datetime | None = None,
) -> RealtimeEvent:
    """Insert a row for database-change subscribers."""
    row = RealtimeEvent(
        project_id=project_id,
        event_type=event_type,
        channel=channel,
        data=data,
        message=message,
    )
    if timestamp is not None:
        row.timestamp = timestamp
    session.add(row)
    await session.flush()
    return row


async def list_realtime_events(
    session: AsyncSession,
    project_id: int | None = None,
    limit: int = 50,
) -> list[RealtimeEvent]:
    """List recent subscription rows, oldest first."""
    stmt = select(RealtimeEvent)
    if project_id is not None:
        stmt = stmt.where(RealtimeEvent.project_id == project_id)
    stmt = stmt.order_by(RealtimeEvent.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(reversed(result.scalars().all()))
