"""Build event ledger query functions for Pipewright.

The ledger is append-only: these functions insert and read rows but never
update or delete them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pipewright.database.models.base import utcnow
from pipewright.database.models.build_event import BuildEvent, BuildEventType

logger = structlog.get_logger(__name__)


async def append_event(
    session: AsyncSession,
    project_id: int,
    event_type: BuildEventType,
    build_ref: str | None = None,
    event_data: dict[str, Any] | None = None,
    message: str | None = None,
    timestamp: datetime | None = None,
    sequence_number: int | None = None,
    payload_digest: str | None = None,
    webhook_id: str | None = None,
) -> BuildEvent:
    """Append an entry to the build event ledger.

    Args:
        session: Active async database session.
        project_id: Project the event belongs to.
        event_type: Normalized event kind.
        build_ref: Build identifier the event was reported for.
        event_data: Event payload document.
        message: Optional human-readable message.
        timestamp: When the event happened (defaults to now).
        sequence_number: Ordering number issued by the build service.
        payload_digest: SHA-256 of the raw notification body.
        webhook_id: Delivery identifier of the notification.

    Returns:
        The flushed BuildEvent with its ID assigned.
    """
    received_at = utcnow()
    event = BuildEvent(
        project_id=project_id,
        build_ref=build_ref,
        event_type=event_type,
        event_data=event_data or {},
        message=message,
        timestamp=timestamp or received_at,
        received_at=received_at,
        sequence_number=sequence_number,
        payload_digest=payload_digest,
        webhook_id=webhook_id,
    )
    session.add(event)
    await session.flush()

    logger.info(
        "build_event_recorded",
        event_id=event.id,
        project_id=project_id,
        build_ref=build_ref,
        event_type=event_type.value,
        sequence_number=sequence_number,
    )
    return event


async def get_event(session: AsyncSession, event_id: int) -> BuildEvent | None:
    """Retrieve a ledger entry by ID."""
    result = await session.execute(select(BuildEvent).where(BuildEvent.id == event_id))
    return result.scalar_one_or_none()


async def max_prior_sequence(
    session: AsyncSession,
    project_id: int,
    build_ref: str | None,
    before_event_id: int,
) -> int | None:
    """Highest sequence number recorded before an event for the same build.

    Args:
        session: Active async database session.
        project_id: Project the events belong to.
        build_ref: Build the events were reported for.
        before_event_id: Only entries recorded earlier than this one count.

    Returns:
        The maximum prior sequence number, or None if none carry one.
    """
    stmt = (
        select(func.max(BuildEvent.sequence_number))
        .where(BuildEvent.project_id == project_id)
        .where(BuildEvent.id < before_event_id)
        .where(BuildEvent.sequence_number.is_not(None))
    )
    if build_ref is None:
        stmt = stmt.where(BuildEvent.build_ref.is_(None))
    else:
        stmt = stmt.where(BuildEvent.build_ref == build_ref)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_events(
    session: AsyncSession,
    project_id: int,
    limit: int = 100,
) -> list[BuildEvent]:
    """List a project's ledger entries in display order (timestamp, then ID)."""
    stmt = (
        select(BuildEvent)
        .where(BuildEvent.project_id == project_id)
        .order_by(BuildEvent.timestamp.asc(), BuildEvent.id.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_events(
    session: AsyncSession,
    project_id: int,
    event_type: BuildEventType | None = None,
) -> int:
    """Count a project's ledger entries, optionally of one type."""
    stmt = select(func.count(BuildEvent.id)).where(BuildEvent.project_id == project_id)
    if event_type is not None:
        stmt = stmt.where(BuildEvent.event_type == event_type)
    result = await session.execute(stmt)
    return int(result.scalar_one())
