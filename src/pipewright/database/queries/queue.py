"""Processing queue query functions for Pipewright.

Provides async functions for inserting queue entries, selecting due work in
priority order, the atomic claim update, terminal outcome updates, retry
scheduling and stale-claim recovery.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pipewright.database.models.base import utcnow
from pipewright.database.models.queued_task import QueuedTask, QueueStatus, TaskType

logger = structlog.get_logger(__name__)


async def insert_task(
    session: AsyncSession,
    task_type: TaskType,
    payload: dict[str, Any],
    priority: int = 0,
    max_retries: int = 3,
    delay_seconds: float | None = None,
) -> QueuedTask:
    """Add a pending task to the queue.

    Args:
        session: Active async database session.
        task_type: Executor that should handle the task.
        payload: Executor input document.
        priority: Higher values run first.
        max_retries: Retry budget for the task.
        delay_seconds: Optional deferral before the task becomes due.

    Returns:
        The flushed QueuedTask with its ID assigned.
    """
    next_retry_at = None
    if delay_seconds is not None and delay_seconds > 0:
        next_retry_at = utcnow() + timedelta(seconds=delay_seconds)

    task = QueuedTask(
        task_type=task_type,
        payload=payload,
        status=QueueStatus.pending,
        priority=priority,
        retry_count=0,
        max_retries=max_retries,
        next_retry_at=next_retry_at,
    )
    session.add(task)
    await session.flush()

    logger.info(
        "task_enqueued",
        task_id=task.id,
        task_type=task_type.value,
        priority=priority,
        deferred_until=next_retry_at.isoformat() if next_retry_at else None,
    )
    return task


async def get_task(session: AsyncSession, task_id: int) -> QueuedTask | None:
    """Retrieve a queue entry by ID, refreshing any identity-map copy."""
    stmt = (
        select(QueuedTask)
        .where(QueuedTask.id == task_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def _due_clause(now: datetime):
    return or_(QueuedTask.next_retry_at.is_(None), QueuedTask.next_retry_at <= now)


async def select_due_tasks(
    session: AsyncSession,
    limit: int,
    now: datetime | None = None,
) -> list[QueuedTask]:
    """Select pending tasks that are due, highest priority first.

    Ties are broken by creation time and then ID so selection is
    deterministic.

    Args:
        session: Active async database session.
        limit: Maximum number of tasks to return.
        now: Reference time for deferral checks (defaults to now).

    Returns:
        Pending tasks ordered by (priority desc, created_at asc, id asc).
    """
    now = now or utcnow()
    stmt = (
        select(QueuedTask)
        .where(QueuedTask.status == QueueStatus.pending)
        .where(_due_clause(now))
        .order_by(
            QueuedTask.priority.desc(),
            QueuedTask.created_at.asc(),
            QueuedTask.id.asc(),
        )
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_due_tasks(session: AsyncSession, now: datetime | None = None) -> int:
    """Count pending tasks that are currently due."""
    now = now or utcnow()
    stmt = (
        select(func.count(QueuedTask.id))
        .where(QueuedTask.status == QueueStatus.pending)
        .where(_due_clause(now))
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def claim_task(
    session: AsyncSession,
    task_id: int,
    now: datetime | None = None,
) -> bool:
    """Atomically move a due task from pending to processing.

    The update repeats the selection predicates (pending and due) so a cycle
    working from an older selection cannot claim a task that has since been
    retried and deferred.

    Args:
        session: Active async database session.
        task_id: ID of the task to claim.
        now: Claim time recorded as started_at.

    Returns:
        True if this caller won the claim, False if another worker owns it
        or the task is no longer due.
    """
    now = now or utcnow()
    stmt = (
        update(QueuedTask)
        .where(QueuedTask.id == task_id)
        .where(QueuedTask.status == QueueStatus.pending)
        .where(_due_clause(now))
        .values(status=QueueStatus.processing, started_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


def _held_claim(task_id: int, claimed_at: datetime | None):
    clause = (QueuedTask.id == task_id) & (QueuedTask.status == QueueStatus.processing)
    if claimed_at is not None:
        clause = clause & (QueuedTask.started_at == claimed_at)
    return clause


async def complete_task(
    session: AsyncSession,
    task_id: int,
    now: datetime | None = None,
    claimed_at: datetime | None = None,
) -> bool:
    """Mark a claimed task completed.

    Args:
        session: Active async database session.
        task_id: ID of the task.
        now: Completion time.
        claimed_at: started_at of the claim being finished; when given, the
            update only applies while that claim is still current.

    Returns:
        True if the outcome was recorded, False if the claim was superseded.
    """
    now = now or utcnow()
    stmt = (
        update(QueuedTask)
        .where(_held_claim(task_id, claimed_at))
        .values(
            status=QueueStatus.completed,
            completed_at=now,
            updated_at=now,
            error_message=None,
            error_kind=None,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def fail_task(
    session: AsyncSession,
    task_id: int,
    error_message: str,
    error_kind: str,
    now: datetime | None = None,
    claimed_at: datetime | None = None,
) -> bool:
    """Mark a processing task failed terminally with its error details.

    Returns:
        True if the outcome was recorded, False if the claim was superseded.
    """
    now = now or utcnow()
    stmt = (
        update(QueuedTask)
        .where(_held_claim(task_id, claimed_at))
        .values(
            status=QueueStatus.failed,
            completed_at=now,
            updated_at=now,
            error_message=error_message,
            error_kind=error_kind,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def schedule_retry(
    session: AsyncSession,
    task_id: int,
    retry_count: int,
    next_retry_at: datetime,
    error_message: str,
    error_kind: str,
    claimed_at: datetime | None = None,
) -> bool:
    """Return a processing task to pending with a deferral and its new retry count.

    Returns:
        True if the retry was recorded, False if the claim was superseded.
    """
    stmt = (
        update(QueuedTask)
        .where(_held_claim(task_id, claimed_at))
        .values(
            status=QueueStatus.pending,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            started_at=None,
            error_message=error_message,
            error_kind=error_kind,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def requeue_stale_claims(
    session: AsyncSession,
    cutoff: datetime,
    now: datetime | None = None,
) -> tuple[int, int]:
    """Recover tasks stuck in processing since before the cutoff.

    Tasks with retry budget left go back to pending with retry_count + 1;
    the rest are failed terminally with error_kind ``stale_claim``.

    Args:
        session: Active async database session.
        cutoff: Claims whose started_at is older than this are stale.
        now: Reference time for the updates.

    Returns:
        Tuple of (requeued, failed) counts.
    """
    now = now or utcnow()
    stale = (
        (QueuedTask.status == QueueStatus.processing)
        & (QueuedTask.started_at < cutoff)
    )

    exhausted = await session.execute(
        update(QueuedTask)
        .where(stale)
        .where(QueuedTask.retry_count >= QueuedTask.max_retries)
        .values(
            status=QueueStatus.failed,
            completed_at=now,
            updated_at=now,
            error_message="Task claim expired with no retries left",
            error_kind="stale_claim",
        )
        .execution_options(synchronize_session=False)
    )
    requeued = await session.execute(
        update(QueuedTask)
        .where(stale)
        .values(
            status=QueueStatus.pending,
            retry_count=QueuedTask.retry_count + 1,
            started_at=None,
            next_retry_at=None,
            error_message="Task claim expired; requeued",
            error_kind="stale_claim",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    if requeued.rowcount or exhausted.rowcount:
        logger.warning(
            "stale_claims_recovered",
            requeued=requeued.rowcount,
            failed=exhausted.rowcount,
            cutoff=cutoff.isoformat(),
        )
    return requeued.rowcount, exhausted.rowcount


async def queue_stats(session: AsyncSession) -> dict[str, int]:
    """Count queue entries grouped by status, including zero counts."""
    stmt = select(QueuedTask.status, func.count(QueuedTask.id)).group_by(QueuedTask.status)
    result = await session.execute(stmt)
    counts = {status.value: 0 for status in QueueStatus}
    for status, count in result.all():
        counts[status.value] = count
    return counts


async def list_tasks(
    session: AsyncSession,
    status_filter: QueueStatus | None = None,
    limit: int = 50,
) -> list[QueuedTask]:
    """List queue entries, newest first."""
    stmt = select(QueuedTask)
    if status_filter is not None:
        stmt = stmt.where(QueuedTask.status == status_filter)
    stmt = stmt.order_by(QueuedTask.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
