"""Project query functions for Pipewright.

Provides async functions for reading projects, the create-if-absent insert
used when an analysis succeeds, and the guarded conditional update every
state transition goes through.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog
from sqlalchemy import Column, ColumnElement, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pipewright.database.models.project import Project, ProjectStatus

logger = structlog.get_logger(__name__)


def _column_values(values: dict[str, Any]) -> dict[Column[Any], Any]:
    """Key column values by Column so attribute names like metadata_ resolve."""
    columns = Project.__mapper__.columns
    return {columns[key]: value for key, value in values.items()}


async def get_project(
    session: AsyncSession,
    project_id: int,
    for_update: bool = False,
) -> Project | None:
    """Retrieve a project by ID, refreshing any identity-map copy.

    Args:
        session: Active async database session.
        project_id: ID of the project to retrieve.
        for_update: Lock the row (SELECT ... FOR UPDATE) where supported.

    Returns:
        The Project instance if found, None otherwise.
    """
    stmt = (
        select(Project)
        .where(Project.id == project_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_project_by_conversation(
    session: AsyncSession,
    conversation_id: str,
) -> Project | None:
    """Retrieve the project spawned by a conversation."""
    stmt = (
        select(Project)
        .where(Project.conversation_id == conversation_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_project_for_build(
    session: AsyncSession,
    build_ref: str | None,
    external_project_ref: str | None = None,
) -> Project | None:
    """Resolve the project a build notification refers to.

    The build identifier is matched against ``build_ref`` first; the external
    project identifier is the fallback join key.

    Args:
        session: Active async database session.
        build_ref: Build identifier from the notification.
        external_project_ref: Project identifier issued by the build service.

    Returns:
        The matching Project, or None when neither key resolves.
    """
    if build_ref:
        stmt = select(Project).where(Project.build_ref == build_ref)
        result = await session.execute(stmt.execution_options(populate_existing=True))
        project = result.scalars().first()
        if project is not None:
            return project

    if external_project_ref:
        stmt = (
            select(Project)
            .where(Project.external_project_ref == external_project_ref)
            .order_by(Project.id.desc())
        )
        result = await session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    return None


async def list_projects(
    session: AsyncSession,
    status_filter: ProjectStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Project]:
    """List projects, newest first.

    Args:
        session: Active async database session.
        status_filter: Optional status to filter by.
        limit: Maximum number of rows to return.
        offset: Number of rows to skip.

    Returns:
        List of Project instances.
    """
    stmt = select(Project)
    if status_filter is not None:
        stmt = stmt.where(Project.status == status_filter)
    stmt = stmt.order_by(Project.created_at.desc(), Project.id.desc())
    stmt = stmt.limit(limit).offset(offset)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_projects_by_status(session: AsyncSession) -> dict[str, int]:
    """Count projects grouped by status value."""
    stmt = select(Project.status, func.count(Project.id)).group_by(Project.status)
    result = await session.execute(stmt)
    return {status.value: count for status, count in result.all()}


async def insert_project_if_absent(
    session: AsyncSession,
    conversation_id: str,
    values: dict[str, Any],
) -> int | None:
    """Insert a project unless one already exists for the conversation.

    Uses INSERT ... ON CONFLICT (conversation_id) DO NOTHING so concurrent
    analyses of the same conversation create at most one row.

    Args:
        session: Active async database session.
        conversation_id: Unique conversation identifier.
        values: Remaining column values keyed by attribute name.

    Returns:
        The new project's ID, or None when the row already existed.
    """
    row = _column_values({**values, "conversation_id": conversation_id})
    dialect = session.get_bind().dialect.name

    if dialect == "postgresql":
        stmt = pg_insert(Project).values(row)
    elif dialect == "sqlite":
        stmt = sqlite_insert(Project).values(row)
    else:
        existing = await get_project_by_conversation(session, conversation_id)
        if existing is not None:
            return None
        result = await session.execute(insert(Project).values(row).returning(Project.id))
        return result.scalar_one()

    stmt = stmt.on_conflict_do_nothing(index_elements=["conversation_id"])
    result = await session.execute(stmt.returning(Project.id))
    project_id = result.scalar_one_or_none()

    if project_id is not None:
        logger.info(
            "project_created",
            project_id=project_id,
            conversation_id=conversation_id,
        )
    return project_id


async def conditional_update(
    session: AsyncSession,
    project_id: int,
    expected: Iterable[ProjectStatus] | None,
    values: dict[str, Any],
    extra_conditions: Iterable[ColumnElement[bool]] = (),
) -> int:
    """Apply an UPDATE only if the project is in one of the expected states.

    Args:
        session: Active async database session.
        project_id: ID of the project to update.
        expected: Statuses the row must currently have; None skips the guard.
        values: Column values to set, keyed by attribute name.
        extra_conditions: Additional WHERE clauses (e.g. build_ref IS NULL).

    Returns:
        Number of rows updated (0 or 1).
    """
    stmt = update(Project).where(Project.id == project_id)
    if expected is not None:
        stmt = stmt.where(Project.status.in_(list(expected)))
    for condition in extra_conditions:
        stmt = stmt.where(condition)
    stmt = stmt.values(_column_values(values)).execution_options(synchronize_session=False)

    result = await session.execute(stmt)
    return result.rowcount

