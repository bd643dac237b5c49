"""Project state machine for the Pipewright orchestrator.

This module implements the project lifecycle state machine. Every transition
names the states it expects the project to be in and is applied as a single
conditional UPDATE, so concurrent tasks and webhooks can never move a project
backwards. A project that has already moved past the expected states turns
the call into a no-op (``TransitionResult.applied is False``); asking for a
target that cannot be reached from the expected states is a programming error.

State machine:
    analyzing -> planning -> ready_to_build -> building -> completed
    any active state -> failed | cancelled
    failed -> analyzing (retry path) | cancelled

Commits are the caller's responsibility so that a transition and the next
stage's queue entry land in the same transaction.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from pipewright.database.models.base import utcnow
from pipewright.database.models.project import Project, ProjectStatus
from pipewright.database.queries.project import (
    conditional_update,
    get_project,
    get_project_by_conversation,
    insert_project_if_absent,
)
from pipewright.errors import PipelineError, ProjectNotFoundError

logger = structlog.get_logger(__name__)


class InvalidTransitionError(PipelineError):
    """Raised when a transition target is unreachable from the expected states.

    Attributes:
        current: The expected (prior) project status.
        target: The attempted target status.
        project_id: The ID of the project that failed to transition.
    """

    kind = "invalid_transition"

    def __init__(
        self,
        current: ProjectStatus,
        target: ProjectStatus,
        project_id: int | None = None,
    ):
        self.current = current
        self.target = target
        self.project_id = project_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if project_id is not None:
            msg += f" for project {project_id}"
        super().__init__(msg)


# Authoritative state machine definition
VALID_TRANSITIONS: dict[ProjectStatus, set[ProjectStatus]] = {
    ProjectStatus.analyzing: {
        ProjectStatus.planning,
        ProjectStatus.failed,
        ProjectStatus.cancelled,
    },
    ProjectStatus.planning: {
        ProjectStatus.ready_to_build,
        ProjectStatus.failed,
        ProjectStatus.cancelled,
    },
    ProjectStatus.ready_to_build: {
        ProjectStatus.building,
        ProjectStatus.failed,
        ProjectStatus.cancelled,
    },
    ProjectStatus.building: {
        ProjectStatus.completed,
        ProjectStatus.failed,
        ProjectStatus.cancelled,
    },
    ProjectStatus.completed: set(),  # Terminal
    ProjectStatus.failed: {ProjectStatus.analyzing, ProjectStatus.cancelled},
    ProjectStatus.cancelled: set(),  # Terminal
}

ACTIVE_STATES: tuple[ProjectStatus, ...] = (
    ProjectStatus.analyzing,
    ProjectStatus.planning,
    ProjectStatus.ready_to_build,
    ProjectStatus.building,
)

TERMINAL_STATES: tuple[ProjectStatus, ...] = (
    ProjectStatus.completed,
    ProjectStatus.cancelled,
)


def validate_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    """Validate if a state transition is allowed.

    Args:
        current: Current project status.
        target: Target project status.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


@dataclass
class TransitionResult:
    """Outcome of a guarded transition.

    Attributes:
        applied: True if the UPDATE matched and changed the row.
        project: The project as stored after the attempt.
        previous_status: Status observed before the attempt.
        target: Status the transition asked for.
        reason: Why the transition was skipped, when it was.
    """

    applied: bool
    project: Project | None
    previous_status: ProjectStatus | None = None
    target: ProjectStatus | None = None
    reason: str | None = None


class ProjectStateMachine:
    """Guards every project status change.

    This class handles:
    - Validation of requested transitions against VALID_TRANSITIONS
    - Conditional updates that turn late or duplicate calls into no-ops
    - Lifecycle timestamps (completed_at)
    - The failed -> analyzing retry path with its retry ceiling
    - Metadata merges
    """

    def __init__(self, max_project_retries: int = 2):
        """Initialize the project state machine.

        Args:
            max_project_retries: Default ceiling for reset_for_retry.
        """
        self.max_project_retries = max_project_retries
        self.logger = logger.bind(component="ProjectStateMachine")

    async def _transition(
        self,
        session: AsyncSession,
        project_id: int,
        expected: Iterable[ProjectStatus],
        target: ProjectStatus,
        values: dict[str, Any] | None = None,
        extra_conditions: Iterable[Any] = (),
    ) -> TransitionResult:
        expected = tuple(expected)
        for state in expected:
            if not validate_transition(state, target):
                raise InvalidTransitionError(state, target, project_id)

        current = await get_project(session, project_id)
        if current is None:
            raise ProjectNotFoundError(project_id)
        previous_status = current.status

        update_values = {"status": target, "updated_at": utcnow()}
        update_values.update(values or {})
        rowcount = await conditional_update(
            session, project_id, expected, update_values, extra_conditions
        )
        project = await get_project(session, project_id)

        if rowcount == 0:
            self.logger.info(
                "transition_skipped",
                project_id=project_id,
                current_status=project.status.value if project else None,
                target_status=target.value,
                expected=[s.value for s in expected],
            )
            return TransitionResult(
                applied=False,
                project=project,
                previous_status=previous_status,
                target=target,
                reason="status_mismatch",
            )

        self.logger.info(
            "project_transition",
            project_id=project_id,
            from_status=previous_status.value,
            to_status=target.value,
        )
        return TransitionResult(
            applied=True,
            project=project,
            previous_status=previous_status,
            target=target,
        )

    async def begin_planning(
        self,
        session: AsyncSession,
        conversation_id: str,
        project_name: str,
        description: str | None,
        analysis: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Store an analysis and move the project from analyzing to planning.

        Creates the project row if the conversation has none yet. A project
        that is already past analyzing is left untouched.

        Args:
            session: Database session for the transaction.
            conversation_id: Source conversation identifier.
            project_name: Name inferred by the analysis.
            description: Project summary from the analysis.
            analysis: Full analysis document.
            metadata: Keys merged into the project's metadata on success.

        Returns:
            TransitionResult for the analyzing -> planning step.
        """
        project_id = await insert_project_if_absent(
            session,
            conversation_id,
            {
                "project_name": project_name,
                "description": description,
                "analysis": analysis,
                "status": ProjectStatus.analyzing,
                "retry_count": 0,
                "metadata_": {},
            },
        )
        if project_id is None:
            existing = await get_project_by_conversation(session, conversation_id)
            if existing is None:
                raise ProjectNotFoundError(conversation_id)
            project_id = existing.id

        result = await self._transition(
            session,
            project_id,
            expected=[ProjectStatus.analyzing],
            target=ProjectStatus.planning,
            values={
                "project_name": project_name,
                "description": description,
                "analysis": analysis,
                "error_message": None,
                "error_kind": None,
            },
        )
        if result.applied and metadata:
            await self.update_metadata(session, project_id, metadata)
            result.project = await get_project(session, project_id)
        return result

    async def mark_ready_to_build(
        self,
        session: AsyncSession,
        project_id: int,
        plan: dict[str, Any],
    ) -> TransitionResult:
        """Store the build plan and move planning -> ready_to_build."""
        return await self._transition(
            session,
            project_id,
            expected=[ProjectStatus.planning],
            target=ProjectStatus.ready_to_build,
            values={"plan": plan},
        )

    async def mark_building(
        self,
        session: AsyncSession,
        project_id: int,
        build_ref: str,
        external_project_ref: str | None = None,
    ) -> TransitionResult:
        """Record the build identifiers and move ready_to_build -> building.

        Guarded by ``build_ref IS NULL``: a build reference is never
        reassigned, so a second trigger for the same attempt is a no-op with
        reason ``already_triggered``.
        """
        result = await self._transition(
            session,
            project_id,
            expected=[ProjectStatus.ready_to_build],
            target=ProjectStatus.building,
            values={
                "build_ref": build_ref,
                "external_project_ref": external_project_ref,
            },
            extra_conditions=[Project.build_ref.is_(None)],
        )
        if not result.applied and result.project is not None and result.project.build_ref:
            result.reason = "already_triggered"
        return result

    async def mark_completed(
        self,
        session: AsyncSession,
        project_id: int,
    ) -> TransitionResult:
        """Move building -> completed and stamp completed_at."""
        return await self._transition(
            session,
            project_id,
            expected=[ProjectStatus.building],
            target=ProjectStatus.completed,
            values={"completed_at": utcnow()},
        )

    async def mark_failed(
        self,
        session: AsyncSession,
        project_id: int,
        error_message: str,
        error_kind: str,
    ) -> TransitionResult:
        """Move any active project to failed with its error details."""
        return await self._transition(
            session,
            project_id,
            expected=ACTIVE_STATES,
            target=ProjectStatus.failed,
            values={"error_message": error_message, "error_kind": error_kind},
        )

    async def cancel(
        self,
        session: AsyncSession,
        project_id: int,
        reason: str | None = None,
    ) -> TransitionResult:
        """Cancel an active or failed project."""
        result = await self._transition(
            session,
            project_id,
            expected=(*ACTIVE_STATES, ProjectStatus.failed),
            target=ProjectStatus.cancelled,
        )
        if result.applied:
            await self.update_metadata(
                session,
                project_id,
                {"cancellation_reason": reason or "cancelled"},
            )
            result.project = await get_project(session, project_id)
        return result

    async def reset_for_retry(
        self,
        session: AsyncSession,
        project_id: int,
        max_retries: int | None = None,
        reason: str | None = None,
    ) -> TransitionResult:
        """Send a failed project back to analyzing for another attempt.

        The previous attempt's build identifiers are archived into
        ``metadata.previous_builds`` and cleared so the next attempt can record
        its own. Once retry_count reaches the ceiling the project stays failed
        and ``metadata.permanently_failed`` is set.

        Args:
            session: Database session for the transaction.
            project_id: ID of the project to reset.
            max_retries: Ceiling override; defaults to max_project_retries.
            reason: Failure reason recorded with the archived attempt.

        Returns:
            TransitionResult; reason is ``retry_limit_reached`` at the ceiling
            and ``not_failed`` when the project is not in failed.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        ceiling = self.max_project_retries if max_retries is None else max_retries
        project = await get_project(session, project_id, for_update=True)
        if project is None:
            raise ProjectNotFoundError(project_id)

        if project.status != ProjectStatus.failed:
            return TransitionResult(
                applied=False,
                project=project,
                previous_status=project.status,
                reason="not_failed",
            )

        if project.retry_count >= ceiling:
            await self.update_metadata(
                session,
                project_id,
                {
                    "permanently_failed": True,
                    "max_retries_exceeded": True,
                    "final_failure_reason": reason or project.error_message,
                },
            )
            self.logger.warning(
                "project_retry_limit_reached",
                project_id=project_id,
                retry_count=project.retry_count,
                max_retries=ceiling,
            )
            return TransitionResult(
                applied=False,
                project=await get_project(session, project_id),
                previous_status=project.status,
                reason="retry_limit_reached",
            )

        metadata = dict(project.metadata_ or {})
        if project.build_ref or project.external_project_ref:
            previous_builds = list(metadata.get("previous_builds", []))
            previous_builds.append(
                {
                    "build_ref": project.build_ref,
                    "external_project_ref": project.external_project_ref,
                    "error_message": reason or project.error_message,
                    "archived_at": utcnow().isoformat(),
                }
            )
            metadata["previous_builds"] = previous_builds

        result = await self._transition(
            session,
            project_id,
            expected=[ProjectStatus.failed],
            target=ProjectStatus.analyzing,
            values={
                "retry_count": Project.retry_count + 1,
                "build_ref": None,
                "external_project_ref": None,
                "plan": None,
                "error_message": None,
                "error_kind": None,
                "completed_at": None,
                "metadata_": metadata,
            },
            extra_conditions=[Project.retry_count < ceiling],
        )
        if result.applied:
            self.logger.info(
                "project_reset_for_retry",
                project_id=project_id,
                retry_count=result.project.retry_count if result.project else None,
            )
        return result

    async def update_metadata(
        self,
        session: AsyncSession,
        project_id: int,
        updates: dict[str, Any],
        only_in: Iterable[ProjectStatus] | None = None,
    ) -> bool:
        """Merge keys into a project's metadata (last write wins).

        The row is read with SELECT ... FOR UPDATE where the backend supports
        it, so concurrent merges on PostgreSQL serialize instead of losing keys.

        Args:
            session: Database session for the transaction.
            project_id: ID of the project to update.
            updates: Keys to merge into the existing metadata.
            only_in: Apply only while the project is in one of these states.

        Returns:
            True if the merge was applied.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        only_in = tuple(only_in) if only_in is not None else None
        project = await get_project(session, project_id, for_update=True)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if only_in is not None and project.status not in only_in:
            self.logger.debug(
                "metadata_update_skipped",
                project_id=project_id,
                status=project.status.value,
            )
            return False

        merged = dict(project.metadata_ or {})
        merged.update(updates)
        rowcount = await conditional_update(
            session,
            project_id,
            only_in,
            {"metadata_": merged, "updated_at": utcnow()},
        )
        return rowcount == 1
