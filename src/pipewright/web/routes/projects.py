"""Project inspection and control endpoints.

Projects are created by the pipeline itself, so there is no create or
delete: clients list and read projects, read a project's build event ledger,
and cancel or retry a project.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import BaseModel, Field, field_validator

from pipewright.database.models.project import ProjectStatus
from pipewright.database.queries import build_event as build_event_queries
from pipewright.database.queries import project as project_queries
from pipewright.errors import ProjectNotFoundError
from pipewright.logging import get_logger
from pipewright.pipeline import Pipeline
from pipewright.web.dependencies import get_pipeline

logger = get_logger(__name__)


class ProjectResponse(BaseModel):
    """Response schema for project data."""

    id: int
    conversation_id: str
    project_name: str
    description: str | None
    status: str
    plan: dict[str, Any] | None
    build_ref: str | None
    external_project_ref: str | None
    retry_count: int
    error_message: str | None
    error_kind: str | None
    metadata: dict[str, Any] = Field(validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True, "populate_by_name": True}

    @field_validator("status", mode="before")
    @classmethod
    def enum_value(cls, v: Any) -> Any:
        return v.value if isinstance(v, enum.Enum) else v


class BuildEventResponse(BaseModel):
    """Response schema for one ledger entry."""

    id: int
    project_id: int
    build_ref: str | None
    event_type: str
    event_data: dict[str, Any]
    message: str | None
    timestamp: datetime
    received_at: datetime
    sequence_number: int | None

    model_config = {"from_attributes": True}

    @field_validator("event_type", mode="before")
    @classmethod
    def enum_value(cls, v: Any) -> Any:
        return v.value if isinstance(v, enum.Enum) else v


class CancelRequest(BaseModel):
    """Request body for cancelling a project."""

    reason: str | None = Field(default=None, max_length=500)


def _not_found(project_id: int) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail=f"Project {project_id} not found",
    )


def create_projects_router() -> APIRouter:
    """Create the projects router.

    Routes:
        GET /projects/ - List projects with optional status filter
        GET /projects/{project_id} - Get a project
        GET /projects/{project_id}/events - The project's build event ledger
        POST /projects/{project_id}/cancel - Cancel an active or failed project
        POST /projects/{project_id}/retry - Retry a failed project
    """
    router = APIRouter(prefix="/projects", tags=["projects"])

    @router.get("/", response_model=list[ProjectResponse])
    async def list_projects(
        status: str | None = None,
        limit: int = Query(default=50, ge=1, le=500),  # noqa: B008
        offset: int = Query(default=0, ge=0),  # noqa: B008
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> list[ProjectResponse]:
        status_enum = None
        if status is not None:
            try:
                status_enum = ProjectStatus(status)
            except ValueError:
                logger.warning("invalid_status_filter", status=status)
                raise HTTPException(
                    status_code=http_status.HTTP_400_BAD_REQUEST,
                    detail=f"Invalid status: {status}. Valid values: {[s.value for s in ProjectStatus]}",
                ) from None

        async with pipeline.session_factory() as session:
            projects = await project_queries.list_projects(
                session, status_filter=status_enum, limit=limit, offset=offset
            )
        return [ProjectResponse.model_validate(p) for p in projects]

    @router.get("/{project_id}", response_model=ProjectResponse)
    async def get_project(
        project_id: int,
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> ProjectResponse:
        async with pipeline.session_factory() as session:
            project = await project_queries.get_project(session, project_id)
        if project is None:
            raise _not_found(project_id)
        return ProjectResponse.model_validate(project)

    @router.get("/{project_id}/events", response_model=list[BuildEventResponse])
    async def list_project_events(
        project_id: int,
        limit: int = Query(default=100, ge=1, le=1000),  # noqa: B008
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> list[BuildEventResponse]:
        async with pipeline.session_factory() as session:
            project = await project_queries.get_project(session, project_id)
            if project is None:
                raise _not_found(project_id)
            events = await build_event_queries.list_events(session, project_id, limit=limit)

        return [BuildEventResponse.model_validate(e) for e in events]

    @router.post("/{project_id}/cancel")
    async def cancel_project(
        project_id: int,
        request: CancelRequest | None = None,
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> dict[str, Any]:
        reason = request.reason if request is not None else None
        try:
            outcome = await pipeline.cancel_project(project_id, reason or "cancelled_via_api")
        except ProjectNotFoundError:
            raise _not_found(project_id) from None
        if not outcome["applied"]:
            raise HTTPException(
                status_code=http_status.HTTP_409_CONFLICT,
                detail=f"Project {project_id} cannot be cancelled from {outcome['status']}",
            )
        logger.info("project_cancelled_via_api", project_id=project_id, reason=reason)
        return outcome

    @router.post("/{project_id}/retry")
    async def retry_project(
        project_id: int,
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> dict[str, Any]:
        try:
            outcome = await pipeline.retry_project(project_id)
        except ProjectNotFoundError:
            raise _not_found(project_id) from None
        if not outcome["applied"]:
            raise HTTPException(
                status_code=http_status.HTTP_409_CONFLICT,
                detail=f"Project {project_id} was not retried: {outcome['reason']}",
            )
        logger.info("project_retried_via_api", project_id=project_id, task_id=outcome["task_id"])
        return outcome

    return router
