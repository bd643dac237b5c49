"""Project model for Pipewright.

Defines the projects table and the ProjectStatus enum. A project is created
when a conversation's analysis succeeds and is advanced by every later task
completion and accepted build event.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Enum, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from pipewright.database.models.base import Base, JSONType, TimestampMixin, UTCDateTime


class ProjectStatus(enum.Enum):
    """Project lifecycle states.

    States:
        analyzing: Conversation is being analyzed.
        planning: Analysis stored, build plan being generated.
        ready_to_build: Plan stored, waiting for the build trigger.
        building: External build service is running.
        completed: Build finished successfully (terminal).
        failed: Pipeline failed; may be reset for retry.
        cancelled: Stopped by a user or the build service (terminal).
    """

    analyzing = "analyzing"
    planning = "planning"
    ready_to_build = "ready_to_build"
    building = "building"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class Project(TimestampMixin, Base):
    """A conversation-driven build project.

    Attributes:
        id: Integer primary key (from TimestampMixin).
        conversation_id: Source conversation identifier, unique per project.
        project_name: Name inferred by the analysis step.
        description: Human-readable summary of the project.
        analysis: Document produced by the analysis step.
        status: Current lifecycle state.
        plan: Build plan document, opaque beyond existence checks.
        build_ref: Build identifier issued by the build service.
        external_project_ref: Project identifier issued by the build service.
        retry_count: Number of pipeline resets performed.
        error_message: Last failure message.
        error_kind: Machine-readable category of the last failure.
        metadata_: Open key/value bag, stored in the ``metadata`` column.
        completed_at: Set exactly when status is completed.
    """

    __tablename__ = "projects"

    conversation_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    project_name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus, native_enum=False, length=32),
        default=ProjectStatus.analyzing,
        nullable=False,
    )
    plan: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    build_ref: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    external_project_ref: Mapped[str | None] = mapped_column(
        Text, nullable=True, index=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        default=dict,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def is_terminal(self) -> bool:
        """True when no further forward transition is possible."""
        return self.status in (ProjectStatus.completed, ProjectStatus.cancelled)
