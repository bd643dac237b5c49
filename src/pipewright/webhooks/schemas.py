"""Pydantic schemas for inbound webhook payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pipewright.database.models.build_event import BuildEventType

EVENT_TYPE_ALIASES: dict[str, BuildEventType] = {
    "build_started": BuildEventType.build_started,
    "build_progress": BuildEventType.build_progress,
    "build_completed": BuildEventType.build_completed,
    "build_failed": BuildEventType.build_failed,
    "build_cancelled": BuildEventType.build_cancelled,
    "build_canceled": BuildEventType.build_cancelled,
    "file_generated": BuildEventType.file_generated,
    "log_entry": BuildEventType.log_entry,
}


def normalize_event_type(name: str) -> BuildEventType:
    """Map a build service event name to a ledger event type.

    Dotted (``build.completed``) and underscored names are accepted; unknown
    names are recorded as ``log_entry``.
    """
    key = name.strip().lower().replace(".", "_").replace("-", "_")
    return EVENT_TYPE_ALIASES.get(key, BuildEventType.log_entry)


class ConversationWebhook(BaseModel):
    """Notification from the conversation platform.

    Attributes:
        event_type: Event name; only ``conversation_ended`` starts a pipeline.
        conversation_id: Conversation identifier.
        data: Conversation payload (transcript, summary, participant info).
    """

    model_config = ConfigDict(extra="allow")

    event_type: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("conversation_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class BuildWebhook(BaseModel):
    """Notification from the build service.

    Attributes:
        build_id: Build identifier (matched against projects.build_ref).
        event_type: Event name, dotted or underscored.
        project_id: Build service project identifier (fallback join key).
        data: Event data.
        timestamp: When the event happened.
        sequence_number: Monotonic ordering number, when provided. Read from
            ``data.sequence_number`` when absent at the top level.
        message: Optional human-readable message.
    """

    model_config = ConfigDict(extra="allow")

    build_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    project_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime | None = None
    sequence_number: int | None = Field(default=None, ge=0)
    message: str | None = None

    @field_validator("build_id", "project_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @model_validator(mode="before")
    @classmethod
    def sequence_from_data(cls, values: Any) -> Any:
        """Fall back to ``data.sequence_number`` so nested ordering is enforced too."""
        if not isinstance(values, dict) or values.get("sequence_number") is not None:
            return values
        data = values.get("data")
        if isinstance(data, dict) and data.get("sequence_number") is not None:
            return {**values, "sequence_number": data["sequence_number"]}
        return values
