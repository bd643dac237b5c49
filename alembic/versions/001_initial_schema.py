"""Initial schema for Pipewright.

Creates the projects, processing_queue, build_events and realtime_events
tables with the indexes the queue selector, the build webhook resolver and
the ledger listing depend on. Status and type enums are stored as VARCHAR.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.Text(), nullable=False),
        sa.Column("project_name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("analysis", JSONB(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="analyzing"),
        sa.Column("plan", JSONB(), nullable=True),
        sa.Column("build_ref", sa.Text(), nullable=True),
        sa.Column("external_project_ref", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("conversation_id", name="uq_projects_conversation_id"),
    )
    op.create_index("ix_projects_build_ref", "projects", ["build_ref"])
    op.create_index("ix_projects_external_project_ref", "projects", ["external_project_ref"])

    op.create_table(
        "processing_queue",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("task_type", sa.String(32), nullable=False),
        sa.Column("payload", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_processing_queue_status_priority_created",
        "processing_queue",
        ["status", "priority", "created_at"],
    )

    op.create_table(
        "build_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.BigInteger(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("build_ref", sa.Text(), nullable=True),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("event_data", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("sequence_number", sa.Integer(), nullable=True),
        sa.Column("payload_digest", sa.Text(), nullable=True),
        sa.Column("webhook_id", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_build_events_project_timestamp", "build_events", ["project_id", "timestamp"]
    )

    op.create_table(
        "realtime_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.BigInteger(), sa.ForeignKey("projects.id"), nullable=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("channel", sa.Text(), nullable=False),
        sa.Column("data", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index(
        "ix_realtime_events_project_timestamp", "realtime_events", ["project_id", "timestamp"]
    )


def downgrade() -> None:
    op.drop_index("ix_realtime_events_project_timestamp", table_name="realtime_events")
    op.drop_table("realtime_events")
    op.drop_index("ix_build_events_project_timestamp", table_name="build_events")
    op.drop_table("build_events")
    op.drop_index("ix_processing_queue_status_priority_created", table_name="processing_queue")
    op.drop_table("processing_queue")
    op.drop_index("ix_projects_external_project_ref", table_name="projects")
    op.drop_index("ix_projects_build_ref", table_name="projects")
    op.drop_table("projects")
