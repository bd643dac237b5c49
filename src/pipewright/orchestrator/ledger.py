"""Build event ledger and ordering guard.

Every accepted build notification is appended to ``build_events`` before any
state decision is made. An event is out of order when an entry recorded
earlier for the same project and build carries a sequence number greater than
or equal to its own; such events stay in the ledger but do not drive a
transition. Without sequence numbers, arrival order decides.

Accepted events are applied per type: status transitions go through the
project state machine, progress and artifacts are merged into project
metadata, and notifications are queued in the same transaction. Broadcasts
are published after the commit.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pipewright.config import PipelineConfig
from pipewright.database.models.build_event import BuildEvent, BuildEventType
from pipewright.database.models.project import Project
from pipewright.database.models.queued_task import TaskType
from pipewright.database.queries.build_event import (
    append_event,
    get_event,
    max_prior_sequence,
)
from pipewright.database.queries.project import get_project
from pipewright.database.retry import with_store_retry
from pipewright.errors import ProjectNotFoundError, ValidationError
from pipewright.orchestrator.broadcast import BroadcastEvent, BroadcastFanout
from pipewright.orchestrator.classifier import is_retryable
from pipewright.orchestrator.state_machine import (
    ACTIVE_STATES,
    ProjectStateMachine,
    TransitionResult,
)

logger = structlog.get_logger(__name__)

MAX_GENERATED_FILES = 50
MAX_RECENT_LOGS = 20
IMPORTANT_FILES = ("package.json", "README.md", "index.html", "main.js", "app.py")

NOTIFICATION_PRIORITIES: dict[str, int] = {
    "build_started": 2,
    "build_progress_milestone": 1,
    "build_completed": 3,
    "build_failed": 4,
    "build_cancelled": 2,
    "important_file_generated": 1,
}


@dataclass
class LedgerOutcome:
    """Result of recording and/or applying a ledger event.

    Attributes:
        event_id: ID of the ledger entry.
        project_id: Project the event belongs to.
        event_type: Event kind value.
        applied: True if the event was applied to project state.
        out_of_order: True if the ordering guard skipped the event.
        deferred: True if application was queued as a process_webhook task.
        transition: New status value when a transition was applied.
        retry_scheduled: True if a build failure scheduled a pipeline retry.
    """

    event_id: int
    project_id: int
    event_type: str
    applied: bool = False
    out_of_order: bool = False
    deferred: bool = False
    transition: str | None = None
    retry_scheduled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "project_id": self.project_id,
            "event_type": self.event_type,
            "applied": self.applied,
            "out_of_order": self.out_of_order,
            "deferred": self.deferred,
            "transition": self.transition,
            "retry_scheduled": self.retry_scheduled,
        }


@dataclass
class _Application:
    transition: TransitionResult | None = None
    retry_scheduled: bool = False
    broadcasts: list[BroadcastEvent] = field(default_factory=list)


class BuildEventLedger:
    """Records build events and applies accepted ones to projects.

    Attributes:
        session_factory: Factory for short-lived database sessions.
        state_machine: Guards project transitions.
        enqueue: Queue insert joined to the caller's session
            (``TaskQueueManager.enqueue``).
        fanout: Broadcast fan-out used after commits.
        config: Pipeline settings (milestones, build retry policy).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: ProjectStateMachine,
        enqueue: Callable[..., Any],
        fanout: BroadcastFanout,
        config: PipelineConfig,
        store_retry_attempts: int = 3,
    ) -> None:
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.enqueue = enqueue
        self.fanout = fanout
        self.config = config
        self.store_retry_attempts = store_retry_attempts
        self.logger = logger.bind(component="BuildEventLedger")

    async def record_event(
        self,
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
        """Append an event inside the caller's transaction without applying it."""
        return await append_event(
            session,
            project_id=project_id,
            event_type=event_type,
            build_ref=build_ref,
            event_data=event_data,
            message=message,
            timestamp=timestamp,
            sequence_number=sequence_number,
            payload_digest=payload_digest,
            webhook_id=webhook_id,
        )

    async def record_and_apply(
        self,
        project_id: int,
        event_type: BuildEventType,
        build_ref: str | None = None,
        event_data: dict[str, Any] | None = None,
        message: str | None = None,
        timestamp: datetime | None = None,
        sequence_number: int | None = None,
        payload_digest: str | None = None,
        webhook_id: str | None = None,
        defer: bool = False,
    ) -> LedgerOutcome:
        """Append an event to the ledger, then apply it (or queue application).

        Args:
            project_id: Resolved project ID.
            event_type: Normalized event kind.
            build_ref: Build identifier from the notification.
            event_data: Event payload document.
            message: Optional human-readable message.
            timestamp: When the event happened.
            sequence_number: Ordering number issued by the build service.
            payload_digest: SHA-256 of the raw notification body.
            webhook_id: Delivery identifier.
            defer: Queue a process_webhook task instead of applying inline.

        Returns:
            LedgerOutcome describing what happened.
        """

        async def _record_and_apply() -> tuple[LedgerOutcome, list[BroadcastEvent]]:
            async with self.session_factory() as session:
                event = await self.record_event(
                    session,
                    project_id=project_id,
                    event_type=event_type,
                    build_ref=build_ref,
                    event_data=event_data,
                    message=message,
                    timestamp=timestamp,
                    sequence_number=sequence_number,
                    payload_digest=payload_digest,
                    webhook_id=webhook_id,
                )
                if defer:
                    await self.enqueue(
                        TaskType.process_webhook,
                        {"event_id": event.id, "project_id": project_id},
                        priority=6,
                        session=session,
                    )
                    await session.commit()
                    return (
                        LedgerOutcome(
                            event_id=event.id,
                            project_id=project_id,
                            event_type=event_type.value,
                            deferred=True,
                        ),
                        [],
                    )

                outcome, broadcasts = await self._apply_in_session(session, event)
                await session.commit()
                return outcome, broadcasts

        outcome, broadcasts = await with_store_retry(
            _record_and_apply,
            attempts=self.store_retry_attempts,
            operation_name="record_build_event",
        )
        await self._publish(broadcasts)
        return outcome

    async def apply_event(self, event_id: int) -> LedgerOutcome:
        """Apply a previously recorded event by ID (process_webhook tasks).

        Raises:
            ValidationError: If the event does not exist.
        """

        async def _apply() -> tuple[LedgerOutcome, list[BroadcastEvent]]:
            async with self.session_factory() as session:
                event = await get_event(session, event_id)
                if event is None:
                    raise ValidationError(f"Build event {event_id} not found")
                outcome, broadcasts = await self._apply_in_session(session, event)
                await session.commit()
                return outcome, broadcasts

        outcome, broadcasts = await with_store_retry(
            _apply,
            attempts=self.store_retry_attempts,
            operation_name="apply_build_event",
        )
        await self._publish(broadcasts)
        return outcome

    async def is_out_of_order(self, session: AsyncSession, event: BuildEvent) -> bool:
        """True when an earlier-recorded entry for the same build supersedes it."""
        if event.sequence_number is None:
            return False
        prior = await max_prior_sequence(session, event.project_id, event.build_ref, event.id)
        return prior is not None and prior >= event.sequence_number

    async def _publish(self, broadcasts: list[BroadcastEvent]) -> None:
        for broadcast in broadcasts:
            await self.fanout.publish(broadcast)

    async def _apply_in_session(
        self,
        session: AsyncSession,
        event: BuildEvent,
    ) -> tuple[LedgerOutcome, list[BroadcastEvent]]:
        outcome = LedgerOutcome(
            event_id=event.id,
            project_id=event.project_id,
            event_type=event.event_type.value,
        )

        if await self.is_out_of_order(session, event):
            self.logger.warning(
                "out_of_order_event_ignored",
                event_id=event.id,
                project_id=event.project_id,
                build_ref=event.build_ref,
                event_type=event.event_type.value,
                sequence_number=event.sequence_number,
            )
            outcome.out_of_order = True
            return outcome, []

        project = await get_project(session, event.project_id)
        if project is None:
            raise ProjectNotFoundError(event.project_id)

        handler = self._handlers[event.event_type]
        application = await handler(self, session, project, event)

        outcome.applied = True
        outcome.retry_scheduled = application.retry_scheduled
        if application.transition is not None and application.transition.applied:
            outcome.transition = application.transition.target.value

        broadcasts = [
            BroadcastEvent(
                event_type=event.event_type.value,
                project_id=event.project_id,
                data={
                    "build_ref": event.build_ref,
                    "event_id": event.id,
                    **(event.event_data or {}),
                },
                message=event.message,
                timestamp=event.timestamp,
            )
        ]
        if outcome.transition is not None:
            broadcasts.append(
                BroadcastEvent(
                    event_type="status_changed",
                    project_id=event.project_id,
                    data={
                        "status": outcome.transition,
                        "previous_status": application.transition.previous_status.value
                        if application.transition.previous_status
                        else None,
                    },
                    timestamp=event.timestamp,
                )
            )
        broadcasts.extend(application.broadcasts)
        return outcome, broadcasts

    async def _notify(
        self,
        session: AsyncSession,
        project: Project,
        notification_type: str,
        data: dict[str, Any],
    ) -> None:
        await self.enqueue(
            TaskType.send_notification,
            {
                "notification_type": notification_type,
                "project_id": project.id,
                "data": {"project_name": project.project_name, **data},
            },
            priority=NOTIFICATION_PRIORITIES.get(notification_type, 1),
            session=session,
        )

    # Event handlers

    async def _on_build_started(
        self, session: AsyncSession, project: Project, event: BuildEvent
    ) -> _Application:
        data = event.event_data or {}
        application = _Application()
        # building is entered by trigger_build; this event only stamps the start
        first_start = "build_started_at" not in (project.metadata_ or {})

        await self.state_machine.update_metadata(
            session,
            project.id,
            {
                "build_started_at": event.timestamp.isoformat(),
                "last_webhook_event": event.event_type.value,
                "last_webhook_timestamp": event.timestamp.isoformat(),
            },
            only_in=ACTIVE_STATES,
        )
        if first_start:
            await self._notify(
                session,
                project,
                "build_started",
                {
                    "build_id": event.build_ref or project.build_ref,
                    "estimated_duration": data.get("estimated_duration"),
                },
            )
        return application

    async def _on_build_progress(
        self, session: AsyncSession, project: Project, event: BuildEvent
    ) -> _Application:
        data = event.event_data or {}
        progress = _clamp_progress(data.get("progress", data.get("percentage")))
        previous = _clamp_progress((project.metadata_ or {}).get("latest_progress"))
        step = data.get("current_step") or data.get("step")

        updates: dict[str, Any] = {
            "latest_progress": progress,
            "current_step": step,
            "last_progress_update": event.timestamp.isoformat(),
            "last_webhook_event": event.event_type.value,
            "last_webhook_timestamp": event.timestamp.isoformat(),
        }
        if data.get("estimated_completion"):
            updates["estimated_completion"] = data["estimated_completion"]
        if data.get("details") is not None:
            updates["progress_details"] = data["details"]

        applied = await self.state_machine.update_metadata(
            session, project.id, updates, only_in=ACTIVE_STATES
        )
        if not applied:
            self.logger.info(
                "progress_ignored_for_inactive_project",
                project_id=project.id,
                status=project.status.value,
            )
            return _Application()

        crossed = next(
            (m for m in sorted(self.config.progress_milestones) if previous < m <= progress),
            None,
        )
        if crossed is not None:
            await self._notify(
                session,
                project,
                "build_progress_milestone",
                {
                    "progress": crossed,
                    "current_step": step,
                    "estimated_completion": data.get("estimated_completion"),
                },
            )
        return _Application()

    async def _on_build_completed(
        self, session: AsyncSession, project: Project, event: BuildEvent
    ) -> _Application:
        data = event.event_data or {}
        transition = await self.state_machine.mark_completed(session, project.id)
        if not transition.applied:
            return _Application(transition=transition)

        await self.state_machine.update_metadata(
            session,
            project.id,
            {
                "build_completed_at": event.timestamp.isoformat(),
                "final_progress": 100,
                "latest_progress": 100,
                "build_artifacts": data.get("artifacts") or {},
                "deployment_url": data.get("deployment_url"),
                "repository_url": data.get("repository_url"),
                "build_duration_ms": data.get("duration_ms"),
                "last_webhook_event": event.event_type.value,
                "last_webhook_timestamp": event.timestamp.isoformat(),
            },
        )
        await self._notify(
            session,
            project,
            "build_completed",
            {
                "deployment_url": data.get("deployment_url"),
                "repository_url": data.get("repository_url"),
                "build_artifacts": data.get("artifacts"),
                "build_duration": data.get("duration_ms"),
            },
        )
        return _Application(transition=transition)

    async def _on_build_failed(
        self, session: AsyncSession, project: Project, event: BuildEvent
    ) -> _Application:
        data = event.event_data or {}
        error_message = data.get("error") or data.get("message") or event.message or "Build failed"
        failure_step = data.get("failed_step") or data.get("step")

        transition = await self.state_machine.mark_failed(
            session, project.id, error_message, "build_failed"
        )
        if not transition.applied:
            return _Application(transition=transition)

        await self.state_machine.update_metadata(
            session,
            project.id,
            {
                "build_failed_at": event.timestamp.isoformat(),
                "failure_reason": error_message,
                "failure_step": failure_step,
                "failure_code": data.get("error_code"),
                "build_logs_url": data.get("logs_url"),
                "last_webhook_event": event.event_type.value,
                "last_webhook_timestamp": event.timestamp.isoformat(),
            },
        )
        await self._notify(
            session,
            project,
            "build_failed",
            {
                "error_message": error_message,
                "failure_step": failure_step,
                "failure_code": data.get("error_code"),
                "logs_url": data.get("logs_url"),
            },
        )

        application = _Application(transition=transition)
        retry_count = project.retry_count
        max_retries = self.config.max_build_retries

        if is_retryable(error_message) and retry_count < max_retries:
            reset = await self.state_machine.reset_for_retry(
                session, project.id, max_retries=max_retries, reason=error_message
            )
            if reset.applied:
                delay = min(
                    self.config.build_retry_max_seconds,
                    self.config.build_retry_base_seconds * (2**retry_count),
                )
                await self.enqueue(
                    TaskType.analyze_conversation,
                    {
                        "conversation_id": project.conversation_id,
                        "project_id": project.id,
                        "conversation": (project.metadata_ or {}).get("conversation", {}),
                        "is_retry": True,
                        "retry_count": retry_count + 1,
                        "retry_reason": error_message,
                        "original_failure_step": failure_step,
                    },
                    priority=4,
                    delay_seconds=delay,
                    session=session,
                )
                application.retry_scheduled = True
                application.broadcasts.append(
                    BroadcastEvent(
                        event_type="status_changed",
                        project_id=project.id,
                        data={"status": "analyzing", "previous_status": "failed", "retry": True},
                        timestamp=event.timestamp,
                    )
                )
                self.logger.info(
                    "build_retry_scheduled",
                    project_id=project.id,
                    retry_count=retry_count + 1,
                    delay_seconds=delay,
                    failure_reason=error_message,
                )
        elif retry_count >= max_retries:
            await self.state_machine.update_metadata(
                session,
                project.id,
                {
                    "permanently_failed": True,
                    "max_retries_exceeded": True,
                    "final_failure_reason": error_message,
                },
            )
            self.logger.warning(
                "build_permanently_failed",
                project_id=project.id,
                retry_count=retry_count,
                failure_reason=error_message,
            )
        return application

    async def _on_build_cancelled(
        self, session: AsyncSession, project: Project, event: BuildEvent
    ) -> _Application:
        data = event.event_data or {}
        reason = data.get("reason") or event.message or "Build cancelled"
        transition = await self.state_machine.cancel(session, project.id, reason)
        if not transition.applied:
            return _Application(transition=transition)

        await self.state_machine.update_metadata(
            session,
            project.id,
            {
                "build_cancelled_at": event.timestamp.isoformat(),
                "cancelled_by": data.get("cancelled_by"),
                "last_webhook_event": event.event_type.value,
                "last_webhook_timestamp": event.timestamp.isoformat(),
            },
        )
        await self._notify(
            session,
            project,
            "build_cancelled",
            {"cancellation_reason": reason, "cancelled_by": data.get("cancelled_by")},
        )
        return _Application(transition=transition)

    async def _on_file_generated(
        self, session: AsyncSession, project: Project, event: BuildEvent
    ) -> _Application:
        data = event.event_data or {}
        file_path = data.get("file_path")
        entry = {
            "file_path": file_path,
            "file_type": data.get("file_type"),
            "generated_at": event.timestamp.isoformat(),
            "size_bytes": data.get("size_bytes"),
        }
        files = list((project.metadata_ or {}).get("generated_files", []))
        if entry in files:
            return _Application()
        files.append(entry)

        await self.state_machine.update_metadata(
            session,
            project.id,
            {
                "generated_files": files[-MAX_GENERATED_FILES:],
                "last_file_generated": file_path,
                "last_webhook_event": event.event_type.value,
                "last_webhook_timestamp": event.timestamp.isoformat(),
            },
        )
        if file_path and any(name in file_path for name in IMPORTANT_FILES):
            await self._notify(
                session,
                project,
                "important_file_generated",
                {"file_path": file_path, "file_type": data.get("file_type")},
            )
        return _Application()

    async def _on_log_entry(
        self, session: AsyncSession, project: Project, event: BuildEvent
    ) -> _Application:
        data = event.event_data or {}
        level = str(data.get("level") or "").lower()
        if level not in ("warn", "warning", "error"):
            return _Application()

        entry = {
            "level": level,
            "message": data.get("message") or event.message,
            "timestamp": event.timestamp.isoformat(),
            "component": data.get("component"),
        }
        logs = list((project.metadata_ or {}).get("recent_logs", []))
        if entry in logs:
            return _Application()
        logs.append(entry)

        if level == "error":
            self.logger.warning(
                "build_error_logged",
                project_id=project.id,
                error_message=entry["message"],
                build_component=entry["component"],
            )
        await self.state_machine.update_metadata(
            session,
            project.id,
            {
                "recent_logs": logs[-MAX_RECENT_LOGS:],
                "last_webhook_event": event.event_type.value,
                "last_webhook_timestamp": event.timestamp.isoformat(),
            },
        )
        return _Application()

    _handlers = {
        BuildEventType.build_started: _on_build_started,
        BuildEventType.build_progress: _on_build_progress,
        BuildEventType.build_completed: _on_build_completed,
        BuildEventType.build_failed: _on_build_failed,
        BuildEventType.build_cancelled: _on_build_cancelled,
        BuildEventType.file_generated: _on_file_generated,
        BuildEventType.log_entry: _on_log_entry,
    }


def _clamp_progress(value: Any) -> int:
    try:
        progress = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, progress))
