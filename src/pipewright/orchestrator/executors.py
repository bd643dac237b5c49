"""Task executors for the Pipewright pipeline.

Each executor takes a claimed QueuedTask, performs one pipeline stage and
returns a small result document, or raises. Executors are idempotent: they
check the project's status (and the "already triggered" build reference)
before calling out, and commit a stage's transition together with the next
stage's queue entry. Network calls are never made while a transaction is open.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pipewright.database.models.base import utcnow
from pipewright.database.models.build_event import BuildEventType
from pipewright.database.models.project import ProjectStatus
from pipewright.database.models.queued_task import QueuedTask, TaskType
from pipewright.database.queries.project import get_project, get_project_by_conversation
from pipewright.errors import ProjectNotFoundError, RetryableExternalError, ValidationError
from pipewright.integrations.ai_service import AIServiceClient
from pipewright.integrations.build_service import BuildServiceClient
from pipewright.integrations.relay import NotificationRelay
from pipewright.orchestrator.broadcast import BroadcastEvent, BroadcastFanout
from pipewright.orchestrator.ledger import BuildEventLedger
from pipewright.orchestrator.state_machine import ProjectStateMachine

if TYPE_CHECKING:
    from pipewright.orchestrator.queue_manager import Executor, TaskQueueManager

logger = structlog.get_logger(__name__)

PLAN_PRIORITY = 4
BUILD_PRIORITY = 3


def _require(payload: dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise ValidationError(f"Task payload is missing {key}")
    return value


def validate_plan(plan: dict[str, Any]) -> None:
    """Check that a plan carries features and a tech stack.

    Raises:
        ValidationError: If either is missing.
    """
    features = plan.get("features")
    if not isinstance(features, list) or not features:
        raise ValidationError("Plan is missing features")
    tech_stack = plan.get("tech_stack") or plan.get("techStack")
    if not isinstance(tech_stack, dict) or not tech_stack:
        raise ValidationError("Plan is missing a tech stack")


class PipelineExecutors:
    """Executors for every task type, sharing the pipeline's collaborators.

    Attributes:
        session_factory: Factory for short-lived database sessions.
        queue: Task queue manager used to enqueue follow-up stages.
        state_machine: Guards project transitions.
        ledger: Build event ledger.
        fanout: Broadcast fan-out.
        ai_client: AI analysis / plan service client.
        build_client: Build service client.
        relay: Notification relay for send_notification tasks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: TaskQueueManager,
        state_machine: ProjectStateMachine,
        ledger: BuildEventLedger,
        fanout: BroadcastFanout,
        ai_client: AIServiceClient,
        build_client: BuildServiceClient,
        relay: NotificationRelay,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.state_machine = state_machine
        self.ledger = ledger
        self.fanout = fanout
        self.ai_client = ai_client
        self.build_client = build_client
        self.relay = relay
        self.logger = logger.bind(component="PipelineExecutors")

    def table(self) -> dict[TaskType, Executor]:
        """Dispatch table from task type to executor."""
        return {
            TaskType.analyze_conversation: self.analyze_conversation,
            TaskType.generate_plan: self.generate_plan,
            TaskType.trigger_build: self.trigger_build,
            TaskType.process_webhook: self.process_webhook,
            TaskType.send_notification: self.send_notification,
        }

    async def _status_changed(
        self,
        project_id: int,
        status: ProjectStatus,
        previous: ProjectStatus | None,
        **data: Any,
    ) -> None:
        await self.fanout.publish(
            BroadcastEvent(
                event_type="status_changed",
                project_id=project_id,
                data={
                    "status": status.value,
                    "previous_status": previous.value if previous else None,
                    **data,
                },
            )
        )

    async def analyze_conversation(self, task: QueuedTask) -> dict[str, Any]:
        """Analyze a finished conversation and create/advance its project.

        Payload: ``conversation_id`` (required), ``conversation`` (document
        handed to the AI service).
        """
        payload = task.payload or {}
        conversation_id = str(_require(payload, "conversation_id"))
        conversation = payload.get("conversation") or {}

        async with self.session_factory() as session:
            existing = await get_project_by_conversation(session, conversation_id)
        if existing is not None and existing.status != ProjectStatus.analyzing:
            self.logger.info(
                "analysis_skipped",
                project_id=existing.id,
                status=existing.status.value,
            )
            return {"status": "skipped", "project_id": existing.id}

        analysis = await self.ai_client.analyze_conversation(conversation_id, conversation)
        project_name = analysis.get("project_name") or analysis.get("projectName")
        if not project_name:
            raise ValidationError("Analysis is missing a project name")

        async with self.session_factory() as session:
            result = await self.state_machine.begin_planning(
                session,
                conversation_id=conversation_id,
                project_name=str(project_name),
                description=analysis.get("description"),
                analysis=analysis,
                metadata={
                    "conversation": conversation,
                    "analysis_timestamp": utcnow().isoformat(),
                },
            )
            if result.applied:
                await self.queue.enqueue(
                    TaskType.generate_plan,
                    {"project_id": result.project.id},
                    priority=PLAN_PRIORITY,
                    session=session,
                )
            await session.commit()

        project_id = result.project.id
        if not result.applied:
            return {"status": "skipped", "project_id": project_id, "reason": result.reason}

        await self._status_changed(
            project_id,
            ProjectStatus.planning,
            ProjectStatus.analyzing,
            project_name=str(project_name),
        )
        return {"status": "analysis_complete", "project_id": project_id}

    async def generate_plan(self, task: QueuedTask) -> dict[str, Any]:
        """Generate and store a build plan for a project in planning.

        Payload: ``project_id``.
        """
        project_id = int(_require(task.payload or {}, "project_id"))

        async with self.session_factory() as session:
            project = await get_project(session, project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if project.status != ProjectStatus.planning:
            return {"status": "skipped", "project_id": project_id, "reason": project.status.value}

        plan = await self.ai_client.generate_plan(
            project.id, project.project_name, project.analysis or {}
        )
        validate_plan(plan)

        async with self.session_factory() as session:
            result = await self.state_machine.mark_ready_to_build(session, project_id, plan)
            if result.applied:
                await self.queue.enqueue(
                    TaskType.trigger_build,
                    {"project_id": project_id},
                    priority=BUILD_PRIORITY,
                    session=session,
                )
            await session.commit()

        if not result.applied:
            return {"status": "skipped", "project_id": project_id, "reason": result.reason}

        await self._status_changed(
            project_id,
            ProjectStatus.ready_to_build,
            ProjectStatus.planning,
            features_count=len(plan["features"]),
        )
        return {"status": "plan_ready", "project_id": project_id}

    async def trigger_build(self, task: QueuedTask) -> dict[str, Any]:
        """Start the external build for a project in ready_to_build.

        Payload: ``project_id``. The build service's identifiers are stored,
        the project moves to building, and an implicit ``build_started`` entry
        is appended to the ledger, all in one transaction.
        """
        project_id = int(_require(task.payload or {}, "project_id"))

        async with self.session_factory() as session:
            project = await get_project(session, project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if project.build_ref:
            self.logger.info("build_already_triggered", project_id=project_id, build_ref=project.build_ref)
            return {"status": "already_triggered", "build_ref": project.build_ref}
        if project.status != ProjectStatus.ready_to_build:
            return {"status": "skipped", "project_id": project_id, "reason": project.status.value}
        if not project.plan:
            raise ValidationError(f"Project {project_id} has no plan")

        trigger = await self.build_client.trigger_build(project, project.plan)

        async with self.session_factory() as session:
            result = await self.state_machine.mark_building(
                session, project_id, trigger.build_id, trigger.project_id
            )
            if not result.applied:
                await session.commit()
                self.logger.warning(
                    "build_trigger_not_recorded",
                    project_id=project_id,
                    build_ref=trigger.build_id,
                    reason=result.reason,
                )
                return {"status": result.reason or "skipped", "project_id": project_id}

            await self.state_machine.update_metadata(
                session,
                project_id,
                {
                    "build_triggered_at": utcnow().isoformat(),
                    "estimated_completion": trigger.estimated_completion,
                },
            )
            await self.ledger.record_event(
                session,
                project_id=project_id,
                event_type=BuildEventType.build_started,
                build_ref=trigger.build_id,
                event_data={
                    "external_project_ref": trigger.project_id,
                    "estimated_completion": trigger.estimated_completion,
                },
                message="Build initiated",
            )
            await self.queue.enqueue(
                TaskType.send_notification,
                {
                    "notification_type": "build_started",
                    "project_id": project_id,
                    "data": {
                        "project_name": project.project_name,
                        "build_id": trigger.build_id,
                        "estimated_completion": trigger.estimated_completion,
                    },
                },
                priority=2,
                session=session,
            )
            await session.commit()

        await self._status_changed(
            project_id,
            ProjectStatus.building,
            ProjectStatus.ready_to_build,
            build_ref=trigger.build_id,
        )
        return {
            "status": "build_triggered",
            "build_ref": trigger.build_id,
            "external_project_ref": trigger.project_id,
        }

    async def process_webhook(self, task: QueuedTask) -> dict[str, Any]:
        """Apply a recorded build event. Payload: ``event_id``."""
        event_id = int(_require(task.payload or {}, "event_id"))
        outcome = await self.ledger.apply_event(event_id)
        return outcome.to_dict()

    async def send_notification(self, task: QueuedTask) -> dict[str, Any]:
        """Deliver a notification through the relay.

        Payload: ``notification_type``, ``project_id``, ``data``.

        Raises:
            RetryableExternalError: If the relay did not accept it.
        """
        payload = task.payload or {}
        notification_type = str(_require(payload, "notification_type"))
        delivered = await self.relay.send(
            notification_type,
            {
                "project_id": payload.get("project_id"),
                "notification_type": notification_type,
                "data": payload.get("data") or {},
            },
        )
        if not delivered:
            raise RetryableExternalError(
                f"Notification {notification_type} was not delivered",
                service="relay",
            )
        return {"status": "delivered", "notification_type": notification_type}
