"""Pipeline assembly for Pipewright.

create_pipeline wires the task queue, state machine, ledger, broadcast
fan-out, executors and webhook ingestors around one session factory. The web
app and the CLI both build their runtime through it; tests inject fake
collaborators through its keyword arguments.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pipewright.config import PipewrightConfig
from pipewright.database.models.queued_task import TaskType
from pipewright.integrations.ai_service import AIServiceClient
from pipewright.integrations.build_service import BuildServiceClient
from pipewright.integrations.relay import NotificationRelay
from pipewright.logging import get_logger
from pipewright.orchestrator.broadcast import (
    BroadcastChannel,
    BroadcastEvent,
    BroadcastFanout,
    ConnectionRegistry,
    ConnectionRegistryChannel,
    RelayChannel,
    SubscriptionTableChannel,
)
from pipewright.orchestrator.executors import PipelineExecutors
from pipewright.orchestrator.ledger import BuildEventLedger
from pipewright.orchestrator.queue_manager import TaskQueueManager
from pipewright.orchestrator.state_machine import ProjectStateMachine
from pipewright.webhooks.ingestor import (
    ANALYZE_PRIORITY,
    BuildWebhookIngestor,
    ConversationWebhookIngestor,
)

logger = get_logger(__name__)


@dataclass
class Pipeline:
    """Runtime container for one Pipewright instance."""

    config: PipewrightConfig
    session_factory: async_sessionmaker[AsyncSession]
    state_machine: ProjectStateMachine
    queue: TaskQueueManager
    ledger: BuildEventLedger
    registry: ConnectionRegistry
    fanout: BroadcastFanout
    executors: PipelineExecutors
    conversation_ingestor: ConversationWebhookIngestor
    build_ingestor: BuildWebhookIngestor
    ai_client: AIServiceClient
    build_client: BuildServiceClient
    relay: NotificationRelay

    async def close(self) -> None:
        """Stop SSE subscribers and release HTTP clients."""
        await self.registry.close()
        await self.ai_client.close()
        await self.build_client.close()
        await self.relay.close()

    async def retry_project(self, project_id: int, reason: str = "manual_retry") -> dict[str, Any]:
        """Reset a failed project and queue a fresh analysis.

        Args:
            project_id: Project to retry.
            reason: Recorded with the archived attempt.

        Returns:
            Dict with ``applied``, ``status`` and, when applied, ``task_id``
            or, when not, ``reason``.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        async with self.session_factory() as session:
            result = await self.state_machine.reset_for_retry(session, project_id, reason=reason)
            task_id = None
            if result.applied:
                metadata = result.project.metadata_ or {}
                task_id = await self.queue.enqueue(
                    TaskType.analyze_conversation,
                    {
                        "conversation_id": result.project.conversation_id,
                        "project_id": project_id,
                        "conversation": metadata.get("conversation", {}),
                        "is_retry": True,
                        "retry_count": result.project.retry_count,
                        "retry_reason": reason,
                    },
                    priority=ANALYZE_PRIORITY,
                    session=session,
                )
            await session.commit()

        status = result.project.status.value
        if not result.applied:
            return {"applied": False, "status": status, "reason": result.reason}

        await self.fanout.publish(
            BroadcastEvent(
                event_type="status_changed",
                project_id=project_id,
                data={"status": status, "previous_status": "failed", "retry": True},
            )
        )
        return {"applied": True, "status": status, "task_id": task_id}

    async def cancel_project(self, project_id: int, reason: str | None = None) -> dict[str, Any]:
        """Cancel an active or failed project.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        async with self.session_factory() as session:
            result = await self.state_machine.cancel(session, project_id, reason)
            await session.commit()

        status = result.project.status.value
        if not result.applied:
            return {"applied": False, "status": status, "reason": result.reason}

        await self.fanout.publish(
            BroadcastEvent(
                event_type="status_changed",
                project_id=project_id,
                data={
                    "status": status,
                    "previous_status": result.previous_status.value
                    if result.previous_status
                    else None,
                    "reason": reason,
                },
            )
        )
        return {"applied": True, "status": status}


def create_pipeline(
    config: PipewrightConfig,
    session_factory: async_sessionmaker[AsyncSession],
    ai_client: AIServiceClient | None = None,
    build_client: BuildServiceClient | None = None,
    relay: NotificationRelay | None = None,
    rng: random.Random | None = None,
) -> Pipeline:
    """Assemble a Pipeline from configuration.

    Args:
        config: Root configuration.
        session_factory: Session factory bound to the pipeline's database.
        ai_client: Override for the AI service client.
        build_client: Override for the build service client.
        relay: Override for the notification relay.
        rng: Random source for retry jitter.

    Returns:
        A fully wired Pipeline.
    """
    ai_client = ai_client or AIServiceClient.from_config(config.ai_service)
    build_client = build_client or BuildServiceClient.from_config(config.build_service)
    relay = relay or NotificationRelay.from_config(config.broadcast)

    state_machine = ProjectStateMachine(config.pipeline.max_project_retries)
    queue = TaskQueueManager(session_factory, config.queue, state_machine, rng=rng)

    registry = ConnectionRegistry()
    channels: list[BroadcastChannel] = [ConnectionRegistryChannel(registry)]
    if config.broadcast.subscription_table_enabled:
        channels.append(SubscriptionTableChannel(session_factory))
    if relay.enabled:
        channels.append(RelayChannel(relay))
    fanout = BroadcastFanout(channels)

    ledger = BuildEventLedger(
        session_factory,
        state_machine,
        queue.enqueue,
        fanout,
        config.pipeline,
        store_retry_attempts=config.queue.store_retry_attempts,
    )
    executors = PipelineExecutors(
        session_factory,
        queue,
        state_machine,
        ledger,
        fanout,
        ai_client,
        build_client,
        relay,
    )
    for task_type, executor in executors.table().items():
        queue.register(task_type, executor)

    conversation_ingestor = ConversationWebhookIngestor(
        session_factory,
        config.webhooks,
        config.pipeline,
        queue,
        state_machine,
    )
    build_ingestor = BuildWebhookIngestor(session_factory, config.webhooks, ledger)

    logger.info(
        "pipeline_created",
        broadcast_channels=[channel.name for channel in channels],
        executors=sorted(t.value for t in queue.executors),
    )

    return Pipeline(
        config=config,
        session_factory=session_factory,
        state_machine=state_machine,
        queue=queue,
        ledger=ledger,
        registry=registry,
        fanout=fanout,
        executors=executors,
        conversation_ingestor=conversation_ingestor,
        build_ingestor=build_ingestor,
        ai_client=ai_client,
        build_client=build_client,
        relay=relay,
    )
