"""Best-effort broadcast fan-out of pipeline state changes.

A BroadcastEvent is published to every configured channel concurrently:

- SubscriptionTableChannel writes a row to ``realtime_events`` for clients
  subscribed to database changes.
- ConnectionRegistryChannel pushes to in-process subscribers (SSE streams)
  held by a ConnectionRegistry owned by the application instance.
- RelayChannel posts a signed notification to an external relay.

Channel failures are logged and contained; publishing never raises. Events
are published only after the state they describe has been committed.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pipewright.database.models.base import utcnow
from pipewright.database.queries.realtime import insert_realtime_event
from pipewright.integrations.relay import NotificationRelay

logger = structlog.get_logger(__name__)

DEFAULT_CHANNEL = "project_updates"


@dataclass
class BroadcastEvent:
    """A state change pushed to subscribers.

    Attributes:
        event_type: Kind of change (e.g. ``status_changed``, ``build_progress``).
        project_id: Project the change belongs to, if any.
        data: Event-specific data.
        message: Optional human-readable message.
        timestamp: When the change happened.
        channel: Logical subscription channel name.
    """

    event_type: str
    project_id: int | None
    data: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    channel: str = DEFAULT_CHANNEL

    def to_dict(self) -> dict[str, Any]:
        """Convert the event to a JSON-serializable dictionary."""
        return {
            "event_type": self.event_type,
            "project_id": self.project_id,
            "data": self.data,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "channel": self.channel,
        }

    def to_sse(self) -> dict[str, str]:
        """Convert the event to the dict shape EventSourceResponse expects."""
        return {
            "event": self.event_type,
            "data": json.dumps(self.to_dict(), default=str),
        }


class BroadcastChannel(Protocol):
    """A destination for broadcast events."""

    name: str

    async def publish(self, event: BroadcastEvent) -> None: ...


class ConnectionRegistry:
    """Tracks live in-process subscribers keyed by project ID.

    Subscribers with ``project_id=None`` receive every event. Each subscriber
    has a bounded queue; events for a full queue are dropped rather than
    blocking the publisher.
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        self._subscribers: dict[int | None, list[asyncio.Queue[BroadcastEvent | None]]] = {}
        self._lock = asyncio.Lock()
        self._max_queue_size = max_queue_size
        self.logger = logger.bind(component="ConnectionRegistry")

    def connection_count(self, project_id: int | None = None) -> int:
        """Number of subscribers for a project, or all subscribers when None."""
        if project_id is None:
            return sum(len(queues) for queues in self._subscribers.values())
        return len(self._subscribers.get(project_id, []))

    async def subscribe(self, project_id: int | None = None) -> AsyncIterator[BroadcastEvent]:
        """Subscribe to events, yielding them as they arrive.

        Args:
            project_id: Only receive events for this project; None for all.

        Yields:
            BroadcastEvent objects as they are published.
        """
        queue: asyncio.Queue[BroadcastEvent | None] = asyncio.Queue(
            maxsize=self._max_queue_size
        )
        async with self._lock:
            self._subscribers.setdefault(project_id, []).append(queue)
        self.logger.info(
            "subscriber_connected",
            project_id=project_id,
            total_connections=self.connection_count(),
        )
        try:
            while True:
                event = await queue.get()
                if event is None:  # Shutdown signal
                    break
                yield event
        finally:
            async with self._lock:
                queues = self._subscribers.get(project_id, [])
                if queue in queues:
                    queues.remove(queue)
                if not queues:
                    self._subscribers.pop(project_id, None)
            self.logger.info(
                "subscriber_disconnected",
                project_id=project_id,
                total_connections=self.connection_count(),
            )

    async def publish(self, event: BroadcastEvent) -> int:
        """Deliver an event to matching subscribers.

        Returns:
            Number of subscribers the event was queued for.
        """
        async with self._lock:
            targets = list(self._subscribers.get(None, []))
            if event.project_id is not None:
                targets.extend(self._subscribers.get(event.project_id, []))

        delivered = 0
        for queue in targets:
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                self.logger.warning(
                    "subscriber_queue_full",
                    project_id=event.project_id,
                    event_type=event.event_type,
                )
        return delivered

    async def close(self) -> None:
        """Signal every subscriber to stop."""
        async with self._lock:
            queues = [q for group in self._subscribers.values() for q in group]
        for queue in queues:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                queue.get_nowait()
                queue.put_nowait(None)


class SubscriptionTableChannel:
    """Writes events to the realtime_events table."""

    name = "subscription_table"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def publish(self, event: BroadcastEvent) -> None:
        async with self.session_factory() as session:
            await insert_realtime_event(
                session,
                event_type=event.event_type,
                channel=event.channel,
                data=event.data,
                project_id=event.project_id,
                message=event.message,
                timestamp=event.timestamp,
            )
            await session.commit()


class ConnectionRegistryChannel:
    """Pushes events to in-process subscribers."""

    name = "connection_registry"

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def publish(self, event: BroadcastEvent) -> None:
        await self.registry.publish(event)


class RelayChannel:
    """Posts events to the external notification relay."""

    name = "relay"

    def __init__(self, relay: NotificationRelay) -> None:
        self.relay = relay

    async def publish(self, event: BroadcastEvent) -> None:
        delivered = await self.relay.send(event.event_type, event.to_dict())
        if not delivered:
            raise ConnectionError(f"Relay did not accept {event.event_type}")


class BroadcastFanout:
    """Publishes events to every channel concurrently, containing failures."""

    def __init__(self, channels: Sequence[BroadcastChannel] = ()) -> None:
        self.channels = list(channels)
        self.logger = logger.bind(component="BroadcastFanout")

    async def publish(self, event: BroadcastEvent) -> dict[str, bool]:
        """Publish an event to all channels.

        Args:
            event: The event to publish.

        Returns:
            Mapping of channel name to whether publishing succeeded.
        """
        if not self.channels:
            return {}

        results = await asyncio.gather(
            *(channel.publish(event) for channel in self.channels),
            return_exceptions=True,
        )

        outcome: dict[str, bool] = {}
        for channel, result in zip(self.channels, results):
            if isinstance(result, BaseException):
                outcome[channel.name] = False
                self.logger.warning(
                    "broadcast_channel_failed",
                    channel=channel.name,
                    event_type=event.event_type,
                    project_id=event.project_id,
                    error=str(result),
                )
            else:
                outcome[channel.name] = True

        self.logger.debug(
            "broadcast_published",
            event_type=event.event_type,
            project_id=event.project_id,
            channels=outcome,
        )
        return outcome
