"""Server-Sent Events endpoint streaming pipeline updates.

Subscribers attach to the pipeline's ConnectionRegistry, optionally scoped to
one project; every event published through the broadcast fan-out reaches
them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from pipewright.logging import get_logger
from pipewright.pipeline import Pipeline
from pipewright.web.dependencies import get_pipeline

logger = get_logger(__name__)

PING_SECONDS = 15


def create_events_router() -> APIRouter:
    """Create the events router with the /events/stream endpoint."""
    router = APIRouter(prefix="/events", tags=["events"])

    @router.get("/stream")
    async def stream_events(
        request: Request,
        project_id: int | None = None,
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> EventSourceResponse:
        """Stream broadcast events until the client disconnects.

        Args:
            request: Used for disconnection detection.
            project_id: Only stream events for this project.
        """
        registry = pipeline.registry

        async def event_generator() -> AsyncIterator[dict[str, str]]:
            async for event in registry.subscribe(project_id):
                if await request.is_disconnected():
                    break
                yield event.to_sse()

        return EventSourceResponse(event_generator(), ping=PING_SECONDS)

    return router
