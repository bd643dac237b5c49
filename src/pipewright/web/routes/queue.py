"""Queue endpoints: trigger a processing cycle and inspect queue counts.

An external scheduler calls ``POST /queue/process`` on a timer; cycles are
idempotent to re-invocation, so overlapping calls only compete for claims.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from pipewright.database.queries.queue import count_due_tasks, queue_stats
from pipewright.logging import get_logger
from pipewright.pipeline import Pipeline
from pipewright.web.dependencies import get_pipeline

logger = get_logger(__name__)


class QueueProcessRequest(BaseModel):
    """Optional overrides for one queue cycle."""

    batch_size: int | None = Field(default=None, ge=1, le=100)
    max_concurrency: int | None = Field(default=None, ge=1, le=50)


def create_queue_router() -> APIRouter:
    """Create the queue router.

    Routes:
        POST /queue/process - Run one queue cycle
        GET /queue/stats - Task counts by status
    """
    router = APIRouter(prefix="/queue", tags=["queue"])

    @router.post("/process")
    async def process_queue(
        request: QueueProcessRequest | None = None,
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> dict[str, Any]:
        request = request or QueueProcessRequest()
        result = await pipeline.queue.run_cycle(
            batch_size=request.batch_size,
            max_concurrency=request.max_concurrency,
        )
        return result.to_dict()

    @router.get("/stats")
    async def stats(
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> dict[str, Any]:
        async with pipeline.session_factory() as session:
            counts = await queue_stats(session)
            due = await count_due_tasks(session)
        return {"by_status": counts, "due": due, "enabled": pipeline.config.queue.enabled}

    return router
