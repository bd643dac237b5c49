"""Webhook receiver endpoints.

Both endpoints read the raw body (signatures are computed over the exact
bytes received) and delegate to the pipeline's ingestors. Rejections map to
400, 401 or 404; persistence failures answer 503 so the sender retries.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from pipewright.errors import StoreError
from pipewright.logging import get_logger
from pipewright.pipeline import Pipeline
from pipewright.web.dependencies import get_pipeline
from pipewright.webhooks.ingestor import IngestResult

logger = get_logger(__name__)


def _respond(result: IngestResult) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=result.to_dict())


def _store_unavailable(source: str, exc: StoreError) -> JSONResponse:
    logger.error("webhook_store_unavailable", source=source, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"status": "error", "reason": "store_unavailable"},
    )


def create_webhooks_router() -> APIRouter:
    """Create the webhooks router.

    Routes:
        POST /webhooks/conversation - Conversation platform notifications
        POST /webhooks/build - Build service notifications
    """
    router = APIRouter(prefix="/webhooks", tags=["webhooks"])

    @router.post("/conversation")
    async def conversation_webhook(
        request: Request,
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> JSONResponse:
        body = await request.body()
        try:
            result = await pipeline.conversation_ingestor.ingest(body, request.headers)
        except StoreError as exc:
            return _store_unavailable("conversation", exc)
        return _respond(result)

    @router.post("/build")
    async def build_webhook(
        request: Request,
        pipeline: Pipeline = Depends(get_pipeline),  # noqa: B008
    ) -> JSONResponse:
        body = await request.body()
        try:
            result = await pipeline.build_ingestor.ingest(body, request.headers)
        except StoreError as exc:
            return _store_unavailable("build", exc)
        return _respond(result)

    return router
