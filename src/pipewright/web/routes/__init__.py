"""FastAPI route definitions for the Pipewright HTTP surface."""

from __future__ import annotations

from pipewright.web.routes.events import create_events_router
from pipewright.web.routes.health import HealthResponse, ReadinessResponse, create_health_router
from pipewright.web.routes.projects import (
    BuildEventResponse,
    CancelRequest,
    ProjectResponse,
    create_projects_router,
)
from pipewright.web.routes.queue import QueueProcessRequest, create_queue_router
from pipewright.web.routes.webhooks import create_webhooks_router

__all__ = [
    "BuildEventResponse",
    "CancelRequest",
    "HealthResponse",
    "ProjectResponse",
    "QueueProcessRequest",
    "ReadinessResponse",
    "create_events_router",
    "create_health_router",
    "create_projects_router",
    "create_queue_router",
    "create_webhooks_router",
]
