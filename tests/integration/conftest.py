"""Pytest fixtures for integration tests.

Provides a file-backed SQLite database, a fully wired pipeline whose AI and
build service clients talk to in-process fake services, and an HTTP client
for the FastAPI app. Production runs on PostgreSQL; the same models and
queries run on SQLite through the portable column types.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pipewright.config import (
    DatabaseConfig,
    PipelineConfig,
    PipewrightConfig,
    QueueConfig,
    WebhookConfig,
)
from pipewright.database.connection import get_engine, get_session_factory
from pipewright.database.models.base import Base
from pipewright.integrations.ai_service import AIServiceClient
from pipewright.integrations.build_service import BuildServiceClient
from pipewright.integrations.relay import NotificationRelay
from pipewright.pipeline import Pipeline, create_pipeline
from pipewright.web.app import create_app

CONVERSATION_SECRET = "conv-secret"
BUILD_SECRET = "build-secret"

VALID_PLAN: dict[str, Any] = {
    "features": [
        {"name": "Catalog", "description": "Browse products", "priority": "high"},
        {"name": "Cart", "description": "Collect items", "priority": "medium"},
    ],
    "tech_stack": {"frontend": "react", "backend": "fastapi", "database": "postgres"},
    "timeline": {"estimated_hours": 40},
}


class FakeServices:
    """In-process stand-in for the AI and build services.

    Responses can be replaced per test; every request is recorded.
    """

    def __init__(self) -> None:
        self.analysis: dict[str, Any] = {
            "projectName": "Shop",
            "description": "An online shop",
            "requirements": ["catalog", "cart", "checkout"],
        }
        self.plan: dict[str, Any] = json.loads(json.dumps(VALID_PLAN))
        self.build: dict[str, Any] = {"build_id": "b1", "project_id": "p1"}
        self.status_codes: dict[str, int] = {}
        self.requests: list[tuple[str, dict[str, Any]]] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((path, json.loads(request.content or b"{}")))
        status_code = self.status_codes.get(path, 200)
        if status_code >= 400:
            return httpx.Response(status_code, json={"error": f"fake {status_code}"})
        if path == "/analyze":
            return httpx.Response(200, json=self.analysis)
        if path == "/plan":
            return httpx.Response(200, json=self.plan)
        if path == "/builds":
            return httpx.Response(201, json=self.build)
        return httpx.Response(404, json={"error": "unknown path"})

    def calls(self, path: str) -> int:
        return sum(1 for called, _ in self.requests if called == path)


def _sign(secret: str, body: bytes, timestamp: int | None = None) -> dict[str, str]:
    ts = str(timestamp if timestamp is not None else int(time.time()))
    signature = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return {"signature": f"sha256={signature}", "timestamp": ts}


def _conversation_headers(body: bytes, timestamp: int | None = None) -> dict[str, str]:
    signed = _sign(CONVERSATION_SECRET, body, timestamp)
    return {
        "Content-Type": "application/json",
        "X-Conversation-Signature": signed["signature"],
        "X-Conversation-Timestamp": signed["timestamp"],
    }


def _build_headers(body: bytes, timestamp: int | None = None) -> dict[str, str]:
    signed = _sign(BUILD_SECRET, body, timestamp)
    return {
        "Content-Type": "application/json",
        "X-Build-Signature": signed["signature"],
        "X-Build-Timestamp": signed["timestamp"],
    }


@pytest.fixture
def config(tmp_path: Path) -> PipewrightConfig:
    """Configuration pointed at a per-test SQLite file.

    Queue cycles run one task at a time without pauses or jitter so the
    order of stages is deterministic.
    """
    return PipewrightConfig(
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"),
        queue=QueueConfig(
            max_concurrency=1,
            inter_wave_pause_seconds=0,
            retry_jitter_ratio=0,
            retry_base_seconds=1,
        ),
        pipeline=PipelineConfig(max_build_retries=2, build_retry_base_seconds=60),
        webhooks=WebhookConfig(
            conversation_secret=CONVERSATION_SECRET,
            build_secret=BUILD_SECRET,
        ),
    )


@pytest_asyncio.fixture
async def engine(config: PipewrightConfig) -> AsyncGenerator[AsyncEngine, None]:
    """Create a SQLite async engine with every table created.

    Yields:
        Configured AsyncEngine instance.
    """
    test_engine = get_engine(config.database)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a new async database session for each test.

    The session is rolled back after the test completes.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_services() -> FakeServices:
    """Fake AI and build services shared by the pipeline's clients."""
    return FakeServices()


@pytest.fixture
def conversation_headers() -> Callable[..., dict[str, str]]:
    """Builds signed conversation webhook headers: ``(body, timestamp=None)``."""
    return _conversation_headers


@pytest.fixture
def build_headers() -> Callable[..., dict[str, str]]:
    """Builds signed build webhook headers: ``(body, timestamp=None)``."""
    return _build_headers


@pytest.fixture
def valid_plan() -> dict[str, Any]:
    """A plan with features and a tech stack."""
    return json.loads(json.dumps(VALID_PLAN))


@pytest_asyncio.fixture
async def pipeline(
    config: PipewrightConfig,
    session_factory: async_sessionmaker[AsyncSession],
    fake_services: FakeServices,
) -> AsyncGenerator[Pipeline, None]:
    """A fully wired pipeline backed by the fake services.

    The notification relay has no URL, so notifications count as delivered.

    Yields:
        Pipeline instance.
    """
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_services.handle))
    test_pipeline = create_pipeline(
        config,
        session_factory,
        ai_client=AIServiceClient("http://ai.test", client=http_client),
        build_client=BuildServiceClient(
            "http://build.test",
            client=http_client,
            callback_url="http://pipewright.test/webhooks/build",
        ),
        relay=NotificationRelay(),
    )

    yield test_pipeline

    await test_pipeline.close()
    await http_client.aclose()


@pytest_asyncio.fixture
async def async_client(pipeline: Pipeline) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for the FastAPI app.

    ASGITransport does not run the lifespan, so the pipeline is injected.

    Yields:
        AsyncClient configured to test the application.
    """
    app = create_app(pipeline.config, pipeline=pipeline)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
