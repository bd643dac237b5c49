"""End-to-end pipeline tests through the HTTP API.

A conversation webhook starts the pipeline, queue cycles are driven through
``POST /queue/process`` the way an external scheduler would, and the build
service reports back through ``POST /webhooks/build``. The AI and build
services are in-process fakes.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest
from httpx import AsyncClient

from pipewright.database.models.build_event import BuildEventType
from pipewright.database.models.queued_task import QueueStatus, TaskType
from pipewright.database.queries.build_event import list_events
from pipewright.database.queries.project import get_project_by_conversation
from pipewright.database.queries.queue import list_tasks
from pipewright.orchestrator.broadcast import BroadcastEvent
from pipewright.pipeline import Pipeline

HeaderFactory = Callable[..., dict[str, str]]


def _body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()


async def _start_conversation(
    client: AsyncClient,
    conversation_headers: HeaderFactory,
    conversation_id: str = "conv_123",
) -> dict[str, Any]:
    body = _body(
        {
            "event_type": "conversation_ended",
            "conversation_id": conversation_id,
            "data": {"transcript": [{"role": "user", "content": "I need a shop"}]},
        }
    )
    response = await client.post(
        "/webhooks/conversation", content=body, headers=conversation_headers(body)
    )
    assert response.status_code == 200
    return response.json()


async def _process(client: AsyncClient) -> dict[str, Any]:
    response = await client.post("/queue/process")
    assert response.status_code == 200
    return response.json()


class TestHappyPath:
    """Test a conversation that becomes a completed build."""

    @pytest.mark.asyncio
    async def test_conversation_to_completed_build(
        self,
        async_client: AsyncClient,
        pipeline: Pipeline,
        fake_services: Any,
        conversation_headers: HeaderFactory,
        build_headers: HeaderFactory,
    ) -> None:
        """conv_123 moves through every stage and completes with 2 ledger entries."""
        received: list[BroadcastEvent] = []

        async def collect() -> None:
            async for event in pipeline.registry.subscribe():
                received.append(event)

        collector = asyncio.create_task(collect())
        while pipeline.registry.connection_count() == 0:
            await asyncio.sleep(0)

        started = await _start_conversation(async_client, conversation_headers)
        assert started["action"] == "pipeline_started"

        # analyze -> plan -> trigger, one stage per cycle
        for expected_status in ("planning", "ready_to_build", "building"):
            cycle = await _process(async_client)
            assert cycle["succeeded"] == 1
            projects = (await async_client.get("/projects/")).json()
            assert [p["status"] for p in projects] == [expected_status]

        project = projects[0]
        assert project["conversation_id"] == "conv_123"
        assert project["project_name"] == "Shop"
        assert project["build_ref"] == "b1"
        assert project["external_project_ref"] == "p1"

        body = _body({"build_id": "b1", "event_type": "build_completed", "data": {}})
        response = await async_client.post(
            "/webhooks/build", content=body, headers=build_headers(body)
        )
        assert response.status_code == 200
        assert response.json()["transition"] == "completed"

        detail = (await async_client.get(f"/projects/{project['id']}")).json()
        assert detail["status"] == "completed"
        assert detail["completed_at"] is not None

        events = (await async_client.get(f"/projects/{project['id']}/events")).json()
        assert [e["event_type"] for e in events] == ["build_started", "build_completed"]
        assert events[0]["message"] == "Build initiated"

        assert fake_services.calls("/analyze") == 1
        assert fake_services.calls("/plan") == 1
        assert fake_services.calls("/builds") == 1
        build_request = next(body for path, body in fake_services.requests if path == "/builds")
        assert build_request["webhook_url"] == "http://pipewright.test/webhooks/build"
        assert build_request["metadata"]["conversation_id"] == "conv_123"

        await pipeline.registry.close()
        await asyncio.wait_for(collector, timeout=1)
        statuses = [e.data["status"] for e in received if e.event_type == "status_changed"]
        assert statuses == ["planning", "ready_to_build", "building", "completed"]

    @pytest.mark.asyncio
    async def test_notifications_are_delivered(
        self,
        async_client: AsyncClient,
        pipeline: Pipeline,
        conversation_headers: HeaderFactory,
    ) -> None:
        """The build_started notification queued by the trigger is processed."""
        await _start_conversation(async_client, conversation_headers)
        for _ in range(4):
            await _process(async_client)

        async with pipeline.session_factory() as session:
            tasks = await list_tasks(session, limit=100)
        notifications = [t for t in tasks if t.task_type == TaskType.send_notification]
        assert len(notifications) == 1
        assert notifications[0].payload["notification_type"] == "build_started"
        assert notifications[0].status == QueueStatus.completed

    @pytest.mark.asyncio
    async def test_duplicate_conversation_webhook(
        self,
        async_client: AsyncClient,
        conversation_headers: HeaderFactory,
    ) -> None:
        """A second notification for an analyzed conversation starts nothing new."""
        await _start_conversation(async_client, conversation_headers)
        await _process(async_client)

        second = await _start_conversation(async_client, conversation_headers)

        assert second["action"] == "already_exists"
        stats = (await async_client.get("/queue/stats")).json()
        assert stats["by_status"]["pending"] == 1


class TestFailurePaths:
    """Test failures at each stage."""

    @pytest.mark.asyncio
    async def test_transient_ai_failure_is_retried(
        self,
        async_client: AsyncClient,
        pipeline: Pipeline,
        fake_services: Any,
        conversation_headers: HeaderFactory,
    ) -> None:
        """A 503 from the AI service defers the analysis without creating a project."""
        fake_services.status_codes["/analyze"] = 503
        await _start_conversation(async_client, conversation_headers)

        cycle = await _process(async_client)

        assert cycle["retried"] == 1
        assert (await async_client.get("/projects/")).json() == []
        async with pipeline.session_factory() as session:
            tasks = await list_tasks(session)
        assert tasks[0].status == QueueStatus.pending
        assert tasks[0].retry_count == 1
        assert tasks[0].next_retry_at is not None

    @pytest.mark.asyncio
    async def test_invalid_plan_fails_project(
        self,
        async_client: AsyncClient,
        pipeline: Pipeline,
        fake_services: Any,
        conversation_headers: HeaderFactory,
    ) -> None:
        """A plan without features fails the project permanently."""
        fake_services.plan = {"tech_stack": {"frontend": "react"}}
        await _start_conversation(async_client, conversation_headers)

        await _process(async_client)
        cycle = await _process(async_client)

        assert cycle["failed"] == 1
        async with pipeline.session_factory() as session:
            project = await get_project_by_conversation(session, "conv_123")
        assert project.status.value == "failed"
        assert project.error_kind == "validation_error"
        assert fake_services.calls("/builds") == 0

    @pytest.mark.asyncio
    async def test_build_failure_schedules_pipeline_retry(
        self,
        async_client: AsyncClient,
        pipeline: Pipeline,
        conversation_headers: HeaderFactory,
        build_headers: HeaderFactory,
    ) -> None:
        """A transient build failure sends the project back to analysis."""
        await _start_conversation(async_client, conversation_headers)
        for _ in range(3):
            await _process(async_client)

        body = _body(
            {
                "build_id": "b1",
                "event_type": "build.failed",
                "data": {"error": "Gateway timeout while pushing image"},
            }
        )
        response = await async_client.post(
            "/webhooks/build", content=body, headers=build_headers(body)
        )

        assert response.status_code == 200
        assert response.json()["retry_scheduled"] is True
        async with pipeline.session_factory() as session:
            project = await get_project_by_conversation(session, "conv_123")
            events = await list_events(session, project.id)
        assert project.status.value == "analyzing"
        assert project.retry_count == 1
        assert project.build_ref is None
        assert [e.event_type for e in events] == [
            BuildEventType.build_started,
            BuildEventType.build_failed,
        ]
