"""Client for the AI analysis and plan generation service.

Prompt construction and response parsing live in the AI service; this client
only posts the inputs and returns the documents it produces.
"""

from __future__ import annotations

from typing import Any

import httpx

from pipewright.config import AIServiceConfig
from pipewright.integrations.base import ServiceClient


class AIServiceClient(ServiceClient):
    """Calls ``POST {url}/analyze`` and ``POST {url}/plan``."""

    service_name = "ai_service"

    @classmethod
    def from_config(
        cls,
        config: AIServiceConfig,
        client: httpx.AsyncClient | None = None,
    ) -> AIServiceClient:
        return cls(
            base_url=config.url,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
            client=client,
        )

    async def analyze_conversation(
        self,
        conversation_id: str,
        conversation: dict[str, Any],
    ) -> dict[str, Any]:
        """Produce a requirements analysis for a finished conversation.

        Args:
            conversation_id: Source conversation identifier.
            conversation: Conversation payload (transcript, summary, metadata).

        Returns:
            The analysis document. It is expected to carry ``project_name``
            (or ``projectName``) and ``description``.
        """
        self.logger.info("analysis_requested", conversation_id=conversation_id)
        return await self._post_json(
            "/analyze",
            {"conversation_id": conversation_id, "conversation": conversation},
        )

    async def generate_plan(
        self,
        project_id: int,
        project_name: str,
        analysis: dict[str, Any],
    ) -> dict[str, Any]:
        """Produce a build plan from an analysis.

        Args:
            project_id: Project the plan is for.
            project_name: Human-readable project name.
            analysis: Analysis document stored on the project.

        Returns:
            The plan document (``features`` plus ``tech_stack``/``techStack``).
        """
        self.logger.info("plan_requested", project_id=project_id)
        return await self._post_json(
            "/plan",
            {
                "project_id": project_id,
                "project_name": project_name,
                "analysis": analysis,
            },
        )
