"""Client for the external build service.

Formats a stored plan into the build service's request shape and triggers a
build. An idempotency key derived from the project and its retry attempt is
sent with every trigger so a call retried after a timeout does not start a
second build.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx

from pipewright.config import BuildServiceConfig
from pipewright.database.models.base import utcnow
from pipewright.database.models.project import Project
from pipewright.errors import RetryableExternalError, ValidationError
from pipewright.integrations.base import ServiceClient

PRIORITY_SCORES: dict[str, int] = {"high": 3, "medium": 2, "low": 1}


def priority_score(priority: Any) -> int:
    """Convert a feature priority label to its numeric score (default 2)."""
    if isinstance(priority, str):
        return PRIORITY_SCORES.get(priority.lower(), 2)
    return 2


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def estimate_completion(estimated_hours: float | None) -> str | None:
    """Estimate a completion date from planned hours.

    Assumes 8 working hours per day and 5 working days per week.
    """
    if not estimated_hours:
        return None
    working_days = math.ceil(estimated_hours / 8)
    weeks = math.ceil(working_days / 5)
    return (utcnow() + timedelta(weeks=weeks)).isoformat()


def format_build_request(
    plan: dict[str, Any],
    project: Project,
    callback_url: str | None = None,
) -> dict[str, Any]:
    """Translate a stored plan into the build service request body.

    Args:
        plan: Plan document produced by the AI service.
        project: Project being built.
        callback_url: Webhook URL the build service reports progress to.

    Returns:
        Request body for ``POST /builds``.

    Raises:
        ValidationError: If the plan has no features or no tech stack.
    """
    tech_stack = plan.get("tech_stack") or plan.get("techStack")
    features = plan.get("features")
    if not features or not isinstance(features, list):
        raise ValidationError("Plan has no features")
    if not isinstance(tech_stack, dict):
        raise ValidationError("Plan has no tech stack")

    architecture = plan.get("architecture")
    if isinstance(architecture, dict):
        architecture = architecture.get("type")
    timeline = plan.get("timeline")
    estimated_hours = timeline.get("estimated_hours") if isinstance(timeline, dict) else None

    return {
        "name": plan.get("name") or project.project_name,
        "description": plan.get("description") or project.description,
        "tech_stack": {
            "frontend": _first(tech_stack.get("frontend")),
            "backend": _first(tech_stack.get("backend")),
            "database": _first(tech_stack.get("database")),
        },
        "features": [
            {
                "name": feature.get("name"),
                "description": feature.get("description"),
                "priority": priority_score(feature.get("priority")),
            }
            for feature in features
            if isinstance(feature, dict)
        ],
        "architecture": architecture,
        "timeline": estimated_hours,
        "webhook_url": callback_url,
        "real_time_updates": True,
        "metadata": {
            "conversation_id": project.conversation_id,
            "project_id": project.id,
            "attempt": project.retry_count,
            "file_structure": plan.get("file_structure") or plan.get("fileStructure"),
            "dependencies": plan.get("dependencies"),
        },
    }


def idempotency_key(project: Project) -> str:
    """Key identifying one build attempt of a project."""
    return f"pipewright-{project.id}-{project.retry_count}"


@dataclass
class BuildTrigger:
    """Identifiers returned when a build is started.

    Attributes:
        build_id: Build identifier, stored as the project's build_ref.
        project_id: Build service project id (external_project_ref).
        estimated_completion: ISO timestamp estimate, when known.
        status: Initial status reported by the build service.
    """

    build_id: str
    project_id: str
    estimated_completion: str | None = None
    status: str = "initiated"


class BuildServiceClient(ServiceClient):
    """Calls ``POST {url}/builds`` to start a build."""

    service_name = "build_service"

    def __init__(self, *args: Any, callback_url: str | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.callback_url = callback_url

    @classmethod
    def from_config(
        cls,
        config: BuildServiceConfig,
        client: httpx.AsyncClient | None = None,
    ) -> BuildServiceClient:
        return cls(
            base_url=config.url,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
            client=client,
            callback_url=config.callback_url,
        )

    async def trigger_build(self, project: Project, plan: dict[str, Any]) -> BuildTrigger:
        """Start a build for a project's plan.

        Args:
            project: Project in ready_to_build.
            plan: The project's stored plan.

        Returns:
            BuildTrigger with the identifiers issued by the build service.

        Raises:
            ValidationError: If the plan cannot be formatted.
            RetryableExternalError: On transient failures or a response
                without build identifiers.
            PermanentExternalError: On rejected requests.
        """
        body = format_build_request(plan, project, self.callback_url)
        self.logger.info(
            "build_trigger_requested",
            project_id=project.id,
            feature_count=len(body["features"]),
        )
        data = await self._post_json(
            "/builds",
            body,
            headers={"Idempotency-Key": idempotency_key(project)},
        )

        build_id = data.get("build_id")
        external_id = data.get("project_id")
        if not build_id or not external_id:
            raise RetryableExternalError(
                "Invalid response from build service: missing build_id or project_id",
                service=self.service_name,
                status_code=502,
            )

        return BuildTrigger(
            build_id=str(build_id),
            project_id=str(external_id),
            estimated_completion=data.get("estimated_completion")
            or estimate_completion(body["timeline"]),
            status=data.get("status") or "initiated",
        )
