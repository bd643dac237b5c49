"""Webhook ingestion for conversation and build notifications.

Both ingestors follow the same sequence: verify freshness and signature,
parse and validate the body, then hand the notification to the pipeline.
Rejections are synchronous and never reach the task queue; the returned
IngestResult carries the reason and the HTTP status the route should answer
with.

Conversation notifications start a pipeline by queueing an
``analyze_conversation`` task. Build notifications are resolved to their
project and appended to the build event ledger, which applies them inline or
queues a ``process_webhook`` task when deferral is configured.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pipewright.config import PipelineConfig, WebhookConfig
from pipewright.database.models.build_event import BuildEventType
from pipewright.database.models.project import ProjectStatus
from pipewright.database.models.queued_task import TaskType
from pipewright.database.queries.project import find_project_for_build, get_project_by_conversation
from pipewright.database.retry import with_store_retry
from pipewright.errors import AuthenticationError
from pipewright.orchestrator.ledger import BuildEventLedger
from pipewright.orchestrator.queue_manager import TaskQueueManager
from pipewright.orchestrator.state_machine import ProjectStateMachine
from pipewright.webhooks.schemas import BuildWebhook, ConversationWebhook, normalize_event_type
from pipewright.webhooks.signature import SignatureVerifier

logger = structlog.get_logger(__name__)

CONVERSATION_SIGNATURE_HEADER = "x-conversation-signature"
CONVERSATION_TIMESTAMP_HEADER = "x-conversation-timestamp"
BUILD_SIGNATURE_HEADER = "x-build-signature"
BUILD_TIMESTAMP_HEADER = "x-build-timestamp"
BUILD_WEBHOOK_ID_HEADER = "x-build-webhook-id"

ANALYZE_PRIORITY = 5

REJECTION_STATUS_CODES: dict[str, int] = {
    "missing_timestamp": 401,
    "invalid_timestamp": 401,
    "stale_timestamp": 401,
    "future_timestamp": 401,
    "missing_signature": 401,
    "invalid_signature": 401,
    "invalid_payload": 400,
    "missing_fields": 400,
    "not_found": 404,
}


@dataclass
class IngestResult:
    """Outcome of ingesting one webhook.

    Attributes:
        accepted: Whether the notification was accepted.
        reason: Rejection reason, or the action taken when accepted.
        data: Extra response fields (project_id, task_id, ledger outcome).
    """

    accepted: bool
    reason: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        if self.accepted:
            return 200
        return REJECTION_STATUS_CODES.get(self.reason, 400)

    @classmethod
    def rejected(cls, reason: str, **data: Any) -> IngestResult:
        return cls(accepted=False, reason=reason, data=data)

    @classmethod
    def ok(cls, action: str, **data: Any) -> IngestResult:
        return cls(accepted=True, reason=action, data=data)

    def to_dict(self) -> dict[str, Any]:
        if self.accepted:
            return {"status": "accepted", "action": self.reason, **self.data}
        return {"status": "rejected", "reason": self.reason, **self.data}


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _parse_body(raw_body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _missing(payload: dict[str, Any], required: tuple[str, ...]) -> list[str]:
    return [key for key in required if payload.get(key) in (None, "")]


class ConversationWebhookIngestor:
    """Accepts notifications from the conversation platform."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        webhook_config: WebhookConfig,
        pipeline_config: PipelineConfig,
        queue: TaskQueueManager,
        state_machine: ProjectStateMachine,
    ) -> None:
        self.session_factory = session_factory
        self.pipeline_config = pipeline_config
        self.queue = queue
        self.state_machine = state_machine
        self.verifier = SignatureVerifier(
            webhook_config.conversation_secret,
            tolerance_seconds=webhook_config.tolerance_seconds,
            future_margin_seconds=webhook_config.future_margin_seconds,
            source="conversation",
        )
        self.logger = logger.bind(component="ConversationWebhookIngestor")

    async def ingest(self, raw_body: bytes, headers: Mapping[str, str]) -> IngestResult:
        """Verify, validate and act on a conversation notification.

        Args:
            raw_body: Request body exactly as received.
            headers: Request headers.

        Returns:
            IngestResult for the route to translate into a response.
        """
        headers = _lower_headers(headers)
        try:
            self.verifier.verify(
                raw_body,
                headers.get(CONVERSATION_SIGNATURE_HEADER),
                headers.get(CONVERSATION_TIMESTAMP_HEADER),
            )
        except AuthenticationError as e:
            self.logger.warning("security_event", source="conversation", reason=e.kind, error=str(e))
            return IngestResult.rejected(e.kind)

        payload = _parse_body(raw_body)
        if payload is None:
            return IngestResult.rejected("invalid_payload")
        missing = _missing(payload, ("event_type", "conversation_id"))
        if missing:
            return IngestResult.rejected("missing_fields", missing=missing)
        try:
            webhook = ConversationWebhook.model_validate(payload)
        except PydanticValidationError as e:
            return IngestResult.rejected("invalid_payload", errors=e.error_count())

        self.logger.info(
            "conversation_webhook_received",
            event_type=webhook.event_type,
            conversation_id=webhook.conversation_id,
        )

        if webhook.event_type != "conversation_ended":
            return IngestResult.ok("ignored", event_type=webhook.event_type)
        if not self.pipeline_config.enabled:
            self.logger.info("pipeline_disabled", conversation_id=webhook.conversation_id)
            return IngestResult.ok("pipeline_disabled")

        return await self._start_pipeline(webhook)

    async def _start_pipeline(self, webhook: ConversationWebhook) -> IngestResult:
        task_payload = {
            "conversation_id": webhook.conversation_id,
            "conversation": webhook.data,
        }

        async def _start() -> IngestResult:
            async with self.session_factory() as session:
                project = await get_project_by_conversation(session, webhook.conversation_id)

                if project is None:
                    task_id = await self.queue.enqueue(
                        TaskType.analyze_conversation,
                        task_payload,
                        priority=ANALYZE_PRIORITY,
                        session=session,
                    )
                    await session.commit()
                    self.logger.info(
                        "pipeline_started",
                        conversation_id=webhook.conversation_id,
                        task_id=task_id,
                    )
                    return IngestResult.ok("pipeline_started", task_id=task_id)

                if project.status != ProjectStatus.failed:
                    self.logger.info(
                        "conversation_already_has_project",
                        conversation_id=webhook.conversation_id,
                        project_id=project.id,
                        status=project.status.value,
                    )
                    return IngestResult.ok(
                        "already_exists",
                        project_id=project.id,
                        project_status=project.status.value,
                    )

                result = await self.state_machine.reset_for_retry(
                    session,
                    project.id,
                    reason="conversation_resubmitted",
                )
                if not result.applied:
                    await session.commit()
                    return IngestResult.ok(result.reason or "not_restarted", project_id=project.id)

                task_id = await self.queue.enqueue(
                    TaskType.analyze_conversation,
                    task_payload,
                    priority=ANALYZE_PRIORITY,
                    session=session,
                )
                await session.commit()

            self.logger.info(
                "pipeline_restarted",
                conversation_id=webhook.conversation_id,
                project_id=project.id,
                task_id=task_id,
            )
            return IngestResult.ok("pipeline_restarted", project_id=project.id, task_id=task_id)

        return await with_store_retry(
            _start,
            attempts=self.queue.config.store_retry_attempts,
            operation_name="start_pipeline",
        )


class BuildWebhookIngestor:
    """Accepts notifications from the build service."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        webhook_config: WebhookConfig,
        ledger: BuildEventLedger,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.defer = webhook_config.defer_build_events
        self.verifier = SignatureVerifier(
            webhook_config.build_secret,
            tolerance_seconds=webhook_config.tolerance_seconds,
            future_margin_seconds=webhook_config.future_margin_seconds,
            source="build",
        )
        self.logger = logger.bind(component="BuildWebhookIngestor")

    async def ingest(self, raw_body: bytes, headers: Mapping[str, str]) -> IngestResult:
        """Verify, validate and record a build notification.

        Args:
            raw_body: Request body exactly as received.
            headers: Request headers.

        Returns:
            IngestResult for the route to translate into a response.
        """
        headers = _lower_headers(headers)
        timestamp_header = headers.get(BUILD_TIMESTAMP_HEADER)
        try:
            self.verifier.verify(
                raw_body,
                headers.get(BUILD_SIGNATURE_HEADER),
                timestamp_header,
            )
        except AuthenticationError as e:
            self.logger.warning("security_event", source="build", reason=e.kind, error=str(e))
            return IngestResult.rejected(e.kind)

        payload = _parse_body(raw_body)
        if payload is None:
            return IngestResult.rejected("invalid_payload")
        missing = _missing(payload, ("build_id", "event_type"))
        if missing:
            return IngestResult.rejected("missing_fields", missing=missing)
        try:
            webhook = BuildWebhook.model_validate(payload)
        except PydanticValidationError as e:
            return IngestResult.rejected("invalid_payload", errors=e.error_count())

        async def _resolve() -> Any:
            async with self.session_factory() as session:
                return await find_project_for_build(session, webhook.build_id, webhook.project_id)

        project = await with_store_retry(
            _resolve,
            attempts=self.ledger.store_retry_attempts,
            operation_name="find_project_for_build",
        )
        if project is None:
            self.logger.warning(
                "build_webhook_project_not_found",
                build_ref=webhook.build_id,
                external_project_ref=webhook.project_id,
            )
            return IngestResult.rejected("not_found", build_id=webhook.build_id)

        event_type = normalize_event_type(webhook.event_type)
        event_data = dict(webhook.data)
        if event_type is BuildEventType.log_entry and webhook.event_type != "log_entry":
            event_data.setdefault("original_event_type", webhook.event_type)

        outcome = await self.ledger.record_and_apply(
            project.id,
            event_type,
            build_ref=webhook.build_id,
            event_data=event_data,
            message=webhook.message or event_data.get("message"),
            timestamp=webhook.timestamp or _header_time(timestamp_header),
            sequence_number=webhook.sequence_number,
            payload_digest=hashlib.sha256(raw_body).hexdigest(),
            webhook_id=headers.get(BUILD_WEBHOOK_ID_HEADER),
            defer=self.defer,
        )

        self.logger.info(
            "build_webhook_recorded",
            project_id=project.id,
            build_ref=webhook.build_id,
            event_type=event_type.value,
            event_id=outcome.event_id,
            applied=outcome.applied,
            out_of_order=outcome.out_of_order,
            deferred=outcome.deferred,
        )
        return IngestResult.ok("recorded", **outcome.to_dict())


def _header_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value.strip()), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
