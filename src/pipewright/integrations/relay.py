"""Notification relay for Pipewright events.

This module delivers pipeline notifications to an external relay (for example
an email/chat notification service). It supports:
- HMAC-SHA256 signatures over ``"{timestamp}.{body}"``, the same scheme
  Pipewright verifies on inbound webhooks
- Retry logic with exponential backoff on delivery failures
- Structured payloads with timestamps

Example:
    relay = NotificationRelay(url="https://relay.example.com/hooks", secret="s3cret")
    delivered = await relay.send("build_completed", {"project_id": 42})
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from pipewright.config import BroadcastConfig

logger = structlog.get_logger(__name__)


class RelayPayload(BaseModel):
    """Structured payload for relay delivery.

    Attributes:
        event: The notification or broadcast event type.
        timestamp: ISO 8601 timestamp when the event occurred.
        data: Event-specific data payload.
    """

    event: str = Field(..., description="The event type")
    timestamp: str = Field(..., description="ISO 8601 timestamp of the event")
    data: dict[str, Any] = Field(default_factory=dict, description="Event-specific data")


def sign_payload(payload: str, secret: str, timestamp: str) -> str:
    """Generate the HMAC-SHA256 signature for a timestamped payload.

    Args:
        payload: The JSON payload string to sign.
        secret: The shared secret.
        timestamp: Unix timestamp string sent alongside the payload.

    Returns:
        Hexadecimal digest of the signature.
    """
    return hmac.new(
        secret.encode(),
        f"{timestamp}.{payload}".encode(),
        hashlib.sha256,
    ).hexdigest()


class NotificationRelay:
    """Delivers signed notifications to a single relay endpoint.

    A relay without a URL is disabled and reports every send as delivered.

    Attributes:
        url: Relay endpoint, or None when disabled.
        retry_count: Retries after the first attempt.
        logger: Structured logger for this relay.
    """

    def __init__(
        self,
        url: str | None = None,
        secret: str | None = None,
        timeout_seconds: float = 10,
        retry_count: int = 2,
        backoff_seconds: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the relay.

        Args:
            url: Relay endpoint; None disables delivery.
            secret: Optional HMAC secret for signatures.
            timeout_seconds: Request timeout in seconds.
            retry_count: Number of retries on failure.
            backoff_seconds: First retry delay; doubles each attempt.
            client: Optional pre-built HTTP client.
        """
        self.url = url
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.retry_count = retry_count
        self.backoff_seconds = backoff_seconds
        self.logger = logger.bind(component="notification_relay")
        self._client = client

    @classmethod
    def from_config(
        cls,
        config: BroadcastConfig,
        client: httpx.AsyncClient | None = None,
    ) -> NotificationRelay:
        return cls(
            url=config.relay_url,
            secret=config.relay_secret,
            timeout_seconds=config.relay_timeout_seconds,
            retry_count=config.relay_retry_count,
            client=client,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _build_headers(self, event: str, payload_str: str) -> dict[str, str]:
        timestamp = str(int(datetime.now(timezone.utc).timestamp()))
        headers = {
            "Content-Type": "application/json",
            "X-Pipewright-Event": event,
            "X-Pipewright-Timestamp": timestamp,
        }
        if self.secret:
            headers["X-Pipewright-Signature"] = (
                "sha256=" + sign_payload(payload_str, self.secret, timestamp)
            )
        return headers

    async def send(self, event: str, data: dict[str, Any]) -> bool:
        """Send an event to the relay with retries.

        Args:
            event: The event type.
            data: Event-specific data payload.

        Returns:
            True if delivered (or the relay is disabled), False otherwise.
        """
        if not self.enabled:
            self.logger.debug("relay_disabled", event_type=event)
            return True

        payload = RelayPayload(
            event=event,
            timestamp=datetime.now(timezone.utc).isoformat(),
            data=data,
        )
        payload_str = payload.model_dump_json()
        headers = self._build_headers(event, payload_str)

        client = await self._get_client()
        last_error: Exception | None = None

        for attempt in range(self.retry_count + 1):
            try:
                response = await client.post(
                    self.url,
                    content=payload_str,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )

                if response.is_success:
                    self.logger.info(
                        "relay_delivered",
                        event_type=event,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                    )
                    return True

                self.logger.warning(
                    "relay_non_success_status",
                    event_type=event,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                )
                last_error = httpx.HTTPStatusError(
                    f"HTTP {response.status_code}",
                    request=response.request,
                    response=response,
                )

            except httpx.TimeoutException as e:
                last_error = e
                self.logger.warning(
                    "relay_timeout",
                    event_type=event,
                    attempt=attempt + 1,
                    error=str(e),
                )

            except httpx.RequestError as e:
                last_error = e
                self.logger.warning(
                    "relay_request_failed",
                    event_type=event,
                    attempt=attempt + 1,
                    error=str(e),
                )

            # Exponential backoff before retry
            if attempt < self.retry_count:
                await asyncio.sleep(self.backoff_seconds * 2**attempt)

        self.logger.error(
            "relay_delivery_failed",
            event_type=event,
            retry_count=self.retry_count,
            error=str(last_error),
        )
        return False
