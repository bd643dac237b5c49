"""Shared HTTP plumbing for outbound service clients.

ServiceClient wraps an httpx.AsyncClient with a hard timeout around every
call and maps transport failures and HTTP error statuses onto the pipeline
error taxonomy, so the queue's failure classifier can decide what to retry.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from pipewright.errors import PermanentExternalError, RetryableExternalError
from pipewright.orchestrator.classifier import FailureKind, classify_status_code

logger = structlog.get_logger(__name__)


class ServiceClient:
    """Base class for JSON-over-HTTP collaborators.

    Attributes:
        service_name: Name used in errors and log events.
        base_url: Service root URL without a trailing slash.
        timeout_seconds: Hard timeout applied to each call.
    """

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self.logger = logger.bind(component=self.service_name)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Pipewright/1.0",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if extra:
            headers.update(extra)
        return headers

    def _error_from_response(self, response: httpx.Response) -> Exception:
        message = f"{self.service_name} returned HTTP {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            detail = body.get("message") or body.get("error") or body.get("detail")
            if detail:
                message = f"{message}: {detail}"
        elif response.text:
            message = f"{message}: {response.text[:200]}"

        error_cls = (
            RetryableExternalError
            if classify_status_code(response.status_code) is FailureKind.retryable
            else PermanentExternalError
        )
        return error_cls(message, service=self.service_name, status_code=response.status_code)

    async def _post_json(
        self,
        path: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """POST a JSON document and return the decoded JSON object response.

        Args:
            path: Path appended to base_url.
            payload: JSON-serializable request body.
            headers: Extra request headers.

        Returns:
            The response body as a dict.

        Raises:
            RetryableExternalError: On timeouts, transport failures, 5xx and
                408/429/499 responses.
            PermanentExternalError: On other 4xx responses or a body that is
                not a JSON object.
        """
        client = await self._get_client()
        url = f"{self.base_url}{path}"

        try:
            response = await asyncio.wait_for(
                client.post(url, json=payload, headers=self._headers(headers)),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            self.logger.warning("service_call_timeout", url=url, timeout=self.timeout_seconds)
            raise RetryableExternalError(
                f"{self.service_name} request timed out after {self.timeout_seconds}s",
                service=self.service_name,
                kind="timeout",
            ) from e
        except httpx.TransportError as e:
            self.logger.warning("service_call_transport_error", url=url, error=str(e))
            raise RetryableExternalError(
                f"{self.service_name} connection failed: {e}",
                service=self.service_name,
                kind="connection_error",
            ) from e

        if response.status_code >= 400:
            error = self._error_from_response(response)
            self.logger.warning(
                "service_call_failed",
                url=url,
                status_code=response.status_code,
                error=str(error),
            )
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise PermanentExternalError(
                f"{self.service_name} returned a non-JSON response",
                service=self.service_name,
                status_code=response.status_code,
            ) from e
        if not isinstance(data, dict):
            raise PermanentExternalError(
                f"{self.service_name} returned a non-object JSON response",
                service=self.service_name,
                status_code=response.status_code,
            )

        self.logger.debug("service_call_succeeded", url=url, status_code=response.status_code)
        return data
