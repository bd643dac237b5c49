"""Unit tests for failure classification.

Tests cover:
- Typed pipeline errors
- HTTP status codes
- Network-level exceptions
- Free-form failure messages
- Error kinds recorded with terminal failures
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from pipewright.errors import (
    AuthenticationError,
    ExternalServiceError,
    OrderingConflict,
    PermanentExternalError,
    ProjectNotFoundError,
    RetryableExternalError,
    StoreError,
    ValidationError,
)
from pipewright.orchestrator.classifier import (
    FailureKind,
    classify_failure,
    classify_message,
    classify_status_code,
    error_kind_for,
    is_retryable,
)


class TestClassifyStatusCode:
    """Test HTTP status code classification."""

    @pytest.mark.parametrize("status_code", [500, 502, 503, 504, 408, 429, 499])
    def test_retryable_codes(self, status_code: int) -> None:
        """5xx and the retryable 4xx subset are retryable."""
        assert classify_status_code(status_code) is FailureKind.retryable

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 409, 422])
    def test_permanent_codes(self, status_code: int) -> None:
        """Other 4xx codes are permanent."""
        assert classify_status_code(status_code) is FailureKind.permanent


class TestClassifyMessage:
    """Test free-form message classification."""

    @pytest.mark.parametrize(
        "message",
        [
            "Request timeout while installing dependencies",
            "Connection reset by peer",
            "Rate limit exceeded, try again later",
            "upstream returned 503",
            "Too Many Requests",
        ],
    )
    def test_retryable_messages(self, message: str) -> None:
        """Transient-sounding messages are retryable."""
        assert classify_message(message) is FailureKind.retryable

    @pytest.mark.parametrize(
        "message",
        [
            "Syntax error in src/index.js",
            "Authentication failed for registry",
            "Invalid API key",
            "server answered 404",
            "Something odd happened",
        ],
    )
    def test_permanent_messages(self, message: str) -> None:
        """Permanent phrases, 4xx codes and unknown text are permanent."""
        assert classify_message(message) is FailureKind.permanent

    def test_non_retryable_phrase_wins(self) -> None:
        """A message with both kinds of phrase is permanent."""
        assert classify_message("compilation error after timeout") is FailureKind.permanent

    def test_empty_message_is_permanent(self) -> None:
        """Empty and missing messages are permanent."""
        assert classify_message("") is FailureKind.permanent
        assert classify_message(None) is FailureKind.permanent

    def test_retryable_client_code_in_message(self) -> None:
        """An embedded 429 is retryable."""
        assert classify_message("build service said 429") is FailureKind.retryable


class TestClassifyFailure:
    """Test exception classification."""

    def test_retryable_external_error(self) -> None:
        """RetryableExternalError is always retryable."""
        error = RetryableExternalError("ai_service returned HTTP 503", status_code=503)
        assert classify_failure(error) is FailureKind.retryable

    @pytest.mark.parametrize(
        "error",
        [
            PermanentExternalError("bad request", status_code=400),
            ValidationError("missing project name"),
            AuthenticationError("bad signature"),
            ProjectNotFoundError(3),
            OrderingConflict("stale sequence"),
        ],
    )
    def test_permanent_errors(self, error: Exception) -> None:
        """Malformed input and rejected requests are permanent."""
        assert classify_failure(error) is FailureKind.permanent

    def test_generic_external_error_uses_status(self) -> None:
        """A plain ExternalServiceError is classified by its status code."""
        assert (
            classify_failure(ExternalServiceError("boom", status_code=502))
            is FailureKind.retryable
        )
        assert (
            classify_failure(ExternalServiceError("boom", status_code=403))
            is FailureKind.permanent
        )

    def test_timeouts_are_retryable(self) -> None:
        """asyncio and httpx timeouts are retryable."""
        assert classify_failure(asyncio.TimeoutError()) is FailureKind.retryable
        assert classify_failure(httpx.ReadTimeout("slow")) is FailureKind.retryable

    def test_transport_errors_are_retryable(self) -> None:
        """Connection failures are retryable."""
        assert classify_failure(httpx.ConnectError("refused")) is FailureKind.retryable
        assert classify_failure(ConnectionResetError()) is FailureKind.retryable

    def test_http_status_error_uses_response_code(self) -> None:
        """httpx.HTTPStatusError is classified by its response."""
        request = httpx.Request("POST", "http://build.test/builds")
        response = httpx.Response(429, request=request)
        error = httpx.HTTPStatusError("HTTP 429", request=request, response=response)
        assert classify_failure(error) is FailureKind.retryable

    def test_store_error_is_retryable(self) -> None:
        """Exhausted store retries surface as retryable at the task level."""
        assert classify_failure(StoreError("complete_task failed")) is FailureKind.retryable

    def test_unknown_exception_is_permanent(self) -> None:
        """Unrecognised exceptions fall back to message classification."""
        assert classify_failure(KeyError("project_name")) is FailureKind.permanent
        assert classify_failure(RuntimeError("network error")) is FailureKind.retryable

    def test_string_input(self) -> None:
        """Strings are classified as messages."""
        assert is_retryable("Gateway timeout")
        assert not is_retryable("Permission denied")


class TestErrorKind:
    """Test machine-readable error kinds."""

    def test_pipeline_error_kind(self) -> None:
        """Pipeline errors report their kind."""
        assert error_kind_for(ValidationError("bad")) == "validation_error"
        assert error_kind_for(RetryableExternalError("slow", kind="timeout")) == "timeout"

    def test_builtin_exceptions(self) -> None:
        """Builtin timeouts and connection errors map to stable kinds."""
        assert error_kind_for(asyncio.TimeoutError()) == "timeout"
        assert error_kind_for(ConnectionRefusedError()) == "connection_error"
        assert error_kind_for(KeyError("x")) == "KeyError"
