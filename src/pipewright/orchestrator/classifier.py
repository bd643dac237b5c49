"""Failure classification for queue tasks and build failures.

This module decides whether a failure is worth retrying. It is a pure
function of the error: typed pipeline errors are classified by type and HTTP
status, network-level exceptions are retryable, and free-form messages (for
example a build service's failure text) are matched against phrase lists and
embedded HTTP status codes. Anything unrecognised is permanent.
"""

from __future__ import annotations

import asyncio
import enum
import re

import httpx
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

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


class FailureKind(enum.Enum):
    """Outcome of failure classification."""

    retryable = "retryable"
    permanent = "permanent"


RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 499})

RETRYABLE_PHRASES: tuple[str, ...] = (
    "timeout",
    "timed out",
    "network error",
    "temporary failure",
    "rate limit",
    "service unavailable",
    "connection reset",
    "connection refused",
    "dns resolution failed",
    "temporary server error",
    "internal server error",
    "gateway timeout",
    "service temporarily unavailable",
    "resource temporarily unavailable",
    "too many requests",
    "quota exceeded",
    "throttled",
)

NON_RETRYABLE_PHRASES: tuple[str, ...] = (
    "syntax error",
    "compilation error",
    "invalid configuration",
    "authentication failed",
    "permission denied",
    "file not found",
    "invalid project structure",
    "unsupported language",
    "malformed request",
    "invalid api key",
    "account suspended",
    "plan limit exceeded",
)

_SERVER_ERROR_RE = re.compile(r"\b5\d{2}\b")
_CLIENT_ERROR_RE = re.compile(r"\b4\d{2}\b")


def classify_status_code(status_code: int) -> FailureKind:
    """Classify an HTTP status code.

    5xx and 408/429/499 are retryable; every other code is permanent.
    """
    if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
        return FailureKind.retryable
    return FailureKind.permanent


def classify_message(message: str | None) -> FailureKind:
    """Classify a free-form failure message.

    Non-retryable phrases are checked first, then retryable phrases, then
    embedded HTTP status codes. Empty or unrecognised messages are permanent.

    Args:
        message: Failure text, e.g. from a build_failed notification.

    Returns:
        FailureKind for the message.
    """
    if not message:
        return FailureKind.permanent

    text = message.lower()

    if any(phrase in text for phrase in NON_RETRYABLE_PHRASES):
        return FailureKind.permanent
    if any(phrase in text for phrase in RETRYABLE_PHRASES):
        return FailureKind.retryable

    if _SERVER_ERROR_RE.search(text):
        return FailureKind.retryable
    client_match = _CLIENT_ERROR_RE.search(text)
    if client_match:
        return classify_status_code(int(client_match.group(0)))

    return FailureKind.permanent


def classify_failure(error: BaseException | str | None) -> FailureKind:
    """Classify an exception or message as retryable or permanent.

    Args:
        error: The exception raised by an executor, or a failure message.

    Returns:
        FailureKind.retryable for transient failures, FailureKind.permanent
        otherwise.
    """
    if error is None or isinstance(error, str):
        return classify_message(error)

    if isinstance(error, RetryableExternalError):
        return FailureKind.retryable
    if isinstance(
        error,
        (
            PermanentExternalError,
            ValidationError,
            AuthenticationError,
            ProjectNotFoundError,
            OrderingConflict,
        ),
    ):
        return FailureKind.permanent
    if isinstance(error, ExternalServiceError):
        if error.status_code is not None:
            return classify_status_code(error.status_code)
        return classify_message(str(error))

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return FailureKind.retryable
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status_code(error.response.status_code)
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return FailureKind.retryable
    if isinstance(error, ConnectionError):
        return FailureKind.retryable

    if isinstance(error, (StoreError, OperationalError, InterfaceError)):
        return FailureKind.retryable
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return FailureKind.retryable

    return classify_message(str(error))


def is_retryable(error: BaseException | str | None) -> bool:
    """Shorthand for ``classify_failure(error) is FailureKind.retryable``."""
    return classify_failure(error) is FailureKind.retryable


def error_kind_for(error: BaseException) -> str:
    """Machine-readable error kind stored alongside terminal failures."""
    kind = getattr(error, "kind", None)
    if isinstance(kind, str):
        return kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return "connection_error"
    return type(error).__name__
