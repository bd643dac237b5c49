"""Transient-failure retry for persistence operations.

Store operations are retried a bounded number of times with a short
exponential pause. Each attempt must open its own session because a session
that raised a connection-level error cannot be reused.

Example:
    >>> async def _mark_done():
    ...     async with session_factory() as session:
    ...         await complete_task(session, task_id)
    ...         await session.commit()
    >>> await with_store_retry(_mark_done, attempts=3, operation_name="complete_task")
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from pipewright.errors import StoreError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_STORE_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    ConnectionError,
)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TRANSIENT_STORE_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    operation_name: str = "store_operation",
    base_delay: float = 0.1,
) -> T:
    """Run a persistence operation, retrying transient store failures.

    Args:
        operation: Zero-argument coroutine function performing the work.
        attempts: Total attempts before giving up.
        operation_name: Name used in log events and the final error.
        base_delay: Pause before the second attempt; doubles each time.

    Returns:
        Whatever the operation returns.

    Raises:
        StoreError: If every attempt failed with a transient store error.
    """
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not _is_transient(e):
                raise
            last_error = e
            logger.warning(
                "store_operation_retry",
                operation=operation_name,
                attempt=attempt,
                max_attempts=attempts,
                error=str(e),
            )
            if attempt < attempts:
                await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

    logger.error(
        "store_operation_failed",
        operation=operation_name,
        attempts=attempts,
        error=str(last_error),
    )
    raise StoreError(
        f"{operation_name} failed after {attempts} attempts: {last_error}"
    ) from last_error
