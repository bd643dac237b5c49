"""Durable task queue manager for the Pipewright orchestrator.

The queue is a polling table. A cycle recovers stale claims, selects a batch
of due pending tasks in priority order and executes them in waves of bounded
concurrency. Each task is claimed with a conditional UPDATE right before it
runs, which is the single concurrency primitive: a cycle that loses the claim
skips the task.

Failures are classified; transient ones return the task to pending with an
exponential, jittered deferral, permanent ones (or exhausted budgets) mark it
failed terminally and fail the owning project.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pipewright.config import QueueConfig
from pipewright.database.models.base import utcnow
from pipewright.database.models.queued_task import QueuedTask, TaskType
from pipewright.database.queries import queue as queue_queries
from pipewright.database.retry import with_store_retry
from pipewright.errors import ProjectNotFoundError, RetryableExternalError, ValidationError
from pipewright.logging import bind_task_context, clear_task_context
from pipewright.orchestrator.classifier import FailureKind, classify_failure, error_kind_for
from pipewright.orchestrator.state_machine import ProjectStateMachine

logger = structlog.get_logger(__name__)

Executor = Callable[[QueuedTask], Awaitable[dict[str, Any]]]

# Task types whose terminal failure also fails the project they advance
PROJECT_STAGE_TASKS: frozenset[TaskType] = frozenset(
    {
        TaskType.analyze_conversation,
        TaskType.generate_plan,
        TaskType.trigger_build,
    }
)


@dataclass
class CycleResult:
    """Summary of one queue cycle.

    Attributes:
        processed: Tasks this cycle attempted to claim.
        succeeded: Tasks completed successfully.
        failed: Tasks failed terminally.
        retried: Tasks returned to pending with a deferral.
        skipped: Tasks whose claim was lost, or whose outcome was superseded
            by stale-claim recovery.
        has_more: Whether due pending work remains after the cycle.
    """

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_backoff(
    retry_count: int,
    base_seconds: float,
    max_seconds: float,
    jitter_ratio: float = 0.1,
    rng: random.Random | None = None,
) -> float:
    """Delay before the next attempt of a task.

    ``base * 2**retry_count`` using the count before this failure, clamped
    to ``max_seconds``, then scaled by a random factor in
    ``[1 - jitter_ratio, 1 + jitter_ratio]``.

    Args:
        retry_count: Retries already performed.
        base_seconds: Delay for the first retry.
        max_seconds: Ceiling applied before jitter.
        jitter_ratio: Fractional jitter.
        rng: Random source (injectable for tests).

    Returns:
        Delay in seconds.
    """
    delay = min(max_seconds, base_seconds * (2**retry_count))
    if jitter_ratio > 0:
        rng = rng or random
        delay *= 1 + rng.uniform(-jitter_ratio, jitter_ratio)
    return max(0.0, delay)


class TaskQueueManager:
    """Inserts, schedules and executes queued pipeline tasks.

    Attributes:
        session_factory: Factory for short-lived database sessions.
        config: Queue tuning parameters.
        executors: Dispatch table from task type to executor coroutine.
        state_machine: Used to fail projects when their stage task fails.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: QueueConfig,
        state_machine: ProjectStateMachine,
        executors: dict[TaskType, Executor] | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.state_machine = state_machine
        self.executors: dict[TaskType, Executor] = dict(executors or {})
        self.rng = rng or random.Random()
        self.clock = clock
        self.logger = logger.bind(component="TaskQueueManager")

    def register(self, task_type: TaskType, executor: Executor) -> None:
        """Register (or replace) the executor for a task type."""
        self.executors[task_type] = executor

    async def _store(self, operation: Callable[[], Awaitable[Any]], name: str) -> Any:
        return await with_store_retry(
            operation,
            attempts=self.config.store_retry_attempts,
            operation_name=name,
        )

    async def enqueue(
        self,
        task_type: TaskType,
        payload: dict[str, Any],
        priority: int = 0,
        max_retries: int | None = None,
        delay_seconds: float | None = None,
        session: AsyncSession | None = None,
    ) -> int:
        """Add a task to the queue.

        With a caller-supplied session the insert joins that transaction and
        is committed by the caller; otherwise it is committed immediately.

        Args:
            task_type: Executor that should handle the task.
            payload: Executor input document.
            priority: Higher values run first.
            max_retries: Retry budget (defaults to queue.default_max_retries).
            delay_seconds: Optional deferral before the task becomes due.
            session: Optional session whose transaction the insert joins.

        Returns:
            The new task's ID.
        """
        budget = self.config.default_max_retries if max_retries is None else max_retries

        if session is not None:
            task = await queue_queries.insert_task(
                session, task_type, payload, priority, budget, delay_seconds
            )
            return task.id

        async def _insert() -> int:
            async with self.session_factory() as s:
                task = await queue_queries.insert_task(
                    s, task_type, payload, priority, budget, delay_seconds
                )
                await s.commit()
                return task.id

        return await self._store(_insert, "enqueue")

    async def recover_stale_claims(self) -> tuple[int, int]:
        """Return tasks stuck in processing to pending (or fail them).

        Returns:
            Tuple of (requeued, failed) counts.
        """
        now = self.clock()
        cutoff = now - timedelta(seconds=self.config.stale_claim_seconds)

        async def _recover() -> tuple[int, int]:
            async with self.session_factory() as session:
                counts = await queue_queries.requeue_stale_claims(session, cutoff, now)
                await session.commit()
                return counts

        return await self._store(_recover, "recover_stale_claims")

    async def run_cycle(
        self,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
    ) -> CycleResult:
        """Run one queue cycle.

        Args:
            batch_size: Maximum tasks to select (defaults to config).
            max_concurrency: Maximum tasks in flight at once (defaults to config).

        Returns:
            CycleResult summarizing the cycle.
        """
        result = CycleResult()
        if not self.config.enabled:
            self.logger.info("queue_disabled")
            return result

        batch_size = batch_size or self.config.batch_size
        concurrency = max(1, max_concurrency or self.config.max_concurrency)

        await self.recover_stale_claims()

        async def _select() -> list[QueuedTask]:
            async with self.session_factory() as session:
                return await queue_queries.select_due_tasks(session, batch_size, self.clock())

        tasks = await self._store(_select, "select_due_tasks")
        self.logger.info(
            "queue_cycle_started",
            selected=len(tasks),
            batch_size=batch_size,
            max_concurrency=concurrency,
        )

        for start in range(0, len(tasks), concurrency):
            wave = tasks[start : start + concurrency]
            outcomes = await asyncio.gather(
                *(self._process_task(task) for task in wave),
                return_exceptions=True,
            )
            for task, outcome in zip(wave, outcomes):
                result.processed += 1
                if isinstance(outcome, BaseException):
                    # The outcome itself could not be recorded; a stale-claim
                    # sweep will pick the task up again.
                    self.logger.error(
                        "task_outcome_not_recorded",
                        task_id=task.id,
                        error=str(outcome),
                    )
                    result.failed += 1
                else:
                    setattr(result, outcome, getattr(result, outcome) + 1)

            if start + concurrency < len(tasks) and self.config.inter_wave_pause_seconds > 0:
                await asyncio.sleep(self.config.inter_wave_pause_seconds)

        async def _has_more() -> bool:
            async with self.session_factory() as session:
                return await queue_queries.count_due_tasks(session, self.clock()) > 0

        result.has_more = await self._store(_has_more, "count_due_tasks")
        self.logger.info("queue_cycle_completed", **result.to_dict())
        return result

    async def _claim(self, task_id: int) -> QueuedTask | None:
        """Claim a task and return its row as of the claim, or None if lost."""

        async def _do_claim() -> QueuedTask | None:
            async with self.session_factory() as session:
                if not await queue_queries.claim_task(session, task_id, self.clock()):
                    await session.rollback()
                    return None
                claimed = await queue_queries.get_task(session, task_id)
                await session.commit()
                return claimed

        return await self._store(_do_claim, "claim_task")

    async def _process_task(self, selected: QueuedTask) -> str:
        """Claim, execute and record the outcome of a single task.

        Retry accounting uses the row read back after the claim, never the
        selected copy, which may predate another cycle's outcome.

        Returns:
            The CycleResult counter to increment.
        """
        task = await self._claim(selected.id)
        if task is None:
            self.logger.info("task_claim_lost", task_id=selected.id)
            return "skipped"

        bind_task_context(task.id, task.task_type.value)
        try:
            self.logger.info(
                "task_started",
                priority=task.priority,
                retry_count=task.retry_count,
            )
            executor = self.executors.get(task.task_type)
            if executor is None:
                return await self._handle_failure(
                    task,
                    ValidationError(f"No executor registered for {task.task_type.value}"),
                )

            try:
                outcome = await asyncio.wait_for(
                    executor(task),
                    timeout=self.config.task_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error: Exception = RetryableExternalError(
                    f"Task timed out after {self.config.task_timeout_seconds}s",
                    kind="timeout",
                )
                return await self._handle_failure(task, error)
            except Exception as e:
                return await self._handle_failure(task, e)

            if not await self._mark_completed(task):
                return self._superseded(task, "completed")
            self.logger.info("task_completed", result=outcome)
            return "succeeded"
        finally:
            clear_task_context()

    def _superseded(self, task: QueuedTask, outcome: str) -> str:
        # The claim was recovered as stale while the executor ran; the task
        # row belongs to whoever holds it now.
        self.logger.warning(
            "task_outcome_superseded",
            outcome=outcome,
            claimed_at=task.started_at.isoformat() if task.started_at else None,
        )
        return "skipped"

    async def _mark_completed(self, task: QueuedTask) -> bool:
        async def _complete() -> bool:
            async with self.session_factory() as session:
                recorded = await queue_queries.complete_task(
                    session, task.id, self.clock(), claimed_at=task.started_at
                )
                await session.commit()
                return recorded

        return await self._store(_complete, "complete_task")

    async def _handle_failure(self, task: QueuedTask, error: Exception) -> str:
        kind = classify_failure(error)
        error_kind = error_kind_for(error)
        message = str(error) or type(error).__name__

        if kind is FailureKind.permanent or task.retry_count >= task.max_retries:
            if not await self._fail_terminally(task, message, error_kind):
                return self._superseded(task, "failed")
            self.logger.error(
                "task_failed",
                error=message,
                error_kind=error_kind,
                failure_kind=kind.value,
                retry_count=task.retry_count,
                max_retries=task.max_retries,
            )
            return "failed"

        delay = compute_backoff(
            task.retry_count,
            self.config.retry_base_seconds,
            self.config.retry_max_seconds,
            self.config.retry_jitter_ratio,
            self.rng,
        )
        next_retry_at = self.clock() + timedelta(seconds=delay)

        async def _schedule() -> bool:
            async with self.session_factory() as session:
                recorded = await queue_queries.schedule_retry(
                    session,
                    task.id,
                    task.retry_count + 1,
                    next_retry_at,
                    message,
                    error_kind,
                    claimed_at=task.started_at,
                )
                await session.commit()
                return recorded

        if not await self._store(_schedule, "schedule_retry"):
            return self._superseded(task, "retried")
        self.logger.warning(
            "task_retry_scheduled",
            error=message,
            error_kind=error_kind,
            retry_count=task.retry_count + 1,
            delay_seconds=round(delay, 3),
            next_retry_at=next_retry_at.isoformat(),
        )
        return "retried"

    async def _fail_terminally(self, task: QueuedTask, message: str, error_kind: str) -> bool:
        project_id = task.payload.get("project_id") if isinstance(task.payload, dict) else None

        async def _fail() -> bool:
            async with self.session_factory() as session:
                recorded = await queue_queries.fail_task(
                    session, task.id, message, error_kind, self.clock(), claimed_at=task.started_at
                )
                if not recorded:
                    await session.rollback()
                    return False
                if project_id is not None and task.task_type in PROJECT_STAGE_TASKS:
                    try:
                        await self.state_machine.mark_failed(
                            session, int(project_id), message, error_kind
                        )
                    except ProjectNotFoundError:
                        self.logger.warning("failed_task_project_missing", project_id=project_id)
                await session.commit()
                return True

        return await self._store(_fail, "fail_task")
