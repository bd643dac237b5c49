"""Integration tests for the durable task queue against SQLite.

Tests cover:
- Priority ordering of due tasks
- Exponential retry deferral and the retry budget
- Permanent failures and project failure for stage tasks
- Task timeouts
- Claim exclusivity across concurrent cycles
- Stale-claim recovery
- Batch limits, has_more and the disabled switch
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pipewright.config import QueueConfig
from pipewright.database.models.base import utcnow
from pipewright.database.models.project import ProjectStatus
from pipewright.database.models.queued_task import QueuedTask, QueueStatus, TaskType
from pipewright.database.queries import queue as queue_queries
from pipewright.database.queries.project import get_project
from pipewright.errors import PermanentExternalError, RetryableExternalError
from pipewright.orchestrator.queue_manager import TaskQueueManager
from pipewright.orchestrator.state_machine import ProjectStateMachine


class FakeClock:
    """Manually advanced clock."""

    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _queue_config(**overrides: Any) -> QueueConfig:
    settings: dict[str, Any] = {
        "max_concurrency": 1,
        "inter_wave_pause_seconds": 0,
        "retry_base_seconds": 1,
        "retry_max_seconds": 100,
        "retry_jitter_ratio": 0,
        "default_max_retries": 3,
    }
    settings.update(overrides)
    return QueueConfig(**settings)


def _manager(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FakeClock | None = None,
    **overrides: Any,
) -> TaskQueueManager:
    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    return TaskQueueManager(
        session_factory,
        _queue_config(**overrides),
        ProjectStateMachine(),
        **kwargs,
    )


async def _task(
    session_factory: async_sessionmaker[AsyncSession],
    task_id: int,
) -> QueuedTask:
    async with session_factory() as session:
        task = await queue_queries.get_task(session, task_id)
    assert task is not None
    return task


class TestEnqueueAndOrdering:
    """Test insertion and selection order."""

    @pytest.mark.asyncio
    async def test_enqueue_defaults(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """New tasks are pending with the default retry budget."""
        manager = _manager(session_factory)
        task_id = await manager.enqueue(TaskType.generate_plan, {"project_id": 1}, priority=4)

        task = await _task(session_factory, task_id)
        assert task.status == QueueStatus.pending
        assert task.priority == 4
        assert task.retry_count == 0
        assert task.max_retries == 3
        assert task.next_retry_at is None

    @pytest.mark.asyncio
    async def test_higher_priority_runs_first(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Tasks run in descending priority, then insertion order."""
        manager = _manager(session_factory)
        order: list[str] = []

        async def record(task: QueuedTask) -> dict[str, Any]:
            order.append(task.payload["name"])
            return {}

        manager.register(TaskType.send_notification, record)
        for name, priority in [("low", 1), ("high", 5), ("mid", 3), ("mid-later", 3)]:
            await manager.enqueue(TaskType.send_notification, {"name": name}, priority=priority)

        result = await manager.run_cycle()

        assert order == ["high", "mid", "mid-later", "low"]
        assert result.succeeded == 4
        assert result.has_more is False

    @pytest.mark.asyncio
    async def test_deferred_task_not_selected(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """A task enqueued with a delay is not due yet."""
        manager = _manager(session_factory)
        await manager.enqueue(TaskType.send_notification, {}, delay_seconds=3600)

        result = await manager.run_cycle()

        assert result.processed == 0


class TestRetries:
    """Test failure classification and retry scheduling."""

    @pytest.mark.asyncio
    async def test_retry_delays_grow_until_budget_exhausted(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Transient failures defer by 1s, 2s, 4s and then fail terminally."""
        clock = FakeClock()
        manager = _manager(session_factory, clock)
        attempts = 0

        async def always_unavailable(task: QueuedTask) -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            raise RetryableExternalError("service unavailable", status_code=503)

        manager.register(TaskType.send_notification, always_unavailable)
        task_id = await manager.enqueue(TaskType.send_notification, {})

        delays: list[float] = []
        for expected_retry_count in (1, 2, 3):
            result = await manager.run_cycle()
            assert result.retried == 1
            task = await _task(session_factory, task_id)
            assert task.status == QueueStatus.pending
            assert task.retry_count == expected_retry_count
            delay = (task.next_retry_at - clock.now).total_seconds()
            delays.append(delay)

            # Not due until the deferral has elapsed
            assert (await manager.run_cycle()).processed == 0
            clock.advance(delay)

        result = await manager.run_cycle()

        assert delays == [1.0, 2.0, 4.0]
        assert result.failed == 1
        task = await _task(session_factory, task_id)
        assert task.status == QueueStatus.failed
        assert task.retry_count == 3
        assert task.error_kind == "retryable_external_error"
        assert task.completed_at is not None
        assert attempts == 4

    @pytest.mark.asyncio
    async def test_retry_then_success(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """A task that fails once and then succeeds ends completed."""
        clock = FakeClock()
        manager = _manager(session_factory, clock)
        calls = 0

        async def flaky(task: QueuedTask) -> dict[str, Any]:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionResetError("reset by peer")
            return {"ok": True}

        manager.register(TaskType.send_notification, flaky)
        task_id = await manager.enqueue(TaskType.send_notification, {})

        first = await manager.run_cycle()
        clock.advance(1)
        second = await manager.run_cycle()

        assert first.retried == 1
        assert second.succeeded == 1
        task = await _task(session_factory, task_id)
        assert task.status == QueueStatus.completed
        assert task.retry_count == 1
        assert task.error_message is None

    @pytest.mark.asyncio
    async def test_permanent_failure_fails_project(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """A permanent error fails the task and the project it advances."""
        machine = ProjectStateMachine()
        async with session_factory() as session:
            created = await machine.begin_planning(
                session, "conv_9", "Shop", None, {"requirements": []}
            )
            await session.commit()
        project_id = created.project.id

        manager = _manager(session_factory)

        async def rejected(task: QueuedTask) -> dict[str, Any]:
            raise PermanentExternalError("plan request rejected", status_code=422)

        manager.register(TaskType.generate_plan, rejected)
        task_id = await manager.enqueue(TaskType.generate_plan, {"project_id": project_id})

        result = await manager.run_cycle()

        assert result.failed == 1
        task = await _task(session_factory, task_id)
        assert task.status == QueueStatus.failed
        assert task.retry_count == 0
        assert task.error_kind == "permanent_external_error"

        async with session_factory() as session:
            project = await get_project(session, project_id)
        assert project.status == ProjectStatus.failed
        assert project.error_message == "plan request rejected"

    @pytest.mark.asyncio
    async def test_notification_failure_leaves_project_alone(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Only stage tasks fail their project."""
        machine = ProjectStateMachine()
        async with session_factory() as session:
            created = await machine.begin_planning(session, "conv_10", "Shop", None, {})
            await session.commit()
        project_id = created.project.id

        manager = _manager(session_factory)

        async def broken(task: QueuedTask) -> dict[str, Any]:
            raise ValueError("bad template")

        manager.register(TaskType.send_notification, broken)
        await manager.enqueue(TaskType.send_notification, {"project_id": project_id})

        result = await manager.run_cycle()

        assert result.failed == 1
        async with session_factory() as session:
            project = await get_project(session, project_id)
        assert project.status == ProjectStatus.planning

    @pytest.mark.asyncio
    async def test_missing_executor_fails_task(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """A task type without an executor fails permanently."""
        manager = _manager(session_factory)
        task_id = await manager.enqueue(TaskType.process_webhook, {"event_id": 1})

        result = await manager.run_cycle()

        assert result.failed == 1
        task = await _task(session_factory, task_id)
        assert task.error_kind == "validation_error"

    @pytest.mark.asyncio
    async def test_timeout_is_retried(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """An executor exceeding the task timeout is retried with kind timeout."""
        manager = _manager(session_factory, task_timeout_seconds=0.05)

        async def slow(task: QueuedTask) -> dict[str, Any]:
            await asyncio.sleep(5)
            return {}

        manager.register(TaskType.send_notification, slow)
        task_id = await manager.enqueue(TaskType.send_notification, {})

        result = await manager.run_cycle()

        assert result.retried == 1
        task = await _task(session_factory, task_id)
        assert task.status == QueueStatus.pending
        assert task.error_kind == "timeout"
        assert task.retry_count == 1


class TestClaims:
    """Test claim exclusivity and stale-claim recovery."""

    @pytest.mark.asyncio
    async def test_second_claim_loses(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Only one caller can move a task from pending to processing."""
        manager = _manager(session_factory)
        task_id = await manager.enqueue(TaskType.send_notification, {})

        async with session_factory() as session:
            first = await queue_queries.claim_task(session, task_id)
            await session.commit()
        async with session_factory() as session:
            second = await queue_queries.claim_task(session, task_id)
            await session.commit()

        assert first is True
        assert second is False
        task = await _task(session_factory, task_id)
        assert task.status == QueueStatus.processing
        assert task.started_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_cycles_execute_each_task_once(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Overlapping cycles never run the same task twice."""
        executions: Counter[int] = Counter()

        async def record(task: QueuedTask) -> dict[str, Any]:
            executions[task.id] += 1
            await asyncio.sleep(0.01)
            return {}

        first = _manager(session_factory, max_concurrency=3, batch_size=10)
        second = _manager(session_factory, max_concurrency=3, batch_size=10)
        for manager in (first, second):
            manager.register(TaskType.send_notification, record)

        task_ids = [await first.enqueue(TaskType.send_notification, {"n": n}) for n in range(6)]

        results = await asyncio.gather(first.run_cycle(), second.run_cycle())

        assert sorted(executions) == sorted(task_ids)
        assert set(executions.values()) == {1}
        assert sum(r.succeeded for r in results) == 6
        assert sum(r.processed for r in results) == sum(r.succeeded + r.skipped for r in results)

    @pytest.mark.asyncio
    async def test_stale_claims_recovered(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Tasks stuck in processing are requeued or failed by budget."""
        clock = FakeClock()
        manager = _manager(session_factory, clock, stale_claim_seconds=900)
        with_budget = await manager.enqueue(TaskType.send_notification, {})
        exhausted = await manager.enqueue(TaskType.send_notification, {}, max_retries=0)
        fresh = await manager.enqueue(TaskType.send_notification, {})

        async with session_factory() as session:
            long_ago = clock.now - timedelta(seconds=1000)
            await queue_queries.claim_task(session, with_budget, long_ago)
            await queue_queries.claim_task(session, exhausted, long_ago)
            await queue_queries.claim_task(session, fresh, clock.now - timedelta(seconds=60))
            await session.commit()

        requeued, failed = await manager.recover_stale_claims()

        assert (requeued, failed) == (1, 1)
        recovered = await _task(session_factory, with_budget)
        assert recovered.status == QueueStatus.pending
        assert recovered.retry_count == 1
        assert recovered.error_kind == "stale_claim"
        assert (await _task(session_factory, exhausted)).status == QueueStatus.failed
        assert (await _task(session_factory, fresh)).status == QueueStatus.processing

    @pytest.mark.asyncio
    async def test_older_selection_cannot_claim_deferred_task(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """A task deferred by one cycle is skipped by a cycle that selected it earlier."""
        clock = FakeClock()
        earlier = _manager(session_factory, clock)
        later = _manager(session_factory, clock)
        calls = 0

        async def unavailable(task: QueuedTask) -> dict[str, Any]:
            nonlocal calls
            calls += 1
            raise RetryableExternalError("service unavailable", status_code=503)

        for manager in (earlier, later):
            manager.register(TaskType.send_notification, unavailable)
        task_id = await earlier.enqueue(TaskType.send_notification, {})

        async with session_factory() as session:
            (selected,) = await queue_queries.select_due_tasks(session, 10, clock.now)
        deferred = await later.run_cycle()
        after_retry = await _task(session_factory, task_id)

        outcome = await earlier._process_task(selected)

        assert deferred.retried == 1
        assert outcome == "skipped"
        assert calls == 1
        task = await _task(session_factory, task_id)
        assert task.status == QueueStatus.pending
        assert task.retry_count == 1
        assert task.next_retry_at == after_retry.next_retry_at

    @pytest.mark.asyncio
    async def test_retry_count_read_after_claim(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Retry accounting uses the claimed row, not an older selected copy."""
        clock = FakeClock()
        manager = _manager(session_factory, clock)

        async def unavailable(task: QueuedTask) -> dict[str, Any]:
            raise RetryableExternalError("service unavailable", status_code=503)

        manager.register(TaskType.send_notification, unavailable)
        task_id = await manager.enqueue(TaskType.send_notification, {})

        async with session_factory() as session:
            (selected,) = await queue_queries.select_due_tasks(session, 10, clock.now)
        await manager.run_cycle()
        clock.advance(1)

        outcome = await manager._process_task(selected)

        assert selected.retry_count == 0
        assert outcome == "retried"
        task = await _task(session_factory, task_id)
        assert task.retry_count == 2
        assert (task.next_retry_at - clock.now).total_seconds() == 2.0

    @pytest.mark.asyncio
    async def test_outcome_of_recovered_claim_not_recorded(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """A claim recovered as stale mid-execution does not record its outcome."""
        clock = FakeClock()
        manager = _manager(session_factory, clock)

        async def outlives_claim(task: QueuedTask) -> dict[str, Any]:
            async with session_factory() as session:
                await queue_queries.requeue_stale_claims(
                    session, clock.now + timedelta(seconds=1), clock.now
                )
                await session.commit()
            return {"ok": True}

        manager.register(TaskType.send_notification, outlives_claim)
        task_id = await manager.enqueue(TaskType.send_notification, {})

        result = await manager.run_cycle()

        assert result.succeeded == 0
        assert result.skipped == 1
        task = await _task(session_factory, task_id)
        assert task.status == QueueStatus.pending
        assert task.retry_count == 1
        assert task.error_kind == "stale_claim"
        assert task.completed_at is None

    @pytest.mark.asyncio
    async def test_outcome_requires_matching_claim(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Outcome updates only apply to the claim that started the attempt."""
        clock = FakeClock()
        manager = _manager(session_factory, clock)
        task_id = await manager.enqueue(TaskType.send_notification, {})

        async with session_factory() as session:
            await queue_queries.claim_task(session, task_id, clock.now)
            await session.commit()

        async with session_factory() as session:
            stale = await queue_queries.complete_task(
                session, task_id, clock.now, claimed_at=clock.now - timedelta(seconds=5)
            )
            current = await queue_queries.complete_task(
                session, task_id, clock.now, claimed_at=clock.now
            )
            repeated = await queue_queries.fail_task(
                session, task_id, "late failure", "timeout", clock.now
            )
            await session.commit()

        assert (stale, current, repeated) == (False, True, False)
        task = await _task(session_factory, task_id)
        assert task.status == QueueStatus.completed
        assert task.error_kind is None


class TestCycleLimits:
    """Test batch limits and the enabled switch."""

    @pytest.mark.asyncio
    async def test_has_more_when_batch_is_full(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """A cycle reports remaining due work beyond its batch."""
        manager = _manager(session_factory, batch_size=2)

        async def noop(task: QueuedTask) -> dict[str, Any]:
            return {}

        manager.register(TaskType.send_notification, noop)
        for _ in range(3):
            await manager.enqueue(TaskType.send_notification, {})

        first = await manager.run_cycle()
        second = await manager.run_cycle()

        assert first.processed == 2
        assert first.has_more is True
        assert second.processed == 1
        assert second.has_more is False

    @pytest.mark.asyncio
    async def test_batch_size_override(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """run_cycle arguments override the configured batch size."""
        manager = _manager(session_factory, batch_size=10)

        async def noop(task: QueuedTask) -> dict[str, Any]:
            return {}

        manager.register(TaskType.send_notification, noop)
        for _ in range(3):
            await manager.enqueue(TaskType.send_notification, {})

        result = await manager.run_cycle(batch_size=1)

        assert result.processed == 1
        assert result.has_more is True

    @pytest.mark.asyncio
    async def test_disabled_queue_does_nothing(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """A disabled queue leaves pending work untouched."""
        manager = _manager(session_factory, enabled=False)
        task_id = await manager.enqueue(TaskType.send_notification, {})

        result = await manager.run_cycle()

        assert result.processed == 0
        assert (await _task(session_factory, task_id)).status == QueueStatus.pending
