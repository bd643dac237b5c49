"""Orchestrator subsystem for Pipewright.

This module implements the durable task queue, the project state machine,
the build event ledger with its ordering guard, the failure classifier and
the broadcast fan-out. Task executors live in
``pipewright.orchestrator.executors`` and are wired up by
``pipewright.pipeline.create_pipeline``.
"""

from __future__ import annotations

from pipewright.orchestrator.broadcast import (
    BroadcastEvent,
    BroadcastFanout,
    ConnectionRegistry,
    ConnectionRegistryChannel,
    RelayChannel,
    SubscriptionTableChannel,
)
from pipewright.orchestrator.classifier import FailureKind, classify_failure, is_retryable
from pipewright.orchestrator.ledger import BuildEventLedger, LedgerOutcome
from pipewright.orchestrator.queue_manager import CycleResult, TaskQueueManager, compute_backoff
from pipewright.orchestrator.state_machine import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    ProjectStateMachine,
    TransitionResult,
    validate_transition,
)

__all__ = [
    # Queue
    "TaskQueueManager",
    "CycleResult",
    "compute_backoff",
    # State machine
    "ProjectStateMachine",
    "TransitionResult",
    "InvalidTransitionError",
    "VALID_TRANSITIONS",
    "validate_transition",
    # Ledger
    "BuildEventLedger",
    "LedgerOutcome",
    # Classifier
    "FailureKind",
    "classify_failure",
    "is_retryable",
    # Broadcast
    "BroadcastEvent",
    "BroadcastFanout",
    "ConnectionRegistry",
    "ConnectionRegistryChannel",
    "RelayChannel",
    "SubscriptionTableChannel",
]
