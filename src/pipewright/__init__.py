"""Pipewright - Durable conversation-to-build pipeline orchestration.

This package turns the asynchronous conversation → analysis → plan → build
workflow into a resumable pipeline built on a PostgreSQL-backed task queue,
a guarded project state machine, and an append-only build event ledger fed
by signed webhooks.
"""

__version__ = "0.1.0"
