"""Inbound webhook ingestion for Pipewright.

Verifies freshness and authenticity of notifications from the conversation
platform and the build service, validates their shape and routes them into
the task queue or the build event ledger.
"""

from __future__ import annotations

from pipewright.webhooks.ingestor import (
    BuildWebhookIngestor,
    ConversationWebhookIngestor,
    IngestResult,
)
from pipewright.webhooks.signature import SignatureVerifier, compute_signature

__all__ = [
    "BuildWebhookIngestor",
    "ConversationWebhookIngestor",
    "IngestResult",
    "SignatureVerifier",
    "compute_signature",
]
