"""FastAPI web surface for Pipewright.

Exposes webhook receivers, queue-cycle triggers, project inspection and
control endpoints, health checks and an SSE stream of pipeline updates.
"""

from __future__ import annotations

from pipewright.web.app import create_app

__all__ = ["create_app"]
