"""Exception taxonomy for Pipewright.

Every error raised by pipeline code derives from PipelineError and carries a
machine-readable ``kind`` that ends up in ``error_kind`` columns when a task or
project fails terminally. The failure classifier in
``pipewright.orchestrator.classifier`` consumes these types to decide between
retrying and failing.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        kind: Machine-readable error category.
    """

    kind: str = "pipeline_error"

    def __init__(self, message: str, *, kind: str | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ValidationError(PipelineError):
    """Malformed input or a collaborator response with the wrong shape."""

    kind = "validation_error"


class AuthenticationError(PipelineError):
    """Signature, credential or authorization failure."""

    kind = "authentication_error"


class ExternalServiceError(PipelineError):
    """Failure reported by an outbound collaborator.

    Attributes:
        service: Name of the collaborator ("ai_service", "build_service", ...).
        status_code: HTTP status code when the failure came from a response.
    """

    kind = "external_service_error"

    def __init__(
        self,
        message: str,
        *,
        service: str | None = None,
        status_code: int | None = None,
        kind: str | None = None,
    ):
        super().__init__(message, kind=kind)
        self.service = service
        self.status_code = status_code


class RetryableExternalError(ExternalServiceError):
    """Transient collaborator failure (timeouts, rate limits, 5xx)."""

    kind = "retryable_external_error"


class PermanentExternalError(ExternalServiceError):
    """Collaborator failure that will not succeed on retry (4xx, bad request)."""

    kind = "permanent_external_error"


class OrderingConflict(PipelineError):
    """An incoming ledger event is older than one already recorded."""

    kind = "ordering_conflict"


class StoreError(PipelineError):
    """Persistence operation failed after exhausting its retries."""

    kind = "store_error"


class ProjectNotFoundError(PipelineError):
    """The referenced project does not exist."""

    kind = "project_not_found"

    def __init__(self, project_id: int | str):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id
