"""HMAC signature and freshness verification for inbound webhooks.

Senders sign ``"{timestamp}.{body}"`` with HMAC-SHA256 using a shared secret
and send the hex digest (optionally prefixed with ``sha256=``) alongside the
unix timestamp. A request is rejected when the timestamp is missing, too old,
too far in the future, or the signature does not match.

When no secret is configured the verifier runs in degraded mode: signatures
are not checked, a missing timestamp is tolerated, and a warning is logged.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Callable

import structlog

from pipewright.errors import AuthenticationError

logger = structlog.get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, timestamp: str, body: bytes | str) -> str:
    """Compute the hex HMAC-SHA256 signature of a timestamped body.

    Args:
        secret: Shared secret.
        timestamp: Unix timestamp string as sent in the header.
        body: Raw request body.

    Returns:
        Hexadecimal digest.
    """
    if isinstance(body, str):
        body = body.encode()
    message = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class SignatureVerifier:
    """Checks webhook freshness and authenticity.

    Attributes:
        secret: Shared secret, or None for degraded mode.
        tolerance_seconds: Maximum accepted timestamp age.
        future_margin_seconds: Maximum accepted clock skew ahead of now.
        source: Sender name used in log events.
    """

    def __init__(
        self,
        secret: str | None,
        tolerance_seconds: int = 300,
        future_margin_seconds: int = 60,
        source: str = "webhook",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.secret = secret or None
        self.tolerance_seconds = tolerance_seconds
        self.future_margin_seconds = future_margin_seconds
        self.source = source
        self.clock = clock
        self.logger = logger.bind(component="SignatureVerifier", source=source)

    @property
    def insecure(self) -> bool:
        """True when no secret is configured."""
        return self.secret is None

    def verify(
        self,
        body: bytes,
        signature: str | None,
        timestamp: str | None,
    ) -> None:
        """Verify a webhook request.

        Args:
            body: Raw request body.
            signature: Signature header value.
            timestamp: Timestamp header value (unix seconds).

        Raises:
            AuthenticationError: With ``kind`` set to one of
                ``missing_timestamp``, ``invalid_timestamp``,
                ``stale_timestamp``, ``future_timestamp``,
                ``missing_signature`` or ``invalid_signature``.
        """
        if not timestamp:
            if self.insecure:
                self.logger.warning("webhook_verification_skipped", reason="no_secret_configured")
                return
            raise AuthenticationError("Missing webhook timestamp", kind="missing_timestamp")

        try:
            sent_at = int(timestamp.strip())
        except ValueError:
            raise AuthenticationError(
                "Webhook timestamp is not a unix time", kind="invalid_timestamp"
            ) from None

        age = self.clock() - sent_at
        if age > self.tolerance_seconds:
            raise AuthenticationError(
                f"Webhook timestamp is {int(age)}s old", kind="stale_timestamp"
            )
        if -age > self.future_margin_seconds:
            raise AuthenticationError(
                f"Webhook timestamp is {int(-age)}s in the future", kind="future_timestamp"
            )

        if self.insecure:
            self.logger.warning("webhook_verification_skipped", reason="no_secret_configured")
            return

        if not signature:
            raise AuthenticationError("Missing webhook signature", kind="missing_signature")

        provided = signature.strip()
        if provided.startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX) :]
        expected = compute_signature(self.secret, timestamp.strip(), body)

        if not hmac.compare_digest(provided.lower(), expected):
            raise AuthenticationError("Webhook signature mismatch", kind="invalid_signature")
