"""
Error taxonomy.

Every error the core raises derives from JarvisError and carries a
machine-readable `kind` plus the HTTP status the API layer maps it to.
Rate-limit denials are not exceptions: see RateLimitDecision.
"""

from __future__ import annotations


class JarvisError(Exception):
    """Base class for all JARVIS errors."""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        """JSON envelope used by the HTTP layer."""
        body = {"error": self.message, "kind": self.kind}
        if self.details:
            body["details"] = self.details
        return body


class ConfigurationError(JarvisError):
    kind = "configuration"


class InvalidInputError(JarvisError):
    """Caller handed us something unusable. Never retried."""

    kind = "invalid_input"
    status_code = 400


class NotFoundError(JarvisError):
    """Unknown conversation id. Never retried."""

    kind = "not_found"
    status_code = 404


class UpstreamCallFailure(JarvisError):
    """
    The upstream AI client failed during an attempt.

    `retryable` is False for permanent errors (bad request, auth) so the
    gateway stops retrying early. `upstream_status` is the HTTP status the
    upstream returned, if any.
    """

    kind = "upstream_failure"
    status_code = 502

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        retryable: bool = True,
        upstream_status: int | None = None,
    ):
        super().__init__(message, details)
        self.retryable = retryable
        self.upstream_status = upstream_status


class ServiceUnavailable(JarvisError):
    """Circuit breaker is open. No upstream call was attempted."""

    kind = "service_unavailable"
    status_code = 503

    def __init__(self, message: str, retry_after: int = 0, details: dict | None = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class Unauthorized(JarvisError):
    """Missing or wrong API key on a protected route."""

    kind = "unauthorized"
    status_code = 401
