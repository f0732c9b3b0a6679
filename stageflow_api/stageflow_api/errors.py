"""Error kinds raised by the webhook pipeline.

Each subclass carries the HTTP status it maps to.  ``main.create_app``
registers one handler for :class:`StageflowError` that renders
``{"detail": exc.detail}``; the message is always safe for external
callers and never includes stack traces or storage details.
"""

from __future__ import annotations


class StageflowError(Exception):
    """Base class for pipeline errors with an HTTP mapping."""

    status_code: int = 500
    default_detail: str = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(StageflowError):
    """Malformed or oversized input."""

    status_code = 400
    default_detail = "Invalid request"


class AuthError(StageflowError):
    """Missing or invalid caller identity."""

    status_code = 401
    default_detail = "Authentication required"


class ForbiddenError(StageflowError):
    """Caller or target not permitted (including SSRF rejections)."""

    status_code = 403
    default_detail = "Forbidden"


class NotFoundError(StageflowError):
    """Unknown or inactive webhook, subscription or organization."""

    status_code = 404
    default_detail = "Not found"


class ConflictError(StageflowError):
    """Another invocation currently holds the idempotency claim."""

    status_code = 409
    default_detail = "Event is already being processed"


class UpstreamDeliveryError(StageflowError):
    """Tenant endpoint failed: network error, timeout, or non-success status.

    Never surfaced through the exception handler.  The dispatcher records
    it on the delivery row and reports ``success=false`` to the caller.
    """

    status_code = 502
    default_detail = "Webhook delivery failed"

    def __init__(
        self,
        detail: str | None = None,
        *,
        response_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(detail)
        self.response_status = response_status
        self.response_body = response_body


class FatalProcessingError(StageflowError):
    """Inbound event cannot be applied (unknown price, missing organization).

    Propagates to a 500 so the provider re-delivers the event.
    """

    status_code = 500
    default_detail = "Event processing failed"
