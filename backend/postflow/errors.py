"""
Error types for the publishing pipeline.

Two families:
- PostflowError and subclasses: synchronous failures surfaced to API callers
  (validation, not-found, conflicts, enqueue failure). Carry an error_code and
  an HTTP status for the exception handler in main.py.
- PublishError and subclasses: failures inside a publish attempt. Tagged with
  `retryable` so the queue retry policy can tell transient from permanent.
"""
from __future__ import annotations

from typing import Any


class PostflowError(Exception):
    status_code: int = 500
    default_error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"code": self.error_code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class NotFoundError(PostflowError):
    status_code = 404
    default_error_code = "NOT_FOUND"


class BadRequestError(PostflowError):
    status_code = 400
    default_error_code = "BAD_REQUEST"


class ConflictError(PostflowError):
    status_code = 409
    default_error_code = "CONFLICT"


class QueueError(PostflowError):
    """Publication row was committed but the job could not be enqueued."""
    status_code = 503
    default_error_code = "QUEUE_UNAVAILABLE"


# ── Publish-time errors ──────────────────────────────────────

class PublishError(Exception):
    """A publish attempt failed.

    retryable=True means the failure is transient (rate limit, 5xx, timeout)
    and the job may be retried by the queue.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        code: str | None = None,
        raw: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.code = code
        self.raw = raw or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code or type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
        }


class AuthError(PublishError):
    """Provider rejected the access token (HTTP 401 / OAuth error 190)."""

    def __init__(self, message: str, *, code: str | None = "AUTH_REJECTED", raw: dict | None = None):
        super().__init__(message, retryable=False, code=code, raw=raw)


class CredentialsError(PublishError):
    """Stored credentials cannot be used or refreshed. Never retried."""

    def __init__(self, message: str, *, code: str | None = "CREDENTIALS_ERROR"):
        super().__init__(message, retryable=False, code=code)


class MediaResolutionError(PublishError):
    def __init__(self, message: str, *, code: str | None = "MEDIA_UNRESOLVED"):
        super().__init__(message, retryable=False, code=code)
