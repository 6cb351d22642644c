"""Error taxonomy shared by the relay and the HTTP layer.

Every failure the caller can see is a ``ChatError`` carrying a stable,
machine-readable code and a user-safe message. Raw provider bodies are
logged where they occur and never copied into ``message``.
"""

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for user-facing failures."""

    code = "SERVER_ERROR"
    http_status = 500
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        body.update(self.extra)
        return body


class InvalidInput(ChatError):
    code = "INVALID_INPUT"
    http_status = 400
    default_message = "Invalid input."


class Unauthenticated(ChatError):
    code = "UNAUTHENTICATED"
    http_status = 401
    default_message = "Authentication required."


class RateLimited(ChatError):
    """A rate-limit rejection. Not a fault: the caller should back off."""

    code = "RATE_LIMITED"
    http_status = 429
    default_message = "Too many requests."

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message, retry_after=retry_after)


class UpstreamFailure(ChatError):
    """Any failure of the upstream completion call.

    The orchestrator attaches the persisted safe-fallback text as
    ``fallback`` before re-raising.
    """

    code = "LLM_ERROR"
    http_status = 502
    default_message = "The assistant is unavailable right now."


class Misconfigured(UpstreamFailure):
    code = "LLM_NOT_CONFIGURED"
    http_status = 500
    default_message = "The assistant is not configured."


class UpstreamError(UpstreamFailure):
    """Non-2xx from the provider (after the single retry) or an empty answer."""

    def __init__(self, status_code: Optional[int] = None, message: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def transient(self) -> bool:
        """429 and 5xx are worth one more attempt; connection errors count as 5xx."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class UpstreamTimeout(UpstreamFailure):
    code = "LLM_TIMEOUT"
    http_status = 504
    default_message = "The assistant took too long to respond."


class UpstreamCancelled(UpstreamTimeout):
    """The caller went away or cancelled before the deadline."""

    code = "CANCELLED"
    http_status = 499
    default_message = "The request was cancelled."
