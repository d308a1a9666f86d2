"""
Coach Engine Errors
===================

Error taxonomy shared by every component:
- not-found: operating on an unknown or expired session
- validation: malformed metric/goal/message input, rejected at the boundary
- provider: LLM failures, split into transient (retried) and non-retryable
- cancellation: a caller stopped its own stream
"""

from typing import Any, Optional


class CoachEngineError(Exception):
    """Base class for all coach engine errors."""


class ContextNotFoundError(CoachEngineError, KeyError):
    """Raised when a mutator targets an unknown or expired session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Context not found for session: {session_id}")

    def __str__(self) -> str:
        return self.args[0]


class ValidationError(CoachEngineError, ValueError):
    """Raised for malformed input. Never silently coerced."""


# HTTP statuses that will not succeed on retry
NON_RETRYABLE_STATUSES = {400, 401, 403, 404, 422}


class ProviderError(CoachEngineError):
    """LLM provider failure."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retryable: Optional[bool] = None,
        data: Any = None
    ):
        super().__init__(message)
        self.status = status
        self.data = data
        if retryable is None:
            retryable = status not in NON_RETRYABLE_STATUSES
        self.retryable = retryable

    @property
    def non_retryable(self) -> bool:
        return not self.retryable


class TransientProviderError(ProviderError):
    """Network error, timeout or 5xx. Retried with backoff."""

    def __init__(self, message: str, status: Optional[int] = None, data: Any = None):
        super().__init__(message, status=status, retryable=True, data=data)


class NonRetryableProviderError(ProviderError):
    """Authentication, permission or bad-request failure. Surfaced immediately."""

    def __init__(self, message: str, status: Optional[int] = None, data: Any = None):
        super().__init__(message, status=status, retryable=False, data=data)


def provider_error_from_status(status: int, message: str, data: Any = None) -> ProviderError:
    """Map an HTTP status to the right provider error class."""
    if status in NON_RETRYABLE_STATUSES:
        return NonRetryableProviderError(message, status=status, data=data)
    return TransientProviderError(message, status=status, data=data)


class StreamCancelledError(CoachEngineError):
    """A streaming completion was cancelled by the caller. Not a provider failure."""

    def __init__(self, stream_id: str, partial: str = ""):
        self.stream_id = stream_id
        self.partial = partial
        super().__init__(f"Stream cancelled: {stream_id}")
