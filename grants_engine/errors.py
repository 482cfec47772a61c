"""
Error taxonomy for the scraping engine.

Every error carries a stable ``code`` (used by the control API and stored on
failed jobs as ``error_type``) and a ``retryable`` flag consulted by the
scheduler's retry policy.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "internal"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code.upper(), "message": self.message}


class ConfigError(EngineError):
    """Invalid or missing configuration. Fatal at startup."""

    code = "config"

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class NotFoundError(EngineError):
    """Unknown source or job id."""

    code = "not_found"


class SourceBusyError(EngineError):
    """A job is already active for the source."""

    code = "source_busy"


class SourceInactiveError(EngineError):
    """Manual trigger of a paused or disabled source."""

    code = "source_inactive"


class BadRequestError(EngineError):
    """Malformed request to the control API."""

    code = "bad_request"


class InvalidTransitionError(EngineError):
    """Attempt to move a job out of a terminal state."""

    code = "invalid_transition"


class FetchError(EngineError):
    """Network failure, timeout or non-2xx response."""

    code = "fetch"
    retryable = True

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        kind: str = "network",
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.kind = kind


class RateLimitTimeoutError(FetchError):
    """Rate limiter could not grant a permit within its wait bound."""

    code = "rate_limit_timeout"

    def __init__(self, message: str, source_id: Optional[str] = None):
        super().__init__(message, kind="timeout")
        self.source_id = source_id


class ParseError(EngineError):
    """Selectors produced no structured data from a non-empty page."""

    code = "parse"
    retryable = True

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class ProcessorError(EngineError):
    """Normalization or catalog write failure."""

    code = "processor"
    retryable = True


RETRYABLE_ERRORS = (FetchError, ParseError, ProcessorError)
