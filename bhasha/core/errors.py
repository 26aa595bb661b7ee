"""Error taxonomy and classification for Bhasha.

User-facing operations raise the exceptions defined here directly. Background
work (pipeline steps, polling, scheduled tasks) catches them and records the
message on the owning record; ``classify_error`` decides whether a failure is
worth retrying.
"""

import errno
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import structlog

log = structlog.get_logger()


class BhashaError(Exception):
    """Base class for all Bhasha errors."""


class ValidationError(BhashaError):
    """Malformed or out-of-range input."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class AuthorizationError(BhashaError):
    """Acting user does not own the target resource."""


class DuplicateContentError(BhashaError):
    """New content is too similar to an existing item."""

    def __init__(self, match_id: str, similarity: float):
        self.match_id = match_id
        self.similarity = similarity
        super().__init__(
            f"Similar content already exists (id: {match_id}, "
            f"similarity: {round(similarity * 100)}%)"
        )


class NotFoundError(BhashaError):
    """Referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found" + (f": {entity_id}" if entity_id else ""))


class ProviderError(BhashaError):
    """Non-2xx or malformed response from an external provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PipelineStepError(BhashaError):
    """A pipeline step failed."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"{step}: {message}")


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""

    TRANSIENT = "transient"    # Network, timeout, 5xx/429 - retry
    VALIDATION = "validation"  # Bad input - surface, never retry
    FATAL = "fatal"            # Missing records, auth, 4xx - no retry


@dataclass
class ClassifiedError:
    """A classified error with handling metadata."""

    category: ErrorCategory
    message: str
    retryable: bool
    suggestion: Optional[str] = None
    original_exception: Optional[Exception] = None

    def __str__(self) -> str:
        parts = [self.message]
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " | ".join(parts)


TRANSIENT_ERRNO = {
    errno.EAGAIN,
    errno.EINTR,
    errno.EBUSY,
    errno.ETIMEDOUT,
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.EPIPE,
    errno.ENETUNREACH,
    errno.EHOSTUNREACH,
}

ERROR_SUGGESTIONS = {
    "not configured": "Set the provider API key in bhasha.toml or the environment",
    "not authorized": "Only the owner can modify this record",
    "not found": "Check the identifier; the record may have been deleted",
    "connection refused": "Check that the provider endpoint is reachable",
    "timeout": "Provider did not answer in time - the next poll will retry",
    "rate limit": "Provider rate limited the request - retry later",
    "empty dataset": "Build the dataset from published content before training",
    "database is locked": "Another writer holds the database - retry shortly",
}


def _get_suggestion(error_msg: str) -> Optional[str]:
    for pattern, suggestion in ERROR_SUGGESTIONS.items():
        if pattern in error_msg:
            return suggestion
    return None


def classify_error(error: Exception) -> ClassifiedError:
    """Classify an exception for retry and logging decisions.

    Args:
        error: The exception to classify

    Returns:
        ClassifiedError with category, retryability and a suggestion
    """
    error_msg = str(error).lower()

    if isinstance(error, ProviderError):
        category = ErrorCategory.TRANSIENT if error.retryable else ErrorCategory.FATAL
        return ClassifiedError(
            category=category,
            message=str(error),
            retryable=error.retryable,
            suggestion=_get_suggestion(error_msg),
            original_exception=error,
        )

    if isinstance(error, (ValidationError, DuplicateContentError)):
        return ClassifiedError(
            category=ErrorCategory.VALIDATION,
            message=str(error),
            retryable=False,
            suggestion=_get_suggestion(error_msg),
            original_exception=error,
        )

    if isinstance(error, (AuthorizationError, NotFoundError, PipelineStepError)):
        return ClassifiedError(
            category=ErrorCategory.FATAL,
            message=str(error),
            retryable=False,
            suggestion=_get_suggestion(error_msg),
            original_exception=error,
        )

    if isinstance(error, (ConnectionError, TimeoutError)):
        return ClassifiedError(
            category=ErrorCategory.TRANSIENT,
            message=str(error),
            retryable=True,
            suggestion=_get_suggestion(error_msg),
            original_exception=error,
        )

    if isinstance(error, OSError) and error.errno in TRANSIENT_ERRNO:
        return ClassifiedError(
            category=ErrorCategory.TRANSIENT,
            message=str(error),
            retryable=True,
            suggestion=_get_suggestion(error_msg),
            original_exception=error,
        )

    if "database is locked" in error_msg:
        return ClassifiedError(
            category=ErrorCategory.TRANSIENT,
            message=str(error),
            retryable=True,
            suggestion=_get_suggestion(error_msg),
            original_exception=error,
        )

    # Unknown errors are not retried
    return ClassifiedError(
        category=ErrorCategory.FATAL,
        message=str(error),
        retryable=False,
        suggestion=_get_suggestion(error_msg),
        original_exception=error,
    )


def is_retryable(error: Exception) -> bool:
    """Quick check if an error should be retried."""
    return classify_error(error).retryable
