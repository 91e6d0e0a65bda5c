"""Error taxonomy and classification for the processing pipeline."""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
import openai

from voicenotes.config import settings


class ErrorCategory(Enum):
    """Diagnostic category of a processing failure."""
    VALIDATION = "validation"
    INVALID_FILE = "invalid_file"
    FILE_TOO_LARGE = "file_too_large"
    CONTEXT_LENGTH = "context_length"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    SCHEMA_VALIDATION = "schema_validation"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Never worth a second attempt
NON_RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.VALIDATION,
    ErrorCategory.INVALID_FILE,
    ErrorCategory.FILE_TOO_LARGE,
    ErrorCategory.CONTEXT_LENGTH,
    ErrorCategory.CIRCUIT_OPEN,
})


class ProcessingError(Exception):
    """Base class for pipeline errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    @property
    def retryable(self) -> bool:
        return self.category not in NON_RETRYABLE_CATEGORIES


class AudioValidationError(ProcessingError):
    """Audio is empty, malformed or otherwise unusable."""
    category = ErrorCategory.VALIDATION


class InvalidFileError(ProcessingError):
    category = ErrorCategory.INVALID_FILE


class FileTooLargeError(ProcessingError):
    category = ErrorCategory.FILE_TOO_LARGE


class ContextLengthError(ProcessingError):
    category = ErrorCategory.CONTEXT_LENGTH


class RateLimitExceededError(ProcessingError):
    """Local admission control denied the request."""
    category = ErrorCategory.RATE_LIMIT


class CircuitOpenError(ProcessingError):
    """The circuit breaker is rejecting calls to an external service."""
    category = ErrorCategory.CIRCUIT_OPEN


class ServiceTimeoutError(ProcessingError):
    """An external call exceeded its hard timeout."""
    category = ErrorCategory.TIMEOUT


class SchemaValidationError(ProcessingError):
    """A structured result could not be validated or reconstructed."""
    category = ErrorCategory.SCHEMA_VALIDATION


@dataclass
class ErrorInfo:
    """Classification of a single failure."""

    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    message: str

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "message": self.message,
        }


_SEVERITY = {
    ErrorCategory.AUTHENTICATION: ErrorSeverity.CRITICAL,
    ErrorCategory.QUOTA: ErrorSeverity.CRITICAL,
    ErrorCategory.CIRCUIT_OPEN: ErrorSeverity.HIGH,
    ErrorCategory.SERVER_ERROR: ErrorSeverity.HIGH,
    ErrorCategory.VALIDATION: ErrorSeverity.MEDIUM,
    ErrorCategory.INVALID_FILE: ErrorSeverity.MEDIUM,
    ErrorCategory.FILE_TOO_LARGE: ErrorSeverity.MEDIUM,
    ErrorCategory.CONTEXT_LENGTH: ErrorSeverity.MEDIUM,
    ErrorCategory.SCHEMA_VALIDATION: ErrorSeverity.MEDIUM,
    ErrorCategory.UNKNOWN: ErrorSeverity.MEDIUM,
}

# Ordered: first match wins
_MESSAGE_PATTERNS = [
    (ErrorCategory.CIRCUIT_OPEN, ("circuit breaker is open",)),
    (ErrorCategory.FILE_TOO_LARGE, ("file_too_large", "file too large", "413", "maximum content size")),
    (ErrorCategory.INVALID_FILE, ("invalid_file", "invalid file", "unsupported format", "invalid file format")),
    (ErrorCategory.CONTEXT_LENGTH, ("context_length", "context length", "maximum context", "too many tokens")),
    (ErrorCategory.QUOTA, ("quota", "insufficient_quota", "billing")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "rate_limit", "429", "too many requests")),
    (ErrorCategory.AUTHENTICATION, ("unauthorized", "api key", "authentication", "401", "403", "forbidden")),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out")),
    (ErrorCategory.NETWORK, ("network", "connection", "econnreset", "enotfound", "fetch failed", "socket")),
    (ErrorCategory.SERVER_ERROR, ("500", "502", "503", "504", "internal server error", "bad gateway", "service unavailable")),
    (ErrorCategory.SCHEMA_VALIDATION, ("validation", "schema", "json")),
    (ErrorCategory.CLIENT_ERROR, ("400", "404", "bad request", "not found")),
]


def _category_from_type(error: BaseException) -> Optional[ErrorCategory]:
    if isinstance(error, ProcessingError):
        return error.category

    # openai SDK error classes; quota is reported as a 429 with its own code
    if isinstance(error, openai.RateLimitError):
        if "quota" in str(error).lower():
            return ErrorCategory.QUOTA
        return ErrorCategory.RATE_LIMIT
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorCategory.AUTHENTICATION
    if isinstance(error, openai.APITimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, openai.APIConnectionError):
        return ErrorCategory.NETWORK
    if isinstance(error, openai.InternalServerError):
        return ErrorCategory.SERVER_ERROR
    if isinstance(error, openai.BadRequestError):
        # Sub-classified from the message below
        return None

    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 413:
            return ErrorCategory.FILE_TOO_LARGE
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status in (401, 403):
            return ErrorCategory.AUTHENTICATION
        if status >= 500:
            return ErrorCategory.SERVER_ERROR
        return None
    if isinstance(error, (httpx.NetworkError, ConnectionError)):
        return ErrorCategory.NETWORK
    return None


def categorize_message(message: str) -> ErrorCategory:
    """Categorize an error from its message text alone."""
    text = message.lower()
    for category, needles in _MESSAGE_PATTERNS:
        if any(needle in text for needle in needles):
            return category
    return ErrorCategory.UNKNOWN


def classify_error(error: BaseException) -> ErrorInfo:
    """Classify an exception into category, severity and retryability."""
    message = str(error) or error.__class__.__name__
    category = _category_from_type(error)
    if category is None:
        category = categorize_message(message)
        if category == ErrorCategory.UNKNOWN and isinstance(error, openai.BadRequestError):
            category = ErrorCategory.CLIENT_ERROR

    return ErrorInfo(
        category=category,
        severity=_SEVERITY.get(category, ErrorSeverity.LOW),
        retryable=category not in NON_RETRYABLE_CATEGORIES,
        message=message,
    )


def get_retry_delay(
    attempt: int,
    base_delay_ms: Optional[int] = None,
    max_delay_ms: Optional[int] = None,
) -> float:
    """Backoff delay in seconds before retry number ``attempt`` (1-based).

    delay = min(base * 2^(attempt-1) + U(0, 1000ms), max_delay)
    """
    base = settings.RETRY_BASE_DELAY_MS if base_delay_ms is None else base_delay_ms
    cap = settings.RETRY_MAX_DELAY_MS if max_delay_ms is None else max_delay_ms
    delay_ms = min(base * (2 ** (attempt - 1)) + random.random() * 1000, cap)
    return delay_ms / 1000.0
