"""
Retryable vs permanent classification of job failures.

Used by the queue worker (not the queue itself) to decide whether a failed
job is rescheduled or dead-lettered, and by the janitor to pick transient
dead-letters for another round.

Resolution order:
    1. Known exception types (collaborator and processing errors)
    2. HTTP status of httpx errors that escaped a collaborator
    3. Substring patterns in the error message
    4. Default: retryable (never fail toward silent loss)
"""

from dataclasses import dataclass
from typing import Iterable

import httpx

from support_pipeline.integrations.exceptions import (
    BillingError,
    MailboxAuthError,
    MailboxConnectionError,
    MailboxError,
    MailboxSendError,
    MissingKeyError,
    OrderLookupError,
    VaultError,
)
from support_pipeline.llm.exceptions import (
    LLMAuthError,
    LLMClientError,
    LLMConnectionError,
    LLMGenerationError,
    LLMRateLimitError,
    LLMServerError,
    LLMTimeoutError,
)
from support_pipeline.models.enums import ErrorType
from support_pipeline.retry.exceptions import PermanentProcessingError


RETRYABLE_PATTERNS: tuple[str, ...] = (
    "rate_limit",
    "rate limit",
    "429",
    "timeout",
    "timed out",
    "network",
    "connection",
    "econnreset",
    "overloaded",
    "502",
    "503",
    "504",
    "529",
)

PERMANENT_PATTERNS: tuple[str, ...] = (
    "invalid_email",
    "spam",
    "401",
    "403",
    "forbidden",
    "unauthorized",
    "404",
)

DEFAULT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "overloaded",
    "timeout",
    "rate_limit",
    "connection",
    "503",
    "502",
    "504",
    "529",
    "network",
    "econnreset",
)


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of classifying one failure."""

    retryable: bool
    error_type: ErrorType

    @property
    def is_rate_limit(self) -> bool:
        return self.error_type == ErrorType.RATE_LIMIT


def _error_type_from_message(text: str) -> ErrorType:
    lowered = text.lower()
    if "rate_limit" in lowered or "rate limit" in lowered or "429" in lowered:
        return ErrorType.RATE_LIMIT
    if "timeout" in lowered or "timed out" in lowered:
        return ErrorType.TIMEOUT
    if "network" in lowered or "connection" in lowered or "econnreset" in lowered:
        return ErrorType.NETWORK_ERROR
    if "invalid" in lowered:
        return ErrorType.INVALID_DATA
    if "spam" in lowered:
        return ErrorType.SPAM
    if "401" in lowered or "403" in lowered or "forbidden" in lowered or "unauthorized" in lowered:
        return ErrorType.AUTH_ERROR
    if "shopify" in lowered or "order" in lowered:
        return ErrorType.COMMERCE_ERROR
    if "anthropic" in lowered or "claude" in lowered or "llm" in lowered:
        return ErrorType.AI_ERROR
    if "smtp" in lowered or "send" in lowered:
        return ErrorType.SMTP_ERROR
    if "imap" in lowered:
        return ErrorType.IMAP_ERROR
    return ErrorType.UNKNOWN_ERROR


def _classify_status(status_code: int) -> ErrorClassification:
    if status_code == 429:
        return ErrorClassification(True, ErrorType.RATE_LIMIT)
    if status_code in (401, 403):
        return ErrorClassification(False, ErrorType.AUTH_ERROR)
    if status_code >= 500:
        return ErrorClassification(True, ErrorType.NETWORK_ERROR)
    return ErrorClassification(False, ErrorType.INVALID_DATA)


def classify_error(exc: BaseException) -> ErrorClassification:
    """
    Classify a failure raised while processing a job.

    Args:
        exc: The exception that escaped the processor

    Returns:
        ErrorClassification with retryability and error type
    """
    # 1. Known types
    if isinstance(exc, PermanentProcessingError):
        return ErrorClassification(False, exc.error_type)
    if isinstance(exc, LLMRateLimitError):
        return ErrorClassification(True, ErrorType.RATE_LIMIT)
    if isinstance(exc, LLMTimeoutError):
        return ErrorClassification(True, ErrorType.TIMEOUT)
    if isinstance(exc, (LLMConnectionError, LLMServerError)):
        return ErrorClassification(True, ErrorType.AI_ERROR)
    if isinstance(exc, LLMAuthError):
        return ErrorClassification(False, ErrorType.AUTH_ERROR)
    if isinstance(exc, LLMGenerationError):
        return ErrorClassification(False, ErrorType.AI_ERROR)
    if isinstance(exc, MailboxAuthError):
        return ErrorClassification(False, ErrorType.AUTH_ERROR)
    if isinstance(exc, MailboxConnectionError):
        return ErrorClassification(True, ErrorType.SMTP_ERROR)
    if isinstance(exc, MailboxSendError):
        return ErrorClassification(False, ErrorType.SMTP_ERROR)
    if isinstance(exc, (MissingKeyError, VaultError)):
        return ErrorClassification(False, ErrorType.AUTH_ERROR)

    # 2. Raw HTTP errors
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code)
    if isinstance(exc, httpx.TimeoutException):
        return ErrorClassification(True, ErrorType.TIMEOUT)
    if isinstance(exc, httpx.TransportError):
        return ErrorClassification(True, ErrorType.NETWORK_ERROR)
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorClassification(True, ErrorType.NETWORK_ERROR)

    # 3. Message patterns
    text = str(exc).lower()
    error_type = _error_type_from_message(text)
    if isinstance(exc, OrderLookupError):
        error_type = ErrorType.COMMERCE_ERROR
    elif isinstance(exc, (MailboxError, BillingError)) and error_type == ErrorType.UNKNOWN_ERROR:
        error_type = ErrorType.SMTP_ERROR
    elif isinstance(exc, LLMClientError) and error_type == ErrorType.UNKNOWN_ERROR:
        error_type = ErrorType.AI_ERROR

    if any(pattern in text for pattern in RETRYABLE_PATTERNS):
        return ErrorClassification(True, error_type)
    if any(pattern in text for pattern in PERMANENT_PATTERNS):
        return ErrorClassification(False, error_type)

    # 4. Default
    return ErrorClassification(True, error_type)


def is_transient_error(message: str | None, patterns: Iterable[str] = DEFAULT_TRANSIENT_PATTERNS) -> bool:
    """Whether a stored error message matches the transient pattern set."""
    if not message:
        return False
    lowered = message.lower()
    return any(pattern.lower() in lowered for pattern in patterns)
