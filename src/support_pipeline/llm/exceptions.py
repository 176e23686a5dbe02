"""
Custom exceptions for the LLM client layer.

These exceptions let the queue worker distinguish failure modes of the
Classifier/Responder provider: rate limits stop the batch, connection and
server errors are retried with backoff, auth and request errors are
permanent.
"""


class LLMClientError(Exception):
    """
    Base exception for all LLM client errors.

    All LLM-specific exceptions inherit from this to allow catching
    any LLM-related error with a single except clause.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class LLMConnectionError(LLMClientError):
    """
    Raised when unable to connect to the LLM provider.

    Includes network errors, DNS failures, resets.
    Retried by the job queue with backoff.
    """

    pass


class LLMTimeoutError(LLMConnectionError):
    """Raised when the provider does not answer within the timeout."""

    pass


class LLMRateLimitError(LLMClientError):
    """
    Raised when the provider rate-limits the request (HTTP 429).

    The queue worker stops its current batch on this error instead of
    failing the remaining jobs one by one.
    """

    pass


class LLMServerError(LLMClientError):
    """
    Raised on provider-side failures (5xx, 529 overloaded).

    Retried by the job queue with backoff.
    """

    pass


class LLMAuthError(LLMClientError):
    """Raised when the provider rejects the API key (401/403). Permanent."""

    pass


class LLMGenerationError(LLMClientError):
    """
    Raised when the provider answers but the output is unusable.

    Examples:
    - Invalid request parameters (4xx other than auth/rate limit)
    - Empty completion
    - Non-JSON body
    """

    pass
