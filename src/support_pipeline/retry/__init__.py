"""
Job retry policy.

Failures of a processing attempt are classified as retryable or permanent;
retryable ones are rescheduled by the job queue with exponential backoff
and jitter until max_attempts, then dead-lettered.

Main Components:
    - BackoffPolicy: Delay before the next attempt
    - classify_error: Exception -> ErrorClassification(retryable, error_type)
    - is_transient_error: Stored error text -> bool (janitor DLQ retry)
    - ConversationBusyError / PermanentProcessingError: processor outcomes
      that are not ordinary failures
"""

from support_pipeline.retry.backoff import BackoffPolicy
from support_pipeline.retry.classification import (
    ErrorClassification,
    classify_error,
    is_transient_error,
)
from support_pipeline.retry.exceptions import (
    ConversationBusyError,
    PermanentProcessingError,
    ProcessingError,
)

__all__ = [
    "BackoffPolicy",
    "ErrorClassification",
    "classify_error",
    "is_transient_error",
    "ProcessingError",
    "ConversationBusyError",
    "PermanentProcessingError",
]
