"""
Exceptions raised inside the processing state machine.

Neither is a failure of the job in the retry sense: a busy conversation
releases the job for a later pass, and a permanent processing error fails
the job without retry.
"""

from support_pipeline.models.enums import ErrorType


class ProcessingError(Exception):
    """Base exception for processing state machine errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConversationBusyError(ProcessingError):
    """
    Raised when another worker holds the conversation lock.

    The job is released back to pending without consuming an attempt.
    """

    def __init__(self, conversation_id: str):
        super().__init__(
            f"Conversation {conversation_id} is being processed by another worker",
            details={"conversation_id": conversation_id},
        )
        self.conversation_id = conversation_id


class PermanentProcessingError(ProcessingError):
    """
    Raised when a message can never be processed (missing shop, missing row).

    Dead-letters the job immediately.
    """

    def __init__(self, message: str, error_type: ErrorType = ErrorType.INVALID_DATA, details: dict | None = None):
        super().__init__(message, details)
        self.error_type = error_type
