"""
Persistence-layer exceptions.

Raised by the Job Queue and Message Store when an operation conflicts with
an invariant the store enforces.
"""


class StoreError(Exception):
    """
    Base exception for store and queue errors.

    Carries a human-readable message plus structured details for logging.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DuplicateJobError(StoreError):
    """
    Raised by JobQueue.enqueue when the message already has an active job.

    Callers treat this as "already queued" and skip.
    """

    def __init__(self, message_id: str):
        super().__init__(
            f"Message {message_id} already has an active job",
            details={"message_id": message_id},
        )
        self.message_id = message_id


class JobNotFoundError(StoreError):
    """Raised when a job transition targets a job that does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", details={"job_id": job_id})
        self.job_id = job_id
