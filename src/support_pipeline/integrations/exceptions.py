"""
Exceptions raised by the external collaborators.

Implementations of the Mailbox Gateway, Order Lookup, Credential Vault and
Extra Package Biller live outside this package; they must raise these
types so the queue worker can tell retryable failures from permanent ones.
"""


class IntegrationError(Exception):
    """
    Base exception for all collaborator errors.

    All collaborator-specific exceptions inherit from this to allow catching
    any integration failure with a single except clause.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class MailboxError(IntegrationError):
    """Base exception for IMAP/SMTP failures."""

    pass


class MailboxAuthError(MailboxError):
    """
    Raised when the mailbox rejects the shop's credentials.

    Permanent: retrying with the same credentials cannot succeed.
    """

    pass


class MailboxConnectionError(MailboxError):
    """
    Raised on network-level mailbox failures (DNS, refused, reset, timeout).

    Transient: retried with backoff.
    """

    pass


class MailboxSendError(MailboxError):
    """
    Raised when the SMTP server refuses a message (bad recipient, policy).

    Permanent for this message.
    """

    pass


class OrderLookupError(IntegrationError):
    """
    Raised when the commerce platform cannot be queried.

    A not-found order is NOT an error (FindOrder returns None).
    """

    pass


class VaultError(IntegrationError):
    """Base exception for credential decryption failures."""

    pass


class MissingKeyError(VaultError):
    """Raised when the encryption master key is not configured."""

    pass


class BillingError(IntegrationError):
    """Raised by the extra-package biller; never propagates into the pipeline."""

    pass


class CollaboratorNotConfiguredError(IntegrationError):
    """Raised when a required collaborator implementation was not configured."""

    pass
