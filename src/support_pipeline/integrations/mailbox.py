"""
Mailbox Gateway interface.

The IMAP/SMTP transport is implemented outside this package; the pipeline
only depends on this narrow fetch/send contract.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from support_pipeline.models.mail_models import (
    InboundEmail,
    MailboxCredentials,
    OutgoingEmail,
    SentEmail,
)


class MailboxGateway(ABC):
    """
    Abstract mailbox transport.

    Responsibilities:
    - Fetch unseen messages since a date, oldest first
    - Send one message through the shop's SMTP account
    - Fail with MailboxAuthError for rejected credentials and with
      MailboxConnectionError for transient network problems

    Does NOT handle:
    - Deduplication (the ingestion worker dedups by message id)
    - Threading headers (built by the processor)
    """

    @abstractmethod
    async def fetch_unseen(
        self,
        credentials: MailboxCredentials,
        max_count: int,
        since: datetime,
    ) -> list[InboundEmail]:
        """
        Fetch up to max_count unseen messages received on/after `since`.

        Raises:
            MailboxAuthError: Credentials rejected
            MailboxConnectionError: Server unreachable or connection dropped
        """

    @abstractmethod
    async def send(self, credentials: MailboxCredentials, email: OutgoingEmail) -> SentEmail:
        """
        Send one message.

        If `email.message_id` is set the gateway must use it as the
        Message-ID header, so a resend after a crash dedupes downstream.

        Returns:
            SentEmail with the message id actually used

        Raises:
            MailboxAuthError: Credentials rejected
            MailboxConnectionError: Transient failure, safe to retry
            MailboxSendError: Message refused permanently
        """
