"""
Mailbox data models exchanged with the Mailbox Gateway.

These are transport-level shapes: what a fetch returns and what a send
accepts. They carry no pipeline state.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class MailboxCredentials(BaseModel):
    """Decrypted IMAP/SMTP credentials for one shop mailbox."""

    model_config = ConfigDict(frozen=True)

    imap_host: str
    imap_port: int = 993
    imap_user: str
    imap_password: str = Field(..., repr=False)
    smtp_host: str
    smtp_port: int = 465
    smtp_user: str
    smtp_password: str = Field(..., repr=False)

    @property
    def own_addresses(self) -> set[str]:
        """Addresses the shop sends from; mail from these is never ingested."""
        return {self.imap_user.lower(), self.smtp_user.lower()}


class CommerceCredentials(BaseModel):
    """Decrypted commerce-platform credentials for order lookups."""

    model_config = ConfigDict(frozen=True)

    shop_domain: str
    client_id: Optional[str] = None
    client_secret: str = Field(..., repr=False)


class Attachment(BaseModel):
    filename: Optional[str] = None
    content_type: str = "application/octet-stream"
    content: bytes = Field(default=b"", repr=False)

    @property
    def is_image(self) -> bool:
        return self.content_type.lower().startswith("image/")


class InboundEmail(BaseModel):
    """
    One unseen email as returned by MailboxGateway.fetch_unseen.

    `message_id` is the provider Message-ID header and the global dedup key.
    `headers` holds the raw automation headers (Auto-Submitted, Precedence,
    X-Autoreply, List-Unsubscribe, ...) used by the auto-responder filter.
    """

    message_id: str
    from_email: str
    from_name: Optional[str] = None
    to_email: Optional[str] = None
    subject: str = ""
    text_body: Optional[str] = None
    html_body: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    received_at: datetime
    headers: dict[str, str] = Field(default_factory=dict)
    attachments: list[Attachment] = Field(default_factory=list)


class OutgoingEmail(BaseModel):
    """Reply or notification handed to MailboxGateway.send."""

    to: str
    subject: str
    text_body: str
    html_body: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    from_name: Optional[str] = None
    message_id: Optional[str] = Field(
        default=None,
        description="Locally generated Message-ID; gateways should reuse it so resends dedupe",
    )


class SentEmail(BaseModel):
    message_id: str
