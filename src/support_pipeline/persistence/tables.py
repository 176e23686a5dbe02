"""
SQLAlchemy ORM tables for the Support Pipeline store.

SQLAlchemy 2.0 style (Mapped + mapped_column). Enum columns are stored as
their string values so the same schema runs on PostgreSQL (production) and
SQLite (tests). All timestamps are naive UTC.

Constraints that back pipeline invariants:
- messages.message_id is unique (re-ingestion is a no-op)
- one conversation per (shop_id, customer_email, thread_key)
- at most one active job per message (partial unique index)
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from support_pipeline.models.enums import (
    ConversationStatus,
    EmailStartMode,
    JobStatus,
    MessageStatus,
    UserStatus,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the store's timestamp convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    """Billing owner of one or more shops; holds the usage quota."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    plan: Mapped[Optional[str]] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=UserStatus.ACTIVE.value)
    emails_limit: Mapped[Optional[int]] = mapped_column(Integer)  # NULL = unlimited
    emails_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_extra_emails: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_credits_warning_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    credits_warning_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)


class ShopRow(Base):
    """
    Tenant store configuration.

    Secrets are stored encrypted and only decrypted through the
    CredentialVault at the moment they are needed.
    """

    __tablename__ = "shops"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Mailbox
    imap_host: Mapped[Optional[str]] = mapped_column(String(255))
    imap_port: Mapped[int] = mapped_column(Integer, nullable=False, default=993)
    imap_user: Mapped[Optional[str]] = mapped_column(String(320))
    imap_password_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    smtp_host: Mapped[Optional[str]] = mapped_column(String(255))
    smtp_port: Mapped[int] = mapped_column(Integer, nullable=False, default=465)
    smtp_user: Mapped[Optional[str]] = mapped_column(String(320))
    smtp_password_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    email_start_mode: Mapped[str] = mapped_column(
        String(40), nullable=False, default=EmailStartMode.ALL_RECENT.value
    )
    email_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_email_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    email_sync_error: Mapped[Optional[str]] = mapped_column(Text)

    # Commerce platform
    shopify_domain: Mapped[Optional[str]] = mapped_column(String(255))
    shopify_client_id: Mapped[Optional[str]] = mapped_column(String(255))
    shopify_client_secret_encrypted: Mapped[Optional[str]] = mapped_column(Text)

    # Reply policy
    attendant_name: Mapped[Optional[str]] = mapped_column(String(255))
    support_email: Mapped[Optional[str]] = mapped_column(String(320))
    tone_of_voice: Mapped[str] = mapped_column(String(50), nullable=False, default="friendly")
    store_description: Mapped[Optional[str]] = mapped_column(Text)
    delivery_time: Mapped[Optional[str]] = mapped_column(String(255))
    dispatch_time: Mapped[Optional[str]] = mapped_column(String(255))
    warranty_info: Mapped[Optional[str]] = mapped_column(Text)
    retention_coupon_code: Mapped[Optional[str]] = mapped_column(String(100))
    retention_coupon_percent: Mapped[Optional[int]] = mapped_column(Integer)
    signature_html: Mapped[Optional[str]] = mapped_column(Text)
    is_cod: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fallback_message_template: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    @property
    def has_mailbox(self) -> bool:
        return bool(
            self.imap_host
            and self.imap_user
            and self.imap_password_encrypted
            and self.smtp_host
            and self.smtp_user
            and self.smtp_password_encrypted
        )

    @property
    def has_commerce(self) -> bool:
        return bool(self.shopify_domain and self.shopify_client_secret_encrypted)


class ConversationRow(Base):
    """One customer thread for one shop."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("shop_id", "customer_email", "thread_key", name="uq_conversation_thread"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    shop_id: Mapped[str] = mapped_column(ForeignKey("shops.id"), nullable=False, index=True)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    subject: Mapped[Optional[str]] = mapped_column(Text)
    thread_key: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    category: Mapped[Optional[str]] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ConversationStatus.OPEN.value)
    language: Mapped[Optional[str]] = mapped_column(String(10))
    data_request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retention_contact_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shopify_order_id: Mapped[Optional[str]] = mapped_column(String(100))
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)


class MessageRow(Base):
    """One inbound or outbound email of a conversation."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_status_direction", "status", "direction"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), nullable=False)
    shop_id: Mapped[str] = mapped_column(ForeignKey("shops.id"), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=MessageStatus.PENDING.value)
    message_id: Mapped[str] = mapped_column(String(998), nullable=False, unique=True)
    in_reply_to: Mapped[Optional[str]] = mapped_column(String(998))
    references: Mapped[Optional[str]] = mapped_column(Text)
    from_email: Mapped[str] = mapped_column(String(320), nullable=False)
    from_name: Mapped[Optional[str]] = mapped_column(String(255))
    to_email: Mapped[Optional[str]] = mapped_column(String(320))
    subject: Mapped[Optional[str]] = mapped_column(Text)
    body_text: Mapped[Optional[str]] = mapped_column(Text)
    body_html: Mapped[Optional[str]] = mapped_column(Text)
    headers: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    has_attachments: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    category: Mapped[Optional[str]] = mapped_column(String(50))
    category_confidence: Mapped[Optional[float]] = mapped_column(Float)
    tokens_input: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_output: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    was_auto_replied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    credit_reserved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    replied_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    forwarded_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)


_ACTIVE_JOB_CLAUSE = text(
    f"status IN ('{JobStatus.PENDING.value}', '{JobStatus.PROCESSING.value}')"
)


class JobRow(Base):
    """Queued unit of work referencing one message."""

    __tablename__ = "job_queue"
    __table_args__ = (
        Index("ix_job_queue_claim", "status", "priority", "created_at"),
        Index(
            "uq_job_queue_active_message",
            "message_id",
            unique=True,
            postgresql_where=_ACTIVE_JOB_CLAUSE,
            sqlite_where=_ACTIVE_JOB_CLAUSE,
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    shop_id: Mapped[str] = mapped_column(ForeignKey("shops.id"), nullable=False)
    message_id: Mapped[str] = mapped_column(ForeignKey("messages.id"), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.PENDING.value)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    error_type: Mapped[Optional[str]] = mapped_column(String(50))
    error_stack: Mapped[Optional[str]] = mapped_column(Text)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)


class ProcessingEventRow(Base):
    """Structured audit record of one state transition."""

    __tablename__ = "processing_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    shop_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    conversation_id: Mapped[Optional[str]] = mapped_column(String(36))
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    tokens_input: Mapped[Optional[int]] = mapped_column(Integer)
    tokens_output: Mapped[Optional[int]] = mapped_column(Integer)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
