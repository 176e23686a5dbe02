"""
Message Store: durable record of shops, conversations and messages.

Owns every Message status transition. All writes are narrow conditional
updates keyed by row id (status guards where a transition must not race),
each in its own short session; nothing is held open across a call to an
external collaborator.
"""

from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from support_pipeline.heuristics.text import reference_ids, thread_key
from support_pipeline.models.enums import (
    ConversationStatus,
    Direction,
    JobStatus,
    MessageStatus,
    UserStatus,
)
from support_pipeline.models.mail_models import InboundEmail
from support_pipeline.models.pipeline_models import HistoryEntry, ShopPolicy
from support_pipeline.persistence.database import Database
from support_pipeline.persistence.tables import (
    ConversationRow,
    JobRow,
    MessageRow,
    ProcessingEventRow,
    ShopRow,
    UserRow,
    utc_now,
)

logger = structlog.get_logger(__name__)

_ACTIVE_JOB_STATUSES = [status.value for status in JobStatus.active()]
_CLAIMABLE = [MessageStatus.PENDING.value, MessageStatus.PENDING_CREDITS.value]
_TERMINAL = {status.value for status in MessageStatus.terminal()}


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def shop_policy(shop: ShopRow) -> ShopPolicy:
    """Reply policy view of a shop row."""
    return ShopPolicy(
        shop_id=shop.id,
        name=shop.name,
        attendant_name=shop.attendant_name,
        support_email=shop.support_email,
        tone_of_voice=shop.tone_of_voice or "friendly",
        store_description=shop.store_description,
        delivery_time=shop.delivery_time,
        dispatch_time=shop.dispatch_time,
        warranty_info=shop.warranty_info,
        retention_coupon_code=shop.retention_coupon_code,
        retention_coupon_percent=shop.retention_coupon_percent,
        signature_html=shop.signature_html,
        is_cod=shop.is_cod,
        fallback_message_template=shop.fallback_message_template,
    )


class MessageStore:
    """
    Store operations used by the workers.

    Responsibilities:
    - Shop/user reads and sync bookkeeping
    - Conversation resolution (threading headers first, then subject key)
    - Inbound/outbound message persistence and status transitions
    - History and pending-message queries
    - Janitor and credit-recovery queries
    - Processing event log
    """

    def __init__(self, database: Database):
        self.database = database

    # ------------------------------------------------------------------
    # Shops & users
    # ------------------------------------------------------------------

    async def list_shops_for_ingestion(self) -> list[ShopRow]:
        """Active shops with a mailbox configured, never-synced first, then oldest sync."""
        async with self.database.session() as session:
            rows = await session.scalars(
                select(ShopRow)
                .where(
                    ShopRow.is_active.is_(True),
                    ShopRow.imap_host.is_not(None),
                    ShopRow.imap_password_encrypted.is_not(None),
                )
                .order_by(ShopRow.last_email_sync_at.asc().nulls_first(), ShopRow.created_at.asc())
            )
            return [shop for shop in rows.all() if shop.has_mailbox]

    async def get_shop(self, shop_id: str) -> Optional[ShopRow]:
        async with self.database.session() as session:
            return await session.get(ShopRow, shop_id)

    async def get_user(self, user_id: str) -> Optional[UserRow]:
        async with self.database.session() as session:
            return await session.get(UserRow, user_id)

    async def record_sync_success(self, shop_id: str, synced_at: Optional[datetime] = None) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(ShopRow)
                .where(ShopRow.id == shop_id)
                .values(last_email_sync_at=synced_at or utc_now(), email_sync_error=None)
            )

    async def record_sync_error(self, shop_id: str, error: str) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(ShopRow)
                .where(ShopRow.id == shop_id)
                .values(email_sync_error=error[:2000], last_email_sync_at=utc_now())
            )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRow]:
        async with self.database.session() as session:
            return await session.get(ConversationRow, conversation_id)

    async def resolve_conversation(
        self,
        shop_id: str,
        customer_email: str,
        customer_name: Optional[str],
        subject: Optional[str],
        in_reply_to: Optional[str] = None,
        references: Optional[str] = None,
        message_at: Optional[datetime] = None,
    ) -> ConversationRow:
        """
        Find or create the conversation an inbound email belongs to.

        Threading headers pointing at a stored message of the same shop win;
        otherwise (shop, customer email, normalized subject) is the key.
        Losing a concurrent create re-reads the winner.
        """
        message_at = to_naive_utc(message_at) or utc_now()
        key = thread_key(subject)
        customer_email = customer_email.lower()

        async with self.database.session() as session:
            conversation: Optional[ConversationRow] = None
            referenced = reference_ids(in_reply_to, references)
            if referenced:
                conversation_id = await session.scalar(
                    select(MessageRow.conversation_id)
                    .where(MessageRow.shop_id == shop_id, MessageRow.message_id.in_(referenced))
                    .order_by(MessageRow.created_at.desc())
                    .limit(1)
                )
                if conversation_id:
                    conversation = await session.get(ConversationRow, conversation_id)

            if conversation is None:
                conversation = await session.scalar(
                    select(ConversationRow).where(
                        ConversationRow.shop_id == shop_id,
                        ConversationRow.customer_email == customer_email,
                        ConversationRow.thread_key == key,
                    )
                )

            if conversation is not None:
                conversation.last_message_at = message_at
                if conversation.status == ConversationStatus.REPLIED.value:
                    conversation.status = ConversationStatus.OPEN.value
                if customer_name and not conversation.customer_name:
                    conversation.customer_name = customer_name
                return conversation

        try:
            async with self.database.session() as session:
                conversation = ConversationRow(
                    shop_id=shop_id,
                    customer_email=customer_email,
                    customer_name=customer_name,
                    subject=subject,
                    thread_key=key,
                    status=ConversationStatus.OPEN.value,
                    last_message_at=message_at,
                )
                session.add(conversation)
            logger.debug("Conversation created", conversation_id=conversation.id, shop_id=shop_id)
            return conversation
        except IntegrityError:
            async with self.database.session() as session:
                winner = await session.scalar(
                    select(ConversationRow).where(
                        ConversationRow.shop_id == shop_id,
                        ConversationRow.customer_email == customer_email,
                        ConversationRow.thread_key == key,
                    )
                )
            if winner is None:
                raise
            return winner

    async def update_conversation(self, conversation_id: str, **values: Any) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(ConversationRow).where(ConversationRow.id == conversation_id).values(**values)
            )

    async def increment_conversation_counter(self, conversation_id: str, field: str) -> int:
        """Atomically increment data_request_count or retention_contact_count; returns the new value."""
        if field not in ("data_request_count", "retention_contact_count"):
            raise ValueError(f"Unknown conversation counter: {field}")
        column = getattr(ConversationRow, field)
        async with self.database.session() as session:
            await session.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conversation_id)
                .values({field: column + 1})
            )
            return await session.scalar(select(column).where(ConversationRow.id == conversation_id)) or 0

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def get_message(self, message_row_id: str) -> Optional[MessageRow]:
        async with self.database.session() as session:
            return await session.get(MessageRow, message_row_id)

    async def message_exists(self, provider_message_id: str) -> bool:
        async with self.database.session() as session:
            found = await session.scalar(
                select(MessageRow.id).where(MessageRow.message_id == provider_message_id)
            )
        return found is not None

    async def insert_inbound(
        self,
        conversation: ConversationRow,
        email: InboundEmail,
        from_email: str,
        from_name: Optional[str],
    ) -> Optional[MessageRow]:
        """
        Persist an inbound email as a pending Message.

        Returns:
            The new row, or None if the provider message id already exists
        """
        try:
            async with self.database.session() as session:
                message = MessageRow(
                    conversation_id=conversation.id,
                    shop_id=conversation.shop_id,
                    direction=Direction.INBOUND.value,
                    status=MessageStatus.PENDING.value,
                    message_id=email.message_id,
                    in_reply_to=email.in_reply_to,
                    references=email.references,
                    from_email=from_email,
                    from_name=from_name,
                    to_email=email.to_email,
                    subject=email.subject,
                    body_text=email.text_body,
                    body_html=email.html_body,
                    headers=email.headers or None,
                    has_attachments=bool(email.attachments),
                    received_at=to_naive_utc(email.received_at),
                )
                session.add(message)
            return message
        except IntegrityError:
            logger.debug("Inbound message already stored", provider_message_id=email.message_id)
            return None

    async def claim_message(self, message_row_id: str) -> bool:
        """pending/pending_credits -> processing; False if another worker or a terminal state won."""
        async with self.database.session() as session:
            result = await session.execute(
                update(MessageRow)
                .where(MessageRow.id == message_row_id, MessageRow.status.in_(_CLAIMABLE))
                .values(status=MessageStatus.PROCESSING.value, processing_started_at=utc_now())
            )
        return result.rowcount == 1

    async def set_message_status(
        self,
        message_row_id: str,
        status: MessageStatus,
        **values: Any,
    ) -> bool:
        """
        Transition a message out of processing.

        Terminal statuses stamp processed_at. A message already terminal is
        never changed.
        """
        values["status"] = status.value
        if status.value in _TERMINAL:
            values.setdefault("processed_at", utc_now())
        if status in (MessageStatus.PENDING, MessageStatus.PENDING_CREDITS):
            values.setdefault("processing_started_at", None)
        async with self.database.session() as session:
            result = await session.execute(
                update(MessageRow)
                .where(MessageRow.id == message_row_id, MessageRow.status.not_in(list(_TERMINAL)))
                .values(**values)
            )
        return result.rowcount == 1

    async def record_outbound(
        self,
        inbound: MessageRow,
        to_email: str,
        from_email: str,
        from_name: Optional[str],
        subject: str,
        body: str,
        message_id: str,
        in_reply_to: Optional[str],
        references: Optional[str],
        category: Optional[str] = None,
        tokens_input: int = 0,
        tokens_output: int = 0,
    ) -> MessageRow:
        """Write the outbound reply row (status pending) before it is sent."""
        async with self.database.session() as session:
            outbound = MessageRow(
                conversation_id=inbound.conversation_id,
                shop_id=inbound.shop_id,
                direction=Direction.OUTBOUND.value,
                status=MessageStatus.PENDING.value,
                message_id=message_id,
                in_reply_to=in_reply_to,
                references=references,
                from_email=from_email,
                from_name=from_name,
                to_email=to_email,
                subject=subject,
                body_text=body,
                category=category,
                tokens_input=tokens_input,
                tokens_output=tokens_output,
                was_auto_replied=True,
            )
            session.add(outbound)
        return outbound

    async def find_outbound_reply(self, inbound: MessageRow) -> Optional[MessageRow]:
        """Latest outbound row replying to this inbound message, if any."""
        async with self.database.session() as session:
            return await session.scalar(
                select(MessageRow)
                .where(
                    MessageRow.conversation_id == inbound.conversation_id,
                    MessageRow.direction == Direction.OUTBOUND.value,
                    MessageRow.in_reply_to == inbound.message_id,
                )
                .order_by(MessageRow.created_at.desc())
                .limit(1)
            )

    async def mark_outbound_sent(self, outbound_row_id: str, provider_message_id: Optional[str]) -> None:
        now = utc_now()
        values: dict[str, Any] = {
            "status": MessageStatus.REPLIED.value,
            "replied_at": now,
            "processed_at": now,
        }
        if provider_message_id:
            values["message_id"] = provider_message_id
        async with self.database.session() as session:
            await session.execute(update(MessageRow).where(MessageRow.id == outbound_row_id).values(**values))

    async def mark_forwarded(self, message_row_id: str) -> None:
        """Stamp the inbound message as forwarded to the shop's support inbox."""
        async with self.database.session() as session:
            await session.execute(
                update(MessageRow).where(MessageRow.id == message_row_id).values(forwarded_at=utc_now())
            )

    async def count_recent_outbound(self, conversation_id: str, since: datetime) -> int:
        async with self.database.session() as session:
            return await session.scalar(
                select(func.count())
                .select_from(MessageRow)
                .where(
                    MessageRow.conversation_id == conversation_id,
                    MessageRow.direction == Direction.OUTBOUND.value,
                    MessageRow.status == MessageStatus.REPLIED.value,
                    MessageRow.created_at >= since,
                )
            ) or 0

    async def get_conversation_history(
        self,
        conversation_id: str,
        limit: int = 3,
        exclude_row_id: Optional[str] = None,
    ) -> list[HistoryEntry]:
        """Last `limit` messages of a conversation, oldest first."""
        stmt = (
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.created_at.desc())
            .limit(limit)
        )
        if exclude_row_id:
            stmt = stmt.where(MessageRow.id != exclude_row_id)
        async with self.database.session() as session:
            rows = list((await session.scalars(stmt)).all())
        rows.reverse()
        return [
            HistoryEntry(
                direction=Direction(row.direction),
                from_email=row.from_email,
                subject=row.subject,
                body=row.body_text or "",
                created_at=row.created_at,
            )
            for row in rows
        ]

    async def get_pending_messages(self, shop_id: str, limit: int = 50) -> list[MessageRow]:
        """Inbound pending/pending_credits messages of a shop, oldest first."""
        async with self.database.session() as session:
            rows = await session.scalars(
                select(MessageRow)
                .where(
                    MessageRow.shop_id == shop_id,
                    MessageRow.direction == Direction.INBOUND.value,
                    MessageRow.status.in_(_CLAIMABLE),
                )
                .order_by(MessageRow.created_at.asc())
                .limit(limit)
            )
            return list(rows.all())

    # ------------------------------------------------------------------
    # Janitor & credit recovery
    # ------------------------------------------------------------------

    async def reset_stuck_messages(self, older_than: datetime) -> int:
        """processing messages whose attempt started before `older_than` go back to pending."""
        async with self.database.session() as session:
            result = await session.execute(
                update(MessageRow)
                .where(
                    MessageRow.status == MessageStatus.PROCESSING.value,
                    or_(
                        MessageRow.processing_started_at < older_than,
                        and_(
                            MessageRow.processing_started_at.is_(None),
                            MessageRow.created_at < older_than,
                        ),
                    ),
                )
                .values(status=MessageStatus.PENDING.value, processing_started_at=None)
            )
        return result.rowcount or 0

    async def find_orphan_messages(self, limit: int = 100) -> list[MessageRow]:
        """Inbound pending messages with no active job."""
        active_job = exists().where(
            JobRow.message_id == MessageRow.id,
            JobRow.status.in_(_ACTIVE_JOB_STATUSES),
        )
        async with self.database.session() as session:
            rows = await session.scalars(
                select(MessageRow)
                .where(
                    MessageRow.direction == Direction.INBOUND.value,
                    MessageRow.status == MessageStatus.PENDING.value,
                    ~active_job,
                )
                .order_by(MessageRow.created_at.asc())
                .limit(limit)
            )
            return list(rows.all())

    async def users_with_recoverable_credits(self) -> list[UserRow]:
        """Active users with room in their quota and at least one pending_credits message."""
        parked = exists().where(
            MessageRow.shop_id == ShopRow.id,
            ShopRow.user_id == UserRow.id,
            MessageRow.status == MessageStatus.PENDING_CREDITS.value,
        )
        async with self.database.session() as session:
            rows = await session.scalars(
                select(UserRow).where(
                    UserRow.status == UserStatus.ACTIVE.value,
                    or_(UserRow.emails_limit.is_(None), UserRow.emails_used < UserRow.emails_limit),
                    parked,
                )
            )
            return list(rows.all())

    async def pending_credit_messages(self, user_id: str, limit: int) -> list[MessageRow]:
        async with self.database.session() as session:
            rows = await session.scalars(
                select(MessageRow)
                .join(ShopRow, ShopRow.id == MessageRow.shop_id)
                .where(
                    ShopRow.user_id == user_id,
                    MessageRow.status == MessageStatus.PENDING_CREDITS.value,
                )
                .order_by(MessageRow.created_at.asc())
                .limit(limit)
            )
            return list(rows.all())

    async def release_pending_credit(self, message_row_id: str) -> bool:
        """pending_credits -> pending (credit recovery)."""
        async with self.database.session() as session:
            result = await session.execute(
                update(MessageRow)
                .where(
                    MessageRow.id == message_row_id,
                    MessageRow.status == MessageStatus.PENDING_CREDITS.value,
                )
                .values(status=MessageStatus.PENDING.value)
            )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Processing events
    # ------------------------------------------------------------------

    async def log_event(
        self,
        shop_id: str,
        event_type: str,
        message_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        event_data: Optional[dict[str, Any]] = None,
        tokens_input: Optional[int] = None,
        tokens_output: Optional[int] = None,
        processing_time_ms: Optional[int] = None,
    ) -> None:
        """Append a processing event; a failed write is logged and dropped."""
        try:
            async with self.database.session() as session:
                session.add(
                    ProcessingEventRow(
                        shop_id=shop_id,
                        message_id=message_id,
                        conversation_id=conversation_id,
                        event_type=event_type,
                        event_data=event_data,
                        tokens_input=tokens_input,
                        tokens_output=tokens_output,
                        processing_time_ms=processing_time_ms,
                    )
                )
        except SQLAlchemyError as e:
            logger.warning(
                "Failed to write processing event",
                event_type=event_type,
                message_id=message_id,
                error=str(e),
            )
