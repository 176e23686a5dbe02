"""
Message processing state machine.

Drives one inbound Message from `pending` to a terminal (or parked) state:

    pending -> processing
    processing -> failed          invalid sender, system notification,
                                  forwarding echo, unusable body, reply loop
    processing -> failed (spam)   pattern spam (before credit) or AI spam (after)
    processing -> replied         acknowledgment / auto-responder (no send, no tokens)
    processing -> pending_credits no credit (owner warned, extra package counted)
    processing -> pending_human   human requested, order data exhausted,
                                  or the drafted reply asks for escalation
    processing -> replied         data request sent, or AI reply sent

Ordering rules:
- The conversation lock is held for the whole attempt
- Every zero-cost filter runs before the credit reservation
- The outbound row is written before sending; a retry that finds a sent
  reply never sends again, one that finds an unsent reply resends it with
  the same Message-ID instead of drafting a new one

Failures raised from collaborators propagate to the queue worker, which
classifies them; the message is returned to `pending` first so the retry
can claim it again.
"""

import html
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from support_pipeline.admission.controller import AdmissionController
from support_pipeline.cache.image_cache import ImageCache
from support_pipeline.heuristics.filters import HeuristicFilters, is_valid_sender
from support_pipeline.heuristics.rules import EmailFacts
from support_pipeline.heuristics.text import (
    build_reply_headers,
    build_reply_subject,
    clean_email_body,
    extract_emails,
    extract_order_number,
    generate_message_id,
    name_from_email,
    strip_reply_prefixes,
)
from support_pipeline.integrations.exceptions import OrderLookupError
from support_pipeline.integrations.mailbox import MailboxGateway
from support_pipeline.integrations.notifications import ShopNotifier, render_fallback_template
from support_pipeline.integrations.orders import OrderLookup
from support_pipeline.integrations.vault import CredentialResolver
from support_pipeline.llm.base_client import Classifier, Responder
from support_pipeline.locking.conversation_lock import RedisConversationLock
from support_pipeline.models.enums import (
    Category,
    ConversationStatus,
    Direction,
    ErrorType,
    MessageStatus,
    ProcessingOutcome,
)
from support_pipeline.models.mail_models import MailboxCredentials, OutgoingEmail
from support_pipeline.models.pipeline_models import (
    HistoryEntry,
    OrderSummary,
    ProcessingResult,
    ShopPolicy,
)
from support_pipeline.monitoring.metrics import category_distribution_total, pipeline_outcomes_total
from support_pipeline.persistence.message_store import MessageStore, shop_policy
from support_pipeline.persistence.tables import (
    ConversationRow,
    MessageRow,
    ShopRow,
    UserRow,
    utc_now,
)
from support_pipeline.retry.exceptions import ConversationBusyError, PermanentProcessingError

logger = structlog.get_logger(__name__)

_TERMINAL = {status.value for status in MessageStatus.terminal()}

MIN_SUBJECT_AS_BODY = 3


@dataclass
class _Attempt:
    """Mutable state of one processing attempt."""

    message: MessageRow
    shop: ShopRow
    user: UserRow
    conversation: ConversationRow
    policy: ShopPolicy
    credentials: MailboxCredentials
    previous_status: str
    started: float = field(default_factory=time.monotonic)
    body: str = ""
    facts: Optional[EmailFacts] = None
    category: Optional[Category] = None
    confidence: Optional[float] = None
    language: str = "pt"
    tokens_input: int = 0
    tokens_output: int = 0
    frustrated: bool = False
    event_data: dict[str, Any] = field(default_factory=dict)

    @property
    def customer_email(self) -> str:
        return self.message.from_email

    @property
    def customer_name(self) -> str:
        return (
            self.conversation.customer_name
            or self.message.from_name
            or name_from_email(self.message.from_email)
        )

    @property
    def own_addresses(self) -> set[str]:
        addresses = set(self.credentials.own_addresses)
        if self.shop.support_email:
            addresses.add(self.shop.support_email.lower())
        return addresses

    def add_tokens(self, tokens_input: int, tokens_output: int) -> None:
        self.tokens_input += tokens_input
        self.tokens_output += tokens_output

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class MessageProcessor:
    """
    Processes one Message per call.

    Responsibilities:
    - Conversation lock, message claim and resend guard
    - Zero-cost filters, credit admission, classification
    - Order context gathering, reply drafting, escalation
    - Outbound recording and sending, status transitions, processing events

    Does NOT handle:
    - Job bookkeeping (queue worker)
    - Retry decisions (queue worker via classify_error)
    """

    def __init__(
        self,
        store: MessageStore,
        admission: AdmissionController,
        classifier: Classifier,
        responder: Responder,
        mailbox: MailboxGateway,
        credentials: CredentialResolver,
        notifier: ShopNotifier,
        orders: Optional[OrderLookup] = None,
        lock: Optional[RedisConversationLock] = None,
        filters: Optional[HeuristicFilters] = None,
        image_cache: Optional[ImageCache] = None,
        max_data_requests: int = 3,
        loop_max_replies: int = 5,
        loop_window_hours: int = 2,
        history_limit: int = 3,
        forward_prefix: str = "[ENCAMINHADO]",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.admission = admission
        self.classifier = classifier
        self.responder = responder
        self.mailbox = mailbox
        self.credentials = credentials
        self.notifier = notifier
        self.orders = orders
        self.lock = lock
        self.filters = filters or HeuristicFilters()
        self.image_cache = image_cache
        self.max_data_requests = max_data_requests
        self.loop_max_replies = loop_max_replies
        self.loop_window = timedelta(hours=loop_window_hours)
        self.history_limit = history_limit
        self.forward_prefix = forward_prefix
        self.clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process(self, message_row_id: str) -> ProcessingResult:
        """
        Process one message.

        Raises:
            ConversationBusyError: Another worker holds the conversation
            PermanentProcessingError: Message/shop/owner missing or unusable
            Collaborator exceptions (LLM, mailbox, vault) for the queue
            worker to classify
        """
        message = await self.store.get_message(message_row_id)
        if message is None:
            raise PermanentProcessingError(f"Message {message_row_id} not found")
        if message.status in _TERMINAL:
            return ProcessingResult(
                message_id=message.id,
                outcome=ProcessingOutcome.ALREADY_HANDLED,
                reason=f"status={message.status}",
            )

        guard = self.lock.hold(message.conversation_id) if self.lock else nullcontext()
        async with guard:
            if not await self.store.claim_message(message.id):
                current = await self.store.get_message(message.id)
                if current is not None and current.status in _TERMINAL:
                    return ProcessingResult(
                        message_id=message.id,
                        outcome=ProcessingOutcome.ALREADY_HANDLED,
                        reason=f"status={current.status}",
                    )
                raise ConversationBusyError(message.conversation_id)

            try:
                attempt = await self._load(message)
                return await self._run(attempt)
            except Exception:
                await self.store.set_message_status(message.id, MessageStatus.PENDING)
                raise

    async def _load(self, message: MessageRow) -> _Attempt:
        shop = await self.store.get_shop(message.shop_id)
        if shop is None:
            raise PermanentProcessingError(f"Shop {message.shop_id} not found")
        user = await self.store.get_user(shop.user_id)
        if user is None:
            raise PermanentProcessingError(f"Owner of shop {shop.id} not found")
        conversation = await self.store.get_conversation(message.conversation_id)
        if conversation is None:
            raise PermanentProcessingError(f"Conversation {message.conversation_id} not found")
        credentials = self.credentials.mailbox_credentials(shop)
        if credentials is None:
            raise PermanentProcessingError(
                f"Shop {shop.id} has no mailbox configured", error_type=ErrorType.AUTH_ERROR
            )
        return _Attempt(
            message=message,
            shop=shop,
            user=user,
            conversation=conversation,
            policy=shop_policy(shop),
            credentials=credentials,
            previous_status=message.status,
            language=conversation.language or "pt",
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run(self, attempt: _Attempt) -> ProcessingResult:
        message = attempt.message
        log = logger.bind(message_id=message.id, conversation_id=message.conversation_id, shop_id=message.shop_id)

        resumed = await self._resume_recorded_reply(attempt)
        if resumed is not None:
            return resumed

        # Zero-cost rejections
        if not is_valid_sender(message.from_email):
            return await self._fail(attempt, ProcessingOutcome.REJECTED, "invalid_sender")

        attempt.body = clean_email_body(message.body_text, message.body_html)
        if not attempt.body:
            subject_text = strip_reply_prefixes(message.subject)
            if len(subject_text) < MIN_SUBJECT_AS_BODY:
                return await self._fail(attempt, ProcessingOutcome.REJECTED, "empty_body")
            attempt.body = subject_text

        attempt.facts = EmailFacts.build(message.from_email, message.subject, attempt.body, message.headers)

        system = self.filters.check_system_sender(attempt.facts)
        if system:
            return await self._fail(attempt, ProcessingOutcome.REJECTED, f"system_sender:{system.rule}")

        echo = self.filters.check_forwarding_echo(attempt.facts, attempt.own_addresses, self.forward_prefix)
        if echo:
            return await self._fail(attempt, ProcessingOutcome.REJECTED, f"forwarding_echo:{echo.rule}")

        recent = await self.store.count_recent_outbound(
            message.conversation_id, self.clock() - self.loop_window
        )
        if recent >= self.loop_max_replies:
            log.warning("Reply loop detected", recent_replies=recent)
            return await self._fail(
                attempt,
                ProcessingOutcome.LOOP_DETECTED,
                f"loop_detected: {recent} replies in {self.loop_window}",
            )

        no_reply = self.filters.check_no_reply_needed(attempt.facts)
        if no_reply:
            attempt.category = Category.ACKNOWLEDGMENT
            attempt.event_data["rule"] = f"{no_reply.rule_set}:{no_reply.rule}"
            return await self._finish(attempt, MessageStatus.REPLIED, ProcessingOutcome.ACKNOWLEDGED)

        spam = self.filters.check_pattern_spam(attempt.facts)
        if spam:
            attempt.category = Category.SPAM
            return await self._fail(
                attempt, ProcessingOutcome.SPAM, f"pattern_spam:{spam.rule}", close_conversation=True
            )

        # Paid steps start here
        if not await self.admission.reserve_for_message(attempt.user.id, message.id):
            return await self._park_for_credits(attempt)

        history = await self.store.get_conversation_history(
            message.conversation_id, self.history_limit, exclude_row_id=message.id
        )
        classification = await self.classifier.classify(message.subject or "", attempt.body, history)
        attempt.add_tokens(classification.tokens_input, classification.tokens_output)
        attempt.category = classification.category
        attempt.confidence = classification.confidence
        attempt.language = classification.language
        category_distribution_total.labels(category=classification.category.value).inc()
        await self.store.log_event(
            message.shop_id,
            "classified",
            message_id=message.id,
            conversation_id=message.conversation_id,
            event_data={
                "category": classification.category.value,
                "confidence": classification.confidence,
                "language": classification.language,
            },
            tokens_input=classification.tokens_input,
            tokens_output=classification.tokens_output,
        )

        if classification.category == Category.SPAM:
            return await self._fail(attempt, ProcessingOutcome.SPAM, "ai_spam", close_conversation=True)

        await self.store.update_conversation(
            message.conversation_id,
            category=classification.category.value,
            language=classification.language,
        )

        if classification.category == Category.SUPORTE_HUMANO:
            return await self._escalate(attempt, "customer_requested_human")

        order: Optional[OrderSummary] = None
        if Category.requires_order_context(classification.category):
            order = await self._find_order(attempt, history, classification.order_id_found)
            if order is None:
                if attempt.conversation.data_request_count < self.max_data_requests:
                    return await self._request_order_number(attempt)
                return await self._escalate(attempt, "order_data_not_provided")

        retention_count = attempt.conversation.retention_contact_count
        if classification.category == Category.TROCA_DEVOLUCAO_REEMBOLSO:
            retention_count = await self.store.increment_conversation_counter(
                message.conversation_id, "retention_contact_count"
            )

        frustration = self.filters.check_frustration(attempt.facts)
        attempt.frustrated = frustration is not None
        if frustration:
            attempt.event_data["frustration"] = frustration.rule

        images = self.image_cache.get(message.message_id) if self.image_cache else None
        reply = await self.responder.generate_reply(
            attempt.policy,
            message.subject or "",
            attempt.body,
            classification.category,
            history,
            order,
            attempt.language,
            retention_count,
            images=images,
            customer_frustrated=attempt.frustrated,
        )
        attempt.add_tokens(reply.tokens_input, reply.tokens_output)

        if reply.forward_to_human:
            return await self._escalate(attempt, "reply_requested_escalation", customer_text=reply.text)

        await self.store.update_conversation(message.conversation_id, status=ConversationStatus.REPLIED.value)
        await self._send_reply(attempt, reply.text)
        return await self._finish(attempt, MessageStatus.REPLIED, ProcessingOutcome.REPLIED)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def _resume_recorded_reply(self, attempt: _Attempt) -> Optional[ProcessingResult]:
        """Resend guard: finish from an outbound row left by an earlier attempt."""
        outbound = await self.store.find_outbound_reply(attempt.message)
        if outbound is None:
            return None

        escalated = attempt.message.forwarded_at is not None
        status = MessageStatus.PENDING_HUMAN if escalated else MessageStatus.REPLIED

        if outbound.status == MessageStatus.REPLIED.value:
            logger.info(
                "Reply already sent, not resending",
                message_id=attempt.message.id,
                outbound_id=outbound.id,
            )
            return await self._finish(
                attempt, status, ProcessingOutcome.ALREADY_HANDLED, reason="reply_already_sent"
            )

        await self._deliver(attempt, outbound)
        outcome = ProcessingOutcome.ESCALATED if escalated else ProcessingOutcome.REPLIED
        return await self._finish(attempt, status, outcome, reason="resent_recorded_reply")

    async def _park_for_credits(self, attempt: _Attempt) -> ProcessingResult:
        first_time = attempt.previous_status != MessageStatus.PENDING_CREDITS.value
        if first_time:
            await self.admission.record_over_quota(attempt.user.id)
        warned = await self.admission.notify_credits_exhausted(attempt.user, attempt.policy, attempt.credentials)
        attempt.event_data.update({"owner_warned": warned, "first_time": first_time})
        return await self._finish(
            attempt, MessageStatus.PENDING_CREDITS, ProcessingOutcome.PENDING_CREDITS, reason="no_credits"
        )

    async def _find_order(
        self,
        attempt: _Attempt,
        history: list[HistoryEntry],
        classifier_hint: Optional[str],
    ) -> Optional[OrderSummary]:
        """
        Order context for the reply.

        The number is taken from the subject, the cleaned body, the raw
        body, earlier customer messages, the number cached on the
        conversation, then the classifier's hint. The lookup tries the
        sender address first, then other addresses quoted in the body.
        A known number whose lookup fails yields a number-only summary.
        """
        message = attempt.message
        candidates = [message.subject, attempt.body, message.body_text]
        candidates.extend(entry.body for entry in reversed(history) if entry.direction == Direction.INBOUND)
        number = next((n for n in (extract_order_number(text) for text in candidates) if n), None)
        number = number or attempt.conversation.shopify_order_id or classifier_hint

        order: Optional[OrderSummary] = None
        commerce = self.credentials.commerce_credentials(attempt.shop) if self.orders else None
        if commerce is not None:
            excluded = attempt.own_addresses | {attempt.customer_email}
            emails = [attempt.customer_email] + [
                e for e in extract_emails(message.body_text or attempt.body) if e not in excluded
            ]
            for email in emails:
                try:
                    order = await self.orders.find_order(commerce, email, number)
                except OrderLookupError as e:
                    logger.warning(
                        "Order lookup failed",
                        message_id=message.id,
                        order_number=number,
                        error=e.message,
                    )
                    break
                if order is not None:
                    break

        if order is None and number:
            order = OrderSummary.minimal(number)

        if order is not None:
            attempt.event_data["order_number"] = order.order_number
            attempt.event_data["order_minimal"] = order.is_minimal
            if order.order_number != attempt.conversation.shopify_order_id:
                await self.store.update_conversation(message.conversation_id, shopify_order_id=order.order_number)
        return order

    async def _request_order_number(self, attempt: _Attempt) -> ProcessingResult:
        message = attempt.message
        count = attempt.conversation.data_request_count + 1
        reply = await self.responder.generate_data_request(
            attempt.policy, message.subject or "", attempt.body, count, attempt.language
        )
        attempt.add_tokens(reply.tokens_input, reply.tokens_output)
        outbound = await self._record_reply(attempt, reply.text)
        count = await self.store.increment_conversation_counter(message.conversation_id, "data_request_count")
        await self.store.update_conversation(message.conversation_id, status=ConversationStatus.REPLIED.value)
        await self._deliver(attempt, outbound)
        attempt.event_data["data_request_count"] = count
        return await self._finish(attempt, MessageStatus.REPLIED, ProcessingOutcome.DATA_REQUESTED)

    async def _escalate(
        self,
        attempt: _Attempt,
        reason: str,
        customer_text: Optional[str] = None,
    ) -> ProcessingResult:
        """
        Forward to the shop's support inbox, tell the customer, park as pending_human.

        The customer notice is produced before anything is sent. The forward
        is stamped on the inbound message so a retry never forwards twice.
        """
        message = attempt.message
        if customer_text is None:
            customer_text = render_fallback_template(attempt.policy, attempt.customer_name)
        if customer_text is None:
            fallback = await self.responder.generate_human_fallback(
                attempt.policy, attempt.customer_name, attempt.language
            )
            attempt.add_tokens(fallback.tokens_input, fallback.tokens_output)
            customer_text = fallback.text

        if message.forwarded_at is None:
            await self.notifier.forward_to_human(
                attempt.credentials,
                attempt.policy,
                customer_email=attempt.customer_email,
                customer_name=attempt.customer_name,
                subject=message.subject,
                body=attempt.body,
                category=attempt.category.value if attempt.category else None,
                reason=reason,
            )
            await self.store.mark_forwarded(message.id)
        else:
            logger.info("Already forwarded to human, not forwarding again", message_id=message.id)
        await self.store.update_conversation(
            message.conversation_id, status=ConversationStatus.PENDING_HUMAN.value
        )

        await self._send_reply(attempt, customer_text)
        return await self._finish(
            attempt, MessageStatus.PENDING_HUMAN, ProcessingOutcome.ESCALATED, reason=reason, forwarded=True
        )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send_reply(self, attempt: _Attempt, text: str) -> str:
        """Record the outbound reply, then send it."""
        outbound = await self._record_reply(attempt, text)
        return await self._deliver(attempt, outbound)

    async def _record_reply(self, attempt: _Attempt, text: str) -> MessageRow:
        message = attempt.message
        in_reply_to, references = build_reply_headers(message.message_id, message.references)
        return await self.store.record_outbound(
            message,
            to_email=attempt.customer_email,
            from_email=attempt.credentials.smtp_user,
            from_name=attempt.policy.sender_name,
            subject=build_reply_subject(message.subject),
            body=text,
            message_id=generate_message_id(attempt.credentials.smtp_user),
            in_reply_to=in_reply_to,
            references=references,
            category=attempt.category.value if attempt.category else None,
            tokens_input=attempt.tokens_input,
            tokens_output=attempt.tokens_output,
        )

    async def _deliver(self, attempt: _Attempt, outbound: MessageRow) -> str:
        html_body = None
        if attempt.policy.signature_html:
            paragraphs = html.escape(outbound.body_text or "").replace("\n", "<br>")
            html_body = f"<p>{paragraphs}</p>{attempt.policy.signature_html}"

        sent = await self.mailbox.send(
            attempt.credentials,
            OutgoingEmail(
                to=outbound.to_email,
                subject=outbound.subject,
                text_body=outbound.body_text or "",
                html_body=html_body,
                in_reply_to=outbound.in_reply_to,
                references=outbound.references,
                from_name=outbound.from_name,
                message_id=outbound.message_id,
            ),
        )
        await self.store.mark_outbound_sent(outbound.id, sent.message_id)
        attempt.event_data["reply_message_id"] = sent.message_id
        return sent.message_id

    # ------------------------------------------------------------------
    # Terminal bookkeeping
    # ------------------------------------------------------------------

    async def _fail(
        self,
        attempt: _Attempt,
        outcome: ProcessingOutcome,
        reason: str,
        close_conversation: bool = False,
    ) -> ProcessingResult:
        if close_conversation:
            await self.store.update_conversation(
                attempt.message.conversation_id, status=ConversationStatus.CLOSED.value
            )
        return await self._finish(attempt, MessageStatus.FAILED, outcome, reason=reason)

    async def _finish(
        self,
        attempt: _Attempt,
        status: MessageStatus,
        outcome: ProcessingOutcome,
        reason: Optional[str] = None,
        forwarded: bool = False,
    ) -> ProcessingResult:
        message = attempt.message
        values: dict[str, Any] = {
            "tokens_input": attempt.tokens_input,
            "tokens_output": attempt.tokens_output,
        }
        if attempt.category is not None:
            values["category"] = attempt.category.value
        if attempt.confidence is not None:
            values["category_confidence"] = attempt.confidence
        if status == MessageStatus.FAILED:
            values["error_message"] = reason
        if "reply_message_id" in attempt.event_data:
            values["replied_at"] = self.clock()
            values["was_auto_replied"] = True

        await self.store.set_message_status(message.id, status, **values)

        pipeline_outcomes_total.labels(outcome=outcome.value).inc()
        event_data = dict(attempt.event_data, status=status.value, reason=reason)
        await self.store.log_event(
            message.shop_id,
            outcome.value,
            message_id=message.id,
            conversation_id=message.conversation_id,
            event_data=event_data,
            tokens_input=attempt.tokens_input,
            tokens_output=attempt.tokens_output,
            processing_time_ms=attempt.elapsed_ms,
        )
        logger.info(
            "Message processed",
            message_id=message.id,
            conversation_id=message.conversation_id,
            outcome=outcome.value,
            status=status.value,
            reason=reason,
            category=attempt.category.value if attempt.category else None,
            tokens=attempt.tokens_input + attempt.tokens_output,
        )
        return ProcessingResult(
            message_id=message.id,
            outcome=outcome,
            reason=reason,
            category=attempt.category,
            tokens_used=attempt.tokens_input + attempt.tokens_output,
            reply_message_id=attempt.event_data.get("reply_message_id"),
            forwarded=forwarded,
        )
