"""
Unit tests for the message processing state machine.

The processor runs against the SQLite store with in-memory collaborator
fakes; every test asserts both the returned outcome and what was
persisted or sent.
"""

import pytest
from sqlalchemy.exc import SQLAlchemyError

from support_pipeline.integrations.exceptions import MailboxConnectionError, OrderLookupError
from support_pipeline.llm.exceptions import LLMServerError
from support_pipeline.locking.conversation_lock import RedisConversationLock
from support_pipeline.models.enums import (
    Category,
    ConversationStatus,
    MessageStatus,
    ProcessingOutcome,
)
from support_pipeline.models.pipeline_models import ClassificationResult, OrderSummary
from support_pipeline.retry.exceptions import ConversationBusyError, PermanentProcessingError


def classified(category: Category, **kwargs) -> ClassificationResult:
    return ClassificationResult(
        category=category, confidence=0.95, language="pt", tokens_input=100, tokens_output=20, **kwargs
    )


async def _record_sent_replies(store, message, count: int) -> None:
    for index in range(count):
        outbound = await store.record_outbound(
            message,
            to_email=message.from_email,
            from_email="contato@loja.com",
            from_name="Ana",
            subject="Re: Pedido atrasado",
            body=f"Resposta {index}",
            message_id=f"<out-{index}@loja.com>",
            in_reply_to=None,
            references=None,
        )
        await store.mark_outbound_sent(outbound.id, None)


class TestReplies:
    """Tests for the AI reply path."""

    @pytest.mark.asyncio
    async def test_reply_with_order_context(
        self, processor, store, fake_classifier, fake_orders, fake_responder, fake_mailbox, make_shop, make_inbound
    ):
        fake_classifier.result = classified(Category.RASTREIO)
        fake_orders.by_number["1234"] = OrderSummary(
            order_number="1234", order_status="paid", fulfillment_status="fulfilled"
        )
        shop = await make_shop()
        message = await make_inbound(shop)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.REPLIED
        assert result.category == Category.RASTREIO
        assert result.tokens_used == 500
        assert fake_orders.calls == [("maria@cliente.com", "1234")]
        assert fake_responder.reply_calls[0]["order"].order_number == "1234"
        assert fake_responder.reply_calls[0]["customer_frustrated"] is False

        sent = fake_mailbox.sent_emails
        assert len(sent) == 1
        assert sent[0].to == "maria@cliente.com"
        assert sent[0].subject == "Re: Pedido atrasado"
        assert sent[0].in_reply_to == message.message_id
        assert sent[0].text_body == "Olá! Seu pedido está a caminho."
        assert result.reply_message_id == sent[0].message_id

        stored = await store.get_message(message.id)
        assert stored.status == MessageStatus.REPLIED.value
        assert stored.was_auto_replied is True
        assert stored.replied_at is not None
        assert stored.category == Category.RASTREIO.value
        assert stored.tokens_input == 400

        conversation = await store.get_conversation(message.conversation_id)
        assert conversation.status == ConversationStatus.REPLIED.value
        assert conversation.shopify_order_id == "1234"
        assert (await store.get_user(shop.user_id)).emails_used == 1

        outbound = await store.find_outbound_reply(stored)
        assert outbound.status == MessageStatus.REPLIED.value

    @pytest.mark.asyncio
    async def test_failed_order_lookup_uses_minimal_summary(
        self, processor, fake_classifier, fake_orders, fake_responder, make_shop, make_inbound
    ):
        fake_classifier.result = classified(Category.RASTREIO)
        fake_orders.error = OrderLookupError("shopify 502")
        shop = await make_shop()
        message = await make_inbound(shop)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.REPLIED
        order = fake_responder.reply_calls[0]["order"]
        assert order.order_number == "1234"
        assert order.is_minimal

    @pytest.mark.asyncio
    async def test_refund_request_counts_retention_contact(
        self, processor, store, fake_classifier, fake_responder, make_shop, make_inbound
    ):
        fake_classifier.result = classified(Category.TROCA_DEVOLUCAO_REEMBOLSO)
        shop = await make_shop()
        message = await make_inbound(shop, body="Quero devolver o pedido #1234, veio com defeito.")

        await processor.process(message.id)

        assert fake_responder.reply_calls[0]["retention_contact_count"] == 1
        conversation = await store.get_conversation(message.conversation_id)
        assert conversation.retention_contact_count == 1

    @pytest.mark.asyncio
    async def test_frustrated_customer_flagged_to_responder(
        self, processor, fake_responder, make_shop, make_inbound
    ):
        shop = await make_shop()
        message = await make_inbound(
            shop, body="Já é a terceira vez que escrevo e ninguém responde sobre o pedido #1234"
        )

        await processor.process(message.id)

        assert fake_responder.reply_calls[0]["customer_frustrated"] is True

    @pytest.mark.asyncio
    async def test_signature_appended_to_html_body(self, processor, fake_mailbox, make_shop, make_inbound):
        shop = await make_shop(signature_html="<p>Equipe Loja</p>")
        message = await make_inbound(shop)

        await processor.process(message.id)

        html_body = fake_mailbox.sent_emails[0].html_body
        assert html_body.startswith("<p>Olá! Seu pedido está a caminho.</p>")
        assert html_body.endswith("<p>Equipe Loja</p>")


class TestOrderDataRequests:
    """Tests for asking the customer for an order number."""

    @pytest.mark.asyncio
    async def test_missing_order_number_requests_data(
        self, processor, store, fake_classifier, fake_responder, fake_mailbox, make_shop, make_inbound
    ):
        fake_classifier.result = classified(Category.RASTREIO)
        shop = await make_shop()
        message = await make_inbound(shop, subject="Entrega", body="Quando chega minha encomenda?")

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.DATA_REQUESTED
        assert fake_responder.data_request_calls == [1]
        assert fake_responder.reply_calls == []
        assert fake_mailbox.sent_emails[0].text_body == "Pode nos informar o número do pedido?"
        conversation = await store.get_conversation(message.conversation_id)
        assert conversation.data_request_count == 1
        assert (await store.get_message(message.id)).status == MessageStatus.REPLIED.value

    @pytest.mark.asyncio
    async def test_escalates_after_max_data_requests(
        self, processor, store, fake_classifier, fake_responder, fake_mailbox, make_shop, make_inbound
    ):
        fake_classifier.result = classified(Category.RASTREIO)
        shop = await make_shop()
        message = await make_inbound(shop, subject="Entrega", body="Quando chega minha encomenda?")
        await store.update_conversation(message.conversation_id, data_request_count=3)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.ESCALATED
        assert result.reason == "order_data_not_provided"
        assert result.forwarded is True
        assert fake_responder.data_request_calls == []
        forward, notice = fake_mailbox.sent_emails
        assert forward.to == "suporte@loja.com"
        assert forward.subject.startswith("[ENCAMINHADO] Entrega")
        assert notice.to == "maria@cliente.com"
        assert notice.text_body == "Um atendente vai falar com você em breve."
        assert (await store.get_message(message.id)).status == MessageStatus.PENDING_HUMAN.value
        conversation = await store.get_conversation(message.conversation_id)
        assert conversation.status == ConversationStatus.PENDING_HUMAN.value

    @pytest.mark.asyncio
    async def test_failed_reply_write_does_not_count_data_request(
        self, processor, store, monkeypatch, fake_classifier, fake_responder, fake_mailbox, make_shop, make_inbound
    ):
        fake_classifier.result = classified(Category.RASTREIO)
        shop = await make_shop()
        message = await make_inbound(shop, subject="Entrega", body="Quando chega minha encomenda?")
        record_outbound = store.record_outbound
        failures = [SQLAlchemyError("database unavailable")]

        async def flaky_record_outbound(*args, **kwargs):
            if failures:
                raise failures.pop()
            return await record_outbound(*args, **kwargs)

        monkeypatch.setattr(store, "record_outbound", flaky_record_outbound)

        with pytest.raises(SQLAlchemyError):
            await processor.process(message.id)

        assert (await store.get_conversation(message.conversation_id)).data_request_count == 0

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.DATA_REQUESTED
        assert fake_responder.data_request_calls == [1, 1]
        assert (await store.get_conversation(message.conversation_id)).data_request_count == 1
        assert len(fake_mailbox.sent_emails) == 1


class TestEscalation:
    """Tests for handing conversations to the shop's team."""

    @pytest.mark.asyncio
    async def test_human_requested(self, processor, fake_classifier, fake_responder, fake_mailbox, make_shop, make_inbound):
        fake_classifier.result = classified(Category.SUPORTE_HUMANO)
        shop = await make_shop()
        message = await make_inbound(shop, body="Quero falar com uma pessoa, por favor.")

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.ESCALATED
        assert result.reason == "customer_requested_human"
        assert fake_responder.reply_calls == []
        assert fake_responder.fallback_calls == ["Maria Silva"]
        assert [email.to for email in fake_mailbox.sent_emails] == ["suporte@loja.com", "maria@cliente.com"]

    @pytest.mark.asyncio
    async def test_shop_fallback_template_skips_llm(
        self, processor, fake_classifier, fake_responder, fake_mailbox, make_shop, make_inbound
    ):
        fake_classifier.result = classified(Category.SUPORTE_HUMANO)
        shop = await make_shop(fallback_message_template="Olá {customer_name}, a {attendant_name} vai te responder.")
        message = await make_inbound(shop, body="Quero falar com uma pessoa, por favor.")

        await processor.process(message.id)

        assert fake_responder.fallback_calls == []
        assert fake_mailbox.sent_emails[1].text_body == "Olá Maria Silva, a Ana vai te responder."

    @pytest.mark.asyncio
    async def test_reply_requesting_escalation(
        self, processor, store, fake_responder, fake_mailbox, make_shop, make_inbound
    ):
        fake_responder.forward_to_human = True
        fake_responder.reply_text = "Vou passar seu caso para a equipe."
        shop = await make_shop()
        message = await make_inbound(shop)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.ESCALATED
        assert result.reason == "reply_requested_escalation"
        assert fake_responder.fallback_calls == []
        assert fake_mailbox.sent_emails[1].text_body == "Vou passar seu caso para a equipe."
        assert (await store.get_message(message.id)).status == MessageStatus.PENDING_HUMAN.value

    @pytest.mark.asyncio
    async def test_fallback_failure_then_retry_forwards_once(
        self, processor, store, fake_classifier, fake_responder, fake_mailbox, make_shop, make_inbound
    ):
        fake_classifier.result = classified(Category.SUPORTE_HUMANO)
        fake_responder.fallback_errors = [LLMServerError("upstream 503")]
        shop = await make_shop()
        message = await make_inbound(shop, body="Quero falar com uma pessoa, por favor.")

        with pytest.raises(LLMServerError):
            await processor.process(message.id)

        assert fake_mailbox.sent_emails == []
        assert (await store.get_message(message.id)).forwarded_at is None

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.ESCALATED
        assert [email.to for email in fake_mailbox.sent_emails] == ["suporte@loja.com", "maria@cliente.com"]

    @pytest.mark.asyncio
    async def test_notice_send_failure_then_retry_forwards_once(
        self, processor, store, fake_classifier, fake_mailbox, make_shop, make_inbound
    ):
        fake_classifier.result = classified(Category.SUPORTE_HUMANO)
        fake_mailbox.send_errors = [None, MailboxConnectionError("smtp down")]
        shop = await make_shop()
        message = await make_inbound(shop, body="Quero falar com uma pessoa, por favor.")

        with pytest.raises(MailboxConnectionError):
            await processor.process(message.id)

        stored = await store.get_message(message.id)
        assert stored.forwarded_at is not None
        assert [email.to for email in fake_mailbox.sent_emails] == ["suporte@loja.com"]

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.ESCALATED
        assert result.reason == "resent_recorded_reply"
        assert [email.to for email in fake_mailbox.sent_emails] == ["suporte@loja.com", "maria@cliente.com"]
        assert (await store.get_message(message.id)).status == MessageStatus.PENDING_HUMAN.value


class TestZeroCostFilters:
    """Tests for rejections that must not spend a credit."""

    @pytest.mark.asyncio
    async def test_acknowledgment_needs_no_reply(
        self, processor, store, fake_classifier, fake_mailbox, make_shop, make_inbound
    ):
        shop = await make_shop()
        message = await make_inbound(shop, subject="Re: Pedido atrasado", body="Obrigada!")

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.ACKNOWLEDGED
        assert result.tokens_used == 0
        assert fake_classifier.calls == []
        assert fake_mailbox.sent_emails == []
        stored = await store.get_message(message.id)
        assert stored.status == MessageStatus.REPLIED.value
        assert stored.category == Category.ACKNOWLEDGMENT.value
        assert stored.was_auto_replied is False
        assert (await store.get_user(shop.user_id)).emails_used == 0

    @pytest.mark.asyncio
    async def test_pattern_spam_closes_conversation(
        self, processor, store, fake_classifier, make_shop, make_inbound
    ):
        shop = await make_shop()
        message = await make_inbound(
            shop,
            from_email="growth@agency.com",
            subject="Partnership",
            body="Hi, I came across your store and I can help you increase your sales.",
        )

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.SPAM
        assert fake_classifier.calls == []
        stored = await store.get_message(message.id)
        assert stored.status == MessageStatus.FAILED.value
        assert stored.error_message == "pattern_spam:strong_outreach_phrase"
        conversation = await store.get_conversation(message.conversation_id)
        assert conversation.status == ConversationStatus.CLOSED.value
        assert (await store.get_user(shop.user_id)).emails_used == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "from_email,reason",
        [
            ("not-an-address", "invalid_sender"),
            ("mailer-daemon@google.com", "system_sender:system_local_part"),
            ("contato@loja.com", "forwarding_echo:from_own_address"),
        ],
    )
    async def test_rejected_senders(self, processor, store, fake_classifier, make_shop, make_inbound, from_email, reason):
        shop = await make_shop()
        message = await make_inbound(shop, from_email=from_email)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.REJECTED
        assert result.reason == reason
        assert fake_classifier.calls == []
        assert (await store.get_message(message.id)).status == MessageStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_empty_body_and_short_subject_rejected(self, processor, make_shop, make_inbound):
        shop = await make_shop()
        message = await make_inbound(shop, subject="Re: oi", body="")

        result = await processor.process(message.id)

        assert result.reason == "empty_body"

    @pytest.mark.asyncio
    async def test_subject_used_when_body_empty(self, processor, fake_classifier, make_shop, make_inbound):
        shop = await make_shop()
        message = await make_inbound(shop, subject="Onde está meu pedido 1234", body="")

        await processor.process(message.id)

        assert fake_classifier.calls[0][1] == "Onde está meu pedido 1234"

    @pytest.mark.asyncio
    async def test_reply_loop_detected(self, processor, store, fake_classifier, fake_mailbox, make_shop, make_inbound):
        shop = await make_shop()
        message = await make_inbound(shop)
        await _record_sent_replies(store, message, 5)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.LOOP_DETECTED
        assert fake_classifier.calls == []
        assert fake_mailbox.sent_emails == []
        assert (await store.get_message(message.id)).status == MessageStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_below_loop_threshold_still_replies(self, processor, store, make_shop, make_inbound):
        shop = await make_shop()
        message = await make_inbound(shop)
        await _record_sent_replies(store, message, 4)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.REPLIED


class TestCredits:
    """Tests for the credit gate."""

    @pytest.mark.asyncio
    async def test_no_credit_parks_message_and_warns_owner(
        self, processor, store, fake_classifier, fake_mailbox, make_user, make_shop, make_inbound
    ):
        user = await make_user(emails_limit=1, emails_used=1)
        shop = await make_shop(user=user)
        message = await make_inbound(shop)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.PENDING_CREDITS
        assert fake_classifier.calls == []
        assert [email.to for email in fake_mailbox.sent_emails] == ["dono@loja.com"]
        assert (await store.get_message(message.id)).status == MessageStatus.PENDING_CREDITS.value
        assert (await store.get_user(user.id)).pending_extra_emails == 1

    @pytest.mark.asyncio
    async def test_parked_message_retried_without_double_counting(
        self, processor, store, fake_mailbox, make_user, make_shop, make_inbound
    ):
        user = await make_user(emails_limit=1, emails_used=1)
        shop = await make_shop(user=user)
        message = await make_inbound(shop)
        await processor.process(message.id)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.PENDING_CREDITS
        assert len(fake_mailbox.sent_emails) == 1
        assert (await store.get_user(user.id)).pending_extra_emails == 1


class TestResendGuard:
    """Tests for retries after a reply was recorded."""

    async def _record_reply(self, store, message):
        return await store.record_outbound(
            message,
            to_email=message.from_email,
            from_email="contato@loja.com",
            from_name="Ana",
            subject="Re: Pedido atrasado",
            body="Resposta gravada",
            message_id="<recorded@loja.com>",
            in_reply_to=message.message_id,
            references=message.message_id,
        )

    @pytest.mark.asyncio
    async def test_sent_reply_is_never_resent(
        self, processor, store, fake_classifier, fake_mailbox, make_shop, make_inbound
    ):
        shop = await make_shop()
        message = await make_inbound(shop)
        outbound = await self._record_reply(store, message)
        await store.mark_outbound_sent(outbound.id, None)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.ALREADY_HANDLED
        assert result.reason == "reply_already_sent"
        assert fake_mailbox.sent_emails == []
        assert fake_classifier.calls == []
        assert (await store.get_message(message.id)).status == MessageStatus.REPLIED.value

    @pytest.mark.asyncio
    async def test_unsent_reply_is_resent_with_same_message_id(
        self, processor, store, fake_classifier, fake_mailbox, make_shop, make_inbound
    ):
        shop = await make_shop()
        message = await make_inbound(shop)
        await self._record_reply(store, message)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.REPLIED
        assert result.reason == "resent_recorded_reply"
        assert fake_classifier.calls == []
        assert [email.message_id for email in fake_mailbox.sent_emails] == ["<recorded@loja.com>"]
        assert [email.text_body for email in fake_mailbox.sent_emails] == ["Resposta gravada"]

    @pytest.mark.asyncio
    async def test_send_failure_then_retry(
        self, processor, store, fake_classifier, fake_mailbox, make_shop, make_inbound
    ):
        fake_mailbox.send_errors = [MailboxConnectionError("smtp down")]
        shop = await make_shop()
        message = await make_inbound(shop)

        with pytest.raises(MailboxConnectionError):
            await processor.process(message.id)

        stored = await store.get_message(message.id)
        assert stored.status == MessageStatus.PENDING.value
        recorded = await store.find_outbound_reply(stored)
        assert recorded.status == MessageStatus.PENDING.value

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.REPLIED
        assert len(fake_classifier.calls) == 1
        assert [email.message_id for email in fake_mailbox.sent_emails] == [recorded.message_id]
        assert (await store.get_user(shop.user_id)).emails_used == 1
        assert (await store.get_message(message.id)).status == MessageStatus.REPLIED.value


class TestClaims:
    """Tests for message claiming and locking."""

    @pytest.mark.asyncio
    async def test_missing_message_is_permanent(self, processor):
        with pytest.raises(PermanentProcessingError):
            await processor.process("does-not-exist")

    @pytest.mark.asyncio
    async def test_terminal_message_already_handled(self, processor, store, fake_classifier, make_shop, make_inbound):
        shop = await make_shop()
        message = await make_inbound(shop)
        await store.set_message_status(message.id, MessageStatus.REPLIED)

        result = await processor.process(message.id)

        assert result.outcome == ProcessingOutcome.ALREADY_HANDLED
        assert fake_classifier.calls == []

    @pytest.mark.asyncio
    async def test_message_claimed_elsewhere_is_busy(self, processor, store, make_shop, make_inbound):
        shop = await make_shop()
        message = await make_inbound(shop)
        assert await store.claim_message(message.id)

        with pytest.raises(ConversationBusyError):
            await processor.process(message.id)

    @pytest.mark.asyncio
    async def test_locked_conversation_is_busy(
        self, processor, store, fake_classifier, make_shop, make_inbound, mock_async_redis
    ):
        mock_async_redis.set.return_value = None
        processor.lock = RedisConversationLock(mock_async_redis)
        shop = await make_shop()
        message = await make_inbound(shop)

        with pytest.raises(ConversationBusyError):
            await processor.process(message.id)

        assert fake_classifier.calls == []
        assert (await store.get_message(message.id)).status == MessageStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_lock_released_after_processing(self, processor, make_shop, make_inbound, mock_async_redis):
        redis = mock_async_redis
        processor.lock = RedisConversationLock(redis)
        shop = await make_shop()
        message = await make_inbound(shop)

        await processor.process(message.id)

        redis.set.assert_awaited_once()
        redis.eval.assert_awaited_once()
        assert redis.eval.await_args.args[2] == f"support:lock:conversation:{message.conversation_id}"

    @pytest.mark.asyncio
    async def test_collaborator_error_returns_message_to_pending(
        self, processor, store, fake_classifier, make_shop, make_inbound
    ):
        fake_classifier.error = RuntimeError("provider exploded")
        shop = await make_shop()
        message = await make_inbound(shop)

        with pytest.raises(RuntimeError):
            await processor.process(message.id)

        stored = await store.get_message(message.id)
        assert stored.status == MessageStatus.PENDING.value
        assert stored.credit_reserved_at is not None
