"""
Unit tests for LLMClient.

The provider is replaced by an httpx.MockTransport so request payloads and
error mapping can be asserted without network access.
"""

import base64
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from support_pipeline.llm.exceptions import (
    LLMAuthError,
    LLMConnectionError,
    LLMGenerationError,
    LLMRateLimitError,
    LLMServerError,
    LLMTimeoutError,
)
from support_pipeline.llm.http_client import CLASSIFY_SYSTEM_PROMPT, LLMClient
from support_pipeline.models.enums import Category, Direction
from support_pipeline.models.mail_models import Attachment
from support_pipeline.models.pipeline_models import HistoryEntry, OrderSummary, ShopPolicy


def completion(text: str, tokens_in: int = 120, tokens_out: int = 40) -> dict:
    return {
        "content": [{"type": "text", "text": text}],
        "usage": {"input_tokens": tokens_in, "output_tokens": tokens_out},
    }


class Provider:
    """Scripted provider: returns queued responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def payload(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def make_client(provider: Provider, **kwargs) -> LLMClient:
    return LLMClient(
        base_url="https://llm.test/",
        api_key="sk-test",
        model="test-model",
        transport=httpx.MockTransport(provider),
        **kwargs,
    )


@pytest.fixture
def policy():
    return ShopPolicy(
        shop_id="shop-1",
        name="Loja Exemplo",
        attendant_name="Ana",
        support_email="suporte@loja.com",
        retention_coupon_code="VOLTA10",
        retention_coupon_percent=10,
    )


@pytest.fixture
def no_sleep():
    with patch("support_pipeline.llm.http_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestClassify:
    @pytest.mark.asyncio
    async def test_parses_classification(self):
        answer = json.dumps({
            "category": "rastreio",
            "confidence": 0.92,
            "language": "PT",
            "order_id_found": 1234,
            "summary": "Cliente pergunta pelo pedido",
        })
        provider = Provider(httpx.Response(200, json=completion(answer, 50, 10)))
        client = make_client(provider)

        result = await client.classify("Pedido atrasado", "Onde está meu pedido #1234?", [])

        assert result.category == Category.RASTREIO
        assert result.confidence == 0.92
        assert result.language == "pt"
        assert result.order_id_found == "1234"
        assert result.tokens_input == 50
        assert result.tokens_output == 10

        request = provider.requests[0]
        assert request.url == "https://llm.test/v1/messages"
        assert request.headers["x-api-key"] == "sk-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        payload = provider.payload()
        assert payload["model"] == "test-model"
        assert payload["system"] == CLASSIFY_SYSTEM_PROMPT
        assert payload["max_tokens"] == 300

    @pytest.mark.asyncio
    async def test_history_included_in_prompt(self):
        provider = Provider(httpx.Response(200, json=completion('{"category": "duvidas_gerais"}')))
        client = make_client(provider)
        history = [
            HistoryEntry(direction=Direction.INBOUND, body="Primeira pergunta"),
            HistoryEntry(direction=Direction.OUTBOUND, body="Primeira resposta"),
        ]

        await client.classify("Re: Dúvida", "Mais uma coisa", history)

        text = provider.payload()["messages"][0]["content"][0]["text"]
        assert "[customer] Primeira pergunta" in text
        assert "[assistant] Primeira resposta" in text

    def test_json_wrapped_in_prose(self):
        result = LLMClient.parse_classification(
            'Here you go: {"category": "edicao_pedido", "confidence": 0.7} thanks'
        )

        assert result.category == Category.EDICAO_PEDIDO
        assert result.confidence == 0.7

    @pytest.mark.parametrize(
        "text",
        ["not json at all", "{broken json", '["a", "list"]', "{}"],
    )
    def test_unparseable_falls_back_to_general(self, text):
        result = LLMClient.parse_classification(text, 10, 2)

        assert result.category == Category.DUVIDAS_GERAIS
        assert result.confidence == 0.0
        assert result.tokens_input == 10

    def test_unknown_category_and_out_of_range_confidence(self):
        result = LLMClient.parse_classification('{"category": "refund", "confidence": 7}')

        assert result.category == Category.DUVIDAS_GERAIS
        assert result.confidence == 1.0

    def test_acknowledgment_is_not_a_classifier_category(self):
        result = LLMClient.parse_classification('{"category": "acknowledgment", "confidence": 0.9}')

        assert result.category == Category.DUVIDAS_GERAIS


class TestGenerateReply:
    @pytest.mark.asyncio
    async def test_reply_with_order_context(self, policy):
        provider = Provider(httpx.Response(200, json=completion("Seu pedido está a caminho.")))
        client = make_client(provider)
        order = OrderSummary(order_number="1234", order_status="paid", tracking_number="BR123")

        reply = await client.generate_reply(
            policy, "Pedido", "Onde está?", Category.RASTREIO, [], order, "pt", 0
        )

        assert reply.text == "Seu pedido está a caminho."
        assert reply.forward_to_human is False
        assert reply.total_tokens == 160
        payload = provider.payload()
        assert "Ana" in payload["system"]
        assert "Loja Exemplo" in payload["system"]
        text = payload["messages"][0]["content"][0]["text"]
        assert "tracking_number: BR123" in text
        assert "Category: rastreio" in text

    @pytest.mark.asyncio
    async def test_forward_marker_stripped(self, policy):
        provider = Provider(httpx.Response(200, json=completion("[FORWARD_TO_HUMAN] Vamos encaminhar.")))
        client = make_client(provider)

        reply = await client.generate_reply(
            policy, "Pedido", "Quero falar com alguém", Category.DUVIDAS_GERAIS, [], None, "pt", 0
        )

        assert reply.forward_to_human is True
        assert reply.text == "Vamos encaminhar."

    @pytest.mark.asyncio
    async def test_retention_coupon_offered_on_early_contacts(self, policy):
        provider = Provider(
            httpx.Response(200, json=completion("Oferta")),
            httpx.Response(200, json=completion("Reembolso")),
        )
        client = make_client(provider)

        for count in (1, 3):
            await client.generate_reply(
                policy, "Troca", "Quero devolver", Category.TROCA_DEVOLUCAO_REEMBOLSO, [], None, "pt", count
            )

        first = provider.payload(0)["messages"][0]["content"][0]["text"]
        third = provider.payload(1)["messages"][0]["content"][0]["text"]
        assert "Offer coupon VOLTA10 (10% off)" in first
        assert "VOLTA10" not in third
        assert "Retention contact number: 3" in third

    @pytest.mark.asyncio
    async def test_images_sent_as_base64_blocks(self, policy):
        provider = Provider(httpx.Response(200, json=completion("Recebemos a foto.")))
        client = make_client(provider)
        images = [
            Attachment(filename="foto.png", content_type="image/png", content=b"\x89PNG"),
            Attachment(filename="nota.pdf", content_type="application/pdf", content=b"%PDF"),
        ]

        await client.generate_reply(
            policy, "Produto com defeito", "Segue foto", Category.DUVIDAS_GERAIS, [], None, "pt", 0,
            images=images,
        )

        content = provider.payload()["messages"][0]["content"]
        assert len(content) == 2
        assert content[1]["type"] == "image"
        assert content[1]["source"]["media_type"] == "image/png"
        assert content[1]["source"]["data"] == base64.b64encode(b"\x89PNG").decode("ascii")

    @pytest.mark.asyncio
    async def test_body_clipped_to_limit(self, policy):
        provider = Provider(httpx.Response(200, json=completion("ok")))
        client = make_client(provider, body_limit=50)

        await client.generate_reply(
            policy, "Longo", "Frase curta. " + "x" * 500, Category.DUVIDAS_GERAIS, [], None, "pt", 0
        )

        text = provider.payload()["messages"][0]["content"][0]["text"]
        assert "x" * 100 not in text

    @pytest.mark.asyncio
    async def test_data_request_and_fallback(self, policy):
        provider = Provider(
            httpx.Response(200, json=completion("Pode nos enviar o número do pedido?")),
            httpx.Response(200, json=completion("[FORWARD_TO_HUMAN] Nossa equipe vai assumir.")),
        )
        client = make_client(provider)

        request = await client.generate_data_request(policy, "Pedido", "Cadê?", 2, "pt")
        fallback = await client.generate_human_fallback(policy, "Maria", "pt")

        assert "número do pedido" in request.text
        assert "Request number 2" in provider.payload(0)["messages"][0]["content"][0]["text"]
        assert provider.payload(0)["max_tokens"] == 400
        assert fallback.text == "Nossa equipe vai assumir."
        assert fallback.forward_to_human is False
        assert "Maria" in provider.payload(1)["messages"][0]["content"][0]["text"]


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_rate_limit_not_retried(self, no_sleep):
        provider = Provider(httpx.Response(429, json={"error": "rate_limit"}))
        client = make_client(provider)

        with pytest.raises(LLMRateLimitError):
            await client.classify("s", "b", [])

        assert len(provider.requests) == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_errors(self, status, no_sleep):
        client = make_client(Provider(httpx.Response(status)))

        with pytest.raises(LLMAuthError):
            await client.classify("s", "b", [])

    @pytest.mark.asyncio
    async def test_client_error_rejected(self, no_sleep):
        client = make_client(Provider(httpx.Response(400, json={"error": "bad request"})))

        with pytest.raises(LLMGenerationError):
            await client.classify("s", "b", [])

    @pytest.mark.asyncio
    async def test_server_error_retried_then_raised(self, no_sleep):
        provider = Provider(httpx.Response(529), httpx.Response(529))
        client = make_client(provider, max_retries=2)

        with pytest.raises(LLMServerError) as exc_info:
            await client.classify("s", "b", [])

        assert "overloaded" in str(exc_info.value)
        assert len(provider.requests) == 2
        no_sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_server_error_recovers(self, no_sleep):
        provider = Provider(
            httpx.Response(503),
            httpx.Response(200, json=completion('{"category": "rastreio", "confidence": 0.8}')),
        )
        client = make_client(provider)

        result = await client.classify("s", "b", [])

        assert result.category == Category.RASTREIO
        assert len(provider.requests) == 2

    @pytest.mark.asyncio
    async def test_timeout(self, no_sleep):
        request = httpx.Request("POST", "https://llm.test/v1/messages")
        provider = Provider(httpx.ReadTimeout("slow", request=request), httpx.ReadTimeout("slow", request=request))
        client = make_client(provider)

        with pytest.raises(LLMTimeoutError):
            await client.classify("s", "b", [])

    @pytest.mark.asyncio
    async def test_network_error(self, no_sleep):
        request = httpx.Request("POST", "https://llm.test/v1/messages")
        provider = Provider(
            httpx.ConnectError("refused", request=request),
            httpx.ConnectError("refused", request=request),
        )
        client = make_client(provider)

        with pytest.raises(LLMConnectionError) as exc_info:
            await client.classify("s", "b", [])

        assert not isinstance(exc_info.value, LLMTimeoutError)
        assert exc_info.value.details["error_type"] == "ConnectError"

    @pytest.mark.asyncio
    async def test_empty_completion(self):
        client = make_client(Provider(httpx.Response(200, json={"content": [], "usage": {}})))

        with pytest.raises(LLMGenerationError, match="Empty completion"):
            await client.classify("s", "b", [])

    @pytest.mark.asyncio
    async def test_invalid_json_body(self):
        client = make_client(Provider(httpx.Response(200, content=b"<html>oops</html>")))

        with pytest.raises(LLMGenerationError, match="Invalid JSON"):
            await client.classify("s", "b", [])


@pytest.mark.asyncio
async def test_close_recreates_client_on_next_call():
    provider = Provider(
        httpx.Response(200, json=completion("{}")),
        httpx.Response(200, json=completion("{}")),
    )
    client = make_client(provider)
    await client.classify("s", "b", [])
    first = client._client

    await client.close()
    assert client._client is None
    assert first.is_closed

    await client.classify("s", "b", [])
    assert client._client is not first
    await client.close()
