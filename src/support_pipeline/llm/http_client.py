"""
HTTP LLM client implementing the Classifier and Responder contracts.

Communicates with a Messages-style chat completion API using httpx
AsyncClient. Supports:
- JSON classification output with tolerant parsing
- Reply drafting with optional image blocks (vision input)
- Escalation marker detection ("[FORWARD_TO_HUMAN]")
- Connection pooling and connection-level retry with backoff

Provider failures are mapped to the LLM exception hierarchy so the queue
worker can tell a rate limit (stop the batch) from a transient outage
(retry the job) or a permanent rejection (dead-letter).
"""

import asyncio
import base64
import json
import re
import time
from typing import Any, Optional

import httpx
import structlog

from support_pipeline.heuristics.text import truncate_at_sentence_boundary
from support_pipeline.llm.base_client import Classifier, Responder
from support_pipeline.llm.exceptions import (
    LLMAuthError,
    LLMConnectionError,
    LLMGenerationError,
    LLMRateLimitError,
    LLMServerError,
    LLMTimeoutError,
)
from support_pipeline.models.enums import Category
from support_pipeline.models.mail_models import Attachment
from support_pipeline.models.pipeline_models import (
    ClassificationResult,
    HistoryEntry,
    OrderSummary,
    ReplyResult,
    ShopPolicy,
)
from support_pipeline.monitoring.metrics import llm_latency_seconds, llm_tokens_total


logger = structlog.get_logger(__name__)

FORWARD_MARKER = "[FORWARD_TO_HUMAN]"

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

CLASSIFY_SYSTEM_PROMPT = (
    "You classify customer-support emails of an online store. "
    "Answer with one JSON object and nothing else: "
    '{"category": one of ' + ", ".join(Category.classifier_values()) + ', '
    '"confidence": number 0..1, "language": ISO 639-1 code of the customer, '
    '"order_id_found": order number mentioned or null, "summary": one sentence}. '
    "Use suporte_humano only when the customer explicitly asks for a person or "
    "the case cannot be solved by email."
)

REPLY_SYSTEM_PROMPT = (
    "You are {sender_name}, customer support of the store {store_name}. "
    "Tone: {tone}. Reply in the customer's language ({language}). "
    "Use only the facts given below; never invent tracking numbers or dates. "
    "Never ask for a tracking number. If the case needs a human, start the "
    "reply with " + FORWARD_MARKER + "."
)


class LLMClient(Classifier, Responder):
    """
    Classifier and Responder backed by one chat-completion HTTP API.

    API Endpoints:
    - POST /v1/messages: one completion per call

    Connection-level retries (timeouts, network errors, 5xx) happen here;
    anything still failing is raised to the job queue, which retries the
    whole job with backoff.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        model: str,
        api_version: str = "2023-06-01",
        timeout: int = 60,
        max_tokens: int = 1024,
        temperature: float = 0.3,
        max_retries: int = 2,
        body_limit: int = 8000,
        connection_limits: Optional[httpx.Limits] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.api_version = api_version
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_retries = max(1, max_retries)
        self.body_limit = body_limit
        self._connection_limits = connection_limits or httpx.Limits(
            max_keepalive_connections=5,
            max_connections=10,
            keepalive_expiry=30.0,
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(
            "LLM client initialized",
            base_url=self.base_url,
            model=model,
            timeout=timeout,
            max_retries=self.max_retries,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {
                "anthropic-version": self.api_version,
                "content-type": "application/json",
            }
            if self.api_key:
                headers["x-api-key"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                limits=self._connection_limits,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _complete(
        self,
        operation: str,
        system: str,
        content: list[dict[str, Any]],
        max_tokens: Optional[int] = None,
    ) -> tuple[str, int, int]:
        """
        One completion call with connection-level retries.

        Returns:
            (text, input_tokens, output_tokens)
        """
        payload = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature,
            "system": system,
            "messages": [{"role": "user", "content": content}],
        }
        start_time = time.time()
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                client = await self._get_client()
                response = await client.post("/v1/messages", json=payload)
                response.raise_for_status()
                data = response.json()

                text = "".join(
                    block.get("text", "")
                    for block in data.get("content", [])
                    if block.get("type") == "text"
                ).strip()
                if not text:
                    raise LLMGenerationError("Empty completion", details={"operation": operation})

                usage = data.get("usage") or {}
                tokens_in = int(usage.get("input_tokens") or 0)
                tokens_out = int(usage.get("output_tokens") or 0)
                latency = time.time() - start_time

                llm_latency_seconds.labels(operation=operation, success="true").observe(latency)
                llm_tokens_total.labels(operation=operation, token_type="input").inc(tokens_in)
                llm_tokens_total.labels(operation=operation, token_type="output").inc(tokens_out)
                logger.info(
                    "LLM completion successful",
                    operation=operation,
                    latency_ms=int(latency * 1000),
                    tokens_input=tokens_in,
                    tokens_output=tokens_out,
                    attempt=attempt,
                )
                return text, tokens_in, tokens_out

            except httpx.TimeoutException as e:
                last_error = LLMTimeoutError(
                    f"LLM request timeout after {self.timeout}s",
                    details={"attempt": attempt, "operation": operation, "error": str(e)},
                )
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                details = {"status": status_code, "operation": operation, "error": e.response.text[:500]}
                if status_code == 429:
                    raise LLMRateLimitError(f"LLM rate_limit (429) for {operation}", details=details)
                if status_code in (401, 403):
                    raise LLMAuthError(f"LLM provider rejected credentials ({status_code})", details=details)
                if status_code >= 500:
                    last_error = LLMServerError(
                        f"LLM provider error {status_code}{' overloaded' if status_code == 529 else ''}",
                        details=details,
                    )
                else:
                    raise LLMGenerationError(f"LLM request rejected ({status_code})", details=details)
            except httpx.TransportError as e:
                last_error = LLMConnectionError(
                    f"LLM network error: {e}",
                    details={"attempt": attempt, "error_type": type(e).__name__},
                )
            except json.JSONDecodeError as e:
                raise LLMGenerationError(
                    "Invalid JSON response from LLM provider",
                    details={"parse_error": str(e)},
                )

            llm_latency_seconds.labels(operation=operation, success="false").observe(time.time() - start_time)
            logger.warning(
                "LLM call failed",
                operation=operation,
                attempt=attempt,
                max_retries=self.max_retries,
                error=str(last_error),
            )
            if attempt < self.max_retries:
                await asyncio.sleep(2 ** attempt)

        assert last_error is not None
        raise last_error

    # ------------------------------------------------------------------
    # Prompt helpers
    # ------------------------------------------------------------------

    def _clip(self, body: str) -> str:
        return truncate_at_sentence_boundary(body or "", self.body_limit)

    @staticmethod
    def _format_history(history: list[HistoryEntry]) -> str:
        if not history:
            return "(no earlier messages)"
        return "\n\n".join(f"[{entry.role}] {entry.body.strip()}" for entry in history)

    @staticmethod
    def _format_order(order: Optional[OrderSummary]) -> str:
        if order is None:
            return "(no order data)"
        fields = order.model_dump(exclude_none=True)
        return "\n".join(f"{key}: {value}" for key, value in fields.items() if value not in ([], ""))

    @staticmethod
    def _format_policy(policy: ShopPolicy) -> str:
        lines = [f"store: {policy.name}"]
        for label, value in (
            ("description", policy.store_description),
            ("delivery time", policy.delivery_time),
            ("dispatch time", policy.dispatch_time),
            ("warranty", policy.warranty_info),
            ("support email", policy.support_email),
        ):
            if value:
                lines.append(f"{label}: {value}")
        if policy.is_cod:
            lines.append("payment: cash on delivery")
        return "\n".join(lines)

    @staticmethod
    def _image_blocks(images: Optional[list[Attachment]]) -> list[dict[str, Any]]:
        blocks = []
        for image in images or []:
            if not image.is_image or not image.content:
                continue
            blocks.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image.content_type,
                    "data": base64.b64encode(image.content).decode("ascii"),
                },
            })
        return blocks

    def _system_for(self, policy: ShopPolicy, language: str) -> str:
        return REPLY_SYSTEM_PROMPT.format(
            sender_name=policy.sender_name,
            store_name=policy.name,
            tone=policy.tone_of_voice,
            language=language,
        )

    @staticmethod
    def _split_marker(text: str) -> tuple[str, bool]:
        if FORWARD_MARKER in text:
            return text.replace(FORWARD_MARKER, "").strip(), True
        return text, False

    # ------------------------------------------------------------------
    # Classifier
    # ------------------------------------------------------------------

    async def classify(
        self,
        subject: str,
        body: str,
        history: list[HistoryEntry],
    ) -> ClassificationResult:
        content = [{
            "type": "text",
            "text": (
                f"History:\n{self._format_history(history)}\n\n"
                f"Subject: {subject}\n\nBody:\n{self._clip(body)}"
            ),
        }]
        text, tokens_in, tokens_out = await self._complete("classify", CLASSIFY_SYSTEM_PROMPT, content, 300)
        return self.parse_classification(text, tokens_in, tokens_out)

    @staticmethod
    def parse_classification(text: str, tokens_in: int = 0, tokens_out: int = 0) -> ClassificationResult:
        """
        Parse the classifier's JSON answer.

        Unparseable output falls back to duvidas_gerais with zero confidence
        rather than failing the job.
        """
        match = _JSON_OBJECT.search(text)
        data: dict[str, Any] = {}
        if match:
            try:
                data = json.loads(match.group(0))
            except json.JSONDecodeError:
                data = {}
        if not isinstance(data, dict) or not data:
            logger.warning("Unparseable classification output", preview=text[:200])
            data = {}

        order_hint = data.get("order_id_found")
        return ClassificationResult(
            category=data.get("category"),
            confidence=data.get("confidence", 0.0),
            language=data.get("language"),
            order_id_found=str(order_hint) if order_hint else None,
            summary=str(data.get("summary") or ""),
            tokens_input=tokens_in,
            tokens_output=tokens_out,
        )

    # ------------------------------------------------------------------
    # Responder
    # ------------------------------------------------------------------

    async def generate_reply(
        self,
        policy: ShopPolicy,
        subject: str,
        body: str,
        category: Category,
        history: list[HistoryEntry],
        order: Optional[OrderSummary],
        language: str,
        retention_contact_count: int,
        images: Optional[list[Attachment]] = None,
        customer_frustrated: bool = False,
    ) -> ReplyResult:
        notes = [f"Category: {category.value}"]
        if category == Category.TROCA_DEVOLUCAO_REEMBOLSO:
            notes.append(f"Retention contact number: {retention_contact_count}")
            if policy.retention_coupon_code and retention_contact_count <= 2:
                notes.append(
                    f"Offer coupon {policy.retention_coupon_code}"
                    f" ({policy.retention_coupon_percent or 0}% off) before accepting a refund."
                )
        if customer_frustrated:
            notes.append("The customer is frustrated: acknowledge it and be concise.")

        content: list[dict[str, Any]] = [{
            "type": "text",
            "text": (
                f"Store policy:\n{self._format_policy(policy)}\n\n"
                f"Order data:\n{self._format_order(order)}\n\n"
                f"{chr(10).join(notes)}\n\n"
                f"History:\n{self._format_history(history)}\n\n"
                f"Subject: {subject}\n\nCustomer message:\n{self._clip(body)}"
            ),
        }]
        content.extend(self._image_blocks(images))

        text, tokens_in, tokens_out = await self._complete("reply", self._system_for(policy, language), content)
        text, forward = self._split_marker(text)
        return ReplyResult(text=text, tokens_input=tokens_in, tokens_output=tokens_out, forward_to_human=forward)

    async def generate_data_request(
        self,
        policy: ShopPolicy,
        subject: str,
        body: str,
        attempt: int,
        language: str,
    ) -> ReplyResult:
        content = [{
            "type": "text",
            "text": (
                f"Request number {attempt}. Politely ask the customer for their order number "
                "(for example #1234) so the store can help. Do not ask for a tracking number.\n\n"
                f"Subject: {subject}\n\nCustomer message:\n{self._clip(body)}"
            ),
        }]
        text, tokens_in, tokens_out = await self._complete(
            "data_request", self._system_for(policy, language), content, 400
        )
        text, _ = self._split_marker(text)
        return ReplyResult(text=text, tokens_input=tokens_in, tokens_output=tokens_out)

    async def generate_human_fallback(
        self,
        policy: ShopPolicy,
        customer_name: Optional[str],
        language: str,
    ) -> ReplyResult:
        content = [{
            "type": "text",
            "text": (
                f"Write a short message to {customer_name or 'the customer'} saying a member of "
                "the team will take over this conversation by email shortly."
            ),
        }]
        text, tokens_in, tokens_out = await self._complete(
            "human_fallback", self._system_for(policy, language), content, 300
        )
        text, _ = self._split_marker(text)
        return ReplyResult(text=text, tokens_input=tokens_in, tokens_output=tokens_out)
