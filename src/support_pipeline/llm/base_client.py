"""
Abstract Classifier and Responder interfaces.

The message processor depends only on these two contracts; the concrete
provider client (LLMClient in http_client.py) implements both, and tests
substitute fakes.
"""

from abc import ABC, abstractmethod
from typing import Optional

from support_pipeline.models.enums import Category
from support_pipeline.models.mail_models import Attachment
from support_pipeline.models.pipeline_models import (
    ClassificationResult,
    HistoryEntry,
    OrderSummary,
    ReplyResult,
    ShopPolicy,
)


class Classifier(ABC):
    """
    Intent classifier.

    Responsibilities:
    - Map subject/body/history to one Category with confidence and language
    - Report an order number if the model spotted one

    Does NOT handle:
    - Acknowledgment/auto-responder/spam heuristics (run before, for free)
    - Retrying provider errors (the job queue retries the whole job)
    """

    @abstractmethod
    async def classify(
        self,
        subject: str,
        body: str,
        history: list[HistoryEntry],
    ) -> ClassificationResult:
        """
        Raises:
            LLMClientError subclass on provider failure
        """


class Responder(ABC):
    """
    Reply generator.

    Responsibilities:
    - Draft the customer reply for a category under the shop's policy
    - Draft the "please send your order number" request
    - Draft the "a human will contact you" notice
    - Flag replies that should be escalated to a human

    Does NOT handle:
    - Sending (the processor records and sends through the Mailbox Gateway)
    - Deciding whether order data is required (processor policy)
    """

    @abstractmethod
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
        """Draft the reply; `forward_to_human` set when the model asks for escalation."""

    @abstractmethod
    async def generate_data_request(
        self,
        policy: ShopPolicy,
        subject: str,
        body: str,
        attempt: int,
        language: str,
    ) -> ReplyResult:
        """Ask the customer for the order number (never a tracking number)."""

    @abstractmethod
    async def generate_human_fallback(
        self,
        policy: ShopPolicy,
        customer_name: Optional[str],
        language: str,
    ) -> ReplyResult:
        """Tell the customer a human will take over."""
