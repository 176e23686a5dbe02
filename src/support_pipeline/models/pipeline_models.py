"""
Pipeline data models exchanged with the Classifier, Responder and Order Lookup.

These models are the narrow contracts between the processing state machine
and its external collaborators. They are separate from the persistence
tables so collaborators never see ORM objects.
"""

from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from support_pipeline.models.enums import Category, Direction, ProcessingOutcome


class HistoryEntry(BaseModel):
    """One earlier message of a conversation, oldest first in a history list."""

    model_config = ConfigDict(frozen=True)

    direction: Direction
    from_email: Optional[str] = None
    subject: Optional[str] = None
    body: str = ""
    created_at: Optional[datetime] = None

    @property
    def role(self) -> str:
        return "customer" if self.direction == Direction.INBOUND else "assistant"


class ClassificationResult(BaseModel):
    """
    Classifier output.

    Unknown categories fall back to `duvidas_gerais` and confidence is
    clamped to 0..1 so a sloppy provider answer never fails the job.
    """

    category: Category = Category.DUVIDAS_GERAIS
    confidence: float = 0.0
    language: str = "pt"
    order_id_found: Optional[str] = None
    summary: str = ""
    tokens_input: int = 0
    tokens_output: int = 0

    @field_validator("category", mode="before")
    @classmethod
    def _fallback_category(cls, value: Any) -> Any:
        if isinstance(value, Category):
            return value
        if isinstance(value, str) and value.strip().lower() in Category.classifier_values():
            return value.strip().lower()
        return Category.DUVIDAS_GERAIS

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, min(1.0, number))

    @field_validator("language", mode="before")
    @classmethod
    def _default_language(cls, value: Any) -> str:
        if not value or not isinstance(value, str):
            return "pt"
        return value.strip().lower()


class ReplyResult(BaseModel):
    """Responder output for any of the three generation calls."""

    text: str
    tokens_input: int = 0
    tokens_output: int = 0
    forward_to_human: bool = False

    @property
    def total_tokens(self) -> int:
        return self.tokens_input + self.tokens_output


class OrderSummary(BaseModel):
    """
    Order context handed to the Responder.

    A minimal summary (number only) is used when the customer gave an order
    number but the commerce lookup failed.
    """

    order_number: str
    order_date: Optional[str] = None
    order_status: Optional[str] = None
    order_total: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    fulfillment_status: Optional[str] = None
    items: list[dict[str, Any]] = Field(default_factory=list)
    customer_name: Optional[str] = None

    @classmethod
    def minimal(cls, order_number: str) -> "OrderSummary":
        return cls(order_number=order_number)

    @property
    def is_minimal(self) -> bool:
        return self.order_status is None and self.fulfillment_status is None and not self.items


class ShopPolicy(BaseModel):
    """Reply policy of a shop, as read from its configuration."""

    model_config = ConfigDict(frozen=True)

    shop_id: str
    name: str
    attendant_name: Optional[str] = None
    support_email: Optional[str] = None
    tone_of_voice: str = "friendly"
    store_description: Optional[str] = None
    delivery_time: Optional[str] = None
    dispatch_time: Optional[str] = None
    warranty_info: Optional[str] = None
    retention_coupon_code: Optional[str] = None
    retention_coupon_percent: Optional[int] = None
    signature_html: Optional[str] = None
    is_cod: bool = False
    fallback_message_template: Optional[str] = None

    @property
    def sender_name(self) -> str:
        return self.attendant_name or self.name


class ProcessingResult(BaseModel):
    """
    What one processing attempt of a Message did.

    Returned by MessageProcessor and stored as the job result.
    """

    message_id: str
    outcome: ProcessingOutcome
    reason: Optional[str] = None
    category: Optional[Category] = None
    tokens_used: int = 0
    reply_message_id: Optional[str] = None
    forwarded: bool = False
