"""
Enumerations for Support Pipeline data models.

All enums are closed taxonomies and are stored by value in the database.
"""

from enum import Enum


class Category(str, Enum):
    """
    Closed taxonomy of customer intents returned by the Classifier.

    `acknowledgment` is never produced by the Classifier; it is assigned by
    the heuristic filters before any paid step runs.
    """

    SPAM = "spam"
    DUVIDAS_GERAIS = "duvidas_gerais"
    RASTREIO = "rastreio"
    TROCA_DEVOLUCAO_REEMBOLSO = "troca_devolucao_reembolso"
    EDICAO_PEDIDO = "edicao_pedido"
    SUPORTE_HUMANO = "suporte_humano"
    ACKNOWLEDGMENT = "acknowledgment"

    @classmethod
    def requires_order_context(cls, category: "Category") -> bool:
        """Categories that need an order number before an AI reply."""
        return category in (cls.RASTREIO, cls.TROCA_DEVOLUCAO_REEMBOLSO, cls.EDICAO_PEDIDO)

    @classmethod
    def classifier_values(cls) -> list[str]:
        return [c.value for c in cls if c is not cls.ACKNOWLEDGMENT]


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    """
    Message lifecycle.

    Terminal: replied, failed, pending_human. `pending_credits` is parked,
    not terminal: it goes back to pending once the owner has credit.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    REPLIED = "replied"
    PENDING_CREDITS = "pending_credits"
    PENDING_HUMAN = "pending_human"
    FAILED = "failed"

    @classmethod
    def terminal(cls) -> tuple["MessageStatus", ...]:
        return (cls.REPLIED, cls.FAILED, cls.PENDING_HUMAN)


class ConversationStatus(str, Enum):
    OPEN = "open"
    REPLIED = "replied"
    PENDING_HUMAN = "pending_human"
    CLOSED = "closed"


class JobStatus(str, Enum):
    """
    Job lifecycle.

    A failed attempt that will be retried goes back to `pending` with a
    future `next_retry_at`; `failed` is only used for jobs abandoned by an
    operator and never set by the workers.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"

    @classmethod
    def active(cls) -> tuple["JobStatus", ...]:
        return (cls.PENDING, cls.PROCESSING)


class JobType(str, Enum):
    PROCESS_EMAIL = "process_email"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class EmailStartMode(str, Enum):
    """Where the first sync of a shop mailbox starts."""

    ALL_RECENT = "all_recent"
    FROM_INTEGRATION_DATE = "from_integration_date"


class ErrorType(str, Enum):
    """Error taxonomy recorded on failed jobs."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    INVALID_DATA = "invalid_data"
    SPAM = "spam"
    AUTH_ERROR = "auth_error"
    COMMERCE_ERROR = "commerce_error"
    AI_ERROR = "ai_error"
    SMTP_ERROR = "smtp_error"
    IMAP_ERROR = "imap_error"
    UNKNOWN_ERROR = "unknown_error"


class ProcessingOutcome(str, Enum):
    """How one processing attempt of a Message ended."""

    REPLIED = "replied"
    DATA_REQUESTED = "data_requested"
    ESCALATED = "escalated"
    ACKNOWLEDGED = "acknowledged"
    SPAM = "spam"
    REJECTED = "rejected"
    LOOP_DETECTED = "loop_detected"
    PENDING_CREDITS = "pending_credits"
    ALREADY_HANDLED = "already_handled"
