"""
Pydantic data models and enums for the Support Pipeline.

Includes:
- Enums (Category, MessageStatus, JobStatus, ErrorType, ...)
- Mail models (InboundEmail, OutgoingEmail, MailboxCredentials, ...)
- Pipeline models (ClassificationResult, ReplyResult, OrderSummary, ShopPolicy, ...)
- Run models (IngestionRunResult, QueueRunResult, JanitorRunResult, ...)
"""

from support_pipeline.models.enums import (
    Category,
    ConversationStatus,
    Direction,
    EmailStartMode,
    ErrorType,
    JobStatus,
    JobType,
    MessageStatus,
    ProcessingOutcome,
    UserStatus,
)
from support_pipeline.models.mail_models import (
    Attachment,
    CommerceCredentials,
    InboundEmail,
    MailboxCredentials,
    OutgoingEmail,
    SentEmail,
)
from support_pipeline.models.pipeline_models import (
    ClassificationResult,
    HistoryEntry,
    OrderSummary,
    ProcessingResult,
    ReplyResult,
    ShopPolicy,
)
from support_pipeline.models.run_models import (
    IngestionRunResult,
    JanitorRunResult,
    PendingCreditsRunResult,
    QueueRunResult,
    ShopIngestionResult,
)

__all__ = [
    # Enums
    "Category",
    "ConversationStatus",
    "Direction",
    "EmailStartMode",
    "ErrorType",
    "JobStatus",
    "JobType",
    "MessageStatus",
    "ProcessingOutcome",
    "UserStatus",
    # Mail
    "Attachment",
    "CommerceCredentials",
    "InboundEmail",
    "MailboxCredentials",
    "OutgoingEmail",
    "SentEmail",
    # Pipeline
    "ClassificationResult",
    "HistoryEntry",
    "OrderSummary",
    "ProcessingResult",
    "ReplyResult",
    "ShopPolicy",
    # Runs
    "IngestionRunResult",
    "JanitorRunResult",
    "PendingCreditsRunResult",
    "QueueRunResult",
    "ShopIngestionResult",
]
