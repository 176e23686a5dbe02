"""
Classifier and Responder contracts and the HTTP implementation.

Components:
- Classifier / Responder: Abstract interfaces used by the processor
- LLMClient: httpx implementation of both
- exceptions: LLM-specific exceptions
"""

from support_pipeline.llm.base_client import Classifier, Responder
from support_pipeline.llm.http_client import LLMClient
from support_pipeline.llm.exceptions import (
    LLMAuthError,
    LLMClientError,
    LLMConnectionError,
    LLMGenerationError,
    LLMRateLimitError,
    LLMServerError,
    LLMTimeoutError,
)

__all__ = [
    "Classifier",
    "Responder",
    "LLMClient",
    "LLMClientError",
    "LLMConnectionError",
    "LLMTimeoutError",
    "LLMRateLimitError",
    "LLMServerError",
    "LLMAuthError",
    "LLMGenerationError",
]
