"""Convenience exports for ai-dev-agent code-generation clients."""

from .chat_completions import ChatCompletionsClient
from .llm_client import (
    ChatRequest,
    GenerationClient,
    LLMAPIError,
    LLMCancelledError,
    LLMClient,
    LLMClientError,
    LLMResponseFormatError,
    LLMTransportError,
    is_retryable_error,
)

__all__ = [
    "ChatCompletionsClient",
    "ChatRequest",
    "GenerationClient",
    "LLMAPIError",
    "LLMCancelledError",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "is_retryable_error",
]
