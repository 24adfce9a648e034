"""LLM layer: provider manager, typed errors, chat/research capability."""

from vitachat.llm.errors import (
    LLMConfigurationError,
    LLMError,
    LLMRateLimitError,
    LLMResponseError,
)
from vitachat.llm.llm_manager import LLMManager, get_manager

__all__ = [
    "LLMConfigurationError",
    "LLMError",
    "LLMManager",
    "LLMRateLimitError",
    "LLMResponseError",
    "get_manager",
]
