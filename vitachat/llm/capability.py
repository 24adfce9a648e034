"""
LLM capability used by the chat and research flows.

Two calls, both blocking HTTP under the hood and therefore run through
``asyncio.to_thread`` so the event loop never stalls:

- ``decide_scope``: advisory yes/no on whether the turn needs web research.
  Unparsable answers mean "no"; rate-limit and configuration errors propagate.
- ``research``: structured ``ResearchResponse`` from a web-search enabled call.
  A missing parse is a hard failure for that job.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence

from vitachat.llm.errors import LLMConfigurationError, LLMRateLimitError, LLMResponseError
from vitachat.llm.llm_manager import LLMManager, get_manager
from vitachat.log import get_logger
from vitachat.research.schemas import ResearchResponse, ScopeDecision
from vitachat.utils.prompt_manager import PromptManager

logger = get_logger(__name__)

SCOPE_PROMPT = "decide_research.txt"


def render_conversation(messages: Sequence[Dict[str, Any]]) -> str:
    """``User: ...`` / ``Assistant: ...`` lines; anything not from the user counts as the assistant."""
    lines = []
    for m in messages:
        speaker = "User" if m.get("role") == "user" else "Assistant"
        lines.append(f"{speaker}: {m.get('content') or ''}")
    return "\n".join(lines)


class ResearchCapability(Protocol):

    async def decide_scope(self, conversation: List[Dict[str, Any]]) -> bool: ...

    async def research(self, prompt: str, conversation_text: str) -> ResearchResponse: ...


class LLMCapability:

    def __init__(
        self,
        manager: Optional[LLMManager] = None,
        scope_provider: Optional[str] = None,
        research_provider: Optional[str] = None,
    ):
        self._manager = manager
        self._scope_provider = scope_provider
        self._research_provider = research_provider
        self._prompts = PromptManager()

    @property
    def manager(self) -> LLMManager:
        if self._manager is None:
            self._manager = get_manager()
        return self._manager

    def decide_scope_sync(self, conversation: List[Dict[str, Any]]) -> bool:
        provider = self._scope_provider or self.manager.config.scope_provider
        client = self.manager.get_client(provider)
        messages = [
            {"role": "system", "content": self._prompts.render(SCOPE_PROMPT)},
            {"role": "user", "content": render_conversation(conversation)},
        ]
        try:
            resp = client.chat(messages, response_model=ScopeDecision)
        except (LLMRateLimitError, LLMConfigurationError):
            raise
        except LLMResponseError as e:
            logger.warning("[scope] unparsable scope decision, treating as no research: %s", e)
            return False
        parsed: Optional[ScopeDecision] = resp.get("parsed_object")
        if parsed is None:
            logger.warning("[scope] no parsed scope decision, treating as no research")
            return False
        return bool(parsed.research)

    async def decide_scope(self, conversation: List[Dict[str, Any]]) -> bool:
        return await asyncio.to_thread(self.decide_scope_sync, conversation)

    def research_sync(self, prompt: str, conversation_text: str) -> ResearchResponse:
        from config.settings import settings

        provider = self._research_provider or self.manager.config.research_provider
        client = self.manager.get_client(provider)
        resp = client.chat(
            [
                {"role": "system", "content": prompt},
                {"role": "user", "content": conversation_text},
            ],
            response_model=ResearchResponse,
            web_search=True,
            max_output_tokens=settings.research.max_output_tokens,
            timeout_seconds=settings.perf_llm.research_timeout_seconds,
        )
        parsed: Optional[ResearchResponse] = resp.get("parsed_object")
        if parsed is None:
            raise LLMResponseError("No research response received from the LLM provider", provider=provider)
        logger.info("[research] structured response with %d citation(s)", len(parsed.citations))
        return parsed

    async def research(self, prompt: str, conversation_text: str) -> ResearchResponse:
        return await asyncio.to_thread(self.research_sync, prompt, conversation_text)
