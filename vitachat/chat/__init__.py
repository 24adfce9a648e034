from vitachat.chat.orchestrator import (
    FALLBACK_REPLY,
    RESEARCH_PLACEHOLDER,
    ChatOrchestrator,
    ChatTurnResult,
)

__all__ = ["ChatOrchestrator", "ChatTurnResult", "FALLBACK_REPLY", "RESEARCH_PLACEHOLDER"]
