"""
对话编排：处理一轮用户输入。

- 记录用户消息（尽力而为）
- 询问 LLM 是否需要深度检索（仅作参考）
- 不需要：返回固定的兜底回复，不创建检索任务
- 需要：返回占位回复并落库，先创建 pending 任务再在后台启动 ResearchPipeline
- LLM 异常按类型映射为 error_kind / retryable，用户侧始终拿到兜底回复
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from vitachat.llm.capability import ResearchCapability
from vitachat.llm.errors import LLMConfigurationError, LLMError, LLMRateLimitError
from vitachat.log import get_logger
from vitachat.research.job_store import ResearchJobStore
from vitachat.research.pipeline import ResearchPipeline
from vitachat.stores.message_store import MessageStore, persist_best_effort
from vitachat.utils.ids import new_message_id
from vitachat.utils.task_runner import BackgroundTasks, background_tasks

logger = get_logger(__name__)

FALLBACK_REPLY = (
    "Sorry, I cannot answer that question. "
    "I can only answer questions related to utilities and billing."
)
RESEARCH_PLACEHOLDER = (
    "To provide you with the most accurate and up-to-date information on your query, "
    "I'm now accessing the latest sources. This will allow me to give you a more "
    "comprehensive and reliable answer"
)

ERROR_MESSAGES = {
    "rate_limited": "Rate limit exceeded. Please try again later.",
    "configuration": "API configuration error. Please contact support.",
    "upstream": "An error occurred while processing your request.",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def fallback_response() -> Dict[str, Any]:
    return {"response": FALLBACK_REPLY, "confidence_score": 0, "citations": []}


def placeholder_response() -> Dict[str, Any]:
    return {"response": RESEARCH_PLACEHOLDER, "confidence_score": 0, "citations": []}


@dataclass
class ChatTurnResult:
    success: bool
    response: Dict[str, Any]
    message_id: str
    research_pending: bool = False
    timestamp: str = field(default_factory=_now_iso)
    error_kind: Optional[str] = None
    retryable: bool = False

    @property
    def error_message(self) -> Optional[str]:
        return ERROR_MESSAGES.get(self.error_kind) if self.error_kind else None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "response": self.response,
            "message_id": self.message_id,
            "research_pending": self.research_pending,
            "timestamp": self.timestamp,
        }
        if self.error_kind:
            out.update({
                "error": self.error_message,
                "error_kind": self.error_kind,
                "retryable": self.retryable,
            })
        return out


class ChatOrchestrator:

    def __init__(
        self,
        llm: ResearchCapability,
        job_store: ResearchJobStore,
        pipeline: ResearchPipeline,
        messages: Optional[MessageStore] = None,
        tasks: Optional[BackgroundTasks] = None,
        window_size: int = 5,
    ):
        self.llm = llm
        self.job_store = job_store
        self.pipeline = pipeline
        self.messages = messages
        self.tasks = tasks or background_tasks
        self.window_size = window_size

    async def process_turn(
        self,
        messages: Sequence[Dict[str, Any]],
        user_id: str,
        session_id: Optional[str] = None,
        user_location: Optional[str] = None,
    ) -> ChatTurnResult:
        message_id = new_message_id()
        conversation = [{"role": m.get("role"), "content": m.get("content")} for m in messages]
        last_user_text = conversation[-1]["content"] if conversation else ""

        if self.messages is not None:
            await persist_best_effort(
                "record user turn", self.messages.record_user_turn,
                message_id, last_user_text, session_id=session_id, user_id=user_id,
            )

        logger.info("[chat] processing turn %s (%d message(s))", message_id, len(conversation))
        try:
            needs_research = await self.llm.decide_scope(conversation[-self.window_size:])
        except LLMRateLimitError as e:
            return self._failed(message_id, "rate_limited", True, e)
        except LLMConfigurationError as e:
            return self._failed(message_id, "configuration", False, e)
        except LLMError as e:
            return self._failed(message_id, "upstream", e.retryable, e)
        except Exception as e:
            return self._failed(message_id, "upstream", False, e)

        if not needs_research:
            logger.info("[chat] turn %s out of research scope, fallback reply", message_id)
            return ChatTurnResult(success=True, response=fallback_response(), message_id=message_id)

        reply = placeholder_response()
        if self.messages is not None:
            await persist_best_effort(
                "record placeholder", self.messages.record_bot_turn,
                new_message_id(), reply["response"],
                metadata={"confidence_score": 0, "citations": [], "original_response": reply},
                session_id=session_id, user_id=user_id,
            )

        self.job_store.create_pending(message_id)
        window = conversation + [{"role": "assistant", "content": reply["response"]}]
        self.tasks.spawn(
            self.pipeline.run(message_id, window, user_id=user_id, session_id=session_id,
                              user_location=user_location),
            name=f"research-{message_id}",
        )
        return ChatTurnResult(success=True, response=reply, message_id=message_id, research_pending=True)

    def _failed(self, message_id: str, kind: str, retryable: bool, error: Exception) -> ChatTurnResult:
        logger.error("[chat] turn %s failed (%s): %s", message_id, kind, error)
        return ChatTurnResult(
            success=False,
            response=fallback_response(),
            message_id=message_id,
            error_kind=kind,
            retryable=retryable,
        )

    async def get_session_history(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        if self.messages is None:
            return []
        try:
            return await asyncio.to_thread(self.messages.list_by_conversation, session_id, limit)
        except Exception as e:
            logger.error("[chat] failed to load history for session %s: %s", session_id, e)
            return []

    async def get_user_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        if self.messages is None:
            return []
        try:
            return await asyncio.to_thread(self.messages.list_by_user, user_id, limit)
        except Exception as e:
            logger.error("[chat] failed to load history for user %s: %s", user_id, e)
            return []
