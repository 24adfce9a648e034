"""
WebSocket 帧定义。

客户端 -> 服务端：
  {"type": "auth", "token": "..."}
  {"type": "user_message", "content": "...", "location": "..."}   # location 可选

服务端 -> 客户端：bot_message / ai_typing / research_update / session_terminated，
错误帧为 {"type": "bot_message", "error": "...", "timestamp": "..."}。
所有帧都编码为不含换行的紧凑 JSON。
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class MessageType(str, Enum):
    AUTH = "auth"
    USER_MESSAGE = "user_message"
    BOT_MESSAGE = "bot_message"
    AI_TYPING = "ai_typing"
    RESEARCH_UPDATE = "research_update"
    SESSION_TERMINATED = "session_terminated"


SESSION_TERMINATED_ERROR = "SESSION_TERMINATED"


class FrameError(ValueError):
    """Inbound text is not a JSON object frame."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ClientFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    token: Optional[str] = None
    content: Optional[str] = None
    location: Optional[str] = None


class ServerFrame(BaseModel):
    type: MessageType
    content: Optional[str] = None
    message_id: Optional[str] = None
    citations: Optional[List[Dict[str, Any]]] = None
    key_developments: Optional[List[Dict[str, Any]]] = None
    research_pending: Optional[bool] = None
    error: Optional[str] = None
    timestamp: str = Field(default_factory=now_iso)

    def encode(self) -> str:
        return self.model_dump_json(exclude_none=True)


def parse_client_frame(raw: str) -> ClientFrame:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameError(f"invalid json: {e}") from e
    if not isinstance(data, dict):
        raise FrameError("frame must be a json object")
    try:
        return ClientFrame.model_validate(data)
    except ValidationError as e:
        raise FrameError(str(e)) from e


# ── server frame builders ──

def bot_message(
    content: str,
    message_id: Optional[str] = None,
    citations: Optional[List[Dict[str, Any]]] = None,
    key_developments: Optional[List[Dict[str, Any]]] = None,
    research_pending: Optional[bool] = None,
    error: Optional[str] = None,
) -> ServerFrame:
    return ServerFrame(
        type=MessageType.BOT_MESSAGE,
        content=content,
        message_id=message_id,
        citations=citations,
        key_developments=key_developments,
        research_pending=research_pending,
        error=error,
    )


def ai_typing() -> ServerFrame:
    return ServerFrame(type=MessageType.AI_TYPING, content="")


def research_update(message_id: str, research_pending: bool) -> ServerFrame:
    return ServerFrame(
        type=MessageType.RESEARCH_UPDATE,
        message_id=message_id,
        research_pending=research_pending,
    )


def session_terminated(reason: str) -> ServerFrame:
    return ServerFrame(
        type=MessageType.SESSION_TERMINATED,
        content=f"Your session has been terminated: {reason}",
        error=SESSION_TERMINATED_ERROR,
    )


def error_frame(error: str) -> ServerFrame:
    return ServerFrame(type=MessageType.BOT_MESSAGE, error=error)
