"""
API 请求/响应 Pydantic 模型
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., min_length=1, max_length=10000)

    @field_validator("content")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content cannot be empty")
        return v


class ChatRequest(BaseModel):
    """对话请求：完整的对话历史，最后一条为本轮用户输入"""

    messages: List[ChatMessage] = Field(..., min_length=1, max_length=50)
    user_location: Optional[str] = Field(
        None,
        max_length=200,
        validation_alias="userLocation",
        description="用户所在地区，用于优先检索当地来源",
    )

    model_config = {"populate_by_name": True}


class ChatReply(BaseModel):
    response: str
    confidence_score: float = 0
    citations: List[Dict[str, Any]] = Field(default_factory=list)


class ChatResponse(BaseModel):
    success: bool
    response: ChatReply
    message_id: str
    research_pending: bool
    timestamp: str
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: Optional[bool] = None


class CredentialsRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)


class LoginRequest(CredentialsRequest):
    force: bool = Field(False, description="存在其他会话时是否强制登录（踢掉旧会话）")


class UserItem(BaseModel):
    id: str
    email: str
    created_at: Optional[str] = None


class SessionItem(BaseModel):
    session_id: str
    user_id: str
    created_at: float
    last_activity: float
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class CheckResponse(BaseModel):
    success: bool = True
    user: UserItem
    has_existing_sessions: bool
    existing_sessions: List[SessionItem] = Field(default_factory=list)


class LoginResponse(BaseModel):
    success: bool = True
    requires_confirmation: bool = False
    user: UserItem
    token: Optional[str] = None
    session_id: Optional[str] = None
    existing_sessions: List[SessionItem] = Field(default_factory=list)
    invalidated_sessions: List[str] = Field(default_factory=list)
    message: Optional[str] = None
