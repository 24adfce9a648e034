"""
SQLModel table definitions: users, chat messages, API call audit log.

Design rules (same as the rest of the project):
  - primary_key=True must be set in Field() only, never combined with sa_column.
  - JSON dict columns stay as TEXT with Python-side serialization so SQLite
    and PostgreSQL are both supported.
  - Timestamps are ISO-8601 strings.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, Index, Integer, Text
from sqlmodel import Field, SQLModel


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _new_uuid() -> str:
    return str(uuid.uuid4())


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    email: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    password: str = Field(sa_column=Column(Text, nullable=False))
    created_at: str = Field(default_factory=_now_iso, sa_column=Column(Text, nullable=False))
    updated_at: str = Field(default_factory=_now_iso, sa_column=Column(Text, nullable=False))

    def public_dict(self) -> Dict[str, Any]:
        """User record without the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Message(SQLModel, table=True):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_session", "session_id"),
        Index("idx_messages_user", "user_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    type: str = Field(sa_column=Column(Text, nullable=False))  # user | bot
    content: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    metadata_json: str = Field(default="{}", sa_column=Column("metadata", Text, nullable=False, server_default="{}"))
    research_results: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    session_id: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    user_id: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: str = Field(default_factory=_now_iso, sa_column=Column(Text, nullable=False))
    updated_at: str = Field(default_factory=_now_iso, sa_column=Column(Text, nullable=False))

    def get_metadata(self) -> Dict[str, Any]:
        try:
            return json.loads(self.metadata_json or "{}")
        except Exception:
            return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "type": self.type,
            "content": self.content,
            "metadata": self.get_metadata(),
            "research_results": self.research_results,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class ApiCall(SQLModel, table=True):
    __tablename__ = "api_calls"
    __table_args__ = (
        Index("idx_api_calls_created", "created_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    endpoint: str = Field(sa_column=Column(Text, nullable=False))
    method: str = Field(sa_column=Column(Text, nullable=False))
    user_agent: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    ip_address: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    request_payload: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    response_payload: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    request_size: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    response_size: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    duration_ms: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    status_code: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    success: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, server_default="1"))
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: str = Field(default_factory=_now_iso, sa_column=Column(Text, nullable=False))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "endpoint": self.endpoint,
            "method": self.method,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
            "request_size": self.request_size,
            "response_size": self.response_size,
            "duration_ms": self.duration_ms,
            "status_code": self.status_code,
            "success": self.success,
            "error_message": self.error_message,
            "created_at": self.created_at,
        }
