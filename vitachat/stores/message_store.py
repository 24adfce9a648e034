"""
对话消息持久化（messages 表）。

写接口在失败时直接抛异常，由调用方（ChatOrchestrator / ResearchPipeline）
记录日志后吞掉，保证持久化失败不会中断对话流程。
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlmodel import Session, select

from vitachat.db.engine import get_engine
from vitachat.db.models import Message
from vitachat.log import get_logger

logger = get_logger(__name__)


class MessageSink(Protocol):
    """What the chat and research flows need from message history."""

    def record_user_turn(self, turn_id: str, content: str, session_id: Optional[str] = None,
                         user_id: Optional[str] = None) -> Any: ...

    def record_bot_turn(self, turn_id: str, content: str, metadata: Optional[Dict[str, Any]] = None,
                        session_id: Optional[str] = None, user_id: Optional[str] = None) -> Any: ...

    def list_by_conversation(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]: ...


class MessageStore:

    def _insert(self, row: Message) -> Dict[str, Any]:
        with Session(get_engine()) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.to_dict()

    def record_user_turn(
        self,
        turn_id: str,
        content: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._insert(Message(
            message_id=turn_id,
            type="user",
            content=content,
            session_id=session_id,
            user_id=user_id,
        ))

    def record_bot_turn(
        self,
        turn_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        metadata = metadata or {}
        research = metadata.get("research_results")
        return self._insert(Message(
            message_id=turn_id,
            type="bot",
            content=content,
            metadata_json=json.dumps(metadata, ensure_ascii=False, default=str),
            research_results=research if isinstance(research, str) else None,
            session_id=session_id,
            user_id=user_id,
        ))

    def get_by_message_id(self, turn_id: str) -> Optional[Dict[str, Any]]:
        with Session(get_engine()) as session:
            row = session.exec(select(Message).where(Message.message_id == turn_id)).first()
        return row.to_dict() if row else None

    def list_by_conversation(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """最近 limit 条消息，按时间正序返回"""
        limit = max(1, min(int(limit), 500))
        with Session(get_engine()) as session:
            stmt = (
                select(Message)
                .where(Message.session_id == session_id)
                .order_by(Message.id.desc())
                .limit(limit)
            )
            rows = session.exec(stmt).all()
        return [r.to_dict() for r in reversed(rows)]

    def list_by_user(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 500))
        with Session(get_engine()) as session:
            stmt = (
                select(Message)
                .where(Message.user_id == user_id)
                .order_by(Message.id.desc())
                .limit(limit)
            )
            rows = session.exec(stmt).all()
        return [r.to_dict() for r in reversed(rows)]


message_store = MessageStore()


async def persist_best_effort(action: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    """Run a blocking store write off the event loop; failures are logged and swallowed."""
    try:
        await asyncio.to_thread(fn, *args, **kwargs)
        return True
    except Exception as e:
        logger.warning("[messages] %s failed: %s", action, e)
        return False
