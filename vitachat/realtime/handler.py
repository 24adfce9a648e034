"""
WebSocket 消息处理：认证 + 对话。

一个连接先发送 {"type": "auth", "token": ...}，认证通过后加入用户房间；
之后的 user_message 交给 ChatOrchestrator，回复广播到该用户的所有连接。
格式错误、未认证等校验失败只回错误帧，连接保持打开。
"""

from __future__ import annotations

from typing import Optional

from vitachat.auth.errors import AUTH_FAILED_MESSAGE, AuthenticationError
from vitachat.auth.session_store import SessionStore
from vitachat.chat.orchestrator import ChatOrchestrator
from vitachat.log import get_logger
from vitachat.realtime.connection import Connection
from vitachat.realtime.polling import ResearchPoller
from vitachat.realtime.protocol import (
    ClientFrame,
    FrameError,
    MessageType,
    ai_typing,
    bot_message,
    error_frame,
    parse_client_frame,
    research_update,
)
from vitachat.realtime.registry import ConnectionRegistry

logger = get_logger(__name__)

AUTH_OK_MESSAGE = "WebSocket authenticated successfully"
NOT_AUTHENTICATED_MESSAGE = "Please authenticate first"
INVALID_FRAME_MESSAGE = "Invalid message format"
INVALID_TYPE_MESSAGE = "Invalid message type or missing content"
PROCESSING_ERROR_MESSAGE = "Error processing your message"
TOO_LONG_MESSAGE = "Message is too long"


class ChatSocketHandler:

    def __init__(
        self,
        registry: ConnectionRegistry,
        sessions: SessionStore,
        orchestrator: ChatOrchestrator,
        poller: ResearchPoller,
        max_message_chars: int = 10000,
    ):
        self.registry = registry
        self.sessions = sessions
        self.orchestrator = orchestrator
        self.poller = poller
        self.max_message_chars = max_message_chars

    async def handle_text(self, conn: Connection, raw: str) -> None:
        try:
            frame = parse_client_frame(raw)
        except FrameError as e:
            logger.info("[ws] bad frame on %s: %s", conn.id, e)
            conn.send(error_frame(INVALID_FRAME_MESSAGE))
            return
        await self.handle_frame(conn, frame)

    async def handle_frame(self, conn: Connection, frame: ClientFrame) -> None:
        if frame.type == MessageType.AUTH.value and frame.token:
            await self._authenticate(conn, frame.token)
            return

        if not conn.is_authenticated:
            conn.send(error_frame(NOT_AUTHENTICATED_MESSAGE))
            return

        conn.touch()
        self.registry.touch_room(conn.user_id)

        content = (frame.content or "").strip()
        if frame.type != MessageType.USER_MESSAGE.value or not content:
            self._error_to_room(conn, INVALID_TYPE_MESSAGE)
            return
        if len(frame.content) > self.max_message_chars:
            self._error_to_room(conn, TOO_LONG_MESSAGE)
            return
        await self._chat(conn, frame.content, frame.location)

    async def _authenticate(self, conn: Connection, token: str) -> None:
        try:
            claims = self.sessions.verify_token(token)
        except AuthenticationError as e:
            logger.info("[ws] authentication failed on %s: %s", conn.id, e)
            conn.send(error_frame(AUTH_FAILED_MESSAGE))
            await self.registry.disconnect(conn, code=1008, reason=AUTH_FAILED_MESSAGE)
            return

        conn.authenticate(claims.user_id, claims.session_id)
        self.registry.register(conn)
        logger.info("[ws] user %s authenticated, joined %s", claims.user_id, conn.room_id)
        self.registry.send_to_room(claims.user_id, bot_message(AUTH_OK_MESSAGE))

    async def _chat(self, conn: Connection, content: str, location: Optional[str]) -> None:
        user_id = conn.user_id
        try:
            self.registry.send_to_room(user_id, ai_typing())
            conn.history.append({"role": "user", "content": content})

            result = await self.orchestrator.process_turn(
                list(conn.history), user_id, conn.session_id, user_location=location,
            )
            reply = result.response.get("response", "")
            conn.history.append({"role": "assistant", "content": reply})

            self.registry.send_to_room(user_id, bot_message(
                reply,
                message_id=result.message_id,
                citations=result.response.get("citations") or [],
                research_pending=result.research_pending,
                error=result.error_message,
            ))
            if result.research_pending:
                self.registry.send_to_room(user_id, research_update(result.message_id, research_pending=True))
                self.poller.start(conn, result.message_id)
        except Exception as e:
            logger.error("[ws] error handling chat message on %s: %s", conn.id, e)
            self._error_to_room(conn, PROCESSING_ERROR_MESSAGE)

    def _error_to_room(self, conn: Connection, message: str) -> None:
        if conn.user_id and self.registry.send_to_room(conn.user_id, error_frame(message)):
            return
        conn.send(error_frame(message))
