"""
WebSocket 连接注册表 + 用户房间。

- 每个用户一个房间 room_<user_id>，成员是该用户所有已认证的连接（多标签页/多设备）
- 房间变空后延迟 room_grace_seconds 删除，期间重新加入则取消删除并保留原 created_at
- 每 room_sweep_interval_seconds 清理一次超过 room_idle_seconds 未活动的房间（强制关闭连接）
- close_session / close_all_sessions_for_user 是 SessionStore 调用的 SessionCloser 接口，
  可能在工作线程里被调用，此时切回事件循环执行

所有房间/连接表的修改都在事件循环线程上同步完成，不跨 await。
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from vitachat.auth.session_store import NEW_LOGIN_REASON
from vitachat.log import get_logger
from vitachat.observability.metrics import metrics
from vitachat.realtime.connection import Connection, room_id_for
from vitachat.realtime.protocol import ServerFrame, session_terminated

logger = get_logger(__name__)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Room:
    room_id: str
    user_id: str
    created_at: float
    last_activity: float
    members: Set[Connection] = field(default_factory=set)

    def info(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "user_id": self.user_id,
            "session_count": len(self.members),
            "created_at": _iso(self.created_at),
            "last_activity": _iso(self.last_activity),
        }


class ConnectionRegistry:

    def __init__(
        self,
        room_grace_seconds: float = 5.0,
        room_idle_seconds: float = 24 * 3600,
        sweep_interval_seconds: float = 30 * 60,
        close_delay_seconds: float = 0.1,
        clock: Callable[[], float] = time.time,
    ):
        self.room_grace_seconds = room_grace_seconds
        self.room_idle_seconds = room_idle_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.close_delay_seconds = close_delay_seconds
        self._clock = clock
        self._rooms: Dict[str, Room] = {}
        self._sessions: Dict[str, Set[Connection]] = {}
        self._pending_deletes: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls) -> "ConnectionRegistry":
        from config.settings import settings
        rt = settings.realtime
        return cls(
            room_grace_seconds=rt.room_grace_seconds,
            room_idle_seconds=rt.room_idle_seconds,
            sweep_interval_seconds=rt.room_sweep_interval_seconds,
            close_delay_seconds=rt.close_delay_seconds,
        )

    # ── loop plumbing ──

    def _bind_loop(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.get_running_loop()
        if self._loop is None or self._loop.is_closed():
            self._loop = loop
        return loop

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _update_gauges(self) -> None:
        metrics.ws_connections.set(self.connected_clients_count)
        metrics.ws_rooms.set(len(self._rooms))

    # ── registration & rooms ──

    def register(self, conn: Connection) -> None:
        """Index an authenticated connection by session and put it in its user's room."""
        if not conn.user_id or not conn.session_id:
            raise ValueError("connection must be authenticated before registration")
        self._bind_loop()
        self._forget_session(conn)
        self._sessions.setdefault(conn.session_id, set()).add(conn)
        self.join_room(conn)
        logger.info("[ws] %s registered", conn)

    def _forget_session(self, conn: Connection) -> None:
        for sid, conns in list(self._sessions.items()):
            if conn in conns:
                conns.discard(conn)
                if not conns:
                    del self._sessions[sid]

    def join_room(self, conn: Connection) -> Room:
        user_id = conn.user_id
        if not user_id:
            raise ValueError("connection has no user")
        now = self._clock()
        handle = self._pending_deletes.pop(user_id, None)
        if handle is not None:
            handle.cancel()
        room = self._rooms.get(user_id)
        if room is None:
            room = Room(room_id=room_id_for(user_id), user_id=user_id, created_at=now, last_activity=now)
            self._rooms[user_id] = room
            logger.info("[ws] created room %s", room.room_id)
        # a connection that re-authenticated as another user leaves its old room first
        for other in self._rooms.values():
            if other is not room and conn in other.members:
                other.members.discard(conn)
                if not other.members:
                    self._schedule_room_delete(other.user_id)
        room.members.add(conn)
        room.last_activity = now
        self._update_gauges()
        return room

    def leave_room(self, conn: Connection) -> None:
        if not conn.user_id:
            return
        room = self._rooms.get(conn.user_id)
        if room is None or conn not in room.members:
            return
        room.members.discard(conn)
        logger.info("[ws] session %s left room %s", conn.session_id, room.room_id)
        if not room.members:
            self._schedule_room_delete(conn.user_id)
        self._update_gauges()

    def _schedule_room_delete(self, user_id: str) -> None:
        old = self._pending_deletes.pop(user_id, None)
        if old is not None:
            old.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._delete_if_empty(user_id)
            return
        self._pending_deletes[user_id] = loop.call_later(
            self.room_grace_seconds, self._delete_if_empty, user_id
        )

    def _delete_if_empty(self, user_id: str) -> None:
        self._pending_deletes.pop(user_id, None)
        room = self._rooms.get(user_id)
        if room is not None and not room.members:
            del self._rooms[user_id]
            logger.info("[ws] removed empty room %s", room.room_id)
            self._update_gauges()

    def connection_closed(self, conn: Connection) -> None:
        """Socket is gone: unregister it and leave its room.  Idempotent."""
        conn.mark_closed()
        self._forget_session(conn)
        self.leave_room(conn)
        self._update_gauges()

    def touch_room(self, user_id: str) -> None:
        room = self._rooms.get(user_id)
        if room is not None:
            room.last_activity = self._clock()

    # ── delivery ──

    def send_to_room(self, user_id: str, frame: ServerFrame) -> int:
        room = self._rooms.get(user_id)
        if room is None:
            return 0
        sent = 0
        for conn in list(room.members):
            if conn.is_authenticated and conn.send(frame):
                sent += 1
        room.last_activity = self._clock()
        logger.debug("[ws] %s -> room %s (%d/%d)", frame.type.value, room.room_id, sent, len(room.members))
        return sent

    def send_to_session(self, session_id: str, frame: ServerFrame) -> int:
        sent = 0
        for conn in list(self._sessions.get(session_id, ())):
            if conn.is_authenticated and conn.send(frame):
                sent += 1
                self.touch_room(conn.user_id)
        return sent

    # ── SessionCloser ──

    def close_session(self, session_id: str, reason: str) -> None:
        if self._loop is None:
            return
        if not self._on_loop_thread():
            self._loop.call_soon_threadsafe(self._close_session, session_id, reason)
            return
        self._close_session(session_id, reason)

    def close_all_sessions_for_user(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        reason: str = NEW_LOGIN_REASON,
    ) -> None:
        if self._loop is None:
            return
        if not self._on_loop_thread():
            self._loop.call_soon_threadsafe(self._close_user_sessions, user_id, except_session_id, reason)
            return
        self._close_user_sessions(user_id, except_session_id, reason)

    def _close_session(self, session_id: str, reason: str) -> int:
        conns = [c for c in self._sessions.get(session_id, ()) if c.is_open]
        for conn in conns:
            conn.send(session_terminated(reason))
            self._close_later(conn, reason)
        if conns:
            logger.info("[ws] closing session %s (%d connection(s)): %s", session_id, len(conns), reason)
        return len(conns)

    def _close_user_sessions(self, user_id: str, except_session_id: Optional[str], reason: str) -> int:
        room = self._rooms.get(user_id)
        if room is None:
            return 0
        session_ids = {c.session_id for c in room.members if c.session_id and c.session_id != except_session_id}
        closed = sum(self._close_session(sid, reason) for sid in session_ids)
        logger.info("[ws] closed %d connection(s) for user %s: %s", closed, user_id, reason)
        return closed

    def _close_later(self, conn: Connection, reason: str) -> None:
        async def _close() -> None:
            await asyncio.sleep(self.close_delay_seconds)
            await conn.close(code=1000, reason=reason[:120])
            self.connection_closed(conn)

        self._spawn(_close())

    async def disconnect(self, conn: Connection, code: int = 1000, reason: str = "") -> None:
        await conn.close(code=code, reason=reason)
        self.connection_closed(conn)

    # ── sweep ──

    def sweep_idle_rooms(self) -> int:
        cutoff = self._clock() - self.room_idle_seconds
        stale = [room for room in self._rooms.values() if room.last_activity < cutoff]
        for room in stale:
            for conn in list(room.members):
                if conn.is_open:
                    self._spawn(self.disconnect(conn, code=1000, reason="Inactive"))
                else:
                    self.connection_closed(conn)
            self._rooms.pop(room.user_id, None)
            handle = self._pending_deletes.pop(room.user_id, None)
            if handle is not None:
                handle.cancel()
            logger.info("[ws] swept inactive room %s", room.room_id)
        if stale:
            self._update_gauges()
        return len(stale)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep_idle_rooms()
            except Exception as e:
                logger.warning("[ws] room sweep failed: %s", e)

    def start(self) -> None:
        self._bind_loop()
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        conns = {c for conns in self._sessions.values() for c in conns}
        conns.update(c for room in self._rooms.values() for c in room.members)
        await asyncio.gather(*(c.close(code=1001, reason="Server shutting down") for c in conns),
                             return_exceptions=True)
        for handle in self._pending_deletes.values():
            handle.cancel()
        self._pending_deletes.clear()
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._sessions.clear()
        self._rooms.clear()
        self._update_gauges()
        logger.info("[ws] registry shut down, %d connection(s) closed", len(conns))

    # ── introspection ──

    @property
    def connected_clients_count(self) -> int:
        return sum(1 for conns in self._sessions.values() for c in conns if c.is_authenticated)

    @property
    def active_rooms_count(self) -> int:
        return len(self._rooms)

    def room_info(self, user_id: str) -> Optional[Dict[str, Any]]:
        room = self._rooms.get(user_id)
        return room.info() if room else None

    def all_rooms_info(self) -> List[Dict[str, Any]]:
        return [room.info() for room in self._rooms.values()]

    def get_room(self, user_id: str) -> Optional[Room]:
        return self._rooms.get(user_id)

    def stats(self) -> Dict[str, Any]:
        return {
            "connected_clients": self.connected_clients_count,
            "active_rooms": self.active_rooms_count,
            "rooms": self.all_rooms_info(),
        }
