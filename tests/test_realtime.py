"""
实时层测试：连接写队列 / 注册表与房间 / 检索轮询 / 消息处理
"""

import asyncio
import json

import pytest

from vitachat.auth.session_store import SessionStore
from vitachat.auth.token import TokenCodec
from vitachat.chat.orchestrator import ChatOrchestrator
from vitachat.realtime.connection import Connection, ConnectionState
from vitachat.realtime.handler import (
    AUTH_OK_MESSAGE,
    INVALID_FRAME_MESSAGE,
    INVALID_TYPE_MESSAGE,
    NOT_AUTHENTICATED_MESSAGE,
    TOO_LONG_MESSAGE,
    ChatSocketHandler,
)
from vitachat.realtime.polling import RESEARCH_FAILED_REPLY, ResearchPoller
from vitachat.realtime.protocol import (
    FrameError,
    ai_typing,
    bot_message,
    error_frame,
    parse_client_frame,
    session_terminated,
)
from vitachat.realtime.registry import ConnectionRegistry
from vitachat.research.job_store import JobStatus, ResearchJobStore
from vitachat.research.pipeline import ResearchPipeline
from vitachat.utils.task_runner import BackgroundTasks

from conftest import FakeLLM, FakeTransport, FakeValidator

SECRET = "unit-test-secret-key-long-enough-for-hs256"


def _conn(user_id=None, session_id=None, **kwargs):
    transport = FakeTransport(**kwargs)
    conn = Connection(transport)
    conn.start()
    if user_id:
        conn.authenticate(user_id, session_id)
    return conn, transport


# ── 帧 ──

class TestProtocol:
    def test_parse_rejects_garbage(self):
        for raw in ("not json", "[1, 2]", "42", '{"token": "x"}'):
            with pytest.raises(FrameError):
                parse_client_frame(raw)

    def test_parse_ignores_unknown_fields(self):
        frame = parse_client_frame('{"type": "user_message", "content": "hi", "extra": 1}')
        assert frame.content == "hi" and frame.location is None

    def test_encode_is_single_line_without_nulls(self):
        data = bot_message("line one\nline two").encode()
        assert "\n" not in data
        decoded = json.loads(data)
        assert decoded["content"] == "line one\nline two"
        assert "error" not in decoded and "timestamp" in decoded

    def test_session_terminated_frame(self):
        decoded = json.loads(session_terminated("User logged out").encode())
        assert decoded["type"] == "session_terminated"
        assert decoded["error"] == "SESSION_TERMINATED"
        assert decoded["content"] == "Your session has been terminated: User logged out"


# ── 连接 ──

class TestConnection:
    def test_frames_written_in_order(self):
        async def scenario():
            conn, transport = _conn()
            for i in range(5):
                assert conn.send(bot_message(str(i)))
            await conn.close()
            return conn, transport

        conn, transport = asyncio.run(scenario())
        assert [f["content"] for f in transport.frames()] == ["0", "1", "2", "3", "4"]
        assert transport.closed and conn.state == ConnectionState.CLOSED
        assert not conn.send(bot_message("late"))

    def test_full_queue_drops_oldest(self):
        async def scenario():
            transport = FakeTransport()
            conn = Connection(transport, queue_size=2)
            for i in range(3):
                conn.send(bot_message(str(i)))
            conn.start()
            await conn.close()
            return transport

        transport = asyncio.run(scenario())
        assert [f["content"] for f in transport.frames()] == ["1", "2"]

    def test_transport_failure_closes_connection(self):
        async def scenario():
            conn, transport = _conn(fail_after=0)
            conn.send(ai_typing())
            await asyncio.sleep(0.01)
            return conn

        conn = asyncio.run(scenario())
        assert not conn.is_open

    def test_close_is_idempotent(self):
        async def scenario():
            conn, transport = _conn()
            await conn.close(code=1008)
            await conn.close(code=1000)
            return transport

        assert asyncio.run(scenario()).close_code == 1008


# ── 注册表 ──

class TestRegistry:
    def test_register_requires_authentication(self):
        async def scenario():
            conn, _ = _conn()
            with pytest.raises(ValueError):
                ConnectionRegistry().register(conn)

        asyncio.run(scenario())

    def test_room_broadcast_reaches_all_tabs(self):
        async def scenario():
            reg = ConnectionRegistry()
            a, ta = _conn("u1", "s1")
            b, tb = _conn("u1", "s1")
            other, tother = _conn("u2", "s9")
            for c in (a, b, other):
                reg.register(c)
            sent = reg.send_to_room("u1", bot_message("hello"))
            await asyncio.sleep(0.01)
            info = reg.room_info("u1")
            await reg.shutdown()
            return sent, ta, tb, tother, info

        sent, ta, tb, tother, info = asyncio.run(scenario())
        assert sent == 2
        assert ta.types()[:1] == ["bot_message"] and tb.types()[:1] == ["bot_message"]
        assert tother.sent == []
        assert info["room_id"] == "room_u1" and info["session_count"] == 2

    def test_send_to_missing_room_is_noop(self):
        assert ConnectionRegistry().send_to_room("nobody", ai_typing()) == 0

    def test_grace_window_and_rejoin(self):
        async def scenario():
            reg = ConnectionRegistry(room_grace_seconds=0.05)
            first, _ = _conn("u1", "s1")
            reg.register(first)
            created = reg.get_room("u1").created_at

            reg.connection_closed(first)
            assert reg.get_room("u1") is not None
            second, _ = _conn("u1", "s2")
            reg.register(second)
            await asyncio.sleep(0.1)
            kept = reg.get_room("u1")
            assert kept is not None and kept.created_at == created

            reg.connection_closed(second)
            await asyncio.sleep(0.1)
            return reg.get_room("u1"), reg.connected_clients_count

        room, count = asyncio.run(scenario())
        assert room is None and count == 0

    def test_close_session_sends_notice_then_closes(self):
        async def scenario():
            reg = ConnectionRegistry(close_delay_seconds=0)
            conn, transport = _conn("u1", "s1")
            reg.register(conn)
            reg.close_session("s1", "User logged out")
            await asyncio.sleep(0.05)
            return reg, transport

        reg, transport = asyncio.run(scenario())
        assert transport.types() == ["session_terminated"]
        assert transport.closed
        assert reg.connected_clients_count == 0

    def test_close_other_sessions_keeps_newest(self):
        async def scenario():
            reg = ConnectionRegistry(close_delay_seconds=0)
            old, told = _conn("u1", "s1")
            new, tnew = _conn("u1", "s2")
            reg.register(old)
            reg.register(new)
            reg.close_all_sessions_for_user("u1", except_session_id="s2")
            await asyncio.sleep(0.05)
            return told, tnew, new

        told, tnew, new = asyncio.run(scenario())
        assert told.closed and told.types() == ["session_terminated"]
        assert not tnew.closed and new.is_authenticated

    def test_close_from_worker_thread(self):
        async def scenario():
            reg = ConnectionRegistry(close_delay_seconds=0)
            conn, transport = _conn("u1", "s1")
            reg.register(conn)
            await asyncio.to_thread(reg.close_session, "s1", "Session invalidated by new login")
            await asyncio.sleep(0.05)
            return transport

        assert asyncio.run(scenario()).closed

    def test_close_without_loop_is_noop(self):
        reg = ConnectionRegistry()
        reg.close_session("s1", "x")
        reg.close_all_sessions_for_user("u1")

    def test_sweep_idle_rooms(self):
        now = [1000.0]

        async def scenario():
            reg = ConnectionRegistry(room_idle_seconds=60, clock=lambda: now[0])
            conn, transport = _conn("u1", "s1")
            reg.register(conn)
            now[0] += 61
            swept = reg.sweep_idle_rooms()
            await asyncio.sleep(0.05)
            return swept, reg, transport

        swept, reg, transport = asyncio.run(scenario())
        assert swept == 1
        assert reg.active_rooms_count == 0
        assert transport.closed and transport.close_reason == "Inactive"


# ── 轮询 ──

def _poll_setup(max_attempts=50):
    reg = ConnectionRegistry()
    store = ResearchJobStore()
    poller = ResearchPoller(reg, store, interval_seconds=0.01, max_attempts=max_attempts, tasks=BackgroundTasks())
    conn, transport = _conn("u1", "s1")
    reg.register(conn)
    conn.history = [{"role": "user", "content": "q"}, {"role": "assistant", "content": "placeholder"}]
    store.create_pending("m1")
    return reg, store, poller, conn, transport


class TestResearchPoller:
    def test_completed_result_pushed(self):
        async def scenario():
            reg, store, poller, conn, transport = _poll_setup()
            task = poller.start(conn, "m1")
            await asyncio.sleep(0.03)
            store.mark_completed("m1", "Final summary [1].", [{"number": 1, "title": "t"}], [{"id": 1, "url": ""}])
            status = await task
            await asyncio.sleep(0.01)
            return status, conn, transport

        status, conn, transport = asyncio.run(scenario())
        assert status == JobStatus.COMPLETED
        frames = transport.frames()
        assert [f["type"] for f in frames] == ["research_update", "ai_typing", "bot_message"]
        assert frames[0]["research_pending"] is False and frames[0]["message_id"] == "m1"
        assert frames[2]["content"] == "Final summary [1]."
        assert frames[2]["key_developments"][0]["title"] == "t"
        assert frames[2]["message_id"] != "m1"
        assert conn.history[-1]["content"] == "Final summary [1]."

    def test_failed_result_pushed(self):
        async def scenario():
            reg, store, poller, conn, transport = _poll_setup()
            store.mark_failed("m1", "provider exploded")
            status = await poller.poll(conn, "m1")
            await asyncio.sleep(0.01)
            return status, transport

        status, transport = asyncio.run(scenario())
        assert status == JobStatus.FAILED
        frame = transport.frames()[-1]
        assert frame["content"] == RESEARCH_FAILED_REPLY and frame["error"] == "provider exploded"

    def test_stops_when_connection_closed(self):
        async def scenario():
            reg, store, poller, conn, transport = _poll_setup()
            reg.connection_closed(conn)
            return await poller.poll(conn, "m1")

        assert asyncio.run(scenario()) is None

    def test_gives_up_after_max_attempts(self):
        async def scenario():
            reg, store, poller, conn, transport = _poll_setup(max_attempts=3)
            status = await poller.poll(conn, "m1")
            return status, transport

        status, transport = asyncio.run(scenario())
        assert status is None
        assert transport.sent == []


# ── 消息处理 ──

class _Stack:
    def __init__(self, fake_users, llm):
        self.tasks = BackgroundTasks()
        self.registry = ConnectionRegistry(close_delay_seconds=0)
        self.sessions = SessionStore(users=fake_users, codec=TokenCodec(SECRET), closer=self.registry)
        self.store = ResearchJobStore()
        pipeline = ResearchPipeline(llm, self.store, validator=FakeValidator())
        orchestrator = ChatOrchestrator(llm, self.store, pipeline, tasks=self.tasks)
        poller = ResearchPoller(self.registry, self.store, interval_seconds=0.01, tasks=self.tasks)
        self.handler = ChatSocketHandler(self.registry, self.sessions, orchestrator, poller, max_message_chars=50)

    def login(self):
        return self.sessions.authenticate_user("alice@example.com", "correct horse")


class TestChatSocketHandler:
    def test_unauthenticated_and_malformed(self, fake_users):
        async def scenario():
            stack = _Stack(fake_users, FakeLLM())
            conn, transport = _conn()
            await stack.handler.handle_text(conn, "{{{")
            await stack.handler.handle_text(conn, json.dumps({"type": "user_message", "content": "hi"}))
            await asyncio.sleep(0.01)
            return conn, transport

        conn, transport = asyncio.run(scenario())
        assert [f["error"] for f in transport.frames()] == [INVALID_FRAME_MESSAGE, NOT_AUTHENTICATED_MESSAGE]
        assert conn.is_open

    def test_bad_token_closes_with_policy_violation(self, fake_users):
        async def scenario():
            stack = _Stack(fake_users, FakeLLM())
            conn, transport = _conn()
            await stack.handler.handle_text(conn, json.dumps({"type": "auth", "token": "forged"}))
            return transport

        transport = asyncio.run(scenario())
        assert transport.frames()[0]["error"] == "Authentication failed"
        assert transport.closed and transport.close_code == 1008

    def test_chat_with_research(self, fake_users):
        async def scenario():
            stack = _Stack(fake_users, FakeLLM())
            login = stack.login()
            conn, transport = _conn()
            await stack.handler.handle_text(conn, json.dumps({"type": "auth", "token": login.token}))
            await stack.handler.handle_text(conn, json.dumps({"type": "user_message", "content": "PG&E rates?"}))
            await stack.tasks.wait_idle(timeout=5)
            await stack.tasks.wait_idle(timeout=5)
            await asyncio.sleep(0.01)
            return transport, conn

        transport, conn = asyncio.run(scenario())
        frames = transport.frames()
        types = [f["type"] for f in frames]
        assert types == [
            "bot_message", "ai_typing", "bot_message", "research_update",
            "research_update", "ai_typing", "bot_message",
        ]
        assert frames[0]["content"] == AUTH_OK_MESSAGE
        assert frames[2]["research_pending"] is True
        assert frames[3]["message_id"] == frames[2]["message_id"]
        assert frames[4]["research_pending"] is False
        assert frames[6]["content"].startswith("PG&E residential rates rose in 2025 [1].")
        assert conn.history[-1]["content"] == frames[6]["content"]

    def test_validation_errors_keep_connection(self, fake_users):
        async def scenario():
            stack = _Stack(fake_users, FakeLLM(research=False))
            login = stack.login()
            conn, transport = _conn()
            await stack.handler.handle_text(conn, json.dumps({"type": "auth", "token": login.token}))
            await stack.handler.handle_text(conn, json.dumps({"type": "user_message", "content": "   "}))
            await stack.handler.handle_text(conn, json.dumps({"type": "ping"}))
            await stack.handler.handle_text(conn, json.dumps({"type": "user_message", "content": "x" * 51}))
            await asyncio.sleep(0.01)
            return conn, transport

        conn, transport = asyncio.run(scenario())
        errors = [f.get("error") for f in transport.frames()[1:]]
        assert errors == [INVALID_TYPE_MESSAGE, INVALID_TYPE_MESSAGE, TOO_LONG_MESSAGE]
        assert conn.is_authenticated

    def test_new_login_terminates_old_socket(self, fake_users):
        async def scenario():
            stack = _Stack(fake_users, FakeLLM())
            first = stack.login()
            conn, transport = _conn()
            await stack.handler.handle_text(conn, json.dumps({"type": "auth", "token": first.token}))
            stack.login()
            await asyncio.sleep(0.05)
            return transport

        transport = asyncio.run(scenario())
        assert transport.types() == ["bot_message", "session_terminated"]
        assert transport.closed

    def test_error_frame_shape(self):
        decoded = json.loads(error_frame("boom").encode())
        assert decoded["type"] == "bot_message" and decoded["error"] == "boom" and "content" not in decoded
