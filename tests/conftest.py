"""
共享 Fixtures: 内存数据库 / 假 LLM / 假 WebSocket / 假引用校验器。
"""

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("VITA_DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-key-with-enough-length-for-hs256")
os.environ.setdefault("VITA_LOG_LEVEL", "WARNING")

from config.settings import settings  # noqa: E402

settings.auth.bcrypt_rounds = 4

from vitachat.auth.password import hash_password  # noqa: E402
from vitachat.research.schemas import Citation, KeyDevelopment, ResearchResponse  # noqa: E402
from vitachat.research.validator import CitationValidationResult  # noqa: E402

MARK_A = "\ue200cite\ue202turn0search1\ue201"
MARK_B = "\ue200cite\ue202turn0search4\ue201"


class FakeUsers:
    """UserLookup 的内存实现"""

    def __init__(self):
        self._by_email: Dict[str, Dict[str, Any]] = {}

    def add(self, user_id: str, email: str, password: str) -> Dict[str, Any]:
        user = {"id": user_id, "email": email, "password": hash_password(password, rounds=4),
                "created_at": "2026-01-01T00:00:00+00:00"}
        self._by_email[email] = user
        return user

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self._by_email.get(email)

    def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        for u in self._by_email.values():
            if u["id"] == user_id:
                return {k: v for k, v in u.items() if k != "password"}
        return None


class RecordingCloser:
    """SessionCloser 替身：只记录调用"""

    def __init__(self):
        self.closed_sessions: List[tuple] = []
        self.closed_users: List[tuple] = []

    def close_session(self, session_id, reason):
        self.closed_sessions.append((session_id, reason))

    def close_all_sessions_for_user(self, user_id, except_session_id=None, reason=""):
        self.closed_users.append((user_id, except_session_id, reason))


class FakeTransport:
    """starlette WebSocket 的出站部分"""

    def __init__(self, fail_after: Optional[int] = None):
        self.sent: List[str] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._fail_after = fail_after

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            raise ConnectionResetError("peer gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def frames(self) -> List[Dict[str, Any]]:
        import json
        return [json.loads(s) for s in self.sent]

    def types(self) -> List[str]:
        return [f["type"] for f in self.frames()]


class FakeLLM:
    """ResearchCapability 替身"""

    def __init__(self, research: bool = True, response: Optional[ResearchResponse] = None,
                 scope_error: Optional[Exception] = None, research_error: Optional[Exception] = None,
                 research_delay: float = 0.0):
        self.research_flag = research
        self.response = response if response is not None else sample_research_response()
        self.scope_error = scope_error
        self.research_error = research_error
        self.research_delay = research_delay
        self.scope_calls: List[List[Dict[str, Any]]] = []
        self.research_calls: List[tuple] = []

    async def decide_scope(self, conversation):
        self.scope_calls.append(list(conversation))
        if self.scope_error is not None:
            raise self.scope_error
        return self.research_flag

    async def research(self, prompt, conversation_text):
        self.research_calls.append((prompt, conversation_text))
        if self.research_delay:
            await asyncio.sleep(self.research_delay)
        if self.research_error is not None:
            raise self.research_error
        return self.response


class FakeValidator:
    """CitationValidator 替身：good_urls 中的 URL 通过，其余视为不可访问"""

    def __init__(self, good_urls=()):
        self.good_urls = set(good_urls)
        self.calls: List[List[Citation]] = []

    async def validate_citation_urls(self, citations):
        items = list(citations)
        self.calls.append(items)
        out = []
        for c in items:
            ok = c.url in self.good_urls
            out.append(CitationValidationResult(
                citation_id=c.id,
                url=c.url,
                is_valid=bool(c.url),
                is_accessible=ok,
                has_content=ok,
                status_code=200 if ok else 404,
                error=None if ok else "HTTP 404",
            ))
        return out


class FakeMessages:
    """MessageStore 替身"""

    def __init__(self, fail: bool = False):
        self.user_turns: List[Dict[str, Any]] = []
        self.bot_turns: List[Dict[str, Any]] = []
        self.fail = fail

    def record_user_turn(self, turn_id, content, session_id=None, user_id=None):
        if self.fail:
            raise RuntimeError("database is locked")
        self.user_turns.append({"message_id": turn_id, "content": content,
                                "session_id": session_id, "user_id": user_id})

    def record_bot_turn(self, turn_id, content, metadata=None, session_id=None, user_id=None):
        if self.fail:
            raise RuntimeError("database is locked")
        self.bot_turns.append({"message_id": turn_id, "content": content, "metadata": metadata or {},
                               "session_id": session_id, "user_id": user_id})

    def list_by_conversation(self, session_id, limit=50):
        if self.fail:
            raise RuntimeError("database is locked")
        rows = [t for t in self.user_turns + self.bot_turns if t["session_id"] == session_id]
        return rows[-limit:]

    def list_by_user(self, user_id, limit=50):
        if self.fail:
            raise RuntimeError("database is locked")
        rows = [t for t in self.user_turns + self.bot_turns if t["user_id"] == user_id]
        return rows[-limit:]


def sample_research_response() -> ResearchResponse:
    return ResearchResponse(
        research_results=f"PG&E residential rates rose in 2025 {MARK_A}. Averages vary by baseline {MARK_B}.",
        key_developments=[
            KeyDevelopment(number=1, title=f"Rate increase {MARK_A}",
                           description=f"The CPUC approved a general rate case {MARK_B}.", citations=[1, 2]),
            KeyDevelopment(number=2, title="Baseline allowances", description="Depends on climate zone.",
                           citations=[]),
        ],
        citations=[
            Citation(id=1, title="CPUC decision", url="https://www.cpuc.ca.gov/decision", relevance_score=9),
            Citation(id=2, title="Blog post", url="https://example.com/dead-link", relevance_score=4),
        ],
    )


@pytest.fixture
def fake_users():
    users = FakeUsers()
    users.add("u1", "alice@example.com", "correct horse")
    users.add("u2", "bob@example.com", "hunter22")
    return users


@pytest.fixture
def memory_db():
    """每个测试一个全新的内存 SQLite"""
    from vitachat.db.engine import configure_engine, init_db
    engine = configure_engine("sqlite://")
    init_db()
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def _no_rate_limit():
    from vitachat.api.rate_limit import limiter
    limiter.enabled = False
    limiter.reset()
    yield
    limiter.enabled = False
