"""
进程内单例的装配 + FastAPI 依赖。

lifespan 里调用 build_services() 一次，挂到 app.state.services；
路由通过 get_services / get_current_claims 取用。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from starlette.requests import HTTPConnection

from vitachat.auth.errors import INVALID_TOKEN_MESSAGE, AuthenticationError
from vitachat.auth.session_store import SessionStore
from vitachat.auth.token import TokenClaims
from vitachat.chat.orchestrator import ChatOrchestrator
from vitachat.llm.capability import LLMCapability, ResearchCapability
from vitachat.realtime.handler import ChatSocketHandler
from vitachat.realtime.polling import ResearchPoller
from vitachat.realtime.registry import ConnectionRegistry
from vitachat.research.job_store import ResearchJobStore
from vitachat.research.pipeline import ResearchPipeline
from vitachat.research.validator import CitationValidator
from vitachat.stores.message_store import MessageStore, message_store
from vitachat.stores.user_store import UserStore, user_store
from vitachat.utils.task_runner import BackgroundTasks, background_tasks

TOKEN_REQUIRED_MESSAGE = "Access token required"


@dataclass
class Services:
    users: UserStore
    messages: MessageStore
    sessions: SessionStore
    registry: ConnectionRegistry
    job_store: ResearchJobStore
    pipeline: ResearchPipeline
    orchestrator: ChatOrchestrator
    poller: ResearchPoller
    socket_handler: ChatSocketHandler
    tasks: BackgroundTasks

    async def start(self) -> None:
        self.registry.start()
        self.job_store.start()

    async def shutdown(self) -> None:
        await self.tasks.cancel_all()
        await self.registry.shutdown()
        await self.job_store.shutdown()
        self.sessions.attach_closer(None)


def build_services(
    llm: Optional[ResearchCapability] = None,
    users: Optional[UserStore] = None,
    messages: Optional[MessageStore] = None,
    validator: Optional[CitationValidator] = None,
    sessions: Optional[SessionStore] = None,
    registry: Optional[ConnectionRegistry] = None,
    poller_interval_seconds: Optional[float] = None,
) -> Services:
    """按 settings 装配全部组件；测试可替换 llm / validator 等协作者。"""
    from config.settings import settings

    users = users or user_store
    messages = messages or message_store
    llm = llm or LLMCapability()
    registry = registry or ConnectionRegistry.from_settings()
    sessions = sessions or SessionStore(users=users)
    sessions.attach_closer(registry)

    job_store = ResearchJobStore.from_settings()
    window = settings.research.window_size
    pipeline = ResearchPipeline(
        llm,
        job_store,
        messages=messages,
        validator=validator or CitationValidator.from_settings(),
        window_size=window,
    )
    orchestrator = ChatOrchestrator(
        llm, job_store, pipeline, messages=messages, tasks=background_tasks, window_size=window,
    )
    poller = ResearchPoller.from_settings(registry, job_store)
    if poller_interval_seconds is not None:
        poller.interval_seconds = poller_interval_seconds
    handler = ChatSocketHandler(
        registry,
        sessions,
        orchestrator,
        poller,
        max_message_chars=settings.realtime.max_message_chars,
    )
    return Services(
        users=users,
        messages=messages,
        sessions=sessions,
        registry=registry,
        job_store=job_store,
        pipeline=pipeline,
        orchestrator=orchestrator,
        poller=poller,
        socket_handler=handler,
        tasks=background_tasks,
    )


def get_services(conn: HTTPConnection) -> Services:
    return conn.app.state.services


def bearer_token(authorization: str | None = Header(None)) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[7:].strip() or None


def get_current_claims(
    token: str | None = Depends(bearer_token),
    services: Services = Depends(get_services),
) -> TokenClaims:
    """Dependency: 缺少 token → 401；token 无效/过期/会话已失效 → 403"""
    if not token:
        raise HTTPException(status_code=401, detail=TOKEN_REQUIRED_MESSAGE)
    try:
        return services.sessions.verify_token(token)
    except AuthenticationError:
        raise HTTPException(status_code=403, detail=INVALID_TOKEN_MESSAGE)


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
