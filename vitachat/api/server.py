"""
FastAPI 应用入口 - 对话 / 认证 / WebSocket
"""

import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import settings
from vitachat.api.deps import Services, build_services, get_services
from vitachat.api.rate_limit import setup_rate_limit
from vitachat.api.routes_auth import router as auth_router
from vitachat.api.routes_chat import router as chat_router
from vitachat.api.routes_ws import router as ws_router
from vitachat.db.engine import init_db, ping
from vitachat.log import get_logger
from vitachat.observability import setup_observability
from vitachat.observability.tracing import SERVICE_VERSION

logger = get_logger(__name__)

_STARTED_AT = time.time()


def create_app(services_factory: Optional[Callable[[], Services]] = None, log_api_calls: bool = True) -> FastAPI:
    """构建 app；测试可传入 services_factory 替换 LLM / 校验器等协作者。"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期：DB 初始化 → 装配组件（注册表接入会话存储）→ 启动定时清理 → 关闭时断开所有连接"""

        # 0. 确保表结构存在
        try:
            init_db()
        except Exception as e:
            logger.warning("[startup] init_db failed: %s", e)

        # 0a. JWT secret key safety check
        if settings.uses_default_secret:
            logger.warning(
                "[startup] SECURITY WARNING: auth.secret_key is still set to the default value. "
                "All JWT tokens can be trivially forged. "
                "Set JWT_SECRET or auth.secret_key in config/vita_config.local.json before deploying."
            )

        # 1. 装配并启动（房间清理 / 检索结果清理）
        services = (services_factory or build_services)()
        app.state.services = services
        await services.start()
        logger.info("[startup] websocket endpoint on %s", settings.realtime.ws_path)

        yield

        # Shutdown: 取消后台任务，关闭所有 WebSocket
        await services.shutdown()
        logger.info("[shutdown] realtime registry and research store stopped")

    app = FastAPI(
        title="Vita Chat API",
        description="单会话认证 + WebSocket 实时推送 + 异步深度检索",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_rate_limit(app)

    app.include_router(auth_router)
    app.include_router(chat_router)
    app.include_router(ws_router)

    # Observability: 中间件 + /metrics
    setup_observability(app, log_api_calls=log_api_calls)

    @app.get("/health")
    def health():
        try:
            db_ok = ping()
        except Exception as e:
            logger.warning("[health] database ping failed: %s", e)
            db_ok = False
        body = {
            "status": "OK" if db_ok else "DEGRADED",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "connected" if db_ok else "disconnected",
            "uptime": round(time.time() - _STARTED_AT, 1),
            "pid": os.getpid(),
            "version": SERVICE_VERSION,
        }
        return JSONResponse(body, status_code=200 if db_ok else 503)

    @app.get("/api/status")
    def status() -> dict:
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/realtime/stats")
    def realtime_stats(request: Request) -> dict:
        services = get_services(request)
        stats = services.registry.stats()
        stats.update({
            "active_sessions": services.sessions.active_sessions_count,
            "research_jobs": len(services.job_store),
            "background_tasks": len(services.tasks),
        })
        return stats

    return app


app = create_app()
