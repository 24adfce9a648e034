"""
Rate limiting (slowapi).

- 全局：/api/ 下每个客户端 IP 共享 settings.api.rate_limit（默认 100/15minutes）
- 登录类接口额外加 @limiter.limit(AUTH_RATE_LIMIT)
"""

from __future__ import annotations

import math
import time

from fastapi import FastAPI
from limits import parse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from config.settings import settings

TOO_MANY_REQUESTS_MESSAGE = "Too many requests from this IP, please try again later."
AUTH_RATE_LIMIT = "20/minute"

limiter = Limiter(
    key_func=get_remote_address,
    headers_enabled=False,
    enabled=settings.api.rate_limit_enabled,
)


class ApiRateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window limit shared by every route under *prefix*."""

    def __init__(self, app, limit: str, prefix: str = "/api/"):
        super().__init__(app)
        self.item = parse(limit)
        self.prefix = prefix

    async def dispatch(self, request: Request, call_next):
        if not limiter.enabled or not request.url.path.startswith(self.prefix):
            return await call_next(request)
        key = get_remote_address(request)
        if limiter.limiter.hit(self.item, key):
            return await call_next(request)
        reset_at, _remaining = limiter.limiter.get_window_stats(self.item, key)
        retry_after = max(1, int(math.ceil(reset_at - time.time())))
        return JSONResponse(
            {"success": False, "error": TOO_MANY_REQUESTS_MESSAGE},
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )


def setup_rate_limit(app: FastAPI) -> None:
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(ApiRateLimitMiddleware, limit=settings.api.rate_limit)
