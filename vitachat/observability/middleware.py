"""
FastAPI 中间件：

- ObservabilityMiddleware：采集 HTTP 请求延迟 / 计数 / 状态码，并创建 trace span
- ApiCallLogMiddleware：/api 下的请求写一行摘要日志，并把请求/响应写入 api_calls 表
"""

import asyncio
import json
import time
from typing import Any, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from vitachat.log import get_logger
from vitachat.observability.metrics import metrics
from vitachat.observability.tracing import tracer
from vitachat.stores.api_call_store import api_call_store

logger = get_logger(__name__)

_SKIP_PATHS = ("/metrics", "/health")
_REDACTED_KEYS = {"password", "token"}
_LOG_LINE_MAX = 80


def _normalize_path(path: str) -> str:
    """
    将 path 中的动态 ID 替换为占位符，防止高基数指标。
    e.g. /api/chat/research/msg_123/validate → /api/chat/research/{id}/validate
    """
    parts = path.strip("/").split("/")
    normalized = []
    skip_next = False
    for part in parts:
        if skip_next:
            normalized.append("{id}")
            skip_next = False
            continue
        if part in ("research", "message", "session", "user"):
            skip_next = True
        normalized.append(part)
    return "/" + "/".join(normalized)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """采集每个 HTTP 请求的延迟和计数指标，并创建 trace span。"""

    async def dispatch(self, request: Request, call_next):
        method = request.method
        path = _normalize_path(request.url.path)

        # 跳过 /metrics 和 /health 本身，避免自引用噪音
        if request.url.path in _SKIP_PATHS:
            return await call_next(request)

        with tracer.start_as_current_span(
            f"{method} {path}",
            attributes={"http.method": method, "http.url": str(request.url)},
        ) as span:
            start = time.perf_counter()
            response: Response = await call_next(request)
            elapsed = time.perf_counter() - start

            status_code = str(response.status_code)
            span.set_attribute("http.status_code", response.status_code)

            metrics.http_requests_total.labels(
                method=method, endpoint=path, status_code=status_code
            ).inc()
            metrics.http_request_duration_seconds.labels(
                method=method, endpoint=path
            ).observe(elapsed)

            return response


def _redact(payload: Any) -> Any:
    if isinstance(payload, dict):
        return {k: ("***" if k in _REDACTED_KEYS else _redact(v)) for k, v in payload.items()}
    if isinstance(payload, list):
        return [_redact(v) for v in payload]
    return payload


def _payload_text(raw: bytes) -> Optional[str]:
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.dumps(_redact(json.loads(text)), ensure_ascii=False)
    except ValueError:
        return text


class ApiCallLogMiddleware(BaseHTTPMiddleware):
    """/api 请求审计：摘要日志 + api_calls 表（写库失败只记日志）。"""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith("/api"):
            return await call_next(request)

        start = time.perf_counter()
        request_body = await request.body()
        response = await call_next(request)

        response_body = b""
        async for chunk in response.body_iterator:
            response_body += chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")
        duration_ms = int((time.perf_counter() - start) * 1000)

        response_text = _payload_text(response_body)
        line = f"{request.method} {path} {response.status_code} in {duration_ms}ms"
        if response_text:
            line += f" :: {response_text}"
        if len(line) > _LOG_LINE_MAX:
            line = line[: _LOG_LINE_MAX - 1] + "…"
        logger.info(line)

        await asyncio.to_thread(
            api_call_store.record,
            endpoint=path,
            method=request.method,
            status_code=response.status_code,
            duration_ms=duration_ms,
            user_agent=request.headers.get("user-agent"),
            ip_address=request.client.host if request.client else None,
            request_payload=_payload_text(request_body),
            response_payload=response_text,
            request_size=len(request_body),
            response_size=len(response_body),
            error_message=response_text if response.status_code >= 400 else None,
        )

        return Response(
            content=response_body,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type,
            background=response.background,
        )
