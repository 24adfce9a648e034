"""
一键初始化 Observability：注册中间件 + /metrics 端点 + 应用元信息。
"""

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from vitachat.log import get_logger
from vitachat.observability.metrics import metrics
from vitachat.observability.middleware import ApiCallLogMiddleware, ObservabilityMiddleware
from vitachat.observability.tracing import SERVICE_NAME, SERVICE_VERSION

logger = get_logger(__name__)


def setup_observability(app: FastAPI, log_api_calls: bool = True) -> None:
    """
    在 FastAPI app 上挂载 Observability 组件。

    应在 router 注册之后、启动之前调用。
    """
    # 1. 注册中间件（后注册的在外层）
    if log_api_calls:
        app.add_middleware(ApiCallLogMiddleware)
    app.add_middleware(ObservabilityMiddleware)

    # 2. 注册 /metrics 端点（Prometheus 拉取）
    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics():
        return PlainTextResponse(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    # 3. 设置应用元信息
    metrics.app_info.info({"version": SERVICE_VERSION, "service": SERVICE_NAME})

    logger.info("[observability] middleware + /metrics registered")
