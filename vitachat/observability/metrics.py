"""
Prometheus metrics 定义。

所有自定义指标集中定义，业务模块通过 `from vitachat.observability.metrics import metrics` 引用。
"""

from prometheus_client import Counter, Gauge, Histogram, Info


class _Metrics:
    """集中管理所有 Prometheus 指标"""

    def __init__(self):
        # ── HTTP 请求 ──
        self.http_requests_total = Counter(
            "vita_http_requests_total",
            "HTTP 请求总数",
            ["method", "endpoint", "status_code"],
        )
        self.http_request_duration_seconds = Histogram(
            "vita_http_request_duration_seconds",
            "HTTP 请求延迟 (秒)",
            ["method", "endpoint"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        # ── LLM ──
        self.llm_requests_total = Counter(
            "vita_llm_requests_total",
            "LLM 调用总数",
            ["provider", "model"],
        )
        self.llm_duration_seconds = Histogram(
            "vita_llm_duration_seconds",
            "LLM 调用延迟 (秒)",
            ["provider", "model"],
            buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
        )
        self.llm_errors_total = Counter(
            "vita_llm_errors_total",
            "LLM 调用失败数",
            ["provider", "model"],
        )

        # ── WebSocket ──
        self.ws_connections = Gauge(
            "vita_ws_connections",
            "当前已认证的 WebSocket 连接数",
        )
        self.ws_rooms = Gauge(
            "vita_ws_rooms",
            "当前活跃房间数",
        )
        self.ws_frames_sent_total = Counter(
            "vita_ws_frames_sent_total",
            "下发的 WebSocket 帧数",
            ["type"],  # bot_message / ai_typing / research_update / session_terminated
        )

        # ── 会话 ──
        self.logins_total = Counter(
            "vita_logins_total",
            "登录次数",
            ["outcome"],  # success / rejected / needs_confirmation
        )

        # ── 深度检索 ──
        self.research_jobs_total = Counter(
            "vita_research_jobs_total",
            "深度检索任务结束数",
            ["status"],  # completed / failed
        )
        self.research_duration_seconds = Histogram(
            "vita_research_duration_seconds",
            "深度检索耗时 (秒)",
            buckets=(5, 10, 30, 60, 120, 300, 600),
        )
        self.citation_checks_total = Counter(
            "vita_citation_checks_total",
            "引用 URL 校验数",
            ["outcome"],  # kept / dropped
        )

        self.app_info = Info(
            "vita_app",
            "应用元信息",
        )


# 单例
metrics = _Metrics()
