"""
Observability 模块：OpenTelemetry tracing + Prometheus metrics + API 调用审计。

用法：
    from vitachat.observability import setup_observability, metrics, tracer

    setup_observability(app)

    with tracer.start_as_current_span("my_operation"):
        ...
"""

from vitachat.observability.metrics import metrics
from vitachat.observability.setup import setup_observability
from vitachat.observability.tracing import tracer

__all__ = ["setup_observability", "metrics", "tracer"]
