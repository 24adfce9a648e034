"""
OpenTelemetry tracing 配置。

提供全局 tracer 供业务代码使用：
    from vitachat.observability import tracer
    with tracer.start_as_current_span("research.validate"):
        ...

仅在 VITA_TRACE_CONSOLE=1 时把 span 输出到控制台。
"""

import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

SERVICE_NAME = "vita-chat"
SERVICE_VERSION = "0.1.0"

_resource = Resource.create({"service.name": SERVICE_NAME, "service.version": SERVICE_VERSION})

_provider = TracerProvider(resource=_resource)

# 生产环境可替换为 OTLP exporter
if os.getenv("VITA_TRACE_CONSOLE", "0") == "1":
    _provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

trace.set_tracer_provider(_provider)

tracer = trace.get_tracer(SERVICE_NAME, SERVICE_VERSION)
