import logging
from typing import Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from site_mirror.proxy.route import get_config, router as proxy_router
from site_mirror.vars import ORIGIN, OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that drops the per-chunk ASGI body spans.
    A mirrored page streams many body chunks; one span each buries the proxy span.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if kept:
            return self.exporter.export(kept)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing(app: FastAPI) -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    tracer_provider = trace.get_tracer_provider()
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )

    FastAPIInstrumentor.instrument_app(app, excluded_urls="/metrics")


def create_app() -> FastAPI:
    app = FastAPI()

    # /metrics is registered before the catch-all proxy route so it wins
    Instrumentator().instrument(app).expose(app)
    configure_tracing(app)

    if ORIGIN:
        # Resolve the configuration before the first request; a bad value fails startup
        get_config()
    else:
        logger.warning("No ORIGIN set, every proxied request will return 503")

    app.include_router(proxy_router)
    return app


app = create_app()

# Add app_name to the metrics
app_info = Info("site_mirror_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})
