import logging
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import httpx
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
from prometheus_client import CollectorRegistry, Info
from prometheus_fastapi_instrumentator import Instrumentator

from proxy_gateway.forwarder import Forwarder, ForwarderConfig
from proxy_gateway.forwarder.route import fallback_router
from proxy_gateway.forwarder.route import router as proxy_router
from proxy_gateway.vars import OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")

# Emitted once per body chunk by the ASGI instrumentation
NOISY_ASGI_EVENT_TYPES = {"http.request", "http.response.body", "http.disconnect"}


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that drops the per-chunk ASGI send/receive spans.
    A streaming proxy produces one of those for every body chunk in both
    directions, which buries the request spans that matter.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") in NOISY_ASGI_EVENT_TYPES
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing() -> None:
    """Install the process-wide tracer provider, once."""
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        return

    tracer_provider = TracerProvider(
        resource=Resource.create({"service.name": SERVICE_NAME})
    )
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=OTLP_HEADERS or None,
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
        logger.info(f"Exporting traces to {OTLP_ENDPOINT}")
    trace.set_tracer_provider(tracer_provider)


def create_app(
    config: Optional[ForwarderConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the proxy application.

    The upstream client lives for the lifetime of the app; ``transport``
    replaces its network layer (tests pass an ``httpx.MockTransport``).
    """
    config = config or ForwarderConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(config.timeout),
            follow_redirects=False,  # Redirects are relayed to the caller
        ) as client:
            app.state.forwarder = Forwarder(config, client)
            yield

    app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
    app.state.config = config
    app.include_router(proxy_router, prefix=config.proxy_prefix)

    registry = CollectorRegistry()
    Instrumentator(registry=registry).instrument(app).expose(app)
    app_info = Info("fastapi_app_info", "Application Info", registry=registry)
    app_info.info({"app_name": SERVICE_NAME})

    # After /metrics and the prefixed routes, so it only sees unclaimed paths
    if config.used_fallback_target:
        logger.warning(
            "TARGET_SERVER_URL is not set, paths outside "
            f"{config.proxy_prefix} are not forwarded"
        )
    else:
        app.include_router(fallback_router)

    configure_tracing()
    FastAPIInstrumentor.instrument_app(app)

    return app


app = create_app()
