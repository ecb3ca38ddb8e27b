"""OpenTelemetry bootstrap: tracing initialisation and span names.

Configures a ``TracerProvider`` with an OTLP HTTP exporter when tracing is
enabled via ``TracingConfig``.  When disabled the module is a graceful
no-op and ``tracer`` hands out non-recording spans.

Auto-instrumentations wired here:

- **FastAPI** (inbound proxy requests)
- **httpx** (outbound upstream attempts)

Usage::

    from aiproxy.infra.telemetry import SPAN_GATE_SLOT, tracer

    with tracer.start_as_current_span(SPAN_GATE_SLOT) as span:
        ...
"""

from __future__ import annotations

import base64
import logging

from fastapi import FastAPI
from opentelemetry import trace

from aiproxy.configs.system import TracingConfig

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("aiproxy")

# ---------------------------------------------------------------------------
# Span names
# ---------------------------------------------------------------------------

SPAN_GATE_SLOT = "gate.slot"
SPAN_UPSTREAM_FORWARD = "upstream.forward"

# ---------------------------------------------------------------------------
# Span attribute keys
# ---------------------------------------------------------------------------

ATTR_CLIENT_ID = "proxy.client_id"
ATTR_GATE_QUEUED = "gate.queued"
ATTR_GATE_WAIT_SECONDS = "gate.wait_seconds"
ATTR_UPSTREAM_PROVIDER = "upstream.provider"
ATTR_UPSTREAM_MODEL = "upstream.model"
ATTR_UPSTREAM_ATTEMPTS = "upstream.attempts"
ATTR_UPSTREAM_STATUS = "upstream.status_code"


def init_telemetry(
    app: FastAPI | None = None,
    settings: TracingConfig | None = None,
) -> bool:
    """Initialise the OTEL ``TracerProvider`` and auto-instrumentations.

    Call before the app starts serving: the FastAPI instrumentor adds
    ASGI middleware.

    Returns ``True`` when tracing was switched on.
    """
    if settings is None or not settings.enabled:
        logger.info("OpenTelemetry tracing disabled.")
        return False

    if not settings.endpoint:
        logger.warning(
            "Tracing enabled but no OTLP endpoint configured; "
            "skipping OpenTelemetry setup."
        )
        return False

    from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
        OTLPSpanExporter,
    )
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

    resource = Resource.create({"service.name": settings.service_name})
    sampler = ParentBased(root=TraceIdRatioBased(settings.sample_rate))
    provider = TracerProvider(resource=resource, sampler=sampler)

    headers: dict[str, str] = {}
    if settings.username and settings.password:
        credentials = f"{settings.username}:{settings.password}"
        encoded = base64.b64encode(credentials.encode()).decode()
        headers["Authorization"] = f"Basic {encoded}"

    exporter = OTLPSpanExporter(endpoint=settings.endpoint, headers=headers)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    if app is not None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        excluded = ",".join(settings.excluded_urls)
        FastAPIInstrumentor.instrument_app(app, excluded_urls=excluded)

    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

    HTTPXClientInstrumentor().instrument()

    logger.info(
        "OpenTelemetry tracing initialised (service=%s).", settings.service_name
    )
    return True

