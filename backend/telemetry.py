# telemetry.py: optional OTLP tracing for the tracker API
#
# Off unless OTEL_EXPORTER_OTLP_ENDPOINT is set and the ``telemetry`` extra
# is installed. Each instrumentation is optional on its own; a missing one
# is logged and skipped.

import os
import logging
import importlib
from typing import List, Optional, Tuple

logger = logging.getLogger("tracker.telemetry")

# (module, instrumentor class, what it covers)
INSTRUMENTORS: List[Tuple[str, str, str]] = [
    ("opentelemetry.instrumentation.sqlalchemy", "SQLAlchemyInstrumentor", "database queries"),
    ("opentelemetry.instrumentation.httpx", "HTTPXClientInstrumentor", "GitHub API calls"),
]


def _resource_attributes() -> dict:
    return {
        "service.name": os.getenv("OTEL_SERVICE_NAME", "tracker-api"),
        "service.version": os.getenv("APP_VERSION", "1.0.0"),
        "deployment.environment": os.getenv("ENVIRONMENT", "development"),
    }


def _instrument_app(app, provider) -> None:
    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    except ImportError:
        logger.warning("FastAPI instrumentation unavailable; request spans disabled")
        return
    # Health checks would drown out real traffic
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)


def _instrument_libraries(provider) -> List[str]:
    enabled = []
    for module_name, class_name, label in INSTRUMENTORS:
        try:
            instrumentor = getattr(importlib.import_module(module_name), class_name)
        except ImportError:
            logger.warning("No tracing for %s (%s missing)", label, module_name)
            continue
        instrumentor().instrument(tracer_provider=provider)
        enabled.append(label)
    return enabled


def setup_telemetry(app=None, endpoint: Optional[str] = None):
    """Install a tracer provider exporting to ``endpoint``; returns it, or None when tracing is off"""
    endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
    if not endpoint:
        logger.info("Tracing off: OTEL_EXPORTER_OTLP_ENDPOINT is not set")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.warning("Tracing off: install the 'telemetry' extra to export to %s", endpoint)
        return None

    provider = TracerProvider(resource=Resource.create(_resource_attributes()))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    trace.set_tracer_provider(provider)

    if app is not None:
        _instrument_app(app, provider)
    enabled = _instrument_libraries(provider)
    logger.info("Tracing to %s (%s)", endpoint, ", ".join(enabled) or "requests only")
    return provider
