# ==== OPENTELEMETRY TRACING CONFIGURATION ==== #

"""
OpenTelemetry tracing for the invoice anomaly engine.

Exporting is opt-in: without ``OTEL_EXPORTER_OTLP_ENDPOINT`` the global no-op
provider stays in place and every ``tracer.start_as_current_span`` in the
scan pipeline is free. With an endpoint, spans go to an OTLP collector and
the database and AI provider clients are instrumented automatically.
"""

from typing import Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from anomaly_engine.settings import settings


# ==== TRACING INITIALIZATION ==== #


def init_tracing(service_name: str) -> bool:
    """
    Install an OTLP-exporting tracer provider when a collector is configured.

    Args:
        service_name (str): Fallback service name when ``OTEL_SERVICE_NAME``
            is not set

    Returns:
        bool: True when spans are exported
    """
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    attributes = parse_key_values(settings.OTEL_RESOURCE_ATTRIBUTES)
    attributes.setdefault("deployment.environment", settings.APP_ENV)
    attributes["service.name"] = settings.OTEL_SERVICE_NAME or service_name

    provider = TracerProvider(resource=Resource.create(attributes))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(
        endpoint=endpoint,
        headers=parse_key_values(settings.OTEL_EXPORTER_OTLP_HEADERS)
    )))
    trace.set_tracer_provider(provider)

    _instrument_clients()
    return True


def parse_key_values(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse the ``key1=value1,key2=value2`` format used by OTEL env variables.

    Entries without ``=`` are ignored; values may themselves contain ``=``.
    """
    pairs = {}
    for part in (raw or "").split(","):
        key, sep, value = part.partition("=")
        if sep and key.strip():
            pairs[key.strip()] = value.strip()
    return pairs


def _instrument_clients() -> None:
    """Instrument the SQLAlchemy engine and httpx AI client calls."""
    from loguru import logger

    # FastAPI itself is instrumented per app in main.py
    try:
        SQLAlchemyInstrumentor().instrument()
        HTTPXClientInstrumentor().instrument()
    except Exception as e:
        logger.warning(f"Failed to setup auto-instrumentation: {e}")


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer for the given module (typically ``__name__``)."""
    return trace.get_tracer(name)
