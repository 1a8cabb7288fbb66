# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for the invoice anomaly engine.

Tracks scan volume and latency, anomalies found per type and severity, AI
narrative requests, and best-effort audit write failures.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY
)

from anomaly_engine.settings import settings


# ==== SCAN METRICS ==== #

anomaly_scans_total = Counter(
    "invoice_anomaly_scans_total",
    "Total invoice anomaly scans by outcome",
    ["outcome"]
)

anomaly_scan_duration_seconds = Histogram(
    "invoice_anomaly_scan_duration_seconds",
    "Time spent running a full anomaly scan in seconds"
)

anomalies_detected_total = Counter(
    "invoice_anomalies_detected_total",
    "Total anomalies reported after deduplication",
    ["type", "severity"]
)

scanned_invoices_total = Counter(
    "invoice_anomaly_scanned_invoices_total",
    "Total invoices analysed by source",
    ["source"]
)

# AI metrics
ai_requests_total = Counter(
    "invoice_anomaly_ai_requests_total",
    "Total AI narrative requests made",
    ["provider", "model", "operation"]
)

ai_tokens_total = Counter(
    "invoice_anomaly_ai_tokens_total",
    "Total AI tokens consumed",
    ["provider", "model", "type"]  # type: prompt, completion
)

ai_failures_total = Counter(
    "invoice_anomaly_ai_failures_total",
    "Total AI narrative failures",
    ["provider", "error_type"]
)

# Audit metrics
audit_failures_total = Counter(
    "invoice_anomaly_audit_failures_total",
    "Total audit log writes that failed",
    ["action_type"]
)

# HTTP metrics
request_latency_seconds = Histogram(
    "invoice_anomaly_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "path"]
)


# System metrics
app_info = Gauge(
    "invoice_anomaly_app_info",
    "Application information",
    ["version", "environment", "service_name"]
)


def init_metrics(app) -> None:
    """Initialize metrics collection.

    Args:
        app: FastAPI application instance
    """
    app_info.labels(
        version=app.version,
        environment=settings.APP_ENV,
        service_name=settings.SERVICE_NAME
    ).set(1)


# Metrics router for Prometheus scraping
metrics_router = APIRouter()


@metrics_router.get(settings.PROMETHEUS_SCRAPE_PATH)
def get_metrics() -> PlainTextResponse:
    """Expose Prometheus metrics for scraping.

    Returns:
        Prometheus metrics in text format
    """
    return PlainTextResponse(
        generate_latest(REGISTRY).decode("utf-8"),
        media_type="text/plain"
    )
