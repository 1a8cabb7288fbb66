# ==== CORRELATION ID MIDDLEWARE ==== #

"""
Correlation ID middleware for request tracing.

Accepts or generates an ``X-Correlation-Id`` for every request, stores it on
``request.state`` for error responses and logs, echoes it on the response,
and records request latency.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from anomaly_engine.observability.metrics import request_latency_seconds
from anomaly_engine.observability.tracing import get_tracer


tracer = get_tracer(__name__)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Middleware adding correlation IDs to requests and responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(
            "X-Correlation-Id",
            str(uuid.uuid4())
        )
        request.state.correlation_id = correlation_id

        start_time = time.perf_counter()

        with tracer.start_as_current_span("http_request") as span:
            span.set_attribute("http.method", request.method)
            span.set_attribute("http.url", str(request.url))
            span.set_attribute("correlation_id", correlation_id)

            response = await call_next(request)
            response.headers["X-Correlation-Id"] = correlation_id

            # Route template keeps label cardinality bounded
            route = request.scope.get("route")
            path = getattr(route, "path", "unmatched")
            request_latency_seconds.labels(
                method=request.method,
                path=path
            ).observe(time.perf_counter() - start_time)

            span.set_attribute("http.status_code", response.status_code)
            return response
