# ==== INVOICE ANOMALY ENGINE MAIN APPLICATION MODULE ==== #

"""
Main FastAPI application for the invoice anomaly engine.

This module provides the FastAPI application with middleware, observability,
health probes and error handling around the anomaly scan routes.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from anomaly_engine.settings import settings
from anomaly_engine.storage.db import init_database, close_database
from anomaly_engine.observability.tracing import init_tracing
from anomaly_engine.observability.metrics import init_metrics, metrics_router
from anomaly_engine.observability.logging import init_logging, get_logger
from anomaly_engine.middleware.correlation import CorrelationMiddleware
from anomaly_engine.routes import anomalies


logger = get_logger(__name__)

APP_VERSION = "0.1.0"


# ==== APPLICATION LIFECYCLE MANAGEMENT ==== #


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Bring up logging, tracing and the database engine around the app.

    The engine is created lazily, so startup succeeds without a reachable
    database; the first scan opens the connection.
    """
    # --► STARTUP
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    init_tracing(settings.SERVICE_NAME)
    init_database()
    logger.info(
        "Invoice anomaly engine started",
        environment=settings.APP_ENV,
        narrative_enabled=settings.narrative_enabled,
    )

    yield

    logger.info("Invoice anomaly engine stopping")
    await close_database()


# ==== APPLICATION FACTORY ==== #


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Invoice Anomaly Engine",
        description="Heuristic and statistical anomaly detection over tenant invoices",
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.APP_ENV == "dev" else None,
        redoc_url="/redoc" if settings.APP_ENV == "dev" else None
    )

    init_metrics(app)

    # Browser clients read X-Correlation-Id from scan responses
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )
    app.add_middleware(CorrelationMiddleware)

    _register_health_endpoints(app)
    _register_routers(app)
    _register_exception_handlers(app)

    FastAPIInstrumentor.instrument_app(app)

    return app


# ==== ENDPOINT REGISTRATION HELPERS ==== #


def _register_health_endpoints(app: FastAPI) -> None:
    """
    Register liveness and readiness probes.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        return {
            "status": "ok",
            "service": settings.SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/readyz", tags=["health"])
    async def readiness_check() -> dict:
        return {
            "status": "ready",
            "service": settings.SERVICE_NAME,
            "environment": settings.APP_ENV,
            "narrative_provider": "enabled" if settings.narrative_enabled else "disabled"
        }


def _register_routers(app: FastAPI) -> None:
    """
    Register application routers with their prefixes and tags.

    Args:
        app (FastAPI): FastAPI application instance
    """
    app.include_router(metrics_router, prefix="", tags=["monitoring"])
    app.include_router(anomalies.router, prefix="/api/ai", tags=["anomalies"])


# ==== EXCEPTION HANDLERS ==== #


def _register_exception_handlers(app: FastAPI) -> None:
    """
    Register the global handler for errors that escape a route.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request,
        exc: Exception
    ) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", None)
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            error_type=type(exc).__name__,
            correlation_id=correlation_id,
        )

        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "correlation_id": correlation_id}
        )


# ==== APPLICATION INSTANCE ==== #


# uvicorn anomaly_engine.main:app
app = create_app()
